import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _in_container():
    return os.path.exists("/.dockerenv") or os.path.isdir("/data")


def _env_dir(name, container_default, local_default):
    value = os.environ.get(f"MYOUSYNC_{name}")
    if value:
        return Path(value).resolve()
    return (container_default if _in_container() else local_default).resolve()


_LOCAL = PROJECT_ROOT / "data"

DATA_DIR = _env_dir("DATA_DIR", Path("/data"), _LOCAL)
CONFIG_DIR = _env_dir("CONFIG_DIR", Path("/config"), _LOCAL / "config")
MUSIC_DIR = _env_dir("MUSIC_DIR", Path("/music"), _LOCAL / "music")
LOG_DIR = _env_dir("LOG_DIR", Path("/logs"), _LOCAL / "logs")
TOKENS_DIR = _env_dir("TOKENS_DIR", Path("/tokens"), _LOCAL / "tokens")
DB_PATH = Path(os.environ.get("MYOUSYNC_DB_PATH") or DATA_DIR / "database" / "myousync.sqlite").resolve()


@dataclass(frozen=True)
class SyncPaths:
    log_dir: str
    db_path: str
    temp_dir: str
    staging_dir: str
    music_dir: str
    musicbrainz_cache: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        return os.path.join(CONFIG_DIR, "config.json")
    if os.path.isabs(path):
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(CONFIG_DIR, path))


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return str(base_dir)
    if os.path.isabs(path):
        return os.path.abspath(path)
    resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def is_within(path, base_dir):
    try:
        return _is_within_base(path, base_dir)
    except ValueError:
        # commonpath raises on mixed drives / relative vs absolute
        return False


def build_sync_paths(*, temp_dir=None, music_dir=None):
    temp_root = resolve_dir(temp_dir, DATA_DIR / "temp")
    music_root = resolve_dir(music_dir, MUSIC_DIR)
    staging = os.path.join(temp_root, ".staging")
    mb_cache = DATA_DIR / "cache" / "musicbrainz_cache.json"

    for d in (
        DB_PATH.parent,
        temp_root,
        staging,
        music_root,
        mb_cache.parent,
        LOG_DIR,
        TOKENS_DIR,
        CONFIG_DIR,
    ):
        ensure_dir(d)

    return SyncPaths(
        log_dir=str(LOG_DIR),
        db_path=str(DB_PATH),
        temp_dir=temp_root,
        staging_dir=staging,
        music_dir=music_root,
        musicbrainz_cache=str(mb_cache),
    )
