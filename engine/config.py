import json
from dataclasses import dataclass, field

DEFAULT_PORT = 3001
DEFAULT_HOST = "0.0.0.0"


@dataclass(frozen=True)
class SourceSpec:
    playlist_id: str
    name: str | None = None
    account: str | None = None
    jelly_playlist_id: str | None = None


@dataclass(frozen=True)
class JellyfinSettings:
    server: str
    user: str
    password: str
    collection: str
    rewrite_from: str | None = None
    rewrite_to: str | None = None
    sync_interval_minutes: float = 10


@dataclass(frozen=True)
class SyncSettings:
    sources: tuple = ()
    accounts: dict = field(default_factory=dict)
    temp_dir: str | None = None
    music_dir: str | None = None
    file_mode: int | None = None
    dir_mode: int | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    download_workers: int = 2
    match_workers: int = 2
    discovery_interval_minutes: float = 5
    sweep_interval_minutes: float = 60
    run_on_startup: bool = True
    ytdlp_rate_seconds: float = 10
    ytdlp_timeout_seconds: float = 900
    ytdlp_socket_timeout: float = 30
    audio_format: str = "best"
    cookie_file: str | None = None
    musicbrainz_timeout_seconds: float = 10
    musicbrainz_min_interval_seconds: float = 1.5
    musicbrainz_cache_ttl_seconds: int = 24 * 60 * 60
    musicbrainz_contact: str | None = None
    auth_secret: str | None = None
    token_ttl_hours: float = 24
    batch_window_ms: int = 100
    max_pending: int = 1000
    command_claim_timeout_seconds: float = 120
    jellyfin: JellyfinSettings | None = None


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def _check_positive(errors, section, key, value, *, integer=False):
    if value is None:
        return
    expected = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, expected):
        kind = "an integer" if integer else "a number"
        errors.append(f"{section}.{key} must be {kind}")
    elif value <= 0:
        errors.append(f"{section}.{key} must be > 0")


def parse_mode(value):
    """Unix permission bits from an octal string such as ``"644"``."""
    if not isinstance(value, str):
        raise ValueError("expected an octal string")
    mode = int(value.strip(), 8)
    if not 0 <= mode <= 0o7777:
        raise ValueError("out of range")
    return mode


def _check_section(errors, config, name):
    section = config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        errors.append(f"{name} must be an object")
        return {}
    return section


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    accounts = config.get("accounts")
    if accounts is not None and not isinstance(accounts, dict):
        errors.append("accounts must be an object")
    if isinstance(accounts, dict):
        for name, acc in accounts.items():
            if not isinstance(acc, dict) or not acc.get("token"):
                errors.append(f"accounts.{name}.token is required")

    sources = config.get("sources")
    if sources is not None and not isinstance(sources, list):
        errors.append("sources must be a list")
    if isinstance(sources, list):
        for idx, src in enumerate(sources):
            if isinstance(src, str):
                continue
            if not isinstance(src, dict):
                errors.append(f"sources[{idx}] must be a playlist id or an object")
                continue
            if not (src.get("playlist_id") or src.get("id")):
                errors.append(f"sources[{idx}] missing playlist_id")
            account = src.get("account")
            if account is not None and (not isinstance(accounts, dict) or account not in accounts):
                errors.append(f"sources[{idx}].account '{account}' is not configured")
            jelly_playlist = src.get("jelly_playlist")
            if jelly_playlist is not None and not isinstance(jelly_playlist, str):
                errors.append(f"sources[{idx}].jelly_playlist must be a string")

    paths = _check_section(errors, config, "paths")
    for key in ("music", "temp"):
        value = paths.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"paths.{key} must be a string")
    for key in ("file_permissions", "dir_permissions"):
        value = paths.get(key)
        if value is None:
            continue
        try:
            parse_mode(value)
        except ValueError:
            errors.append(f"paths.{key} must be an octal permission string like \"644\"")

    web = _check_section(errors, config, "web")
    port = web.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536):
        errors.append("web.port must be an integer between 1 and 65535")

    workers = _check_section(errors, config, "workers")
    _check_positive(errors, "workers", "download", workers.get("download"), integer=True)
    _check_positive(errors, "workers", "match", workers.get("match"), integer=True)

    schedule = _check_section(errors, config, "schedule")
    _check_positive(errors, "schedule", "discovery_interval_minutes", schedule.get("discovery_interval_minutes"))
    _check_positive(errors, "schedule", "sweep_interval_minutes", schedule.get("sweep_interval_minutes"))
    run_on_startup = schedule.get("run_on_startup")
    if run_on_startup is not None and not isinstance(run_on_startup, bool):
        errors.append("schedule.run_on_startup must be true/false")

    ytdlp = _check_section(errors, config, "yt_dlp")
    for key in ("rate_seconds", "timeout_seconds", "socket_timeout"):
        _check_positive(errors, "yt_dlp", key, ytdlp.get(key))
    cookies = ytdlp.get("cookies")
    if cookies is not None and not isinstance(cookies, str):
        errors.append("yt_dlp.cookies must be a string")

    musicbrainz = _check_section(errors, config, "musicbrainz")
    _check_positive(errors, "musicbrainz", "timeout_seconds", musicbrainz.get("timeout_seconds"))
    _check_positive(errors, "musicbrainz", "cache_ttl_seconds", musicbrainz.get("cache_ttl_seconds"), integer=True)
    contact = musicbrainz.get("contact")
    if contact is not None and not isinstance(contact, str):
        errors.append("musicbrainz.contact must be a string")
    min_interval = musicbrainz.get("min_interval_seconds")
    if min_interval is not None and (isinstance(min_interval, bool) or not isinstance(min_interval, (int, float)) or min_interval < 0):
        errors.append("musicbrainz.min_interval_seconds must be a number >= 0")

    auth = _check_section(errors, config, "auth")
    secret = auth.get("secret")
    if secret is not None and (not isinstance(secret, str) or len(secret) < 16):
        errors.append("auth.secret must be a string of at least 16 characters")
    _check_positive(errors, "auth", "token_ttl_hours", auth.get("token_ttl_hours"))

    live = _check_section(errors, config, "live")
    batch_window = live.get("batch_window_ms")
    if batch_window is not None:
        if isinstance(batch_window, bool) or not isinstance(batch_window, int):
            errors.append("live.batch_window_ms must be an integer")
        elif not 10 <= batch_window <= 1000:
            errors.append("live.batch_window_ms must be between 10 and 1000")
    _check_positive(errors, "live", "max_pending", live.get("max_pending"), integer=True)

    _check_positive(errors, "config", "command_claim_timeout_seconds", config.get("command_claim_timeout_seconds"))

    jellyfin = config.get("jellyfin")
    if jellyfin is not None:
        if not isinstance(jellyfin, dict):
            errors.append("jellyfin must be an object")
        else:
            for key in ("server", "user", "password", "collection"):
                if not isinstance(jellyfin.get(key), str) or not jellyfin.get(key):
                    errors.append(f"jellyfin.{key} is required")
            rewrite = jellyfin.get("rewrite_path")
            if rewrite is not None and (
                not isinstance(rewrite, dict)
                or not isinstance(rewrite.get("from"), str)
                or not isinstance(rewrite.get("to"), str)
            ):
                errors.append("jellyfin.rewrite_path must have string from/to")
            _check_positive(errors, "jellyfin", "sync_interval_minutes", jellyfin.get("sync_interval_minutes"))
    return errors


def _parse_sources(raw):
    sources = []
    seen = set()
    for entry in raw or []:
        if isinstance(entry, str):
            spec = SourceSpec(playlist_id=entry.strip())
        else:
            spec = SourceSpec(
                playlist_id=str(entry.get("playlist_id") or entry.get("id")).strip(),
                name=entry.get("name"),
                account=entry.get("account"),
                jelly_playlist_id=entry.get("jelly_playlist"),
            )
        if spec.playlist_id and spec.playlist_id not in seen:
            seen.add(spec.playlist_id)
            sources.append(spec)
    return tuple(sources)


def _parse_jellyfin(raw):
    if not raw:
        return None
    rewrite = raw.get("rewrite_path") or {}
    return JellyfinSettings(
        server=raw["server"].rstrip("/"),
        user=raw["user"],
        password=raw["password"],
        collection=raw["collection"],
        rewrite_from=rewrite.get("from"),
        rewrite_to=rewrite.get("to"),
        sync_interval_minutes=raw.get("sync_interval_minutes") or JellyfinSettings.sync_interval_minutes,
    )


def build_settings(config):
    """Convert a validated config dict into :class:`SyncSettings`."""
    errors = validate_config(config)
    if errors:
        raise ValueError("; ".join(errors))
    paths = config.get("paths") or {}
    web = config.get("web") or {}
    workers = config.get("workers") or {}
    schedule = config.get("schedule") or {}
    ytdlp = config.get("yt_dlp") or {}
    musicbrainz = config.get("musicbrainz") or {}
    auth = config.get("auth") or {}
    live = config.get("live") or {}
    defaults = SyncSettings()
    return SyncSettings(
        sources=_parse_sources(config.get("sources")),
        accounts=dict(config.get("accounts") or {}),
        temp_dir=paths.get("temp"),
        music_dir=paths.get("music"),
        file_mode=parse_mode(paths["file_permissions"]) if paths.get("file_permissions") else None,
        dir_mode=parse_mode(paths["dir_permissions"]) if paths.get("dir_permissions") else None,
        host=web.get("host") or defaults.host,
        port=web.get("port") or defaults.port,
        download_workers=workers.get("download") or defaults.download_workers,
        match_workers=workers.get("match") or defaults.match_workers,
        discovery_interval_minutes=schedule.get("discovery_interval_minutes") or defaults.discovery_interval_minutes,
        sweep_interval_minutes=schedule.get("sweep_interval_minutes") or defaults.sweep_interval_minutes,
        run_on_startup=schedule.get("run_on_startup", defaults.run_on_startup),
        ytdlp_rate_seconds=ytdlp.get("rate_seconds") or defaults.ytdlp_rate_seconds,
        ytdlp_timeout_seconds=ytdlp.get("timeout_seconds") or defaults.ytdlp_timeout_seconds,
        ytdlp_socket_timeout=ytdlp.get("socket_timeout") or defaults.ytdlp_socket_timeout,
        audio_format=ytdlp.get("audio_format") or defaults.audio_format,
        cookie_file=ytdlp.get("cookies"),
        musicbrainz_timeout_seconds=musicbrainz.get("timeout_seconds") or defaults.musicbrainz_timeout_seconds,
        musicbrainz_min_interval_seconds=musicbrainz.get(
            "min_interval_seconds", defaults.musicbrainz_min_interval_seconds
        ),
        musicbrainz_cache_ttl_seconds=musicbrainz.get("cache_ttl_seconds") or defaults.musicbrainz_cache_ttl_seconds,
        musicbrainz_contact=musicbrainz.get("contact"),
        auth_secret=auth.get("secret"),
        token_ttl_hours=auth.get("token_ttl_hours") or defaults.token_ttl_hours,
        batch_window_ms=live.get("batch_window_ms") or defaults.batch_window_ms,
        max_pending=live.get("max_pending") or defaults.max_pending,
        command_claim_timeout_seconds=config.get("command_claim_timeout_seconds")
        or defaults.command_claim_timeout_seconds,
        jellyfin=_parse_jellyfin(config.get("jellyfin")),
    )
