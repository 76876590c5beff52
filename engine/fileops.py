import logging
import os
import shutil

from engine.paths import ensure_dir, is_within

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {".mp3", ".m4a", ".mp4", ".opus", ".ogg", ".oga", ".flac", ".webm", ".aac", ".wav"}


def resolve_collision_path(path):
    if not os.path.exists(path):
        return path
    stem, ext = os.path.splitext(path)
    attempt = 2
    while True:
        candidate = f"{stem} ({attempt}){ext}"
        if not os.path.exists(candidate):
            return candidate
        attempt += 1


def atomic_move(src, dst):
    """Move ``src`` to ``dst`` so ``dst`` only ever holds a complete file."""
    ensure_dir(os.path.dirname(dst))
    try:
        os.replace(src, dst)
        return dst
    except OSError:
        # Cross-device: copy next to the target, then rename into place.
        partial = f"{dst}.part"
        shutil.copy2(src, partial)
        os.replace(partial, dst)
        os.remove(src)
        return dst


def remove_empty_parents(path, roots):
    """Remove empty directories above ``path`` without leaving or deleting any root."""
    roots = [os.path.realpath(root) for root in roots if root]
    current = os.path.dirname(os.path.realpath(path))
    while current and current not in roots and any(is_within(current, root) for root in roots):
        try:
            os.rmdir(current)
        except OSError:
            # not empty (or already gone)
            return
        logger.debug("Removed empty directory %s", current)
        current = os.path.dirname(current)


def scratch_files(temp_dir, video_id):
    """Yield completed downloads for ``video_id`` in the scratch root."""
    try:
        names = os.listdir(temp_dir)
    except FileNotFoundError:
        return
    for name in sorted(names):
        stem, ext = os.path.splitext(name)
        if stem == video_id and ext.lower() in AUDIO_EXTENSIONS:
            yield os.path.join(temp_dir, name)


def find_scratch_file(temp_dir, video_id):
    return next(scratch_files(temp_dir, video_id), None)
