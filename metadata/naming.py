"""Library path construction from resolved track metadata."""

from __future__ import annotations

import os
import re
from typing import Any

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MULTISPACE_RE = re.compile(r"\s+")
MAX_COMPONENT_LENGTH = 64
FALLBACK_COMPONENT = "song"


def sanitize_component(text: Any, *, fallback: str = FALLBACK_COMPONENT) -> str:
    """Return an OS-safe filesystem component of bounded length."""
    sanitized = _INVALID_FS_CHARS_RE.sub("", str(text or ""))
    sanitized = _MULTISPACE_RE.sub(" ", sanitized).strip()
    sanitized = sanitized[:MAX_COMPONENT_LENGTH].strip()
    sanitized = sanitized.rstrip(" .").lstrip(".")
    return sanitized or fallback


def build_library_relative_path(result, ext: str) -> str:
    """``<artist>/<album or title>/<title>.<ext>`` for a resolved recording."""
    artist = sanitize_component(result.primary_artist)
    album = sanitize_component(result.album or result.title)
    title = sanitize_component(result.title)
    ext = str(ext or "").lstrip(".")
    filename = f"{title}.{ext}" if ext else title
    return os.path.join(artist, album, filename)
