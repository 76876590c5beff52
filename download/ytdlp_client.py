"""Audio extraction through the yt-dlp Python API."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from engine.errors import DownloadTimeout, FetchFailure
from engine.fileops import AUDIO_EXTENSIONS
from engine.limiter import RateLimiter
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)

_FORMAT_AUDIO = "bestaudio/best"
_SPONSORBLOCK_CATEGORIES = ["music_offtopic"]


@dataclass(frozen=True)
class DownloadResult:
    path: str
    info: dict[str, Any]


def build_video_url(video_id):
    if video_id.startswith("http://") or video_id.startswith("https://"):
        return video_id
    return f"https://www.youtube.com/watch?v={video_id}"


def _find_output(staging_dir, video_id, info):
    for download in (info or {}).get("requested_downloads") or []:
        path = download.get("filepath")
        if path and os.path.exists(path):
            return path
    try:
        names = sorted(os.listdir(staging_dir))
    except FileNotFoundError:
        return None
    for name in names:
        stem, ext = os.path.splitext(name)
        if stem == video_id and ext.lower() in AUDIO_EXTENSIONS:
            return os.path.join(staging_dir, name)
    return None


class YtDlpClient:
    def __init__(
        self,
        *,
        rate_seconds: float = 10,
        timeout_seconds: float = 900,
        socket_timeout: float = 30,
        audio_format: str = "best",
        cookie_file: str | None = None,
    ) -> None:
        self.limiter = RateLimiter(rate_seconds)
        self.timeout_seconds = timeout_seconds
        self.socket_timeout = socket_timeout
        self.audio_format = audio_format
        self.cookie_file = cookie_file

    def build_options(self, staging_dir, progress_hook):
        opts = {
            "format": _FORMAT_AUDIO,
            "outtmpl": os.path.join(staging_dir, "%(id)s.%(ext)s"),
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "socket_timeout": self.socket_timeout,
            "retries": 3,
            "progress_hooks": [progress_hook],
            "postprocessors": [
                {
                    "key": "SponsorBlock",
                    "categories": list(_SPONSORBLOCK_CATEGORIES),
                    "when": "after_filter",
                },
                {
                    "key": "FFmpegExtractAudio",
                    "preferredcodec": self.audio_format,
                },
                {
                    "key": "ModifyChapters",
                    "remove_sponsor_segments": list(_SPONSORBLOCK_CATEGORIES),
                },
            ],
        }
        if self.cookie_file:
            opts["cookiefile"] = self.cookie_file
        return opts

    def download_audio(self, video_id: str, staging_dir: str) -> DownloadResult:
        """Download ``video_id`` into ``staging_dir`` and return the finished file.

        Raises ``FetchFailure`` (``DownloadTimeout`` past the deadline).
        """
        os.makedirs(staging_dir, exist_ok=True)
        self.limiter.wait()
        deadline = time.monotonic() + self.timeout_seconds

        def _progress(_status):
            if time.monotonic() > deadline:
                raise DownloadTimeout(f"Download exceeded {self.timeout_seconds}s", item_id=video_id)

        url = build_video_url(video_id)
        log_event(logging.INFO, "download_started", video_id=video_id, url=url)
        try:
            with YoutubeDL(self.build_options(staging_dir, _progress)) as ydl:
                info = ydl.extract_info(url, download=True)
                info = ydl.sanitize_info(info) if info else {}
        except DownloadTimeout:
            raise
        except (DownloadError, ExtractorError) as exc:
            cause = (getattr(exc, "exc_info", None) or (None, None, None))[1]
            if isinstance(cause, DownloadTimeout):
                raise DownloadTimeout(f"Download exceeded {self.timeout_seconds}s", item_id=video_id) from exc
            raise FetchFailure(str(exc) or exc.__class__.__name__, item_id=video_id) from exc
        except OSError as exc:
            raise FetchFailure(f"Filesystem error: {exc}", item_id=video_id) from exc
        if time.monotonic() > deadline:
            raise DownloadTimeout(f"Download exceeded {self.timeout_seconds}s", item_id=video_id)
        path = _find_output(staging_dir, video_id, info)
        if not path:
            raise FetchFailure("yt-dlp finished without producing an audio file", item_id=video_id)
        return DownloadResult(path=path, info=info)
