"""Download stage: NotFetched items become Fetched (or FetchError)."""

from __future__ import annotations

import logging
import os
import shutil
from typing import Callable, Optional, Protocol

from engine.errors import FetchFailure
from engine.fileops import atomic_move, scratch_files
from engine.logging_utils import log_event
from engine.models import FetchStatus, now_ms

logger = logging.getLogger(__name__)


class _Downloader(Protocol):
    def download_audio(self, video_id: str, staging_dir: str):
        """Download audio for a video into ``staging_dir`` and return a result with ``path``/``info``."""


class DownloadStage:
    """Claims one item at a time and hands the finished file to the scratch root.

    yt-dlp writes into ``<staging>/<id>/``; only the completed file is renamed
    into the scratch root, so later stages never see a partial download.
    """

    def __init__(
        self,
        store,
        downloader: _Downloader,
        *,
        temp_dir: str,
        staging_dir: str,
        on_fetched: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.downloader = downloader
        self.temp_dir = temp_dir
        self.staging_dir = staging_dir
        self.on_fetched = on_fetched

    def process(self, item_id: str) -> None:
        fetched = False
        with self.store.claim(item_id):
            item = self.store.get(item_id)
            if item is None or item.status != FetchStatus.NOT_FETCHED:
                logger.debug("Download skipped for %s (status=%s)", item_id, item.status if item else None)
                return
            fetched = self._download(item_id)
        if fetched and self.on_fetched:
            self.on_fetched(item_id)

    def _download(self, item_id: str) -> bool:
        staging = os.path.join(self.staging_dir, item_id)
        try:
            result = self.downloader.download_audio(item_id, staging)
            ext = os.path.splitext(result.path)[1]
            final_path = atomic_move(result.path, os.path.join(self.temp_dir, f"{item_id}{ext}"))
        except FetchFailure as exc:
            self._record_failure(item_id, exc.message)
            return False
        except OSError as exc:
            self._record_failure(item_id, f"Filesystem error: {exc}")
            return False
        except Exception as exc:
            logger.exception("Unexpected download failure for %s", item_id)
            self._record_failure(item_id, str(exc) or exc.__class__.__name__)
            return False
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        # Another extension from an earlier attempt would shadow the new file.
        for stale in list(scratch_files(self.temp_dir, item_id)):
            if stale != final_path:
                os.remove(stale)

        self.store.put_video_info(item_id, result.info)
        self.store.upsert(
            item_id,
            lambda current: current.evolve(
                status=FetchStatus.FETCHED,
                fetch_time=now_ms(),
                last_error=None,
                file_path=final_path,
            ),
        )
        log_event(logging.INFO, "download_completed", video_id=item_id, file_path=final_path)
        return True

    def _record_failure(self, item_id: str, reason: str) -> None:
        self.store.upsert(
            item_id,
            lambda current: current.evolve(
                status=FetchStatus.FETCH_ERROR,
                fetch_time=now_ms(),
                last_error=reason,
            ),
        )
        log_event(logging.WARNING, "download_failed", video_id=item_id, error=reason)
