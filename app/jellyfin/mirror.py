import logging
import os
import threading

from app.jellyfin.client import JellyfinError
from engine.logging_utils import log_event
from engine.models import FetchStatus

logger = logging.getLogger(__name__)


def rewrite_path(path, rewrite_from, rewrite_to):
    """Translate a local library path into the path the Jellyfin server sees."""
    if not rewrite_from or rewrite_to is None:
        return path
    base = os.path.normpath(rewrite_from)
    norm = os.path.normpath(path)
    if norm == base or not norm.startswith(base.rstrip(os.sep) + os.sep):
        return path
    relative = os.path.relpath(norm, base)
    return os.path.join(rewrite_to, relative)


class JellyfinMirror:
    """Keeps Jellyfin playlists in the order of their YouTube counterparts.

    Only playlists with a Jellyfin playlist id and unmirrored rows are touched.
    Videos are mapped to Jellyfin items by the path of their archived file.
    """

    def __init__(self, store, library, membership, client, sources_provider, *, settings):
        self.store = store
        self.library = library
        self.membership = membership
        self.client = client
        self.sources_provider = sources_provider
        self.settings = settings
        self._run_lock = threading.Lock()

    def run_once(self):
        if not self._run_lock.acquire(blocking=False):
            log_event(logging.INFO, "jellyfin_sync_skipped", reason="run_active")
            return None
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self):
        linked = [source for source in self.sources_provider() if source.jelly_playlist_id]
        pending = [source for source in linked if self.membership.needs_mirror(source.playlist_id)]
        if not pending:
            logger.debug("Nothing to mirror to Jellyfin")
            return []
        try:
            self.client.login()
            self._map_items(pending)
        except JellyfinError as exc:
            log_event(logging.ERROR, "jellyfin_sync_failed", error=str(exc))
            return []

        mirrored = []
        for source in pending:
            ids = []
            for video_id, jelly_id in self.membership.mapped_items(source.playlist_id):
                item = self.store.get(video_id)
                if item is None or item.status != FetchStatus.CATEGORIZED:
                    # File is gone or moving; map it again once it is archived.
                    self.membership.forget_jelly_id(video_id)
                    continue
                ids.append(jelly_id)
            try:
                self.client.update_playlist(source.jelly_playlist_id, ids)
            except JellyfinError as exc:
                log_event(
                    logging.ERROR,
                    "jellyfin_playlist_update_failed",
                    playlist_id=source.playlist_id,
                    jelly_playlist_id=source.jelly_playlist_id,
                    error=str(exc),
                )
                continue
            self.membership.mark_mirrored(source.playlist_id)
            mirrored.append(source.playlist_id)
            log_event(
                logging.INFO,
                "jellyfin_playlist_updated",
                playlist_id=source.playlist_id,
                jelly_playlist_id=source.jelly_playlist_id,
                items=len(ids),
            )
        return mirrored

    def _map_items(self, sources):
        unmapped = self.membership.unmapped_video_ids([source.playlist_id for source in sources])
        local = {}
        for video_id in unmapped:
            item = self.store.get(video_id)
            if item is None or item.status != FetchStatus.CATEGORIZED:
                continue
            path = self.library.locate(item)
            if path:
                local[video_id] = os.path.normpath(
                    rewrite_path(path, self.settings.rewrite_from, self.settings.rewrite_to)
                )
        if not local:
            return
        by_path = {os.path.normpath(entry["Path"]): entry["Id"] for entry in self.client.list_audio_items()}
        for video_id, path in local.items():
            jelly_id = by_path.get(path)
            if jelly_id:
                self.membership.set_jelly_id(video_id, jelly_id)
            else:
                logger.debug("Jellyfin has not indexed %s at %s yet", video_id, path)
