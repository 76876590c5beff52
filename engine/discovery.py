import logging
import threading

from engine.errors import DiscoveryFailure
from engine.logging_utils import log_event
from engine.models import Item, SearchQuery, norm_string

logger = logging.getLogger(__name__)


def dedupe_entries(entries):
    """Keep the first occurrence of every video id, preserving order."""
    seen = set()
    ordered = []
    for entry in entries:
        if not entry.video_id or entry.video_id in seen:
            continue
        seen.add(entry.video_id)
        ordered.append(entry)
    return ordered


def _seed_query(entry):
    title = norm_string(entry.title)
    if not title:
        return None
    return SearchQuery(title=title, artist=norm_string(entry.channel))


class DiscoveryStage:
    """Creates store items for playlist entries that have never been seen.

    Runs are serialized; a run requested while another is active is skipped.
    """

    def __init__(self, store, enumerator, sources_provider, *, on_new=None, membership=None):
        self.store = store
        self.membership = membership
        self.enumerator = enumerator
        self.sources_provider = sources_provider
        self.on_new = on_new
        self._run_lock = threading.Lock()
        self.last_run_created = 0

    def run_once(self):
        if not self._run_lock.acquire(blocking=False):
            log_event(logging.INFO, "discovery_skipped", reason="run_active")
            return None
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self):
        entries = []
        failed = []
        sources = list(self.sources_provider())
        for source in sources:
            try:
                listed = dedupe_entries(self.enumerator.list_entries(source))
            except DiscoveryFailure as exc:
                failed.append(source.playlist_id)
                log_event(logging.ERROR, "discovery_failed", playlist_id=source.playlist_id, error=str(exc))
                continue
            entries.extend(listed)
            if self.membership is not None:
                self.membership.set_playlist_items(source.playlist_id, [entry.video_id for entry in listed])
        created = []
        for entry in dedupe_entries(entries):
            if self.store.get(entry.video_id) is not None:
                continue
            item = self.store.insert_if_absent(Item(id=entry.video_id, last_query=_seed_query(entry)))
            if item is None:
                continue
            created.append(item.id)
            if self.on_new:
                self.on_new(item.id)
        self.last_run_created = len(created)
        log_event(
            logging.INFO,
            "discovery_completed",
            sources=len(sources),
            failed_sources=failed,
            entries=len(entries),
            created=len(created),
        )
        return created
