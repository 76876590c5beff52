"""Match stage: resolve metadata, tag the file and archive it into the library."""

from __future__ import annotations

import logging
from typing import Protocol

from engine.errors import ArchiveFailure, MatchFailure
from engine.logging_utils import log_event
from engine.models import DOWNLOADED_STATUSES, FetchStatus, SearchQuery, norm_string
from metadata.tagger import apply_tags

logger = logging.getLogger(__name__)


class _Matcher(Protocol):
    def find_recording(self, query: SearchQuery):
        """Return the best TrackMetadata for ``query`` or raise MatchFailure."""


def query_from_info(info) -> SearchQuery | None:
    """Derive a search query from stored yt-dlp info (music fields first)."""
    if not isinstance(info, dict):
        return None
    title = norm_string(info.get("track")) or norm_string(info.get("title"))
    if not title:
        return None
    artist = norm_string(info.get("artist"))
    if not artist and isinstance(info.get("artists"), list):
        artist = norm_string(", ".join(str(a) for a in info["artists"] if a))
    return SearchQuery(title=title, artist=artist, album=norm_string(info.get("album")))


class MatchStage:
    """Claims downloaded items and drives them to Categorized or BrainzError.

    ``override_result`` bypasses search; ``override_query`` replaces the query
    derived from the download info. Tag or move failures leave the file where
    it was.
    """

    def __init__(self, store, matcher: _Matcher, library, *, tagger=apply_tags) -> None:
        self.store = store
        self.matcher = matcher
        self.library = library
        self.tagger = tagger

    def process(self, item_id: str) -> None:
        with self.store.claim(item_id):
            item = self.store.get(item_id)
            if item is None or item.status not in DOWNLOADED_STATUSES:
                logger.debug("Match skipped for %s (status=%s)", item_id, item.status if item else None)
                return
            self._match(item)

    def _resolve_query(self, item):
        if item.override_query is not None:
            return item.override_query
        derived = query_from_info(self.store.get_video_info(item.id))
        return derived or item.last_query

    def _match(self, item):
        query = None
        searched = False
        if item.override_result is not None:
            result = item.override_result
        else:
            query = self._resolve_query(item)
            if query is None:
                self._fail(item.id, None, "No title available to build a search query", searched=True)
                return
            searched = True
            try:
                result = self.matcher.find_recording(query)
            except MatchFailure as exc:
                self._fail(item.id, query, exc.message, searched=True)
                return
            except Exception as exc:
                logger.exception("Metadata search failed for %s", item.id)
                self._fail(item.id, query, str(exc) or exc.__class__.__name__, searched=True)
                return

        source = self.library.locate(item)
        try:
            if not source:
                raise ArchiveFailure("Downloaded file is missing", item_id=item.id)
            self.tagger(source, result, item.id)
            dest = self.library.archive(source, result, item.id)
        except ArchiveFailure as exc:
            self._fail(item.id, query, exc.message, searched=searched, result=result, file_path=source)
            return
        except OSError as exc:
            self._fail(item.id, query, f"Filesystem error: {exc}", searched=searched, result=result, file_path=source)
            return

        def _categorize(current):
            changes = {
                "status": FetchStatus.CATEGORIZED,
                "last_error": None,
                "file_path": dest,
            }
            if searched:
                changes["last_query"] = query
                changes["last_result"] = result
            return current.evolve(**changes)

        self.store.upsert(item.id, _categorize)
        log_event(
            logging.INFO,
            "match_completed",
            video_id=item.id,
            title=result.title,
            artist=list(result.artist),
            album=result.album,
            overridden=not searched,
            file_path=dest,
        )

    def _fail(self, item_id, query, reason, *, searched, result=None, file_path=None):
        def _brainz_error(current):
            changes = {"status": FetchStatus.BRAINZ_ERROR, "last_error": reason}
            if searched:
                changes["last_query"] = query
                changes["last_result"] = result
            if file_path:
                changes["file_path"] = file_path
            return current.evolve(**changes)

        self.store.upsert(item_id, _brainz_error)
        log_event(logging.WARNING, "match_failed", video_id=item_id, error=reason)
