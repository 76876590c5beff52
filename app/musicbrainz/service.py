"""Recording lookup policy on top of the MusicBrainz search API.

A query is tried through a short ladder of Lucene searches and the first
recording returned wins:

1. a track id looks up that exact recording;
2. with artist or album known: title + artists + album, then title + artists;
3. with ``"Artist - Title"`` style titles: both split orders.

Nightcore uploads are never on MusicBrainz and short-circuit to a synthetic
result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from app.musicbrainz.client import MusicBrainzClient, MusicBrainzError
from engine.errors import MatchFailure
from engine.models import SearchQuery, TrackMetadata, norm_string

logger = logging.getLogger(__name__)

_ARTIST_SPLIT_RE = re.compile(r"\bft\.?|\bfeat\.?|;|&", re.IGNORECASE)
_BRACKETS = "()[]【】"
NIGHTCORE = "Nightcore"


@dataclass(frozen=True)
class RecordingSearch:
    title: str
    artists: tuple[str, ...] = field(default_factory=tuple)
    album: str | None = None

    def to_lucene(self) -> str:
        parts = [f'recording:"{_lucene_escape(self.title)}"']
        parts.extend(f'artist:"{_lucene_escape(artist)}"' for artist in self.artists)
        if self.album:
            parts.append(f'release:"{_lucene_escape(self.album)}"')
        return " AND ".join(parts)


def _lucene_escape(text: str) -> str:
    return (text or "").replace("\\", "\\\\").replace('"', '\\"')


def split_artists(text: str) -> tuple[str, ...]:
    artists = []
    for part in _ARTIST_SPLIT_RE.split(text or ""):
        cleaned = part.strip()
        for bracket in _BRACKETS:
            cleaned = cleaned.replace(bracket, "")
        cleaned = cleaned.strip()
        if cleaned:
            artists.append(cleaned)
    return tuple(artists)


def build_search_ladder(query: SearchQuery) -> list[RecordingSearch]:
    ladder = []
    if query.album or query.artist:
        artists = tuple(a.strip() for a in (query.artist or "").split(",") if a.strip())
        ladder.append(RecordingSearch(title=query.title, artists=artists, album=query.album))
        ladder.append(RecordingSearch(title=query.title, artists=artists))
    if " - " in query.title:
        left, right = query.title.split(" - ", 1)
        right = right.split(" - ", 1)[0]
        if left.strip() and right.strip():
            ladder.append(RecordingSearch(title=right.strip(), artists=split_artists(left)))
            ladder.append(RecordingSearch(title=left.strip(), artists=split_artists(right)))
    return ladder


def nightcore_result(ladder: list[RecordingSearch], fallback_title: str) -> TrackMetadata | None:
    for search in ladder:
        if any("NIGHTCORE" in artist.upper() for artist in search.artists):
            return TrackMetadata(title=search.title or fallback_title, artist=(NIGHTCORE,), album=NIGHTCORE)
    return None


def recording_to_metadata(recording: dict[str, Any]) -> TrackMetadata | None:
    title = norm_string(recording.get("title"))
    if not title:
        return None
    artists = []
    for credit in recording.get("artist-credit") or []:
        name = credit.get("name") if isinstance(credit, dict) else None
        name = norm_string(name)
        if name:
            artists.append(name)
    releases = recording.get("releases") or []
    album = norm_string(releases[0].get("title")) if releases and isinstance(releases[0], dict) else None
    return TrackMetadata(
        title=title,
        artist=tuple(artists),
        album=album,
        recording_id=norm_string(recording.get("id")),
    )


class RecordingMatcher:
    def __init__(self, client: MusicBrainzClient) -> None:
        self.client = client

    def _first(self, lucene: str) -> TrackMetadata | None:
        for recording in self.client.search_recordings(lucene, limit=3):
            if isinstance(recording, dict):
                result = recording_to_metadata(recording)
                if result:
                    return result
        return None

    def find_recording(self, query: SearchQuery) -> TrackMetadata:
        """Resolve ``query`` to the best recording or raise ``MatchFailure``."""
        try:
            if query.trackid:
                result = self._first(f"rid:{query.trackid}")
                if result is None:
                    raise MatchFailure(f"No recording with id {query.trackid}")
                return result

            ladder = build_search_ladder(query)
            if not ladder:
                raise MatchFailure("Query has no artist, album or 'Artist - Title' form to search by")
            shortcut = nightcore_result(ladder, query.title)
            if shortcut:
                logger.info("Nightcore upload detected for %r", query.title)
                return shortcut

            errors = []
            for search in ladder:
                lucene = search.to_lucene()
                logger.info("Searching MusicBrainz by %s", lucene)
                try:
                    result = self._first(lucene)
                except MusicBrainzError as exc:
                    errors.append(str(exc))
                    continue
                if result:
                    return result
        except MusicBrainzError as exc:
            raise MatchFailure(str(exc)) from exc
        if errors and len(errors) == len(ladder):
            raise MatchFailure(errors[-1])
        raise MatchFailure("No results found")
