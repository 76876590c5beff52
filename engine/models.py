"""Item records tracked by the store and the query/result payloads attached to them."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class FetchStatus(str, Enum):
    NOT_FETCHED = "NotFetched"
    FETCHED = "Fetched"
    FETCH_ERROR = "FetchError"
    BRAINZ_ERROR = "BrainzError"
    CATEGORIZED = "Categorized"
    DISABLED = "Disabled"


ERROR_STATUSES = frozenset({FetchStatus.FETCH_ERROR, FetchStatus.BRAINZ_ERROR})
DOWNLOADED_STATUSES = frozenset({FetchStatus.FETCHED, FetchStatus.BRAINZ_ERROR, FetchStatus.CATEGORIZED})


def now_ms() -> int:
    return int(time.time() * 1000)


def norm_string(value: Any) -> str | None:
    """Trim a value and map empty strings to ``None``."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class SearchQuery:
    title: str
    artist: str | None = None
    album: str | None = None
    trackid: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SearchQuery":
        if not isinstance(payload, dict):
            raise ValueError("query must be an object")
        title = norm_string(payload.get("title"))
        if not title:
            raise ValueError("query.title is required")
        return cls(
            title=title,
            artist=norm_string(payload.get("artist")),
            album=norm_string(payload.get("album")),
            trackid=norm_string(payload.get("trackid")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trackid": self.trackid,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
        }


@dataclass(frozen=True)
class TrackMetadata:
    title: str
    artist: tuple[str, ...] = ()
    album: str | None = None
    recording_id: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TrackMetadata":
        if not isinstance(payload, dict):
            raise ValueError("result must be an object")
        title = norm_string(payload.get("title"))
        if not title:
            raise ValueError("result.title is required")
        raw_artists = payload.get("artist")
        if isinstance(raw_artists, str):
            raw_artists = [raw_artists]
        artists = tuple(a for a in (norm_string(v) for v in (raw_artists or [])) if a)
        return cls(
            title=title,
            artist=artists,
            album=norm_string(payload.get("album")),
            recording_id=norm_string(payload.get("recording_id")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "recording_id": self.recording_id,
            "title": self.title,
            "artist": list(self.artist),
            "album": self.album,
        }

    @property
    def primary_artist(self) -> str | None:
        return self.artist[0] if self.artist else None


@dataclass(frozen=True)
class Item:
    id: str
    status: FetchStatus = FetchStatus.NOT_FETCHED
    fetch_time: int | None = None
    last_update: int = 0
    last_query: SearchQuery | None = None
    last_result: TrackMetadata | None = None
    override_query: SearchQuery | None = None
    override_result: TrackMetadata | None = None
    last_error: str | None = None
    # Location of the audio file in scratch or library storage; never sent to clients.
    file_path: str | None = None

    def evolve(self, **changes: Any) -> "Item":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "fetch_time": self.fetch_time,
            "last_update": self.last_update,
            "last_query": self.last_query.to_dict() if self.last_query else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "override_query": self.override_query.to_dict() if self.override_query else None,
            "override_result": self.override_result.to_dict() if self.override_result else None,
            "last_error": self.last_error,
        }
