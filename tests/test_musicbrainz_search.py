from __future__ import annotations

from pathlib import Path

import pytest

from app.musicbrainz.cache import MusicBrainzCache
from app.musicbrainz.client import MusicBrainzClient, MusicBrainzError, build_user_agent
from app.musicbrainz.service import (
    RecordingMatcher,
    RecordingSearch,
    build_search_ladder,
    recording_to_metadata,
    split_artists,
)
from engine.errors import MatchFailure
from engine.models import SearchQuery, TrackMetadata


def _recording(title: str, artist: str = "Band", album: str | None = "Album", rid: str = "rid-1") -> dict:
    payload = {"id": rid, "title": title, "artist-credit": [{"name": artist}]}
    if album:
        payload["releases"] = [{"title": album}]
    return payload


class FakeClient:
    def __init__(self, responses=None, *, error: Exception | None = None) -> None:
        self.responses = responses or {}
        self.error = error
        self.queries: list[str] = []

    def search_recordings(self, query, *, limit=3):
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.responses.get(query, [])


def test_split_artists_handles_features_and_brackets() -> None:
    assert split_artists("Alpha feat. Beta & Gamma") == ("Alpha", "Beta", "Gamma")
    assert split_artists("【Alpha】 ft Beta; (Gamma)") == ("Alpha", "Beta", "Gamma")
    assert split_artists("") == ()


def test_ladder_with_artist_and_album() -> None:
    ladder = build_search_ladder(SearchQuery(title="Song", artist="A, B", album="Album"))
    assert ladder == [
        RecordingSearch(title="Song", artists=("A", "B"), album="Album"),
        RecordingSearch(title="Song", artists=("A", "B")),
    ]
    assert ladder[0].to_lucene() == 'recording:"Song" AND artist:"A" AND artist:"B" AND release:"Album"'


def test_ladder_splits_dash_titles_both_ways() -> None:
    ladder = build_search_ladder(SearchQuery(title="Alpha feat. Beta - Song - Remastered"))
    assert ladder == [
        RecordingSearch(title="Song", artists=("Alpha", "Beta")),
        RecordingSearch(title="Alpha feat. Beta", artists=("Song",)),
    ]


def test_ladder_is_empty_without_search_hints() -> None:
    assert build_search_ladder(SearchQuery(title="Just A Title")) == []


def test_lucene_escapes_quotes() -> None:
    assert RecordingSearch(title='Say "Hi"').to_lucene() == 'recording:"Say \\"Hi\\""'


def test_recording_to_metadata_collects_credits() -> None:
    result = recording_to_metadata(
        {"id": "rid", "title": "Song", "artist-credit": [{"name": "A"}, {"name": "B"}, "junk"], "releases": []}
    )
    assert result == TrackMetadata(title="Song", artist=("A", "B"), album=None, recording_id="rid")
    assert recording_to_metadata({"title": ""}) is None


def test_matcher_returns_first_ladder_hit() -> None:
    query = SearchQuery(title="Song", artist="Band", album="Wrong Album")
    ladder = build_search_ladder(query)
    client = FakeClient({ladder[1].to_lucene(): [_recording("Song")]})

    result = RecordingMatcher(client).find_recording(query)

    assert result == TrackMetadata(title="Song", artist=("Band",), album="Album", recording_id="rid-1")
    assert client.queries == [ladder[0].to_lucene(), ladder[1].to_lucene()]


def test_matcher_uses_track_id_directly() -> None:
    client = FakeClient({"rid:abc-123": [_recording("Exact", rid="abc-123")]})
    result = RecordingMatcher(client).find_recording(SearchQuery(title="ignored", trackid="abc-123"))
    assert result.recording_id == "abc-123"
    assert client.queries == ["rid:abc-123"]

    with pytest.raises(MatchFailure):
        RecordingMatcher(FakeClient()).find_recording(SearchQuery(title="x", trackid="missing"))


def test_nightcore_uploads_short_circuit() -> None:
    client = FakeClient()
    result = RecordingMatcher(client).find_recording(SearchQuery(title="Nightcore - Some Song"))
    assert result == TrackMetadata(title="Some Song", artist=("Nightcore",), album="Nightcore")
    assert client.queries == []


def test_no_results_raises_match_failure() -> None:
    with pytest.raises(MatchFailure) as excinfo:
        RecordingMatcher(FakeClient()).find_recording(SearchQuery(title="Song", artist="Band"))
    assert excinfo.value.message == "No results found"

    with pytest.raises(MatchFailure):
        RecordingMatcher(FakeClient()).find_recording(SearchQuery(title="No hints"))


def test_service_errors_become_match_failure() -> None:
    client = FakeClient(error=MusicBrainzError("MusicBrainz returned HTTP 503"))
    with pytest.raises(MatchFailure) as excinfo:
        RecordingMatcher(client).find_recording(SearchQuery(title="Song", artist="Band"))
    assert "503" in excinfo.value.message


class _Response:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = b"{}" if payload is not None else b""

    def json(self):
        return self._payload


def test_client_caches_successful_responses(tmp_path: Path, monkeypatch) -> None:
    cache = MusicBrainzCache(str(tmp_path / "mb.json"))
    client = MusicBrainzClient(cache=cache, min_interval_seconds=0)
    calls = []

    def _get(url, **kwargs):
        calls.append(kwargs["params"])
        return _Response(200, {"recordings": [_recording("Song")]})

    monkeypatch.setattr(client._session, "get", _get)

    first = client.search_recordings('recording:"Song"')
    second = client.search_recordings('recording:"Song"')

    assert first == second
    assert len(calls) == 1
    assert calls[0]["fmt"] == "json"
    assert (tmp_path / "mb.json").exists()


def test_client_does_not_cache_failures(tmp_path: Path, monkeypatch) -> None:
    client = MusicBrainzClient(cache=MusicBrainzCache(str(tmp_path / "mb.json")), min_interval_seconds=0)
    responses = [_Response(503), _Response(200, {"recordings": []})]
    monkeypatch.setattr(client._session, "get", lambda url, **kwargs: responses.pop(0))

    with pytest.raises(MusicBrainzError):
        client.search_recordings("x")
    assert client.search_recordings("x") == []


def test_cache_expires_entries(tmp_path: Path, monkeypatch) -> None:
    import app.musicbrainz.cache as cache_module

    cache = MusicBrainzCache(str(tmp_path / "mb.json"))
    monkeypatch.setattr(cache_module.time, "time", lambda: 1000.0)
    cache.set("key", {"v": 1}, 10)
    assert cache.get("key") == {"v": 1}
    monkeypatch.setattr(cache_module.time, "time", lambda: 2000.0)
    assert cache.get("key") is None


def test_user_agent_carries_operator_contact(monkeypatch) -> None:
    assert build_user_agent() == "myousync/0.1.0"
    assert build_user_agent("  ") == "myousync/0.1.0"
    assert build_user_agent("ops@example.org") == "myousync/0.1.0 ( ops@example.org )"

    client = MusicBrainzClient(min_interval_seconds=0, user_agent=build_user_agent("ops@example.org"))
    seen = []

    def _get(url, **kwargs):
        seen.append(kwargs["headers"]["User-Agent"])
        return _Response(200, {"recordings": []})

    monkeypatch.setattr(client._session, "get", _get)
    client.search_recordings("x")
    assert seen == ["myousync/0.1.0 ( ops@example.org )"]
