from __future__ import annotations

import threading
from pathlib import Path

import engine.youtube as youtube
from engine.config import SourceSpec
from engine.discovery import DiscoveryStage, dedupe_entries
from engine.errors import DiscoveryFailure
from engine.membership import PlaylistMembership
from engine.models import FetchStatus, Item, SearchQuery
from engine.record_store import RecordStore
from engine.sources import SourceStore, merge_sources
from engine.youtube import PlaylistEntry, PlaylistEnumerator


class FakeEnumerator:
    def __init__(self, playlists, failing=()) -> None:
        self.playlists = playlists
        self.failing = set(failing)
        self.calls: list[str] = []

    def list_entries(self, source):
        self.calls.append(source.playlist_id)
        if source.playlist_id in self.failing:
            raise DiscoveryFailure(f"Playlist {source.playlist_id} could not be enumerated")
        return list(self.playlists.get(source.playlist_id, []))


def _store(tmp_path: Path) -> RecordStore:
    return RecordStore(str(tmp_path / "db.sqlite"))


def test_dedupe_entries_keeps_first_occurrence() -> None:
    entries = [PlaylistEntry("a", "one"), PlaylistEntry("b"), PlaylistEntry("a", "dup"), PlaylistEntry("")]
    assert [(entry.video_id, entry.title) for entry in dedupe_entries(entries)] == [("a", "one"), ("b", None)]


def test_discovery_creates_only_new_items(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="known"))
    store.upsert("known", lambda item: item.evolve(status=FetchStatus.DISABLED))
    enumerator = FakeEnumerator(
        {
            "PL1": [PlaylistEntry("known"), PlaylistEntry("abc", "Song", "Band - Topic")],
            "PL2": [PlaylistEntry("abc", "Song"), PlaylistEntry("def")],
        }
    )
    created_ids: list[str] = []
    stage = DiscoveryStage(
        store,
        enumerator,
        lambda: [SourceSpec("PL1"), SourceSpec("PL2")],
        on_new=created_ids.append,
    )

    assert stage.run_once() == ["abc", "def"]
    assert created_ids == ["abc", "def"]
    assert store.require("known").status == FetchStatus.DISABLED
    assert store.require("abc").status == FetchStatus.NOT_FETCHED
    assert store.require("abc").last_query == SearchQuery(title="Song", artist="Band - Topic")

    assert stage.run_once() == []


def test_failing_playlist_does_not_stop_the_cycle(tmp_path: Path) -> None:
    store = _store(tmp_path)
    enumerator = FakeEnumerator({"PL2": [PlaylistEntry("abc")]}, failing={"PL1"})
    stage = DiscoveryStage(store, enumerator, lambda: [SourceSpec("PL1"), SourceSpec("PL2")])

    assert stage.run_once() == ["abc"]
    assert enumerator.calls == ["PL1", "PL2"]


def test_overlapping_run_is_skipped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    entered = threading.Event()
    release = threading.Event()

    class BlockingEnumerator:
        def list_entries(self, source):
            entered.set()
            release.wait(5)
            return [PlaylistEntry("abc")]

    stage = DiscoveryStage(store, BlockingEnumerator(), lambda: [SourceSpec("PL1")])
    results = []
    thread = threading.Thread(target=lambda: results.append(stage.run_once()))
    thread.start()
    assert entered.wait(5)

    assert stage.run_once() is None

    release.set()
    thread.join(5)
    assert results == [["abc"]]


def test_enumerator_falls_back_to_ytdlp(monkeypatch) -> None:
    calls = []

    def _fallback(playlist_id, *, cookie_file=None, socket_timeout=30):
        calls.append((playlist_id, cookie_file))
        return [PlaylistEntry("abc")]

    monkeypatch.setattr(youtube, "get_playlist_videos_fallback", _fallback)
    enumerator = PlaylistEnumerator({}, cookie_file="/tokens/cookies.txt")

    assert enumerator.list_entries(SourceSpec("PL1")) == [PlaylistEntry("abc")]
    assert calls == [("PL1", "/tokens/cookies.txt")]


def test_enumerator_wraps_fallback_errors(monkeypatch) -> None:
    def _fallback(playlist_id, **_kwargs):
        raise RuntimeError("HTTP Error 404")

    monkeypatch.setattr(youtube, "get_playlist_videos_fallback", _fallback)

    try:
        PlaylistEnumerator().list_entries(SourceSpec("PL1"))
        assert False, "expected DiscoveryFailure"
    except DiscoveryFailure as exc:
        assert "PL1" in exc.message


def test_api_client_pages_through_playlist_items() -> None:
    pages = [
        {
            "items": [
                {"snippet": {"title": "One", "videoOwnerChannelTitle": "Chan"}, "contentDetails": {"videoId": "a"}},
                {"snippet": {"title": "Deleted video"}, "contentDetails": {}},
            ],
            "nextPageToken": "p2",
        },
        {"items": [{"snippet": {"title": "Two"}, "contentDetails": {"videoId": "b"}}]},
    ]
    requested = []

    class _Request:
        def __init__(self, page):
            self.page = page

        def execute(self):
            return pages[self.page]

    class _Items:
        def list(self, **kwargs):
            requested.append(kwargs["pageToken"])
            return _Request(0 if kwargs["pageToken"] is None else 1)

    class _Client:
        def playlistItems(self):
            return _Items()

    enumerator = PlaylistEnumerator({"main": _Client()})
    entries = enumerator.list_entries(SourceSpec("PL1"))

    assert entries == [PlaylistEntry("a", "One", "Chan"), PlaylistEntry("b", "Two", None)]
    assert requested == [None, "p2"]


def test_registered_sources_merge_after_configured(tmp_path: Path) -> None:
    sources = SourceStore(str(tmp_path / "db.sqlite"))
    sources.add("PL2", "Registered")
    sources.add("PL1")
    merged = merge_sources([SourceSpec("PL1", account="main")], sources.enabled_sources())

    assert [(source.playlist_id, source.account) for source in merged] == [("PL1", "main"), ("PL2", None)]
    assert sources.remove("PL2") is True
    assert sources.remove("PL2") is False


def test_discovery_records_playlist_order_for_listed_sources(tmp_path: Path) -> None:
    store = _store(tmp_path)
    membership = PlaylistMembership(str(tmp_path / "db.sqlite"))
    membership.set_playlist_items("PL2", ["old"])
    enumerator = FakeEnumerator(
        {"PL1": [PlaylistEntry("b"), PlaylistEntry("a"), PlaylistEntry("b")]},
        failing={"PL2"},
    )
    stage = DiscoveryStage(
        store,
        enumerator,
        lambda: [SourceSpec("PL1"), SourceSpec("PL2")],
        membership=membership,
    )

    stage.run_once()

    assert membership.video_ids("PL1") == ["b", "a"]
    assert membership.video_ids("PL2") == ["old"]


def test_registered_source_keeps_its_jellyfin_playlist(tmp_path: Path) -> None:
    sources = SourceStore(str(tmp_path / "db.sqlite"))
    sources.add("PL1", "Mix", "jelly-1")
    sources.add("PL2")

    assert sorted(sources.enabled_sources(), key=lambda source: source.playlist_id) == [
        SourceSpec("PL1", name="Mix", jelly_playlist_id="jelly-1"),
        SourceSpec("PL2"),
    ]
