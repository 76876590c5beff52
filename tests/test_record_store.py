from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from engine.errors import Conflict, ItemBusy, NotFound, StoreInvariantError
from engine.models import FetchStatus, Item, SearchQuery, TrackMetadata
from engine.record_store import RecordStore


def _store(tmp_path: Path) -> RecordStore:
    return RecordStore(str(tmp_path / "db.sqlite"))


def test_insert_if_absent_creates_not_fetched_item_once(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.insert_if_absent(Item(id="abc"))
    assert first is not None
    assert first.status == FetchStatus.NOT_FETCHED
    assert first.last_update > 0
    assert store.insert_if_absent(Item(id="abc")) is None
    assert [item.id for item in store.list()] == ["abc"]


def test_insert_if_absent_rejects_non_initial_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(Conflict):
        store.insert_if_absent(Item(id="abc", status=FetchStatus.FETCHED))
    assert store.get("abc") is None


def test_upsert_unknown_id_raises_not_found(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(NotFound):
        store.upsert("missing", lambda item: item)
    with pytest.raises(NotFound):
        store.require("missing")


def test_upsert_rejects_illegal_transition_and_keeps_item(tmp_path: Path) -> None:
    store = _store(tmp_path)
    created = store.insert_if_absent(Item(id="abc"))
    with pytest.raises(Conflict):
        store.upsert("abc", lambda item: item.evolve(status=FetchStatus.CATEGORIZED))
    assert store.get("abc") == created


def test_upsert_rejects_id_change(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="abc"))
    with pytest.raises(StoreInvariantError):
        store.upsert("abc", lambda item: item.evolve(id="other"))


def test_upsert_noop_does_not_bump_version_or_notify(tmp_path: Path) -> None:
    store = _store(tmp_path)
    created = store.insert_if_absent(Item(id="abc"))
    seen = []
    store.subscribe(seen.append)
    old, new = store.upsert("abc", lambda item: None)
    assert old is new is created
    old, new = store.upsert("abc", lambda item: item.evolve())
    assert new.last_update == created.last_update
    assert seen == []


def test_last_update_strictly_increases(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="abc"))
    versions = [store.require("abc").last_update]
    for index in range(5):
        query = SearchQuery(title=f"Song {index}")
        _old, new = store.upsert("abc", lambda item, q=query: item.evolve(override_query=q))
        versions.append(new.last_update)
    assert versions == sorted(set(versions))


def test_leaving_error_state_clears_last_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="abc"))
    store.upsert("abc", lambda item: item.evolve(status=FetchStatus.FETCH_ERROR, last_error="boom", fetch_time=10))
    _old, new = store.upsert("abc", lambda item: item.evolve(status=FetchStatus.NOT_FETCHED))
    assert new.last_error is None
    assert new.fetch_time == 10


def test_fetch_time_never_moves_backwards(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="abc"))
    store.upsert("abc", lambda item: item.evolve(status=FetchStatus.FETCHED, fetch_time=500))
    _old, new = store.upsert("abc", lambda item: item.evolve(status=FetchStatus.BRAINZ_ERROR, fetch_time=100))
    assert new.fetch_time == 500


def test_mutator_error_leaves_item_untouched(tmp_path: Path) -> None:
    store = _store(tmp_path)
    created = store.insert_if_absent(Item(id="abc"))

    def _boom(_item):
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        store.upsert("abc", _boom)
    assert store.get("abc") == created


def test_listeners_see_committed_item_and_failures_are_contained(tmp_path: Path) -> None:
    store = _store(tmp_path)
    seen = []

    def _broken(_item):
        raise RuntimeError("listener failure")

    store.subscribe(_broken)
    snapshot = store.subscribe(seen.append)
    assert snapshot == []
    created = store.insert_if_absent(Item(id="abc"))
    assert seen == [created]
    store.unsubscribe(seen.append)
    store.upsert("abc", lambda item: item.evolve(override_query=SearchQuery(title="x")))
    assert len(seen) == 1


def test_items_survive_reopen(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="abc"))
    result = TrackMetadata(title="Song", artist=("A", "B"), album="Album", recording_id="rid-1")
    store.upsert(
        "abc",
        lambda item: item.evolve(
            status=FetchStatus.FETCHED,
            fetch_time=42,
            override_result=result,
            override_query=SearchQuery(title="Song", artist="A"),
            file_path="/tmp/abc.mp3",
        ),
    )
    expected = store.require("abc")

    reopened = _store(tmp_path)
    assert reopened.require("abc") == expected
    assert reopened.require("abc").override_result.artist == ("A", "B")


def test_item_to_dict_hides_file_path(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = store.insert_if_absent(Item(id="abc", file_path="/secret/abc.mp3"))
    payload = item.to_dict()
    assert "file_path" not in payload
    assert payload["status"] == "NotFetched"
    assert payload["id"] == "abc"


def test_video_info_is_trimmed_and_round_trips(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.put_video_info("abc", {"title": "Song", "formats": [{"id": 1}], "thumbnails": []})
    assert store.get_video_info("abc") == {"title": "Song"}
    assert store.get_video_info("missing") is None


def test_ids_with_status_filters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="a"))
    store.insert_if_absent(Item(id="b"))
    store.upsert("b", lambda item: item.evolve(status=FetchStatus.FETCHED))
    assert store.ids_with_status(FetchStatus.NOT_FETCHED) == ["a"]
    assert store.ids_with_status(FetchStatus.FETCHED, FetchStatus.NOT_FETCHED) == ["a", "b"]


def test_claim_is_exclusive_and_times_out(tmp_path: Path) -> None:
    store = _store(tmp_path)
    entered = threading.Event()
    release = threading.Event()

    def _holder():
        with store.claim("abc"):
            entered.set()
            release.wait(5)

    thread = threading.Thread(target=_holder)
    thread.start()
    assert entered.wait(5)
    assert store.claims.is_held("abc")
    with pytest.raises(ItemBusy) as excinfo:
        with store.claim("abc", timeout=0.05):
            pass
    assert excinfo.value.status_code == 409
    release.set()
    thread.join(5)
    assert not store.claims.is_held("abc")
    with store.claim("abc", timeout=0.5):
        pass


def test_claims_on_different_ids_do_not_block(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with store.claim("a"):
        with store.claim("b", timeout=0.05):
            pass


def test_defer_cancel_runs_on_release_before_next_holder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    order = []
    assert store.defer_cancel("abc", lambda: order.append("cancel")) is False

    entered = threading.Event()
    release = threading.Event()

    def _holder():
        with store.claim("abc"):
            entered.set()
            release.wait(5)
            order.append("holder-done")

    thread = threading.Thread(target=_holder)
    thread.start()
    assert entered.wait(5)
    assert store.defer_cancel("abc", lambda: order.append("cancel")) is True

    def _waiter():
        with store.claim("abc"):
            order.append("waiter")

    waiter = threading.Thread(target=_waiter)
    waiter.start()
    time.sleep(0.05)
    release.set()
    thread.join(5)
    waiter.join(5)
    assert order == ["holder-done", "cancel", "waiter"]
