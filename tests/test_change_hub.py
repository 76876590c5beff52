from __future__ import annotations

import asyncio
import threading
from pathlib import Path

from engine.change_hub import ChangeHub
from engine.models import Item, SearchQuery
from engine.record_store import RecordStore


def _store(tmp_path: Path) -> RecordStore:
    return RecordStore(str(tmp_path / "db.sqlite"))


def _next(subscriber, timeout: float = 2.0):
    return asyncio.wait_for(subscriber.next_message(), timeout)


def test_first_message_is_full_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="a"))
    store.insert_if_absent(Item(id="b"))
    hub = ChangeHub(store, batch_window=0.01)

    async def _run():
        subscriber = hub.attach()
        try:
            return await _next(subscriber)
        finally:
            subscriber.close()

    message = asyncio.run(_run())
    assert message["type"] == "snapshot"
    assert sorted(item["id"] for item in message["items"]) == ["a", "b"]
    assert hub.subscriber_count == 0


def test_rapid_changes_to_one_item_coalesce_into_latest(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_if_absent(Item(id="a"))
    hub = ChangeHub(store, batch_window=0.05)

    async def _run():
        subscriber = hub.attach()
        try:
            await _next(subscriber)
            store.upsert("a", lambda item: item.evolve(override_query=SearchQuery(title="first")))
            store.upsert("a", lambda item: item.evolve(override_query=SearchQuery(title="second")))
            return await _next(subscriber)
        finally:
            subscriber.close()

    message = asyncio.run(_run())
    assert message["type"] == "delta"
    assert len(message["items"]) == 1
    assert message["items"][0]["override_query"]["title"] == "second"
    assert message["items"][0]["last_update"] == store.require("a").last_update


def test_changes_from_worker_threads_are_delivered(tmp_path: Path) -> None:
    store = _store(tmp_path)
    hub = ChangeHub(store, batch_window=0.02)

    async def _run():
        subscriber = hub.attach()
        try:
            snapshot = await _next(subscriber)
            worker = threading.Thread(target=lambda: store.insert_if_absent(Item(id="new")))
            worker.start()
            worker.join(5)
            delta = await _next(subscriber)
            return snapshot, delta
        finally:
            subscriber.close()

    snapshot, delta = asyncio.run(_run())
    assert snapshot == {"type": "snapshot", "items": []}
    assert [item["id"] for item in delta["items"]] == ["new"]


def test_backlog_overflow_is_replaced_by_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    hub = ChangeHub(store, batch_window=0.01, max_pending=2)

    async def _run():
        subscriber = hub.attach()
        try:
            await _next(subscriber)
            for item_id in ("a", "b", "c"):
                store.insert_if_absent(Item(id=item_id))
            message = await _next(subscriber)
            return subscriber.overflows, message
        finally:
            subscriber.close()

    overflows, message = asyncio.run(_run())
    assert overflows == 1
    assert message["type"] == "snapshot"
    assert sorted(item["id"] for item in message["items"]) == ["a", "b", "c"]


def test_stale_versions_are_not_resent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    stale = store.insert_if_absent(Item(id="a"))
    hub = ChangeHub(store, batch_window=0.01)

    async def _run():
        subscriber = hub.attach()
        try:
            await _next(subscriber)
            subscriber.publish(stale)
            store.insert_if_absent(Item(id="b"))
            return await _next(subscriber)
        finally:
            subscriber.close()

    message = asyncio.run(_run())
    assert [item["id"] for item in message["items"]] == ["b"]


def test_closed_subscriber_returns_none_and_stops_listening(tmp_path: Path) -> None:
    store = _store(tmp_path)
    hub = ChangeHub(store, batch_window=0.01)

    async def _run():
        subscriber = hub.attach()
        await _next(subscriber)
        hub.close_all()
        store.insert_if_absent(Item(id="a"))
        return subscriber, await _next(subscriber)

    subscriber, message = asyncio.run(_run())
    assert message is None
    assert subscriber.closed
    assert hub.subscriber_count == 0
