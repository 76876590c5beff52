"""Live fan-out of store changes to websocket subscribers.

Each subscriber gets a full snapshot first, then batches of coalesced deltas.
Publishing happens on whatever thread committed the change and never blocks;
consumption happens on the subscriber's asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from engine.models import Item

logger = logging.getLogger(__name__)

DEFAULT_BATCH_WINDOW_SECONDS = 0.1
DEFAULT_MAX_PENDING = 1000


def snapshot_message(items) -> dict[str, Any]:
    return {"type": "snapshot", "items": [item.to_dict() for item in items]}


def delta_message(items) -> dict[str, Any]:
    return {"type": "delta", "items": [item.to_dict() for item in items]}


class Subscriber:
    def __init__(
        self,
        hub: "ChangeHub",
        loop: asyncio.AbstractEventLoop,
        *,
        batch_window: float,
        max_pending: int,
    ) -> None:
        self._hub = hub
        self._loop = loop
        self._batch_window = batch_window
        self._max_pending = max(1, int(max_pending))
        self._lock = threading.Lock()
        self._pending: dict[str, Item] = {}
        self._snapshot: list[Item] | None = None
        self._needs_snapshot = False
        self._sent_versions: dict[str, int] = {}
        self._wakeup = asyncio.Event()
        self._closed = False
        self.overflows = 0

    def _start(self, snapshot: list[Item]) -> None:
        with self._lock:
            self._snapshot = snapshot

    def publish(self, item: Item) -> None:
        with self._lock:
            if self._closed:
                return
            if not self._needs_snapshot:
                self._pending[item.id] = item
                if len(self._pending) > self._max_pending:
                    # Drop the backlog; the next message is a fresh snapshot.
                    self._pending.clear()
                    self._needs_snapshot = True
                    self.overflows += 1
        self._wake()

    def _wake(self) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            logger.debug("Subscriber loop closed before wakeup")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._pending.clear()
        self._hub.detach(self)
        self._wake()

    @property
    def closed(self) -> bool:
        return self._closed

    def _mark_sent(self, items) -> None:
        for item in items:
            self._sent_versions[item.id] = item.last_update

    def _fresh(self, items) -> list[Item]:
        return [item for item in items if item.last_update > self._sent_versions.get(item.id, 0)]

    async def next_message(self) -> dict[str, Any] | None:
        """Wait for the next snapshot or delta batch; ``None`` once closed."""
        while True:
            with self._lock:
                if self._closed:
                    return None
                snapshot = self._snapshot
                self._snapshot = None
                resnapshot = self._needs_snapshot
                self._needs_snapshot = False
                has_pending = bool(self._pending)
                if snapshot is None and not resnapshot and not has_pending:
                    self._wakeup.clear()
            if snapshot is not None:
                self._mark_sent(snapshot)
                return snapshot_message(snapshot)
            if resnapshot:
                items = self._hub.store.list()
                self._mark_sent(items)
                return snapshot_message(items)
            if not has_pending:
                await self._wakeup.wait()
                continue
            await asyncio.sleep(self._batch_window)
            with self._lock:
                if self._needs_snapshot or self._closed:
                    continue
                batch = list(self._pending.values())
                self._pending.clear()
            fresh = self._fresh(batch)
            if fresh:
                self._mark_sent(fresh)
                return delta_message(fresh)


class ChangeHub:
    def __init__(
        self,
        store,
        *,
        batch_window: float = DEFAULT_BATCH_WINDOW_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.store = store
        self.batch_window = batch_window
        self.max_pending = max_pending
        self._subscribers: set[Subscriber] = set()
        self._lock = threading.Lock()

    def attach(self, loop: asyncio.AbstractEventLoop | None = None) -> Subscriber:
        loop = loop or asyncio.get_running_loop()
        subscriber = Subscriber(
            self,
            loop,
            batch_window=self.batch_window,
            max_pending=self.max_pending,
        )
        snapshot = self.store.subscribe(subscriber.publish)
        subscriber._start(snapshot)
        with self._lock:
            self._subscribers.add(subscriber)
        logger.info("Live subscriber attached (total=%d)", self.subscriber_count)
        return subscriber

    def detach(self, subscriber: Subscriber) -> None:
        self.store.unsubscribe(subscriber.publish)
        with self._lock:
            if subscriber not in self._subscribers:
                return
            self._subscribers.discard(subscriber)
        logger.info("Live subscriber detached (total=%d)", self.subscriber_count)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close_all(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.close()
