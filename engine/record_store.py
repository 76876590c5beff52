"""Authoritative item store.

Items live in sqlite (``status`` table) and are mirrored in memory so reads stay
cheap. Every write goes through :meth:`RecordStore.upsert`, which validates the
status transition, stamps ``last_update`` and notifies listeners before it
returns. Per-id claims serialize pipeline stages and manual commands.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from engine.errors import Conflict, ItemBusy, NotFound, StoreInvariantError
from engine.lifecycle import check_transition
from engine.models import (
    ERROR_STATUSES,
    FetchStatus,
    Item,
    SearchQuery,
    TrackMetadata,
    now_ms,
)

logger = logging.getLogger(__name__)

Listener = Callable[[Item], None]
Mutator = Callable[[Item], "Item | None"]

# yt-dlp info keys that are large and never used for matching.
_INFO_DROP_KEYS = (
    "formats",
    "heatmap",
    "requested_formats",
    "requested_downloads",
    "automatic_captions",
    "subtitles",
    "thumbnails",
)


def ensure_status_tables(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS status (
            video_id TEXT PRIMARY KEY,
            fetch_status TEXT NOT NULL,
            fetch_time INTEGER,
            last_update INTEGER NOT NULL,
            last_query TEXT,
            last_result TEXT,
            last_error TEXT,
            override_query TEXT,
            override_result TEXT,
            file_path TEXT
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_status_fetch_status ON status (fetch_status)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS ytdata (
            video_id TEXT PRIMARY KEY,
            data TEXT NOT NULL,
            fetch_time INTEGER NOT NULL
        )
        """
    )
    conn.commit()


def trim_video_info(info):
    if not isinstance(info, dict):
        return {}
    return {key: value for key, value in info.items() if key not in _INFO_DROP_KEYS}


def _dump(value):
    if value is None:
        return None
    return json.dumps(value.to_dict(), ensure_ascii=False, separators=(",", ":"))


def _load(raw, cls):
    if not raw:
        return None
    try:
        return cls.from_dict(json.loads(raw))
    except (ValueError, TypeError):
        logger.warning("Discarding unreadable stored %s payload", cls.__name__)
        return None


class ClaimRegistry:
    """Per-id exclusive claims with deferred cancellation.

    A cancel registered while an id is held runs when the holder releases the
    claim, before the next waiter can acquire it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._held: set[str] = set()
        self._pending_cancel: dict[str, Callable[[], None]] = {}

    def _get_lock(self, item_id):
        with self._locks_lock:
            lock = self._locks.get(item_id)
            if not lock:
                lock = threading.Lock()
                self._locks[item_id] = lock
            return lock

    def is_held(self, item_id) -> bool:
        with self._locks_lock:
            return item_id in self._held

    @contextmanager
    def claim(self, item_id, timeout=None) -> Iterator[None]:
        lock = self._get_lock(item_id)
        acquired = lock.acquire(timeout=-1 if timeout is None else max(0.0, timeout))
        if not acquired:
            raise ItemBusy(f"Item {item_id} is busy", item_id=item_id)
        with self._locks_lock:
            self._held.add(item_id)
        try:
            yield
        finally:
            try:
                self._drain_pending_cancel(item_id)
            finally:
                lock.release()

    def defer_cancel(self, item_id, callback) -> bool:
        """Register ``callback`` to run on release if ``item_id`` is currently held."""
        with self._locks_lock:
            if item_id not in self._held:
                return False
            self._pending_cancel[item_id] = callback
            return True

    def _drain_pending_cancel(self, item_id):
        while True:
            with self._locks_lock:
                callback = self._pending_cancel.pop(item_id, None)
                if callback is None:
                    self._held.discard(item_id)
                    return
            try:
                callback()
            except Exception:
                logger.exception("Deferred cancel failed for %s", item_id)


class RecordStore:
    def __init__(self, db_path):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._items: dict[str, Item] = {}
        self._listeners: list[Listener] = []
        self.claims = ClaimRegistry()
        conn = self._connect()
        try:
            ensure_status_tables(conn)
            self._load_all(conn)
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _row_to_item(self, row):
        try:
            status = FetchStatus(row["fetch_status"])
        except ValueError as exc:
            raise StoreInvariantError(f"Unknown status {row['fetch_status']!r} for {row['video_id']}") from exc
        return Item(
            id=row["video_id"],
            status=status,
            fetch_time=row["fetch_time"],
            last_update=int(row["last_update"] or 0),
            last_query=_load(row["last_query"], SearchQuery),
            last_result=_load(row["last_result"], TrackMetadata),
            override_query=_load(row["override_query"], SearchQuery),
            override_result=_load(row["override_result"], TrackMetadata),
            last_error=row["last_error"],
            file_path=row["file_path"],
        )

    def _load_all(self, conn):
        cur = conn.cursor()
        cur.execute("SELECT * FROM status")
        for row in cur.fetchall():
            item = self._row_to_item(row)
            self._items[item.id] = item

    def _persist(self, item):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                INSERT INTO status (
                    video_id, fetch_status, fetch_time, last_update, last_query, last_result,
                    last_error, override_query, override_result, file_path
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    fetch_status=excluded.fetch_status,
                    fetch_time=excluded.fetch_time,
                    last_update=excluded.last_update,
                    last_query=excluded.last_query,
                    last_result=excluded.last_result,
                    last_error=excluded.last_error,
                    override_query=excluded.override_query,
                    override_result=excluded.override_result,
                    file_path=excluded.file_path
                """,
                (
                    item.id,
                    item.status.value,
                    item.fetch_time,
                    item.last_update,
                    _dump(item.last_query),
                    _dump(item.last_result),
                    item.last_error,
                    _dump(item.override_query),
                    _dump(item.override_result),
                    item.file_path,
                ),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, item_id) -> Item | None:
        with self._lock:
            return self._items.get(item_id)

    def require(self, item_id) -> Item:
        item = self.get(item_id)
        if item is None:
            raise NotFound(f"Unknown video {item_id}", item_id=item_id)
        return item

    def list(self) -> list[Item]:
        with self._lock:
            return list(self._items.values())

    def ids_with_status(self, *statuses) -> list[str]:
        wanted = set(statuses)
        with self._lock:
            return [item.id for item in self._items.values() if item.status in wanted]

    def subscribe(self, listener: Listener) -> list[Item]:
        """Register ``listener`` and return the snapshot it starts from."""
        with self._lock:
            self._listeners.append(listener)
            return list(self._items.values())

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def insert_if_absent(self, item: Item) -> Item | None:
        """Create ``item`` at NotFetched unless the id is already known."""
        if item.status != FetchStatus.NOT_FETCHED:
            raise Conflict(f"New items must start at {FetchStatus.NOT_FETCHED.value}", item_id=item.id)
        with self._lock:
            if item.id in self._items:
                return None
            return self._commit(None, item)

    def upsert(self, item_id, mutator: Mutator) -> tuple[Item, Item]:
        """Atomically apply ``mutator`` to the current item and return ``(old, new)``.

        The mutator returns the replacement item, or ``None`` for no change.
        Illegal status transitions raise ``Conflict``; other mutator errors
        propagate unchanged and leave the item untouched.
        """
        with self._lock:
            old = self._items.get(item_id)
            if old is None:
                raise NotFound(f"Unknown video {item_id}", item_id=item_id)
            new = mutator(old)
            if new is None or new == old:
                return old, old
            if new.id != item_id:
                raise StoreInvariantError(f"Mutator changed item id {item_id} -> {new.id}")
            check_transition(item_id, old.status, new.status)
            return old, self._commit(old, new)

    def _commit(self, old, new):
        changes = {"last_update": max(now_ms(), (old.last_update if old else 0) + 1)}
        if old is not None:
            if old.status in ERROR_STATUSES and new.status not in ERROR_STATUSES:
                changes["last_error"] = None
            if old.fetch_time and (new.fetch_time or 0) < old.fetch_time:
                changes["fetch_time"] = old.fetch_time
        new = new.evolve(**changes)
        self._persist(new)
        self._items[new.id] = new
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                logger.exception("Store listener failed for %s", new.id)
        return new

    @contextmanager
    def claim(self, item_id, timeout=None) -> Iterator[None]:
        with self.claims.claim(item_id, timeout=timeout):
            yield

    def defer_cancel(self, item_id, callback) -> bool:
        return self.claims.defer_cancel(item_id, callback)

    def put_video_info(self, video_id, info, *, fetch_time=None):
        payload = json.dumps(trim_video_info(info), ensure_ascii=False, default=str)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "INSERT OR REPLACE INTO ytdata (video_id, data, fetch_time) VALUES (?, ?, ?)",
                (video_id, payload, fetch_time or now_ms()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_video_info(self, video_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT data FROM ytdata WHERE video_id=?", (video_id,))
            row = cur.fetchone()
        finally:
            conn.close()
        if not row:
            return None
        try:
            data = json.loads(row["data"])
        except json.JSONDecodeError:
            logger.warning("Stored yt-dlp info for %s is not valid JSON", video_id)
            return None
        return data if isinstance(data, dict) else None
