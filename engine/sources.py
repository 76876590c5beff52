import sqlite3
from datetime import datetime, timezone

from engine.config import SourceSpec


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class SourceStore:
    """Playlists registered from the command line, merged with the configured ones."""

    def __init__(self, db_path):
        self.db_path = db_path
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS playlist_config (
                    playlist_id TEXT PRIMARY KEY,
                    name TEXT,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(playlist_config)").fetchall()}
            if "jelly_playlist_id" not in columns:
                conn.execute("ALTER TABLE playlist_config ADD COLUMN jelly_playlist_id TEXT")
            conn.commit()
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def add(self, playlist_id, name=None, jelly_playlist_id=None):
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO playlist_config (playlist_id, name, enabled, created_at, jelly_playlist_id)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(playlist_id) DO UPDATE SET
                    name=excluded.name, enabled=1, jelly_playlist_id=excluded.jelly_playlist_id
                """,
                (playlist_id, name, utc_now(), jelly_playlist_id),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, playlist_id) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM playlist_config WHERE playlist_id=?", (playlist_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def list(self):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT playlist_id, name, enabled, created_at, jelly_playlist_id FROM playlist_config "
                "ORDER BY created_at ASC"
            ).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def enabled_sources(self):
        return [
            SourceSpec(playlist_id=row["playlist_id"], name=row["name"], jelly_playlist_id=row["jelly_playlist_id"])
            for row in self.list()
            if row["enabled"]
        ]


def merge_sources(configured, registered):
    merged = []
    seen = set()
    for source in list(configured or ()) + list(registered or ()):
        if source.playlist_id in seen:
            continue
        seen.add(source.playlist_id)
        merged.append(source)
    return merged
