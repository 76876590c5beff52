"""Ordered playlist membership and media-server mirror state.

Discovery records which videos each playlist holds; the Jellyfin mirror reads
that order back, maps videos to Jellyfin item ids and flags each playlist row
once the server copy includes it.
"""

import sqlite3


def ensure_membership_tables(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlist_items (
            playlist_id TEXT NOT NULL,
            video_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            jelly_synced INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (playlist_id, video_id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_playlist_items_video ON playlist_items (video_id)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS jelly_items (
            video_id TEXT PRIMARY KEY,
            jelly_id TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS kvp (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )
    conn.commit()


class PlaylistMembership:
    def __init__(self, db_path):
        self.db_path = db_path
        conn = self._connect()
        try:
            ensure_membership_tables(conn)
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def video_ids(self, playlist_id):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT video_id FROM playlist_items WHERE playlist_id=? ORDER BY position ASC",
                (playlist_id,),
            ).fetchall()
        finally:
            conn.close()
        return [row["video_id"] for row in rows]

    def set_playlist_items(self, playlist_id, video_ids) -> bool:
        """Replace the stored order for ``playlist_id``; returns False when it is unchanged.

        Any change resets the mirror flag of every row in the playlist.
        """
        video_ids = list(video_ids)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            current = [
                row["video_id"]
                for row in cur.execute(
                    "SELECT video_id FROM playlist_items WHERE playlist_id=? ORDER BY position ASC",
                    (playlist_id,),
                ).fetchall()
            ]
            if current == video_ids:
                conn.commit()
                return False
            cur.execute("DELETE FROM playlist_items WHERE playlist_id=?", (playlist_id,))
            cur.executemany(
                "INSERT INTO playlist_items (playlist_id, video_id, position, jelly_synced) VALUES (?, ?, ?, 0)",
                [(playlist_id, video_id, position) for position, video_id in enumerate(video_ids)],
            )
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def needs_mirror(self, playlist_id) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM playlist_items WHERE playlist_id=? AND jelly_synced=0 LIMIT 1",
                (playlist_id,),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def unmapped_video_ids(self, playlist_ids):
        """Videos of the given playlists that have no Jellyfin item id yet."""
        playlist_ids = list(playlist_ids)
        if not playlist_ids:
            return []
        marks = ",".join("?" for _ in playlist_ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT DISTINCT i.video_id
                FROM playlist_items i
                LEFT JOIN jelly_items j ON j.video_id = i.video_id
                WHERE i.playlist_id IN ({marks}) AND j.jelly_id IS NULL
                ORDER BY i.video_id
                """,
                playlist_ids,
            ).fetchall()
        finally:
            conn.close()
        return [row["video_id"] for row in rows]

    def set_jelly_id(self, video_id, jelly_id):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO jelly_items (video_id, jelly_id) VALUES (?, ?) "
                "ON CONFLICT(video_id) DO UPDATE SET jelly_id=excluded.jelly_id",
                (video_id, jelly_id),
            )
            conn.commit()
        finally:
            conn.close()

    def forget_jelly_id(self, video_id):
        conn = self._connect()
        try:
            conn.execute("DELETE FROM jelly_items WHERE video_id=?", (video_id,))
            conn.execute("UPDATE playlist_items SET jelly_synced=0 WHERE video_id=?", (video_id,))
            conn.commit()
        finally:
            conn.close()

    def mapped_items(self, playlist_id):
        """``(video_id, jelly_id)`` for the playlist's mapped videos, in playlist order."""
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT i.video_id, j.jelly_id
                FROM playlist_items i
                JOIN jelly_items j ON j.video_id = i.video_id
                WHERE i.playlist_id=?
                ORDER BY i.position ASC
                """,
                (playlist_id,),
            ).fetchall()
        finally:
            conn.close()
        return [(row["video_id"], row["jelly_id"]) for row in rows]

    def mark_mirrored(self, playlist_id):
        """Flag the playlist rows whose video is mapped; unmapped rows stay pending."""
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE playlist_items SET jelly_synced=1
                WHERE playlist_id=?
                AND video_id IN (SELECT video_id FROM jelly_items)
                """,
                (playlist_id,),
            )
            conn.commit()
        finally:
            conn.close()

    def get_key(self, key):
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kvp WHERE key=?", (key,)).fetchone()
        finally:
            conn.close()
        return row["value"] if row else None

    def set_key(self, key, value):
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO kvp (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_key(self, key):
        conn = self._connect()
        try:
            conn.execute("DELETE FROM kvp WHERE key=?", (key,))
            conn.commit()
        finally:
            conn.close()
