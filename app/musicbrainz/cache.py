import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class MusicBrainzCache:
    """TTL cache of successful MusicBrainz responses, persisted as one JSON file."""

    def __init__(self, cache_path: str, *, max_entries: int = 20000) -> None:
        self._path = Path(cache_path)
        self._max_entries = max(1, int(max_entries))
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Any]] = {}
        self._loaded = False

    def _load_locked(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("MusicBrainz cache at %s is unreadable; starting empty", self._path)
            return
        if isinstance(payload, dict):
            self._data = payload

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=True, separators=(",", ":")), encoding="utf-8")
        tmp_path.replace(self._path)

    def _prune_locked(self, now: float) -> None:
        expired = [key for key, row in self._data.items() if float(row.get("expires_at") or 0.0) <= now]
        for key in expired:
            self._data.pop(key, None)
        overflow = len(self._data) - self._max_entries
        if overflow > 0:
            oldest = sorted(self._data, key=lambda key: float(self._data[key].get("expires_at") or 0.0))
            for key in oldest[:overflow]:
                self._data.pop(key, None)

    def get(self, key: str) -> Any:
        now = time.time()
        with self._lock:
            self._load_locked()
            row = self._data.get(key)
            if not isinstance(row, dict):
                return None
            if float(row.get("expires_at") or 0.0) <= now:
                self._data.pop(key, None)
                return None
            return row.get("value")

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = time.time()
        with self._lock:
            self._load_locked()
            self._data[key] = {
                "expires_at": now + max(1, int(ttl_seconds)),
                "value": value,
            }
            self._prune_locked(now)
            try:
                self._persist_locked()
            except OSError:
                logger.warning("Failed to persist MusicBrainz cache to %s", self._path, exc_info=True)
