import logging
import queue
import threading

from engine.errors import StoreInvariantError
from engine.logging_utils import log_event

logger = logging.getLogger(__name__)


class StageQueue:
    """FIFO of item ids; an id already waiting is not queued twice."""

    def __init__(self, name):
        self.name = name
        self._queue = queue.Queue()
        self._waiting = set()
        self._lock = threading.Lock()

    def put(self, item_id) -> bool:
        with self._lock:
            if item_id in self._waiting:
                return False
            self._waiting.add(item_id)
        self._queue.put(item_id)
        return True

    def get(self, timeout=None):
        try:
            item_id = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            self._waiting.discard(item_id)
        return item_id

    def __len__(self):
        with self._lock:
            return len(self._waiting)

    def __contains__(self, item_id):
        with self._lock:
            return item_id in self._waiting


class StagePool:
    """Fixed number of daemon threads draining one stage queue."""

    def __init__(self, name, stage_queue, handler, *, workers=1, stop_event=None, on_fatal=None, poll_seconds=0.5):
        self.name = name
        self.queue = stage_queue
        self.handler = handler
        self.workers = max(1, int(workers))
        self.stop_event = stop_event or threading.Event()
        self.on_fatal = on_fatal
        self.poll_seconds = poll_seconds
        self._threads = []

    def start(self):
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._run,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        log_event(logging.INFO, "stage_pool_started", stage=self.name, workers=self.workers)

    def _run(self):
        while not self.stop_event.is_set():
            item_id = self.queue.get(timeout=self.poll_seconds)
            if item_id is None:
                continue
            try:
                self.handler(item_id)
            except StoreInvariantError as exc:
                log_event(logging.CRITICAL, "store_invariant_violation", stage=self.name, video_id=item_id)
                self.stop_event.set()
                if self.on_fatal:
                    self.on_fatal(self.name, item_id, exc)
                raise
            except Exception:
                logger.exception("[%s] unhandled failure for %s", self.name, item_id)

    def stop(self, timeout=10):
        self.stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []

    def is_alive(self):
        return any(thread.is_alive() for thread in self._threads)
