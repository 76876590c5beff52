"""Wires the store, the stage pools and the scheduler, and applies manual commands.

Every manual command takes the caller's credential explicitly, checks it with
the access gate and runs under the item's claim.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from engine.errors import Conflict
from engine.logging_utils import log_event
from engine.models import DOWNLOADED_STATUSES, FetchStatus
from engine.stage_pool import StagePool, StageQueue

logger = logging.getLogger(__name__)

DISCOVERY_JOB_ID = "discovery"
SWEEP_JOB_ID = "sweep"
JELLYFIN_JOB_ID = "jellyfin"

_RETRYABLE = frozenset({FetchStatus.FETCH_ERROR, FetchStatus.BRAINZ_ERROR, FetchStatus.DISABLED})


def terminate_process(_exc):
    """Ask the server to shut down; uvicorn turns SIGTERM into a graceful stop."""
    os.kill(os.getpid(), signal.SIGTERM)


class Orchestrator:
    def __init__(
        self,
        store,
        gate,
        library,
        *,
        download_stage=None,
        match_stage=None,
        discovery=None,
        jellyfin=None,
        download_workers=2,
        match_workers=2,
        claim_timeout=120,
        on_fatal=terminate_process,
    ):
        self.store = store
        self.gate = gate
        self.library = library
        self.discovery = discovery
        self.jellyfin = jellyfin
        self.claim_timeout = claim_timeout
        self.on_fatal = on_fatal
        self.stop_event = threading.Event()
        self._halt_lock = threading.Lock()
        self._halted = False
        self.download_queue = StageQueue("download")
        self.match_queue = StageQueue("match")
        self.download_pool = None
        self.match_pool = None
        if download_stage is not None:
            download_stage.on_fetched = self.enqueue_match
            self.download_pool = StagePool(
                "download",
                self.download_queue,
                download_stage.process,
                workers=download_workers,
                stop_event=self.stop_event,
                on_fatal=self._halt,
            )
        if match_stage is not None:
            self.match_pool = StagePool(
                "match",
                self.match_queue,
                match_stage.process,
                workers=match_workers,
                stop_event=self.stop_event,
                on_fatal=self._halt,
            )
        if discovery is not None:
            discovery.on_new = self.enqueue_download
        self.scheduler = None

    # --- lifecycle

    def start(
        self,
        *,
        discovery_interval_minutes=5,
        sweep_interval_minutes=60,
        run_on_startup=True,
        jellyfin_interval_minutes=None,
    ):
        for pool in (self.download_pool, self.match_pool):
            if pool:
                pool.start()
        self.recover()
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.start()
        if self.discovery is not None:
            first_run = datetime.now(timezone.utc)
            if not run_on_startup:
                first_run += timedelta(minutes=discovery_interval_minutes)
            # next_run_time=None would add the job paused, so always pass a time.
            self.scheduler.add_job(
                self.run_discovery,
                trigger=IntervalTrigger(minutes=discovery_interval_minutes),
                id=DISCOVERY_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
                next_run_time=first_run,
            )
        self.scheduler.add_job(
            self.recover,
            trigger=IntervalTrigger(minutes=sweep_interval_minutes),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        if self.jellyfin is not None and jellyfin_interval_minutes:
            self.scheduler.add_job(
                self.run_jellyfin_sync,
                trigger=IntervalTrigger(minutes=jellyfin_interval_minutes),
                id=JELLYFIN_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )
        log_event(
            logging.INFO,
            "orchestrator_started",
            discovery_interval_minutes=discovery_interval_minutes,
            sweep_interval_minutes=sweep_interval_minutes,
            jellyfin_interval_minutes=jellyfin_interval_minutes if self.jellyfin is not None else None,
        )

    def stop(self, timeout=10):
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.stop_event.set()
        for pool in (self.download_pool, self.match_pool):
            if pool:
                pool.stop(timeout=timeout)
        logger.info("Orchestrator stopped")

    def _halt(self, stage, item_id, exc):
        """Store invariants no longer hold: stop every pool and take the process down."""
        with self._halt_lock:
            if self._halted:
                return
            self._halted = True
        log_event(logging.CRITICAL, "pipeline_halted", stage=stage, video_id=item_id, error=str(exc))
        self.stop_event.set()
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self.on_fatal:
            self.on_fatal(exc)

    def run_discovery(self):
        if self.discovery is None:
            return None
        return self.discovery.run_once()

    def run_jellyfin_sync(self):
        if self.jellyfin is None:
            return None
        return self.jellyfin.run_once()

    def recover(self):
        """Re-enqueue work the pipeline owes: NotFetched to download, Fetched to match."""
        downloads = [self.enqueue_download(i) for i in self.store.ids_with_status(FetchStatus.NOT_FETCHED)]
        matches = [self.enqueue_match(i) for i in self.store.ids_with_status(FetchStatus.FETCHED)]
        log_event(logging.INFO, "sweep_enqueued", downloads=sum(downloads), matches=sum(matches))

    def enqueue_download(self, item_id):
        return self.download_queue.put(item_id)

    def enqueue_match(self, item_id):
        return self.match_queue.put(item_id)

    # --- manual commands

    def _authorize(self, credential):
        return self.gate.require(credential)

    def override_query(self, credential, item_id, query):
        user = self._authorize(credential)
        with self.store.claim(item_id, timeout=self.claim_timeout):
            _old, new = self.store.upsert(item_id, lambda item: item.evolve(override_query=query))
        log_event(logging.INFO, "override_query_set", video_id=item_id, user=user.username, cleared=query is None)
        if query is not None and new.status in DOWNLOADED_STATUSES:
            self.enqueue_match(item_id)
        return new

    def override_result(self, credential, item_id, result):
        user = self._authorize(credential)
        with self.store.claim(item_id, timeout=self.claim_timeout):
            _old, new = self.store.upsert(item_id, lambda item: item.evolve(override_result=result))
        log_event(logging.INFO, "override_result_set", video_id=item_id, user=user.username, cleared=result is None)
        if result is not None and new.status in DOWNLOADED_STATUSES:
            self.enqueue_match(item_id)
        return new

    def retry_fetch(self, credential, item_id):
        user = self._authorize(credential)
        with self.store.claim(item_id, timeout=self.claim_timeout):
            current = self.store.require(item_id)
            if current.status not in _RETRYABLE:
                raise Conflict(f"Cannot retry from {current.status.value}", item_id=item_id)
            # The new download may be archived under a different name.
            archived = self.library.in_library(current.file_path)
            if archived:
                self.library.remove(current.file_path, item_id)

            def _reset(item):
                if item.status not in _RETRYABLE:
                    raise Conflict(f"Cannot retry from {item.status.value}", item_id=item_id)
                return item.evolve(
                    status=FetchStatus.NOT_FETCHED,
                    last_error=None,
                    file_path=None if archived else item.file_path,
                )

            _old, new = self.store.upsert(item_id, _reset)
        log_event(logging.INFO, "retry_fetch", video_id=item_id, user=user.username)
        self.enqueue_download(item_id)
        return new

    def delete(self, credential, item_id):
        """Remove the item's file and disable it.

        Returns ``(item, pending)``; ``pending`` is true when an in-flight
        operation holds the item and the delete runs once it releases.
        """
        user = self._authorize(credential)
        current = self.store.require(item_id)
        if self.store.defer_cancel(item_id, lambda: self._apply_delete(item_id)):
            log_event(logging.INFO, "delete_deferred", video_id=item_id, user=user.username)
            return current, True
        with self.store.claim(item_id, timeout=self.claim_timeout):
            new = self._apply_delete(item_id)
        log_event(logging.INFO, "delete", video_id=item_id, user=user.username)
        return new, False

    def _apply_delete(self, item_id):
        item = self.store.require(item_id)
        if item.status == FetchStatus.DISABLED and not item.file_path:
            return item
        path = self.library.locate(item)
        error = None
        try:
            if path:
                self.library.remove(path, item_id)
        except OSError as exc:
            # Still disabled; file_path stays set so another delete retries the removal.
            error = f"Failed to remove {path}: {exc}"
            log_event(logging.WARNING, "delete_file_failed", video_id=item_id, path=path, error=str(exc))
        _old, new = self.store.upsert(
            item_id,
            lambda current: current.evolve(
                status=FetchStatus.DISABLED,
                file_path=path if error else None,
                last_error=error,
            ),
        )
        return new

    def reindex(self, credential, item_ids):
        user = self._authorize(credential)
        enqueued = []
        for item_id in item_ids:
            item = self.store.get(item_id)
            if item is None or item.status != FetchStatus.CATEGORIZED:
                continue
            self.enqueue_match(item_id)
            enqueued.append(item_id)
        log_event(logging.INFO, "reindex", user=user.username, requested=len(item_ids), enqueued=len(enqueued))
        return enqueued

    def trigger_sync(self, credential):
        user = self._authorize(credential)
        log_event(logging.INFO, "manual_sync", user=user.username)
        thread = threading.Thread(target=self.run_discovery, name="manual-discovery", daemon=True)
        thread.start()
        return thread
