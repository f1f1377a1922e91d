import concurrent.futures
import threading
import time
from typing import Any, Dict, Optional
import logging

from ingestion.email.models import IngestionRunResult
from sync_manager.core.models import SyncRunStatus

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Dispatch Gmail sync runs onto an executor and run the periodic cycle.

    At most one run per user is in flight in this process; a second request
    for the same user while one is running is dropped (background) or
    rejected (manual).
    """

    def __init__(self, config, orchestrator, client_cache=None, executor=None):
        self.config = config
        self.orchestrator = orchestrator
        self.client_cache = client_cache
        self.executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=config.SYNC_WORKERS, thread_name_prefix="sync"
        )
        self.sync_status: Dict[str, SyncRunStatus] = {}
        self._lock = threading.Lock()
        self._scheduler_thread = None
        self._scheduler_last_cycle = None
        self._last_fanout: Optional[float] = None

    def _claim(self, user_id: str, trigger: str) -> bool:
        with self._lock:
            if user_id in self.sync_status:
                return False
            self.sync_status[user_id] = SyncRunStatus(user_id=user_id, trigger=trigger)
            return True

    def _release(self, user_id: str) -> None:
        with self._lock:
            self.sync_status.pop(user_id, None)

    def is_syncing(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self.sync_status

    def submit_sync(self, user_id: str, force_full_sync: bool = False, trigger: str = "scheduler") -> Optional[concurrent.futures.Future]:
        """Run a sync in the background. Returns ``None`` if one is already in flight."""
        if not self._claim(user_id, trigger):
            logger.debug("Sync for %s already in flight; ignoring %s trigger", user_id[:8], trigger)
            return None

        def _run() -> IngestionRunResult:
            try:
                return self.orchestrator.sync(user_id, force_full_sync=force_full_sync)
            finally:
                self._release(user_id)

        try:
            return self.executor.submit(_run)
        except RuntimeError:
            self._release(user_id)
            raise

    def run_sync_now(self, user_id: str, force_full_sync: bool = False, trigger: str = "manual") -> Optional[IngestionRunResult]:
        """Run a sync in the calling thread. Returns ``None`` if one is already in flight."""
        if not self._claim(user_id, trigger):
            return None
        try:
            return self.orchestrator.sync(user_id, force_full_sync=force_full_sync)
        finally:
            self._release(user_id)

    def run_cycle(self, user_ids=None, force_full_sync: bool = False, trigger: str = "cron") -> Dict[str, Any]:
        """Sync every user in the calling thread, skipping users with a run in flight."""
        return self.orchestrator.run_cycle(
            user_ids,
            force_full_sync=force_full_sync,
            sync_fn=lambda user_id, force: self.run_sync_now(user_id, force_full_sync=force, trigger=trigger),
        )

    def start_scheduler(self):
        """Start the scheduler thread if not already running."""
        if self._scheduler_thread and self._scheduler_thread.is_alive():
            logger.debug("Scheduler thread already running")
            return
        th = threading.Thread(target=self._scheduler_loop, name="scheduler")
        th.daemon = True
        th.start()
        self._scheduler_thread = th
        logger.info(f"Scheduler thread started (ident={th.ident})")

    def scheduler_status(self) -> Dict[str, Any]:
        """Return current scheduler diagnostic info."""
        alive = bool(self._scheduler_thread and self._scheduler_thread.is_alive())
        now = time.time()
        last_cycle_age = round(now - self._scheduler_last_cycle, 2) if self._scheduler_last_cycle else None
        with self._lock:
            in_flight = [
                {"user": f"{s.user_id[:8]}...", "trigger": s.trigger, "started": s.start_time.isoformat()}
                for s in self.sync_status.values()
            ]
        return {
            'running': alive,
            'thread_ident': getattr(self._scheduler_thread, 'ident', None),
            'in_flight': in_flight,
            'last_cycle_age_seconds': last_cycle_age,
            'sync_interval_minutes': self.config.EMAIL_SYNC_INTERVAL_MINUTES,
            'client_cache_entries': len(self.client_cache) if self.client_cache is not None else None,
            'poll_busy_seconds': self.config.SCHEDULER_POLL_SECONDS_BUSY,
            'poll_idle_seconds': self.config.SCHEDULER_POLL_SECONDS_IDLE
        }

    def run_cycle_once(self) -> int:
        """One scheduler tick: sweep the client cache and fan out syncs when due.

        Returns the number of sync runs submitted.
        """
        self._scheduler_last_cycle = time.time()
        if self.client_cache is not None:
            self.client_cache.sweep()

        interval = self.config.EMAIL_SYNC_INTERVAL_MINUTES * 60
        now = time.monotonic()
        if self._last_fanout is not None and now - self._last_fanout < interval:
            return 0
        self._last_fanout = now

        try:
            user_ids = self.orchestrator.list_syncable_users()
        except Exception as exc:
            logger.error(f"Failed to list users for scheduled sync: {exc}")
            return 0
        started = 0
        for user_id in user_ids:
            if self.submit_sync(user_id, trigger="scheduler") is not None:
                started += 1
        logger.info("Scheduled Gmail sync fan-out: users=%d started=%d", len(user_ids), started)
        return started

    def _scheduler_loop(self):
        """Background loop that schedules Gmail sync runs."""
        logger.info("Scheduler started")
        cycle = 0
        while True:
            try:
                cycle += 1
                started = self.run_cycle_once()
                with self._lock:
                    busy = bool(self.sync_status)
                sleep_for = self.config.SCHEDULER_POLL_SECONDS_BUSY if started or busy else self.config.SCHEDULER_POLL_SECONDS_IDLE
                logger.debug(f"Scheduler cycle {cycle}: started {started} sync(s); sleeping {sleep_for}s")
                time.sleep(sleep_for)
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}")
                time.sleep(30)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
