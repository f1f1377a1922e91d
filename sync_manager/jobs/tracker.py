"""
Job tracker for long running background work.

Registration is synchronous and returns immediately; the work itself runs
on a :class:`concurrent.futures.ThreadPoolExecutor` and reports progress
through the job row, which callers poll with :meth:`JobTracker.get_status`.

States: ``pending -> in_progress -> completed | failed``. Terminal states
are final; a new job for the same (user, kind) can only be registered once
the previous one is terminal. Failed jobs are never retried automatically.
"""

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..core.models import Job, JOB_COMPLETED

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[int], None]
WorkFn = Callable[[Job, ProgressReporter], Dict[str, Any]]


class JobConflictError(Exception):
    """An active job already exists for the (user, kind) pair."""

    def __init__(self, job: Job) -> None:
        super().__init__(f"job {job.job_kind} for {job.user_id[:8]} is already {job.status}")
        self.job = job


class JobNotFoundError(Exception):
    """No work function is registered for the requested job kind."""


@dataclass
class JobHandle:
    """What a registering caller gets back."""

    job: Job
    created: bool
    already_installed: bool = False


class JobTracker:
    """Register, run and report on persistence-backed jobs.

    Parameters
    ----------
    store : Any
        Persistence layer with the :class:`~sync_manager.jobs.store.JobStore` API.
    executor : Optional[concurrent.futures.Executor]
        Executor for detached work. A thread pool of ``max_workers`` is
        created when omitted.
    stale_after_seconds : float
        Age after which an active job is reported as ``stale``. Pending jobs
        are aged from registration, in-progress jobs from their last write.
        The tracker never fails stale jobs on its own.
    """

    def __init__(
        self,
        store: Any,
        *,
        executor: Optional[concurrent.futures.Executor] = None,
        max_workers: int = 2,
        stale_after_seconds: float = 900,
    ) -> None:
        self.store = store
        self.executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="job"
        )
        self.stale_after_seconds = stale_after_seconds
        self._work: Dict[str, WorkFn] = {}

    def register_kind(self, job_kind: str, work_fn: WorkFn) -> None:
        self._work[job_kind] = work_fn

    def has_kind(self, job_kind: str) -> bool:
        return job_kind in self._work

    # ------------------------------------------------------------------
    def register(self, user_id: str, job_kind: str, params: Optional[Dict[str, Any]] = None) -> Job:
        """Create a pending job without running it.

        Raises:
            JobConflictError: A pending or in-progress job already exists.
        """
        job, created = self.store.create(user_id, job_kind, params or {})
        if not created:
            raise JobConflictError(job)
        logger.info("Registered %s job %s for %s", job_kind, job.job_id, user_id[:8])
        return job

    def run(self, job: Job, work_fn: WorkFn) -> Optional[Job]:
        """Execute ``work_fn`` for a pending job and record its outcome.

        Runs in the calling thread; :meth:`start` is what detaches it.
        """
        running = self.store.mark_running(job.job_id)
        if running is None:
            logger.warning("Job %s is no longer pending; not running it", job.job_id)
            return self.store.get_by_id(job.job_id)

        def report_progress(percent: int) -> None:
            self.report_progress(running, percent)

        try:
            result = work_fn(running, report_progress) or {}
        except Exception as exc:
            logger.exception("Job %s (%s) failed", job.job_id, job.job_kind)
            return self.store.fail(job.job_id, str(exc) or exc.__class__.__name__)
        logger.info("Job %s (%s) completed", job.job_id, job.job_kind)
        return self.store.complete(job.job_id, result)

    def report_progress(self, job: Job, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if not self.store.update_progress(job.job_id, percent):
            logger.debug("Ignored progress %d for job %s (not running)", percent, job.job_id)

    def start(self, user_id: str, job_kind: str, params: Optional[Dict[str, Any]] = None) -> JobHandle:
        """Register a job and submit its work to the executor.

        An active job, or a completed one registered with identical
        parameters, is returned as-is instead of starting new work.

        Raises:
            JobNotFoundError: ``job_kind`` has no registered work function.
        """
        work_fn = self._work.get(job_kind)
        if work_fn is None:
            raise JobNotFoundError(f"unknown job kind: {job_kind}")
        params = params or {}

        previous = self.store.get(user_id, job_kind)
        if previous is not None and previous.status == JOB_COMPLETED and previous.params == params:
            return JobHandle(job=previous, created=False, already_installed=True)

        try:
            job = self.register(user_id, job_kind, params)
        except JobConflictError as exc:
            logger.info("Job %s for %s already %s", job_kind, user_id[:8], exc.job.status)
            return JobHandle(job=exc.job, created=False)

        try:
            future = self.executor.submit(self.run, job, work_fn)
        except Exception as exc:
            logger.error("Could not schedule job %s (%s): %s", job.job_id, job_kind, exc)
            self.store.fail(job.job_id, f"could not schedule job: {exc}")
            raise
        future.add_done_callback(self._log_run_error)
        return JobHandle(job=job, created=True)

    @staticmethod
    def _log_run_error(future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Job runner raised outside the work function", exc_info=exc)

    def get_status(self, user_id: str, job_kind: str) -> Optional[Job]:
        return self.store.get(user_id, job_kind)

    def is_stale(self, job: Job) -> bool:
        if not job.is_active:
            return False
        age = job.age_seconds()
        return age is not None and age > self.stale_after_seconds

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
