"""
Core data models for the mailbox sync service.

Job rows for long running background work and the in-flight status kept
for scheduled sync runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_IN_PROGRESS)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED)


@dataclass
class Job:
    """
    A long running operation owned by one (user, job kind) pair.

    Attributes:
        job_id: Row identifier, regenerated whenever a terminal job is replaced
        user_id: Owner of the job
        job_kind: Named category of work (e.g. ``template``)
        status: pending, in_progress, completed or failed
        progress: Percentage 0-100
        params: Parameters the job was registered with
        result: Work output once completed
        error: Failure message once failed
        started_at: When the worker picked the job up
        updated_at: Last state or progress write
        completed_at: When the job reached a terminal state
    """
    job_id: str
    user_id: str
    job_kind: str
    status: str = JOB_PENDING
    progress: int = 0
    params: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            job_id=str(row["job_id"]),
            user_id=row["user_id"],
            job_kind=row["job_kind"],
            status=row["status"],
            progress=int(row.get("progress") or 0),
            params=dict(row.get("params") or {}),
            result=row.get("result"),
            error=row.get("error"),
            created_at=row.get("created_at"),
            started_at=row.get("started_at"),
            updated_at=row.get("updated_at"),
            completed_at=row.get("completed_at"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since registration for pending jobs, otherwise since the
        last write. ``None`` if unknown."""
        if self.status == JOB_PENDING and self.created_at is not None:
            reference = self.created_at
        else:
            reference = self.updated_at or self.started_at or self.created_at
        if reference is None:
            return None
        now = now or datetime.now(timezone.utc)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        return (now - reference).total_seconds()


@dataclass
class SyncRunStatus:
    """
    In-flight marker for a background sync run.

    Attributes:
        user_id: User being synced
        trigger: scheduler, webhook, manual or cron
        start_time: When the run was submitted
    """
    user_id: str
    trigger: str = "scheduler"
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
