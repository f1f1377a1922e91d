"""
Job persistence.

The ``jobs`` table is unique on (user_id, job_kind). Every state change is a
conditional statement so the database, not an in-process lock, decides
which writer wins:

* creating replaces an existing row only if that row is terminal;
* ``pending -> in_progress`` only succeeds from ``pending``;
* progress, completion and failure only touch non-terminal rows.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from psycopg2.extras import Json

from ..core.models import Job

logger = logging.getLogger(__name__)

_JOB_COLUMNS = """
    job_id, user_id, job_kind, status, progress, params, result, error,
    created_at, started_at, updated_at, completed_at
"""


class JobStore:
    """Conditional CRUD over the ``jobs`` table."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def _fetch_one(self, query: str, params: Any) -> Optional[Job]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return Job.from_row(row) if row else None

    def create(self, user_id: str, job_kind: str, params: Dict[str, Any], _attempts: int = 2) -> Tuple[Job, bool]:
        """Create a pending job unless a non-terminal one exists.

        Returns:
            ``(job, True)`` for a new job, ``(existing_job, False)`` when an
            active job already holds the (user, kind) slot.
        """
        created = self._fetch_one(
            f"""
            INSERT INTO jobs (user_id, job_kind, status, progress, params)
            VALUES (%s, %s, 'pending', 0, %s)
            ON CONFLICT (user_id, job_kind) DO UPDATE SET
                job_id = uuid_generate_v4(),
                status = 'pending',
                progress = 0,
                params = EXCLUDED.params,
                result = NULL,
                error = NULL,
                created_at = NOW(),
                started_at = NULL,
                updated_at = NOW(),
                completed_at = NULL
            WHERE jobs.status IN ('completed', 'failed')
            RETURNING {_JOB_COLUMNS}
            """,
            (user_id, job_kind, Json(params)),
        )
        if created is not None:
            return created, True
        existing = self.get(user_id, job_kind)
        if existing is None and _attempts > 1:
            # the active row vanished between statements; try once more
            return self.create(user_id, job_kind, params, _attempts - 1)
        if existing is None:
            raise RuntimeError(f"could not create or read job {job_kind} for {user_id[:8]}")
        return existing, False

    def get(self, user_id: str, job_kind: str) -> Optional[Job]:
        return self._fetch_one(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE user_id = %s AND job_kind = %s",
            (user_id, job_kind),
        )

    def get_by_id(self, job_id: str) -> Optional[Job]:
        return self._fetch_one(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = %s", (job_id,))

    def mark_running(self, job_id: str) -> Optional[Job]:
        """``pending -> in_progress``. Returns ``None`` if the job was not pending."""
        return self._fetch_one(
            f"""
            UPDATE jobs SET status = 'in_progress', started_at = NOW(), updated_at = NOW()
            WHERE job_id = %s AND status = 'pending'
            RETURNING {_JOB_COLUMNS}
            """,
            (job_id,),
        )

    def update_progress(self, job_id: str, progress: int) -> bool:
        """Raise the progress of a running job; never lowers it."""
        job = self._fetch_one(
            f"""
            UPDATE jobs SET progress = GREATEST(progress, %s), updated_at = NOW()
            WHERE job_id = %s AND status = 'in_progress'
            RETURNING {_JOB_COLUMNS}
            """,
            (progress, job_id),
        )
        return job is not None

    def complete(self, job_id: str, result: Dict[str, Any]) -> Optional[Job]:
        return self._fetch_one(
            f"""
            UPDATE jobs SET status = 'completed', progress = 100, result = %s, error = NULL,
                completed_at = NOW(), updated_at = NOW()
            WHERE job_id = %s AND status IN ('pending', 'in_progress')
            RETURNING {_JOB_COLUMNS}
            """,
            (Json(result), job_id),
        )

    def fail(self, job_id: str, error: str) -> Optional[Job]:
        return self._fetch_one(
            f"""
            UPDATE jobs SET status = 'failed', error = %s, completed_at = NOW(), updated_at = NOW()
            WHERE job_id = %s AND status IN ('pending', 'in_progress')
            RETURNING {_JOB_COLUMNS}
            """,
            (error, job_id),
        )
