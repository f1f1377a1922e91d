"""
Sync cursor persistence.

One row per (user_id, source_name) holds the provider change-log position
plus run counters. Rows are created on the first recorded run and never
deleted by the ingestion path.
"""

import logging
from typing import Any, Optional

from ingestion.email.models import SyncCursor

logger = logging.getLogger(__name__)


class SyncCursorStore:
    """Read and fold run results into ``sync_cursors`` rows."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def get(self, user_id: str, source_name: str) -> Optional[SyncCursor]:
        """Return the cursor row, or ``None`` if the user never synced this source."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id, source_name, cursor_token, sync_enabled, last_sync_at,
                           emails_synced, error_count, last_error, last_error_at
                    FROM sync_cursors
                    WHERE user_id = %s AND source_name = %s
                    """,
                    (user_id, source_name),
                )
                row = cur.fetchone()
        return SyncCursor.from_row(row) if row else None

    def record_success(
        self,
        user_id: str,
        source_name: str,
        cursor_token: str,
        *,
        expected_token: Optional[str],
        synced_count: int,
    ) -> SyncCursor:
        """Store a new cursor and reset the error counters in one statement.

        The token is only replaced when the stored token still equals
        ``expected_token`` (the value the run started from). An overlapping run
        that already moved the cursor therefore keeps its position; the
        counters are folded in either way.
        """
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_cursors (
                        user_id, source_name, cursor_token, sync_enabled, last_sync_at,
                        emails_synced, error_count, last_error, last_error_at
                    ) VALUES (%(user_id)s, %(source_name)s, %(token)s, TRUE, NOW(), %(synced)s, 0, NULL, NULL)
                    ON CONFLICT (user_id, source_name) DO UPDATE SET
                        cursor_token = CASE
                            WHEN sync_cursors.cursor_token IS NOT DISTINCT FROM %(expected)s
                            THEN EXCLUDED.cursor_token
                            ELSE sync_cursors.cursor_token
                        END,
                        sync_enabled = TRUE,
                        last_sync_at = NOW(),
                        emails_synced = sync_cursors.emails_synced + EXCLUDED.emails_synced,
                        error_count = 0,
                        last_error = NULL,
                        last_error_at = NULL,
                        updated_at = NOW()
                    RETURNING user_id, source_name, cursor_token, sync_enabled, last_sync_at,
                              emails_synced, error_count, last_error, last_error_at
                    """,
                    {
                        "user_id": user_id,
                        "source_name": source_name,
                        "token": cursor_token,
                        "expected": expected_token,
                        "synced": synced_count,
                    },
                )
                row = cur.fetchone()
            conn.commit()
        stored = SyncCursor.from_row(row)
        if stored.cursor_token != cursor_token:
            logger.warning(
                "Cursor for %s/%s moved concurrently; keeping %s",
                user_id[:8], source_name, stored.cursor_token,
            )
        return stored

    def record_failure(
        self,
        user_id: str,
        source_name: str,
        error: str,
        *,
        count_error: bool = True,
        disable: bool = False,
    ) -> SyncCursor:
        """Store ``last_error`` without touching the cursor token.

        Args:
            count_error: Increment ``error_count``. Rate limiting passes ``False``.
            disable: Turn off automatic sync for the user (fatal auth errors).
        """
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_cursors (
                        user_id, source_name, cursor_token, sync_enabled,
                        error_count, last_error, last_error_at
                    ) VALUES (%(user_id)s, %(source_name)s, NULL, %(enabled)s, %(increment)s, %(error)s, NOW())
                    ON CONFLICT (user_id, source_name) DO UPDATE SET
                        sync_enabled = CASE WHEN %(disable)s THEN FALSE ELSE sync_cursors.sync_enabled END,
                        error_count = sync_cursors.error_count + EXCLUDED.error_count,
                        last_error = EXCLUDED.last_error,
                        last_error_at = NOW(),
                        updated_at = NOW()
                    RETURNING user_id, source_name, cursor_token, sync_enabled, last_sync_at,
                              emails_synced, error_count, last_error, last_error_at
                    """,
                    {
                        "user_id": user_id,
                        "source_name": source_name,
                        "enabled": not disable,
                        "disable": disable,
                        "increment": 1 if count_error else 0,
                        "error": error,
                    },
                )
                row = cur.fetchone()
            conn.commit()
        return SyncCursor.from_row(row)

    def set_enabled(self, user_id: str, source_name: str, enabled: bool) -> None:
        """Enable or disable automatic sync, creating the row if needed."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_cursors (user_id, source_name, sync_enabled)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, source_name) DO UPDATE SET
                        sync_enabled = EXCLUDED.sync_enabled,
                        updated_at = NOW()
                    """,
                    (user_id, source_name, enabled),
                )
            conn.commit()
        logger.info("Sync for %s/%s %s", user_id[:8], source_name, "enabled" if enabled else "disabled")
