"""Per-user sync settings persistence (inclusion filters and push watch state)."""

import logging
from datetime import datetime
from typing import Any, Optional

from ingestion.email.models import SyncSettings

logger = logging.getLogger(__name__)


class SyncSettingsStore:
    """Read and write rows in ``sync_settings``."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def get(self, user_id: str, source_name: str) -> SyncSettings:
        """Return stored settings, or the defaults when the user has none."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM sync_settings WHERE user_id = %s AND source_name = %s",
                    (user_id, source_name),
                )
                row = cur.fetchone()
        if not row:
            return SyncSettings(user_id=user_id, source_name=source_name)
        return SyncSettings.from_row(row)

    def save(self, settings: SyncSettings) -> None:
        """Insert or replace the filter settings. Watch state is left untouched."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_settings (
                        user_id, source_name, excluded_labels, included_labels,
                        exclude_promotions, exclude_social, unread_only, inbox_only, max_content_length
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, source_name) DO UPDATE SET
                        excluded_labels = EXCLUDED.excluded_labels,
                        included_labels = EXCLUDED.included_labels,
                        exclude_promotions = EXCLUDED.exclude_promotions,
                        exclude_social = EXCLUDED.exclude_social,
                        unread_only = EXCLUDED.unread_only,
                        inbox_only = EXCLUDED.inbox_only,
                        max_content_length = EXCLUDED.max_content_length,
                        updated_at = NOW()
                    """,
                    (
                        settings.user_id,
                        settings.source_name,
                        list(settings.excluded_labels),
                        list(settings.included_labels) if settings.included_labels else None,
                        settings.exclude_promotions,
                        settings.exclude_social,
                        settings.unread_only,
                        settings.inbox_only,
                        settings.max_content_length,
                    ),
                )
            conn.commit()

    def update_watch(
        self,
        user_id: str,
        source_name: str,
        *,
        enabled: bool,
        topic_name: Optional[str] = None,
        expiration: Optional[datetime] = None,
    ) -> None:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sync_settings (user_id, source_name, watch_enabled, watch_topic_name, watch_expiration)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, source_name) DO UPDATE SET
                        watch_enabled = EXCLUDED.watch_enabled,
                        watch_topic_name = EXCLUDED.watch_topic_name,
                        watch_expiration = EXCLUDED.watch_expiration,
                        updated_at = NOW()
                    """,
                    (user_id, source_name, enabled, topic_name, expiration),
                )
            conn.commit()
        logger.info("Push watch for %s/%s set to %s", user_id[:8], source_name, enabled)
