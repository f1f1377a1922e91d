"""
Provider credential storage.

Refresh/access tokens are stored Fernet-encrypted, one row per
(user_id, service_name). The mailbox address is kept in clear so push
notifications can be resolved back to an internal user id.
"""

import logging
from typing import Any, List, Optional

from ingestion.utils.crypto import encrypt, decrypt
from .errors import CredentialsError

logger = logging.getLogger(__name__)


class CredentialStore:
    """CRUD over ``user_credentials``."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def save(self, user_id: str, service_name: str, token: str, email_address: Optional[str] = None) -> None:
        """Store (or replace) the token for a user and service."""
        if not token:
            raise ValueError("token must not be empty")
        encrypted = encrypt(token)
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO user_credentials (user_id, service_name, email_address, encrypted_token)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, service_name) DO UPDATE SET
                        email_address = COALESCE(EXCLUDED.email_address, user_credentials.email_address),
                        encrypted_token = EXCLUDED.encrypted_token,
                        updated_at = NOW()
                    """,
                    (user_id, service_name, email_address, encrypted),
                )
            conn.commit()
        logger.info("Stored %s credentials for user %s", service_name, user_id[:8])

    def get_token(self, user_id: str, service_name: str) -> Optional[str]:
        """Return the decrypted token, or ``None`` if the user never connected the service.

        Raises:
            CredentialsError: The stored token cannot be decrypted.
        """
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT encrypted_token FROM user_credentials WHERE user_id = %s AND service_name = %s",
                    (user_id, service_name),
                )
                row = cur.fetchone()
        if not row:
            return None
        try:
            return decrypt(row["encrypted_token"])
        except (ValueError, RuntimeError) as exc:
            raise CredentialsError(f"{service_name} credentials unreadable: {exc}") from exc

    def has_credentials(self, user_id: str, service_name: str) -> bool:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM user_credentials WHERE user_id = %s AND service_name = %s",
                    (user_id, service_name),
                )
                return cur.fetchone() is not None

    def find_user_by_email(self, email_address: str, service_name: str) -> Optional[str]:
        """Resolve a mailbox address to the internal user id."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id FROM user_credentials
                    WHERE LOWER(email_address) = LOWER(%s) AND service_name = %s
                    LIMIT 1
                    """,
                    (email_address, service_name),
                )
                row = cur.fetchone()
        return row["user_id"] if row else None

    def list_user_ids(self, service_name: str, only_sync_enabled: bool = True) -> List[str]:
        """Users connected to a service, optionally skipping those with sync disabled."""
        query = """
            SELECT c.user_id FROM user_credentials c
            LEFT JOIN sync_cursors s
                ON s.user_id = c.user_id AND s.source_name = c.service_name
            WHERE c.service_name = %s
        """
        if only_sync_enabled:
            query += " AND COALESCE(s.sync_enabled, TRUE)"
        query += " ORDER BY c.user_id"
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (service_name,))
                return [row["user_id"] for row in cur.fetchall()]

    def delete(self, user_id: str, service_name: str) -> bool:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM user_credentials WHERE user_id = %s AND service_name = %s",
                    (user_id, service_name),
                )
                deleted = cur.rowcount > 0
            conn.commit()
        if deleted:
            logger.info("Removed %s credentials for user %s", service_name, user_id[:8])
        return deleted
