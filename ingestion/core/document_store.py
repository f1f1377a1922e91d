"""
Ingested document persistence.

Documents are keyed on (user_id, source_type, source_id); writing the same
remote item twice updates the existing row instead of adding a new one.
"""

import hashlib
import logging
from typing import Any, Dict, Iterable, List, Set

import psycopg2
from psycopg2.extras import Json

from ingestion.email.errors import PersistenceError

logger = logging.getLogger(__name__)


class DocumentStore:
    """Upsert and look up rows in ``ingested_documents``."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def upsert(
        self,
        user_id: str,
        source_type: str,
        source_id: str,
        content: str,
        embedding: List[float],
        metadata: Dict[str, Any],
    ) -> str:
        """Insert or update one document and return its row id.

        Raises:
            PersistenceError: If the datastore rejects the write.
        """
        content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO ingested_documents (
                            user_id, source_type, source_id, content, content_hash, embedding, metadata
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (user_id, source_type, source_id) DO UPDATE SET
                            content = EXCLUDED.content,
                            content_hash = EXCLUDED.content_hash,
                            embedding = EXCLUDED.embedding,
                            metadata = EXCLUDED.metadata,
                            updated_at = NOW()
                        RETURNING id
                        """,
                        (
                            user_id,
                            source_type,
                            source_id,
                            content,
                            content_hash,
                            [float(v) for v in embedding],
                            Json(metadata),
                        ),
                    )
                    doc_id = cur.fetchone()["id"]
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceError(f"failed to store {source_type} {source_id}: {exc}") from exc
        logger.debug("Stored %s %s for %s as %s", source_type, source_id, user_id[:8], doc_id)
        return str(doc_id)

    def existing_ids(self, user_id: str, source_type: str, source_ids: Iterable[str]) -> Set[str]:
        """Return the subset of ``source_ids`` already stored for the user."""
        ids = list(source_ids)
        if not ids:
            return set()
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT source_id FROM ingested_documents
                    WHERE user_id = %s AND source_type = %s AND source_id = ANY(%s)
                    """,
                    (user_id, source_type, ids),
                )
                return {row["source_id"] for row in cur.fetchall()}

    def count(self, user_id: str, source_type: str) -> int:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS total FROM ingested_documents WHERE user_id = %s AND source_type = %s",
                    (user_id, source_type),
                )
                return int(cur.fetchone()["total"])
