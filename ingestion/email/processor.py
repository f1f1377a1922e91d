"""Per-message ingestion: filter, normalize, embed and upsert.

:class:`EmailProcessor` handles one raw Gmail message at a time and reports
an :class:`~ingestion.email.models.ItemOutcome`. Filtered messages are
``skipped``; embedding or persistence failures are ``failed`` and never
raise, so one bad message cannot abort its batch.

Embeddings come from :class:`OllamaEmbeddings` by default and are stored in
the document row itself.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from langchain_ollama import OllamaEmbeddings

from .classifier import EmailClassifier, InclusionPolicy
from .errors import PersistenceError
from .models import EMAIL_SOURCE_TYPE, ItemOutcome

logger = logging.getLogger(__name__)


def default_embedding_model(model: Optional[str] = None, base_url: Optional[str] = None) -> OllamaEmbeddings:
    return OllamaEmbeddings(
        model=model or os.getenv("EMBEDDING_MODEL", "mxbai-embed-large"),
        base_url=base_url
        or f"http://{os.getenv('OLLAMA_EMBEDDING_HOST', 'localhost')}:{os.getenv('OLLAMA_EMBEDDING_PORT', '11434')}",
    )


class EmailProcessor:
    """Turn raw messages into stored, embedded documents.

    Parameters
    ----------
    document_store : Any
        Store exposing ``upsert(user_id, source_type, source_id, content, embedding, metadata)``.
    embedding_model : Optional[Any]
        Model implementing ``embed_documents``. Defaults to
        :class:`OllamaEmbeddings` configured from the environment.
    classifier : Optional[EmailClassifier]
        Normalizer used for every message.
    """

    def __init__(
        self,
        document_store: Any,
        *,
        embedding_model: Optional[Any] = None,
        classifier: Optional[EmailClassifier] = None,
    ) -> None:
        self.document_store = document_store
        self.embedding_model = embedding_model or default_embedding_model()
        self.classifier = classifier or EmailClassifier()
        logger.info(
            "EmailProcessor initialized with embedding model %s",
            getattr(self.embedding_model, "model", self.embedding_model.__class__.__name__),
        )

    def process(
        self,
        user_id: str,
        message: Dict[str, Any],
        inclusion: InclusionPolicy,
        max_content_length: Optional[int] = None,
    ) -> ItemOutcome:
        message_id = str(message.get("id") or "")
        reason = inclusion.skip_reason(message.get("labelIds") or [])
        if reason:
            logger.debug("Skipping message %s for %s: %s", message_id, user_id[:8], reason)
            return ItemOutcome(message_id, "skipped", reason)

        email = self.classifier.classify(message, max_content_length=max_content_length)
        if not email.content.strip():
            return ItemOutcome(message_id, "skipped", "empty")

        try:
            embedding = self.embedding_model.embed_documents([email.content])[0]
        except Exception as exc:
            logger.error("Embedding failed for message %s: %s", message_id, exc)
            return ItemOutcome(message_id, "failed", f"embedding: {exc}")

        try:
            self.document_store.upsert(
                user_id,
                EMAIL_SOURCE_TYPE,
                email.source_id,
                email.content,
                embedding,
                email.metadata,
            )
        except PersistenceError as exc:
            logger.error("Persisting message %s failed: %s", message_id, exc)
            return ItemOutcome(message_id, "failed", str(exc))

        logger.debug("Ingested message %s (%s) for %s", message_id, email.category, user_id[:8])
        return ItemOutcome(message_id, "processed")
