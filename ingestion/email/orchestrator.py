"""
This module defines the EmailSyncOrchestrator class, which runs incremental
Gmail ingestion for one user at a time.

A run loads the user's refresh token, reads the stored history cursor and
either bootstraps a fresh cursor (first sync, forced resync, or a cursor the
provider no longer recognizes) or fetches the messages added since it. The
cursor is only written after the batch has been handled. Every failure is
folded into the cursor row (``error_count``/``last_error``) and returned in
the :class:`IngestionRunResult`; nothing is raised to the caller.

Classes:
    EmailSyncOrchestrator: Sync, status, cycle and push-watch operations.
"""

import logging
import time
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional

from .classifier import InclusionPolicy
from .connectors.base import ChangeFetcher
from .errors import (
    CredentialsError,
    FatalFetchError,
    FetchError,
    InvalidCursorError,
    ItemNotFoundError,
    RateLimitedError,
)
from .models import (
    EMAIL_SOURCE_TYPE,
    GMAIL_SOURCE,
    NO_CREDENTIALS_ERROR,
    ChangeBatch,
    IngestionRunResult,
    SyncCursor,
    SyncSettings,
)

logger = logging.getLogger(__name__)

RECONNECT_MESSAGE = "Gmail credentials unreadable; reconnect account"
REVOKED_MESSAGE = "Gmail authorization revoked; reconnect account"


class EmailSyncOrchestrator:
    """Coordinate fetcher, processor and stores for Gmail ingestion."""

    def __init__(
        self,
        *,
        credential_store: Any,
        cursor_store: Any,
        settings_store: Any,
        document_store: Any,
        processor: Any,
        connector_factory: Callable[[str, str], ChangeFetcher],
        client_cache: Optional[Any] = None,
        pubsub_topic: Optional[str] = None,
        source_name: str = GMAIL_SOURCE,
    ) -> None:
        self.credential_store = credential_store
        self.cursor_store = cursor_store
        self.settings_store = settings_store
        self.document_store = document_store
        self.processor = processor
        self.connector_factory = connector_factory
        self.client_cache = client_cache
        self.pubsub_topic = pubsub_topic
        self.source_name = source_name

    # ------------------------------------------------------------------
    def sync(self, user_id: str, force_full_sync: bool = False) -> IngestionRunResult:
        """Run one sync for ``user_id``. Never raises."""
        started = time.monotonic()
        try:
            result = self._sync(user_id, force_full_sync)
        except Exception as exc:
            logger.exception("Unexpected Gmail sync failure for %s", user_id[:8])
            result = IngestionRunResult(error=f"sync failed: {exc}", error_kind="transient")
            self._record_failure(user_id, result.error)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Gmail sync for %s finished: type=%s processed=%d skipped=%d failed=%d error=%s (%d ms)",
            user_id[:8],
            "initial" if result.is_first_sync else "incremental",
            result.processed,
            result.skipped,
            result.failed,
            result.error,
            result.duration_ms,
        )
        return result

    def _sync(self, user_id: str, force_full_sync: bool) -> IngestionRunResult:
        try:
            token = self.credential_store.get_token(user_id, self.source_name)
        except CredentialsError as exc:
            logger.error("Cannot read Gmail credentials for %s: %s", user_id[:8], exc)
            self._record_failure(user_id, RECONNECT_MESSAGE)
            return IngestionRunResult(error=RECONNECT_MESSAGE, error_kind=exc.kind)
        if not token:
            logger.info("No Gmail credentials for %s; skipping sync", user_id[:8])
            return IngestionRunResult(error=NO_CREDENTIALS_ERROR, error_kind="configuration")

        cursor = self.cursor_store.get(user_id, self.source_name)
        previous_token = cursor.cursor_token if cursor else None
        connector = self.connector_factory(user_id, token)

        if force_full_sync or previous_token is None:
            reason = "forced" if force_full_sync and previous_token else "first sync"
            return self._bootstrap(user_id, connector, previous_token, reason)

        try:
            batch = connector.fetch_changes(previous_token)
        except InvalidCursorError:
            logger.warning("Gmail cursor %s for %s is no longer valid; bootstrapping", previous_token, user_id[:8])
            return self._bootstrap(user_id, connector, previous_token, "invalid cursor")
        except FetchError as exc:
            return self._fetch_failed(user_id, exc)

        settings = self.settings_store.get(user_id, self.source_name)
        try:
            result = self._process_batch(user_id, connector, batch, settings)
        except FetchError as exc:
            return self._fetch_failed(user_id, exc)

        if result.failed and not result.processed:
            error = f"failed to persist {result.failed} message(s)"
            logger.error("Gmail batch for %s not persisted; cursor stays at %s", user_id[:8], previous_token)
            self._record_failure(user_id, error)
            result.error = error
            result.error_kind = "persistence"
            return result

        stored = self.cursor_store.record_success(
            user_id,
            self.source_name,
            batch.new_cursor,
            expected_token=previous_token,
            synced_count=result.processed,
        )
        result.last_sync_at = stored.last_sync_at
        return result

    def _bootstrap(
        self, user_id: str, connector: ChangeFetcher, previous_token: Optional[str], reason: str
    ) -> IngestionRunResult:
        """Adopt the provider's current position without back-filling history."""
        try:
            new_token = connector.fetch_bootstrap_cursor()
        except FetchError as exc:
            return self._fetch_failed(user_id, exc, is_first_sync=True)
        stored = self.cursor_store.record_success(
            user_id,
            self.source_name,
            new_token,
            expected_token=previous_token,
            synced_count=0,
        )
        logger.info("Gmail cursor for %s bootstrapped at %s (%s)", user_id[:8], new_token, reason)
        return IngestionRunResult(is_first_sync=True, last_sync_at=stored.last_sync_at)

    def _process_batch(
        self, user_id: str, connector: ChangeFetcher, batch: ChangeBatch, settings: SyncSettings
    ) -> IngestionRunResult:
        """Handle every added message. Fetch errors other than a vanished item propagate."""
        result = IngestionRunResult()
        if not batch.item_ids:
            return result
        inclusion = InclusionPolicy.from_settings(settings)
        already = self.document_store.existing_ids(user_id, EMAIL_SOURCE_TYPE, batch.item_ids)
        for item_id in batch.item_ids:
            if item_id in already:
                result.skipped += 1
                continue
            try:
                message = connector.fetch_item(item_id)
            except ItemNotFoundError:
                logger.debug("Message %s vanished before fetch", item_id)
                result.skipped += 1
                continue
            outcome = self.processor.process(user_id, message, inclusion, settings.max_content_length)
            if outcome.status == "processed":
                result.processed += 1
            elif outcome.status == "failed":
                # counted as skipped for the caller, tracked separately for the cursor decision
                result.failed += 1
                result.skipped += 1
            else:
                result.skipped += 1
        return result

    def _fetch_failed(self, user_id: str, exc: FetchError, is_first_sync: bool = False) -> IngestionRunResult:
        error = str(exc)
        if isinstance(exc, RateLimitedError):
            logger.warning("Gmail rate limited for %s; will retry next run", user_id[:8])
            self._record_failure(user_id, error, count_error=False)
        elif isinstance(exc, FatalFetchError):
            logger.error("Gmail authorization failed for %s; disabling sync: %s", user_id[:8], exc)
            error = f"{REVOKED_MESSAGE} ({exc})"
            self._record_failure(user_id, error, disable=True)
            if self.client_cache is not None:
                self.client_cache.invalidate(user_id)
        else:
            logger.warning("Gmail fetch failed for %s: %s", user_id[:8], exc)
            self._record_failure(user_id, error)
        return IngestionRunResult(error=error, error_kind=exc.kind, is_first_sync=is_first_sync)

    def _record_failure(self, user_id: str, error: str, *, count_error: bool = True, disable: bool = False) -> None:
        try:
            self.cursor_store.record_failure(
                user_id, self.source_name, error, count_error=count_error, disable=disable
            )
        except Exception as exc:
            logger.error("Could not record sync failure for %s: %s", user_id[:8], exc)

    # ------------------------------------------------------------------
    def get_sync_status(self, user_id: str) -> Dict[str, Any]:
        has_credentials = self.credential_store.has_credentials(user_id, self.source_name)
        cursor = self.cursor_store.get(user_id, self.source_name) or SyncCursor(user_id=user_id, source_name=self.source_name)
        return {
            "hasCredentials": has_credentials,
            "syncEnabled": cursor.sync_enabled,
            "lastSyncAt": cursor.last_sync_at.isoformat() if cursor.last_sync_at else None,
            "firstSyncCompleted": cursor.cursor_token is not None,
            "totalSynced": cursor.emails_synced,
            "errorCount": cursor.error_count,
            "lastError": cursor.last_error,
        }

    def is_sync_enabled(self, user_id: str) -> bool:
        cursor = self.cursor_store.get(user_id, self.source_name)
        return cursor is None or cursor.sync_enabled

    def list_syncable_users(self) -> List[str]:
        return self.credential_store.list_user_ids(self.source_name, only_sync_enabled=True)

    def resolve_user(self, email_address: str) -> Optional[str]:
        return self.credential_store.find_user_by_email(email_address, self.source_name)

    def connect_account(self, user_id: str, refresh_token: str, email_address: Optional[str] = None) -> None:
        """Store new credentials and turn automatic sync back on."""
        self.credential_store.save(user_id, self.source_name, refresh_token, email_address)
        if self.client_cache is not None:
            self.client_cache.invalidate(user_id)
        self.cursor_store.set_enabled(user_id, self.source_name, True)

    def run_cycle(
        self,
        user_ids: Optional[List[str]] = None,
        force_full_sync: bool = False,
        sync_fn: Optional[Callable[[str, bool], Optional[IngestionRunResult]]] = None,
    ) -> Dict[str, Any]:
        """Sync each user sequentially; one user's failure never stops the others.

        ``sync_fn`` replaces :meth:`sync` for each user; it returns ``None`` when
        the user already has a run in flight, which is reported and not retried.

        Returns aggregated stats ``{totalUsers, emailsProcessed, emailsSkipped,
        errors, usersInFlight, results}``.
        """
        sync_fn = sync_fn or (lambda user_id, force: self.sync(user_id, force_full_sync=force))
        if user_ids is None:
            user_ids = self.list_syncable_users()
        logger.info("Gmail sync cycle start: users=%d", len(user_ids))
        stats: Dict[str, Any] = {
            "totalUsers": len(user_ids),
            "emailsProcessed": 0,
            "emailsSkipped": 0,
            "errors": 0,
            "usersInFlight": 0,
            "results": [],
        }
        for user_id in user_ids:
            result = sync_fn(user_id, force_full_sync)
            if result is None:
                stats["usersInFlight"] += 1
                stats["results"].append({"userId": f"{user_id[:8]}...", "skipped": True, "reason": "sync already in progress"})
                continue
            stats["emailsProcessed"] += result.processed
            stats["emailsSkipped"] += result.skipped
            if not result.success:
                stats["errors"] += 1
            stats["results"].append({"userId": f"{user_id[:8]}...", **result.to_response()})
        logger.info(
            "Gmail sync cycle complete: processed=%d skipped=%d errors=%d",
            stats["emailsProcessed"], stats["emailsSkipped"], stats["errors"],
        )
        return stats

    # ------------------------------------------------------------------
    def setup_watch(self, user_id: str, topic_name: Optional[str] = None) -> Dict[str, Any]:
        """Register Gmail push notifications for the user's inbox.

        Raises:
            ValueError: No topic configured or the user has no credentials.
            FetchError: Gmail rejected the request.
        """
        topic = topic_name or self.pubsub_topic
        if not topic:
            raise ValueError("no Pub/Sub topic configured for Gmail push notifications")
        token = self.credential_store.get_token(user_id, self.source_name)
        if not token:
            raise ValueError(NO_CREDENTIALS_ERROR)
        response = self.connector_factory(user_id, token).start_watch(topic, ["INBOX"])
        expiration = None
        if response.get("expiration"):
            expiration = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=UTC)
        self.settings_store.update_watch(
            user_id, self.source_name, enabled=True, topic_name=topic, expiration=expiration
        )
        return {
            "historyId": response.get("historyId"),
            "expiration": expiration.isoformat() if expiration else None,
            "topicName": topic,
        }

    def stop_watch(self, user_id: str) -> None:
        token = self.credential_store.get_token(user_id, self.source_name)
        if token:
            self.connector_factory(user_id, token).stop_watch()
        self.settings_store.update_watch(user_id, self.source_name, enabled=False)

    def watch_enabled(self, user_id: str) -> bool:
        return self.settings_store.get(user_id, self.source_name).watch_enabled
