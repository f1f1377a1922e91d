"""Data models shared by the mailbox ingestion components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

GMAIL_SOURCE = "gmail"
EMAIL_SOURCE_TYPE = "email"

NO_CREDENTIALS_ERROR = "no credentials"


@dataclass
class SyncCursor:
    """Persisted incremental sync position for one (user, source) pair.

    ``cursor_token`` of ``None`` means the source was never synced and the
    next run must bootstrap.
    """

    user_id: str
    source_name: str = GMAIL_SOURCE
    cursor_token: Optional[str] = None
    sync_enabled: bool = True
    last_sync_at: Optional[datetime] = None
    emails_synced: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncCursor":
        return cls(
            user_id=row["user_id"],
            source_name=row["source_name"],
            cursor_token=row.get("cursor_token"),
            sync_enabled=bool(row.get("sync_enabled", True)),
            last_sync_at=row.get("last_sync_at"),
            emails_synced=int(row.get("emails_synced") or 0),
            error_count=int(row.get("error_count") or 0),
            last_error=row.get("last_error"),
            last_error_at=row.get("last_error_at"),
        )


@dataclass
class SyncSettings:
    """Per-user inclusion filters and push watch state.

    A user without a stored row gets these defaults.
    """

    user_id: str
    source_name: str = GMAIL_SOURCE
    excluded_labels: List[str] = field(default_factory=list)
    included_labels: Optional[List[str]] = None
    exclude_promotions: bool = True
    exclude_social: bool = True
    unread_only: bool = True
    inbox_only: bool = True
    max_content_length: int = 50000
    watch_enabled: bool = False
    watch_topic_name: Optional[str] = None
    watch_expiration: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncSettings":
        return cls(
            user_id=row["user_id"],
            source_name=row["source_name"],
            excluded_labels=list(row.get("excluded_labels") or []),
            included_labels=list(row["included_labels"]) if row.get("included_labels") else None,
            exclude_promotions=bool(row.get("exclude_promotions", True)),
            exclude_social=bool(row.get("exclude_social", True)),
            unread_only=bool(row.get("unread_only", True)),
            inbox_only=bool(row.get("inbox_only", True)),
            max_content_length=int(row.get("max_content_length") or 50000),
            watch_enabled=bool(row.get("watch_enabled", False)),
            watch_topic_name=row.get("watch_topic_name"),
            watch_expiration=row.get("watch_expiration"),
        )


@dataclass
class ChangeBatch:
    """Items added since a cursor, and the position to resume from afterwards."""

    new_cursor: str
    item_ids: List[str] = field(default_factory=list)
    truncated: bool = False


@dataclass
class NormalizedEmail:
    """Canonical text plus structured metadata derived from a raw message."""

    source_id: str
    thread_id: str
    content: str
    category: str
    labels: List[str] = field(default_factory=list)
    is_unread: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemOutcome:
    """Result of handling one added item."""

    source_id: str
    status: str  # processed, skipped, failed
    reason: Optional[str] = None


@dataclass
class IngestionRunResult:
    """Statistics for one sync run. Folded into the cursor row, never stored itself."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0
    is_first_sync: bool = False
    last_sync_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_response(self) -> Dict[str, Any]:
        """Shape used by the HTTP sync endpoint."""
        response: Dict[str, Any] = {
            "success": self.success,
            "emailsProcessed": self.processed,
            "emailsSkipped": self.skipped,
            "syncType": "initial" if self.is_first_sync else "incremental",
            "durationMs": self.duration_ms,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }
        if self.error is not None:
            response["error"] = self.error
        return response
