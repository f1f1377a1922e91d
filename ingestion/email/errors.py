"""Error taxonomy for mailbox ingestion.

Fetch errors are raised by change fetchers and interpreted by the
:class:`~ingestion.email.orchestrator.EmailSyncOrchestrator`; none of them
propagate past a sync run.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for ingestion failures."""

    #: Short machine readable category recorded alongside ``last_error``.
    kind = "error"


class FetchError(SyncError):
    """The remote provider could not return the requested data."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class InvalidCursorError(FetchError):
    """The stored change-log position is unknown or expired at the provider."""

    kind = "invalid_cursor"


class RateLimitedError(FetchError):
    """The provider asked us to back off. Not counted as a hard failure."""

    kind = "rate_limited"


class TransientFetchError(FetchError):
    """Network or server side failure worth retrying on the next run."""

    kind = "transient"


class FatalFetchError(FetchError):
    """Authorization was revoked or rejected; automatic sync must stop."""

    kind = "fatal"


class ItemNotFoundError(FetchError):
    """A listed item disappeared before its content could be fetched."""

    kind = "not_found"


class PersistenceError(SyncError):
    """Writing an ingested document failed."""

    kind = "persistence"


class CredentialsError(SyncError):
    """Stored credentials exist but cannot be used; the account must be reconnected."""

    kind = "configuration"
