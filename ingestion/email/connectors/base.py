"""Base interface for remote change fetchers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import ChangeBatch


class ChangeFetcher(ABC):
    """Abstract change-log reader for a remote mailbox.

    Implementations raise the :mod:`ingestion.email.errors` fetch errors;
    they never return partial results for a failed call.
    """

    @abstractmethod
    def fetch_bootstrap_cursor(self) -> str:
        """Return the provider's current change-log position without fetching items."""

    @abstractmethod
    def fetch_changes(self, cursor: str) -> ChangeBatch:
        """Return the items added since ``cursor`` and the position to resume from."""

    @abstractmethod
    def fetch_item(self, item_id: str) -> Dict[str, Any]:
        """Return the full raw representation of one item."""

    def start_watch(self, topic_name: str, label_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Register push notifications. Optional for fetchers without push support."""
        raise NotImplementedError(f"{type(self).__name__} does not support push notifications")

    def stop_watch(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support push notifications")
