"""Bounded, time-evicted cache of per-user Gmail API clients.

Entries are keyed on ``(user_id, token_prefix)`` so a reconnect with a new
refresh token never reuses a client built for the old one. Expired entries
are dropped lazily on lookup and in bulk by :meth:`GmailClientCache.sweep`,
which the scheduler calls every cycle.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

TOKEN_PREFIX_LENGTH = 16


class GmailClientCache:
    """LRU cache with a per-entry time to live."""

    def __init__(
        self,
        max_entries: int = 128,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: str, token: str) -> Tuple[str, str]:
        return user_id, token[:TOKEN_PREFIX_LENGTH]

    def get(self, user_id: str, token: str) -> Optional[Any]:
        key = self._key(user_id, token)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            created, client = entry
            if self._clock() - created >= self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return client

    def put(self, user_id: str, token: str, client: Any) -> None:
        key = self._key(user_id, token)
        with self._lock:
            self._entries[key] = (self._clock(), client)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted Gmail client for %s (capacity)", evicted[0][:8])

    def get_or_create(self, user_id: str, token: str, factory: Callable[[], Any]) -> Any:
        """Return the cached client or build one with ``factory`` and cache it.

        The factory runs outside the lock; two racing callers may both build a
        client, the last one wins the slot.
        """
        client = self.get(user_id, token)
        if client is not None:
            return client
        client = factory()
        self.put(user_id, token, client)
        return client

    def invalidate(self, user_id: str) -> int:
        """Drop every entry for ``user_id`` (e.g. after a revoked token)."""
        with self._lock:
            keys = [key for key in self._entries if key[0] == user_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def sweep(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (created, _) in self._entries.items() if now - created >= self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Client cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
