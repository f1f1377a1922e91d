"""Gmail API change fetcher.

This module provides :class:`GmailHistoryConnector`, which reads the Gmail
history log (``users.history.list``) to find messages added since a stored
history id, and :class:`GmailConnectorFactory`, which builds authorized
connectors from a user's refresh token.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..client_cache import GmailClientCache
from ..errors import (
    FatalFetchError,
    FetchError,
    InvalidCursorError,
    ItemNotFoundError,
    RateLimitedError,
    TransientFetchError,
)
from ..models import ChangeBatch
from .base import ChangeFetcher

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _error_reasons(exc: HttpError) -> List[str]:
    """Extract ``error.errors[].reason`` values from an API error body."""
    content = getattr(exc, "content", b"") or b""
    try:
        payload = json.loads(content.decode("utf-8") if isinstance(content, bytes) else content)
    except (ValueError, UnicodeDecodeError):
        return []
    if not isinstance(payload, dict):
        return []
    error = payload.get("error")
    if not isinstance(error, dict):
        return []
    reasons = [e.get("reason") for e in error.get("errors") or [] if isinstance(e, dict)]
    if isinstance(error.get("status"), str):
        reasons.append(error["status"])
    return [r for r in reasons if r]


def classify_http_error(exc: HttpError, *, not_found: Callable[[str, int], FetchError]) -> FetchError:
    """Map a Gmail ``HttpError`` onto the fetch error taxonomy.

    ``not_found`` builds the error for a 404, whose meaning depends on the
    call (expired history id vs. a vanished message).
    """
    status = int(getattr(getattr(exc, "resp", None), "status", 0) or 0)
    message = f"Gmail API error {status}: {getattr(exc, 'reason', '') or exc}"
    if status == 404:
        return not_found(message, status)
    if status == 429:
        return RateLimitedError(message, status=status)
    if status == 403 and _RATE_LIMIT_REASONS.intersection(_error_reasons(exc)):
        return RateLimitedError(message, status=status)
    if status == 401:
        return FatalFetchError(message, status=status)
    if status >= 500:
        return TransientFetchError(message, status=status)
    # remaining 4xx (e.g. 403 insufficient permissions) cannot fix themselves
    return FatalFetchError(message, status=status)


def _invalid_cursor(message: str, status: int) -> FetchError:
    return InvalidCursorError(message, status=status)


def _item_not_found(message: str, status: int) -> FetchError:
    return ItemNotFoundError(message, status=status)


class GmailHistoryConnector(ChangeFetcher):
    """Incremental Gmail reader built on the history API.

    Parameters
    ----------
    service : Any
        An authorized ``gmail``/``v1`` discovery client.
    user_id : str
        Gmail user id, ``"me"`` for the authorized account.
    page_size : int
        ``maxResults`` for each history page.
    max_items : Optional[int]
        Cap on added messages returned per batch. When reached, the batch
        cursor stops at the last fully included history record so nothing
        past it is skipped.
    """

    def __init__(
        self,
        service: Any,
        *,
        user_id: str = "me",
        page_size: int = 500,
        max_items: Optional[int] = None,
    ) -> None:
        self.service = service
        self.user_id = user_id
        self.page_size = page_size
        self.max_items = max_items

    def _execute(self, request: Any, *, not_found: Callable[[str, int], FetchError] = _item_not_found) -> Dict[str, Any]:
        try:
            return request.execute()
        except HttpError as exc:
            raise classify_http_error(exc, not_found=not_found) from exc
        except RefreshError as exc:
            raise FatalFetchError(f"Gmail authorization rejected: {exc}") from exc
        except (TransportError, OSError) as exc:
            raise TransientFetchError(f"Gmail request failed: {exc}") from exc

    # ------------------------------------------------------------------
    def fetch_bootstrap_cursor(self) -> str:
        profile = self._execute(self.service.users().getProfile(userId=self.user_id))
        history_id = profile.get("historyId")
        if not history_id:
            raise TransientFetchError("Gmail profile did not include a historyId")
        logger.info("Bootstrapped Gmail cursor at history %s", history_id)
        return str(history_id)

    def fetch_changes(self, cursor: str) -> ChangeBatch:
        """Collect message ids added since ``cursor`` across all history pages."""
        item_ids: List[str] = []
        seen = set()
        new_cursor = cursor
        page_token: Optional[str] = None
        while True:
            list_kwargs: Dict[str, Any] = {
                "userId": self.user_id,
                "startHistoryId": cursor,
                "historyTypes": ["messageAdded"],
                "maxResults": self.page_size,
            }
            if page_token:
                list_kwargs["pageToken"] = page_token
            response = self._execute(
                self.service.users().history().list(**list_kwargs),
                not_found=_invalid_cursor,
            )
            for record in response.get("history", []):
                added = [
                    entry["message"]["id"]
                    for entry in record.get("messagesAdded", [])
                    if entry.get("message", {}).get("id")
                ]
                fresh = [mid for mid in added if mid not in seen]
                over_cap = self.max_items is not None and len(item_ids) + len(fresh) > self.max_items
                if over_cap and item_ids:
                    logger.info(
                        "Gmail batch capped at %d messages; resuming from history %s next run",
                        len(item_ids), new_cursor,
                    )
                    return ChangeBatch(new_cursor=new_cursor, item_ids=item_ids, truncated=True)
                for mid in fresh:
                    seen.add(mid)
                    item_ids.append(mid)
                if record.get("id"):
                    new_cursor = str(record["id"])
            page_token = response.get("nextPageToken")
            if not page_token:
                # the mailbox's current position is only safe to adopt once every page is read
                if response.get("historyId"):
                    new_cursor = str(response["historyId"])
                break
        logger.info("Gmail history since %s: %d added message(s), new cursor %s", cursor, len(item_ids), new_cursor)
        return ChangeBatch(new_cursor=new_cursor, item_ids=item_ids)

    def fetch_item(self, item_id: str) -> Dict[str, Any]:
        return self._execute(
            self.service.users().messages().get(userId=self.user_id, id=item_id, format="full")
        )

    def start_watch(self, topic_name: str, label_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        body = {
            "topicName": topic_name,
            "labelIds": label_ids or ["INBOX"],
            "labelFilterBehavior": "INCLUDE",
        }
        response = self._execute(self.service.users().watch(userId=self.user_id, body=body))
        logger.info("Gmail watch registered on %s (expires %s)", topic_name, response.get("expiration"))
        return response

    def stop_watch(self) -> None:
        self._execute(self.service.users().stop(userId=self.user_id))
        logger.info("Gmail watch stopped")


class GmailConnectorFactory:
    """Build :class:`GmailHistoryConnector` instances for stored refresh tokens.

    Discovery clients are reused through a :class:`GmailClientCache` when one
    is supplied.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_uri: str = DEFAULT_TOKEN_URI,
        client_cache: Optional[GmailClientCache] = None,
        max_items: Optional[int] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self.client_cache = client_cache
        self.max_items = max_items

    def _build_service(self, refresh_token: str) -> Any:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=GMAIL_SCOPES,
        )
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def __call__(self, user_id: str, refresh_token: str) -> GmailHistoryConnector:
        if self.client_cache is not None:
            service = self.client_cache.get_or_create(
                user_id, refresh_token, lambda: self._build_service(refresh_token)
            )
        else:
            service = self._build_service(refresh_token)
        return GmailHistoryConnector(service, max_items=self.max_items)
