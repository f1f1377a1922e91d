"""Email classification and normalization.

:class:`EmailClassifier` turns a Gmail ``format=full`` message resource into
a :class:`~ingestion.email.models.NormalizedEmail`: canonical text (headers,
attachment manifest and body) plus metadata. Category and urgency rules live
in a replaceable :class:`ClassificationPolicy`; which messages are ingested
at all is decided by :class:`InclusionPolicy`.

Body preference order: inline ``text/plain`` part, then inline ``text/html``
(tags stripped, whitespace collapsed), then the message snippet.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from .models import NormalizedEmail, SyncSettings

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "unknown"

# First matching label wins.
DEFAULT_CATEGORY_LABELS: Tuple[Tuple[str, str], ...] = (
    ("CATEGORY_PERSONAL", "personal"),
    ("CATEGORY_SOCIAL", "social"),
    ("CATEGORY_PROMOTIONS", "promotions"),
    ("CATEGORY_UPDATES", "updates"),
    ("CATEGORY_FORUMS", "forums"),
    ("INBOX", "personal"),
)

DEFAULT_URGENCY_KEYWORDS: Tuple[str, ...] = (
    "urgent",
    "asap",
    "immediately",
    "action required",
    "deadline",
    "overdue",
    "final notice",
    "urgente",
)

TRUNCATION_MARKER = "\n\n[... content truncated ...]"
URGENCY_SCAN_CHARS = 500

_CHARSET_RE = re.compile(r'charset="?([\w.:\-]+)"?', re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ClassificationPolicy:
    """Category lookup and urgency keywords.

    Swap in a different instance to change the rules without touching the
    sync pipeline.
    """

    category_labels: Tuple[Tuple[str, str], ...] = DEFAULT_CATEGORY_LABELS
    default_category: str = DEFAULT_CATEGORY
    urgency_keywords: Tuple[str, ...] = DEFAULT_URGENCY_KEYWORDS

    def categorize(self, labels: Sequence[str]) -> str:
        label_set = set(labels or ())
        for label, category in self.category_labels:
            if label in label_set:
                return category
        return self.default_category

    def is_urgent(self, subject: str, body: str) -> bool:
        haystack = f"{subject or ''}\n{(body or '')[:URGENCY_SCAN_CHARS]}".lower()
        return any(keyword in haystack for keyword in self.urgency_keywords)


@dataclass(frozen=True)
class InclusionPolicy:
    """Decides which added messages are worth ingesting."""

    excluded_labels: Tuple[str, ...] = ()
    included_labels: Optional[Tuple[str, ...]] = None
    exclude_promotions: bool = True
    exclude_social: bool = True
    unread_only: bool = True
    inbox_only: bool = True

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "InclusionPolicy":
        return cls(
            excluded_labels=tuple(settings.excluded_labels or ()),
            included_labels=tuple(settings.included_labels) if settings.included_labels else None,
            exclude_promotions=settings.exclude_promotions,
            exclude_social=settings.exclude_social,
            unread_only=settings.unread_only,
            inbox_only=settings.inbox_only,
        )

    def skip_reason(self, labels: Sequence[str]) -> Optional[str]:
        """Return why a message with ``labels`` is filtered out, or ``None`` to keep it."""
        label_set = set(labels or ())
        if label_set & {"SPAM", "TRASH"}:
            return "spam_or_trash"
        if self.unread_only and "UNREAD" not in label_set:
            return "read"
        if self.inbox_only and "INBOX" not in label_set:
            return "not_in_inbox"
        if label_set.intersection(self.excluded_labels):
            return "excluded_label"
        if self.included_labels and not label_set.intersection(self.included_labels):
            return "not_included"
        if self.exclude_promotions and "CATEGORY_PROMOTIONS" in label_set:
            return "promotions"
        if self.exclude_social and "CATEGORY_SOCIAL" in label_set:
            return "social"
        return None


# ----------------------------------------------------------------------
# MIME helpers

def _header_map(payload: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header in payload.get("headers") or []:
        name = (header.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = header.get("value") or ""
    return headers


def _decode_body_data(data: str, charset: Optional[str]) -> str:
    """Decode a base64url Gmail body, falling back to UTF-8 for unknown charsets."""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError):
        return ""
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _part_charset(part: Dict[str, Any]) -> Optional[str]:
    content_type = _header_map(part).get("content-type", "")
    match = _CHARSET_RE.search(content_type)
    return match.group(1) if match else None


def _is_attachment(part: Dict[str, Any]) -> bool:
    if part.get("filename"):
        return True
    disposition = _header_map(part).get("content-disposition", "")
    return disposition.lower().startswith("attachment")


def _walk_parts(part: Dict[str, Any]):
    yield part
    for child in part.get("parts") or []:
        yield from _walk_parts(child)


def html_to_text(html: str) -> str:
    """Strip tags from an HTML body and collapse whitespace."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


def _clean_plain(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def _format_date(date_header: str, internal_date: Optional[str]) -> Optional[str]:
    if date_header:
        try:
            return parsedate_to_datetime(date_header).isoformat()
        except (TypeError, ValueError, IndexError):
            pass
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc).isoformat()
        except (TypeError, ValueError, OverflowError):
            pass
    return None


def truncate_content(content: str, max_length: int) -> str:
    """Cut ``content`` to ``max_length`` characters including the truncation marker."""
    if max_length <= 0 or len(content) <= max_length:
        return content
    keep = max(0, max_length - len(TRUNCATION_MARKER))
    return content[:keep] + TRUNCATION_MARKER


class EmailClassifier:
    """Normalize raw Gmail messages. Never raises for malformed input."""

    def __init__(self, policy: Optional[ClassificationPolicy] = None, max_content_length: int = 50000) -> None:
        self.policy = policy or ClassificationPolicy()
        self.max_content_length = max_content_length

    def extract_body(self, message: Dict[str, Any]) -> Tuple[str, bool]:
        """Return ``(body_text, has_full_body)``; the snippet is the last resort."""
        payload = message.get("payload") or {}
        plain: Optional[str] = None
        html: Optional[str] = None
        for part in _walk_parts(payload):
            if _is_attachment(part):
                continue
            mime_type = (part.get("mimeType") or "").lower()
            data = (part.get("body") or {}).get("data")
            if not data:
                continue
            try:
                if mime_type == "text/plain" and plain is None:
                    plain = _clean_plain(_decode_body_data(data, _part_charset(part)))
                elif mime_type == "text/html" and html is None:
                    html = html_to_text(_decode_body_data(data, _part_charset(part)))
            except Exception as exc:
                logger.debug("Skipping undecodable %s part of %s: %s", mime_type, message.get("id"), exc)
        if plain:
            return plain, True
        if html:
            return html, True
        return (message.get("snippet") or "").strip(), False

    def extract_attachments(self, message: Dict[str, Any]) -> List[Dict[str, Any]]:
        attachments: List[Dict[str, Any]] = []
        for part in _walk_parts(message.get("payload") or {}):
            filename = part.get("filename")
            if not filename:
                continue
            attachments.append({
                "filename": filename,
                "mime_type": part.get("mimeType") or "application/octet-stream",
                "size": int((part.get("body") or {}).get("size") or 0),
            })
        return attachments

    def build_content(
        self,
        *,
        subject: str,
        from_addr: str,
        to_addrs: List[str],
        date: Optional[str],
        attachments: List[Dict[str, Any]],
        body: str,
    ) -> str:
        lines = [f"Subject: {subject or '(no subject)'}", f"From: {from_addr}"]
        if to_addrs:
            lines.append(f"To: {', '.join(to_addrs)}")
        if date:
            lines.append(f"Date: {date}")
        if attachments:
            lines.append(f"Attachments ({len(attachments)}):")
            for attachment in attachments:
                size_kb = attachment["size"] / 1024
                lines.append(f"- {attachment['filename']} ({size_kb:.1f} KB)")
        return "\n".join(lines) + "\n\n" + body

    def classify(self, message: Dict[str, Any], max_content_length: Optional[int] = None) -> NormalizedEmail:
        message_id = str(message.get("id") or "")
        labels = [str(label) for label in message.get("labelIds") or []]
        try:
            return self._classify(message, message_id, labels, max_content_length)
        except Exception as exc:
            logger.warning("Falling back to snippet for message %s: %s", message_id, exc)
            snippet = str(message.get("snippet") or "")
            category = self.policy.categorize(labels)
            return NormalizedEmail(
                source_id=message_id,
                thread_id=str(message.get("threadId") or message_id),
                content=snippet,
                category=category,
                labels=labels,
                is_unread="UNREAD" in labels,
                metadata={
                    "category": category,
                    "is_unread": "UNREAD" in labels,
                    "thread_id": str(message.get("threadId") or message_id),
                    "labels": labels,
                    "has_full_body": False,
                    "body_length": len(snippet),
                },
            )

    def _classify(
        self,
        message: Dict[str, Any],
        message_id: str,
        labels: List[str],
        max_content_length: Optional[int],
    ) -> NormalizedEmail:
        headers = _header_map(message.get("payload") or {})
        subject = headers.get("subject", "")
        from_addr = headers.get("from", "")
        to_addrs = [addr.strip() for addr in headers.get("to", "").split(",") if addr.strip()]
        date = _format_date(headers.get("date", ""), message.get("internalDate"))
        body, has_full_body = self.extract_body(message)
        attachments = self.extract_attachments(message)
        thread_id = str(message.get("threadId") or message_id)
        category = self.policy.categorize(labels)
        is_unread = "UNREAD" in labels

        content = self.build_content(
            subject=subject,
            from_addr=from_addr,
            to_addrs=to_addrs,
            date=date,
            attachments=attachments,
            body=body,
        )
        limit = self.max_content_length if max_content_length is None else max_content_length
        content = truncate_content(content, limit)

        metadata = {
            "category": category,
            "is_unread": is_unread,
            "is_starred": "STARRED" in labels,
            "is_important": "IMPORTANT" in labels,
            "is_urgent": self.policy.is_urgent(subject, body),
            "thread_id": thread_id,
            "subject": subject,
            "from": from_addr,
            "to": to_addrs,
            "date": date,
            "labels": labels,
            "has_full_body": has_full_body,
            "body_length": len(body),
            "has_attachments": bool(attachments),
            "attachment_count": len(attachments),
        }
        return NormalizedEmail(
            source_id=message_id,
            thread_id=thread_id,
            content=content,
            category=category,
            labels=labels,
            is_unread=is_unread,
            metadata=metadata,
        )
