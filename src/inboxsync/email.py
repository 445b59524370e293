"""Summary: Mail provider interface, Gmail REST client, and message parsing.

Importance: Encapsulates every mailbox read the synchronizer needs behind one seam.
Alternatives: Use google-api-python-client discovery clients.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from inboxsync.errors import ProviderRequestError, StaleCursorError
from inboxsync.html_text import html_to_plain_text, truncate
from inboxsync.models import Message
from inboxsync.transport import request_json


EXCLUDED_CATEGORY_LABELS = frozenset(
    {"CATEGORY_PROMOTIONS", "CATEGORY_SOCIAL", "CATEGORY_UPDATES"}
)
SNIPPET_CHARS = 200


@dataclass(frozen=True)
class HistoryDelta:
    """Summary: Message ids added since a history cursor.

    Importance: Pairs the discovered ids with the provider's new cursor value.
    Alternatives: Return raw history records.
    """

    message_ids: list[str]
    history_id: str | None


class MailboxClient(ABC):
    """Summary: Abstract interface for mailbox reads.

    Importance: Lets services take an injected client so tests can substitute fakes.
    Alternatives: Call the Gmail API directly from services.
    """

    @abstractmethod
    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        """Return message ids matching a provider search query, newest first."""

    @abstractmethod
    def get_message(self, message_id: str) -> dict[str, Any]:
        """Return the full provider payload for one message."""

    @abstractmethod
    def list_history(self, start_history_id: str) -> HistoryDelta:
        """Summary: Return messages added since ``start_history_id``.

        Importance: Drives incremental push-driven sync.
        Alternatives: Re-list the inbox and diff against storage.
        """

    @abstractmethod
    def watch(self, topic_name: str) -> dict[str, Any]:
        """Register push notifications; returns historyId and expiration."""

    @abstractmethod
    def get_profile(self) -> dict[str, Any]:
        """Return the mailbox profile (emailAddress, historyId)."""


class GmailClient(MailboxClient):
    """Summary: Gmail v1 REST client bound to one access token.

    Importance: Constructed per request from a freshly resolved token.
    Alternatives: Share a process-wide client and swap tokens.
    """

    def __init__(self, access_token: str, base_url: str, timeout: float = 10.0) -> None:
        """Summary: Initialize the Gmail client.

        Importance: Stores access token, API base URL, and request timeout.
        Alternatives: Fetch tokens on demand inside each request.
        """

        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        payload = self._get("/users/me/messages", {"q": query, "maxResults": max_results})
        return [item["id"] for item in payload.get("messages", []) if item.get("id")]

    def get_message(self, message_id: str) -> dict[str, Any]:
        return self._get(f"/users/me/messages/{message_id}", {"format": "full"})

    def list_history(self, start_history_id: str) -> HistoryDelta:
        """Summary: Page through history.list collecting messageAdded ids.

        Importance: A 400/404 means the start cursor is too old and raises StaleCursorError.
        Alternatives: Only read the first page.
        """

        message_ids: list[str] = []
        seen: set[str] = set()
        history_id: str | None = None
        page_token: str | None = None
        while True:
            params = {
                "startHistoryId": start_history_id,
                "historyTypes": "messageAdded",
                "pageToken": page_token,
            }
            try:
                payload = self._get("/users/me/history", params)
            except ProviderRequestError as exc:
                if exc.status in (400, 404):
                    raise StaleCursorError(exc.message) from exc
                raise
            for record in payload.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = (added.get("message") or {}).get("id")
                    if message_id and message_id not in seen:
                        seen.add(message_id)
                        message_ids.append(message_id)
            if payload.get("historyId"):
                history_id = str(payload["historyId"])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return HistoryDelta(message_ids=message_ids, history_id=history_id)

    def watch(self, topic_name: str) -> dict[str, Any]:
        return request_json(
            "POST",
            f"{self._base_url}/users/me/watch",
            provider="gmail",
            timeout=self._timeout,
            access_token=self._access_token,
            json_body={"topicName": topic_name, "labelIds": ["INBOX"]},
        )

    def get_profile(self) -> dict[str, Any]:
        return self._get("/users/me/profile", None)

    def _get(self, path: str, params: dict[str, Any] | None) -> dict[str, Any]:
        return request_json(
            "GET",
            f"{self._base_url}{path}",
            provider="gmail",
            timeout=self._timeout,
            access_token=self._access_token,
            params=params,
        )


def parse_gmail_message(message: dict[str, Any], body_max_chars: int) -> Message:
    """Summary: Parse a Gmail message payload into a Message.

    Importance: Normalizes headers, sender, timestamp, and body for storage.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message.get("payload") or {}
    headers = parse_gmail_headers(payload.get("headers", []))
    subject = headers.get("subject") or "(No Subject)"
    from_name, from_email = parse_sender(headers.get("from", ""))
    received_at = _parse_received_at(headers.get("date", ""), message.get("internalDate"))
    snippet = message.get("snippet", "") or ""
    body = extract_gmail_body(payload) or snippet
    if not snippet:
        snippet = body[:SNIPPET_CHARS].replace("\n", " ")
    return Message(
        provider_message_id=message.get("id", ""),
        from_name=from_name,
        from_email=from_email,
        subject=subject,
        body_snippet=truncate(snippet, SNIPPET_CHARS * 2),
        body_full=truncate(body, body_max_chars),
        received_at=received_at,
    )


def is_primary_inbox(message: dict[str, Any]) -> bool:
    """Summary: Check that a message is in the inbox and not a bulk category.

    Importance: History events include promotions and updates the inbox query excludes.
    Alternatives: Filter by sender heuristics.
    """

    labels = set(message.get("labelIds") or [])
    return "INBOX" in labels and not labels & EXCLUDED_CATEGORY_LABELS


def parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    """Summary: Normalize Gmail header list into a lower-cased dictionary.

    Importance: Header names are case-insensitive; the first occurrence wins.
    Alternatives: Scan header lists inline for each field.
    """

    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value and name.lower() not in normalized:
            normalized[name.lower()] = value
    return normalized


def parse_sender(raw: str) -> tuple[str | None, str]:
    """Split a From header into (display name, address)."""

    name, address = parseaddr(raw.strip())
    return (name.strip() or None), (address or raw.strip())


def extract_gmail_body(payload: dict[str, Any]) -> str:
    """Summary: Extract a plain text body from a Gmail payload.

    Importance: Prefers text/plain parts and converts text/html when no plain part exists.
    Alternatives: Store the snippet only for Gmail messages.
    """

    text_parts: list[str] = []
    html_parts: list[str] = []
    for part in _walk_gmail_parts(payload):
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        if mime_type == "text/plain":
            text_parts.append(_decode_base64url(data))
        elif mime_type == "text/html":
            html_parts.append(_decode_base64url(data))
    if text_parts:
        return "\n".join(item.strip() for item in text_parts if item.strip()).strip()
    if html_parts:
        return "\n".join(html_to_plain_text(item) for item in html_parts).strip()
    return ""


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Summary: Walk Gmail payload parts recursively.

    Importance: Supports nested multipart payloads from Gmail.
    Alternatives: Only inspect the top-level payload.
    """

    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="ignore")


def _parse_received_at(date_raw: str, internal_date: str | None) -> datetime:
    """Summary: Resolve the received timestamp of a message.

    Importance: Uses the Date header, then Gmail's internalDate, then the current time.
    Alternatives: Always trust internalDate.
    """

    if date_raw:
        try:
            parsed = parsedate_to_datetime(date_raw)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            pass
    return datetime.now(timezone.utc)
