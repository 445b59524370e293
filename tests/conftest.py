"""Summary: Shared fixtures for InboxSync tests.

Importance: Keeps test configuration, storage, and provider fakes consistent.
Alternatives: Repeat setup inside every test module.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from inboxsync.app import AppContext, AppServices, build_context
from inboxsync.calendar import CalendarClient
from inboxsync.config import AppConfig
from inboxsync.email import HistoryDelta, MailboxClient
from inboxsync.errors import TransientProviderError
from inboxsync.models import BusyInterval
from inboxsync.oauth import OAuthTokenResult
from inboxsync.storage.sqlite_store import SqliteStore


TEST_KEY = bytes(range(32)).hex()
FIXED_NOW = datetime(2026, 3, 2, 13, 30, tzinfo=timezone.utc)


def build_config(db_path: str, **overrides: Any) -> AppConfig:
    values: dict[str, Any] = {
        "db_path": db_path,
        "api_host": "127.0.0.1",
        "api_port": 8000,
        "default_user_name": "Local User",
        "default_user_email": "local@inboxsync",
        "api_key": "",
        "token_secret": "secret",
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "oauth_redirect_uri": "http://localhost:8000/oauth/callback",
        "google_token_url": "https://oauth2.googleapis.com/token",
        "gmail_api_base_url": "https://gmail.googleapis.com/gmail/v1",
        "calendar_api_base_url": "https://www.googleapis.com/calendar/v3",
        "gmail_pubsub_topic": "projects/demo/topics/gmail",
        "token_encryption_key": TEST_KEY,
        "webhook_token": "hook-secret",
    }
    values.update(overrides)
    return AppConfig(**values)


class FakeMailboxClient(MailboxClient):
    """In-memory mailbox keyed by message id."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.search_results: dict[str, list[str]] = {}
        self.history: HistoryDelta | Exception = HistoryDelta(message_ids=[], history_id=None)
        self.failing_ids: set[str] = set()
        self.queries: list[tuple[str, int]] = []
        self.history_starts: list[str] = []
        self.tokens: list[str] = []
        self.watch_response: dict[str, Any] = {"historyId": "4000", "expiration": "1772500000000"}
        self.profile: dict[str, Any] = {"emailAddress": "ada@example.com", "historyId": "3999"}

    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        self.queries.append((query, max_results))
        return self.search_results.get(query, [])[:max_results]

    def get_message(self, message_id: str) -> dict[str, Any]:
        if message_id in self.failing_ids:
            raise TransientProviderError(f"timeout fetching {message_id}")
        return self.messages[message_id]

    def list_history(self, start_history_id: str) -> HistoryDelta:
        self.history_starts.append(start_history_id)
        if isinstance(self.history, Exception):
            raise self.history
        return self.history

    def watch(self, topic_name: str) -> dict[str, Any]:
        return dict(self.watch_response, topicName=topic_name)

    def get_profile(self) -> dict[str, Any]:
        return self.profile


class FakeCalendarClient(CalendarClient):
    """Calendar fake that records requested windows and created events."""

    def __init__(self) -> None:
        self.busy: list[BusyInterval] = []
        self.windows: list[tuple[datetime, datetime]] = []
        self.created: list[dict[str, Any]] = []
        self.tokens: list[str] = []

    def list_busy_intervals(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        self.windows.append((time_min, time_max))
        return list(self.busy)

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
        description: str = "",
        attendee_email: str | None = None,
    ) -> dict[str, Any]:
        event_id = f"evt-{len(self.created) + 1}"
        self.created.append(
            {
                "title": title,
                "start": start,
                "end": end,
                "timezone": timezone_name,
                "description": description,
                "attendee_email": attendee_email,
            }
        )
        return {"id": event_id, "htmlLink": f"https://calendar.google.com/event?eid={event_id}"}


def encode_base64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str,
    subject: str = "Hello",
    labels: tuple[str, ...] = ("INBOX", "CATEGORY_PERSONAL"),
    sender: str = "Ada Lovelace <ada@example.com>",
    body: str = "Hi there",
) -> dict[str, Any]:
    return {
        "id": message_id,
        "labelIds": list(labels),
        "snippet": body[:50],
        "internalDate": "1767261600000",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": "Thu, 01 Jan 2026 10:00:00 +0000"},
            ],
            "body": {"data": encode_base64url(body)},
        },
    }


def token_result(
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: datetime | None = None,
) -> OAuthTokenResult:
    return OAuthTokenResult(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or FIXED_NOW + timedelta(hours=1),
        token_type="Bearer",
        raw={},
    )


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(str(tmp_path / "test.db"))


@pytest.fixture
def store(config: AppConfig) -> SqliteStore:
    sqlite_store = SqliteStore(config.db_path)
    sqlite_store.initialize()
    return sqlite_store


@pytest.fixture
def mailbox_client() -> FakeMailboxClient:
    return FakeMailboxClient()


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def gmail_message() -> Callable[..., dict[str, Any]]:
    return make_gmail_message


@pytest.fixture
def context(
    config: AppConfig,
    mailbox_client: FakeMailboxClient,
    calendar_client: FakeCalendarClient,
) -> AppContext:
    def mail_factory(access_token: str) -> FakeMailboxClient:
        mailbox_client.tokens.append(access_token)
        return mailbox_client

    def calendar_factory(access_token: str) -> FakeCalendarClient:
        calendar_client.tokens.append(access_token)
        return calendar_client

    return build_context(
        config,
        mail_client_factory=mail_factory,
        calendar_client_factory=calendar_factory,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def connected_services(context: AppContext) -> AppServices:
    """User-scoped services for the default user with live Google tokens."""

    services = context.services_for_user(context.default_user_id())
    services.tokens.store_tokens(token_result())
    return services


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_token_result() -> Callable[..., OAuthTokenResult]:
    return token_result
