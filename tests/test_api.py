"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against core workflows.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from inboxsync import api
from inboxsync.api import create_app
from inboxsync.config import AppConfig
from inboxsync.email import HistoryDelta
from inboxsync.errors import TransientProviderError
from inboxsync.models import BusyInterval, MAIL, SyncCursor, User

from conftest import (
    FIXED_NOW,
    FakeCalendarClient,
    FakeMailboxClient,
    build_config,
    make_gmail_message,
    token_result,
)


def _client(
    config: AppConfig,
    mailbox_client: FakeMailboxClient,
    calendar_client: FakeCalendarClient,
    connect: bool = True,
) -> TestClient:
    """Summary: Build a TestClient wired to provider fakes.

    Importance: Ensures tests use isolated storage and never reach Google.
    Alternatives: Patch the provider clients globally.
    """

    app = create_app(
        config,
        mail_client_factory=lambda token: mailbox_client,
        calendar_client_factory=lambda token: calendar_client,
        clock=lambda: FIXED_NOW,
    )
    if connect:
        context = app.state.context
        context.services_for_user(context.default_user_id()).tokens.store_tokens(token_result())
    return TestClient(app)


def _envelope(address: str, history_id: str) -> dict[str, Any]:
    data = json.dumps({"emailAddress": address, "historyId": history_id}).encode("utf-8")
    return {"message": {"data": base64.urlsafe_b64encode(data).decode("ascii")}}


@pytest.fixture
def client(config, mailbox_client, calendar_client) -> TestClient:
    return _client(config, mailbox_client, calendar_client)


def test_health(client: TestClient) -> None:
    """Summary: The health endpoint answers without credentials.

    Importance: Load balancers check it before any user exists.
    Alternatives: Probe a real endpoint instead.
    """

    assert client.get("/health").json() == {"status": "ok"}


def test_suggest_availability(client: TestClient, calendar_client: FakeCalendarClient) -> None:
    """Summary: Default policy with a morning meeting on the first eligible day.

    Importance: Confirms the HTTP layer wires policy, calendar, and engine together.
    Alternatives: Test the engine only.
    """

    calendar_client.busy = [
        BusyInterval(
            start=datetime(2026, 3, 3, 15, tzinfo=timezone.utc),
            end=datetime(2026, 3, 3, 16, tzinfo=timezone.utc),
        )
    ]
    response = client.post("/suggest-availability", json={})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [slot["start"] for slot in body["slots"]] == [
        "2026-03-03T14:00:00Z",
        "2026-03-03T16:30:00Z",
        "2026-03-03T19:00:00Z",
    ]
    assert body["slots"][0]["end"] == "2026-03-03T14:30:00Z"
    assert body["workingHours"] == {"start": "09:00", "end": "17:00"}
    assert body["minNoticeHours"] == 24
    time_min, time_max = calendar_client.windows[0]
    assert time_min == datetime(2026, 3, 3, 13, 30, tzinfo=timezone.utc)
    assert time_max == datetime(2026, 3, 9, 13, 30, tzinfo=timezone.utc)


def test_suggest_availability_rejects_long_duration(client: TestClient) -> None:
    """Summary: Durations past the limit are a 400 naming durationMinutes.

    Importance: Clients need to know which field to fix.
    Alternatives: Clamp the duration silently.
    """

    response = client.post("/suggest-availability", json={"durationMinutes": 500})
    assert response.status_code == 400
    assert response.json()["field"] == "durationMinutes"
    assert response.json()["success"] is False


def test_suggest_availability_without_connection(config, mailbox_client, calendar_client) -> None:
    """Summary: A user without a calendar connection gets a 401.

    Importance: The client uses the status to prompt a reconnect.
    Alternatives: Return an empty slot list.
    """

    client = _client(config, mailbox_client, calendar_client, connect=False)
    response = client.post("/suggest-availability", json={"durationMinutes": 30})
    assert response.status_code == 401
    body = response.json()
    assert body["needsReconnect"] is True
    assert body["provider"] == "calendar"


def test_sync_mailbox_and_list_messages(client: TestClient, config, mailbox_client) -> None:
    """Summary: An on-demand sync stores messages that the list endpoint returns.

    Importance: Covers the import path end to end through HTTP.
    Alternatives: Test the service and the listing separately.
    """

    mailbox_client.messages["m1"] = make_gmail_message("m1", subject="Quarterly numbers")
    mailbox_client.search_results[config.sync_query] = ["m1"]

    response = client.post("/sync-mailbox")
    assert response.json() == {"success": True, "imported": 1, "skipped": 0, "total": 1}
    messages = client.get("/messages", params={"limit": 5}).json()
    assert len(messages) == 1
    assert messages[0]["providerMessageId"] == "m1"
    assert messages[0]["subject"] == "Quarterly numbers"
    assert messages[0]["fromEmail"] == "ada@example.com"
    assert messages[0]["receivedAt"] == "2026-01-01T10:00:00Z"
    assert messages[0]["processed"] is False
    assert client.get("/messages", params={"limit": 0}).status_code == 422


def test_webhook_requires_shared_secret(client: TestClient) -> None:
    """Summary: Notifications without the shared token are refused.

    Importance: The webhook is reachable from the public internet.
    Alternatives: Verify signed push JWTs.
    """

    response = client.post("/mailbox-push-webhook", json=_envelope("ada@example.com", "1"))
    assert response.status_code == 401
    response = client.post(
        "/mailbox-push-webhook",
        json=_envelope("ada@example.com", "1"),
        headers={"X-Webhook-Token": "wrong"},
    )
    assert response.status_code == 401


def test_webhook_processes_notification(client: TestClient, mailbox_client) -> None:
    """Summary: A valid notification imports new inbox mail.

    Importance: Confirms routing from address to user through the HTTP layer.
    Alternatives: Exercise the ingestion service directly.
    """

    context = client.app.state.context
    context.store.seed_sync_cursor(
        SyncCursor(user_id=context.default_user_id(), mail_address="ada@example.com", history_id="100")
    )
    mailbox_client.messages["m1"] = make_gmail_message("m1")
    mailbox_client.history = HistoryDelta(message_ids=["m1"], history_id="120")

    response = client.post(
        "/mailbox-push-webhook",
        params={"token": "hook-secret"},
        json=_envelope("ada@example.com", "110"),
    )
    assert response.status_code == 200
    assert response.json()["processed"] is True
    assert response.json()["imported"] == 1
    assert context.store.get_sync_cursor(context.default_user_id()).history_id == "120"


@pytest.mark.parametrize(
    "failure", [None, RuntimeError("boom"), TransientProviderError("history request timed out")]
)
def test_webhook_always_acknowledges(client: TestClient, mailbox_client, failure) -> None:
    """Summary: Malformed bodies and provider failures still get a 200.

    Importance: Anything else makes the push service redeliver the same notification.
    Alternatives: Return 5xx and rely on redelivery.
    """

    context = client.app.state.context
    context.store.seed_sync_cursor(
        SyncCursor(user_id=context.default_user_id(), mail_address="ada@example.com", history_id="100")
    )
    headers = {"X-Webhook-Token": "hook-secret"}
    if failure is None:
        response = client.post(
            "/mailbox-push-webhook",
            content=b"not json",
            headers={**headers, "Content-Type": "application/json"},
        )
    else:
        mailbox_client.history = failure
        response = client.post(
            "/mailbox-push-webhook", json=_envelope("ada@example.com", "110"), headers=headers
        )
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["processed"] is False


def test_create_calendar_event(client: TestClient, calendar_client) -> None:
    """Summary: A valid request creates the event and invites the attendee.

    Importance: Confirms the payload sent to the calendar provider.
    Alternatives: Inspect events in a live calendar.
    """

    response = client.post(
        "/create-calendar-event",
        json={
            "title": "Intro call",
            "selectedStart": "2026-03-03T14:00:00Z",
            "selectedEnd": "2026-03-03T14:30:00Z",
            "attendeeEmail": "grace@example.com",
        },
    )
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "eventId": "evt-1",
        "eventLink": "https://calendar.google.com/event?eid=evt-1",
        "eventStart": "2026-03-03T14:00:00Z",
        "eventEnd": "2026-03-03T14:30:00Z",
    }
    assert calendar_client.created[0]["timezone"] == "America/New_York"
    assert calendar_client.created[0]["attendee_email"] == "grace@example.com"


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"startTime": "2026-03-03T14:00:00Z", "endTime": "2026-03-03T14:30:00Z"}, "title"),
        ({"title": "Call", "endTime": "2026-03-03T14:30:00Z"}, "startTime"),
        ({"title": "Call", "startTime": "2026-03-03T14:00:00Z", "endTime": "yesterday"}, "endTime"),
        ({"title": "Call", "startTime": "2026-03-03T14:00:00Z", "endTime": "2026-03-03T13:00:00Z"}, "endTime"),
        (
            {
                "title": "Call",
                "startTime": "2026-03-03T14:00:00Z",
                "endTime": "2026-03-03T14:30:00Z",
                "attendeeEmail": "not-an-address",
            },
            "attendeeEmail",
        ),
        (
            {
                "title": "Call",
                "startTime": "2026-03-03T14:00:00Z",
                "endTime": "2026-03-03T14:30:00Z",
                "timezone": "Mars/Olympus",
            },
            "timezone",
        ),
    ],
)
def test_create_calendar_event_validation(
    client: TestClient, calendar_client, payload: dict[str, str], field: str
) -> None:
    """Summary: Each invalid field is reported by name and nothing is created.

    Importance: Partial events would confuse the attendee.
    Alternatives: Let the provider reject bad input.
    """

    response = client.post("/create-calendar-event", json=payload)
    assert response.status_code == 400
    assert response.json()["field"] == field
    assert calendar_client.created == []


def test_working_hours_settings(client: TestClient) -> None:
    """Summary: Working hours round-trip through the settings endpoints.

    Importance: Slot suggestions depend on the stored policy.
    Alternatives: Edit the policy through the CLI only.
    """

    assert client.get("/settings/working-hours").json()["workingHours"]["timezone"] == "America/New_York"
    response = client.put(
        "/settings/working-hours",
        json={"start": "08:00", "end": "16:30", "timezone": "Europe/London", "minNoticeHours": 2},
    )
    assert response.status_code == 200
    stored = client.get("/settings/working-hours").json()["workingHours"]
    assert stored == {
        "start": "08:00",
        "end": "16:30",
        "timezone": "Europe/London",
        "minNoticeHours": 2,
        "defaultDurationMinutes": 30,
    }
    invalid = client.put(
        "/settings/working-hours", json={"start": "18:00", "end": "09:00", "timezone": "UTC"}
    )
    assert invalid.status_code == 400


def test_api_key_authentication(tmp_path: Path, mailbox_client, calendar_client) -> None:
    """Summary: Per-user keys select the user; the admin key acts as the default user.

    Importance: Confirms the API enforces keys once an admin key is configured.
    Alternatives: Trust a user id sent by the client.
    """

    config = build_config(str(tmp_path / "auth.db"), api_key="admin-key")
    client = _client(config, mailbox_client, calendar_client)
    context = client.app.state.context
    grace_id = context.store.ensure_user(User(display_name="Grace", email="grace@example.com"))
    _, grace_key = context.api_keys().create_api_key(grace_id, label="grace")
    context.services_for_user(grace_id).working_hours.save_policy("07:00", "15:00", "UTC")

    assert client.get("/settings/working-hours").status_code == 401
    assert client.get("/settings/working-hours", headers={"X-API-Key": "nope"}).status_code == 401
    admin = client.get("/settings/working-hours", headers={"X-API-Key": "admin-key"})
    assert admin.json()["workingHours"]["timezone"] == "America/New_York"
    grace = client.get("/settings/working-hours", headers={"X-API-Key": grace_key})
    assert grace.json()["workingHours"]["start"] == "07:00"
    assert client.post("/sync-all-mailboxes", headers={"X-API-Key": grace_key}).status_code == 401


def test_sync_all_mailboxes(client: TestClient, config, mailbox_client) -> None:
    """Summary: The bulk sync endpoint reports totals across connected accounts.

    Importance: Scheduled jobs call it for every account.
    Alternatives: Loop over users in the scheduler.
    """

    mailbox_client.messages["m1"] = make_gmail_message("m1")
    mailbox_client.search_results[config.sync_query] = ["m1"]
    response = client.post("/sync-all-mailboxes")
    assert response.json() == {"success": True, "total_accounts": 1, "synced": 1, "errors": 0}


def test_watch_mailbox(client: TestClient) -> None:
    """Summary: Registering a watch returns the seeded cursor and its expiry.

    Importance: The expiry tells operators when to renew.
    Alternatives: Renew blindly on a timer.
    """

    response = client.post("/mailbox/watch")
    assert response.status_code == 200
    assert response.json()["emailAddress"] == "ada@example.com"
    assert response.json()["historyId"] == "4000"
    assert response.json()["expiresAt"].endswith("Z")


def test_oauth_callback_stores_tokens(
    config, mailbox_client, calendar_client, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Verify OAuth callback exchanges the code and consumes the state.

    Importance: Ensures OAuth flows connect both providers and reject replayed states.
    Alternatives: Test OAuth only against live providers.
    """

    codes: list[str] = []

    def fake_exchange(exchange_config: AppConfig, code: str):
        codes.append(code)
        return token_result(access_token="fresh-access")

    monkeypatch.setattr(api, "exchange_oauth_code", fake_exchange)
    client = _client(config, mailbox_client, calendar_client, connect=False)
    start = client.get("/oauth/google").json()
    assert start["url"].startswith("https://accounts.google.com/o/oauth2/v2/auth?")

    response = client.get("/oauth/callback", params={"state": start["state"], "code": "abc"})
    assert response.status_code == 200
    assert codes == ["abc"]
    context = client.app.state.context
    credential = context.store.get_credential(context.default_user_id(), MAIL)
    assert context.codec.decode(credential.access_token_enc) == "fresh-access"

    replay = client.get("/oauth/callback", params={"state": start["state"], "code": "abc"})
    assert replay.status_code == 400
    assert client.get("/oauth/callback", params={"state": "unknown", "code": "abc"}).status_code == 400
