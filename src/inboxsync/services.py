"""Summary: Core application services for InboxSync.

Importance: Orchestrates token lifecycle, availability search, and mailbox synchronization.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, replace
import hashlib
import json
import logging
import secrets
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from inboxsync.availability import DEFAULT_HORIZON_DAYS, DEFAULT_MAX_SLOTS, suggest_slots
from inboxsync.calendar import CalendarClient
from inboxsync.config import AppConfig
from inboxsync.email import MailboxClient, is_primary_inbox, parse_gmail_message
from inboxsync.errors import (
    InboxSyncError,
    NeedsReconnect,
    ProviderRequestError,
    StaleCursorError,
    TransientProviderError,
    ValidationError,
)
from inboxsync.models import (
    CALENDAR,
    CONNECTED,
    DISCONNECTED,
    MAIL,
    PROVIDERS,
    AccessToken,
    AvailabilitySlot,
    Credential,
    MailNotification,
    PushResult,
    SyncCursor,
    SyncResult,
    User,
    WorkingHoursPolicy,
    parse_iso,
    to_iso,
)
from inboxsync.oauth import OAuthTokenResult, refresh_oauth_token
from inboxsync.storage.sqlite_store import SqliteStore, StoredApiKey, StoredUser
from inboxsync.token_codec import TokenCodec


logger = logging.getLogger(__name__)

FALLBACK_QUERY = "is:unread category:primary"
MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 480

MailClientFactory = Callable[[str], MailboxClient]
CalendarClientFactory = Callable[[str], CalendarClient]
TokenRefresher = Callable[[AppConfig, str], OAuthTokenResult]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserService:
    """Summary: Manages user records for multi-user workflows.

    Importance: Provides user creation and lookup for per-user auth.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_user(self, display_name: str, email: str) -> int:
        """Summary: Create or ensure a user exists.

        Importance: Allows onboarding multiple users without a schema rewrite.
        Alternatives: Keep a single hardcoded user.
        """

        return self.store.ensure_user(User(display_name=display_name, email=email))

    def list_users(self) -> list[StoredUser]:
        return self.store.list_users()

    def get_user_by_email(self, email: str) -> StoredUser | None:
        return self.store.get_user_by_email(email)


@dataclass(frozen=True)
class ApiKeyService:
    """Summary: Issues and verifies API keys for users.

    Importance: API keys carry caller identity for every user-scoped endpoint.
    Alternatives: Use OAuth or an external auth service.
    """

    store: SqliteStore
    token_secret: str

    def create_api_key(self, user_id: int, label: str | None = None) -> tuple[int, str]:
        """Summary: Create a new API key for a user.

        Importance: Returns a one-time plaintext token for client storage.
        Alternatives: Store raw tokens in the database.
        """

        raw_token = secrets.token_urlsafe(32)
        key_id = self.store.create_api_key(
            user_id=user_id,
            token_hash=self._hash_token(raw_token),
            label=label,
            created_at=utcnow().isoformat(),
        )
        logger.info("Created API key %s for user %s.", key_id, user_id)
        return key_id, raw_token

    def revoke_api_key(self, user_id: int, key_id: int) -> bool:
        return self.store.delete_api_key(user_id, key_id)

    def list_api_keys(self, user_id: int) -> list[StoredApiKey]:
        return self.store.list_api_keys(user_id)

    def resolve_user_id(self, token: str) -> int | None:
        """Summary: Resolve a user ID from an API key.

        Importance: Supports per-user API authentication.
        Alternatives: Validate tokens with an external service.
        """

        return self.store.get_user_id_by_api_key(self._hash_token(token))

    def _hash_token(self, token: str) -> str:
        salt = self.token_secret or "inboxsync"
        return hashlib.sha256(f"{salt}:{token}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenService:
    """Summary: Owns the OAuth credential lifecycle for one user.

    Importance: Every provider call resolves its access token here, refreshing it
    shortly before expiry and persisting the result.
    Alternatives: Use a secrets manager with built-in rotation.

    Two concurrent refreshes for the same credential are not serialized; the last
    write wins and both tokens remain valid with the provider.
    """

    store: SqliteStore
    user_id: int
    codec: TokenCodec | None
    config: AppConfig
    refresher: TokenRefresher = refresh_oauth_token
    clock: Clock = utcnow

    def store_tokens(
        self, result: OAuthTokenResult, providers: tuple[str, ...] = PROVIDERS
    ) -> None:
        """Summary: Persist a completed authorization for the given providers.

        Importance: One Google consent covers mail and calendar, so both rows are written.
        Alternatives: Run a separate consent flow per provider.
        """

        codec = self._require_codec()
        for provider in providers:
            refresh_token_enc = (
                codec.encode(result.refresh_token) if result.refresh_token else None
            )
            if refresh_token_enc is None:
                existing = self.store.get_credential(self.user_id, provider)
                refresh_token_enc = existing.refresh_token_enc if existing else None
            self.store.upsert_credential(
                Credential(
                    user_id=self.user_id,
                    provider=provider,
                    access_token_enc=codec.encode(result.access_token),
                    refresh_token_enc=refresh_token_enc,
                    expires_at=result.expires_at,
                    status=CONNECTED,
                    updated_at=self.clock(),
                )
            )
        logger.info("Stored OAuth tokens for user %s (%s).", self.user_id, ", ".join(providers))

    def get_valid_access_token(self, provider: str) -> AccessToken:
        """Summary: Return a usable access token, refreshing it when near expiry.

        Importance: Rejected refreshes raise NeedsReconnect and are never retried;
        network failures raise TransientProviderError and leave the row untouched.
        Alternatives: Refresh lazily after a 401 from the provider.
        """

        credential = self.store.get_credential(self.user_id, provider)
        if credential is None or not credential.is_connected:
            raise NeedsReconnect(provider, "no connected credential")
        codec = self._require_codec()
        margin = timedelta(seconds=self.config.token_refresh_margin_seconds)
        if credential.expires_at is None or self.clock() < credential.expires_at - margin:
            return AccessToken(token=codec.decode(credential.access_token_enc), refreshed=False)

        refresh_token = codec.decode_optional(credential.refresh_token_enc)
        if not refresh_token:
            raise NeedsReconnect(provider, "access token expired and no refresh token is stored")
        try:
            result = self.refresher(self.config, refresh_token)
        except (ProviderRequestError, NeedsReconnect) as exc:
            logger.warning("Token refresh rejected for user %s (%s): %s", self.user_id, provider, exc)
            self.store.set_credential_status(self.user_id, provider, DISCONNECTED)
            raise NeedsReconnect(provider, "refresh token was rejected") from exc
        rotated = codec.encode(result.refresh_token) if result.refresh_token else None
        self.store.update_access_token(
            self.user_id,
            provider,
            codec.encode(result.access_token),
            result.expires_at,
            rotated,
        )
        logger.info("Refreshed %s access token for user %s.", provider, self.user_id)
        return AccessToken(token=result.access_token, refreshed=True)

    def _require_codec(self) -> TokenCodec:
        if self.codec is None:
            raise InboxSyncError("TOKEN_ENCRYPTION_KEY is not configured")
        return self.codec


def default_working_hours(config: AppConfig) -> WorkingHoursPolicy:
    """Build the fallback policy from configuration."""

    return WorkingHoursPolicy(
        start=parse_clock(config.working_hours_start, "start"),
        end=parse_clock(config.working_hours_end, "end"),
        timezone=config.default_timezone,
        min_notice_hours=config.meeting_min_notice_hours,
        default_duration_minutes=config.meeting_default_duration,
    )


def parse_clock(value: str, field_name: str) -> time:
    """Summary: Parse an ``HH:MM`` wall-clock string.

    Importance: Reports the offending field instead of a bare ValueError.
    Alternatives: Accept only ISO time strings.
    """

    try:
        return datetime.strptime(value.strip(), "%H:%M").time()
    except (AttributeError, ValueError) as exc:
        raise ValidationError(field_name, f"{field_name} must be HH:MM") from exc


def ensure_timezone(name: str, field_name: str = "timezone") -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(field_name, f"Unknown timezone: {name}") from exc
    return name


@dataclass(frozen=True)
class WorkingHoursService:
    """Summary: Reads and writes the per-user working-hours policy.

    Importance: Users without a stored policy get the configured defaults.
    Alternatives: Require every user to configure a policy first.
    """

    store: SqliteStore
    user_id: int
    defaults: WorkingHoursPolicy

    def get_policy(self) -> WorkingHoursPolicy:
        return self.store.get_working_hours(self.user_id) or self.defaults

    def save_policy(
        self,
        start: str,
        end: str,
        timezone_name: str,
        min_notice_hours: int | None = None,
        default_duration_minutes: int | None = None,
    ) -> WorkingHoursPolicy:
        """Summary: Validate and store a policy.

        Importance: Invalid times, unknown zones, and inverted windows are rejected
        before anything is written.
        Alternatives: Store raw strings and validate at read time.
        """

        policy = WorkingHoursPolicy(
            start=parse_clock(start, "start"),
            end=parse_clock(end, "end"),
            timezone=ensure_timezone(timezone_name),
            min_notice_hours=(
                self.defaults.min_notice_hours if min_notice_hours is None else min_notice_hours
            ),
            default_duration_minutes=(
                self.defaults.default_duration_minutes
                if default_duration_minutes is None
                else default_duration_minutes
            ),
        )
        self.store.save_working_hours(self.user_id, policy)
        logger.info("Saved working hours for user %s.", self.user_id)
        return policy


@dataclass(frozen=True)
class AvailabilityService:
    """Summary: Suggests meeting slots from the user's calendar and policy.

    Importance: Bridges the calendar provider and the pure slot finder.
    Alternatives: Compute availability client-side.
    """

    tokens: TokenService
    working_hours: WorkingHoursService
    calendar_client_factory: CalendarClientFactory
    config: AppConfig
    clock: Clock = utcnow

    def suggest(
        self,
        duration_minutes: int | None = None,
        max_slots: int = DEFAULT_MAX_SLOTS,
    ) -> tuple[WorkingHoursPolicy, list[AvailabilitySlot]]:
        policy = self.working_hours.get_policy()
        duration = policy.default_duration_minutes if duration_minutes is None else duration_minutes
        if not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
            raise ValidationError(
                "durationMinutes",
                f"durationMinutes must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}",
            )
        now = self.clock()
        access = self.tokens.get_valid_access_token(CALENDAR)
        client = self.calendar_client_factory(access.token)
        busy = client.list_busy_intervals(
            now + timedelta(hours=policy.min_notice_hours),
            now + timedelta(days=DEFAULT_HORIZON_DAYS),
        )
        slots = suggest_slots(
            policy,
            busy,
            duration,
            now,
            max_slots=max_slots,
            horizon_days=DEFAULT_HORIZON_DAYS,
            gap_minutes=self.config.slot_gap_minutes,
            rounding_minutes=self.config.slot_rounding_minutes,
        )
        logger.info(
            "Found %s slots for user %s across %s busy intervals.",
            len(slots),
            self.tokens.user_id,
            len(busy),
        )
        return policy, slots


@dataclass(frozen=True)
class MailboxSyncService:
    """Summary: Pulls new mail into the message store for one user.

    Importance: Each upsert commits on its own, so a failure part-way through keeps
    everything imported before it.
    Alternatives: Batch inserts in one transaction per pass.
    """

    store: SqliteStore
    user_id: int
    tokens: TokenService
    mail_client_factory: MailClientFactory
    config: AppConfig
    clock: Clock = utcnow

    def sync(self) -> SyncResult:
        """Summary: Import recent primary-inbox messages on demand.

        Importance: Already-stored messages are counted as skipped; messages that fail
        to download are counted as neither.
        Alternatives: Reuse the history cursor for on-demand syncs too.
        """

        client = self._client()
        message_ids = client.list_message_ids(self.config.sync_query, self.config.sync_max_results)
        imported = skipped = 0
        for message_id in message_ids:
            outcome = self._import_message(client, message_id, primary_only=False)
            if outcome is True:
                imported += 1
            elif outcome is False:
                skipped += 1
        logger.info(
            "Mailbox sync for user %s: %s imported, %s skipped, %s listed.",
            self.user_id,
            imported,
            skipped,
            len(message_ids),
        )
        return SyncResult(imported=imported, skipped=skipped, total=len(message_ids))

    def sync_from_notification(self, notification: MailNotification) -> PushResult:
        """Summary: Run an incremental pass driven by a push notification.

        Importance: A stale cursor falls back to a bounded unread query and reseeds the
        cursor from the notification; otherwise the cursor only moves forward.
        Alternatives: Run a full sync on every notification.
        """

        cursor = self.store.get_sync_cursor(self.user_id)
        if cursor is None:
            logger.info("No sync cursor for user %s; ignoring notification.", self.user_id)
            return PushResult(imported=0, full_sync=False, history_id=None)
        client = self._client()
        try:
            delta = client.list_history(cursor.history_id)
        except StaleCursorError:
            logger.warning(
                "History cursor %s for user %s is stale; running fallback sync.",
                cursor.history_id,
                self.user_id,
            )
            message_ids = client.list_message_ids(FALLBACK_QUERY, self.config.fallback_max_results)
            imported = self._import_many(client, message_ids, primary_only=True)
            self.store.seed_sync_cursor(
                SyncCursor(
                    user_id=self.user_id,
                    mail_address=cursor.mail_address,
                    history_id=notification.history_id,
                    updated_at=self.clock(),
                )
            )
            return PushResult(imported=imported, full_sync=True, history_id=notification.history_id)

        imported = self._import_many(client, delta.message_ids, primary_only=True)
        history_id = delta.history_id or notification.history_id
        if not self.store.advance_sync_cursor(self.user_id, history_id):
            logger.info(
                "Kept cursor for user %s; %s is older than the stored value.",
                self.user_id,
                history_id,
            )
        logger.info(
            "Push sync for user %s imported %s of %s new messages.",
            self.user_id,
            imported,
            len(delta.message_ids),
        )
        return PushResult(imported=imported, full_sync=False, history_id=history_id)

    def start_watch(self) -> SyncCursor:
        """Summary: Register push notifications and seed the cursor.

        Importance: The cursor is created from the watch response, which is the only
        way an address becomes routable by the webhook.
        Alternatives: Seed the cursor from the profile history id alone.
        """

        if not self.config.gmail_pubsub_topic:
            raise InboxSyncError("GMAIL_PUBSUB_TOPIC is not configured")
        client = self._client()
        response = client.watch(self.config.gmail_pubsub_topic)
        profile = client.get_profile()
        history_id = str(response.get("historyId") or profile.get("historyId") or "")
        if not history_id:
            raise TransientProviderError("watch response did not include a historyId")
        cursor = SyncCursor(
            user_id=self.user_id,
            mail_address=str(profile.get("emailAddress", "")),
            history_id=history_id,
            watch_expires_at=_parse_epoch_millis(response.get("expiration")),
            updated_at=self.clock(),
        )
        self.store.seed_sync_cursor(cursor)
        logger.info("Registered mailbox watch for user %s at history %s.", self.user_id, history_id)
        return cursor

    def _client(self) -> MailboxClient:
        access = self.tokens.get_valid_access_token(MAIL)
        return self.mail_client_factory(access.token)

    def _import_many(self, client: MailboxClient, message_ids: list[str], primary_only: bool) -> int:
        return sum(
            1
            for message_id in message_ids
            if self._import_message(client, message_id, primary_only) is True
        )

    def _import_message(
        self, client: MailboxClient, message_id: str, primary_only: bool
    ) -> bool | None:
        """Fetch and upsert one message; None when it was filtered or failed."""

        try:
            payload = client.get_message(message_id)
        except (TransientProviderError, ProviderRequestError) as exc:
            logger.warning("Skipping message %s for user %s: %s", message_id, self.user_id, exc)
            return None
        if primary_only and not is_primary_inbox(payload):
            return None
        message = parse_gmail_message(payload, self.config.body_max_chars)
        if not message.provider_message_id:
            message = replace(message, provider_message_id=message_id)
        return self.store.insert_message(self.user_id, message)


def _parse_epoch_millis(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def decode_push_envelope(envelope: Any) -> MailNotification | None:
    """Summary: Decode a Pub/Sub push envelope into a notification.

    Importance: Returns None for anything that is not a well-formed mail notification,
    so the webhook can acknowledge it and move on.
    Alternatives: Raise and let the endpoint decide.
    """

    if not isinstance(envelope, dict):
        return None
    message = envelope.get("message")
    data = message.get("data") if isinstance(message, dict) else None
    if not data or not isinstance(data, str):
        return None
    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = json.loads(base64.b64decode(normalized).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        logger.warning("Discarding push envelope with undecodable data.")
        return None
    if not isinstance(decoded, dict):
        return None
    address = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not address or history_id in (None, ""):
        return None
    return MailNotification(mail_address=str(address), history_id=str(history_id))


@dataclass(frozen=True)
class PushIngestionService:
    """Summary: Routes push notifications to the owning user's synchronizer.

    Importance: Provider-side failures are logged and absorbed so the push
    subscription is always acknowledged.
    Alternatives: Return errors and let Pub/Sub redeliver.
    """

    store: SqliteStore
    mailbox_for_user: Callable[[int], MailboxSyncService]

    def handle(self, envelope: Any) -> dict[str, Any]:
        notification = decode_push_envelope(envelope)
        if notification is None:
            return {"success": True, "processed": False, "reason": "empty or invalid notification"}
        cursor = self.store.get_sync_cursor_by_address(notification.mail_address)
        if cursor is None:
            logger.info("No mailbox registered for %s; discarding notification.", notification.mail_address)
            return {"success": True, "processed": False, "reason": "unknown address"}
        try:
            result = self.mailbox_for_user(cursor.user_id).sync_from_notification(notification)
        except NeedsReconnect as exc:
            logger.warning("Push sync for user %s needs reconnect: %s", cursor.user_id, exc.reason)
            return {"success": True, "processed": False, "reason": "needs reconnect"}
        except InboxSyncError as exc:
            logger.warning("Push sync for user %s failed: %s", cursor.user_id, exc)
            return {"success": True, "processed": False, "reason": "provider error"}
        return {
            "success": True,
            "processed": True,
            "imported": result.imported,
            "fullSync": result.full_sync,
            "historyId": result.history_id,
        }


@dataclass(frozen=True)
class BulkSyncService:
    """Summary: Runs the on-demand sync for every connected mailbox.

    Importance: One failing account never stops the others.
    Alternatives: Fan out to a task queue.
    """

    store: SqliteStore
    mailbox_for_user: Callable[[int], MailboxSyncService]

    def sync_all(self) -> dict[str, Any]:
        user_ids = self.store.list_connected_user_ids(MAIL)
        synced = errors = 0
        for user_id in user_ids:
            try:
                self.mailbox_for_user(user_id).sync()
            except InboxSyncError as exc:
                errors += 1
                logger.warning("Bulk sync failed for user %s: %s", user_id, exc)
            else:
                synced += 1
        logger.info("Bulk sync finished: %s of %s accounts synced.", synced, len(user_ids))
        return {"total_accounts": len(user_ids), "synced": synced, "errors": errors}


@dataclass(frozen=True)
class CalendarEventService:
    """Summary: Creates calendar events for accepted slots.

    Importance: Validates caller input and names the offending field.
    Alternatives: Forward the raw request body to the provider.
    """

    tokens: TokenService
    calendar_client_factory: CalendarClientFactory
    working_hours: WorkingHoursService

    def create_event(
        self,
        title: str | None,
        start_raw: str | None,
        end_raw: str | None,
        description: str | None = None,
        attendee_email: str | None = None,
        timezone_name: str | None = None,
    ) -> dict[str, Any]:
        if not title or not title.strip():
            raise ValidationError("title", "title is required")
        start = _parse_instant(start_raw, "startTime")
        end = _parse_instant(end_raw, "endTime")
        if end <= start:
            raise ValidationError("endTime", "endTime must be after startTime")
        if attendee_email and "@" not in attendee_email:
            raise ValidationError("attendeeEmail", "attendeeEmail must be an email address")
        zone_name = ensure_timezone(timezone_name or self.working_hours.get_policy().timezone)
        access = self.tokens.get_valid_access_token(CALENDAR)
        client = self.calendar_client_factory(access.token)
        event = client.create_event(
            title.strip(),
            start,
            end,
            zone_name,
            description=description or "",
            attendee_email=attendee_email or None,
        )
        logger.info("Created calendar event %s for user %s.", event.get("id"), self.tokens.user_id)
        return {
            "eventId": event.get("id"),
            "eventLink": event.get("htmlLink"),
            "eventStart": to_iso(start),
            "eventEnd": to_iso(end),
        }


def _parse_instant(value: str | None, field_name: str) -> datetime:
    if not value:
        raise ValidationError(field_name, f"{field_name} is required")
    try:
        return parse_iso(value)
    except ValueError as exc:
        raise ValidationError(field_name, f"{field_name} must be an ISO-8601 timestamp") from exc

