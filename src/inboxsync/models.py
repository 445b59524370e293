"""Summary: Domain model dataclasses for InboxSync.

Importance: Defines the core entities shared across services, engines, and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timezone

from inboxsync.errors import ValidationError


MAIL = "mail"
CALENDAR = "calendar"
PROVIDERS = (MAIL, CALENDAR)

CONNECTED = "connected"
DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class User:
    """Summary: Represents an application user.

    Importance: Owns credentials, cursors, and messages.
    Alternatives: Delegate identity entirely to an external auth service.
    """

    display_name: str
    email: str


@dataclass(frozen=True)
class Credential:
    """Summary: Stored OAuth credential for one (user, provider) pair.

    Importance: Leaf dependency for every provider call; tokens stay encrypted at rest.
    Alternatives: Keep tokens in an external vault keyed by user.
    """

    user_id: int
    provider: str
    access_token_enc: str | None
    refresh_token_enc: str | None
    expires_at: datetime | None
    status: str
    updated_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return self.status == CONNECTED and bool(self.access_token_enc)


@dataclass(frozen=True)
class AccessToken:
    """Summary: Result of resolving a usable access token.

    Importance: Lets callers and tests distinguish a cached token from a fresh refresh.
    Alternatives: Return a bare string and log refreshes.
    """

    token: str
    refreshed: bool


@dataclass(frozen=True)
class WorkingHoursPolicy:
    """Summary: Per-user scheduling constraints for availability search.

    Importance: All slot instants derive from this policy plus "now".
    Alternatives: Store absolute UTC windows per day.
    """

    start: time
    end: time
    timezone: str
    min_notice_hours: int
    default_duration_minutes: int

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValidationError("workingHours", "Working hours start must be before end")
        if self.min_notice_hours < 0:
            raise ValidationError("minNoticeHours", "Minimum notice cannot be negative")
        if self.default_duration_minutes <= 0:
            raise ValidationError("defaultDurationMinutes", "Default duration must be positive")

    def to_dict(self) -> dict[str, str | int]:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "timezone": self.timezone,
            "minNoticeHours": self.min_notice_hours,
            "defaultDurationMinutes": self.default_duration_minutes,
        }


@dataclass(frozen=True)
class BusyInterval:
    """Summary: A calendar event treated as unavailable time.

    Importance: Input to conflict detection; never persisted.
    Alternatives: Use provider free/busy responses directly.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Busy interval instants must be timezone-aware")
        if self.start >= self.end:
            raise ValueError("Busy interval start must be before end")


@dataclass(frozen=True)
class AvailabilitySlot:
    """Summary: A candidate free window that satisfies the policy.

    Importance: Output of the availability engine and input to event creation.
    Alternatives: Return raw (start, end) tuples.
    """

    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": to_iso(self.start), "end": to_iso(self.end)}


@dataclass(frozen=True)
class SyncCursor:
    """Summary: Incremental synchronization pointer for a mail account.

    Importance: Marks how far push-driven sync has progressed.
    Alternatives: Track the newest message timestamp instead of a history id.
    """

    user_id: int
    mail_address: str
    history_id: str
    watch_expires_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Message:
    """Summary: Represents an email message pulled from the provider.

    Importance: Core unit for downstream classification and reply workflows.
    Alternatives: Store raw provider payloads and parse on read.
    """

    provider_message_id: str
    from_name: str | None
    from_email: str
    subject: str
    body_snippet: str
    body_full: str
    received_at: datetime
    processed: bool = False


@dataclass(frozen=True)
class MailNotification:
    """Summary: Decoded push notification from the mail provider.

    Importance: Carries the mailbox address and the newest history id.
    Alternatives: Pass the raw Pub/Sub envelope through the stack.
    """

    mail_address: str
    history_id: str


@dataclass(frozen=True)
class SyncResult:
    """Summary: Outcome of an on-demand mailbox sync.

    Importance: Reports imported versus already-stored messages.
    Alternatives: Return only the number of new rows.
    """

    imported: int
    skipped: int
    total: int


@dataclass(frozen=True)
class PushResult:
    """Summary: Outcome of a push-driven sync pass.

    Importance: Records whether the fallback path ran and where the cursor ended.
    Alternatives: Log the outcome without returning it.
    """

    imported: int
    full_sync: bool
    history_id: str | None


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as absolute UTC ISO-8601."""

    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Summary: Parse an ISO-8601 string into an aware datetime.

    Importance: Accepts the trailing "Z" form that providers and browsers emit.
    Alternatives: Use dateutil for lenient parsing.
    """

    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
