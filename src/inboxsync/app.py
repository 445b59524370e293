"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and the API layer.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass

from inboxsync.calendar import GoogleCalendarClient
from inboxsync.config import AppConfig
from inboxsync.email import GmailClient
from inboxsync.models import User
from inboxsync.oauth import refresh_oauth_token
from inboxsync.services import (
    ApiKeyService,
    AvailabilityService,
    BulkSyncService,
    CalendarClientFactory,
    CalendarEventService,
    Clock,
    MailClientFactory,
    MailboxSyncService,
    PushIngestionService,
    TokenRefresher,
    TokenService,
    UserService,
    WorkingHoursService,
    default_working_hours,
    utcnow,
)
from inboxsync.storage.sqlite_store import SqliteStore
from inboxsync.token_codec import TokenCodec


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building user services.

    Importance: Reuses storage, the token codec, and provider client factories across
    user-bound services.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    config: AppConfig
    codec: TokenCodec | None
    mail_client_factory: MailClientFactory
    calendar_client_factory: CalendarClientFactory
    refresher: TokenRefresher = refresh_oauth_token
    clock: Clock = utcnow

    def services_for_user(self, user_id: int) -> "AppServices":
        """Summary: Build user-scoped services from shared context.

        Importance: Enables per-user API tokens and data boundaries.
        Alternatives: Use a multi-tenant database with row-level security.
        """

        tokens = TokenService(
            store=self.store,
            user_id=user_id,
            codec=self.codec,
            config=self.config,
            refresher=self.refresher,
            clock=self.clock,
        )
        working_hours = WorkingHoursService(
            store=self.store,
            user_id=user_id,
            defaults=default_working_hours(self.config),
        )
        availability = AvailabilityService(
            tokens=tokens,
            working_hours=working_hours,
            calendar_client_factory=self.calendar_client_factory,
            config=self.config,
            clock=self.clock,
        )
        mailbox = self.mailbox_for_user(user_id, tokens)
        events = CalendarEventService(
            tokens=tokens,
            calendar_client_factory=self.calendar_client_factory,
            working_hours=working_hours,
        )
        return AppServices(
            tokens=tokens,
            working_hours=working_hours,
            availability=availability,
            mailbox=mailbox,
            events=events,
            users=self.users(),
            api_keys=self.api_keys(),
            store=self.store,
            user_id=user_id,
        )

    def mailbox_for_user(self, user_id: int, tokens: TokenService | None = None) -> MailboxSyncService:
        if tokens is None:
            tokens = TokenService(
                store=self.store,
                user_id=user_id,
                codec=self.codec,
                config=self.config,
                refresher=self.refresher,
                clock=self.clock,
            )
        return MailboxSyncService(
            store=self.store,
            user_id=user_id,
            tokens=tokens,
            mail_client_factory=self.mail_client_factory,
            config=self.config,
            clock=self.clock,
        )

    def api_keys(self) -> ApiKeyService:
        return ApiKeyService(store=self.store, token_secret=self.config.token_secret)

    def users(self) -> UserService:
        return UserService(store=self.store)

    def push_ingestion(self) -> PushIngestionService:
        return PushIngestionService(store=self.store, mailbox_for_user=self.mailbox_for_user)

    def bulk_sync(self) -> BulkSyncService:
        return BulkSyncService(store=self.store, mailbox_for_user=self.mailbox_for_user)

    def default_user_id(self) -> int:
        user = User(display_name=self.config.default_user_name, email=self.config.default_user_email)
        return self.store.ensure_user(user)


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of user-scoped services for InboxSync.

    Importance: Simplifies passing dependencies to CLI or API layers.
    Alternatives: Use a dependency injection container.
    """

    tokens: TokenService
    working_hours: WorkingHoursService
    availability: AvailabilityService
    mailbox: MailboxSyncService
    events: CalendarEventService
    users: UserService
    api_keys: ApiKeyService
    store: SqliteStore
    user_id: int


def build_context(
    config: AppConfig,
    *,
    mail_client_factory: MailClientFactory | None = None,
    calendar_client_factory: CalendarClientFactory | None = None,
    refresher: TokenRefresher | None = None,
    clock: Clock | None = None,
) -> AppContext:
    """Summary: Build shared context for user-scoped services.

    Importance: Provider clients default to the Google REST clients; tests inject fakes.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    codec = TokenCodec(config.token_encryption_key) if config.token_encryption_key else None

    def gmail_client(access_token: str) -> GmailClient:
        return GmailClient(access_token, config.gmail_api_base_url, config.request_timeout_seconds)

    def calendar_client(access_token: str) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            access_token, config.calendar_api_base_url, config.request_timeout_seconds
        )

    return AppContext(
        store=store,
        config=config,
        codec=codec,
        mail_client_factory=mail_client_factory or gmail_client,
        calendar_client_factory=calendar_client_factory or calendar_client,
        refresher=refresher or refresh_oauth_token,
        clock=clock or utcnow,
    )


def build_services(config: AppConfig, email: str | None = None) -> AppServices:
    """Summary: Build services for the default user, or for ``email`` when given.

    Importance: Provides a single construction path for the CLI.
    Alternatives: Instantiate services directly within the CLI entrypoint.
    """

    context = build_context(config)
    if email:
        user = context.users().get_user_by_email(email)
        if user is None:
            raise ValueError(f"Unknown user: {email}")
        return context.services_for_user(user.id)
    return context.services_for_user(context.default_user_id())
