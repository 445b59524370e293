"""Summary: FastAPI application for InboxSync.

Importance: Exposes availability, sync, push, and event endpoints to clients.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from inboxsync.app import AppServices, build_context
from inboxsync.config import AppConfig
from inboxsync.errors import (
    InboxSyncError,
    NeedsReconnect,
    ProviderRequestError,
    TransientProviderError,
    ValidationError,
)
from inboxsync.models import to_iso
from inboxsync.oauth import build_google_auth_url, create_state_token, exchange_oauth_code
from inboxsync.services import CalendarClientFactory, Clock, MailClientFactory, TokenRefresher


logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)


class SuggestAvailabilityRequest(BaseModel):
    """Summary: Request payload for slot suggestions.

    Importance: Duration is optional and falls back to the user's policy.
    Alternatives: Use query parameters instead of JSON payloads.
    """

    durationMinutes: int | None = None


class CreateEventRequest(BaseModel):
    """Summary: Request payload for creating a calendar event.

    Importance: Accepts both explicit times and the selected suggestion fields.
    Alternatives: Require clients to send a provider-native event body.
    """

    title: str | None = None
    startTime: str | None = None
    endTime: str | None = None
    selectedStart: str | None = None
    selectedEnd: str | None = None
    description: str | None = None
    attendeeEmail: str | None = None
    timezone: str | None = None


class WorkingHoursRequest(BaseModel):
    """Summary: Request payload for working-hours updates.

    Importance: Keeps policy inputs explicit for API clients.
    Alternatives: Store policies only through the CLI.
    """

    start: str
    end: str
    timezone: str
    minNoticeHours: int | None = None
    defaultDurationMinutes: int | None = None


def create_app(
    config: AppConfig,
    *,
    mail_client_factory: MailClientFactory | None = None,
    calendar_client_factory: CalendarClientFactory | None = None,
    refresher: TokenRefresher | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Summary: Create a FastAPI app wired to InboxSync services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="InboxSync API", version="0.1.0")
    context = build_context(
        config,
        mail_client_factory=mail_client_factory,
        calendar_client_factory=calendar_client_factory,
        refresher=refresher,
        clock=clock,
    )
    app.state.context = context
    app.state.oauth_states = {}

    @app.exception_handler(NeedsReconnect)
    async def needs_reconnect_handler(request: Request, exc: NeedsReconnect) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={
                "success": False,
                "error": str(exc),
                "provider": exc.provider,
                "needsReconnect": True,
            },
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": exc.message, "field": exc.field},
        )

    @app.exception_handler(TransientProviderError)
    @app.exception_handler(ProviderRequestError)
    async def provider_error_handler(request: Request, exc: InboxSyncError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})

    @app.exception_handler(InboxSyncError)
    async def inboxsync_error_handler(request: Request, exc: InboxSyncError) -> JSONResponse:
        logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    def _register_state(user_id: int, state: str) -> None:
        """Summary: Register an OAuth state token.

        Importance: Binds the callback to the user who started the flow.
        Alternatives: Store state in a database or signed cookies.
        """

        app.state.oauth_states[state] = {
            "user_id": user_id,
            "created_at": datetime.now(timezone.utc),
        }

    def _consume_state(state: str) -> int:
        """Summary: Validate and consume an OAuth state token.

        Importance: Reduces CSRF risks in OAuth flows; each state is single-use.
        Alternatives: Use a dedicated session store for state.
        """

        record = app.state.oauth_states.pop(state, None)
        if not record:
            raise HTTPException(status_code=400, detail="Invalid OAuth state")
        if datetime.now(timezone.utc) - record["created_at"] > OAUTH_STATE_TTL:
            raise HTTPException(status_code=400, detail="OAuth state expired")
        return record["user_id"]

    def current_services(x_api_key: str | None = Header(default=None)) -> AppServices:
        """Summary: Resolve the calling user from ``X-API-Key``.

        Importance: Per-user keys select the user; the admin key acts as the default
        user; with no admin key configured the API runs in local single-user mode.
        Alternatives: Use OAuth or session-based authentication.
        """

        if x_api_key:
            user_id = context.api_keys().resolve_user_id(x_api_key)
            if user_id is None and _secret_matches(x_api_key, config.api_key):
                user_id = context.default_user_id()
            if user_id is None:
                raise HTTPException(status_code=401, detail="Invalid API key")
            return context.services_for_user(user_id)
        if config.api_key:
            raise HTTPException(status_code=401, detail="Missing API key")
        return context.services_for_user(context.default_user_id())

    def require_admin_key(x_api_key: str | None = Header(default=None)) -> None:
        if not config.api_key:
            return
        if not _secret_matches(x_api_key, config.api_key):
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/suggest-availability")
    def suggest_availability(
        payload: SuggestAvailabilityRequest | None = None,
        services: AppServices = Depends(current_services),
    ) -> dict[str, Any]:
        """Summary: Suggest free meeting slots.

        Importance: Core scheduling workflow backed by the user's primary calendar.
        Alternatives: Return raw busy intervals and let clients compute slots.
        """

        duration = payload.durationMinutes if payload else None
        policy, slots = services.availability.suggest(duration)
        return {
            "success": True,
            "slots": [slot.to_dict() for slot in slots],
            "workingHours": {
                "start": policy.start.strftime("%H:%M"),
                "end": policy.end.strftime("%H:%M"),
            },
            "minNoticeHours": policy.min_notice_hours,
        }

    @app.post("/sync-mailbox")
    def sync_mailbox(services: AppServices = Depends(current_services)) -> dict[str, Any]:
        """Summary: Import recent primary-inbox mail on demand.

        Importance: Works without push notifications configured.
        Alternatives: Rely on push notifications only.
        """

        result = services.mailbox.sync()
        return {
            "success": True,
            "imported": result.imported,
            "skipped": result.skipped,
            "total": result.total,
        }

    @app.post("/mailbox-push-webhook")
    async def mailbox_push_webhook(
        request: Request,
        token: str | None = None,
        x_webhook_token: str | None = Header(default=None),
    ) -> dict[str, Any]:
        """Summary: Receive mailbox change notifications.

        Importance: Once the shared secret matches, the notification is always
        acknowledged with 200 so the push subscription does not redeliver it.
        Alternatives: Poll the mailbox on a schedule.
        """

        if not config.webhook_token or not _secret_matches(
            x_webhook_token or token, config.webhook_token
        ):
            raise HTTPException(status_code=401, detail="Invalid webhook token")
        try:
            envelope = await request.json()
        except ValueError:
            envelope = None
        try:
            return await run_in_threadpool(context.push_ingestion().handle, envelope)
        except Exception:
            logger.exception("Push notification processing failed.")
            return {"success": True, "processed": False, "reason": "internal error"}

    @app.post("/create-calendar-event")
    def create_calendar_event(
        payload: CreateEventRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        """Summary: Create a calendar event for an accepted slot.

        Importance: Completes the scheduling flow started by slot suggestions.
        Alternatives: Send an invite email instead of creating an event.
        """

        event = services.events.create_event(
            payload.title,
            payload.startTime or payload.selectedStart,
            payload.endTime or payload.selectedEnd,
            description=payload.description,
            attendee_email=payload.attendeeEmail,
            timezone_name=payload.timezone,
        )
        return {"success": True, **event}

    @app.post("/mailbox/watch")
    def watch_mailbox(services: AppServices = Depends(current_services)) -> dict[str, Any]:
        """Summary: Register push notifications for the caller's mailbox.

        Importance: Seeds the sync cursor that routes notifications to this user.
        Alternatives: Register watches out of band.
        """

        cursor = services.mailbox.start_watch()
        return {
            "success": True,
            "emailAddress": cursor.mail_address,
            "historyId": cursor.history_id,
            "expiresAt": to_iso(cursor.watch_expires_at) if cursor.watch_expires_at else None,
        }

    @app.post("/sync-all-mailboxes", dependencies=[Depends(require_admin_key)])
    def sync_all_mailboxes() -> dict[str, Any]:
        """Summary: Run the on-demand sync for every connected mailbox.

        Importance: Supports scheduled catch-up runs from a cron job.
        Alternatives: Sync each user from their own client.
        """

        return {"success": True, **context.bulk_sync().sync_all()}

    @app.get("/settings/working-hours")
    def get_working_hours(services: AppServices = Depends(current_services)) -> dict[str, Any]:
        return {"success": True, "workingHours": services.working_hours.get_policy().to_dict()}

    @app.put("/settings/working-hours")
    def put_working_hours(
        payload: WorkingHoursRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        policy = services.working_hours.save_policy(
            payload.start,
            payload.end,
            payload.timezone,
            min_notice_hours=payload.minNoticeHours,
            default_duration_minutes=payload.defaultDurationMinutes,
        )
        return {"success": True, "workingHours": policy.to_dict()}

    @app.get("/messages")
    def list_messages(
        limit: int = Query(default=20, ge=1, le=200),
        services: AppServices = Depends(current_services),
    ) -> list[dict[str, Any]]:
        """Summary: List recent stored messages.

        Importance: Provides data for UI clients and downstream processing.
        Alternatives: Return only message IDs with separate detail endpoints.
        """

        return [
            {
                "id": message.id,
                "providerMessageId": message.provider_message_id,
                "fromName": message.from_name,
                "fromEmail": message.from_email,
                "subject": message.subject,
                "snippet": message.body_snippet,
                "receivedAt": to_iso(message.received_at),
                "processed": message.processed,
            }
            for message in services.store.list_messages(services.user_id, limit)
        ]

    @app.get("/oauth/google")
    def oauth_google(services: AppServices = Depends(current_services)) -> dict[str, str]:
        """Summary: Return the Google OAuth authorization URL.

        Importance: Starts the consent flow that connects mail and calendar.
        Alternatives: Use CLI-only OAuth helpers.
        """

        state = create_state_token()
        _register_state(services.user_id, state)
        return {"url": build_google_auth_url(config, state), "state": state}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(
        state: str, code: str | None = None, error: str | None = None
    ) -> str:
        """Summary: Handle the OAuth callback and store the issued tokens.

        Importance: Completes the connect flow for both mail and calendar.
        Alternatives: Exchange the code on the client.
        """

        user_id = _consume_state(state)
        if error or not code:
            raise HTTPException(status_code=400, detail=f"Authorization failed: {error or 'no code'}")
        result = exchange_oauth_code(config, code)
        context.services_for_user(user_id).tokens.store_tokens(result)
        return "<h1>InboxSync connected</h1><p>You can close this window.</p>"

    return app


def _secret_matches(candidate: str | None, secret: str) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


app = create_app(AppConfig.from_env())
