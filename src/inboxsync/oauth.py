"""Summary: OAuth helper utilities for the Google integration.

Importance: Generates authorization URLs and performs code exchange and token refresh.
Alternatives: Use google-auth-oauthlib for OAuth flows.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
import urllib.parse

from inboxsync.config import AppConfig
from inboxsync.errors import InboxSyncError, ProviderRequestError
from inboxsync.transport import request_json


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_SCOPES = " ".join(
    [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    ]
)


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(payload: dict[str, Any], now: datetime | None = None) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from a provider payload.

        Importance: Normalizes expiry into an absolute UTC instant.
        Alternatives: Store expires_in and the response time separately.
        """

        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderRequestError(400, str(payload.get("error") or "missing access_token"))
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) or (isinstance(expires_in, str) and expires_in.isdigit()):
            issued = now or datetime.now(timezone.utc)
            expires_at = issued + timedelta(seconds=int(expires_in))
        return OAuthTokenResult(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            token_type=payload.get("token_type"),
            raw=payload,
        )


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_google_auth_url(config: AppConfig, state: str) -> str:
    """Summary: Build a Google OAuth authorization URL.

    Importance: Requests offline access so a refresh token is issued.
    Alternatives: Use a different OAuth helper library.
    """

    params = {
        "client_id": config.google_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "scope": GOOGLE_SCOPES,
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?" + urllib.parse.urlencode(params)


def exchange_oauth_code(config: AppConfig, code: str) -> OAuthTokenResult:
    """Summary: Exchange an OAuth authorization code for tokens.

    Importance: Completes OAuth flows by retrieving access and refresh tokens.
    Alternatives: Use provider SDKs or external auth services.
    """

    response = request_json(
        "POST",
        config.google_token_url,
        provider="google-oauth",
        timeout=config.request_timeout_seconds,
        form=_token_payload(config, code),
    )
    return OAuthTokenResult.from_response(response)


def refresh_oauth_token(config: AppConfig, refresh_token: str) -> OAuthTokenResult:
    """Summary: Exchange a refresh token for a new access token.

    Importance: Keeps provider access working without user interaction.
    Alternatives: Re-run the consent flow whenever a token expires.
    """

    response = request_json(
        "POST",
        config.google_token_url,
        provider="google-oauth",
        timeout=config.request_timeout_seconds,
        form=_refresh_payload(config, refresh_token),
    )
    return OAuthTokenResult.from_response(response)


def _token_payload(config: AppConfig, code: str) -> dict[str, str]:
    """Summary: Build token request parameters for OAuth code exchange.

    Importance: Ensures the payload includes the registered redirect URI.
    Alternatives: Assemble payloads inline inside the exchange function.
    """

    _ensure_oauth_config(config)
    return {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.oauth_redirect_uri,
    }


def _refresh_payload(config: AppConfig, refresh_token: str) -> dict[str, str]:
    _ensure_oauth_config(config)
    return {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }


def _ensure_oauth_config(config: AppConfig) -> None:
    """Summary: Validate that OAuth credentials exist.

    Importance: Prevents confusing token exchange errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    if not config.google_client_id or not config.google_client_secret:
        raise InboxSyncError("Missing OAuth client credentials for google")
