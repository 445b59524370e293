"""Summary: Application configuration for InboxSync.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and scheduling.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    api_host: str
    api_port: int
    default_user_name: str
    default_user_email: str
    api_key: str
    token_secret: str
    google_client_id: str
    google_client_secret: str
    oauth_redirect_uri: str
    google_token_url: str
    gmail_api_base_url: str
    calendar_api_base_url: str
    gmail_pubsub_topic: str
    token_encryption_key: str
    webhook_token: str
    default_timezone: str = "America/New_York"
    working_hours_start: str = "09:00"
    working_hours_end: str = "17:00"
    meeting_min_notice_hours: int = 24
    meeting_default_duration: int = 30
    request_timeout_seconds: float = 10.0
    sync_query: str = (
        "category:primary -category:promotions -category:social -category:updates newer_than:7d"
    )
    sync_max_results: int = 50
    fallback_max_results: int = 10
    body_max_chars: int = 10000
    slot_gap_minutes: int = 120
    slot_rounding_minutes: int = 30
    token_refresh_margin_seconds: int = 300

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("INBOXSYNC_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("INBOXSYNC_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("INBOXSYNC_API_PORT", defaults["api_port"])),
            default_user_name=os.getenv(
                "INBOXSYNC_DEFAULT_USER_NAME", defaults["default_user_name"]
            ),
            default_user_email=os.getenv(
                "INBOXSYNC_DEFAULT_USER_EMAIL", defaults["default_user_email"]
            ),
            api_key=os.getenv("INBOXSYNC_API_KEY", defaults["api_key"]),
            token_secret=os.getenv("INBOXSYNC_TOKEN_SECRET", defaults["token_secret"]),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            oauth_redirect_uri=os.getenv(
                "INBOXSYNC_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            gmail_api_base_url=os.getenv("GMAIL_API_BASE_URL", defaults["gmail_api_base_url"]),
            calendar_api_base_url=os.getenv(
                "CALENDAR_API_BASE_URL", defaults["calendar_api_base_url"]
            ),
            gmail_pubsub_topic=os.getenv("GMAIL_PUBSUB_TOPIC", defaults["gmail_pubsub_topic"]),
            token_encryption_key=os.getenv(
                "TOKEN_ENCRYPTION_KEY", defaults["token_encryption_key"]
            ),
            webhook_token=os.getenv("GMAIL_WEBHOOK_TOKEN", defaults["webhook_token"]),
            default_timezone=os.getenv("INBOXSYNC_DEFAULT_TIMEZONE", defaults["default_timezone"]),
            working_hours_start=os.getenv(
                "INBOXSYNC_WORKING_HOURS_START", defaults["working_hours_start"]
            ),
            working_hours_end=os.getenv(
                "INBOXSYNC_WORKING_HOURS_END", defaults["working_hours_end"]
            ),
            meeting_min_notice_hours=int(
                os.getenv("INBOXSYNC_MIN_NOTICE_HOURS", defaults["meeting_min_notice_hours"])
            ),
            meeting_default_duration=int(
                os.getenv("INBOXSYNC_DEFAULT_DURATION", defaults["meeting_default_duration"])
            ),
            request_timeout_seconds=float(
                os.getenv("INBOXSYNC_REQUEST_TIMEOUT", defaults["request_timeout_seconds"])
            ),
            sync_query=os.getenv("INBOXSYNC_SYNC_QUERY", defaults["sync_query"]),
            sync_max_results=int(
                os.getenv("INBOXSYNC_SYNC_MAX_RESULTS", defaults["sync_max_results"])
            ),
            fallback_max_results=int(
                os.getenv("INBOXSYNC_FALLBACK_MAX_RESULTS", defaults["fallback_max_results"])
            ),
            body_max_chars=int(os.getenv("INBOXSYNC_BODY_MAX_CHARS", defaults["body_max_chars"])),
            slot_gap_minutes=int(
                os.getenv("INBOXSYNC_SLOT_GAP_MINUTES", defaults["slot_gap_minutes"])
            ),
            slot_rounding_minutes=int(
                os.getenv("INBOXSYNC_SLOT_ROUNDING_MINUTES", defaults["slot_rounding_minutes"])
            ),
            token_refresh_margin_seconds=int(
                os.getenv(
                    "INBOXSYNC_TOKEN_REFRESH_MARGIN", defaults["token_refresh_margin_seconds"]
                )
            ),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())
