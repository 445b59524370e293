"""Summary: SQLite storage implementation for InboxSync.

Importance: Persists credentials, policies, sync cursors, and messages between requests.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, time, timezone
from pathlib import Path
from typing import Iterator

from inboxsync.models import Credential, Message, SyncCursor, User, WorkingHoursPolicy


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Enables multi-user data ownership.
    Alternatives: Keep only a single implicit user without records.
    """

    id: int
    display_name: str
    email: str


@dataclass(frozen=True)
class StoredApiKey:
    """Summary: API key record; only the salted hash is kept.

    Importance: Supports listing and revoking keys without exposing them.
    Alternatives: Store raw tokens in the database.
    """

    id: int
    user_id: int
    token_hash: str
    label: str | None
    created_at: str


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with database identifier.

    Importance: Exposes stored messages to listing endpoints and downstream processing.
    Alternatives: Use provider_message_id as the only identifier.
    """

    id: int
    provider_message_id: str
    from_name: str | None
    from_email: str
    subject: str
    body_snippet: str
    body_full: str
    received_at: datetime
    processed: bool


class SqliteStore:
    """Summary: SQLite-backed storage for InboxSync.

    Importance: Every operation opens its own connection and commits individually,
    so partial progress survives a failure mid-pass.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for sync and availability requests.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    label TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    user_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    access_token_enc TEXT,
                    refresh_token_enc TEXT,
                    expires_at TEXT,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, provider)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS working_hours (
                    user_id INTEGER PRIMARY KEY,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    timezone TEXT NOT NULL,
                    min_notice_hours INTEGER NOT NULL,
                    default_duration_minutes INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_cursors (
                    user_id INTEGER PRIMARY KEY,
                    mail_address TEXT NOT NULL,
                    history_id TEXT NOT NULL,
                    watch_expires_at TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_cursors_address ON sync_cursors (mail_address)"
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    provider_message_id TEXT NOT NULL,
                    from_name TEXT,
                    from_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body_snippet TEXT,
                    body_full TEXT,
                    received_at TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, provider_message_id)
                )
                """
            )
            connection.commit()

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Provides a stable user record for data ownership.
        Alternatives: Omit user records in single-user mode.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email) VALUES (?, ?)",
                (user.display_name, user.email),
            )
            cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def get_user_by_email(self, email: str) -> StoredUser | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, display_name, email FROM users WHERE email = ?", (email,)
            )
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def list_users(self) -> list[StoredUser]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id, display_name, email FROM users ORDER BY id")
            rows = cursor.fetchall()
        return [StoredUser(*row) for row in rows]

    def create_api_key(
        self, user_id: int, token_hash: str, label: str | None, created_at: str
    ) -> int:
        """Summary: Persist a hashed API key.

        Importance: Enables per-user API authentication.
        Alternatives: Sign stateless tokens instead.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT INTO api_keys (user_id, token_hash, label, created_at) VALUES (?, ?, ?, ?)",
                (user_id, token_hash, label, created_at),
            )
            key_id = cursor.lastrowid
            connection.commit()
        return int(key_id)

    def delete_api_key(self, user_id: int, key_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM api_keys WHERE id = ? AND user_id = ?", (key_id, user_id)
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def list_api_keys(self, user_id: int) -> list[StoredApiKey]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, user_id, token_hash, label, created_at
                FROM api_keys
                WHERE user_id = ?
                ORDER BY id
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
        return [StoredApiKey(*row) for row in rows]

    def get_user_id_by_api_key(self, token_hash: str) -> int | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT user_id FROM api_keys WHERE token_hash = ?", (token_hash,))
            row = cursor.fetchone()
        return int(row[0]) if row else None

    def upsert_credential(self, credential: Credential) -> None:
        """Summary: Create or overwrite the credential for a (user, provider) pair.

        Importance: A successful authorization handshake replaces any previous tokens.
        Alternatives: Keep a history of credentials per provider.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO credentials (
                    user_id, provider, access_token_enc, refresh_token_enc, expires_at, status, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    access_token_enc = excluded.access_token_enc,
                    refresh_token_enc = excluded.refresh_token_enc,
                    expires_at = excluded.expires_at,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    credential.user_id,
                    credential.provider,
                    credential.access_token_enc,
                    credential.refresh_token_enc,
                    _to_db(credential.expires_at),
                    credential.status,
                    _to_db(credential.updated_at or _utcnow()),
                ),
            )
            connection.commit()

    def get_credential(self, user_id: int, provider: str) -> Credential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT user_id, provider, access_token_enc, refresh_token_enc, expires_at, status, updated_at
                FROM credentials
                WHERE user_id = ? AND provider = ?
                """,
                (user_id, provider),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Credential(
            user_id=row[0],
            provider=row[1],
            access_token_enc=row[2],
            refresh_token_enc=row[3],
            expires_at=_from_db(row[4]),
            status=row[5],
            updated_at=_from_db(row[6]),
        )

    def update_access_token(
        self,
        user_id: int,
        provider: str,
        access_token_enc: str,
        expires_at: datetime | None,
        refresh_token_enc: str | None = None,
    ) -> None:
        """Summary: Persist a refreshed access token.

        Importance: The refresh token is only replaced when the provider rotated it.
        Alternatives: Rewrite the whole credential row.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE credentials
                SET access_token_enc = ?,
                    expires_at = ?,
                    refresh_token_enc = COALESCE(?, refresh_token_enc),
                    updated_at = ?
                WHERE user_id = ? AND provider = ?
                """,
                (
                    access_token_enc,
                    _to_db(expires_at),
                    refresh_token_enc,
                    _to_db(_utcnow()),
                    user_id,
                    provider,
                ),
            )
            connection.commit()

    def set_credential_status(self, user_id: int, provider: str, status: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE credentials SET status = ?, updated_at = ? WHERE user_id = ? AND provider = ?",
                (status, _to_db(_utcnow()), user_id, provider),
            )
            connection.commit()

    def list_connected_user_ids(self, provider: str) -> list[int]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT user_id FROM credentials WHERE provider = ? AND status = 'connected' ORDER BY user_id",
                (provider,),
            )
            rows = cursor.fetchall()
        return [int(row[0]) for row in rows]

    def save_working_hours(self, user_id: int, policy: WorkingHoursPolicy) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO working_hours (
                    user_id, start_time, end_time, timezone, min_notice_hours, default_duration_minutes
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    timezone = excluded.timezone,
                    min_notice_hours = excluded.min_notice_hours,
                    default_duration_minutes = excluded.default_duration_minutes
                """,
                (
                    user_id,
                    policy.start.strftime("%H:%M"),
                    policy.end.strftime("%H:%M"),
                    policy.timezone,
                    policy.min_notice_hours,
                    policy.default_duration_minutes,
                ),
            )
            connection.commit()

    def get_working_hours(self, user_id: int) -> WorkingHoursPolicy | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT start_time, end_time, timezone, min_notice_hours, default_duration_minutes
                FROM working_hours
                WHERE user_id = ?
                """,
                (user_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return WorkingHoursPolicy(
            start=time.fromisoformat(row[0]),
            end=time.fromisoformat(row[1]),
            timezone=row[2],
            min_notice_hours=int(row[3]),
            default_duration_minutes=int(row[4]),
        )

    def get_sync_cursor(self, user_id: int) -> SyncCursor | None:
        return self._fetch_cursor("user_id = ?", (user_id,))

    def get_sync_cursor_by_address(self, mail_address: str) -> SyncCursor | None:
        """Return the most recently written cursor for an address, matched case-insensitively."""

        return self._fetch_cursor("lower(mail_address) = lower(?)", (mail_address,))

    def seed_sync_cursor(self, sync_cursor: SyncCursor) -> None:
        """Summary: Write a cursor unconditionally.

        Importance: Used when a watch is registered and when a stale cursor is reseeded
        from a notification, where moving backwards is accepted.
        Alternatives: Delete and recreate the cursor row.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO sync_cursors (user_id, mail_address, history_id, watch_expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    mail_address = excluded.mail_address,
                    history_id = excluded.history_id,
                    watch_expires_at = COALESCE(excluded.watch_expires_at, sync_cursors.watch_expires_at),
                    updated_at = excluded.updated_at
                """,
                (
                    sync_cursor.user_id,
                    sync_cursor.mail_address,
                    sync_cursor.history_id,
                    _to_db(sync_cursor.watch_expires_at),
                    _to_db(sync_cursor.updated_at or _utcnow()),
                ),
            )
            connection.commit()

    def advance_sync_cursor(self, user_id: int, history_id: str) -> bool:
        """Summary: Move the cursor forward; never backwards.

        Importance: The conditional update is atomic, so concurrent passes cannot regress it.
        Alternatives: Lock the row while a pass runs.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE sync_cursors
                SET history_id = ?, updated_at = ?
                WHERE user_id = ? AND CAST(history_id AS INTEGER) <= CAST(? AS INTEGER)
                """,
                (history_id, _to_db(_utcnow()), user_id, history_id),
            )
            advanced = cursor.rowcount > 0
            connection.commit()
        return advanced

    def insert_message(self, user_id: int, message: Message) -> bool:
        """Summary: Insert a message unless it is already stored.

        Importance: (user_id, provider_message_id) is unique, so rediscovering a message
        is a no-op; returns True only when a row was created.
        Alternatives: Query first and insert when missing.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO messages (
                    user_id, provider_message_id, from_name, from_email, subject,
                    body_snippet, body_full, received_at, processed, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    message.provider_message_id,
                    message.from_name,
                    message.from_email,
                    message.subject,
                    message.body_snippet,
                    message.body_full,
                    _to_db(message.received_at),
                    int(message.processed),
                    _to_db(_utcnow()),
                ),
            )
            inserted = cursor.rowcount > 0
            connection.commit()
        return inserted

    def list_messages(self, user_id: int, limit: int) -> list[StoredMessage]:
        """Summary: Retrieve recent messages for a user.

        Importance: Supplies listing endpoints and downstream processing.
        Alternatives: Stream messages from the provider directly.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, provider_message_id, from_name, from_email, subject,
                       body_snippet, body_full, received_at, processed
                FROM messages
                WHERE user_id = ?
                ORDER BY received_at DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [StoredMessage(*row[:7], _from_db(row[7]), bool(row[8])) for row in rows]

    def count_messages(self, user_id: int) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT COUNT(*) FROM messages WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
        return int(row[0])

    def _fetch_cursor(self, where: str, params: tuple[object, ...]) -> SyncCursor | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT user_id, mail_address, history_id, watch_expires_at, updated_at
                FROM sync_cursors
                WHERE {where}
                ORDER BY updated_at DESC, user_id DESC
                LIMIT 1
                """,
                params,
            )
            row = cursor.fetchone()
        if not row:
            return None
        return SyncCursor(
            user_id=row[0],
            mail_address=row[1],
            history_id=row[2],
            watch_expires_at=_from_db(row[3]),
            updated_at=_from_db(row[4]),
        )

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            yield connection
        finally:
            connection.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
