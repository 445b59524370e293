"""Summary: Command-line interface for InboxSync.

Importance: Provides a local-first entry point for onboarding, syncing, and scheduling.
Alternatives: Build a web UI or desktop client first.
"""

from __future__ import annotations

import argparse
import logging
import sys
from zoneinfo import ZoneInfo

import uvicorn

from inboxsync.app import build_context, build_services
from inboxsync.config import AppConfig
from inboxsync.errors import InboxSyncError, NeedsReconnect
from inboxsync.oauth import build_google_auth_url, create_state_token, exchange_oauth_code


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="InboxSync CLI")
    parser.add_argument("--email", type=str, default=None, help="Act on this user instead of the default")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_user = subparsers.add_parser("create-user", help="Create a user")
    create_user.add_argument("display_name", type=str)
    create_user.add_argument("user_email", type=str)

    create_api_key = subparsers.add_parser("create-api-key", help="Issue an API key")
    create_api_key.add_argument("--label", type=str, default=None)

    subparsers.add_parser("list-users", help="List users")
    subparsers.add_parser("list-api-keys", help="List API keys for the user")

    revoke_api_key = subparsers.add_parser("revoke-api-key", help="Revoke an API key")
    revoke_api_key.add_argument("key_id", type=int)

    oauth_google = subparsers.add_parser(
        "oauth-google", help="Print the Google OAuth URL, or store tokens for --code"
    )
    oauth_google.add_argument("--code", type=str, default=None)

    working_hours = subparsers.add_parser("set-working-hours", help="Store working hours")
    working_hours.add_argument("start", type=str, help="HH:MM")
    working_hours.add_argument("end", type=str, help="HH:MM")
    working_hours.add_argument("timezone", type=str, help="IANA zone, e.g. Europe/Berlin")
    working_hours.add_argument("--min-notice-hours", type=int, default=None)
    working_hours.add_argument("--duration", type=int, default=None)

    suggest = subparsers.add_parser("suggest-slots", help="Suggest meeting slots")
    suggest.add_argument("--duration", type=int, default=None)

    subparsers.add_parser("sync-mailbox", help="Import recent primary inbox mail")
    subparsers.add_parser("sync-all", help="Sync every connected mailbox")
    subparsers.add_parser("watch-mailbox", help="Register mailbox push notifications")

    list_messages = subparsers.add_parser("list-messages", help="List stored messages")
    list_messages.add_argument("--limit", type=int, default=10)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Failures print one line and exit non-zero.
    Alternatives: Invoke services via an HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    try:
        _dispatch(args, config)
    except NeedsReconnect as exc:
        print(f"Reconnect required for {exc.provider}: run `inboxsync oauth-google`.", file=sys.stderr)
        raise SystemExit(2) from exc
    except (InboxSyncError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _dispatch(args: argparse.Namespace, config: AppConfig) -> None:
    if args.command == "create-user":
        user_id = build_context(config).users().create_user(args.display_name, args.user_email)
        print(f"User {user_id} ({args.user_email}) ready.")
        return

    if args.command == "list-users":
        for user in build_context(config).users().list_users():
            print(f"{user.id}: {user.display_name} <{user.email}>")
        return

    if args.command == "sync-all":
        summary = build_context(config).bulk_sync().sync_all()
        print(
            f"Synced {summary['synced']} of {summary['total_accounts']} mailboxes "
            f"({summary['errors']} errors)."
        )
        return

    if args.command == "serve":
        uvicorn.run(
            "inboxsync.api:app",
            host=args.host or config.api_host,
            port=args.port or config.api_port,
        )
        return

    services = build_services(config, email=args.email)

    if args.command == "create-api-key":
        key_id, token = services.api_keys.create_api_key(services.user_id, label=args.label)
        print(f"API key {key_id}: {token}")
        print("Store this key now; it cannot be shown again.")
        return

    if args.command == "list-api-keys":
        for key in services.api_keys.list_api_keys(services.user_id):
            print(f"{key.id}: {key.label or '(no label)'} created {key.created_at}")
        return

    if args.command == "revoke-api-key":
        if not services.api_keys.revoke_api_key(services.user_id, args.key_id):
            raise ValueError(f"No API key {args.key_id} for this user")
        print(f"Revoked API key {args.key_id}.")
        return

    if args.command == "oauth-google":
        if args.code:
            services.tokens.store_tokens(exchange_oauth_code(config, args.code))
            print("Google mail and calendar connected.")
            return
        print(build_google_auth_url(config, create_state_token()))
        return

    if args.command == "set-working-hours":
        policy = services.working_hours.save_policy(
            args.start,
            args.end,
            args.timezone,
            min_notice_hours=args.min_notice_hours,
            default_duration_minutes=args.duration,
        )
        print(
            f"Working hours {policy.start:%H:%M}-{policy.end:%H:%M} {policy.timezone}, "
            f"{policy.min_notice_hours}h notice."
        )
        return

    if args.command == "suggest-slots":
        policy, slots = services.availability.suggest(args.duration)
        if not slots:
            print("No free slots in the next week.")
            return
        for slot in slots:
            start = slot.start.astimezone(ZoneInfo(policy.timezone))
            end = slot.end.astimezone(ZoneInfo(policy.timezone))
            print(f"{start:%a %Y-%m-%d %H:%M}-{end:%H:%M} ({policy.timezone})")
        return

    if args.command == "sync-mailbox":
        result = services.mailbox.sync()
        print(f"Imported {result.imported}, skipped {result.skipped} of {result.total} messages.")
        return

    if args.command == "watch-mailbox":
        cursor = services.mailbox.start_watch()
        print(f"Watching {cursor.mail_address} from history {cursor.history_id}.")
        return

    if args.command == "list-messages":
        for message in services.store.list_messages(services.user_id, args.limit):
            sender = message.from_name or message.from_email
            print(f"{message.id}: {message.subject} ({sender})")
        return


if __name__ == "__main__":
    run_cli()
