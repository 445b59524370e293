"""Summary: Tests for the command-line interface.

Importance: Confirms commands parse and reach the service layer.
Alternatives: Exercise the CLI only by hand.
"""

from __future__ import annotations

import pytest

from inboxsync.cli import _dispatch, build_parser


def test_parser_reads_global_email_and_command_options() -> None:
    args = build_parser().parse_args(
        ["--email", "ada@example.com", "set-working-hours", "08:00", "16:00", "UTC", "--duration", "45"]
    )
    assert args.email == "ada@example.com"
    assert args.command == "set-working-hours"
    assert args.duration == 45
    assert args.min_notice_hours is None


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_create_user_then_set_working_hours(config, capsys: pytest.CaptureFixture[str]) -> None:
    parser = build_parser()
    _dispatch(parser.parse_args(["create-user", "Ada", "ada@example.com"]), config)
    _dispatch(
        parser.parse_args(
            ["--email", "ada@example.com", "set-working-hours", "08:00", "16:00", "Europe/Berlin"]
        ),
        config,
    )
    output = capsys.readouterr().out
    assert "ada@example.com" in output
    assert "08:00-16:00 Europe/Berlin" in output


def test_unknown_user_is_rejected(config) -> None:
    with pytest.raises(ValueError):
        _dispatch(build_parser().parse_args(["--email", "nobody@example.com", "sync-mailbox"]), config)


def test_oauth_without_code_prints_consent_url(config, capsys: pytest.CaptureFixture[str]) -> None:
    _dispatch(build_parser().parse_args(["oauth-google"]), config)
    assert capsys.readouterr().out.startswith("https://accounts.google.com/o/oauth2/v2/auth?")


def test_api_key_commands(config, capsys: pytest.CaptureFixture[str]) -> None:
    parser = build_parser()
    _dispatch(parser.parse_args(["create-api-key", "--label", "laptop"]), config)
    created = capsys.readouterr().out
    key_id = int(created.split(":", 1)[0].removeprefix("API key "))

    _dispatch(parser.parse_args(["list-api-keys"]), config)
    assert f"{key_id}: laptop" in capsys.readouterr().out
    _dispatch(parser.parse_args(["list-users"]), config)
    assert "local@inboxsync" in capsys.readouterr().out

    _dispatch(parser.parse_args(["revoke-api-key", str(key_id)]), config)
    assert f"Revoked API key {key_id}." in capsys.readouterr().out
    with pytest.raises(ValueError):
        _dispatch(parser.parse_args(["revoke-api-key", str(key_id)]), config)
