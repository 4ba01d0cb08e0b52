"""
tests/test_cli.py
"""
from __future__ import annotations

from inkwell.journal import app, authenticate, get_db


def test_init_is_idempotent(client):
    runner = app.test_cli_runner()
    assert runner.invoke(args=["init"]).exit_code == 0
    result = runner.invoke(args=["init"])
    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_create_user(client):
    runner = app.test_cli_runner()
    args = ["create-user", "--name", "Cli", "--email", "cli.user@example.com",
            "--password", "Secret123"]
    result = runner.invoke(args=args)
    assert result.exit_code == 0, result.output
    assert authenticate("cli.user@example.com", "Secret123", db=get_db())

    again = runner.invoke(args=args)
    assert again.exit_code != 0
    assert "already exists" in again.output


def test_create_user_weak_password(client):
    result = app.test_cli_runner().invoke(
        args=["create-user", "--name", "W", "--email", "weak@example.com",
              "--password", "weak"]
    )
    assert result.exit_code != 0
    assert "at least 8 characters" in result.output
