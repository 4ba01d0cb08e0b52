"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from inkwell.journal import app, create_user, get_db, init_db  # noqa: WPS433

CSRF = "test-token"
PASSWORD = "Secret123"

_emails = itertools.count(1)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        SESSION_COOKIE_SECURE=False,  # the test client talks plain http
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.
    Every test works with its own freshly created users, so rows never
    collide even though the database file is shared.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkwell.journal.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from inkwell import journal  # import here to avoid early import

    counter = itertools.count()  # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(journal, "utc_now", _fake_now)

    yield  # tests run here

    mp.undo()


@pytest.fixture
def make_user():
    """Factory: ``make_user(name=…)`` → dict with id / email / password."""

    def _make(name: str = "Tester", password: str = PASSWORD) -> dict:
        email = f"writer{next(_emails)}@example.com"
        with app.app_context():
            user_id = create_user(name=name, email=email, password=password, db=get_db())
        return {"id": user_id, "email": email, "password": password, "name": name}

    return _make


@pytest.fixture
def user(make_user) -> dict:
    return make_user()


def sign_in(client: FlaskClient, user_id: int) -> None:
    """Skip the login form: plant user id + CSRF token in the session."""
    with client.session_transaction() as s:
        s["user_id"] = user_id
        s["csrf"] = CSRF


@pytest.fixture
def auth_client(client: FlaskClient, user: dict) -> FlaskClient:
    sign_in(client, user["id"])
    return client
