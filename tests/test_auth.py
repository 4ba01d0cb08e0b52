"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
from contextlib import contextmanager
from typing import Iterator

import pytest
from flask.testing import FlaskClient

from inkwell.journal import (
    RegistrationError,
    app,
    authenticate,
    find_user_by_email,
    get_db,
    get_user_settings,
    register_user,
    validate_registration,
)

_ip_counter = itertools.count(1)
_signup_emails = itertools.count(1)


# ───────────────────────── helpers ────────────────────────────────────
@contextmanager
def _new_client() -> Iterator[FlaskClient]:
    """
    Yield a brand-new Flask test-client whose REMOTE_ADDR is unique
    for every call, so the rate-limit (keyed by IP) never bleeds
    between tests unless we stay inside the same `with`-block.
    """
    ip = f"127.0.1.{next(_ip_counter)}"
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = ip
        yield c


def _login(client, email: str, password: str, follow=False, **extra):
    return client.post(
        "/login",
        data={"email": email, "password": password, **extra},
        follow_redirects=follow,
    )


def _fresh_email() -> str:
    return f"signup{next(_signup_emails)}@Example.com"


# ───────────────────────── validation ─────────────────────────────────
def test_validation_collects_every_problem():
    with pytest.raises(RegistrationError) as exc:
        validate_registration("", "not-an-email", "short")
    assert exc.value.messages == [
        "Name is required",
        "Invalid email address",
        "Password must be at least 8 characters",
    ]


@pytest.mark.parametrize("password", ["alllowercase1", "ALLUPPER123", "NoDigitsHere"])
def test_password_needs_mixed_characters(password):
    with pytest.raises(RegistrationError) as exc:
        validate_registration("Ann", "ann@example.com", password)
    assert "one lowercase letter" in exc.value.messages[0]


def test_name_too_long():
    with pytest.raises(RegistrationError) as exc:
        validate_registration("x" * 51, "ann@example.com", "Secret123")
    assert exc.value.messages == ["Name too long"]


def test_register_lowercases_email_and_seeds_settings(client):
    email = _fresh_email()
    user_id = register_user("  Ann  ", email, "Secret123", db=get_db())
    row = find_user_by_email(email.lower(), db=get_db())
    assert row["id"] == user_id
    assert row["email"] == email.lower()
    assert row["name"] == "Ann"
    assert get_user_settings(user_id)["autosave_interval"] == 10

    with pytest.raises(RegistrationError) as exc:
        register_user("Ann", email.upper(), "Secret123", db=get_db())
    assert exc.value.messages == ["User already exists with this email"]


def test_authenticate(client, user):
    db = get_db()
    assert authenticate(user["email"], user["password"], db=db)["id"] == user["id"]
    assert authenticate(user["email"].upper(), user["password"], db=db) is not None
    assert authenticate(user["email"], "Wrong1234", db=db) is None
    assert authenticate("nobody@example.com", "Secret123", db=db) is None


# ───────────────────────── login / logout ─────────────────────────────
def test_successful_login(user):
    with _new_client() as c:
        rv = _login(c, user["email"], user["password"])
        assert rv.status_code == 302
        assert rv.headers["Location"].endswith("/dashboard")
        with c.session_transaction() as sess:
            assert sess["user_id"] == user["id"]
            assert sess["csrf"]


def test_wrong_password(user):
    with _new_client() as c:
        rv = _login(c, user["email"], "Nope12345")
        assert rv.status_code == 200
        assert b"Invalid email or password." in rv.data
        with c.session_transaction() as sess:
            assert "user_id" not in sess


@pytest.mark.parametrize(
    "nxt, expected",
    [
        ("/entries", "/entries"),
        ("https://evil.example/steal", "/dashboard"),
        ("//evil.example", "/dashboard"),
    ],
)
def test_login_next_is_local_only(user, nxt, expected):
    with _new_client() as c:
        rv = _login(c, user["email"], user["password"], next=nxt)
        assert rv.status_code == 302
        assert rv.headers["Location"].endswith(expected)
        assert "evil" not in rv.headers["Location"]


def test_login_rate_limited(user):
    with _new_client() as c:
        for _ in range(5):
            assert _login(c, user["email"], "Wrong1234").status_code == 200
        rv = _login(c, user["email"], user["password"])
        assert rv.status_code == 429
        assert int(rv.headers["Retry-After"]) >= 0
        # reading the form is never throttled
        assert c.get("/login").status_code == 200


def test_logout_clears_session(user):
    with _new_client() as c:
        _login(c, user["email"], user["password"])
        rv = c.get("/logout")
        assert rv.status_code == 302
        with c.session_transaction() as sess:
            assert "user_id" not in sess


# ───────────────────────── sign-up ────────────────────────────────────
def test_signup_form_signs_in():
    email = _fresh_email()
    with _new_client() as c:
        rv = c.post(
            "/signup", data={"name": "Bea", "email": email, "password": "Secret123"}
        )
        assert rv.status_code == 302
        assert rv.headers["Location"].endswith("/dashboard")
        with c.session_transaction() as sess:
            assert sess["user_id"]


def test_signup_form_shows_errors():
    with _new_client() as c:
        rv = c.post("/signup", data={"name": "", "email": "bad", "password": "x"})
        assert rv.status_code == 200
        assert b"Name is required" in rv.data
        assert b"Invalid email address" in rv.data


def test_api_register():
    email = _fresh_email()
    with _new_client() as c:
        rv = c.post(
            "/api/auth/register",
            json={"name": "Cy", "email": email, "password": "Secret123"},
        )
        assert rv.status_code == 201
        body = rv.get_json()
        assert body["message"] == "User created successfully"
        assert body["user"]["email"] == email.lower()
        assert "password" not in str(body)

        rv = c.post(
            "/api/auth/register",
            json={"name": "Cy", "email": email, "password": "Secret123"},
        )
        assert rv.status_code == 400
        assert rv.get_json() == {
            "message": "Validation error",
            "errors": ["User already exists with this email"],
        }


# ───────────────────────── CSRF ───────────────────────────────────────
def test_csrf_required_once_signed_in(auth_client):
    rv = auth_client.post("/settings", data={"theme": "dark"})
    assert rv.status_code == 403
