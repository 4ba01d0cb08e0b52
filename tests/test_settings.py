"""
tests/test_settings.py
"""
from __future__ import annotations

from conftest import CSRF
from inkwell.journal import SETTINGS_DEFAULTS, get_db, get_user_settings


def _post(client, **overrides):
    data = {
        "autosave_interval": "10",
        "theme": "system",
        "shortcuts_enabled": "1",
        "export_include_metadata": "1",
        "csrf": CSRF,
    }
    data.update(overrides)
    return client.post("/settings", data={k: v for k, v in data.items() if v is not None})


# ────────────────────────────────────────────────────────────────
def test_settings_requires_login(client):
    rv = client.get("/settings")
    assert rv.status_code == 302


def test_settings_get_ok(auth_client, user):
    rv = auth_client.get("/settings")
    assert rv.status_code == 200
    assert b'name="csrf"' in rv.data
    assert user["email"].encode() in rv.data


def test_defaults_for_new_user(client, user):
    assert get_user_settings(user["id"]) == SETTINGS_DEFAULTS


def test_update_settings(auth_client, user):
    rv = _post(
        auth_client,
        autosave_interval="45",
        theme="dark",
        shortcuts_enabled=None,
        name="Renamed",
    )
    assert rv.status_code == 302
    prefs = get_user_settings(user["id"])
    assert prefs == {
        "autosave_interval": 45,
        "theme": "dark",
        "shortcuts_enabled": False,
        "export_include_metadata": True,
    }
    name = get_db().execute("SELECT name FROM user WHERE id=?", (user["id"],)).fetchone()[0]
    assert name == "Renamed"

    # the chosen theme reaches the page
    assert b'data-theme="dark"' in auth_client.get("/settings").data


def test_out_of_range_interval_is_ignored(auth_client, user):
    _post(auth_client, autosave_interval="2")
    assert get_user_settings(user["id"])["autosave_interval"] == 10
    _post(auth_client, autosave_interval="301")
    assert get_user_settings(user["id"])["autosave_interval"] == 10
    rv = auth_client.get("/settings")
    assert "Autosave interval must be".encode() in rv.data


def test_unknown_theme_is_ignored(auth_client, user):
    _post(auth_client, theme="neon")
    assert get_user_settings(user["id"])["theme"] == "system"


def test_shortcut_script_follows_setting(auth_client):
    assert b"inkwellShortcuts" in auth_client.get("/dashboard").data
    _post(auth_client, shortcuts_enabled=None)
    assert b"inkwellShortcuts" not in auth_client.get("/dashboard").data
    assert b"navigate_down" not in auth_client.get("/dashboard").data
