"""
tests/test_errors.py
"""
from __future__ import annotations

from conftest import CSRF
from inkwell.journal import app


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"Inkwell" in resp.data


def test_api_404_is_json(auth_client):
    resp = auth_client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Not found"}


def test_api_405_is_json(auth_client):
    resp = auth_client.patch("/api/entries", headers={"X-CSRFToken": CSRF})
    assert resp.status_code == 405
    assert resp.get_json()["error"] == "Method PATCH not allowed"
    assert "GET" in resp.headers["Allow"]


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_500_under_api_is_json(auth_client, monkeypatch):
    def _boom(entry_id):
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "api_entry", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = auth_client.get("/api/entries/1")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}


def test_security_headers(client):
    resp = client.get("/")
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
