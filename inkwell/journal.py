#!/usr/bin/env python3
"""
A single-file personal journal.
"""

import asyncio
import io
import math
import os
import re
import secrets
import sqlite3
import zipfile
from collections import defaultdict, deque
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlencode, urlparse

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    make_response,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

from inkwell.autosave import DEFAULT_DELAY_MS, AutosaveCoordinator
from inkwell.shortcuts import shortcut_groups, shortcut_table

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKWELL_DATABASE", str(ROOT / "journal.sqlite3")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("INKWELL_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if "INKWELL_SECRET_KEY" not in os.environ and not SECRET_FILE.exists():
    SECRET_FILE.write_text(SECRET_KEY)
oauth_state = URLSafeTimedSerializer(SECRET_KEY, salt="oauth-state")
OAUTH_STATE_MAX_AGE = 600  # seconds the provider round-trip may take
OAUTH_TIMEOUT = 10

SITE_NAME = os.environ.get("INKWELL_SITE_NAME", "Inkwell")
PAGE_DEFAULT = 50
PAGE_MAX = 100
WORDS_PER_MINUTE = 200
TITLE_MAX = 50
PREVIEW_MAX = 100
NAME_MAX = 50
PASSWORD_MIN = 8
MOOD_MIN, MOOD_MAX = 1, 10
AUTOSAVE_DEFAULT = int(
    os.environ.get("INKWELL_AUTOSAVE_DEFAULT", str(DEFAULT_DELAY_MS // 1000))
)
AUTOSAVE_MIN, AUTOSAVE_MAX = 5, 300
THEMES = ("light", "dark", "system")
RECENT_COUNT = 5

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HTML_TAG_RE = re.compile(r"<[^>]*>")
WORDISH_RE = re.compile(r"\w")
EXPORT_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9\s-]")
_SAFE_TOKEN_RE = re.compile(r"^\w+$", re.UNICODE)

# (lower bound, name, colour) – first match wins
MOOD_BANDS = (
    (8, "good", "#6fbf73"),
    (6, "fair", "#e3c94f"),
    (4, "low", "#e39a4f"),
    (MOOD_MIN, "poor", "#d9534f"),
)

OAUTH_PROVIDERS = {
    "google": {
        "label": "Google",
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
}

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # still sent on the OAuth redirect back
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("INKWELL_INSECURE_COOKIES", "0") != "1",
    PERMANENT_SESSION_LIFETIME=timedelta(days=30),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
    "pymdownx.tasklist",
]


def render_markdown_html(text: str | None) -> str:
    return markdown.markdown(text or "", extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime("%Y.%m.%d %H:%M")


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            name           TEXT NOT NULL,
            email          TEXT UNIQUE NOT NULL,      -- always lower-cased
            password_hash  TEXT,                      -- NULL → OAuth-only
            created_at     TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS oauth_account (
            id                   INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id              INTEGER NOT NULL,
            provider             TEXT NOT NULL,
            provider_account_id  TEXT NOT NULL,
            created_at           TEXT NOT NULL,
            UNIQUE (provider, provider_account_id),
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 2.  Per-user settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id                  INTEGER PRIMARY KEY,
            autosave_interval        INTEGER NOT NULL DEFAULT 10,   -- seconds
            theme                    TEXT    NOT NULL DEFAULT 'system',
            shortcuts_enabled        INTEGER NOT NULL DEFAULT 1,
            export_include_metadata  INTEGER NOT NULL DEFAULT 1,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 3.  Entries
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS entry (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id       INTEGER NOT NULL,
            title         TEXT NOT NULL,
            content       TEXT NOT NULL,             -- Markdown
            word_count    INTEGER NOT NULL DEFAULT 0,
            reading_time  INTEGER NOT NULL DEFAULT 0, -- minutes
            mood          INTEGER,                    -- 1–10
            is_private    INTEGER NOT NULL DEFAULT 1,
            is_favorite   INTEGER NOT NULL DEFAULT 0,
            is_archived   INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES user(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_entry_owner
            ON entry(user_id, is_archived, is_favorite, updated_at);

        ------------------------------------------------------------
        -- 4.  Full-text search
        ------------------------------------------------------------
        CREATE VIRTUAL TABLE IF NOT EXISTS entry_fts USING fts5(
            title, content,
            content='entry',
            content_rowid='id',
            tokenize = 'trigram'
        );

        CREATE TRIGGER IF NOT EXISTS entry_ai AFTER INSERT ON entry BEGIN
            INSERT INTO entry_fts(rowid, title, content)
                VALUES (new.id, new.title, new.content);
        END;

        CREATE TRIGGER IF NOT EXISTS entry_au AFTER UPDATE ON entry BEGIN
            INSERT INTO entry_fts(entry_fts, rowid, title, content)
                VALUES ('delete', old.id, old.title, old.content);
            INSERT INTO entry_fts(rowid, title, content)
                VALUES (new.id, new.title, new.content);
        END;

        CREATE TRIGGER IF NOT EXISTS entry_ad AFTER DELETE ON entry BEGIN
            INSERT INTO entry_fts(entry_fts, rowid, title, content)
                VALUES ('delete', old.id, old.title, old.content);
        END;
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")


###############################################################################
# Content helpers
###############################################################################
class ValidationError(ValueError):
    """User-supplied data was rejected; ``messages`` lists every reason."""

    def __init__(self, *messages: str):
        super().__init__("; ".join(messages))
        self.messages = list(messages)


class EntryError(ValidationError):
    pass


class RegistrationError(ValidationError):
    pass


def strip_markup(text: str | None) -> str:
    """Drop HTML tags; Markdown punctuation is left for the word filter."""
    if not text:
        return ""
    return HTML_TAG_RE.sub("", text).strip()


def word_count(text: str | None) -> int:
    """Whitespace-separated tokens that contain at least one word character."""
    return sum(1 for tok in strip_markup(text).split() if WORDISH_RE.search(tok))


def reading_time(words: int) -> int:
    return math.ceil(words / WORDS_PER_MINUTE)


def derive_title(content: str | None) -> str:
    """First non-empty line (heading marks removed), capped at TITLE_MAX."""
    for ln in strip_markup(content).splitlines():
        ln = ln.strip().lstrip("#").strip()
        if ln:
            return (ln[:TITLE_MAX] + "...") if len(ln) > TITLE_MAX else ln
    return "Untitled Entry"


def entry_preview(content: str | None, max_len: int = PREVIEW_MAX) -> str:
    clean = re.sub(r"\s+", " ", strip_markup(content))
    return (clean[:max_len] + "...") if len(clean) > max_len else clean


def parse_mood(raw) -> int | None:
    """'' / None → no mood; otherwise a whole number in MOOD_MIN..MOOD_MAX."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    msg = f"Mood must be a whole number from {MOOD_MIN} to {MOOD_MAX}"
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise EntryError(msg)
    try:
        mood = int(raw)
    except (TypeError, ValueError):
        raise EntryError(msg) from None
    if not MOOD_MIN <= mood <= MOOD_MAX:
        raise EntryError(msg)
    return mood


def mood_band(score: float | None) -> dict | None:
    if score is None:
        return None
    for floor, name, colour in MOOD_BANDS:
        if score >= floor:
            return {"name": name, "color": colour}
    return {"name": MOOD_BANDS[-1][1], "color": MOOD_BANDS[-1][2]}


###############################################################################
# Users & settings
###############################################################################
SETTINGS_DEFAULTS = {
    "autosave_interval": AUTOSAVE_DEFAULT,
    "theme": "system",
    "shortcuts_enabled": True,
    "export_include_metadata": True,
}


def validate_registration(name: str, email: str, password: str) -> tuple[str, str, str]:
    """Return the cleaned (name, email, password) or raise RegistrationError."""
    errors = []
    name = (name or "").strip()
    email = (email or "").strip().lower()
    password = password or ""

    if not name:
        errors.append("Name is required")
    elif len(name) > NAME_MAX:
        errors.append("Name too long")
    if not EMAIL_RE.fullmatch(email):
        errors.append("Invalid email address")
    if len(password) < PASSWORD_MIN:
        errors.append(f"Password must be at least {PASSWORD_MIN} characters")
    elif not (
        re.search(r"[a-z]", password)
        and re.search(r"[A-Z]", password)
        and re.search(r"\d", password)
    ):
        errors.append(
            "Password must contain at least one lowercase letter, "
            "one uppercase letter, and one number"
        )

    if errors:
        raise RegistrationError(*errors)
    return name, email, password


def create_user(*, name: str, email: str, password: str | None = None, db) -> int:
    """Insert the account *and* its default settings row."""
    cur = db.execute(
        "INSERT INTO user (name, email, password_hash, created_at) VALUES (?,?,?,?)",
        (
            name,
            email.strip().lower(),
            generate_password_hash(password) if password else None,
            _iso(utc_now()),
        ),
    )
    user_id = cur.lastrowid
    db.execute(
        "INSERT OR IGNORE INTO user_settings (user_id, autosave_interval) VALUES (?,?)",
        (user_id, AUTOSAVE_DEFAULT),
    )
    db.commit()
    return user_id


def register_user(name: str, email: str, password: str, *, db) -> int:
    name, email, password = validate_registration(name, email, password)
    if find_user_by_email(email, db=db):
        raise RegistrationError("User already exists with this email")
    try:
        return create_user(name=name, email=email, password=password, db=db)
    except sqlite3.IntegrityError:
        # lost a race against a parallel sign-up
        raise RegistrationError("User already exists with this email") from None


def find_user_by_email(email: str | None, *, db):
    return db.execute(
        "SELECT * FROM user WHERE email=?", ((email or "").strip().lower(),)
    ).fetchone()


def authenticate(email: str, password: str, *, db):
    row = find_user_by_email(email, db=db)
    if row is None or not row["password_hash"]:
        return None
    return row if check_password_hash(row["password_hash"], password or "") else None


def current_user():
    """The signed-in user row, or None."""
    user_id = session.get("user_id")
    if not user_id:
        return None
    return get_db().execute("SELECT * FROM user WHERE id=?", (user_id,)).fetchone()


def get_user_settings(user_id: int, *, db=None) -> dict:
    db = db or get_db()
    prefs = dict(SETTINGS_DEFAULTS)
    row = db.execute(
        "SELECT * FROM user_settings WHERE user_id=?", (user_id,)
    ).fetchone()
    if row:
        prefs.update(
            autosave_interval=row["autosave_interval"],
            theme=row["theme"] if row["theme"] in THEMES else "system",
            shortcuts_enabled=bool(row["shortcuts_enabled"]),
            export_include_metadata=bool(row["export_include_metadata"]),
        )
    return prefs


def set_user_settings(user_id: int, prefs: dict, *, db) -> None:
    db.execute(
        """
        INSERT INTO user_settings
               (user_id, autosave_interval, theme,
                shortcuts_enabled, export_include_metadata)
        VALUES (?,?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
               autosave_interval       = excluded.autosave_interval,
               theme                   = excluded.theme,
               shortcuts_enabled       = excluded.shortcuts_enabled,
               export_include_metadata = excluded.export_include_metadata
        """,
        (
            user_id,
            int(prefs["autosave_interval"]),
            prefs["theme"],
            1 if prefs["shortcuts_enabled"] else 0,
            1 if prefs["export_include_metadata"] else 0,
        ),
    )
    db.commit()


def user_prefs() -> dict:
    """Settings of whoever is signed in (defaults for visitors)."""
    user = current_user()
    return get_user_settings(user["id"]) if user else dict(SETTINGS_DEFAULTS)


###############################################################################
# Entry store
###############################################################################
ENTRY_COLUMNS = (
    "id, user_id, title, content, word_count, reading_time, mood, "
    "is_private, is_favorite, is_archived, created_at, updated_at"
)


def _content_fields(content: str) -> dict:
    words = word_count(content)
    return {"content": content, "word_count": words, "reading_time": reading_time(words)}


def get_entry(owner_id: int, entry_id: int, *, db):
    """Owner-scoped lookup; archived entries are returned too."""
    return db.execute(
        f"SELECT {ENTRY_COLUMNS} FROM entry WHERE id=? AND user_id=?",
        (entry_id, owner_id),
    ).fetchone()


def list_entries(owner_id: int, *, db, limit: int = PAGE_DEFAULT, cursor: int | None = None):
    """
    Live entries, favourites first, then most recently updated.

    *cursor* is the id of the last row of the previous page; the next page
    starts right after it in the same ordering.  Returns (rows, next_cursor).
    """
    where = "user_id=? AND is_archived=0"
    params: list = [owner_id]
    if cursor is not None:
        anchor = db.execute(
            "SELECT id, is_favorite, updated_at FROM entry WHERE id=? AND user_id=?",
            (cursor, owner_id),
        ).fetchone()
        if anchor is None:
            raise EntryError("Unknown cursor")
        where += (
            " AND (is_favorite < ?"
            "      OR (is_favorite = ? AND (updated_at < ?"
            "          OR (updated_at = ? AND id < ?))))"
        )
        params += [
            anchor["is_favorite"],
            anchor["is_favorite"],
            anchor["updated_at"],
            anchor["updated_at"],
            anchor["id"],
        ]

    rows = db.execute(
        f"""SELECT {ENTRY_COLUMNS} FROM entry
             WHERE {where}
          ORDER BY is_favorite DESC, updated_at DESC, id DESC
             LIMIT ?""",
        (*params, limit),
    ).fetchall()
    next_cursor = rows[-1]["id"] if rows and len(rows) == limit else None
    return rows, next_cursor


def create_entry(owner_id: int, fields: dict, *, db):
    content = fields.get("content") or ""
    if not content.strip():
        raise EntryError("Content is required")

    now = _iso(utc_now())
    title = (fields.get("title") or "").strip() or derive_title(content)
    derived = _content_fields(content)
    cur = db.execute(
        """INSERT INTO entry
                  (user_id, title, content, word_count, reading_time, mood,
                   is_private, is_favorite, created_at, updated_at)
           VALUES (?,?,?,?,?,?,?,?,?,?)""",
        (
            owner_id,
            title,
            content,
            derived["word_count"],
            derived["reading_time"],
            parse_mood(fields.get("mood")),
            1 if fields.get("is_private") is None or fields["is_private"] else 0,
            1 if fields.get("is_favorite") else 0,
            now,
            now,
        ),
    )
    db.commit()
    return get_entry(owner_id, cur.lastrowid, db=db)


def update_entry(owner_id: int, entry_id: int, fields: dict, *, db):
    """
    Partial update.  Content is a whole-document overwrite (the last write
    wins).  Returns the fresh row, or None if the owner has no such entry.
    """
    row = get_entry(owner_id, entry_id, db=db)
    if row is None:
        return None

    changes: dict = {}
    content = fields.get("content")
    if content is not None:
        if not content.strip():
            raise EntryError("Content is required")
        changes.update(_content_fields(content))
    if fields.get("title") is not None:
        changes["title"] = fields["title"].strip() or derive_title(
            content if content is not None else row["content"]
        )
    if "mood" in fields:
        changes["mood"] = parse_mood(fields["mood"])
    for flag in ("is_private", "is_favorite"):
        if fields.get(flag) is not None:
            changes[flag] = 1 if fields[flag] else 0
    changes["updated_at"] = _iso(utc_now())

    set_clause = ", ".join(f"{k}=?" for k in changes)
    db.execute(
        f"UPDATE entry SET {set_clause} WHERE id=? AND user_id=?",
        (*changes.values(), entry_id, owner_id),
    )
    db.commit()
    return get_entry(owner_id, entry_id, db=db)


def archive_entry(owner_id: int, entry_id: int, *, db) -> bool:
    """Soft delete.  False if the owner has no such entry."""
    cur = db.execute(
        "UPDATE entry SET is_archived=1, updated_at=? WHERE id=? AND user_id=?",
        (_iso(utc_now()), entry_id, owner_id),
    )
    db.commit()
    return cur.rowcount > 0


def entry_json(row, *, preview: bool = False) -> dict:
    data = {
        "id": row["id"],
        "title": row["title"],
        "content": row["content"],
        "wordCount": row["word_count"],
        "readingTime": row["reading_time"],
        "mood": row["mood"],
        "isPrivate": bool(row["is_private"]),
        "isFavorite": bool(row["is_favorite"]),
        "isArchived": bool(row["is_archived"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if preview:
        data["preview"] = entry_preview(row["content"])
    return data


API_FIELDS = {
    "title": "title",
    "content": "content",
    "mood": "mood",
    "isPrivate": "is_private",
    "isFavorite": "is_favorite",
}


def _fields_from_json(payload) -> dict:
    if not isinstance(payload, dict):
        raise EntryError("Expected a JSON object")
    fields = {dst: payload[src] for src, dst in API_FIELDS.items() if src in payload}
    for key in ("title", "content"):
        if fields.get(key) is not None and not isinstance(fields[key], str):
            raise EntryError(f"{key.capitalize()} must be a string")
    return fields


def _fields_from_form(form) -> dict:
    return {
        "title": form.get("title", ""),
        "content": form.get("content", ""),
        "mood": form.get("mood", ""),
        "is_private": "is_private" in form,
        "is_favorite": "is_favorite" in form,
    }


###############################################################################
# CLI – database + accounts
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database tables (safe to run again)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("create-user")
@click.option("--name", prompt=True, help="Display name")
@click.option("--email", prompt=True, help="Sign-in email")
@click.password_option()
def cli_create_user(name: str, email: str, password: str):
    """Create an email + password account."""
    init_db()
    try:
        user_id = register_user(name, email, password, db=get_db())
    except RegistrationError as exc:
        raise click.ClickException("; ".join(exc.messages)) from exc
    click.secho(f"\n✅  User #{user_id} created.", fg="green")
    click.echo("Sign in at /login.")


###############################################################################
# Templates + Views
###############################################################################
def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    user_prefs=user_prefs,
    preview=entry_preview,
    mood_band=mood_band,
    shortcut_table=shortcut_table,
    site_name=SITE_NAME,
    version=__version__,
)


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en" data-theme="{{ user_prefs()['theme'] }}">
<title>{{ title or site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
<meta name="description" content="Inkwell – a private journal">
<style>
:root{--bg:#222222;--fg:#c9c9c9;--strong:#ffffff;--muted:#888888;--panel:#2b2b2b;--border:#4a4a4a;--accent:#95bbec}
[data-theme=light]{--bg:#fafafa;--fg:#333333;--strong:#000000;--muted:#777777;--panel:#ffffff;--border:#dddddd;--accent:#3b6fb6}
@media (prefers-color-scheme:light){[data-theme=system]{--bg:#fafafa;--fg:#333333;--strong:#000000;--muted:#777777;--panel:#ffffff;--border:#dddddd;--accent:#3b6fb6}}
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,"Noto Sans",sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:var(--fg);background-color:var(--bg);padding:13px}
h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}
p{margin-top:0;margin-bottom:2.5rem}
a{color:var(--strong);text-decoration:underline;text-decoration-color:transparent;text-decoration-thickness:2px;text-underline-offset:.18em}
a:hover,a:focus-visible{color:var(--fg);text-decoration-color:var(--fg)}
blockquote{margin:0 0 2.5rem;padding:.8em 1em;border-left:5px solid var(--strong);background-color:var(--border)}
pre{background-color:var(--border);padding:1em;overflow-x:auto;font-size:.9em}
code{font-size:.9em;padding:0 .5em;background-color:var(--border)}
pre>code{padding:0;background-color:transparent}
textarea,select,input{color:var(--fg);padding:6px 10px;margin-bottom:10px;background-color:var(--panel);border:1px solid var(--border);border-radius:4px;box-sizing:border-box}
textarea:focus,select:focus,input:focus{border:1px solid var(--accent);outline:0}
label{display:block;margin-bottom:.5rem;font-weight:600}
button,.button{display:inline-block;padding:5px 10px;text-decoration:none;background-color:var(--strong);color:var(--bg);border-radius:1px;border:1px solid var(--strong);cursor:pointer}
button:hover,.button:hover{background-color:var(--fg);color:var(--bg)}
.skip-link{position:absolute;left:-999px}
.skip-link:focus{left:1.5rem;top:1.5rem;padding:.5rem .85rem;background:#fff;color:#000}
.nav-primary{margin-bottom:1rem;display:flex;flex-wrap:wrap;justify-content:space-between;gap:.5rem 1.25rem;font-size:.9em}
.nav-row{display:flex;align-items:center;gap:1.25rem;flex-wrap:wrap}
nav a[aria-current=page]{color:var(--accent);text-decoration-color:currentColor}
.nav-search form{margin:0}
.nav-search input{width:13rem;margin:0;font-size:.8em;padding:.25em .6em}
.writing-area{font-size:1.05em;line-height:1.6;padding:12px 14px;width:100%;min-height:16rem;border-radius:8px;resize:vertical;caret-color:var(--accent)}
.writing-input{font-size:1.02em;padding:10px 12px;width:100%;border-radius:8px}
.card{background:var(--panel);border:1px solid var(--border);border-radius:6px;padding:1rem}
.cards{display:grid;grid-template-columns:repeat(auto-fill,minmax(14rem,1fr));gap:1rem;margin-bottom:2rem}
.card .value{font-size:1.6em;font-weight:700;color:var(--strong)}
.card .label{font-size:.75em;color:var(--muted)}
.pill{display:inline-block;padding:.05em .6em;border-radius:1em;font-size:.7em;color:#000;vertical-align:middle}
.meta{font-size:.75em;color:var(--muted)}
.entry-row{padding:.75rem 0;border-bottom:1px solid var(--border)}
.save-status{font-size:.75em;color:var(--muted);min-width:6em;display:inline-block}
.save-status[data-status=saving]{color:var(--accent)}
.save-status[data-status=saved]{color:#6fbf73}
.save-status[data-status=error]{color:#d9534f}
.toast{position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9rem;line-height:1.3;box-shadow:0 2px 6px rgba(0,0,0,.4);max-width:24rem;z-index:999}
.mood-chart{display:flex;align-items:flex-end;gap:.5rem;height:10rem;margin:1rem 0 .25rem}
.mood-bar{flex:1;border-radius:3px 3px 0 0;background:var(--border);min-height:2px}
.mood-days{display:flex;gap:.5rem;font-size:.65em;color:var(--muted)}
.mood-days span{flex:1;text-align:center}
mark{background:transparent;color:var(--accent);border-bottom:2px solid var(--accent)}
</style>
<body>
<a class="skip-link" href="#main-content">Skip to main content</a>
<div class="container" style="max-width:60rem;margin:3rem auto;">
    <div style="margin-bottom:1rem;font-size:1.9rem;line-height:1.2;">
        <h1 id="page-top" style="display:inline;margin:0;line-height:1;font-size:2.25em">
            <a href="{{ url_for('index') }}" style="color:var(--accent);text-decoration:none;">{{ site_name }}</a>
        </h1>
    </div>
    <nav aria-label="Primary" class="nav-primary">
        {% set me = current_user() %}
        <div class="nav-row">
        {% if me %}
            <a href="{{ url_for('dashboard') }}"
            {% if request.endpoint=='dashboard' %}aria-current="page"{% endif %}>Dashboard</a>
            <a href="{{ url_for('entries') }}"
            {% if request.endpoint=='entries' %}aria-current="page"{% endif %}>Entries</a>
            <a href="{{ url_for('write') }}"
            {% if request.endpoint=='write' %}aria-current="page"{% endif %}>Write</a>
            <a href="{{ url_for('settings') }}"
            {% if request.endpoint=='settings' %}aria-current="page"{% endif %}>Settings</a>
            <a href="{{ url_for('logout') }}">Logout</a>
        {% else %}
            <a href="{{ url_for('login') }}"
            {% if request.endpoint=='login' %}aria-current="page"{% endif %}>Login</a>
            <a href="{{ url_for('signup') }}"
            {% if request.endpoint=='signup' %}aria-current="page"{% endif %}>Sign up</a>
        {% endif %}
        </div>
        {% if me %}
        <div class="nav-row nav-search">
            <form action="{{ url_for('search') }}" method="get">
                <input type="search" name="q" aria-label="Search entries"
                       placeholder="Search" value="{{ request.args.get('q','') }}">
            </form>
        </div>
        {% endif %}
    </nav>
    {% with msgs = get_flashed_messages() %}
    {% if msgs %}
        <div class="toast" role="status" aria-live="polite" aria-atomic="true">
        {% for m in msgs %}{{ m }}{% if not loop.last %}<br>{% endif %}{% endfor %}
        </div>
    {% endif %}
    {% endwith %}
    <main id="main-content" role="main" tabindex="-1">
"""

TEMPL_EPILOG = """
    </main>
    <footer id="page-bottom" style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:var(--muted);display:flex;justify-content:space-between;border-top:1px solid var(--border);">
        <span>{{ site_name }} <span>v{{ version }}</span></span>
        <nav aria-label="Footer">
            <a href="{{ url_for('shortcuts_help') }}"
            {% if request.endpoint == 'shortcuts_help' %}aria-current="page"{% endif %}>Shortcuts</a>
        </nav>
    </footer>
    <script>
    window.inkwellToast = (msg) => {
        const el = document.createElement('div');
        el.className = 'toast';
        el.setAttribute('role', 'status');
        el.textContent = msg;
        document.body.appendChild(el);
        setTimeout(() => el.remove(), 4000);
    };
    </script>
    {% if current_user() and user_prefs()['shortcuts_enabled'] %}
    <script>
    (() => {
        const table = {{ shortcut_table()|tojson }};
        const arrows = {ArrowUp: 'navigate_up', ArrowDown: 'navigate_down'};
        const handlers = window.inkwellShortcuts = window.inkwellShortcuts || {};

        const move = (step) => {
            const links = Array.from(document.querySelectorAll('a.entry-link'));
            if (!links.length) return;
            const i = links.indexOf(document.activeElement);
            const j = i < 0 ? 0 : Math.min(links.length - 1, Math.max(0, i + step));
            links[j].focus();
        };
        const defaults = {
            new_entry: () => { location.href = "{{ url_for('write') }}"; },
            focus_search: () => document.querySelector('.nav-search input')?.focus(),
            show_help: () => { location.href = "{{ url_for('shortcuts_help') }}"; },
            escape: () => document.activeElement?.blur(),
            navigate_up: () => move(-1),
            navigate_down: () => move(1),
        };

        // same rules as inkwell.shortcuts.resolve
        const resolve = (ev) => {
            const t = ev.target;
            const tag = (t.tagName || '').toLowerCase();
            if (tag === 'input' || tag === 'textarea' || t.isContentEditable) {
                if (ev.key === 'Escape') return 'escape';
                const type = (t.getAttribute('type') || 'text').toLowerCase();
                const search = tag === 'input'
                    && (type === 'text' || type === 'search')
                    && (t.getAttribute('placeholder') || '').toLowerCase().includes('search');
                return search ? (arrows[ev.key] || null) : null;
            }
            const ctrl = ev.ctrlKey || ev.metaKey;
            const hit = (ctrl && table.find(s => s.ctrl && s.key === ev.key))
                || table.find(s => !s.ctrl && s.key === ev.key);
            return hit ? hit.action : null;
        };

        document.addEventListener('keydown', (ev) => {
            const action = resolve(ev);
            const fn = action && (handlers[action] || defaults[action]);
            if (!fn) return;
            if (action !== 'escape') ev.preventDefault();
            fn();
        });
    })();
    </script>
    {% endif %}
</div> <!-- container -->
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def login_required() -> None:
    if current_user() is not None:
        return
    if request.path.startswith("/api/"):
        abort(make_response(jsonify(error="Unauthorized"), 401))
    abort(redirect(url_for("login", next=request.path)))


def rate_limit(max_requests: int, window: int = 60):
    """Per-IP sliding window over the *unsafe* requests of one view."""
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method in SAFE_METHODS:
                return view(*args, **kwargs)

            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _start_session(user_id: int) -> None:
    session.clear()
    session.permanent = True
    session["user_id"] = user_id
    session["csrf"] = secrets.token_hex(16)


def _safe_next(target: str | None) -> str:
    """Only same-site paths are honoured as post-login destinations."""
    target = (target or "").strip()
    parts = urlparse(target)
    if target.startswith("/") and not target.startswith("//") and not parts.netloc:
        return target
    return url_for("dashboard")


@app.before_request
def csrf_protect():
    # reads never change state
    if request.method in SAFE_METHODS:
        return

    # visitors (sign-in, sign-up, OAuth callback, JSON registration)
    if not session.get("user_id"):
        return

    # a signed-in session must echo its token back
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    nxt = request.values.get("next", "")
    if request.method == "POST":
        user = authenticate(
            request.form.get("email", ""), request.form.get("password", ""), db=get_db()
        )
        if user is not None:
            _start_session(user["id"])
            return redirect(_safe_next(nxt))
        flash("Invalid email or password.")

    return render_template_string(
        TEMPL_LOGIN,
        title=f"Sign in · {SITE_NAME}",
        next=nxt,
        email=request.form.get("email", ""),
        providers=configured_providers(),
    )


TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
<h2>Sign in</h2>
<form method="post">
    <input type="hidden" name="next" value="{{ next }}">
    <label for="email">Email</label>
    <input id="email" name="email" type="email" autocomplete="email"
           value="{{ email }}" class="writing-input" required>
    <label for="password">Password</label>
    <input id="password" name="password" type="password"
           autocomplete="current-password" class="writing-input" required>
    <button type="submit" style="margin-top:.5rem;">Sign in</button>
</form>
{% if providers %}
<div style="margin-top:1.5rem;display:flex;gap:.6rem;flex-wrap:wrap;">
    {% for p in providers %}
    <a class="button" href="{{ url_for('oauth_start', provider=p.name, next=next) }}">
        Continue with {{ p.label }}</a>
    {% endfor %}
</div>
{% endif %}
<p style="margin-top:1.5rem;font-size:.85em;">
    No account yet? <a href="{{ url_for('signup') }}">Create one</a>.
</p>
{% endblock %}
""")


@app.route("/signup", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def signup():
    if request.method == "POST":
        try:
            user_id = register_user(
                request.form.get("name", ""),
                request.form.get("email", ""),
                request.form.get("password", ""),
                db=get_db(),
            )
        except RegistrationError as exc:
            for msg in exc.messages:
                flash(msg)
        else:
            _start_session(user_id)
            flash("Welcome! Your journal is ready.")
            return redirect(url_for("dashboard"))

    return render_template_string(
        TEMPL_SIGNUP,
        title=f"Sign up · {SITE_NAME}",
        name=request.form.get("name", ""),
        email=request.form.get("email", ""),
        providers=configured_providers(),
    )


TEMPL_SIGNUP = wrap("""
{% block body %}
<hr>
<h2>Create your journal</h2>
<form method="post">
    <label for="name">Name</label>
    <input id="name" name="name" maxlength="50" value="{{ name }}" class="writing-input" required>
    <label for="email">Email</label>
    <input id="email" name="email" type="email" value="{{ email }}" class="writing-input" required>
    <label for="password">Password</label>
    <input id="password" name="password" type="password" autocomplete="new-password"
           class="writing-input" required>
    <small class="meta">At least 8 characters, with upper- and lowercase letters and a number.</small>
    <div><button type="submit" style="margin-top:1rem;">Sign up</button></div>
</form>
{% if providers %}
<div style="margin-top:1.5rem;display:flex;gap:.6rem;flex-wrap:wrap;">
    {% for p in providers %}
    <a class="button" href="{{ url_for('oauth_start', provider=p.name) }}">Continue with {{ p.label }}</a>
    {% endfor %}
</div>
{% endif %}
{% endblock %}
""")


@app.route("/api/auth/register", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def api_register():
    payload = request.get_json(silent=True) or {}
    db = get_db()
    try:
        user_id = register_user(
            payload.get("name", ""),
            payload.get("email", ""),
            payload.get("password", ""),
            db=db,
        )
    except RegistrationError as exc:
        return jsonify(message="Validation error", errors=exc.messages), 400

    row = db.execute(
        "SELECT id, name, email, created_at FROM user WHERE id=?", (user_id,)
    ).fetchone()
    return (
        jsonify(
            message="User created successfully",
            user={
                "id": row["id"],
                "name": row["name"],
                "email": row["email"],
                "createdAt": row["created_at"],
            },
        ),
        201,
    )


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


# ──── OAuth (authorization-code flow) ───────────────────────────
def oauth_config(provider: str) -> dict | None:
    """Provider endpoints + credentials, or None when not configured."""
    endpoints = OAUTH_PROVIDERS.get(provider)
    if endpoints is None:
        return None
    prefix = f"INKWELL_OAUTH_{provider.upper()}_"
    client_id = os.environ.get(prefix + "CLIENT_ID", "").strip()
    client_secret = os.environ.get(prefix + "CLIENT_SECRET", "").strip()
    if not (client_id and client_secret):
        return None
    return {**endpoints, "client_id": client_id, "client_secret": client_secret}


def configured_providers() -> list[dict]:
    return [
        {"name": name, "label": endpoints["label"]}
        for name, endpoints in OAUTH_PROVIDERS.items()
        if oauth_config(name)
    ]


def fetch_oauth_profile(cfg: dict, code: str, redirect_uri: str) -> dict:
    """Swap *code* for a token, then read the provider's userinfo."""
    tok = requests.post(
        cfg["token_url"],
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": cfg["client_id"],
            "client_secret": cfg["client_secret"],
        },
        headers={"Accept": "application/json"},
        timeout=OAUTH_TIMEOUT,
    )
    tok.raise_for_status()
    access_token = tok.json()["access_token"]

    info = requests.get(
        cfg["userinfo_url"],
        headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        timeout=OAUTH_TIMEOUT,
    )
    info.raise_for_status()
    data = info.json()
    return {
        "id": str(data["sub"]),
        "email": (data.get("email") or "").strip().lower(),
        "email_verified": bool(data.get("email_verified")),
        "name": (data.get("name") or "").strip(),
    }


def link_oauth_account(provider: str, profile: dict, *, db) -> int:
    """
    Resolve a provider identity to a local user id:
    known link → verified email match → brand-new account.
    """
    row = db.execute(
        "SELECT user_id FROM oauth_account WHERE provider=? AND provider_account_id=?",
        (provider, profile["id"]),
    ).fetchone()
    if row:
        return row["user_id"]

    email = profile["email"]
    if not EMAIL_RE.fullmatch(email):
        raise RegistrationError("The provider did not share an email address.")

    user = find_user_by_email(email, db=db)
    if user is not None:
        if not profile["email_verified"]:
            raise RegistrationError(
                "This email already has an account – sign in with your password."
            )
        user_id = user["id"]
    else:
        name = (profile["name"] or email.split("@", 1)[0])[:NAME_MAX]
        user_id = create_user(name=name, email=email, db=db)

    db.execute(
        """INSERT INTO oauth_account (user_id, provider, provider_account_id, created_at)
           VALUES (?,?,?,?)""",
        (user_id, provider, profile["id"], _iso(utc_now())),
    )
    db.commit()
    return user_id


@app.route("/login/oauth/<provider>")
def oauth_start(provider):
    cfg = oauth_config(provider)
    if cfg is None:
        abort(404)

    nonce = secrets.token_urlsafe(16)
    session["oauth_nonce"] = nonce
    state = oauth_state.dumps(
        {
            "provider": provider,
            "nonce": nonce,
            "next": _safe_next(request.args.get("next", "")),
        }
    )
    params = {
        "client_id": cfg["client_id"],
        "redirect_uri": url_for("oauth_callback", provider=provider, _external=True),
        "response_type": "code",
        "scope": cfg["scope"],
        "state": state,
    }
    return redirect(f"{cfg['authorize_url']}?{urlencode(params)}")


@app.route("/login/oauth/<provider>/callback")
def oauth_callback(provider):
    cfg = oauth_config(provider)
    if cfg is None:
        abort(404)

    def fail(msg: str):
        flash(msg)
        return redirect(url_for("login"))

    if request.args.get("error"):
        app.logger.warning(
            "OAuth provider %s returned error=%s", provider, request.args["error"]
        )
        return fail("Sign-in was cancelled or denied.")

    try:
        state = oauth_state.loads(
            request.args.get("state", ""), max_age=OAUTH_STATE_MAX_AGE
        )
    except SignatureExpired:
        return fail("Sign-in took too long – please try again.")
    except BadSignature:
        return fail("Invalid sign-in request.")

    nonce = session.pop("oauth_nonce", None)
    if (
        state.get("provider") != provider
        or not nonce
        or not secrets.compare_digest(nonce, str(state.get("nonce", "")))
    ):
        return fail("Invalid sign-in request.")

    code = request.args.get("code", "")
    if not code:
        return fail("Invalid sign-in request.")

    redirect_uri = url_for("oauth_callback", provider=provider, _external=True)
    try:
        profile = fetch_oauth_profile(cfg, code, redirect_uri)
    except (requests.RequestException, KeyError, ValueError):
        app.logger.warning("OAuth exchange with %s failed", provider, exc_info=True)
        return fail(f"Could not sign in with {cfg['label']}.")

    try:
        user_id = link_oauth_account(provider, profile, db=get_db())
    except RegistrationError as exc:
        return fail(exc.messages[0])

    _start_session(user_id)
    return redirect(_safe_next(state.get("next")))


###############################################################################
# Landing + Dashboard
###############################################################################
@app.route("/")
def index():
    if current_user() is not None:
        return redirect(url_for("dashboard"))
    return render_template_string(TEMPL_LANDING, title=SITE_NAME)


TEMPL_LANDING = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">A quiet place to write.</h2>
<p>Write in Markdown, let the journal save while you think, track how you
   feel over time, and take everything with you whenever you like.</p>
<ul>
    <li>Autosave with a visible save status</li>
    <li>Full-text search across every entry</li>
    <li>Mood tracking and a writing streak</li>
    <li>Markdown, HTML and zip exports</li>
</ul>
<p>
    <a class="button" href="{{ url_for('signup') }}">Start journaling</a>
    <a href="{{ url_for('login') }}" style="margin-left:1rem;">Sign in</a>
</p>
{% endblock %}
""")


def writing_streak(days: set[date], *, today: date) -> int:
    """Consecutive days with an entry, ending today (or yesterday)."""
    day = today if today in days else today - timedelta(days=1)
    streak = 0
    while day in days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def recent_entries(owner_id: int, *, db, limit: int = RECENT_COUNT):
    """Most recently updated live entries; favourites get no head start here."""
    return db.execute(
        f"""SELECT {ENTRY_COLUMNS} FROM entry
             WHERE user_id=? AND is_archived=0
          ORDER BY updated_at DESC, id DESC
             LIMIT ?""",
        (owner_id, limit),
    ).fetchall()


def dashboard_stats(owner_id: int, *, db, today: date | None = None) -> dict:
    today = today or utc_now().date()
    agg = db.execute(
        """
        SELECT COUNT(*)                       AS n,
               COALESCE(SUM(word_count), 0)   AS words,
               COALESCE(SUM(reading_time), 0) AS minutes,
               AVG(mood)                      AS mood
          FROM entry
         WHERE user_id=? AND is_archived=0
        """,
        (owner_id,),
    ).fetchone()

    week_start = today - timedelta(days=6)
    this_week = db.execute(
        """SELECT COUNT(*) FROM entry
            WHERE user_id=? AND is_archived=0
              AND substr(created_at,1,10) BETWEEN ? AND ?""",
        (owner_id, week_start.isoformat(), today.isoformat()),
    ).fetchone()[0]

    days = {
        date.fromisoformat(r[0])
        for r in db.execute(
            """SELECT DISTINCT substr(created_at,1,10) FROM entry
                WHERE user_id=? AND is_archived=0""",
            (owner_id,),
        )
    }

    return {
        "total_entries": agg["n"],
        "total_words": agg["words"],
        "time_spent": agg["minutes"],
        "avg_mood": round(agg["mood"], 1) if agg["mood"] is not None else None,
        "this_week_entries": this_week,
        "current_streak": writing_streak(days, today=today),
    }


def mood_series(owner_id: int, *, db, days: int = 7, today: date | None = None) -> dict:
    """
    One point per day (oldest → newest) with the day's mean mood, plus
    min / max / avg over the days that have one.
    """
    today = today or utc_now().date()
    start = today - timedelta(days=days - 1)
    rows = db.execute(
        """
        SELECT substr(created_at,1,10) AS d, AVG(mood) AS mood
          FROM entry
         WHERE user_id=? AND is_archived=0 AND mood IS NOT NULL
           AND substr(created_at,1,10) BETWEEN ? AND ?
      GROUP BY d
        """,
        (owner_id, start.isoformat(), today.isoformat()),
    ).fetchall()
    by_day = {r["d"]: round(r["mood"], 1) for r in rows}

    points = []
    for i in range(days):
        d = (start + timedelta(days=i)).isoformat()
        score = by_day.get(d)
        points.append({"date": d, "mood": score, "band": mood_band(score)})

    known = [p["mood"] for p in points if p["mood"] is not None]
    return {
        "points": points,
        "min": min(known) if known else None,
        "max": max(known) if known else None,
        "avg": round(sum(known) / len(known), 1) if known else None,
    }


@app.route("/dashboard")
def dashboard():
    login_required()
    user = current_user()
    db = get_db()
    recent = recent_entries(user["id"], db=db)
    return render_template_string(
        TEMPL_DASHBOARD,
        title=f"Dashboard · {SITE_NAME}",
        user=user,
        stats=dashboard_stats(user["id"], db=db),
        moods=mood_series(user["id"], db=db),
        recent=recent,
    )


TEMPL_DASHBOARD = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">Hello, {{ user['name'] }}</h2>
<div class="cards">
    <div class="card"><div class="value">{{ stats.total_entries }}</div><div class="label">Total entries</div></div>
    <div class="card"><div class="value">{{ stats.current_streak }} days</div><div class="label">Current streak</div></div>
    <div class="card"><div class="value">{{ stats.this_week_entries }}</div><div class="label">This week</div></div>
    <div class="card"><div class="value">{{ '%.1f'|format(stats.avg_mood) if stats.avg_mood is not none else '–' }}</div><div class="label">Average mood (of 10)</div></div>
    <div class="card"><div class="value">{{ stats.total_words }}</div><div class="label">Words written</div></div>
    <div class="card"><div class="value">{{ (stats.time_spent / 60)|round|int }}h</div><div class="label">Reading time</div></div>
</div>

<h3>Mood, last 7 days</h3>
{% if moods.avg is not none %}
<div class="mood-chart" aria-label="Mood chart">
    {% for p in moods.points %}
    <div class="mood-bar" title="{{ p.date }}: {{ p.mood if p.mood is not none else 'no entry' }}"
         style="height:{{ ((p.mood or 0) * 10)|int }}%;{% if p.band %}background:{{ p.band.color }};{% endif %}"></div>
    {% endfor %}
</div>
<div class="mood-days">{% for p in moods.points %}<span>{{ p.date[5:] }}</span>{% endfor %}</div>
<p class="meta">low {{ moods.min }} · high {{ moods.max }} · average {{ moods.avg }}</p>
{% else %}
<p class="meta">No moods logged this week – add one when you write.</p>
{% endif %}

<h3>Recent entries</h3>
{% for e in recent %}
<div class="entry-row">
    <a class="entry-link" href="{{ url_for('entry_detail', entry_id=e['id']) }}">{{ e['title'] }}</a>
    <div class="meta">{{ e['updated_at']|ts }} · {{ e['word_count'] }} words</div>
</div>
{% else %}
<p>Nothing here yet. <a href="{{ url_for('write') }}">Write your first entry</a>.</p>
{% endfor %}
{% endblock %}
""")


###############################################################################
# Entries
###############################################################################
def _owned_entry_or_404(entry_id: int):
    row = get_entry(current_user()["id"], entry_id, db=get_db())
    if row is None or row["is_archived"]:
        abort(404)
    return row


@app.route("/entries")
def entries():
    login_required()
    user = current_user()
    cursor = request.args.get("cursor", type=int)
    try:
        rows, next_cursor = list_entries(
            user["id"], db=get_db(), limit=PAGE_DEFAULT, cursor=cursor
        )
    except EntryError:
        abort(404)
    return render_template_string(
        TEMPL_ENTRIES,
        title=f"Entries · {SITE_NAME}",
        entries=rows,
        next_cursor=next_cursor,
        cursor=cursor,
    )


TEMPL_ENTRIES = wrap("""
{% block body %}
<hr>
{% for e in entries %}
<div class="entry-row">
    <a class="entry-link" href="{{ url_for('entry_detail', entry_id=e['id']) }}">
        {% if e['is_favorite'] %}★ {% endif %}{{ e['title'] }}</a>
    {% if e['mood'] %}
        {% set band = mood_band(e['mood']) %}
        <span class="pill" style="background:{{ band.color }};">mood {{ e['mood'] }}</span>
    {% endif %}
    <div>{{ preview(e['content']) }}</div>
    <div class="meta">{{ e['updated_at']|ts }} · {{ e['word_count'] }} words</div>
</div>
{% else %}
<p>No entries yet. <a href="{{ url_for('write') }}">Start writing</a>.</p>
{% endfor %}
<nav style="margin-top:1rem;display:flex;justify-content:space-between;font-size:.85em;">
    {% if cursor %}<a href="{{ url_for('entries') }}">← Newest</a>{% else %}<span></span>{% endif %}
    {% if next_cursor %}<a href="{{ url_for('entries', cursor=next_cursor) }}">Older →</a>{% endif %}
</nav>
{% endblock %}
""")


@app.route("/entries/<int:entry_id>")
def entry_detail(entry_id):
    login_required()
    row = _owned_entry_or_404(entry_id)
    return render_template_string(
        TEMPL_ENTRY, title=f"{row['title']} · {SITE_NAME}", e=row
    )


TEMPL_ENTRY = wrap("""
{% block body %}
<hr>
<article>
    <h2 style="margin-top:0">{% if e['is_favorite'] %}★ {% endif %}{{ e['title'] }}</h2>
    <div class="meta" style="margin-bottom:1.5rem;">
        {{ e['created_at']|ts }} · {{ e['word_count'] }} words · {{ e['reading_time'] }} min read
        {% if e['mood'] %}
            {% set band = mood_band(e['mood']) %}
            · <span class="pill" style="background:{{ band.color }};">mood {{ e['mood'] }}/10</span>
        {% endif %}
        {% if e['is_private'] %} · private{% endif %}
    </div>
    <div class="e-content">{{ e['content']|md }}</div>
</article>
<div style="display:flex;gap:1rem;flex-wrap:wrap;align-items:center;font-size:.85em;">
    <a href="{{ url_for('edit_entry', entry_id=e['id']) }}">Edit</a>
    <form method="post" action="{{ url_for('toggle_favorite', entry_id=e['id']) }}" style="margin:0;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button>{{ 'Unfavorite' if e['is_favorite'] else 'Favorite' }}</button>
    </form>
    <a href="{{ url_for('export_entry_markdown', entry_id=e['id']) }}">Export .md</a>
    <a href="{{ url_for('export_entry_html', entry_id=e['id']) }}">Export .html</a>
    <a href="{{ url_for('delete_entry', entry_id=e['id']) }}" style="color:#d9534f;">Delete</a>
</div>
{% if e['updated_at'] != e['created_at'] %}
    <small class="meta">Last edited {{ e['updated_at']|ts }}</small>
{% endif %}
{% endblock %}
""")


@app.route("/write", methods=["GET", "POST"])
def write():
    login_required()
    user = current_user()
    if request.method == "POST":
        fields = _fields_from_form(request.form)
        try:
            row = create_entry(user["id"], fields, db=get_db())
        except EntryError as exc:
            for msg in exc.messages:
                flash(msg)
            return _render_editor(None, filled=fields)
        flash("Entry saved.")
        return redirect(url_for("entry_detail", entry_id=row["id"]))
    return _render_editor(None)


@app.route("/entries/<int:entry_id>/edit", methods=["GET", "POST"])
def edit_entry(entry_id):
    login_required()
    user = current_user()
    row = _owned_entry_or_404(entry_id)
    if request.method == "POST":
        fields = _fields_from_form(request.form)
        try:
            update_entry(user["id"], entry_id, fields, db=get_db())
        except EntryError as exc:
            for msg in exc.messages:
                flash(msg)
            return _render_editor(row, filled=fields)
        flash("Entry saved.")
        return redirect(url_for("entry_detail", entry_id=entry_id))
    return _render_editor(row)


def _render_editor(row, *, filled: dict | None = None):
    """Editor page for *row* (None → new entry), optionally re-filled."""
    prefs = get_user_settings(current_user()["id"])
    e = {
        "id": row["id"] if row else None,
        "title": row["title"] if row else "",
        "content": row["content"] if row else "",
        "mood": row["mood"] if row else None,
        "is_private": bool(row["is_private"]) if row else True,
        "is_favorite": bool(row["is_favorite"]) if row else False,
    }
    if filled:
        e.update(filled)
    editor_cfg = {
        "entryId": e["id"],
        "delayMs": prefs["autosave_interval"] * 1000,
        "enabled": True,
        "api": url_for("api_entries"),
    }
    return render_template_string(
        TEMPL_EDITOR,
        title=f"{'Edit' if row else 'Write'} · {SITE_NAME}",
        e=e,
        editor_cfg=editor_cfg,
        action=url_for("edit_entry", entry_id=row["id"]) if row else url_for("write"),
    )


TEMPL_EDITOR = wrap("""
{% block body %}
<hr>
<form method="post" id="entry-form" action="{{ action }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input name="title" class="writing-input" placeholder="Title (optional)"
           value="{{ e['title'] or '' }}" aria-label="Title">
    <textarea name="content" class="writing-area" rows="14"
              placeholder="What's on your mind?" aria-label="Entry">{{ e['content'] or '' }}</textarea>
    <div style="display:flex;gap:1.25rem;align-items:center;flex-wrap:wrap;font-size:.85em;">
        <label style="display:flex;gap:.4rem;align-items:center;margin:0;">Mood
            <select name="mood" style="margin:0;">
                <option value="">–</option>
                {% for m in range(1, 11) %}
                <option value="{{ m }}" {% if e['mood']|string == m|string %}selected{% endif %}>{{ m }}</option>
                {% endfor %}
            </select>
        </label>
        <label style="margin:0;font-weight:normal;">
            <input type="checkbox" name="is_private" value="1" style="margin:0;" {% if e['is_private'] %}checked{% endif %}> Private</label>
        <label style="margin:0;font-weight:normal;">
            <input type="checkbox" name="is_favorite" value="1" style="margin:0;" {% if e['is_favorite'] %}checked{% endif %}> Favorite</label>
        <span style="flex:1"></span>
        <span id="save-status" class="save-status" data-status="idle" aria-live="polite"></span>
        <button type="submit">Save</button>
    </div>
</form>
<script type="application/json" id="editor-config">{{ editor_cfg|tojson }}</script>
<script>
(() => {
    // browser twin of inkwell.autosave.AutosaveCoordinator
    const cfg = JSON.parse(document.getElementById('editor-config').textContent);
    const form = document.getElementById('entry-form');
    const badge = document.getElementById('save-status');
    const csrf = form.querySelector('input[name="csrf"]').value;
    const SAVED_MS = 2000, ERROR_MS = 3000;
    const labels = {idle: '', saving: 'Saving…', saved: 'Saved', error: 'Save failed'};

    let entryId = cfg.entryId;
    let timer = null, settle = null, gen = 0, alive = true;

    const snapshot = () => {
        const fd = new FormData(form);
        const content = fd.get('content') || '';
        if (!content.trim()) return '';
        return JSON.stringify({
            title: fd.get('title') || '',
            content,
            mood: fd.get('mood') ? Number(fd.get('mood')) : null,
            isPrivate: fd.has('is_private'),
            isFavorite: fd.has('is_favorite'),
        });
    };
    let lastSaved = entryId ? snapshot() : '';

    const setStatus = (status, settleMs) => {
        gen += 1;
        badge.dataset.status = status;
        badge.textContent = labels[status];
        clearTimeout(settle);
        if (settleMs) {
            const mine = gen;
            settle = setTimeout(() => { if (alive && mine === gen) setStatus('idle'); }, settleMs);
        }
    };

    let creating = null;  // POST of a new entry still in flight

    const send = async (url, method, body) => {
        const res = await fetch(url, {
            method,
            headers: {'Content-Type': 'application/json', 'X-CSRFToken': csrf},
            body,
            keepalive: true,
        });
        const data = await res.json().catch(() => ({}));
        if (!res.ok) throw new Error(data.error || `Save failed (${res.status})`);
        return data;
    };

    const persist = async (body) => {
        // one create-POST per page; later saves wait for its id and PUT
        if (!entryId && creating) await creating.catch(() => null);
        if (entryId) {
            await send(`${cfg.api}/${entryId}`, 'PUT', body);
            return;
        }
        const mine = creating = send(cfg.api, 'POST', body).then((data) => {
            entryId = data.id;
            form.action = `/entries/${entryId}/edit`;
            history.replaceState(null, '', form.action);
            return data;
        });
        try {
            await mine;
        } finally {
            if (creating === mine) creating = null;
        }
    };

    const save = async (body, raise) => {
        setStatus('saving');
        try {
            await persist(body);
        } catch (err) {
            if (!alive) return;
            setStatus('error', ERROR_MS);
            window.inkwellToast(err.message || 'Save failed');
            if (raise) throw err;
            return;
        }
        if (!alive) return;
        lastSaved = body;
        setStatus('saved', SAVED_MS);
    };

    const changed = () => {
        clearTimeout(timer);
        timer = null;
        const body = snapshot();
        if (!cfg.enabled || !body || body === lastSaved) return;
        timer = setTimeout(() => {
            timer = null;
            const now = snapshot();
            if (alive && now && now !== lastSaved) save(now, false);
        }, cfg.delayMs);
    };

    const forceSave = async () => {
        clearTimeout(timer);
        timer = null;
        const body = snapshot();
        if (alive && body && body !== lastSaved) await save(body, true);
    };

    form.addEventListener('input', changed);
    form.addEventListener('change', changed);
    form.addEventListener('keydown', (ev) => {
        if ((ev.ctrlKey || ev.metaKey) && ev.key === 's') {
            ev.preventDefault();
            forceSave().catch(() => {});
        }
    });
    window.inkwellShortcuts = Object.assign(window.inkwellShortcuts || {}, {
        save: () => forceSave().catch(() => {}),
        delete: () => { if (entryId) location.href = `/entries/${entryId}/delete`; },
    });
    window.addEventListener('pagehide', () => {
        forceSave().catch(() => {});
        alive = false;
        clearTimeout(settle);
    });
})();
</script>
{% endblock %}
""")


@app.route("/entries/<int:entry_id>/delete", methods=["GET", "POST"])
def delete_entry(entry_id):
    login_required()
    row = _owned_entry_or_404(entry_id)
    if request.method == "POST":
        archive_entry(current_user()["id"], entry_id, db=get_db())
        flash("Entry archived.")
        return redirect(url_for("entries"))
    return render_template_string(
        TEMPL_DELETE_ENTRY, title=f"Delete · {SITE_NAME}", e=row
    )


TEMPL_DELETE_ENTRY = wrap("""
{% block body %}
    <hr>
    <h2>Delete entry?</h2>
    <article style="border-left:3px solid #c00;padding-left:1rem;">
        <h3>{{ e['title'] }}</h3>
        <div>{{ preview(e['content']) }}</div>
        <small class="meta">{{ e['created_at']|ts }}</small>
    </article>
    <form method="post" style="margin-top:1rem;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button style="background:#c00;color:#fff;border-color:#c00;">Yes – delete it</button>
        <a href="{{ url_for('entry_detail', entry_id=e['id']) }}" style="margin-left:1rem;">Cancel</a>
    </form>
{% endblock %}
""")


@app.route("/entries/<int:entry_id>/favorite", methods=["POST"])
def toggle_favorite(entry_id):
    login_required()
    row = _owned_entry_or_404(entry_id)
    update_entry(
        current_user()["id"],
        entry_id,
        {"is_favorite": not row["is_favorite"]},
        db=get_db(),
    )
    return redirect(url_for("entry_detail", entry_id=entry_id))


###############################################################################
# JSON API
###############################################################################
@app.route("/api/entries", methods=["GET", "POST"])
def api_entries():
    login_required()
    user = current_user()
    db = get_db()

    if request.method == "POST":
        try:
            row = create_entry(
                user["id"], _fields_from_json(request.get_json(silent=True)), db=db
            )
        except EntryError as exc:
            return jsonify(error=str(exc)), 400
        return jsonify(entry_json(row, preview=True)), 201

    limit = max(1, min(request.args.get("limit", PAGE_DEFAULT, type=int), PAGE_MAX))
    cursor = request.args.get("cursor", type=int)
    try:
        rows, next_cursor = list_entries(user["id"], db=db, limit=limit, cursor=cursor)
    except EntryError as exc:
        return jsonify(error=str(exc)), 400
    return jsonify(
        entries=[entry_json(r, preview=True) for r in rows],
        nextCursor=next_cursor,
        hasMore=next_cursor is not None,
    )


@app.route("/api/entries/<int:entry_id>", methods=["GET", "PUT", "DELETE"])
def api_entry(entry_id):
    login_required()
    user = current_user()
    db = get_db()

    if request.method == "PUT":
        try:
            row = update_entry(
                user["id"], entry_id, _fields_from_json(request.get_json(silent=True)), db=db
            )
        except EntryError as exc:
            return jsonify(error=str(exc)), 400
        if row is None:
            return jsonify(error="Entry not found"), 404
        return jsonify(entry_json(row))

    if request.method == "DELETE":
        if not archive_entry(user["id"], entry_id, db=db):
            return jsonify(error="Entry not found"), 404
        return jsonify(message="Entry archived successfully")

    row = get_entry(user["id"], entry_id, db=db)
    if row is None:
        return jsonify(error="Entry not found"), 404
    return jsonify(entry_json(row))


###############################################################################
# Search
###############################################################################
def _auto_quote(q: str) -> str:
    """Wrap every token that contains punctuation in double quotes."""
    out = []
    for tok in q.split():
        # leave trailing * outside the quotes so prefix-search still works
        star = tok.endswith("*")
        core = tok[:-1] if star else tok
        if not _SAFE_TOKEN_RE.fullmatch(core):
            core = core.replace('"', '""')
            tok = f'"{core}"' + ("*" if star else "")
        out.append(tok)
    return " ".join(out)


def search_entries(
    owner_id: int,
    q: str,
    *,
    db,
    page: int = 1,
    per_page: int = PAGE_DEFAULT,
    sort: str = "rel",  #  rel | new | old
):
    """
    Return (rows_on_page, total_hits) over the owner's live entries.

    * “rel” = relevance (bm25 rank) – default
    * “new” = newest first
    * “old” = oldest first
    """
    q = _auto_quote(q).strip().lower()
    if not q:
        return [], 0

    # ─── 1-2 characters → simple LIKE ---------------------------------
    if len(q) < 3:
        like = f"%{q}%"
        order_sql = {"new": "created_at DESC", "old": "created_at ASC"}.get(
            sort, "created_at DESC"
        )
        base_sql = f"""
            SELECT {ENTRY_COLUMNS}
              FROM entry
             WHERE user_id=? AND is_archived=0
               AND (title LIKE ? OR content LIKE ?)
          ORDER BY {order_sql}
        """
        params = (owner_id, like, like)
        total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
        rows = db.execute(
            f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
        ).fetchall()
        return rows, total

    # ─── ≥3 chars → FTS5 trigram index --------------------------------
    order_sql = {"new": "e.created_at DESC", "old": "e.created_at ASC"}.get(
        sort, "rank"
    )
    rows = db.execute(
        f"""
        SELECT e.*, bm25(entry_fts) AS rank
          FROM entry_fts
          JOIN entry e ON e.id = entry_fts.rowid
         WHERE entry_fts MATCH ?
           AND e.user_id=? AND e.is_archived=0
      ORDER BY {order_sql}
         LIMIT ? OFFSET ?
        """,
        (q, owner_id, per_page, (page - 1) * per_page),
    ).fetchall()
    total = db.execute(
        """SELECT COUNT(*) FROM entry_fts
             JOIN entry e ON e.id = entry_fts.rowid
            WHERE entry_fts MATCH ? AND e.user_id=? AND e.is_archived=0""",
        (q, owner_id),
    ).fetchone()[0]
    return rows, total


def _highlight(text: str | None, terms: list[str]) -> Markup:
    """
    Escape *text*, then wrap every occurrence of a *term* in <mark>.
    Returns a Jinja-safe `Markup` object.
    """
    if not text:
        return Markup("")
    safe = str(escape(text))
    terms = [str(escape(t)) for t in terms if t]
    if not terms:
        return Markup(safe)
    pattern = re.compile("|".join(re.escape(t) for t in terms), re.I)
    return Markup(pattern.sub(lambda m: f"<mark>{m.group(0)}</mark>", safe))


@app.route("/search")
def search():
    login_required()
    user = current_user()
    q_raw = request.args.get("q", "").strip()
    sort = request.args.get("sort", "rel")
    page = max(request.args.get("page", 1, type=int), 1)

    rows, total = search_entries(
        user["id"], q_raw, db=get_db(), page=page, per_page=PAGE_DEFAULT, sort=sort
    )

    terms = q_raw.split()
    hits = []
    for r in rows:
        hits.append(
            {
                "id": r["id"],
                "title": _highlight(r["title"], terms),
                "snippet": _highlight(entry_preview(r["content"], 240), terms),
                "created_at": r["created_at"],
            }
        )

    pages = list(range(1, (total + PAGE_DEFAULT - 1) // PAGE_DEFAULT + 1))
    return render_template_string(
        TEMPL_SEARCH,
        title=f"Search · {SITE_NAME}",
        hits=hits,
        total=total,
        query=q_raw,
        sort=sort,
        page=page,
        pages=pages,
    )


TEMPL_SEARCH = wrap("""
{% block body %}
<hr>
<div style="padding:1rem 0;font-size:.8em;color:var(--muted);display:flex;justify-content:space-between;">
    <span>
    {% for val, label in [('rel','Relevance'), ('new','Newest'), ('old','Oldest')] %}
        <a href="{{ url_for('search', q=query, sort=val) }}"
           {% if sort==val %}aria-current="page"{% endif %}
           style="margin-right:.75rem;">{{ label }}</a>
    {% endfor %}
    </span>
    <span>{{ total }} result{{ '' if total == 1 else 's' }}</span>
</div>
{% for h in hits %}
<div class="entry-row">
    <a class="entry-link" href="{{ url_for('entry_detail', entry_id=h.id) }}">{{ h.title }}</a>
    <div>{{ h.snippet }}</div>
    <div class="meta">{{ h.created_at|ts }}</div>
</div>
{% else %}
    {% if query %}<p>No matches for “{{ query }}”.</p>{% endif %}
{% endfor %}
{% if pages|length > 1 %}
<nav style="margin-top:1rem;font-size:.85em;">
    {% for p in pages %}
        {% if p == page %}<strong>{{ p }}</strong>
        {% else %}<a href="{{ url_for('search', q=query, sort=sort, page=p) }}">{{ p }}</a>{% endif %}
    {% endfor %}
</nav>
{% endif %}
{% endblock %}
""")


###############################################################################
# Export
###############################################################################
def _fmt_ts(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return iso


def entry_markdown(entry, *, include_metadata: bool = True) -> str:
    out = [f"# {entry['title']}", ""]
    if include_metadata:
        out += [
            "---",
            f"Created: {_fmt_ts(entry['created_at'])}",
            f"Updated: {_fmt_ts(entry['updated_at'])}",
            f"Word Count: {entry['word_count']}",
            f"Private: {'Yes' if entry['is_private'] else 'No'}",
            f"Favorite: {'Yes' if entry['is_favorite'] else 'No'}",
        ]
        if entry["mood"] is not None:
            out.append(f"Mood: {entry['mood']}/10")
        out += ["---", ""]
    out.append(entry["content"].strip())
    return "\n".join(out) + "\n"


def export_filename(entry, ext: str = "md") -> str:
    """``YYYY-MM-DD-Title-Words.md`` – anything but [A-Za-z0-9 -] is dropped."""
    safe = EXPORT_UNSAFE_RE.sub("", entry["title"] or "").strip()
    stem = re.sub(r"\s+", "-", safe) or f"entry-{entry['id']}"
    return f"{entry['created_at'][:10]}-{stem}.{ext}"


def export_archive(rows, *, include_metadata: bool = True) -> bytes:
    """Zip of one Markdown file per entry; clashing names get -2, -3, …"""
    buf = io.BytesIO()
    used: set[str] = set()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for row in rows:
            name = export_filename(row)
            stem, n = name[:-3], 2
            while name in used:
                name = f"{stem}-{n}.md"
                n += 1
            used.add(name)
            zf.writestr(name, entry_markdown(row, include_metadata=include_metadata))
    return buf.getvalue()


def exportable_entries(owner_id: int, *, db, include_private: bool):
    sql = f"SELECT {ENTRY_COLUMNS} FROM entry WHERE user_id=? AND is_archived=0"
    if not include_private:
        sql += " AND is_private=0"
    return db.execute(sql + " ORDER BY created_at", (owner_id,)).fetchall()


def _attachment(body, *, filename: str, mimetype: str) -> Response:
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.route("/entries/<int:entry_id>/export.md")
def export_entry_markdown(entry_id):
    login_required()
    row = _owned_entry_or_404(entry_id)
    prefs = get_user_settings(current_user()["id"])
    return _attachment(
        entry_markdown(row, include_metadata=prefs["export_include_metadata"]),
        filename=export_filename(row),
        mimetype="text/markdown; charset=utf-8",
    )


@app.route("/entries/<int:entry_id>/export.html")
def export_entry_html(entry_id):
    login_required()
    row = _owned_entry_or_404(entry_id)
    prefs = get_user_settings(current_user()["id"])
    html = render_template_string(
        TEMPL_EXPORT_HTML, e=row, include_metadata=prefs["export_include_metadata"]
    )
    return _attachment(
        html, filename=export_filename(row, "html"), mimetype="text/html; charset=utf-8"
    )


TEMPL_EXPORT_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ e['title'] }}</title>
<style>
body{font-family:Arial,sans-serif;max-width:800px;margin:0 auto;padding:20px;line-height:1.6}
.metadata{background:#f5f5f5;padding:15px;border-radius:5px;margin-bottom:20px;font-size:14px}
h1{color:#333;border-bottom:2px solid #eee;padding-bottom:10px}
</style>
</head>
<body>
<h1>{{ e['title'] }}</h1>
{% if include_metadata %}
<div class="metadata">
    <p><strong>Created:</strong> {{ e['created_at']|ts }}</p>
    <p><strong>Updated:</strong> {{ e['updated_at']|ts }}</p>
    <p><strong>Word Count:</strong> {{ e['word_count'] }}</p>
    <p><strong>Private:</strong> {{ 'Yes' if e['is_private'] else 'No' }}</p>
    <p><strong>Favorite:</strong> {{ 'Yes' if e['is_favorite'] else 'No' }}</p>
    {% if e['mood'] %}<p><strong>Mood:</strong> {{ e['mood'] }}/10</p>{% endif %}
</div>
{% endif %}
<div class="content">{{ e['content']|md }}</div>
</body>
</html>
"""


@app.route("/export.zip")
def export_all():
    login_required()
    user = current_user()
    db = get_db()
    prefs = get_user_settings(user["id"], db=db)
    rows = exportable_entries(
        user["id"], db=db, include_private=request.args.get("private") == "1"
    )
    stamp = utc_now().strftime("%Y-%m-%d")
    return _attachment(
        export_archive(rows, include_metadata=prefs["export_include_metadata"]),
        filename=f"journal-{stamp}.zip",
        mimetype="application/zip",
    )


@app.cli.command("export-entries")
@click.option("--email", required=True, help="Whose journal to export")
@click.option("--private/--no-private", default=False, help="Include private entries")
@click.argument(
    "out_dir", type=click.Path(file_okay=False, writable=True, path_type=Path)
)
def cli_export_entries(email: str, private: bool, out_dir: Path):
    """Write every entry as a Markdown file into OUT_DIR."""
    db = get_db()
    user = find_user_by_email(email, db=db)
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    prefs = get_user_settings(user["id"], db=db)

    out_dir.mkdir(parents=True, exist_ok=True)
    rows = exportable_entries(user["id"], db=db, include_private=private)
    with zipfile.ZipFile(
        io.BytesIO(export_archive(rows, include_metadata=prefs["export_include_metadata"]))
    ) as zf:
        zf.extractall(out_dir)
    click.secho(f"\n📦  {len(rows)} entries written to {out_dir}", fg="green")


###############################################################################
# Settings
###############################################################################
@app.route("/settings", methods=["GET", "POST"])
def settings():
    login_required()
    user = current_user()
    db = get_db()
    prefs = get_user_settings(user["id"], db=db)

    if request.method == "POST":
        raw = request.form.get("autosave_interval", "").strip()
        if raw.isdigit() and AUTOSAVE_MIN <= int(raw) <= AUTOSAVE_MAX:
            prefs["autosave_interval"] = int(raw)
        else:
            flash(
                f"Autosave interval must be {AUTOSAVE_MIN}–{AUTOSAVE_MAX} seconds."
            )

        theme = request.form.get("theme", "").strip()
        if theme in THEMES:
            prefs["theme"] = theme
        else:
            flash("Unknown theme.")

        prefs["shortcuts_enabled"] = "shortcuts_enabled" in request.form
        prefs["export_include_metadata"] = "export_include_metadata" in request.form
        set_user_settings(user["id"], prefs, db=db)

        name = request.form.get("name", "").strip()
        if name and len(name) <= NAME_MAX:
            db.execute("UPDATE user SET name=? WHERE id=?", (name, user["id"]))
            db.commit()

        flash("Settings saved.")
        return redirect(url_for("settings"))

    return render_template_string(
        TEMPL_SETTINGS,
        title=f"Settings · {SITE_NAME}",
        user=user,
        prefs=prefs,
        themes=THEMES,
        autosave_min=AUTOSAVE_MIN,
        autosave_max=AUTOSAVE_MAX,
    )


TEMPL_SETTINGS = wrap("""
{% block body %}
<hr>
<form method="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <fieldset style="border:0;padding:0;">
        <legend>Account</legend>
        <label for="name">Name</label>
        <input id="name" name="name" maxlength="50" value="{{ user['name'] }}" class="writing-input">
        <p class="meta">{{ user['email'] }}</p>
    </fieldset>
    <fieldset style="border:0;padding:0;">
        <legend>Writing</legend>
        <label for="autosave_interval">Autosave after (seconds of quiet)</label>
        <input id="autosave_interval" name="autosave_interval" type="number"
               min="{{ autosave_min }}" max="{{ autosave_max }}"
               value="{{ prefs.autosave_interval }}">
        <label style="font-weight:normal;">
            <input type="checkbox" name="shortcuts_enabled" value="1"
                   {% if prefs.shortcuts_enabled %}checked{% endif %}>
            Keyboard shortcuts (<a href="{{ url_for('shortcuts_help') }}">list</a>)</label>
    </fieldset>
    <fieldset style="border:0;padding:0;">
        <legend>Appearance</legend>
        <label for="theme">Theme</label>
        <select id="theme" name="theme">
            {% for t in themes %}
            <option value="{{ t }}" {% if prefs.theme == t %}selected{% endif %}>{{ t|capitalize }}</option>
            {% endfor %}
        </select>
    </fieldset>
    <fieldset style="border:0;padding:0;">
        <legend>Export</legend>
        <label style="font-weight:normal;">
            <input type="checkbox" name="export_include_metadata" value="1"
                   {% if prefs.export_include_metadata %}checked{% endif %}>
            Include dates, word count and flags in exports</label>
        <p style="font-size:.85em;">
            <a href="{{ url_for('export_all') }}">Download public entries (.zip)</a> ·
            <a href="{{ url_for('export_all', private=1) }}">Download everything (.zip)</a>
        </p>
    </fieldset>
    <button type="submit">Save settings</button>
</form>
{% endblock %}
""")


###############################################################################
# Keyboard shortcuts
###############################################################################
@app.route("/shortcuts")
def shortcuts_help():
    return render_template_string(
        TEMPL_SHORTCUTS, title=f"Shortcuts · {SITE_NAME}", groups=shortcut_groups()
    )


TEMPL_SHORTCUTS = wrap("""
{% block body %}
<hr>
<h2 style="margin-top:0">Keyboard shortcuts</h2>
{% if current_user() and not user_prefs()['shortcuts_enabled'] %}
<p class="meta">Shortcuts are switched off in <a href="{{ url_for('settings') }}">settings</a>.</p>
{% endif %}
{% for group, items in groups.items() %}
<h3>{{ group }}</h3>
<table>
    {% for sc in items %}
    <tr><td style="width:8em;"><kbd>{{ sc.combo }}</kbd></td><td>{{ sc.label }}</td></tr>
    {% endfor %}
</table>
{% endfor %}
<p class="meta">On a Mac, ⌘ works wherever Ctrl is listed. While typing, only Esc is active.</p>
{% endblock %}
""")


###############################################################################
# Error pages
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if _wants_json():
        return jsonify(error="Not found"), 404
    return render_template_string(TEMPL_404, title=SITE_NAME), 404


@app.errorhandler(405)
def method_not_allowed(exc):
    if not _wants_json():
        return exc
    resp = jsonify(error=f"Method {request.method} not allowed")
    resp.status_code = 405
    resp.headers["Allow"] = ", ".join(exc.valid_methods or ())
    return resp


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page.  Flask has already logged the traceback; while debug
    is on the Werkzeug debugger bypasses this handler entirely.
    """
    if _wants_json():
        return jsonify(error="Internal server error"), 500
    return render_template_string(TEMPL_500, title=SITE_NAME), 500


TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}" style="color:var(--accent);">Back to the start</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Your last autosaved version is safe –
     please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# Terminal editing session
###############################################################################
async def watch_file(
    path: Path,
    coordinator: AutosaveCoordinator,
    *,
    interval: float = 1.0,
    polls: int | None = None,
) -> None:
    """
    Poll *path* and hand every new version to *coordinator*.
    Runs until cancelled, or for *polls* rounds.
    """
    done = 0
    while polls is None or done < polls:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            text = None  # editors often swap the file out on save
        if text is not None and text != coordinator.content:
            coordinator.update(text)
        done += 1
        await asyncio.sleep(interval)


def _store_content(owner_id: int, entry_id: int, content: str) -> None:
    """Blocking write used from a worker thread (own app context + DB handle)."""
    with app.app_context():
        if update_entry(owner_id, entry_id, {"content": content}, db=get_db()) is None:
            raise EntryError(f"Entry {entry_id} no longer exists")


async def run_watch_session(
    owner_id: int,
    entry,
    path: Path,
    *,
    delay_ms: int,
    interval: float = 1.0,
    polls: int | None = None,
) -> None:
    """Autosave *path* into *entry*; force-save and dispose on the way out."""

    async def save(content: str) -> None:
        await asyncio.to_thread(_store_content, owner_id, entry["id"], content)

    coordinator = AutosaveCoordinator(
        save,
        saved_content=entry["content"],
        delay_ms=delay_ms,
        on_status=lambda status: click.echo(f"[{status.value}]"),
        on_error=lambda exc: click.secho(f"Save failed: {exc}", fg="red", err=True),
    )
    try:
        await watch_file(path, coordinator, interval=interval, polls=polls)
    finally:
        try:
            await coordinator.force_save()
        finally:
            coordinator.dispose()


@app.cli.command("watch")
@click.option("--email", required=True, help="Owner of the entry")
@click.option(
    "--interval", default=1.0, show_default=True, help="Seconds between file checks"
)
@click.argument("entry_id", type=int)
@click.argument(
    "path", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def cli_watch(email: str, interval: float, entry_id: int, path: Path):
    """Autosave edits of a local Markdown file into ENTRY_ID (Ctrl-C to stop)."""
    db = get_db()
    user = find_user_by_email(email, db=db)
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    entry = get_entry(user["id"], entry_id, db=db)
    if entry is None or entry["is_archived"]:
        raise click.ClickException(f"No entry #{entry_id} for {email}")
    delay_ms = get_user_settings(user["id"], db=db)["autosave_interval"] * 1000

    click.secho(f"✍️  Watching {path} → “{entry['title']}”", fg="yellow")
    try:
        asyncio.run(
            run_watch_session(
                user["id"], entry, path, delay_ms=delay_ms, interval=interval
            )
        )
    except KeyboardInterrupt:
        click.echo("\nStopped.")
    except (EntryError, sqlite3.Error) as exc:
        raise click.ClickException(f"Final save failed: {exc}") from exc


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
