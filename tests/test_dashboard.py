"""
tests/test_dashboard.py
"""
from __future__ import annotations

from datetime import date

from inkwell.journal import (
    create_entry,
    dashboard_stats,
    get_db,
    mood_band,
    mood_series,
    recent_entries,
    update_entry,
    writing_streak,
)

TODAY = date(2099, 3, 10)


def _add_on(user_id: int, day: str, *, mood=None, words: int = 10) -> int:
    """Create an entry, then move it to *day* (YYYY-MM-DD)."""
    db = get_db()
    row = create_entry(
        user_id, {"content": " ".join(["word"] * words), "mood": mood}, db=db
    )
    db.execute(
        "UPDATE entry SET created_at=?, updated_at=? WHERE id=?",
        (f"{day}T12:00:00+00:00", f"{day}T12:00:00+00:00", row["id"]),
    )
    db.commit()
    return row["id"]


def test_streak_counts_back_from_today_or_yesterday():
    d = date.fromisoformat
    assert writing_streak({d("2099-03-10"), d("2099-03-09")}, today=TODAY) == 2
    assert writing_streak({d("2099-03-09"), d("2099-03-08")}, today=TODAY) == 2
    assert writing_streak({d("2099-03-08")}, today=TODAY) == 0
    assert writing_streak(set(), today=TODAY) == 0


def test_dashboard_stats(client, user):
    _add_on(user["id"], "2099-03-10", mood=8, words=250)
    _add_on(user["id"], "2099-03-09", mood=5)
    _add_on(user["id"], "2099-03-04", mood=None)   # exactly 6 days back
    _add_on(user["id"], "2099-03-01", mood=6)      # outside the week

    stats = dashboard_stats(user["id"], db=get_db(), today=TODAY)
    assert stats["total_entries"] == 4
    assert stats["total_words"] == 280
    assert stats["time_spent"] == 2 + 1 + 1 + 1
    assert stats["this_week_entries"] == 3
    assert stats["current_streak"] == 2
    assert stats["avg_mood"] == 6.3


def test_empty_dashboard(client, user):
    stats = dashboard_stats(user["id"], db=get_db(), today=TODAY)
    assert stats == {
        "total_entries": 0,
        "total_words": 0,
        "time_spent": 0,
        "avg_mood": None,
        "this_week_entries": 0,
        "current_streak": 0,
    }


def test_mood_series_daily_means(client, user):
    _add_on(user["id"], "2099-03-10", mood=9)
    _add_on(user["id"], "2099-03-10", mood=6)
    _add_on(user["id"], "2099-03-07", mood=3)
    _add_on(user["id"], "2099-03-01", mood=1)      # too old

    series = mood_series(user["id"], db=get_db(), today=TODAY)
    points = series["points"]
    assert [p["date"] for p in points][0] == "2099-03-04"
    assert [p["date"] for p in points][-1] == "2099-03-10"
    assert points[-1]["mood"] == 7.5
    assert points[-1]["band"]["name"] == "fair"
    assert points[3]["mood"] == 3
    assert points[3]["band"]["name"] == "poor"
    assert points[0]["mood"] is None and points[0]["band"] is None
    assert (series["min"], series["max"], series["avg"]) == (3, 7.5, 5.2)


def test_mood_bands():
    assert mood_band(10)["name"] == "good"
    assert mood_band(8)["name"] == "good"
    assert mood_band(7.9)["name"] == "fair"
    assert mood_band(4)["name"] == "low"
    assert mood_band(3.9)["name"] == "poor"
    assert mood_band(None) is None


def test_dashboard_page(auth_client, user):
    create_entry(user["id"], {"content": "Recent thing", "mood": 7}, db=get_db())
    rv = auth_client.get("/dashboard")
    assert rv.status_code == 200
    assert b"Recent thing" in rv.data
    assert b"Total entries" in rv.data


def test_index_redirects_signed_in_user(auth_client):
    rv = auth_client.get("/")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/dashboard")


def test_recent_entries_ignore_favourites(client, user):
    db = get_db()
    old = _add_on(user["id"], "2099-03-01")
    new = _add_on(user["id"], "2099-03-05")
    update_entry(user["id"], old, {"is_favorite": True}, db=db)
    db.execute(
        "UPDATE entry SET updated_at='2099-03-01T12:00:00+00:00' WHERE id=?", (old,)
    )
    db.commit()

    assert [r["id"] for r in recent_entries(user["id"], db=db)] == [new, old]
