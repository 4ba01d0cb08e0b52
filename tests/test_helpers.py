import pytest

from inkwell.journal import (
    _safe_next,
    app,
    derive_title,
    entry_preview,
    parse_mood,
    reading_time,
    render_markdown_html,
    strip_markup,
    word_count,
)


def test_strip_markup_drops_tags():
    assert strip_markup("<p>Hello <b>there</b></p>") == "Hello there"
    assert strip_markup(None) == ""


@pytest.mark.parametrize("text,count", [
    ("", 0),
    ("one", 1),
    ("  spaced   out\nwords ", 3),
    ("# heading - dash", 2),          # “#” and “-” carry no word character
    ("<em>tagged</em> text", 2),
])
def test_word_count(text, count):
    assert word_count(text) == count


@pytest.mark.parametrize("words,minutes", [(0, 0), (1, 1), (200, 1), (201, 2)])
def test_reading_time(words, minutes):
    assert reading_time(words) == minutes


def test_derive_title():
    assert derive_title("\n\n## Second-level  \nbody") == "Second-level"
    assert derive_title("x" * 51) == "x" * 50 + "..."
    assert derive_title("x" * 50) == "x" * 50
    assert derive_title("  \n ") == "Untitled Entry"
    assert derive_title("###") == "Untitled Entry"


def test_entry_preview():
    assert entry_preview("a\n\nb") == "a b"
    assert entry_preview("y" * 101) == "y" * 100 + "..."
    assert entry_preview("y" * 100) == "y" * 100


@pytest.mark.parametrize("raw,mood", [(None, None), ("", None), ("7", 7), (1, 1), (10.0, 10)])
def test_parse_mood_accepts(raw, mood):
    assert parse_mood(raw) == mood


def test_markdown_renders_tasklists():
    html = render_markdown_html("- [x] done\n- [ ] todo")
    assert "checkbox" in html


def test_safe_next():
    with app.test_request_context():
        assert _safe_next("/entries/3") == "/entries/3"
        assert _safe_next("http://elsewhere/") == "/dashboard"
        assert _safe_next("") == "/dashboard"
