"""
Keyboard shortcuts: one binding table, one set of dispatch rules.

The table is rendered on the help page and shipped to the browser as JSON;
``resolve`` is the reference for how a key press picks an action.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional

EDITABLE_TAGS = {"input", "textarea"}
ARROW_ACTIONS = {"ArrowUp": "navigate_up", "ArrowDown": "navigate_down"}


@dataclass(frozen=True)
class Shortcut:
    action: str
    key: str
    ctrl: bool
    label: str
    group: str

    @property
    def combo(self) -> str:
        """Human label, e.g. ``Ctrl+S`` or ``Esc``."""
        key = {"Escape": "Esc", "ArrowUp": "↑", "ArrowDown": "↓"}.get(
            self.key, self.key.upper()
        )
        return f"Ctrl+{key}" if self.ctrl else key


SHORTCUTS: tuple[Shortcut, ...] = (
    Shortcut("new_entry", "n", True, "New entry", "General"),
    Shortcut("focus_search", "f", True, "Focus search", "General"),
    Shortcut("show_help", "/", True, "Show keyboard shortcuts", "General"),
    Shortcut("escape", "Escape", False, "Leave the current field", "General"),
    Shortcut("save", "s", True, "Save entry", "Editing"),
    Shortcut("delete", "d", True, "Delete entry", "Editing"),
    Shortcut("navigate_up", "ArrowUp", False, "Previous entry", "Navigation"),
    Shortcut("navigate_down", "ArrowDown", False, "Next entry", "Navigation"),
)


@dataclass(frozen=True)
class Target:
    """The element that had focus when the key went down."""

    tag: str = "body"
    input_type: str = ""
    placeholder: str = ""
    content_editable: bool = False

    @property
    def is_editable(self) -> bool:
        return self.tag.lower() in EDITABLE_TAGS or self.content_editable

    @property
    def is_search_box(self) -> bool:
        return (
            self.tag.lower() == "input"
            and self.input_type.lower() in ("text", "search")
            and "search" in self.placeholder.lower()
        )


def resolve(key: str, *, ctrl: bool = False, target: Target | None = None) -> str | None:
    """
    Map one key press to an action name, or ``None``.

    • While typing, only Escape fires – a search box also gets the arrows.
    • Ctrl/Cmd combinations win over plain keys.
    • Ctrl-less bindings still match when Ctrl is held (Ctrl+Esc = Esc).
    """
    target = target or Target()

    if target.is_editable:
        if key == "Escape":
            return "escape"
        if target.is_search_box and key in ARROW_ACTIONS:
            return ARROW_ACTIONS[key]
        return None

    if ctrl:
        for sc in SHORTCUTS:
            if sc.ctrl and sc.key == key:
                return sc.action

    for sc in SHORTCUTS:
        if not sc.ctrl and sc.key == key:
            return sc.action
    return None


def dispatch(
    key: str,
    handlers: Mapping[str, Callable[[], object]],
    *,
    ctrl: bool = False,
    target: Target | None = None,
) -> bool:
    """
    Resolve *key* and call the matching handler.  Returns True when a
    handler ran (the caller should then swallow the key press).
    """
    action = resolve(key, ctrl=ctrl, target=target)
    handler: Optional[Callable[[], object]] = handlers.get(action) if action else None
    if handler is None:
        return False
    handler()
    return True


def shortcut_table() -> list[dict]:
    """JSON-ready table for the browser."""
    return [
        {"action": sc.action, "key": sc.key, "ctrl": sc.ctrl, "combo": sc.combo}
        for sc in SHORTCUTS
    ]


def shortcut_groups() -> dict[str, list[Shortcut]]:
    groups: dict[str, list[Shortcut]] = {}
    for sc in SHORTCUTS:
        groups.setdefault(sc.group, []).append(sc)
    return groups
