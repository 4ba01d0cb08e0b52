"""
Debounced autosave for one editing session.

The coordinator owns the content buffer, a single pending timer and the
save-status machine::

    idle ──▶ saving ──▶ saved ──(2 s)──▶ idle
                   └──▶ error ──(3 s)──▶ idle

It lives on one asyncio loop.  The only suspension point is the ``await``
on the persistence callback; everything else runs synchronously inside loop
callbacks, so no locking is needed.

Overlapping saves are *not* serialised: an edit that arrives while a save
is in flight schedules a fresh timer as usual, and the persistence callback
is expected to overwrite the whole document (last completed write wins).
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 10_000
SAVED_DISPLAY_MS = 2_000
ERROR_DISPLAY_MS = 3_000

SaveCallback = Callable[[str], Awaitable[None]]


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class AutosaveCoordinator:
    """
    Debounce edits and push them through *on_save*.

    • ``update(content)`` restarts the debounce window (last edit wins).
    • ``force_save()`` skips the window and awaits the save.
    • ``dispose()`` makes every outstanding continuation inert.

    *saved_content* seeds the last-saved snapshot, so a session that opens
    an already-stored document does not write it back unchanged.

    Timers are bound to *loop*, or to the running loop when it is omitted.
    Built outside a running loop without *loop*, a save that is already due
    waits for the first ``update()`` or ``configure()`` made on a loop.
    """

    saved_display_ms = SAVED_DISPLAY_MS
    error_display_ms = ERROR_DISPLAY_MS

    def __init__(
        self,
        on_save: SaveCallback,
        *,
        content: str = "",
        delay_ms: int = DEFAULT_DELAY_MS,
        enabled: bool = True,
        saved_content: str = "",
        on_error: Optional[Callable[[BaseException], None]] = None,
        on_status: Optional[Callable[[SaveStatus], None]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_save = on_save
        self._content = content
        self._last_saved = saved_content
        self._delay_ms = delay_ms
        self._enabled = enabled
        self._on_error = on_error
        self._on_status = on_status
        self._loop = loop

        self._status = SaveStatus.IDLE
        self._status_gen = 0  # bumped on every transition
        self._timer: Optional[asyncio.TimerHandle] = None
        self._settle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._disposed = False

        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                return
        self._reschedule()

    # ── read-only view ────────────────────────────────────────────────
    @property
    def status(self) -> SaveStatus:
        return self._status

    def get_status(self) -> SaveStatus:
        return self._status

    @property
    def content(self) -> str:
        return self._content

    @property
    def last_saved(self) -> str:
        return self._last_saved

    @property
    def pending(self) -> bool:
        """True while a debounce timer is waiting to fire."""
        return self._timer is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ── inputs ────────────────────────────────────────────────────────
    def update(self, content: str) -> None:
        """The editor reported a new serialized document."""
        self._content = content
        self._reschedule()

    def configure(
        self,
        *,
        content: Optional[str] = None,
        on_save: Optional[SaveCallback] = None,
        delay_ms: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        """
        Swap any of the construction parameters.  Like an edit, this
        cancels the pending timer and re-arms it if a save is still due.
        """
        if content is not None:
            self._content = content
        if on_save is not None:
            self._on_save = on_save
        if delay_ms is not None:
            self._delay_ms = delay_ms
        if enabled is not None:
            self._enabled = enabled
        self._reschedule()

    async def force_save(self) -> None:
        """
        Save right now if the buffer differs from the last saved snapshot.
        A rejected save is re-raised after the status has been updated.
        """
        self._cancel_timer()
        if self._disposed or self._content == self._last_saved:
            return
        await self._save(self._content, reraise=True)

    def reset_status(self) -> None:
        self._set_status(SaveStatus.IDLE)

    def dispose(self) -> None:
        """Tear down: cancel timers; in-flight saves finish without effect."""
        self._disposed = True
        self._cancel_timer()
        if self._settle is not None:
            self._settle.cancel()
            self._settle = None

    # ── internals ─────────────────────────────────────────────────────
    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _reschedule(self) -> None:
        self._cancel_timer()
        if (
            self._disposed
            or not self._enabled
            or not self._content
            or self._content == self._last_saved
        ):
            return
        self._timer = self._get_loop().call_later(
            self._delay_ms / 1000, self._on_timer
        )

    def _on_timer(self) -> None:
        self._timer = None
        if self._disposed or self._content == self._last_saved:
            return
        task = self._get_loop().create_task(self._save(self._content, reraise=False))
        # keep a strong reference until the save settles
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _save(self, content: str, *, reraise: bool) -> None:
        self._set_status(SaveStatus.SAVING)
        try:
            await self._on_save(content)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._disposed:
                log.debug("save finished after dispose; ignoring failure: %s", exc)
                return
            log.warning("Autosave failed: %s", exc)
            self._set_status(SaveStatus.ERROR, settle_ms=self.error_display_ms)
            if self._on_error is not None:
                self._on_error(exc)
            if reraise:
                raise
            return

        if self._disposed:
            return
        self._last_saved = content
        self._set_status(SaveStatus.SAVED, settle_ms=self.saved_display_ms)

    def _set_status(self, status: SaveStatus, *, settle_ms: Optional[int] = None):
        self._status_gen += 1
        self._status = status
        if self._settle is not None:
            self._settle.cancel()
            self._settle = None
        if settle_ms is not None:
            self._settle = self._get_loop().call_later(
                settle_ms / 1000, self._settle_idle, self._status_gen
            )
        if self._on_status is not None:
            self._on_status(status)

    def _settle_idle(self, gen: int) -> None:
        self._settle = None
        # a newer transition (or dispose) wins over the display window
        if self._disposed or gen != self._status_gen:
            return
        self._set_status(SaveStatus.IDLE)
