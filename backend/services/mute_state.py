"""
Global mute with automatic expiry.

Muting is never permanent: it clears itself MUTE_WINDOW_SECONDS after it was
switched on. Listeners are told whether an un-mute happened inside the window
(explicit and early) or not (late, or the automatic expiry), which decides
whether an interrupted overdue loop may resume.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MUTE_WINDOW_SECONDS = 10

MuteListener = Callable[[bool, bool], None]


class MuteState:
    def __init__(self, window_seconds: float = MUTE_WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self.muted = False
        self.muted_at: Optional[float] = None
        self._listeners: list[MuteListener] = []
        self._expiry_handle: Optional[asyncio.TimerHandle] = None

    def add_listener(self, listener: MuteListener):
        """listener(muted, within_window) is called on every change."""
        self._listeners.append(listener)

    def _notify(self, within_window: bool):
        for listener in list(self._listeners):
            listener(self.muted, within_window)

    def mute(self):
        if self.muted:
            return
        self.muted = True
        self.muted_at = self.clock()
        logger.info(f"Sound muted for {self.window_seconds}s")
        self._schedule_expiry()
        self._notify(within_window=True)

    def unmute(self, automatic: bool = False):
        if not self.muted:
            return
        elapsed = self.clock() - (self.muted_at or 0)
        within_window = not automatic and elapsed < self.window_seconds

        self.muted = False
        self.muted_at = None
        self._cancel_expiry()
        logger.info(f"Sound unmuted after {elapsed:.1f}s ({'automatic' if automatic else 'manual'})")
        self._notify(within_window=within_window)

    def toggle(self) -> bool:
        if self.muted:
            self.unmute()
        else:
            self.mute()
        return self.muted

    def expire_if_due(self) -> bool:
        """Clear the mute once the window has passed. Safe to call every tick."""
        if self.muted and self.clock() - (self.muted_at or 0) >= self.window_seconds:
            self.unmute(automatic=True)
            return True
        return False

    def _schedule_expiry(self):
        self._cancel_expiry()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (tests, scripts): expire_if_due() does the job
            return
        self._expiry_handle = loop.call_later(self.window_seconds, self.expire_if_due)

    def _cancel_expiry(self):
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
