"""
Debounced persistence of stage edits.

One coordinator owns the whole edit bundle of an open stage (pipeline name,
tags, workflow status, folder and the stage input), so every write is a
last-write-wins snapshot of that bundle taken when the write starts.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from .errors import PersistenceError, StudioError

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 0.5        # seconds of quiet before a write
MAX_SILENT_FAILURES = 3    # timer failures tolerated before surfacing


class AutoSaveCoordinator:
    def __init__(
        self,
        save: Callable[[], Awaitable[None]],
        delay: float = DEFAULT_DELAY,
        on_error: Optional[Callable[[PersistenceError], None]] = None,
        name: str = "",
    ):
        self._save = save
        self.delay = delay
        self._on_error = on_error
        self._name = name
        self._version = 0
        self._saved_version = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_write: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.consecutive_failures = 0
        self.writes = 0

    @property
    def dirty(self) -> bool:
        return self._version != self._saved_version

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def mark_dirty(self):
        """Record an edit and (re)start the quiet-period timer."""
        self._version += 1
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._fire)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self):
        self._timer = None
        self._timer_write = asyncio.create_task(self._write_from_timer())

    async def _write_from_timer(self):
        try:
            await self._write()
        except PersistenceError as e:
            if self.consecutive_failures >= MAX_SILENT_FAILURES:
                logger.error(f"[{self._name}] Auto-save failed {self.consecutive_failures} times in a row: {e}")
                if self._on_error is not None:
                    self._on_error(e)
            else:
                logger.warning(f"[{self._name}] Auto-save failed, will retry on next edit: {e}")

    async def _write(self):
        async with self._lock:
            if not self.dirty:
                return
            version = self._version
            try:
                await self._save()
            except StudioError as e:
                self.consecutive_failures += 1
                metrics.inc_counter("errors.autosave")
                raise PersistenceError(f"Saving edits failed: {e}") from e
            self._saved_version = max(self._saved_version, version)
            self.consecutive_failures = 0
            self.writes += 1
            logger.debug(f"[{self._name}] Saved edits (version {version})")

    async def flush(self):
        """
        Write now if there are unsaved edits, cancelling the pending timer.

        Raises PersistenceError if the write fails; the edits stay dirty.
        """
        self._cancel_timer()
        await self._write()

    async def close(self):
        """Final flush, then drop any timer or background write."""
        try:
            await self.flush()
        finally:
            self._cancel_timer()
            task, self._timer_write = self._timer_write, None
            if task is not None and not task.done():
                await task
