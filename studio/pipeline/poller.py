"""
Fixed-interval stage record poller.

The loop is strictly serial (wait one interval, read once, hand the record
to the owner), so a slow store can never stack up overlapping reads. The
owner's callback returns False to end polling (terminal status observed).

At most one loop runs per stage in the process: starting a poller for a
stage cancels any other poller currently registered for that stage.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from .errors import StoreError
from .models import StageRecord, StageRef

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0  # seconds

OnRecord = Callable[[StageRecord], Awaitable[bool]]

_active: dict[StageRef, "JobPoller"] = {}


def active_poller(ref: StageRef) -> Optional["JobPoller"]:
    return _active.get(ref)


class JobPoller:
    def __init__(self, store, on_record: OnRecord, interval: float = DEFAULT_INTERVAL):
        self._store = store
        self._on_record = on_record
        self.interval = interval
        self.ref: Optional[StageRef] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.reads = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, ref: StageRef, interval: Optional[float] = None) -> asyncio.Task:
        """Begin polling `ref`; replaces any loop already running for it."""
        self._cancel()
        other = _active.get(ref)
        if other is not None and other is not self:
            logger.info(f"[{ref}] Replacing an existing poll loop")
            other._cancel()

        if interval is not None:
            self.interval = interval
        self.ref = ref
        _active[ref] = self
        self._task = asyncio.create_task(self._loop(ref), name=f"poll:{ref}")
        metrics.set_gauge("active_pollers", len(_active))
        logger.info(f"[{ref}] Polling every {self.interval:.1f}s")
        return self._task

    async def stop(self):
        """Cancel polling. Safe to call repeatedly, or when never started."""
        task = self._task
        self._cancel()
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _cancel(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._unregister()

    def _unregister(self):
        if self.ref is not None and _active.get(self.ref) is self:
            del _active[self.ref]
            metrics.set_gauge("active_pollers", len(_active))

    async def _read(self, ref: StageRef) -> Optional[StageRecord]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.reads += 1
            metrics.inc_counter("poll.reads")
            return await self._store.get_stage(ref)
        except StoreError as e:
            logger.warning(f"[{ref}] Poll read failed, retrying next tick: {e}")
            metrics.inc_counter("errors.poll_read")
            return None
        finally:
            self.in_flight -= 1

    async def _loop(self, ref: StageRef):
        try:
            while True:
                await asyncio.sleep(self.interval)
                record = await self._read(ref)
                if record is None:
                    continue
                try:
                    keep_polling = await self._on_record(record)
                except Exception as e:
                    logger.error(f"[{ref}] Poll handler failed, stopping: {e}", exc_info=True)
                    break
                if not keep_polling:
                    logger.info(f"[{ref}] Polling finished")
                    break
        finally:
            if self._task is asyncio.current_task():
                self._task = None
                self._unregister()
