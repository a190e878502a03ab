"""
Registry of open stage editors.

Holds one StageController per open stage and the services they share: the
record store, the dispatcher, the notification guard and one CreditLedger
per user (so every open stage of a user admits against the same balance).
"""

import asyncio
import logging
from collections import deque
from typing import Optional

from .credits import DEFAULT_RATES, CreditLedger, RateCard
from .autosave import DEFAULT_DELAY
from .controller import StageController
from .errors import RecordNotFoundError
from .models import ControllerState, Notification, StageRef
from .notifications import NotificationGuard, log_sink
from .poller import DEFAULT_INTERVAL

logger = logging.getLogger(__name__)

MAX_FEED = 200


class EditorSessions:
    def __init__(
        self,
        store,
        dispatcher,
        redis_client=None,
        rates: RateCard = DEFAULT_RATES,
        poll_interval: float = DEFAULT_INTERVAL,
        autosave_delay: float = DEFAULT_DELAY,
        balance_max_age: float = 30.0,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.rates = rates
        self.poll_interval = poll_interval
        self.autosave_delay = autosave_delay
        self.balance_max_age = balance_max_age
        self.guard = NotificationGuard(store, sink=self._publish, redis_client=redis_client)
        self.feed: deque[Notification] = deque(maxlen=MAX_FEED)
        self._controllers: dict[StageRef, StageController] = {}
        self._ledgers: dict[str, CreditLedger] = {}
        self._lock = asyncio.Lock()

    def _publish(self, notification: Notification):
        log_sink(notification)
        self.feed.append(notification)

    def _on_unlock(self, ref: StageRef, keys: list):
        logger.info(f"[{ref}] Next stages ready: {', '.join(k.value for k in keys)}")

    def ledger_for(self, user_id: str) -> CreditLedger:
        ledger = self._ledgers.get(user_id)
        if ledger is None:
            ledger = CreditLedger(self.store, user_id, self.rates, self.balance_max_age)
            self._ledgers[user_id] = ledger
        return ledger

    def __len__(self) -> int:
        return len(self._controllers)

    async def open(self, ref: StageRef) -> StageController:
        """Open (or return the already-open) editor for a stage."""
        async with self._lock:
            controller = self._controllers.get(ref)
            if controller is not None and controller.state != ControllerState.CLOSED:
                return controller

            snapshot = await self.store.get_pipeline(ref.pipeline_id)
            controller = StageController(
                self.store,
                ref,
                ledger=self.ledger_for(snapshot.user_id),
                dispatcher=self.dispatcher,
                guard=self.guard,
                poll_interval=self.poll_interval,
                autosave_delay=self.autosave_delay,
                on_unlock=self._on_unlock,
            )
            await controller.open()
            self._controllers[ref] = controller
            return controller

    def get(self, ref: StageRef) -> StageController:
        controller = self._controllers.get(ref)
        if controller is None:
            raise RecordNotFoundError(f"Stage {ref} is not open")
        return controller

    async def close(self, ref: StageRef):
        """Close a stage editor; it stays registered if its final save fails."""
        controller = self.get(ref)
        await controller.close()
        if self._controllers.get(ref) is controller:
            del self._controllers[ref]

    async def close_all(self):
        refs = list(self._controllers)
        for ref in refs:
            controller = self._controllers.pop(ref)
            try:
                await controller.close()
            except Exception as e:
                logger.error(f"[{ref}] Close on shutdown failed: {e}", exc_info=True)
        if refs:
            logger.info(f"Closed {len(refs)} open stage(s)")

    def notifications(self, pipeline_id: Optional[str] = None) -> list[Notification]:
        if pipeline_id is None:
            return list(self.feed)
        return [n for n in self.feed if n.pipeline_id == pipeline_id]
