"""Pytest configuration and shared fixtures."""

import asyncio
import time
from typing import Optional

import pytest

from studio import metrics
from studio.dispatcher import DispatchResult
from studio.pipeline import poller
from studio.pipeline.controller import StageController
from studio.pipeline.credits import DEFAULT_RATES, CreditLedger, RateCard
from studio.pipeline.errors import StoreError
from studio.pipeline.models import GenerationStatus, PipelineType, StageKey, StageRef
from studio.pipeline.notifications import NotificationGuard
from studio.pipeline.store import MemoryStageStore

USER_ID = "user-1"
POLL_INTERVAL = 0.01
AUTOSAVE_DELAY = 0.01


class RecordingStore(MemoryStageStore):
    """MemoryStageStore that remembers every stage write, in order.

    Writes touching any field in `failing_fields` raise StoreError.
    """

    def __init__(self):
        super().__init__()
        self.stage_writes: list[tuple[StageRef, dict]] = []
        self.failing_fields: set = set()

    async def update_stage(self, ref, **fields):
        self.stage_writes.append((ref, dict(fields)))
        if self.failing_fields & set(fields):
            raise StoreError("database unavailable")
        return await super().update_stage(ref, **fields)

    def statuses_written(self, ref) -> list:
        return [fields["status"] for r, fields in self.stage_writes if r == ref and "status" in fields]


class FakeDispatcher:
    """Stands in for the trigger-generation endpoint."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.reject_with: Optional[str] = None
        self.before_reply = None

    async def dispatch(self, kind: str, payload: dict) -> DispatchResult:
        self.calls.append((kind, payload))
        if self.before_reply is not None:
            await self.before_reply(kind, payload)
        if self.reject_with:
            return DispatchResult(success=False, error=self.reject_with)
        return DispatchResult(success=True)

    async def aclose(self):
        pass


class FakeBackend:
    """Writes the terminal states the generation backend would write."""

    def __init__(self, store):
        self.store = store

    async def complete(self, ref: StageRef, url: str = "https://cdn.example.com/out.png", **output):
        return await self.store.update_stage(
            ref, status=GenerationStatus.COMPLETED, output={"url": url, **output}
        )

    async def fail(self, ref: StageRef, message: str = "Model timed out", refunded: Optional[float] = None):
        return await self.store.update_stage(
            ref, status=GenerationStatus.FAILED, error_message=message, refunded_credits=refunded
        )


@pytest.fixture(autouse=True)
def clean_state():
    """Metrics and the poller registry are process-wide."""
    metrics.reset()
    poller._active.clear()
    yield
    poller._active.clear()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def backend(store) -> FakeBackend:
    return FakeBackend(store)


@pytest.fixture
def notifications() -> list:
    return []


@pytest.fixture
def guard(store, notifications) -> NotificationGuard:
    return NotificationGuard(store, sink=notifications.append)


@pytest.fixture
def make_controller(store, dispatcher, guard):
    """Factory: creates a pipeline (unless given one) and opens a controller on one of its stages."""

    async def _make(
        pipeline_type: PipelineType = PipelineType.CLIPS,
        stage_key: StageKey = StageKey.FIRST_FRAME,
        balance: Optional[float] = 10.0,
        pipeline_id: Optional[str] = None,
        rates: RateCard = DEFAULT_RATES,
        open: bool = True,
    ) -> StageController:
        if pipeline_id is None:
            pipeline = await store.create_pipeline(USER_ID, pipeline_type)
            pipeline_id = pipeline.id
        if balance is not None:
            store.balances[USER_ID] = balance
        controller = StageController(
            store,
            StageRef(pipeline_id, stage_key),
            ledger=CreditLedger(store, USER_ID, rates),
            dispatcher=dispatcher,
            guard=guard,
            poll_interval=POLL_INTERVAL,
            autosave_delay=AUTOSAVE_DELAY,
        )
        if open:
            await controller.open()
        return controller

    return _make


@pytest.fixture
def eventually():
    """Await until `predicate()` is true, failing after `timeout` seconds."""

    async def _wait(predicate, timeout: float = 2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail("condition not reached in time")
            await asyncio.sleep(0.005)

    return _wait
