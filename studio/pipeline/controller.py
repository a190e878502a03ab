"""
StageController: the generation state machine for one open stage.

    EDITING ──generate──▶ ADMITTING ──affordable──▶ DISPATCHING ──accepted──▶ AWAITING_ACK
       ▲                     │                          │                        │ record shows our
       │◀── validation / ────┘                          │                        ▼ marker + processing
       │    insufficient credits       rejected ────────┘                     POLLING
       │                                                                         │
       │◀──────────── edit / generate again ───── COMPLETED / FAILED ◀───────────┘

    EDITING ──upload / paste──▶ UPLOADING ──▶ COMPLETED   (never passes through processing)

All commands and poll observations for a stage go through one asyncio.Lock,
so the controller's state has a single mutation path. The controller only
reacts to record status while it owns a Job; any other change to the record
is left alone.
"""

import asyncio
import logging
from typing import Callable, Optional
from uuid import uuid4

from .. import metrics
from .autosave import DEFAULT_DELAY, AutoSaveCoordinator
from .credits import CreditLedger
from .errors import (
    DispatchRejectedError,
    InsufficientCreditsError,
    JobFailedError,
    PersistenceError,
    StoreError,
    StudioError,
    ValidationError,
)
from .graph import PipelineGraph, estimated_duration_seconds, graph_for, time_remaining
from .models import (
    ControllerState,
    GenerationStatus,
    Job,
    MediaOutput,
    PipelineRecord,
    PromptOutput,
    ScriptOutput,
    StageKey,
    StageRecord,
    StageRef,
    StageView,
    now_iso,
)
from .notifications import NotificationGuard, failure_message
from .payloads import build_stage_payload
from .poller import DEFAULT_INTERVAL, JobPoller

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("name", "tags", "workflow_status", "folder_id")
WORDS_PER_SECOND = 2.5

OnUnlock = Callable[[StageRef, list], None]


class StageController:
    """
    Usage:
        controller = StageController(store, ref, ledger, dispatcher, guard)
        await controller.open()
        await controller.edit(prompt="a red fox at dawn")
        await controller.generate()
        ...
        await controller.close()
    """

    def __init__(
        self,
        store,
        ref: StageRef,
        ledger: CreditLedger,
        dispatcher,
        guard: NotificationGuard,
        poll_interval: float = DEFAULT_INTERVAL,
        autosave_delay: float = DEFAULT_DELAY,
        on_unlock: Optional[OnUnlock] = None,
    ):
        self.ref = ref
        self.ledger = ledger
        self._store = store
        self._dispatcher = dispatcher
        self._guard = guard
        self._on_unlock = on_unlock

        self.state = ControllerState.EDITING
        self.job: Optional[Job] = None
        self.last_error: Optional[StudioError] = None
        self.unlocked: list[StageKey] = []

        self._snapshot: Optional[PipelineRecord] = None
        self._record: Optional[StageRecord] = None
        self._input: dict = {}
        self._metadata: dict = {}
        self._loaded = False

        self._mutex = asyncio.Lock()
        self._settled = asyncio.Event()
        self._settled.set()
        self._poller = JobPoller(store, self._on_record, poll_interval)
        self._autosave = AutoSaveCoordinator(
            self._persist_edits, autosave_delay,
            on_error=self._on_autosave_error, name=str(ref),
        )

    # ── Read-only surface ────────────────────────────────────────────────

    @property
    def graph(self) -> PipelineGraph:
        return graph_for(self._snapshot.pipeline_type)

    @property
    def label(self) -> str:
        return self.graph.spec(self.ref.stage_key).label

    @property
    def status(self) -> GenerationStatus:
        return self._record.status if self._record else GenerationStatus.IDLE

    @property
    def output(self) -> Optional[dict]:
        return self._record.output if self._record else None

    @property
    def input(self) -> dict:
        return dict(self._input)

    @property
    def is_generating(self) -> bool:
        return self.job is not None

    @property
    def local_optimistic(self) -> bool:
        return self.job is not None and self.job.local_optimistic

    @property
    def poller(self) -> JobPoller:
        return self._poller

    @property
    def autosave(self) -> AutoSaveCoordinator:
        return self._autosave

    def _current_snapshot(self) -> PipelineRecord:
        """Server snapshot with this stage's local (possibly unsaved) state laid over it."""
        record = self._record.model_copy(update={"input": dict(self._input)})
        stages = {**self._snapshot.stages, self.ref.stage_key: record}
        return self._snapshot.model_copy(update={"stages": stages})

    def _quote(self) -> Optional[tuple]:
        """(typed input, payload fields, cost) for a plain generate, or None if not dispatchable."""
        graph = self.graph
        spec = graph.spec(self.ref.stage_key)
        if not spec.dispatchable:
            return None
        snapshot = self._current_snapshot()
        try:
            data = graph.validate_dispatch(self.ref.stage_key, snapshot, self._input)
            params = build_stage_payload(graph, self.ref.stage_key, snapshot, data)
            return data, params, self.ledger.estimate_cost(spec.kind, params)
        except ValidationError:
            return None

    @property
    def can_generate(self) -> bool:
        if not self._loaded or self.state == ControllerState.CLOSED or self.is_generating:
            return False
        quote = self._quote()
        return quote is not None and self.ledger.affordable(quote[2])

    def view(self) -> StageView:
        self._ensure_open()
        spec = self.graph.spec(self.ref.stage_key)
        quote = self._quote()
        params = quote[1] if quote else {}
        estimate = estimated_duration_seconds(spec.kind, params) if spec.dispatchable else None

        remaining = None
        if self.is_generating and self.job.started_at and estimate:
            remaining = time_remaining(self.job.started_at, estimate)

        return StageView(
            pipeline_id=self.ref.pipeline_id,
            stage_key=self.ref.stage_key,
            state=self.state,
            status=self.status,
            input=self.input,
            output=self.output,
            complete=self._record.complete,
            is_generating=self.is_generating,
            can_generate=self.can_generate,
            last_error=str(self.last_error) if self.last_error else None,
            credits_cost=quote[2] if quote else None,
            progress=self.graph.estimated_progress(self.ref.stage_key, self._current_snapshot()),
            estimated_seconds=estimate,
            time_remaining=remaining,
            unlocked_stages=list(self.unlocked),
        )

    def _ensure_open(self):
        if not self._loaded:
            raise ValidationError(f"Stage {self.ref} is not open")
        if self.state == ControllerState.CLOSED:
            raise ValidationError(f"Stage {self.ref} has been closed")

    def _leave_terminal(self):
        if self.state in (ControllerState.COMPLETED, ControllerState.FAILED):
            self.state = ControllerState.EDITING

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def open(self) -> StageView:
        """Load the stage; resume polling if a job is still running server-side."""
        async with self._mutex:
            snapshot = await self._store.get_pipeline(self.ref.pipeline_id)
            graph_for(snapshot.pipeline_type).spec(self.ref.stage_key)
            self._snapshot = snapshot
            self._record = snapshot.stage(self.ref.stage_key)

            # Local state is seeded from the server once; later server
            # changes never overwrite in-progress edits.
            if not self._loaded:
                self._input = dict(self._record.input)
                self._metadata = {name: getattr(snapshot, name) for name in METADATA_FIELDS}
                self._loaded = True

            await self.ledger.refresh()

            if self._record.status == GenerationStatus.PROCESSING and self.job is None:
                self.job = Job(
                    job_id=str(uuid4()),
                    stage=self.ref,
                    kind=self.graph.spec(self.ref.stage_key).kind,
                    started_at=self._record.generation_started_at or now_iso(),
                    local_optimistic=False,
                    last_observed_status=GenerationStatus.PROCESSING,
                    resumed=True,
                )
                self.state = ControllerState.POLLING
                self._settled.clear()
                self._poller.start(self.ref)
                logger.info(f"[{self.ref}] Reopened while processing, resuming polling")
            else:
                self.state = ControllerState.EDITING

            metrics.add_gauge("open_stages", 1)
            logger.info(f"[{self.ref}] Opened ({self._record.status.value})")
            return self.view()

    async def close(self):
        """
        Stop polling and persist any unsaved edits.

        Waits for an in-progress dispatch to finish; a job the backend already
        accepted keeps running server-side and polling resumes on reopen.

        If the final save fails the stage stays open with its edits intact,
        so close can be retried.
        """
        async with self._mutex:
            if self.state == ControllerState.CLOSED:
                return
            await self._poller.stop()
            try:
                await self._autosave.close()
            except PersistenceError as e:
                self.last_error = e
                if self.job is not None:
                    self._poller.start(self.ref)
                logger.error(f"[{self.ref}] Final save on close failed, stage kept open: {e}")
                raise

            self.state = ControllerState.CLOSED
            self._settled.set()
            if self._loaded:
                metrics.add_gauge("open_stages", -1)
            logger.info(f"[{self.ref}] Closed")

    async def wait_until_settled(self, timeout: Optional[float] = None) -> ControllerState:
        """Wait until no job is in flight (terminal, reverted or closed)."""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.state

    # ── Editing ──────────────────────────────────────────────────────────

    async def edit(self, **fields) -> StageView:
        async with self._mutex:
            self._ensure_open()
            merged = {**self._input, **fields}
            self.graph.parse_input(self.ref.stage_key, merged)
            self._input = merged
            self._leave_terminal()
            self._autosave.mark_dirty()
            return self.view()

    async def update_metadata(self, **fields) -> StageView:
        async with self._mutex:
            self._ensure_open()
            unknown = set(fields) - set(METADATA_FIELDS)
            if unknown:
                raise ValidationError(f"Unknown pipeline fields: {', '.join(sorted(unknown))}")
            self._metadata.update(fields)
            self._autosave.mark_dirty()
            return self.view()

    async def _persist_edits(self):
        await self._store.update_stage(self.ref, input=dict(self._input))
        await self._store.update_pipeline(self.ref.pipeline_id, **self._metadata)

    def _on_autosave_error(self, error: PersistenceError):
        self.last_error = error

    # ── Generation ───────────────────────────────────────────────────────

    async def generate(self) -> StageView:
        return await self._generate("generate")

    async def regenerate(self) -> StageView:
        return await self._generate("regenerate")

    async def refine(self, instructions: Optional[str] = None) -> StageView:
        return await self._generate("refine", is_refine=True, instructions=instructions)

    async def _generate(
        self,
        command: str,
        is_refine: bool = False,
        instructions: Optional[str] = None,
    ) -> StageView:
        async with self._mutex:
            self._ensure_open()
            if self.is_generating:
                raise ValidationError(f"{self.label} is already generating")

            self._leave_terminal()
            self.state = ControllerState.ADMITTING
            self.last_error = None
            job = None
            try:
                self._snapshot = await self._store.get_pipeline(self.ref.pipeline_id)
                self._record = self._snapshot.stage(self.ref.stage_key)
                previous_output = self._record.output
                if command != "generate" and not previous_output:
                    raise ValidationError(f"{self.label} has no output to {command} yet")

                graph = self.graph
                spec = graph.spec(self.ref.stage_key)
                snapshot = self._current_snapshot()
                data = graph.validate_dispatch(self.ref.stage_key, snapshot, self._input)
                params = build_stage_payload(
                    graph, self.ref.stage_key, snapshot, data,
                    is_refine=is_refine, previous_output=previous_output,
                    instructions=instructions,
                )
                cost = self.ledger.estimate_cost(spec.kind, params)

                if not await self.ledger.can_afford(cost):
                    metrics.inc_counter("admission.denied")
                    raise InsufficientCreditsError(cost, self.ledger.balance)

                self.state = ControllerState.DISPATCHING
                await self._autosave.flush()

                job = Job(
                    job_id=str(uuid4()),
                    stage=self.ref,
                    kind=spec.kind,
                    started_at=now_iso(),
                    credits_cost=cost,
                    is_refine=is_refine,
                    prior_status=self._record.status,
                    prior_started_at=self._record.generation_started_at,
                )
                self.job = job
                self._settled.clear()
                self._record = await self._write_stage(
                    status=GenerationStatus.PROCESSING,
                    generation_started_at=job.started_at,
                    error_message=None,
                    refunded_credits=None,
                )

                payload = {
                    "pipeline_id": self.ref.pipeline_id,
                    "file_id": f"{self.ref.pipeline_id}:{self.ref.stage_key.value}",
                    "stage_key": self.ref.stage_key.value,
                    "pipeline_type": self._snapshot.pipeline_type.value,
                    "user_id": self._snapshot.user_id,
                    "job_id": job.job_id,
                    "credits_cost": cost,
                    "is_edit": is_refine,
                    **params,
                }
                try:
                    result = await self._dispatcher.dispatch(spec.kind, payload)
                except BaseException as e:
                    logger.error(f"[{self.ref}] {command} dispatch aborted: {e!r}", exc_info=True)
                    await self._revert(job)
                    self.job = None
                    self.state = ControllerState.EDITING
                    self._settled.set()
                    raise
                if not result.success:
                    await self._revert(job)
                    raise DispatchRejectedError(result.error or "Generation failed")

                self.state = ControllerState.AWAITING_ACK
                self._poller.start(self.ref)
                logger.info(f"[{self.ref}] {command} accepted (job {job.job_id}, cost={cost:.2f})")
                return self.view()

            except StudioError as e:
                if self.job is job and job is not None:
                    self.job = None
                self.last_error = e
                self.state = ControllerState.EDITING
                self._settled.set()
                logger.warning(f"[{self.ref}] {command} did not start: {e}")
                raise

    async def _write_stage(self, **fields) -> StageRecord:
        try:
            return await self._store.update_stage(self.ref, **fields)
        except StoreError as e:
            raise PersistenceError(f"Could not update {self.label}: {e}") from e

    async def _revert(self, job: Job):
        job.local_optimistic = False
        try:
            self._record = await self._store.update_stage(
                self.ref,
                status=job.prior_status,
                generation_started_at=job.prior_started_at,
            )
        except StoreError as e:
            logger.error(f"[{self.ref}] Could not revert status after failed dispatch: {e}")
        metrics.inc_counter("dispatch.reverted")

    # ── Poll observations ────────────────────────────────────────────────

    async def _on_record(self, record: StageRecord) -> bool:
        """Poll callback. Returns False once the job reached a terminal state."""
        async with self._mutex:
            job = self.job
            if job is None or self.state == ControllerState.CLOSED:
                return False

            job.last_observed_status = record.status
            ours = record.generation_started_at == job.started_at

            if self.state == ControllerState.AWAITING_ACK:
                if not ours:
                    logger.debug(f"[{self.ref}] Ignoring record from an earlier run")
                    return True
                self._record = record
                if record.status == GenerationStatus.PROCESSING:
                    job.local_optimistic = False
                    self.state = ControllerState.POLLING
                    logger.info(f"[{self.ref}] Backend picked up job {job.job_id}")
                    return True
                job.local_optimistic = False

            self._record = record
            if record.status == GenerationStatus.PROCESSING:
                return True
            if record.status == GenerationStatus.COMPLETED:
                if not record.output:
                    logger.warning(f"[{self.ref}] Completed without output yet, still polling")
                    return True
                await self._finish_completed(job, record)
                return False
            if record.status == GenerationStatus.FAILED:
                await self._finish_failed(job, record)
                return False

            # Back to idle underneath us: the job was dropped server-side
            logger.warning(f"[{self.ref}] Job {job.job_id} reset to idle by the backend")
            self.last_error = JobFailedError("Generation was cancelled")
            self._end_job(ControllerState.EDITING)
            return False

    def _end_job(self, state: ControllerState):
        if self.job is not None:
            self.job.local_optimistic = False
        self.job = None
        self.state = state
        self._settled.set()

    async def _finish_completed(self, job: Job, record: StageRecord):
        if not record.complete:
            try:
                record = await self._store.update_stage(self.ref, complete=True)
            except StoreError as e:
                logger.warning(f"[{self.ref}] Could not mark stage complete: {e}")
        self._record = record

        job.notified_terminal = True
        await self._guard.notify_once(record, "completed", label=self.label)
        metrics.inc_counter("jobs.completed")
        logger.info(f"[{self.ref}] Job {job.job_id} completed: {record.output_url}")
        await self._refresh_unlocks()
        self._end_job(ControllerState.COMPLETED)

    async def _finish_failed(self, job: Job, record: StageRecord):
        self.last_error = JobFailedError(
            record.error_message or "Generation failed",
            refunded_credits=record.refunded_credits,
        )
        job.notified_terminal = True
        await self._guard.notify_once(
            record, "failed", label=self.label, message=failure_message(record)
        )
        metrics.inc_counter("jobs.failed")
        logger.warning(f"[{self.ref}] Job {job.job_id} failed: {record.error_message}")
        self._end_job(ControllerState.FAILED)

    async def _refresh_unlocks(self):
        try:
            self._snapshot = await self._store.get_pipeline(self.ref.pipeline_id)
        except StoreError as e:
            logger.warning(f"[{self.ref}] Could not refresh pipeline after completion: {e}")
            return
        self.unlocked = self.graph.unlocked_by(self.ref.stage_key, self._snapshot)
        if self.unlocked:
            logger.info(f"[{self.ref}] Unlocked {', '.join(k.value for k in self.unlocked)}")
            if self._on_unlock is not None:
                self._on_unlock(self.ref, list(self.unlocked))

    # ── Manual outputs (upload / paste) ──────────────────────────────────

    async def upload(self, url: str, duration_seconds: Optional[float] = None) -> StageView:
        """Use a user-supplied asset as this stage's output. No job, no credits."""
        async with self._mutex:
            self._ensure_open()
            spec = self.graph.spec(self.ref.stage_key)
            if spec.output_model is not MediaOutput or "uploaded_url" not in spec.input_model.model_fields:
                raise ValidationError(f"{spec.label} does not accept uploads")
            output = MediaOutput(url=url, duration_seconds=duration_seconds)
            return await self._complete_manually({"mode": "upload", "uploaded_url": url}, output.model_dump())

    async def paste(self, text: str) -> StageView:
        """Use user-entered text (script or motion prompt) as this stage's output."""
        async with self._mutex:
            self._ensure_open()
            spec = self.graph.spec(self.ref.stage_key)
            if spec.output_model is ScriptOutput:
                words = len(text.split())
                output = ScriptOutput(text=text, estimated_duration=round(words / WORDS_PER_SECOND, 1))
                changes = {"mode": "paste", "pasted_text": text}
            elif spec.output_model is PromptOutput:
                output = PromptOutput(text=text)
                changes = {"prompt": text}
            else:
                raise ValidationError(f"{spec.label} does not accept pasted text")
            return await self._complete_manually(changes, output.model_dump())

    async def _complete_manually(self, input_changes: dict, output: dict) -> StageView:
        if self.is_generating:
            raise ValidationError(f"{self.label} is already generating")
        self._leave_terminal()
        previous_state = self.state
        self.state = ControllerState.UPLOADING
        self.last_error = None
        try:
            merged = {**self._input, **input_changes}
            self.graph.parse_input(self.ref.stage_key, merged)
            self._input = merged
            await self._autosave.flush()
            self._record = await self._write_stage(
                input=dict(self._input),
                output=output,
                complete=True,
                status=GenerationStatus.COMPLETED,
                error_message=None,
            )
        except StudioError as e:
            self.last_error = e
            self.state = previous_state
            raise
        self.state = ControllerState.COMPLETED
        logger.info(f"[{self.ref}] Output provided manually")
        await self._refresh_unlocks()
        return self.view()
