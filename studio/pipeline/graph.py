"""
Static pipeline declarations.

One PipelineGraph per pipeline type declares its ordered stages, what each
stage needs before it can be dispatched, and which upstream outputs it reads.
Each stage carries its own typed input/output models, so no stage slot is
ever reused for another stage's data.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import (
    AnimateInput,
    FinalVideoInput,
    FrameInput,
    MediaOutput,
    MotionPromptInput,
    PipelineRecord,
    PipelineType,
    PromptOutput,
    ScriptInput,
    ScriptOutput,
    StageKey,
    VoiceInput,
)


# ── Required-input predicates ────────────────────────────────────────────────
# Each returns the names of the missing fields (empty when dispatchable).

def _frame_ready(data: FrameInput) -> list[str]:
    if data.mode == "upload":
        return ["mode=generate"]
    return [] if data.prompt.strip() else ["prompt"]


def _script_ready(data: ScriptInput) -> list[str]:
    if data.mode == "paste":
        return ["mode=generate"]
    return [] if data.description.strip() else ["description"]


def _voice_ready(data: VoiceInput) -> list[str]:
    if data.mode == "upload":
        return ["mode=generate"]
    return [] if data.voice_id else ["voice_id"]


def _always_ready(data: BaseModel) -> list[str]:
    return []


def _never_dispatched(data: BaseModel) -> list[str]:
    return ["manual entry"]


@dataclass(frozen=True)
class StageSpec:
    key: StageKey
    label: str
    kind: Optional[str]
    input_model: type
    output_model: type
    requires: tuple = ()
    reads: tuple = ()
    # upstream stage -> input field that may stand in for its output
    overrides: dict = field(default_factory=dict)
    input_ready: Callable = _always_ready

    @property
    def dispatchable(self) -> bool:
        return self.kind is not None


def _first_frame(kind: str) -> StageSpec:
    return StageSpec(
        StageKey.FIRST_FRAME, "First Frame", kind,
        FrameInput, MediaOutput, input_ready=_frame_ready,
    )


# ── Graph ────────────────────────────────────────────────────────────────────

class PipelineGraph:
    def __init__(self, pipeline_type: PipelineType, stages: list[StageSpec]):
        self.pipeline_type = pipeline_type
        self._stages = {spec.key: spec for spec in stages}
        self.stage_keys = [spec.key for spec in stages]

    def __contains__(self, key: StageKey) -> bool:
        return key in self._stages

    def spec(self, key: StageKey) -> StageSpec:
        try:
            return self._stages[key]
        except KeyError:
            raise ValidationError(
                f"Stage {key.value} does not exist in {self.pipeline_type.value} pipelines"
            ) from None

    def next_stage(self, key: StageKey) -> Optional[StageKey]:
        index = self.stage_keys.index(key)
        if index + 1 < len(self.stage_keys):
            return self.stage_keys[index + 1]
        return None

    # ── Typed payloads ───────────────────────────────────────────────────

    def parse_input(self, key: StageKey, raw: Optional[dict]) -> BaseModel:
        spec = self.spec(key)
        try:
            return spec.input_model(**(raw or {}))
        except PydanticValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(
                f"Invalid {spec.label} input: {', '.join(fields)}", missing=fields
            ) from e

    # ── Dependencies ─────────────────────────────────────────────────────

    def upstream_output(
        self,
        key: StageKey,
        snapshot: PipelineRecord,
        upstream: StageKey,
        raw_input: Optional[dict] = None,
    ) -> Optional[dict]:
        """The upstream output this stage would read, honouring direct-upload overrides."""
        spec = self.spec(key)
        data = snapshot.stage(key).input if raw_input is None else raw_input
        override_field = spec.overrides.get(upstream)
        if override_field and data.get(override_field):
            return {"url": data[override_field]}
        record = snapshot.stage(upstream)
        return record.output if record.complete else None

    def missing_dependencies(
        self,
        key: StageKey,
        snapshot: PipelineRecord,
        raw_input: Optional[dict] = None,
    ) -> list[StageKey]:
        spec = self.spec(key)
        return [
            upstream for upstream in spec.requires
            if self.upstream_output(key, snapshot, upstream, raw_input) is None
        ]

    def is_unlocked(self, key: StageKey, snapshot: PipelineRecord) -> bool:
        return not self.missing_dependencies(key, snapshot)

    def unlocked_by(self, key: StageKey, snapshot: PipelineRecord) -> list[StageKey]:
        """Stages depending on `key` that are unlocked in this snapshot."""
        return [
            spec.key for spec in self._stages.values()
            if key in spec.requires and self.is_unlocked(spec.key, snapshot)
        ]

    def validate_dispatch(
        self,
        key: StageKey,
        snapshot: PipelineRecord,
        raw_input: Optional[dict] = None,
    ) -> BaseModel:
        """
        Check a stage can be dispatched and return its typed input.

        Raises ValidationError naming the missing input field or upstream stage.
        """
        spec = self.spec(key)
        if not spec.dispatchable:
            raise ValidationError(
                f"{spec.label} is filled in manually and cannot be generated"
            )
        raw = snapshot.stage(key).input if raw_input is None else raw_input
        data = self.parse_input(key, raw)

        missing_input = spec.input_ready(data)
        if missing_input:
            raise ValidationError(
                f"{spec.label} is missing required input: {', '.join(missing_input)}",
                missing=missing_input,
            )

        missing = self.missing_dependencies(key, snapshot, raw)
        if missing:
            labels = [self.spec(k).label for k in missing]
            raise ValidationError(
                f"{spec.label} requires {', '.join(labels)} to be complete first",
                missing=[k.value for k in missing],
            )
        return data

    # ── Progress ─────────────────────────────────────────────────────────

    def estimated_progress(self, key: StageKey, snapshot: PipelineRecord) -> int:
        record = snapshot.stage(key)
        if record.complete:
            return 100
        if record.output:
            return 90
        if _has_input(record.input):
            return 40
        return 0


def _has_input(raw: dict) -> bool:
    return any(value for name, value in raw.items() if name != "mode")


# ── Declarations ─────────────────────────────────────────────────────────────

def _talking_head(pipeline_type: PipelineType, video_kind: str) -> PipelineGraph:
    return PipelineGraph(pipeline_type, [
        _first_frame("pipeline_first_frame"),
        StageSpec(
            StageKey.SCRIPT, "Script", "pipeline_script",
            ScriptInput, ScriptOutput, input_ready=_script_ready,
        ),
        StageSpec(
            StageKey.VOICE, "Voice", "pipeline_voice",
            VoiceInput, MediaOutput,
            requires=(StageKey.SCRIPT,), reads=(StageKey.SCRIPT,),
            input_ready=_voice_ready,
        ),
        StageSpec(
            StageKey.FINAL_VIDEO, "Final Video", video_kind,
            FinalVideoInput, MediaOutput,
            requires=(StageKey.FIRST_FRAME, StageKey.VOICE),
            reads=(StageKey.FIRST_FRAME, StageKey.VOICE),
        ),
    ])


def _frames_to_animate(pipeline_type: PipelineType, last_frame_kind: str, requires_last: bool) -> PipelineGraph:
    requires = (StageKey.FIRST_FRAME, StageKey.LAST_FRAME) if requires_last else (StageKey.FIRST_FRAME,)
    return PipelineGraph(pipeline_type, [
        _first_frame("pipeline_first_frame_b_roll"),
        StageSpec(
            StageKey.LAST_FRAME, "Last Frame", last_frame_kind,
            FrameInput, MediaOutput,
            reads=(StageKey.FIRST_FRAME,), input_ready=_frame_ready,
        ),
        StageSpec(
            StageKey.ANIMATE, "Animate", "animate",
            AnimateInput, MediaOutput,
            requires=requires,
            reads=(StageKey.FIRST_FRAME, StageKey.LAST_FRAME),
            overrides={
                StageKey.FIRST_FRAME: "first_frame_url",
                StageKey.LAST_FRAME: "last_frame_url",
            },
        ),
    ])


PIPELINE_GRAPHS: dict[PipelineType, PipelineGraph] = {
    PipelineType.TALKING_HEAD: _talking_head(PipelineType.TALKING_HEAD, "pipeline_final_video"),
    PipelineType.LIP_SYNC: _talking_head(PipelineType.LIP_SYNC, "pipeline_lip_sync"),
    PipelineType.B_ROLL: PipelineGraph(PipelineType.B_ROLL, [
        _first_frame("pipeline_first_frame_b_roll"),
        StageSpec(
            StageKey.PROMPT, "Prompt", None,
            MotionPromptInput, PromptOutput, input_ready=_never_dispatched,
        ),
        StageSpec(
            StageKey.FINAL_VIDEO, "Final Video", "pipeline_final_video_b_roll",
            FinalVideoInput, MediaOutput,
            requires=(StageKey.FIRST_FRAME,),
            reads=(StageKey.FIRST_FRAME, StageKey.PROMPT),
        ),
    ]),
    PipelineType.CLIPS: _frames_to_animate(
        PipelineType.CLIPS, "pipeline_first_frame_b_roll", requires_last=False
    ),
    PipelineType.MOTION_GRAPHICS: _frames_to_animate(
        PipelineType.MOTION_GRAPHICS, "pipeline_last_frame_b_roll", requires_last=True
    ),
}


def graph_for(pipeline_type: PipelineType) -> PipelineGraph:
    return PIPELINE_GRAPHS[pipeline_type]


# ── Duration Estimates ───────────────────────────────────────────────────────

def estimated_duration_seconds(kind: Optional[str], params: dict) -> int:
    """Rough wall-clock estimate for a generation, for progress display only."""
    if kind in ("pipeline_first_frame", "pipeline_first_frame_b_roll", "pipeline_last_frame_b_roll"):
        return 30
    if kind == "pipeline_script":
        return 20
    if kind == "pipeline_voice":
        chars = params.get("char_count") or len(params.get("script_text") or "")
        if not chars:
            return 30
        return max(10, math.ceil(chars / 20 * 5))
    if kind in ("pipeline_final_video", "pipeline_lip_sync"):
        seconds = params.get("audio_duration_seconds")
        if not seconds:
            return 240
        return max(120, math.ceil(seconds / 8 * 240))
    if kind in ("animate", "pipeline_final_video_b_roll"):
        return 120
    return 60


def time_remaining(
    started_at: str,
    estimated_seconds: int,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    started = datetime.fromisoformat(started_at)
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    elapsed = (now - started).total_seconds()
    remaining = max(0.0, estimated_seconds - elapsed)

    if remaining <= 0:
        return "Almost done..."
    if remaining < 60:
        return f"~{math.ceil(remaining)}s remaining"
    return f"~{math.ceil(remaining / 60)}m remaining"
