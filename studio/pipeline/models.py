"""
Pydantic models and enums for generation pipelines.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────────────

class GenerationStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageKey(str, Enum):
    FIRST_FRAME = "first_frame"
    LAST_FRAME = "last_frame"
    SCRIPT = "script"
    VOICE = "voice"
    PROMPT = "prompt"
    FINAL_VIDEO = "final_video"
    ANIMATE = "animate"


class PipelineType(str, Enum):
    TALKING_HEAD = "talking_head"
    LIP_SYNC = "lip_sync"
    B_ROLL = "b_roll"
    CLIPS = "clips"
    MOTION_GRAPHICS = "motion_graphics"


class ControllerState(str, Enum):
    EDITING = "editing"
    ADMITTING = "admitting"
    DISPATCHING = "dispatching"
    AWAITING_ACK = "awaiting_ack"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    UPLOADING = "uploading"
    CLOSED = "closed"


# ── Stage Inputs ─────────────────────────────────────────────────────────────

class FrameInput(BaseModel):
    mode: Literal["generate", "upload"] = "generate"
    prompt: str = ""
    image_type: Literal["ugc", "studio"] = "ugc"
    aspect_ratio: Literal["1:1", "9:16", "16:9"] = "9:16"
    resolution: Literal["1K", "2K", "4K"] = "2K"
    reference_images: list[str] = Field(default_factory=list, max_length=5)
    uploaded_url: Optional[str] = None


class ScriptInput(BaseModel):
    mode: Literal["generate", "paste"] = "generate"
    description: str = ""
    script_type: Literal[
        "sales", "educational", "entertainment", "tutorial", "story", "other"
    ] = "sales"
    duration_seconds: int = Field(30, gt=0, le=1800)
    pasted_text: Optional[str] = None


class VoiceSettings(BaseModel):
    stability: float = Field(0.5, ge=0, le=1)
    similarity: float = Field(0.75, ge=0, le=1)
    speed: float = Field(1.0, ge=0.5, le=2)


class VoiceInput(BaseModel):
    mode: Literal["generate", "upload"] = "generate"
    voice_id: Optional[str] = None
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)
    uploaded_url: Optional[str] = None


class MotionPromptInput(BaseModel):
    prompt: str = ""
    camera_motion: Optional[str] = None
    motion_intensity: int = Field(50, ge=0, le=100)


class FinalVideoInput(BaseModel):
    resolution: Literal["480p", "720p", "1080p"] = "720p"
    duration: int = Field(8, ge=1, le=300)  # b-roll clip length


class AnimateInput(BaseModel):
    prompt: str = ""
    duration: int = Field(8, ge=4, le=12)
    camera_fixed: bool = False
    aspect_ratio: Literal["1:1", "9:16", "16:9"] = "16:9"
    # Direct uploads that stand in for the upstream frame stages
    first_frame_url: Optional[str] = None
    last_frame_url: Optional[str] = None


# ── Stage Outputs ────────────────────────────────────────────────────────────

class MediaOutput(BaseModel):
    url: str
    generated_at: str = Field(default_factory=now_iso)
    generation_id: Optional[str] = None
    duration_seconds: Optional[float] = None


class ScriptOutput(BaseModel):
    text: str
    char_count: int = 0
    estimated_duration: float = 0
    generated_at: str = Field(default_factory=now_iso)
    generation_id: Optional[str] = None

    @model_validator(mode="after")
    def _fill_char_count(self):
        if not self.char_count:
            self.char_count = len(self.text)
        return self


class PromptOutput(BaseModel):
    text: str
    generated_at: str = Field(default_factory=now_iso)


# ── Records ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StageRef:
    """Address of one stage record: pipeline id + stage key."""
    pipeline_id: str
    stage_key: StageKey

    def __str__(self) -> str:
        return f"{self.pipeline_id}/{self.stage_key.value}"


class StageRecord(BaseModel):
    pipeline_id: str
    stage_key: StageKey
    input: dict = Field(default_factory=dict)
    output: Optional[dict] = None
    status: GenerationStatus = GenerationStatus.IDLE
    complete: bool = False
    generation_started_at: Optional[str] = None
    error_message: Optional[str] = None
    refunded_credits: Optional[float] = None
    notified_key: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _complete_requires_output(self):
        if self.complete and not self.output:
            raise ValueError(
                f"Stage {self.stage_key.value} of pipeline {self.pipeline_id} "
                "cannot be complete without an output"
            )
        return self

    @property
    def ref(self) -> StageRef:
        return StageRef(self.pipeline_id, self.stage_key)

    @property
    def output_url(self) -> Optional[str]:
        if not self.output:
            return None
        return self.output.get("url")


class PipelineRecord(BaseModel):
    id: str
    user_id: str
    project_id: Optional[str] = None
    pipeline_type: PipelineType = PipelineType.TALKING_HEAD
    name: str = "Untitled"
    tags: list[str] = Field(default_factory=list)
    workflow_status: Optional[str] = None  # kanban column
    folder_id: Optional[str] = None
    stages: dict[StageKey, StageRecord] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def stage(self, key: StageKey) -> StageRecord:
        record = self.stages.get(key)
        if record is None:
            return StageRecord(pipeline_id=self.id, stage_key=key)
        return record


# ── Ephemeral Job ────────────────────────────────────────────────────────────

@dataclass
class Job:
    """Runtime association between one dispatch attempt and its polling."""
    job_id: str
    stage: StageRef
    kind: Optional[str]
    started_at: str
    credits_cost: float = 0.0
    is_refine: bool = False
    prior_status: GenerationStatus = GenerationStatus.IDLE
    prior_started_at: Optional[str] = None
    local_optimistic: bool = True
    last_observed_status: Optional[GenerationStatus] = None
    notified_terminal: bool = False
    resumed: bool = False


# ── API Models ───────────────────────────────────────────────────────────────

class Notification(BaseModel):
    key: str
    pipeline_id: str
    stage_key: StageKey
    kind: Literal["completed", "failed"]
    title: str
    message: str = ""
    refunded_credits: Optional[float] = None
    created_at: str = Field(default_factory=now_iso)


class StageView(BaseModel):
    """What a presentation layer may read from an open stage."""
    pipeline_id: str
    stage_key: StageKey
    state: ControllerState
    status: GenerationStatus
    input: dict = Field(default_factory=dict)
    output: Optional[dict] = None
    complete: bool = False
    is_generating: bool = False
    can_generate: bool = False
    last_error: Optional[str] = None
    credits_cost: Optional[float] = None
    progress: int = 0
    estimated_seconds: Optional[int] = None
    time_remaining: Optional[str] = None
    unlocked_stages: list[StageKey] = Field(default_factory=list)


class StageProgress(BaseModel):
    stage_key: StageKey
    label: str
    unlocked: bool
    complete: bool
    status: GenerationStatus
    progress: int


class PipelineProgressResponse(BaseModel):
    pipeline_id: str
    pipeline_type: PipelineType
    workflow_status: Optional[str] = None
    stages: list[StageProgress] = Field(default_factory=list)


class PipelineCreateRequest(BaseModel):
    user_id: str
    project_id: Optional[str] = None
    pipeline_type: PipelineType = PipelineType.TALKING_HEAD
    name: str = "Untitled"
    workflow_status: Optional[str] = None
    folder_id: Optional[str] = None


class StageEditRequest(BaseModel):
    input: dict = Field(default_factory=dict)


class MetadataUpdateRequest(BaseModel):
    name: Optional[str] = None
    tags: Optional[list[str]] = None
    workflow_status: Optional[str] = None
    folder_id: Optional[str] = None


class RefineRequest(BaseModel):
    instructions: Optional[str] = None


class UploadRequest(BaseModel):
    url: str
    duration_seconds: Optional[float] = None


class PasteRequest(BaseModel):
    text: str = Field(..., min_length=1)
