"""
Dispatch payload builders, one per generation kind.

Builders only gather stage-specific fields; the controller adds the common
envelope (file id, user id, credits_cost, refine flag).
"""

from typing import Optional

from .errors import ValidationError
from .graph import PipelineGraph
from .models import PipelineRecord, StageKey


def _reference_images(data, is_refine: bool, previous_output: Optional[dict]) -> list[str]:
    refs = list(data.reference_images)
    if is_refine and previous_output and previous_output.get("url"):
        refs = [previous_output["url"], *refs]
    return refs[:5]


def _frame(graph, key, snapshot, data, is_refine, previous_output, instructions):
    prompt = data.prompt
    if is_refine and instructions:
        prompt = instructions
    payload = {
        "prompt": prompt,
        "image_type": data.image_type,
        "aspect_ratio": data.aspect_ratio,
        "resolution": data.resolution,
        "reference_images": _reference_images(data, is_refine, previous_output),
    }
    if key == StageKey.LAST_FRAME:
        first = graph.upstream_output(key, snapshot, StageKey.FIRST_FRAME, data.model_dump())
        payload["frame_type"] = "last"
        payload["first_frame_url"] = first.get("url") if first else None
    return payload


def _script(graph, key, snapshot, data, is_refine, previous_output, instructions):
    payload = {
        "description": data.description,
        "script_type": data.script_type,
        "duration_seconds": data.duration_seconds,
    }
    if is_refine and previous_output:
        payload["previous_script"] = previous_output.get("text")
        if instructions:
            payload["edit_instructions"] = instructions
    return payload


def _voice(graph, key, snapshot, data, is_refine, previous_output, instructions):
    script = graph.upstream_output(key, snapshot, StageKey.SCRIPT) or {}
    text = script.get("text") or ""
    return {
        "script_text": text,
        "char_count": len(text),
        "voice_id": data.voice_id,
        "voice_settings": data.voice_settings.model_dump(),
    }


def _talking_video(graph, key, snapshot, data, is_refine, previous_output, instructions):
    frame = graph.upstream_output(key, snapshot, StageKey.FIRST_FRAME) or {}
    voice = graph.upstream_output(key, snapshot, StageKey.VOICE) or {}
    duration = voice.get("duration_seconds")
    if not duration:
        raise ValidationError(
            "Voice output has no duration; regenerate or re-upload the voice",
            missing=["voice.duration_seconds"],
        )
    return {
        "first_frame_url": frame.get("url"),
        "audio_url": voice.get("url"),
        "audio_duration_seconds": duration,
        "resolution": data.resolution,
    }


def _b_roll_video(graph, key, snapshot, data, is_refine, previous_output, instructions):
    frame = graph.upstream_output(key, snapshot, StageKey.FIRST_FRAME) or {}
    prompt_record = snapshot.stage(StageKey.PROMPT)
    prompt_input = prompt_record.input or {}
    prompt_text = (prompt_record.output or {}).get("text") or prompt_input.get("prompt")
    return {
        "first_frame_url": frame.get("url"),
        "motion_prompt": prompt_text or None,
        "camera_motion": prompt_input.get("camera_motion"),
        "motion_intensity": prompt_input.get("motion_intensity"),
        "duration": data.duration,
        "resolution": data.resolution,
    }


def _animate(graph, key, snapshot, data, is_refine, previous_output, instructions):
    raw = data.model_dump()
    first = graph.upstream_output(key, snapshot, StageKey.FIRST_FRAME, raw) or {}
    last = graph.upstream_output(key, snapshot, StageKey.LAST_FRAME, raw) or {}
    return {
        "first_frame_url": first.get("url"),
        "last_frame_url": last.get("url"),
        "prompt": data.prompt or None,
        "duration": data.duration,
        "camera_fixed": data.camera_fixed,
        "aspect_ratio": data.aspect_ratio,
        "animation_type": graph.pipeline_type.value,
    }


BUILDERS = {
    "pipeline_first_frame": _frame,
    "pipeline_first_frame_b_roll": _frame,
    "pipeline_last_frame_b_roll": _frame,
    "pipeline_script": _script,
    "pipeline_voice": _voice,
    "pipeline_final_video": _talking_video,
    "pipeline_lip_sync": _talking_video,
    "pipeline_final_video_b_roll": _b_roll_video,
    "animate": _animate,
}


def build_stage_payload(
    graph: PipelineGraph,
    key: StageKey,
    snapshot: PipelineRecord,
    data,
    is_refine: bool = False,
    previous_output: Optional[dict] = None,
    instructions: Optional[str] = None,
) -> dict:
    kind = graph.spec(key).kind
    builder = BUILDERS.get(kind)
    if builder is None:
        raise ValidationError(f"No payload builder for generation kind {kind}")
    return builder(graph, key, snapshot, data, is_refine, previous_output, instructions)
