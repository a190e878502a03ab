"""Tests for pipeline declarations, unlock rules and progress estimates."""

from datetime import datetime, timedelta, timezone

import pytest

from studio.pipeline.errors import ValidationError
from studio.pipeline.graph import (
    PIPELINE_GRAPHS,
    estimated_duration_seconds,
    graph_for,
    time_remaining,
)
from studio.pipeline.models import (
    GenerationStatus,
    PipelineRecord,
    PipelineType,
    StageKey,
    StageRecord,
)


def snapshot(pipeline_type: PipelineType, **stages) -> PipelineRecord:
    """Build a pipeline snapshot; each kwarg is stage_key=dict of StageRecord fields."""
    records = {
        StageKey(key): StageRecord(pipeline_id="p1", stage_key=StageKey(key), **fields)
        for key, fields in stages.items()
    }
    return PipelineRecord(id="p1", user_id="u1", pipeline_type=pipeline_type, stages=records)


DONE_FRAME = {"output": {"url": "https://x/f.png"}, "complete": True, "status": GenerationStatus.COMPLETED}


class TestDeclarations:
    @pytest.mark.parametrize(
        "pipeline_type, keys",
        [
            (PipelineType.TALKING_HEAD, ["first_frame", "script", "voice", "final_video"]),
            (PipelineType.LIP_SYNC, ["first_frame", "script", "voice", "final_video"]),
            (PipelineType.B_ROLL, ["first_frame", "prompt", "final_video"]),
            (PipelineType.CLIPS, ["first_frame", "last_frame", "animate"]),
            (PipelineType.MOTION_GRAPHICS, ["first_frame", "last_frame", "animate"]),
        ],
    )
    def test_stage_order(self, pipeline_type, keys):
        assert [k.value for k in graph_for(pipeline_type).stage_keys] == keys

    @pytest.mark.parametrize(
        "pipeline_type, kinds",
        [
            (PipelineType.TALKING_HEAD, ["pipeline_first_frame", "pipeline_script", "pipeline_voice", "pipeline_final_video"]),
            (PipelineType.LIP_SYNC, ["pipeline_first_frame", "pipeline_script", "pipeline_voice", "pipeline_lip_sync"]),
            (PipelineType.B_ROLL, ["pipeline_first_frame_b_roll", None, "pipeline_final_video_b_roll"]),
            (PipelineType.CLIPS, ["pipeline_first_frame_b_roll", "pipeline_first_frame_b_roll", "animate"]),
            (PipelineType.MOTION_GRAPHICS, ["pipeline_first_frame_b_roll", "pipeline_last_frame_b_roll", "animate"]),
        ],
    )
    def test_dispatch_kinds(self, pipeline_type, kinds):
        graph = graph_for(pipeline_type)
        assert [graph.spec(k).kind for k in graph.stage_keys] == kinds

    def test_every_type_declared(self):
        assert set(PIPELINE_GRAPHS) == set(PipelineType)

    def test_next_stage(self):
        graph = graph_for(PipelineType.TALKING_HEAD)
        assert graph.next_stage(StageKey.SCRIPT) == StageKey.VOICE
        assert graph.next_stage(StageKey.FINAL_VIDEO) is None

    def test_unknown_stage_for_type(self):
        with pytest.raises(ValidationError):
            graph_for(PipelineType.CLIPS).spec(StageKey.VOICE)

    def test_prompt_stage_is_manual_only(self):
        graph = graph_for(PipelineType.B_ROLL)
        assert graph.spec(StageKey.PROMPT).dispatchable is False
        with pytest.raises(ValidationError, match="manually"):
            graph.validate_dispatch(StageKey.PROMPT, snapshot(PipelineType.B_ROLL))


class TestUnlocking:
    def test_animate_locked_until_first_frame_complete(self):
        graph = graph_for(PipelineType.CLIPS)
        assert graph.is_unlocked(StageKey.ANIMATE, snapshot(PipelineType.CLIPS)) is False
        assert graph.is_unlocked(StageKey.ANIMATE, snapshot(PipelineType.CLIPS, first_frame=DONE_FRAME))

    def test_output_without_complete_does_not_unlock(self):
        graph = graph_for(PipelineType.CLIPS)
        pending = {"output": {"url": "https://x/f.png"}}
        assert graph.is_unlocked(StageKey.ANIMATE, snapshot(PipelineType.CLIPS, first_frame=pending)) is False

    def test_motion_graphics_needs_both_frames(self):
        graph = graph_for(PipelineType.MOTION_GRAPHICS)
        snap = snapshot(PipelineType.MOTION_GRAPHICS, first_frame=DONE_FRAME)
        assert graph.missing_dependencies(StageKey.ANIMATE, snap) == [StageKey.LAST_FRAME]

    def test_direct_upload_override_stands_in_for_upstream(self):
        graph = graph_for(PipelineType.MOTION_GRAPHICS)
        raw = {"first_frame_url": "https://x/a.png", "last_frame_url": "https://x/b.png"}
        snap = snapshot(PipelineType.MOTION_GRAPHICS, animate={"input": raw})
        assert graph.is_unlocked(StageKey.ANIMATE, snap)

    def test_unlocked_by(self):
        graph = graph_for(PipelineType.TALKING_HEAD)
        script_done = {"output": {"text": "Hi"}, "complete": True}
        snap = snapshot(PipelineType.TALKING_HEAD, script=script_done)
        assert graph.unlocked_by(StageKey.SCRIPT, snap) == [StageKey.VOICE]
        assert graph.unlocked_by(StageKey.FIRST_FRAME, snap) == []

    def test_validate_dispatch_names_missing_stages(self):
        graph = graph_for(PipelineType.TALKING_HEAD)
        with pytest.raises(ValidationError) as exc:
            graph.validate_dispatch(StageKey.FINAL_VIDEO, snapshot(PipelineType.TALKING_HEAD))
        assert "First Frame" in str(exc.value) and "Voice" in str(exc.value)
        assert exc.value.missing == ["first_frame", "voice"]

    def test_validate_dispatch_checks_input_first(self):
        graph = graph_for(PipelineType.TALKING_HEAD)
        with pytest.raises(ValidationError) as exc:
            graph.validate_dispatch(StageKey.VOICE, snapshot(PipelineType.TALKING_HEAD), {})
        assert exc.value.missing == ["voice_id"]

    def test_upload_mode_is_not_dispatchable(self):
        graph = graph_for(PipelineType.CLIPS)
        with pytest.raises(ValidationError):
            graph.validate_dispatch(
                StageKey.FIRST_FRAME, snapshot(PipelineType.CLIPS), {"mode": "upload", "prompt": "x"}
            )

    def test_invalid_input_reports_fields(self):
        graph = graph_for(PipelineType.CLIPS)
        with pytest.raises(ValidationError) as exc:
            graph.parse_input(StageKey.ANIMATE, {"duration": 30})
        assert exc.value.missing == ["duration"]


class TestProgress:
    @pytest.mark.parametrize(
        "fields, expected",
        [
            ({}, 0),
            ({"input": {"mode": "generate"}}, 0),
            ({"input": {"prompt": "fox"}}, 40),
            ({"input": {"prompt": "fox"}, "output": {"url": "u"}}, 90),
            (DONE_FRAME, 100),
        ],
    )
    def test_estimated_progress(self, fields, expected):
        graph = graph_for(PipelineType.CLIPS)
        snap = snapshot(PipelineType.CLIPS, first_frame=fields)
        assert graph.estimated_progress(StageKey.FIRST_FRAME, snap) == expected

    @pytest.mark.parametrize(
        "kind, params, expected",
        [
            ("pipeline_first_frame", {}, 30),
            ("pipeline_script", {}, 20),
            ("pipeline_voice", {"char_count": 20}, 10),
            ("pipeline_voice", {"char_count": 200}, 50),
            ("pipeline_lip_sync", {"audio_duration_seconds": 4}, 120),
            ("pipeline_final_video", {"audio_duration_seconds": 16}, 480),
            ("animate", {"duration": 8}, 120),
            (None, {}, 60),
        ],
    )
    def test_duration_estimates(self, kind, params, expected):
        assert estimated_duration_seconds(kind, params) == expected

    def test_time_remaining_strings(self):
        now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
        def started(seconds_ago):
            return (now - timedelta(seconds=seconds_ago)).isoformat()

        assert time_remaining(started(10), 40, now=now) == "~30s remaining"
        assert time_remaining(started(0), 150, now=now) == "~3m remaining"
        assert time_remaining(started(100), 40, now=now) == "Almost done..."
