"""
Stage Generation Pipelines

Orchestration for multi-stage AI content pipelines:
  Graph      — which stages exist per pipeline type and what each one needs
  Controller — per-stage state machine: admission → dispatch → polling → terminal
  Sessions   — open stage editors sharing one store, dispatcher and ledger per user
"""

from .controller import StageController
from .graph import PIPELINE_GRAPHS, graph_for
from .models import ControllerState, GenerationStatus, PipelineType, StageKey, StageRef
from .routes import pipeline_router
from .sessions import EditorSessions

__all__ = [
    "StageController",
    "EditorSessions",
    "PIPELINE_GRAPHS",
    "graph_for",
    "pipeline_router",
    "ControllerState",
    "GenerationStatus",
    "PipelineType",
    "StageKey",
    "StageRef",
]
