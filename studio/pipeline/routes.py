"""
FastAPI routes for the stage editor.

Pipeline Endpoints:
  POST  /pipelines                                  — Create a pipeline (all stages idle)
  GET   /pipelines/{id}                             — Per-stage progress + unlock state
  GET   /pipelines/{id}/notifications               — Terminal notifications fired so far

Stage Session Endpoints (/pipelines/{id}/stages/{stage_key}/...):
  POST  open | close                                — Start / end an editing session
  GET   (view)                                      — Current StageView
  PATCH input | metadata                            — Debounced edits
  POST  generate | regenerate | refine              — Admission check + dispatch
  POST  upload | paste                              — Provide the output directly

Errors:
  - 400: Missing input or upstream stage not complete
  - 402: Insufficient credits (backend was not contacted)
  - 404: Unknown pipeline, or stage not open
  - 502: Generation backend rejected the request
  - 503: Record store unavailable / edits could not be saved
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from .errors import (
    DispatchRejectedError,
    InsufficientCreditsError,
    PersistenceError,
    RecordNotFoundError,
    StoreError,
    ValidationError,
)
from .graph import graph_for
from .models import (
    MetadataUpdateRequest,
    Notification,
    PasteRequest,
    PipelineCreateRequest,
    PipelineProgressResponse,
    PipelineRecord,
    RefineRequest,
    StageEditRequest,
    StageKey,
    StageProgress,
    StageRef,
    StageView,
    UploadRequest,
)
from .sessions import EditorSessions

logger = logging.getLogger(__name__)


pipeline_router = APIRouter(prefix="/pipelines", tags=["pipelines"])


def get_sessions(request: Request) -> EditorSessions:
    return request.app.state.sessions


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InsufficientCreditsError):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, DispatchRejectedError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, (PersistenceError, StoreError)):
        logger.error(f"{action} failed: {e}")
        return HTTPException(status_code=503, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


def _progress(pipeline: PipelineRecord) -> PipelineProgressResponse:
    graph = graph_for(pipeline.pipeline_type)
    stages = []
    for key in graph.stage_keys:
        record = pipeline.stage(key)
        stages.append(StageProgress(
            stage_key=key,
            label=graph.spec(key).label,
            unlocked=graph.is_unlocked(key, pipeline),
            complete=record.complete,
            status=record.status,
            progress=graph.estimated_progress(key, pipeline),
        ))
    return PipelineProgressResponse(
        pipeline_id=pipeline.id,
        pipeline_type=pipeline.pipeline_type,
        workflow_status=pipeline.workflow_status,
        stages=stages,
    )


# ── A. Pipelines ─────────────────────────────────────────────────────────────

@pipeline_router.post("", response_model=PipelineProgressResponse)
async def create_pipeline(
    request: PipelineCreateRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        fields = request.model_dump(exclude={"user_id", "pipeline_type"}, exclude_none=True)
        pipeline = await sessions.store.create_pipeline(
            request.user_id, request.pipeline_type, **fields
        )
        return _progress(pipeline)
    except Exception as e:
        raise _http_error(e, "Create pipeline")


@pipeline_router.get("/{pipeline_id}", response_model=PipelineProgressResponse)
async def get_pipeline_progress(
    pipeline_id: str,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        return _progress(await sessions.store.get_pipeline(pipeline_id))
    except Exception as e:
        raise _http_error(e, "Get pipeline")


@pipeline_router.get("/{pipeline_id}/notifications", response_model=list[Notification])
async def list_notifications(
    pipeline_id: str,
    sessions: EditorSessions = Depends(get_sessions),
):
    return sessions.notifications(pipeline_id)


# ── B. Stage Sessions ────────────────────────────────────────────────────────

@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/open", response_model=StageView)
async def open_stage(
    pipeline_id: str,
    stage_key: StageKey,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        controller = await sessions.open(StageRef(pipeline_id, stage_key))
        return controller.view()
    except Exception as e:
        raise _http_error(e, "Open stage")


@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/close")
async def close_stage(
    pipeline_id: str,
    stage_key: StageKey,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        await sessions.close(StageRef(pipeline_id, stage_key))
        return {"status": "closed"}
    except Exception as e:
        raise _http_error(e, "Close stage")


@pipeline_router.get("/{pipeline_id}/stages/{stage_key}", response_model=StageView)
async def get_stage_view(
    pipeline_id: str,
    stage_key: StageKey,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        return sessions.get(StageRef(pipeline_id, stage_key)).view()
    except Exception as e:
        raise _http_error(e, "Get stage")


# ── C. Edits (auto-saved) ────────────────────────────────────────────────────

@pipeline_router.patch("/{pipeline_id}/stages/{stage_key}/input", response_model=StageView)
async def edit_stage_input(
    pipeline_id: str,
    stage_key: StageKey,
    request: StageEditRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        controller = sessions.get(StageRef(pipeline_id, stage_key))
        return await controller.edit(**request.input)
    except Exception as e:
        raise _http_error(e, "Edit stage")


@pipeline_router.patch("/{pipeline_id}/stages/{stage_key}/metadata", response_model=StageView)
async def update_pipeline_metadata(
    pipeline_id: str,
    stage_key: StageKey,
    request: MetadataUpdateRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    """Name, tags, kanban column and folder: saved with the stage's edit bundle."""
    try:
        controller = sessions.get(StageRef(pipeline_id, stage_key))
        return await controller.update_metadata(**request.model_dump(exclude_unset=True))
    except Exception as e:
        raise _http_error(e, "Update metadata")


# ── D. Generation ────────────────────────────────────────────────────────────

@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/generate", response_model=StageView)
async def generate_stage(
    pipeline_id: str,
    stage_key: StageKey,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        return await sessions.get(StageRef(pipeline_id, stage_key)).generate()
    except Exception as e:
        raise _http_error(e, "Generate")


@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/regenerate", response_model=StageView)
async def regenerate_stage(
    pipeline_id: str,
    stage_key: StageKey,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        return await sessions.get(StageRef(pipeline_id, stage_key)).regenerate()
    except Exception as e:
        raise _http_error(e, "Regenerate")


@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/refine", response_model=StageView)
async def refine_stage(
    pipeline_id: str,
    stage_key: StageKey,
    request: RefineRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    """Edit the existing output: previous image/script is sent along with the instructions."""
    try:
        controller = sessions.get(StageRef(pipeline_id, stage_key))
        return await controller.refine(request.instructions)
    except Exception as e:
        raise _http_error(e, "Refine")


# ── E. Manual Outputs ────────────────────────────────────────────────────────

@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/upload", response_model=StageView)
async def upload_stage_output(
    pipeline_id: str,
    stage_key: StageKey,
    request: UploadRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        controller = sessions.get(StageRef(pipeline_id, stage_key))
        return await controller.upload(request.url, duration_seconds=request.duration_seconds)
    except Exception as e:
        raise _http_error(e, "Upload")


@pipeline_router.post("/{pipeline_id}/stages/{stage_key}/paste", response_model=StageView)
async def paste_stage_output(
    pipeline_id: str,
    stage_key: StageKey,
    request: PasteRequest,
    sessions: EditorSessions = Depends(get_sessions),
):
    try:
        return await sessions.get(StageRef(pipeline_id, stage_key)).paste(request.text)
    except Exception as e:
        raise _http_error(e, "Paste")
