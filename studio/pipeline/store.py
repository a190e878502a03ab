"""
Stage record store.

Pipelines live in the `pipelines` table (shared metadata: name, tags, kanban
workflow status, folder) and each stage in `pipeline_stages`, keyed by
(pipeline_id, stage_key). Balances are read from `profiles.credits`.

Two implementations share one async interface:
  - SupabaseStageStore — service-role client, blocking calls run in a thread
  - MemoryStageStore   — in-process fallback when Supabase is not configured
"""

import asyncio
import copy
import logging
from typing import Optional, Protocol
from uuid import uuid4

from supabase import Client, create_client

from .errors import RecordNotFoundError, StoreError
from .graph import graph_for
from .models import (
    PipelineRecord,
    PipelineType,
    StageRecord,
    StageRef,
    now_iso,
)

logger = logging.getLogger(__name__)

PIPELINE_FIELDS = {"name", "tags", "workflow_status", "folder_id"}
STAGE_FIELDS = {
    "input",
    "output",
    "status",
    "complete",
    "generation_started_at",
    "error_message",
    "refunded_credits",
    "notified_key",
}


class StageRecordStore(Protocol):
    async def create_pipeline(
        self,
        user_id: str,
        pipeline_type: PipelineType,
        **fields,
    ) -> PipelineRecord: ...

    async def get_pipeline(self, pipeline_id: str) -> PipelineRecord: ...

    async def get_stage(self, ref: StageRef) -> StageRecord: ...

    async def update_stage(self, ref: StageRef, **fields) -> StageRecord: ...

    async def update_pipeline(self, pipeline_id: str, **fields) -> PipelineRecord: ...

    async def fetch_balance(self, user_id: str) -> Optional[float]: ...


def _check_fields(fields: dict, allowed: set, table: str):
    unknown = set(fields) - allowed
    if unknown:
        raise StoreError(f"Unknown {table} fields: {', '.join(sorted(unknown))}")


def _encode(fields: dict) -> dict:
    encoded = {}
    for name, value in fields.items():
        encoded[name] = value.value if hasattr(value, "value") else value
    return encoded


# ═════════════════════════════════════════════════════════════════════════════
# A. Supabase
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseStageStore:
    def __init__(self, url: str, key: str, client: Optional[Client] = None):
        self._url = url
        self._key = key
        self._client = client

    def _get_client(self) -> Client:
        """Lazy-init Supabase client using the service role key."""
        if self._client is None:
            if not self._url or not self._key:
                raise StoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self._url, self._key)
        return self._client

    async def _run(self, description: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Supabase {description} failed: {e}")
            raise StoreError(f"{description} failed: {e}") from e

    def _row_to_stage(self, row: dict) -> StageRecord:
        return StageRecord(
            pipeline_id=row["pipeline_id"],
            stage_key=row["stage_key"],
            input=row.get("input") or {},
            output=row.get("output"),
            status=row.get("status") or "idle",
            complete=row.get("complete", False),
            generation_started_at=row.get("generation_started_at"),
            error_message=row.get("error_message"),
            refunded_credits=row.get("refunded_credits"),
            notified_key=row.get("notified_key"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_pipeline(self, row: dict, stage_rows: list) -> PipelineRecord:
        stages = {}
        for stage_row in stage_rows:
            record = self._row_to_stage(stage_row)
            stages[record.stage_key] = record
        return PipelineRecord(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row.get("project_id"),
            pipeline_type=row.get("pipeline_type") or "talking_head",
            name=row.get("name") or "Untitled",
            tags=row.get("tags") or [],
            workflow_status=row.get("workflow_status"),
            folder_id=row.get("folder_id"),
            stages=stages,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    async def create_pipeline(self, user_id: str, pipeline_type: PipelineType, **fields) -> PipelineRecord:
        _check_fields(fields, PIPELINE_FIELDS | {"project_id"}, "pipeline")
        pipeline_id = str(uuid4())
        graph = graph_for(pipeline_type)

        def _insert():
            sb = self._get_client()
            sb.table("pipelines").insert({
                "id": pipeline_id,
                "user_id": user_id,
                "pipeline_type": pipeline_type.value,
                **fields,
            }).execute()
            # Every declared stage exists from the start, empty and idle
            sb.table("pipeline_stages").insert([
                {"pipeline_id": pipeline_id, "stage_key": key.value, "input": {}, "status": "idle"}
                for key in graph.stage_keys
            ]).execute()

        await self._run("create pipeline", _insert)
        logger.info(f"Created {pipeline_type.value} pipeline {pipeline_id} for user {user_id}")
        return await self.get_pipeline(pipeline_id)

    async def get_pipeline(self, pipeline_id: str) -> PipelineRecord:
        def _select():
            sb = self._get_client()
            result = sb.table("pipelines").select("*").eq("id", pipeline_id).maybe_single().execute()
            if result is None or not result.data:
                raise RecordNotFoundError(f"Pipeline {pipeline_id} not found")
            stages = sb.table("pipeline_stages").select("*").eq("pipeline_id", pipeline_id).execute()
            return self._row_to_pipeline(result.data, stages.data or [])

        return await self._run(f"read pipeline {pipeline_id}", _select)

    async def get_stage(self, ref: StageRef) -> StageRecord:
        def _select():
            result = (
                self._get_client()
                .table("pipeline_stages")
                .select("*")
                .eq("pipeline_id", ref.pipeline_id)
                .eq("stage_key", ref.stage_key.value)
                .maybe_single()
                .execute()
            )
            if result is None or not result.data:
                raise RecordNotFoundError(f"Stage {ref} not found")
            return self._row_to_stage(result.data)

        return await self._run(f"read stage {ref}", _select)

    async def update_stage(self, ref: StageRef, **fields) -> StageRecord:
        _check_fields(fields, STAGE_FIELDS, "stage")
        if fields.get("complete"):
            output = fields["output"] if "output" in fields else (await self.get_stage(ref)).output
            if not output:
                raise StoreError(f"Stage {ref} cannot be complete without an output")
        update = {**_encode(fields), "updated_at": now_iso()}

        def _update():
            result = (
                self._get_client()
                .table("pipeline_stages")
                .update(update)
                .eq("pipeline_id", ref.pipeline_id)
                .eq("stage_key", ref.stage_key.value)
                .execute()
            )
            if not result.data:
                raise RecordNotFoundError(f"Stage {ref} not found")
            return self._row_to_stage(result.data[0])

        return await self._run(f"update stage {ref}", _update)

    async def update_pipeline(self, pipeline_id: str, **fields) -> PipelineRecord:
        _check_fields(fields, PIPELINE_FIELDS, "pipeline")
        update = {**fields, "updated_at": now_iso()}

        def _update():
            self._get_client().table("pipelines").update(update).eq("id", pipeline_id).execute()

        await self._run(f"update pipeline {pipeline_id}", _update)
        return await self.get_pipeline(pipeline_id)

    async def fetch_balance(self, user_id: str) -> Optional[float]:
        def _select():
            result = (
                self._get_client()
                .table("profiles")
                .select("credits")
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )
            if result is None or not result.data:
                return None
            return result.data.get("credits")

        return await self._run(f"read balance for {user_id}", _select)


# ═════════════════════════════════════════════════════════════════════════════
# B. In-memory fallback
# ═════════════════════════════════════════════════════════════════════════════

class MemoryStageStore:
    """
    In-process store with the same semantics as the Supabase tables.

    Records are copied in and out so callers never share mutable state
    with the store, the same as reading rows over the network.
    """

    def __init__(self):
        self._pipelines: dict[str, dict] = {}
        self._stages: dict[StageRef, StageRecord] = {}
        self.balances: dict[str, float] = {}

    async def create_pipeline(self, user_id: str, pipeline_type: PipelineType, **fields) -> PipelineRecord:
        _check_fields(fields, PIPELINE_FIELDS | {"project_id"}, "pipeline")
        pipeline_id = str(uuid4())
        now = now_iso()
        self._pipelines[pipeline_id] = {
            "id": pipeline_id,
            "user_id": user_id,
            "pipeline_type": pipeline_type,
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        for key in graph_for(pipeline_type).stage_keys:
            ref = StageRef(pipeline_id, key)
            self._stages[ref] = StageRecord(pipeline_id=pipeline_id, stage_key=key, updated_at=now)
        logger.info(f"Created {pipeline_type.value} pipeline {pipeline_id} for user {user_id} (memory)")
        return await self.get_pipeline(pipeline_id)

    async def get_pipeline(self, pipeline_id: str) -> PipelineRecord:
        await asyncio.sleep(0)
        row = self._pipelines.get(pipeline_id)
        if row is None:
            raise RecordNotFoundError(f"Pipeline {pipeline_id} not found")
        stages = {
            ref.stage_key: record.model_copy(deep=True)
            for ref, record in self._stages.items()
            if ref.pipeline_id == pipeline_id
        }
        return PipelineRecord(**copy.deepcopy(row), stages=stages)

    async def get_stage(self, ref: StageRef) -> StageRecord:
        await asyncio.sleep(0)
        record = self._stages.get(ref)
        if record is None:
            raise RecordNotFoundError(f"Stage {ref} not found")
        return record.model_copy(deep=True)

    async def update_stage(self, ref: StageRef, **fields) -> StageRecord:
        _check_fields(fields, STAGE_FIELDS, "stage")
        await asyncio.sleep(0)
        current = self._stages.get(ref)
        if current is None:
            raise RecordNotFoundError(f"Stage {ref} not found")
        merged = {**current.model_dump(), **copy.deepcopy(fields), "updated_at": now_iso()}
        try:
            record = StageRecord(**merged)
        except ValueError as e:
            raise StoreError(f"Rejected update to stage {ref}: {e}") from e
        self._stages[ref] = record
        return record.model_copy(deep=True)

    async def update_pipeline(self, pipeline_id: str, **fields) -> PipelineRecord:
        _check_fields(fields, PIPELINE_FIELDS, "pipeline")
        await asyncio.sleep(0)
        row = self._pipelines.get(pipeline_id)
        if row is None:
            raise RecordNotFoundError(f"Pipeline {pipeline_id} not found")
        row.update(copy.deepcopy(fields))
        row["updated_at"] = now_iso()
        return await self.get_pipeline(pipeline_id)

    async def fetch_balance(self, user_id: str) -> Optional[float]:
        await asyncio.sleep(0)
        return self.balances.get(user_id)
