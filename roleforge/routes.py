"""FastAPI endpoints under /api.

Endpoint groups: health, rounds (play / continue), memory (query, scopes,
revectorize, delete-by-metadata). Handlers only translate HTTP to calls on
the runtime built in app.py.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from roleforge.memory.store import BulkDeleteRejected
from roleforge.pipeline.orchestrator import SessionContextError

router = APIRouter()


class RoundBody(BaseModel):
    input: Any
    persona_id: str | None = None


class RevectorizeBody(BaseModel):
    clear_existing: bool = True


class MemoryQueryBody(BaseModel):
    query: str
    world_id: int | None = None
    participant_id: str | None = None
    include_shared: bool = False
    top_k: int = 5


class DeleteByMetadataBody(BaseModel):
    filter: dict[str, Any] = Field(default_factory=dict)
    scope: str | None = None
    dry_run: bool = False
    confirm: bool = False


def _runtime(request: Request):
    return request.app.state.runtime


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/scenes/{scene_id}/rounds")
async def play_round(scene_id: int, body: RoundBody, request: Request):
    """Run one round in response to user input."""
    try:
        result = await _runtime(request).orchestrator.run_round(
            scene_id, body.input, persona_id=body.persona_id
        )
    except SessionContextError as e:
        raise HTTPException(404, str(e))
    return result.model_dump()


@router.post("/scenes/{scene_id}/continue")
async def continue_round(scene_id: int, request: Request):
    """Run one round without user input."""
    try:
        result = await _runtime(request).orchestrator.continue_round(scene_id)
    except SessionContextError as e:
        raise HTTPException(404, str(e))
    return result.model_dump()


@router.post("/scenes/{scene_id}/revectorize")
async def revectorize_scene(scene_id: int, body: RevectorizeBody, request: Request):
    """Rebuild memories for every round of a scene."""
    runtime = _runtime(request)
    if runtime.storage.get_scene(scene_id) is None:
        raise HTTPException(404, "Scene not found")
    report = await runtime.vectorizer.revectorize_scene(scene_id, clear_existing=body.clear_existing)
    return report.model_dump()


@router.post("/memory/query")
async def query_memories(body: MemoryQueryBody, request: Request):
    """Ranked memories for a query across the requested scopes."""
    memories = await _runtime(request).retriever.query(
        body.query,
        world_id=body.world_id,
        participant_id=body.participant_id,
        include_shared=body.include_shared,
        top_k=body.top_k,
    )
    return [m.model_dump() for m in memories]


@router.get("/memory/scopes")
async def list_scopes(request: Request):
    """Every memory scope with its entry count."""
    return await _runtime(request).memory.stats()


@router.post("/memory/delete-by-metadata")
async def delete_by_metadata(body: DeleteByMetadataBody, request: Request):
    """Delete memories matching a metadata filter. Large deletes need confirm."""
    try:
        result = await _runtime(request).memory.delete_by_metadata(
            body.filter, body.scope, dry_run=body.dry_run, confirm=body.confirm
        )
    except BulkDeleteRejected as e:
        raise HTTPException(409, str(e))
    return result.model_dump()
