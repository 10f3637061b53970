"""Sync trigger, status and audit routes."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from timeflow.config import get_settings
from timeflow.db.engine import get_engine
from timeflow.models.sync import SyncMapping, SyncRun
from timeflow.sync.entities import Direction, EntityKind, RunSummary, SyncScope, Trigger
from timeflow.sync.errors import AdapterUnavailable, AlreadyRunning, StorageError
from timeflow.sync.factory import GoogleAdapterFactory, build_orchestrator
from timeflow.sync.logger import SyncLogger
from timeflow.sync.mapping_store import MappingStore
from timeflow.timeutil import to_naive_utc, utcnow

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    owner_id: str
    entity_kind: EntityKind
    direction: Direction = Direction.BIDIRECTIONAL
    # Calendar window; defaults to the next default_calendar_window_days
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    # Task list; defaults to the integration's list
    list_id: Optional[str] = None


class SyncTriggerResponse(BaseModel):
    success: bool
    run_id: Optional[int]
    status: str
    items_created: int
    items_updated: int
    items_deleted: int
    errors: List[Dict[str, Any]]


class SyncStatusResponse(BaseModel):
    status: str
    run_id: Optional[int] = None
    entity_kind: Optional[str] = None
    direction: Optional[str] = None
    trigger: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    items_created: Optional[int] = None
    items_updated: Optional[int] = None
    items_deleted: Optional[int] = None
    error_message: Optional[str] = None


def get_adapter_factory(engine=Depends(get_engine)) -> GoogleAdapterFactory:
    return GoogleAdapterFactory(engine)


def get_orchestrator(engine=Depends(get_engine)):
    return build_orchestrator(engine)


def get_dispatcher(request: Request):
    """The process-wide dispatcher created in the app lifespan."""
    return request.app.state.dispatcher


@router.post("/trigger", response_model=SyncTriggerResponse)
async def trigger_sync(
    body: SyncTriggerRequest,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    orchestrator=Depends(get_orchestrator),
):
    """
    Run one sync and wait for it.

    400 when the owner has no active integration, 409 while another run
    holds the scope, 503 when the database is unavailable.
    """
    try:
        factory.integration(body.owner_id)
        scope = _scope_from(body, factory)
    except AdapterUnavailable as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        run = await orchestrator.run(body.owner_id, body.direction, scope, trigger=Trigger.MANUAL)
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    summary = RunSummary.from_run(run)
    return SyncTriggerResponse(
        success=summary.success,
        run_id=summary.run_id,
        status=summary.status,
        items_created=summary.items_created,
        items_updated=summary.items_updated,
        items_deleted=summary.items_deleted,
        errors=summary.errors,
    )


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(owner_id: str, engine=Depends(get_engine)):
    """Return the most recent run for the owner."""
    run = SyncLogger(engine).latest(owner_id)
    if not run:
        return SyncStatusResponse(status="never_run")
    return SyncStatusResponse(
        status=run.status,
        run_id=run.id,
        entity_kind=run.entity_kind,
        direction=run.direction,
        trigger=run.trigger,
        started_at=run.started_at,
        completed_at=run.completed_at,
        items_created=run.items_created,
        items_updated=run.items_updated,
        items_deleted=run.items_deleted,
        error_message=run.error_message,
    )


@router.get("/runs", response_model=List[SyncRun])
def list_runs(owner_id: str, limit: int = 20, engine=Depends(get_engine)):
    """Run history, newest first."""
    return SyncLogger(engine).history(owner_id, limit=limit)


@router.get("/mappings/stale", response_model=List[SyncMapping])
def stale_mappings(
    owner_id: str,
    entity_kind: EntityKind,
    older_than_hours: Optional[int] = None,
    engine=Depends(get_engine),
):
    """Mappings that have not been confirmed by a sync recently."""
    hours = older_than_hours if older_than_hours is not None else get_settings().stale_mapping_hours
    cutoff = utcnow() - timedelta(hours=hours)
    return MappingStore(engine).list_stale(owner_id, entity_kind.value, cutoff)


def _scope_from(body: SyncTriggerRequest, factory: GoogleAdapterFactory) -> SyncScope:
    if body.entity_kind == EntityKind.TASK:
        if body.list_id:
            return SyncScope(EntityKind.TASK, list_id=body.list_id)
        return factory.default_scope(body.owner_id, EntityKind.TASK)

    if body.time_min is None and body.time_max is None:
        return factory.default_scope(body.owner_id, EntityKind.CALENDAR_EVENT)
    time_min, time_max = to_naive_utc(body.time_min), to_naive_utc(body.time_max)
    if time_min and time_max and time_min >= time_max:
        raise HTTPException(status_code=422, detail="time_min must be before time_max")
    return SyncScope(EntityKind.CALENDAR_EVENT, time_min=time_min, time_max=time_max)
