"""Integration provisioning: dedicated calendar / task list, and pickers."""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from timeflow.api.routes.sync import get_adapter_factory
from timeflow.db.engine import get_engine
from timeflow.sync.errors import AdapterUnavailable, ProviderError, StorageError
from timeflow.sync.factory import GoogleAdapterFactory
from timeflow.sync.setup import IntegrationSetup

router = APIRouter()


class SetupRequest(BaseModel):
    owner_id: str


class SetupResponse(BaseModel):
    success: bool
    calendar_id: Optional[str]
    task_list_id: Optional[str]
    errors: List[Dict[str, str]]


class Container(BaseModel):
    id: str
    name: str
    primary: bool = False


def get_setup(owner_id: str, factory: GoogleAdapterFactory, engine) -> IntegrationSetup:
    try:
        client = factory.client_for(owner_id)
    except AdapterUnavailable as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return IntegrationSetup(engine, client, factory.settings)


@router.post("/setup", response_model=SetupResponse)
async def setup_integration(
    body: SetupRequest,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    engine=Depends(get_engine),
):
    """
    Create (or reuse) the TaskTimeFlow calendar and task list and link them.

    Partial failures still return 200 with success=false and one error per
    failed half. 400 when the owner has no stored Google token.
    """
    setup = get_setup(body.owner_id, factory, engine)
    try:
        result = await setup.run(body.owner_id)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return SetupResponse(
        success=result.success,
        calendar_id=result.calendar_id,
        task_list_id=result.task_list_id,
        errors=result.errors,
    )


@router.get("/calendars", response_model=List[Container])
async def list_calendars(
    owner_id: str,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    engine=Depends(get_engine),
):
    setup = get_setup(owner_id, factory, engine)
    try:
        calendars = await setup.list_calendars()
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return [
        Container(id=c["id"], name=c.get("summary") or c["id"], primary=bool(c.get("primary")))
        for c in calendars
    ]


@router.get("/tasklists", response_model=List[Container])
async def list_task_lists(
    owner_id: str,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    engine=Depends(get_engine),
):
    setup = get_setup(owner_id, factory, engine)
    try:
        task_lists = await setup.list_task_lists()
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return [Container(id=t["id"], name=t.get("title") or t["id"]) for t in task_lists]
