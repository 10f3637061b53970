"""Google push notification endpoint and watch channel management."""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from timeflow.api.routes.sync import get_adapter_factory, get_dispatcher
from timeflow.config import get_settings
from timeflow.db.engine import get_engine
from timeflow.sync.entities import EntityKind
from timeflow.sync.errors import AdapterUnavailable, ProviderError, StorageError
from timeflow.sync.factory import GoogleAdapterFactory
from timeflow.sync.lease import LeaseManager
from timeflow.sync.webhooks import Enqueued, Notification, Rejected, WebhookListener

router = APIRouter()


class WatchRequest(BaseModel):
    owner_id: str
    entity_kind: EntityKind = EntityKind.CALENDAR_EVENT


class WatchResponse(BaseModel):
    channel_id: str
    resource_id: str
    calendar_id: Optional[str]
    expires_at: datetime


def get_listener(engine=Depends(get_engine), dispatcher=Depends(get_dispatcher)) -> WebhookListener:
    settings = get_settings()
    leases = LeaseManager(engine, timedelta(seconds=settings.lease_ttl_seconds))
    return WebhookListener(engine, dispatcher, leases, settings)


@router.post("/google")
async def google_notification(
    x_goog_channel_id: Optional[str] = Header(default=None),
    x_goog_resource_id: Optional[str] = Header(default=None),
    x_goog_resource_state: Optional[str] = Header(default=None),
    x_goog_message_number: Optional[str] = Header(default=None),
    x_goog_channel_token: Optional[str] = Header(default=None),
    x_goog_resource_uri: Optional[str] = Header(default=None),
    listener: WebhookListener = Depends(get_listener),
):
    """
    Receive a Google push notification.

    Anything already handled (replays, a run already queued) is a 200 so
    Google stops redelivering it.
    """
    if not x_goog_channel_id or not x_goog_resource_id or not x_goog_resource_state:
        raise HTTPException(status_code=400, detail="Invalid webhook headers")
    try:
        message_number = int(x_goog_message_number) if x_goog_message_number else None
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Goog-Message-Number")

    notification = Notification(
        channel_id=x_goog_channel_id,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
        message_number=message_number,
        token=x_goog_channel_token,
        resource_uri=x_goog_resource_uri,
    )
    try:
        result = listener.handle(notification)
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    if isinstance(result, Rejected):
        if result.status_code >= 400:
            raise HTTPException(status_code=result.status_code, detail=result.reason)
        return {"status": result.reason}
    if isinstance(result, Enqueued):
        return {"status": "queued", "key": result.key}
    return {"status": "ok"}


@router.put("/google", response_model=WatchResponse)
async def register_watch(
    body: WatchRequest,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    listener: WebhookListener = Depends(get_listener),
):
    """Open a push channel for the owner's calendar."""
    if body.entity_kind != EntityKind.CALENDAR_EVENT:
        raise HTTPException(status_code=400, detail="Google Tasks does not support push channels")
    try:
        integration = factory.integration(body.owner_id)
        client = factory.client_for(body.owner_id)
        sub = await listener.register_watch(body.owner_id, client, calendar_id=integration.calendar_id)
    except AdapterUnavailable as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return WatchResponse(
        channel_id=sub.channel_id,
        resource_id=sub.resource_id,
        calendar_id=sub.calendar_id,
        expires_at=sub.expires_at,
    )


@router.delete("/google/{channel_id}")
async def stop_watch(
    channel_id: str,
    factory: GoogleAdapterFactory = Depends(get_adapter_factory),
    listener: WebhookListener = Depends(get_listener),
):
    """Stop a push channel and forget it."""
    sub = listener.get_subscription(channel_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Unknown channel")
    try:
        client = factory.client_for(sub.owner_id)
        await listener.stop_watch(channel_id, client)
    except AdapterUnavailable as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"stopped": channel_id}
