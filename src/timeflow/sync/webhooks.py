"""
WebhookListener: turns Google push notifications into bounded sync requests.

Google delivers at-least-once and retries anything that is not a 2xx, so
every "we already have this" answer (replay, run already queued) is a 200.
Only a channel we cannot trust is refused with a 4xx.

The notification carries no payload; it only says "something changed". The
listener therefore queues a from_remote run over a bounded scope instead of
trying to apply anything itself.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from timeflow.config import Settings, get_settings
from timeflow.models.sync import WebhookSubscription
from timeflow.sync.entities import Direction, EntityKind, SyncRequest, SyncScope, Trigger
from timeflow.sync.errors import PermanentProviderError, StorageError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """The X-Goog-* headers of one push message."""

    channel_id: str
    resource_id: str
    resource_state: str  # "sync", "exists", "not_exists"
    message_number: Optional[int] = None
    token: Optional[str] = None
    resource_uri: Optional[str] = None


@dataclass
class Enqueued:
    key: str
    status_code: int = 200


@dataclass
class Acknowledged:
    reason: str = "sync"
    status_code: int = 200


@dataclass
class Rejected:
    reason: str  # "unknown_channel", "expired", "bad_token", "duplicate", "already_running"
    status_code: int = 400
    detail: Dict[str, Any] = field(default_factory=dict)


class WebhookListener:
    def __init__(self, engine, dispatcher, lease_manager, settings: Optional[Settings] = None):
        self.engine = engine
        self.dispatcher = dispatcher
        self.leases = lease_manager
        self.settings = settings or get_settings()

    def handle(self, notification: Notification):
        """
        Validate one notification and queue a sync for it.

        Returns:
            Enqueued, Acknowledged or Rejected. Never raises for a bad
            notification; StorageError still propagates.
        """
        now = utcnow()
        try:
            with Session(self.engine) as s:
                sub = s.exec(
                    select(WebhookSubscription).where(
                        WebhookSubscription.channel_id == notification.channel_id,
                        WebhookSubscription.resource_id == notification.resource_id,
                    )
                ).first()
                if sub is None:
                    logger.warning("Notification for unknown channel %s", notification.channel_id)
                    return Rejected("unknown_channel", 404)
                if sub.expires_at <= now:
                    logger.info("Notification for expired channel %s", sub.channel_id)
                    return Rejected("expired", 410)
                if sub.token and not secrets.compare_digest(sub.token, notification.token or ""):
                    logger.warning("Channel token mismatch on %s", sub.channel_id)
                    return Rejected("bad_token", 403)

                number = notification.message_number
                if number is not None and sub.last_message_number is not None:
                    if number <= sub.last_message_number:
                        logger.debug(
                            "Replay of message %s on channel %s (last %s)",
                            number, sub.channel_id, sub.last_message_number,
                        )
                        return Rejected("duplicate", 200)
                if number is not None:
                    sub.last_message_number = number
                    s.add(sub)
                    s.commit()
                    s.refresh(sub)

                if notification.resource_state == "sync":
                    return Acknowledged("sync")

                request = SyncRequest(
                    owner_id=sub.owner_id,
                    direction=Direction.FROM_REMOTE,
                    scope=self._scope_for(sub, now),
                    trigger=Trigger.WEBHOOK,
                    sync_data={
                        "channel_id": notification.channel_id,
                        "resource_id": notification.resource_id,
                        "resource_state": notification.resource_state,
                        "resource_uri": notification.resource_uri,
                        "message_number": number,
                    },
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"subscription store unavailable: {exc}") from exc

        kind = request.scope.entity_kind.value
        if self.dispatcher.is_pending(request.key) or self.leases.is_held(request.owner_id, kind):
            return Rejected("already_running", 200)
        if not self.dispatcher.submit(request):
            return Rejected("already_running", 200)
        return Enqueued(request.key)

    def _scope_for(self, sub: WebhookSubscription, now: datetime) -> SyncScope:
        kind = EntityKind(sub.entity_kind)
        if kind == EntityKind.CALENDAR_EVENT:
            return SyncScope(
                kind,
                time_min=now - timedelta(hours=self.settings.webhook_past_hours),
                time_max=now + timedelta(days=self.settings.webhook_future_days),
            )
        return SyncScope(kind, list_id=sub.task_list_id)

    # ── Channel lifecycle ─────────────────────────────────────────────────────

    async def register_watch(self, owner_id: str, client, calendar_id: str = "primary") -> WebhookSubscription:
        """Open a calendar push channel and store it.

        Google Tasks has no push channels, so only calendar events can be
        watched; task lists are covered by the scheduled sync.
        """
        channel_id = uuid4().hex
        token = secrets.token_urlsafe(24)
        expires_at = utcnow() + timedelta(days=self.settings.webhook_ttl_days)
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": self.settings.webhook_address,
            "token": token,
            "expiration": str(_epoch_ms(expires_at)),
        }
        response = await client.watch_events(calendar_id, body)

        sub = WebhookSubscription(
            channel_id=response.get("id") or channel_id,
            resource_id=response["resourceId"],
            owner_id=owner_id,
            entity_kind=EntityKind.CALENDAR_EVENT.value,
            calendar_id=calendar_id,
            token=token,
            resource_uri=response.get("resourceUri"),
            expires_at=_from_epoch_ms(response.get("expiration")) or expires_at,
        )
        with Session(self.engine) as s:
            s.add(sub)
            s.commit()
            s.refresh(sub)
        logger.info(
            "Watching calendar %s for %s on channel %s until %s",
            calendar_id, owner_id, sub.channel_id, sub.expires_at,
        )
        return sub

    async def stop_watch(self, channel_id: str, client) -> bool:
        """Stop a channel and forget it. Returns False if it was unknown."""
        with Session(self.engine) as s:
            sub = s.exec(
                select(WebhookSubscription).where(WebhookSubscription.channel_id == channel_id)
            ).first()
            if sub is None:
                return False
            resource_id = sub.resource_id

        try:
            await client.stop_channel(channel_id, resource_id)
        except PermanentProviderError as exc:
            if not exc.not_found:
                raise
            logger.info("Channel %s was already stopped on provider", channel_id)

        with Session(self.engine) as s:
            sub = s.exec(
                select(WebhookSubscription).where(WebhookSubscription.channel_id == channel_id)
            ).first()
            if sub is not None:
                s.delete(sub)
                s.commit()
        logger.info("Stopped channel %s", channel_id)
        return True

    def get_subscription(self, channel_id: str) -> Optional[WebhookSubscription]:
        with Session(self.engine) as s:
            return s.exec(
                select(WebhookSubscription).where(WebhookSubscription.channel_id == channel_id)
            ).first()

    def expiring(self, within: timedelta, now: Optional[datetime] = None) -> List[WebhookSubscription]:
        """Subscriptions that expire inside the window, soonest first."""
        now = now or utcnow()
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(WebhookSubscription)
                    .where(WebhookSubscription.expires_at <= now + within)
                    .order_by(WebhookSubscription.expires_at)
                ).all()
            )


def _epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _from_epoch_ms(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        stamp = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None
    return stamp.replace(tzinfo=None)
