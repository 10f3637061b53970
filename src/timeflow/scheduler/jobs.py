"""
APScheduler jobs for background sync.

Nightly bidirectional sync catches anything the push channels missed
(Google Tasks has no push at all, and calendar channels can lapse).
The janitor closes runs whose process died mid-run, and the subscription
check renews calendar channels before Google lets them expire.

The scheduler runs in the worker process (wired in __main__.py); the API
runs separately under uvicorn.
"""
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from timeflow.config import get_settings
from timeflow.models.sync import Integration
from timeflow.sync.entities import Direction, EntityKind, Trigger
from timeflow.sync.errors import AlreadyRunning, SyncError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)

RENEW_WITHIN = timedelta(days=1)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine shared by every job.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _janitor,
        trigger="interval",
        minutes=settings.janitor_interval_minutes,
        id="janitor",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _check_subscriptions,
        trigger="interval",
        hours=6,
        id="check_subscriptions",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _nightly_sync(engine) -> None:
    """
    Nightly job: bidirectional sync of every enabled kind for every active
    integration. One owner failing does not stop the others.
    """
    from timeflow.sync.factory import GoogleAdapterFactory, build_orchestrator

    settings = get_settings()
    logger.info("Nightly sync starting at %s", utcnow().isoformat())

    with Session(engine) as s:
        integrations = s.exec(
            select(Integration).where(
                Integration.provider == settings.provider,
                Integration.status == "active",
            )
        ).all()

    factory = GoogleAdapterFactory(engine, settings)
    orchestrator = build_orchestrator(engine, settings)

    for integration in integrations:
        kinds = []
        if integration.sync_calendar:
            kinds.append(EntityKind.CALENDAR_EVENT)
        if integration.sync_tasks:
            kinds.append(EntityKind.TASK)

        for kind in kinds:
            try:
                scope = factory.default_scope(integration.owner_id, kind)
                run = await orchestrator.run(
                    integration.owner_id,
                    Direction.BIDIRECTIONAL,
                    scope,
                    trigger=Trigger.SCHEDULED,
                )
                logger.info(
                    "Nightly %s sync for %s: %s", kind.value, integration.owner_id, run.status
                )
            except AlreadyRunning:
                logger.info(
                    "Nightly %s sync for %s skipped: already running",
                    kind.value, integration.owner_id,
                )
            except Exception as exc:
                logger.error(
                    "Nightly %s sync for %s failed: %s", kind.value, integration.owner_id, exc
                )


async def _janitor(engine) -> None:
    """Close runs left "started" longer than a lease can live."""
    from timeflow.sync.logger import SyncLogger

    settings = get_settings()
    cutoff = utcnow() - timedelta(seconds=settings.lease_ttl_seconds)
    try:
        closed = SyncLogger(engine).abandon_stale(cutoff)
    except SyncError as exc:
        logger.error("Janitor failed: %s", exc)
        return
    if closed:
        logger.info("Janitor closed %d stale sync runs", closed)


async def _check_subscriptions(engine) -> None:
    """Renew calendar push channels that expire within a day."""
    from timeflow.sync.factory import GoogleAdapterFactory
    from timeflow.sync.webhooks import WebhookListener

    settings = get_settings()
    listener = WebhookListener(engine, dispatcher=None, lease_manager=None, settings=settings)
    factory = GoogleAdapterFactory(engine, settings)

    for sub in listener.expiring(RENEW_WITHIN):
        logger.info(
            "Channel %s for %s expires at %s; renewing", sub.channel_id, sub.owner_id, sub.expires_at
        )
        try:
            client = factory.client_for(sub.owner_id)
            await listener.register_watch(sub.owner_id, client, calendar_id=sub.calendar_id or "primary")
            await listener.stop_watch(sub.channel_id, client)
        except Exception as exc:
            logger.error("Failed to renew channel %s: %s", sub.channel_id, exc)
