"""
Main entrypoint: starts the APScheduler worker, or runs a one-off command.

FastAPI runs separately under uvicorn (for the trigger and webhook endpoints).

Usage:
    python -m timeflow                                  # starts scheduler worker
    python -m timeflow sync OWNER_ID task [direction]   # one run, then exit
    python -m timeflow watch OWNER_ID                   # open a calendar push channel
    python -m timeflow setup OWNER_ID                   # create the TaskTimeFlow calendar + task list
    uvicorn timeflow.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(owner_id: str, kind: str, direction: str = "bidirectional") -> None:
    from timeflow.db.engine import get_engine
    from timeflow.sync.entities import Direction, EntityKind, RunSummary
    from timeflow.sync.errors import AlreadyRunning, SyncError
    from timeflow.sync.factory import GoogleAdapterFactory, build_orchestrator

    engine = get_engine()
    entity_kind = EntityKind(kind)
    try:
        scope = GoogleAdapterFactory(engine).default_scope(owner_id, entity_kind)
        run = await build_orchestrator(engine).run(owner_id, Direction(direction), scope)
    except AlreadyRunning as exc:
        logger.error("%s", exc)
        sys.exit(2)
    except SyncError as exc:
        logger.error("Sync failed: %s", exc)
        sys.exit(1)

    summary = RunSummary.from_run(run)
    logger.info(
        "Run %s %s: created=%d updated=%d deleted=%d errors=%d",
        summary.run_id,
        summary.status,
        summary.items_created,
        summary.items_updated,
        summary.items_deleted,
        len(summary.errors),
    )
    sys.exit(0 if summary.success else 1)


async def _open_watch(owner_id: str) -> None:
    from timeflow.db.engine import get_engine
    from timeflow.sync.factory import GoogleAdapterFactory
    from timeflow.sync.webhooks import WebhookListener

    engine = get_engine()
    factory = GoogleAdapterFactory(engine)
    integration = factory.integration(owner_id)
    listener = WebhookListener(engine, dispatcher=None, lease_manager=None)
    sub = await listener.register_watch(
        owner_id, factory.client_for(owner_id), calendar_id=integration.calendar_id
    )
    logger.info("Channel %s open until %s", sub.channel_id, sub.expires_at)


async def _setup(owner_id: str) -> None:
    from timeflow.db.engine import get_engine
    from timeflow.sync.errors import SyncError
    from timeflow.sync.factory import GoogleAdapterFactory
    from timeflow.sync.setup import IntegrationSetup

    engine = get_engine()
    factory = GoogleAdapterFactory(engine)
    try:
        result = await IntegrationSetup(engine, factory.client_for(owner_id), factory.settings).run(owner_id)
    except SyncError as exc:
        logger.error("Setup failed: %s", exc)
        sys.exit(1)
    for error in result.errors:
        logger.error("%s setup failed: %s", error["type"], error["message"])
    logger.info("Calendar %s, task list %s", result.calendar_id, result.task_list_id)
    sys.exit(0 if result.success else 1)


async def _run_worker() -> None:
    from timeflow.config import get_settings
    from timeflow.db.engine import get_engine
    from timeflow.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC, janitor every %d min)",
        settings.sync_hour,
        settings.janitor_interval_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `sync`, `watch`, `setup`, or nothing for the worker
    args = sys.argv[1:]
    if args and args[0] == "sync" and len(args) >= 3:
        asyncio.run(_run_once(*args[1:4]))
    elif args and args[0] == "watch" and len(args) == 2:
        asyncio.run(_open_watch(args[1]))
    elif args and args[0] == "setup" and len(args) == 2:
        asyncio.run(_setup(args[1]))
    elif args:
        print(__doc__)
        sys.exit(1)
    else:
        asyncio.run(_run_worker())
