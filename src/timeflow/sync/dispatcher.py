"""
SyncDispatcher: fire-and-forget runs for webhook and scheduler triggers.

Requests are keyed by (owner_id, entity_kind). While one is pending or
running, a second request for the same key is refused; the run in flight
will pick up whatever changed. Across processes the orchestrator's lease
does the same job.
"""
import asyncio
import logging
from typing import Dict

from timeflow.sync.entities import SyncRequest
from timeflow.sync.errors import AlreadyRunning

logger = logging.getLogger(__name__)


class SyncDispatcher:
    def __init__(self, orchestrator):
        self.orchestrator = orchestrator
        self._pending: Dict[str, asyncio.Task] = {}

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def submit(self, request: SyncRequest) -> bool:
        """Schedule a run. Returns False if one is already pending for the key."""
        if request.key in self._pending:
            logger.debug("Sync %s already pending; request dropped", request.key)
            return False
        task = asyncio.get_running_loop().create_task(self._run(request))
        self._pending[request.key] = task
        task.add_done_callback(lambda _t, key=request.key: self._pending.pop(key, None))
        logger.info("Queued %s sync for %s", request.trigger.value, request.key)
        return True

    async def drain(self) -> None:
        """Wait for every queued run to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
            # Let the done callbacks clear their keys
            await asyncio.sleep(0)

    async def _run(self, request: SyncRequest) -> None:
        try:
            run = await self.orchestrator.run(
                request.owner_id,
                request.direction,
                request.scope,
                trigger=request.trigger,
                sync_data=request.sync_data,
            )
            logger.info("Background sync %s finished: run %s %s", request.key, run.id, run.status)
        except AlreadyRunning:
            logger.info("Background sync %s skipped: another run holds the lease", request.key)
        except Exception:
            # Nobody awaits this task; the run row already records the failure
            logger.exception("Background sync %s failed", request.key)
