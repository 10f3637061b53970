"""
SyncLogger: the SyncRun audit trail.

Flow for one run:
  1. start()       -> SyncRun row, status="started"
  2. record_item() -> counters / errors appended, once per processed item
  3. finish()      -> status "completed" or "failed", completed_at set

The SyncRun row is the single source of truth for "is a sync in progress";
UIs poll it instead of keeping their own flags. finish() is called exactly
once per run; a second call raises AlreadyFinished.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from timeflow.models.sync import SyncRun
from timeflow.sync.entities import ItemOutcome, RunStatus
from timeflow.sync.errors import AlreadyFinished, StorageError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)

_COUNTERS = {
    "created": "items_created",
    "updated": "items_updated",
    "deleted": "items_deleted",
}


class SyncLogger:
    def __init__(self, engine):
        self.engine = engine

    def start(
        self,
        owner_id: str,
        provider: str,
        trigger: str,
        direction: str,
        entity_kind: str,
        sync_data: Optional[Dict[str, Any]] = None,
    ) -> SyncRun:
        run = SyncRun(
            owner_id=owner_id,
            provider=provider,
            trigger=trigger,
            direction=direction,
            entity_kind=entity_kind,
            status=RunStatus.STARTED.value,
            started_at=utcnow(),
            sync_data=sync_data,
        )
        try:
            with Session(self.engine) as s:
                s.add(run)
                s.commit()
                s.refresh(run)
        except SQLAlchemyError as exc:
            raise StorageError(f"cannot open sync run: {exc}") from exc
        logger.info(
            "Sync run %s started: owner=%s kind=%s direction=%s trigger=%s",
            run.id, owner_id, entity_kind, direction, trigger,
        )
        return run

    def record_item(self, run_id: int, outcome: ItemOutcome) -> None:
        """Append one item outcome to the run. Clean skips are not stored."""
        if outcome.action == "skipped" and not outcome.error_kind:
            return
        with _storage_guard(), Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
            if run is None:
                raise KeyError(f"no sync run {run_id}")
            if run.status != RunStatus.STARTED.value:
                raise AlreadyFinished(f"sync run {run_id} is already {run.status}")
            counter = _COUNTERS.get(outcome.action)
            if counter:
                setattr(run, counter, getattr(run, counter) + 1)
            if outcome.action == "failed" or outcome.error_kind:
                # Reassign so the JSON column is flagged dirty
                run.errors = list(run.errors or []) + [
                    {
                        "ref": outcome.ref,
                        "message": outcome.message,
                        "kind": outcome.error_kind,
                    }
                ]
            s.add(run)
            s.commit()
        if outcome.action == "failed":
            logger.warning("Sync run %s item %s failed: %s", run_id, outcome.ref, outcome.message)
        else:
            logger.debug("Sync run %s item %s %s", run_id, outcome.ref, outcome.action)

    def finish(self, run_id: int, status: RunStatus, error_message: Optional[str] = None) -> SyncRun:
        with _storage_guard(), Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
            if run is None:
                raise KeyError(f"no sync run {run_id}")
            if run.status != RunStatus.STARTED.value:
                raise AlreadyFinished(f"sync run {run_id} is already {run.status}")
            now = utcnow()
            run.status = RunStatus(status).value
            run.completed_at = now
            run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
            run.error_message = error_message
            s.add(run)
            s.commit()
            s.refresh(run)
        logger.info(
            "Sync run %s %s: created=%d updated=%d deleted=%d errors=%d%s",
            run.id,
            run.status,
            run.items_created,
            run.items_updated,
            run.items_deleted,
            len(run.errors or []),
            f" ({error_message})" if error_message else "",
        )
        return run

    def get(self, run_id: int) -> Optional[SyncRun]:
        with Session(self.engine) as s:
            return s.get(SyncRun, run_id)

    def latest(self, owner_id: str) -> Optional[SyncRun]:
        runs = self.history(owner_id, limit=1)
        return runs[0] if runs else None

    def history(self, owner_id: str, limit: int = 20) -> List[SyncRun]:
        """Runs for an owner, newest first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncRun)
                    .where(SyncRun.owner_id == owner_id)
                    .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                    .limit(limit)
                ).all()
            )

    def abandon_stale(self, started_before: datetime) -> int:
        """Mark runs still "started" since before the cutoff as failed.

        Covers processes that died mid-run. Returns the number of runs closed.
        """
        with _storage_guard(), Session(self.engine) as s:
            stale = s.exec(
                select(SyncRun).where(
                    SyncRun.status == RunStatus.STARTED.value,
                    SyncRun.started_at < started_before,
                )
            ).all()
            now = utcnow()
            closed = []
            for run in stale:
                run.status = RunStatus.FAILED.value
                run.completed_at = now
                run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
                run.error_message = "abandoned: exceeded maximum run duration"
                s.add(run)
                closed.append((run.id, run.owner_id))
            s.commit()
        for run_id, owner_id in closed:
            logger.warning("Abandoned stale sync run %s (owner=%s)", run_id, owner_id)
        return len(closed)


@contextmanager
def _storage_guard():
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"sync log write failed: {exc}") from exc
