"""
Per-scope leases: at most one active run per (owner, entity kind).

A lease is a row keyed "{owner_id}:{entity_kind}" with an expiry. Acquiring
is an INSERT, or an UPDATE that only matches an expired row, so the database
arbitrates between racing processes. A crashed run simply stops renewing;
once expires_at passes the next run takes the lease over.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from timeflow.models.sync import SyncLease
from timeflow.sync.errors import StorageError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)


def lease_key(owner_id: str, entity_kind: str) -> str:
    return f"{owner_id}:{entity_kind}"


class LeaseManager:
    def __init__(self, engine, ttl: timedelta):
        self.engine = engine
        self.ttl = ttl

    def acquire(self, owner_id: str, entity_kind: str, now: Optional[datetime] = None) -> Optional[str]:
        """Try to take the lease. Returns a holder token, or None if held."""
        now = now or utcnow()
        key = lease_key(owner_id, entity_kind)
        holder = uuid4().hex
        expires_at = now + self.ttl
        try:
            with Session(self.engine) as s:
                s.add(SyncLease(key=key, holder=holder, acquired_at=now, expires_at=expires_at))
                try:
                    s.commit()
                    return holder
                except IntegrityError:
                    s.rollback()

                result = s.connection().execute(
                    update(SyncLease)
                    .where(SyncLease.key == key, SyncLease.expires_at <= now)
                    .values(holder=holder, run_id=None, acquired_at=now, expires_at=expires_at)
                )
                s.commit()
                if result.rowcount == 1:
                    logger.warning("Took over expired lease %s", key)
                    return holder
                return None
        except SQLAlchemyError as exc:
            raise StorageError(f"lease store unavailable: {exc}") from exc

    def attach_run(self, owner_id: str, entity_kind: str, holder: str, run_id: int) -> None:
        try:
            with Session(self.engine) as s:
                s.connection().execute(
                    update(SyncLease)
                    .where(SyncLease.key == lease_key(owner_id, entity_kind), SyncLease.holder == holder)
                    .values(run_id=run_id)
                )
                s.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"lease store unavailable: {exc}") from exc

    def release(self, owner_id: str, entity_kind: str, holder: str) -> None:
        """Drop the lease if we still hold it. Never raises."""
        try:
            with Session(self.engine) as s:
                s.connection().execute(
                    delete(SyncLease).where(
                        SyncLease.key == lease_key(owner_id, entity_kind),
                        SyncLease.holder == holder,
                    )
                )
                s.commit()
        except SQLAlchemyError as exc:
            # The TTL will free it eventually
            logger.error("Failed to release lease %s: %s", lease_key(owner_id, entity_kind), exc)

    def is_held(self, owner_id: str, entity_kind: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with Session(self.engine) as s:
            lease = s.get(SyncLease, lease_key(owner_id, entity_kind))
            return lease is not None and lease.expires_at > now
