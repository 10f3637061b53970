"""
MappingStore: durable local <-> remote identity relation.

Every query is scoped by owner_id so one tenant can never see or touch
another's rows. Writes are per-row atomic: an upsert that names the
last_synced_at it read is a compare-and-set, so two processes racing on the
same row cannot silently overwrite each other.

Any database failure surfaces as StorageError. The orchestrator treats that
as fatal for the run: proceeding without a mapping would create duplicate
remote entities.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from timeflow.models.sync import SyncMapping
from timeflow.sync.errors import MappingConflict, StaleMappingError, StorageError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_MUTABLE_COLUMNS = (
    "remote_id",
    "last_synced_at",
    "last_local_version",
    "last_remote_version",
    "provider_metadata",
    "synced_fields",
    "needs_reconciliation",
    "conflict_remote_id",
)


class MappingStore:
    def __init__(self, engine):
        self.engine = engine

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, owner_id: str, entity_kind: str, local_id: str) -> Optional[SyncMapping]:
        with self._guard(), Session(self.engine) as s:
            return s.exec(self._by_local(owner_id, entity_kind, local_id)).first()

    def get_by_remote_id(self, owner_id: str, entity_kind: str, remote_id: str) -> Optional[SyncMapping]:
        if not remote_id:
            return None
        with self._guard(), Session(self.engine) as s:
            return s.exec(
                select(SyncMapping).where(
                    SyncMapping.owner_id == owner_id,
                    SyncMapping.entity_kind == entity_kind,
                    SyncMapping.remote_id == remote_id,
                )
            ).first()

    def list_for_owner(self, owner_id: str, entity_kind: str) -> List[SyncMapping]:
        with self._guard(), Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncMapping).where(
                        SyncMapping.owner_id == owner_id,
                        SyncMapping.entity_kind == entity_kind,
                    )
                ).all()
            )

    def list_stale(self, owner_id: str, entity_kind: str, older_than: datetime) -> List[SyncMapping]:
        """Mappings not synced since ``older_than``, oldest first."""
        with self._guard(), Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncMapping)
                    .where(
                        SyncMapping.owner_id == owner_id,
                        SyncMapping.entity_kind == entity_kind,
                        SyncMapping.last_synced_at < older_than,
                    )
                    .order_by(SyncMapping.last_synced_at)
                ).all()
            )

    # ── Writes ────────────────────────────────────────────────────────────────

    def upsert(self, mapping: SyncMapping, expected_synced_at: Any = _UNSET) -> SyncMapping:
        """Insert or overwrite the mapping keyed by (owner, kind, local_id).

        Args:
            mapping: Desired row state. Its id is ignored.
            expected_synced_at: If given, the write only succeeds when the
                stored row still has this last_synced_at (None meaning "no
                row yet"). Omit for an unconditional overwrite.

        Raises:
            MappingConflict: remote_id is already mapped to another local_id.
            StaleMappingError: the compare-and-set precondition failed.
            StorageError: the database is unavailable.
        """
        values = {col: getattr(mapping, col) for col in _MUTABLE_COLUMNS}
        if values["last_synced_at"] is None:
            values["last_synced_at"] = utcnow()

        with self._guard(), Session(self.engine) as s:
            if mapping.remote_id is not None:
                claimant = s.exec(
                    select(SyncMapping).where(
                        SyncMapping.owner_id == mapping.owner_id,
                        SyncMapping.entity_kind == mapping.entity_kind,
                        SyncMapping.remote_id == mapping.remote_id,
                        SyncMapping.local_id != mapping.local_id,
                    )
                ).first()
                if claimant is not None:
                    raise MappingConflict(
                        f"remote {mapping.remote_id} is already mapped to local {claimant.local_id}",
                        existing=claimant,
                    )

            existing = s.exec(
                self._by_local(mapping.owner_id, mapping.entity_kind, mapping.local_id)
            ).first()

            if existing is None:
                if expected_synced_at is not _UNSET and expected_synced_at is not None:
                    raise StaleMappingError(
                        f"mapping for local {mapping.local_id} disappeared mid-sync"
                    )
                s.add(
                    SyncMapping(
                        owner_id=mapping.owner_id,
                        entity_kind=mapping.entity_kind,
                        local_id=mapping.local_id,
                        **values,
                    )
                )
                try:
                    s.commit()
                except IntegrityError:
                    # Someone inserted the same key first (or we are a retry)
                    s.rollback()
                    if expected_synced_at is not _UNSET:
                        raise StaleMappingError(
                            f"mapping for local {mapping.local_id} was created concurrently"
                        )
                    self._update(s, mapping, values, _UNSET)
            else:
                self._update(s, mapping, values, expected_synced_at, row_id=existing.id)

            return s.exec(
                self._by_local(mapping.owner_id, mapping.entity_kind, mapping.local_id)
            ).one()

    def delete(self, owner_id: str, entity_kind: str, local_id: str) -> None:
        with self._guard(), Session(self.engine) as s:
            row = s.exec(self._by_local(owner_id, entity_kind, local_id)).first()
            if row is not None:
                s.delete(row)
                s.commit()

    def flag_for_reconciliation(self, mapping: SyncMapping) -> None:
        """Detach a mapping that lost a slot conflict so a human can look at it.

        The remote id moves to conflict_remote_id, which frees the unique
        (owner, kind, remote_id) slot for the canonical mapping.
        """
        logger.warning(
            "Flagging mapping %s/%s local=%s remote=%s for manual reconciliation",
            mapping.owner_id,
            mapping.entity_kind,
            mapping.local_id,
            mapping.remote_id,
        )
        with self._guard(), Session(self.engine) as s:
            s.connection().execute(
                update(SyncMapping)
                .where(
                    SyncMapping.owner_id == mapping.owner_id,
                    SyncMapping.entity_kind == mapping.entity_kind,
                    SyncMapping.local_id == mapping.local_id,
                )
                .values(
                    remote_id=None,
                    conflict_remote_id=mapping.remote_id,
                    needs_reconciliation=True,
                )
            )
            s.commit()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _by_local(owner_id: str, entity_kind: str, local_id: str):
        return select(SyncMapping).where(
            SyncMapping.owner_id == owner_id,
            SyncMapping.entity_kind == entity_kind,
            SyncMapping.local_id == local_id,
        )

    @staticmethod
    def _update(s: Session, mapping: SyncMapping, values, expected_synced_at, row_id=None) -> None:
        stmt = update(SyncMapping).where(
            SyncMapping.owner_id == mapping.owner_id,
            SyncMapping.entity_kind == mapping.entity_kind,
            SyncMapping.local_id == mapping.local_id,
        )
        if row_id is not None:
            stmt = stmt.where(SyncMapping.id == row_id)
        if expected_synced_at is not _UNSET:
            stmt = stmt.where(SyncMapping.last_synced_at == expected_synced_at)
        result = s.connection().execute(stmt.values(**values))
        if result.rowcount == 0:
            s.rollback()
            raise StaleMappingError(
                f"mapping for local {mapping.local_id} changed since it was read"
            )
        s.commit()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            # Unique (owner, kind, remote_id) race that slipped past the check
            raise MappingConflict(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.error("Mapping store unavailable: %s", exc)
            raise StorageError(f"mapping store unavailable: {exc}") from exc
