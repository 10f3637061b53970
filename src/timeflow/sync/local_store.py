"""
LocalStore: the engine's view of the app's own task/timeline tables.

The rest of the app writes these tables too, so every read is a fresh
snapshot and every write re-reads the row it is about to change. Deletions
are tombstones (deleted_at) so they can take part in conflict resolution.
"""
import logging
from typing import Any, Dict, List, Optional, Type, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from timeflow.models.local import Task, TimelineSlot
from timeflow.sync.entities import EntityKind, LocalEntity, SyncScope
from timeflow.sync.errors import StorageError
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)

Row = Union[Task, TimelineSlot]

# Columns that travel through the sync engine, per entity kind
SYNCED_FIELDS = {
    EntityKind.TASK: ("title", "description", "status", "priority", "due_date"),
    EntityKind.CALENDAR_EVENT: (
        "title",
        "description",
        "priority",
        "start_time",
        "end_time",
        "task_id",
    ),
}

_NULLABLE = frozenset({"due_date", "task_id"})

_TABLES: Dict[EntityKind, Type[Row]] = {
    EntityKind.TASK: Task,
    EntityKind.CALENDAR_EVENT: TimelineSlot,
}


class LocalStore:
    def __init__(self, engine):
        self.engine = engine

    def list_entities(self, owner_id: str, scope: SyncScope) -> List[LocalEntity]:
        """All entities in scope, tombstones included."""
        table = _TABLES[scope.entity_kind]
        stmt = select(table).where(table.owner_id == owner_id)
        if scope.entity_kind == EntityKind.CALENDAR_EVENT:
            if scope.time_min is not None:
                stmt = stmt.where(TimelineSlot.end_time > scope.time_min)
            if scope.time_max is not None:
                stmt = stmt.where(TimelineSlot.start_time < scope.time_max)
        elif scope.list_id is not None:
            stmt = stmt.where(Task.list_id == scope.list_id)

        try:
            with Session(self.engine) as s:
                rows = s.exec(stmt).all()
                return [self._to_entity(scope.entity_kind, row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorageError(f"local store unavailable: {exc}") from exc

    def get(self, owner_id: str, kind: EntityKind, local_id: str) -> Optional[LocalEntity]:
        table = _TABLES[kind]
        try:
            with Session(self.engine) as s:
                row = s.get(table, local_id)
                if row is None or row.owner_id != owner_id:
                    return None
                return self._to_entity(kind, row)
        except SQLAlchemyError as exc:
            raise StorageError(f"local store unavailable: {exc}") from exc

    def apply(
        self,
        owner_id: str,
        entity: LocalEntity,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> LocalEntity:
        """Insert or update a row from entity fields; clears any tombstone.

        Args:
            owner_id: Row owner.
            entity: Desired state. local_id None means insert.
            defaults: Extra column values used only on insert (e.g. list_id).

        Returns:
            The stored entity with its new local_id and updated_at.
        """
        table = _TABLES[entity.kind]
        allowed = SYNCED_FIELDS[entity.kind]
        values = {
            k: v
            for k, v in entity.fields.items()
            if k in allowed and (v is not None or k in _NULLABLE)
        }
        try:
            with Session(self.engine) as s:
                row = s.get(table, entity.local_id) if entity.local_id else None
                if row is not None and row.owner_id != owner_id:
                    row = None
                if row is None:
                    init = dict(defaults or {})
                    init.update(values)
                    if entity.local_id:
                        init["id"] = entity.local_id
                    row = table(owner_id=owner_id, **init)
                else:
                    for name, value in values.items():
                        setattr(row, name, value)
                row.deleted_at = None
                row.updated_at = utcnow()
                s.add(row)
                s.commit()
                s.refresh(row)
                return self._to_entity(entity.kind, row)
        except SQLAlchemyError as exc:
            raise StorageError(f"local store unavailable: {exc}") from exc

    def delete(self, owner_id: str, kind: EntityKind, local_id: str) -> Optional[LocalEntity]:
        """Tombstone a row. Returns the tombstone, or None if it never existed."""
        table = _TABLES[kind]
        try:
            with Session(self.engine) as s:
                row = s.get(table, local_id)
                if row is None or row.owner_id != owner_id:
                    return None
                if row.deleted_at is None:
                    row.deleted_at = utcnow()
                    s.add(row)
                    s.commit()
                    s.refresh(row)
                return self._to_entity(kind, row)
        except SQLAlchemyError as exc:
            raise StorageError(f"local store unavailable: {exc}") from exc

    @staticmethod
    def _to_entity(kind: EntityKind, row: Row) -> LocalEntity:
        return LocalEntity(
            local_id=row.id,
            kind=kind,
            fields={name: getattr(row, name) for name in SYNCED_FIELDS[kind]},
            updated_at=row.updated_at,
            deleted_at=row.deleted_at,
        )
