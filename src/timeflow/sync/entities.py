"""
Value types passed between the sync components.

LocalEntity / RemoteEntity are snapshots, not live rows: the engine never
assumes it is the only writer of either store. ``fields`` always uses the
local field names so the two sides can be compared directly.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EntityKind(str, Enum):
    CALENDAR_EVENT = "calendar_event"
    TASK = "task"


class Direction(str, Enum):
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    BIDIRECTIONAL = "bidirectional"

    @property
    def writes_remote(self) -> bool:
        return self in (Direction.TO_REMOTE, Direction.BIDIRECTIONAL)

    @property
    def writes_local(self) -> bool:
        return self in (Direction.FROM_REMOTE, Direction.BIDIRECTIONAL)


class Trigger(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class RunStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncScope:
    """The bounded subset of entities a run considers.

    Calendar runs use the time window; task runs use the list id. Both are
    optional: an adapter falls back to its configured default.
    """

    entity_kind: EntityKind
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None
    list_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entity_kind": self.entity_kind.value,
            "time_min": self.time_min.isoformat() if self.time_min else None,
            "time_max": self.time_max.isoformat() if self.time_max else None,
            "list_id": self.list_id,
        }


@dataclass
class LocalEntity:
    local_id: Optional[str]
    kind: EntityKind
    fields: Dict[str, Any]
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def version(self) -> Optional[str]:
        """Revision marker: the last write (or deletion) timestamp."""
        stamp = self.deleted_at or self.updated_at
        return stamp.isoformat() if stamp else None


@dataclass
class RemoteEntity:
    remote_id: str
    kind: EntityKind
    fields: Dict[str, Any]
    updated_at: Optional[datetime] = None
    deleted: bool = False
    etag: Optional[str] = None
    metadata: Any = None  # CalendarEventMetadata | TaskMetadata
    # Local id echoed back by the provider (calendar extended properties)
    local_hint: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> Optional[str]:
        if self.etag:
            return self.etag
        return self.updated_at.isoformat() if self.updated_at else None


@dataclass
class ItemOutcome:
    """Result of processing one candidate pair; fed to SyncLogger.record_item."""

    ref: str
    action: str  # "created", "updated", "deleted", "skipped", "failed"
    message: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class SyncRequest:
    """A run request as queued by the webhook listener or scheduler."""

    owner_id: str
    direction: Direction
    scope: SyncScope
    trigger: Trigger = Trigger.MANUAL
    sync_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.owner_id}:{self.scope.entity_kind.value}"


@dataclass
class RunSummary:
    """What the trigger API returns."""

    run_id: Optional[int]
    status: str
    success: bool
    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_run(cls, run) -> "RunSummary":
        errors = [{"ref": e.get("ref"), "message": e.get("message")} for e in (run.errors or [])]
        return cls(
            run_id=run.id,
            status=run.status,
            success=run.status == RunStatus.COMPLETED.value and not errors,
            items_created=run.items_created,
            items_updated=run.items_updated,
            items_deleted=run.items_deleted,
            errors=errors,
        )


def snapshot_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of entity fields, used as the three-way merge base."""
    return {
        name: value.isoformat() if isinstance(value, datetime) else value
        for name, value in fields.items()
    }
