"""
Conflict resolution between two versions of the same logical entity.

This is the only place sync policy lives. Policy:

  - Last writer wins by timestamp, but only when the two writes are more
    than the clock-skew tolerance apart. A deletion is a write stamped with
    the tombstone's deletion time, so "deletion wins only if newer" and
    "an update newer than the deletion resurrects the entity" both fall out
    of the same comparison.
  - Timestamps within the clock-skew tolerance count as a tie, and ties go
    to the remote side: the provider is what a human is most likely looking
    at directly. A local write that leads by no more than the tolerance
    therefore still loses.
  - When both sides are live and each knows which fields it changed since
    the last sync, disjoint edits are merged instead of one being dropped.

resolve() is pure, total and deterministic. It never raises.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from timeflow.timeutil import to_naive_utc

DEFAULT_TOLERANCE = timedelta(seconds=2)


class DecisionKind(str, Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"


@dataclass(frozen=True)
class VersionedEntity:
    updated_at: Optional[datetime]
    deleted: bool = False
    fields: Optional[Dict[str, Any]] = None
    # Field names changed since the last synced snapshot; None if unknown
    changed_fields: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    fields: Optional[Dict[str, Any]] = None
    reason: str = ""


def changed_since(fields: Dict[str, Any], snapshot: Optional[Dict[str, Any]]) -> Optional[FrozenSet[str]]:
    """Names of fields whose value differs from the snapshot.

    Only keys present in ``fields`` are compared: a side that cannot
    represent a field (Google Tasks has no priority) never "changes" it.
    Returns None when there is no snapshot to compare against.
    """
    if snapshot is None:
        return None
    return frozenset(k for k in fields if fields.get(k) != snapshot.get(k))


class ConflictResolver:
    def __init__(self, tolerance: timedelta = DEFAULT_TOLERANCE):
        self.tolerance = tolerance

    def resolve(self, local: VersionedEntity, remote: VersionedEntity) -> Decision:
        """Pick the surviving side.

        The newer write wins only when it leads by more than ``tolerance``;
        any gap up to and including the tolerance is a tie, kept remote.
        """
        if not local.deleted and not remote.deleted:
            merged = self._merge(local, remote)
            if merged is not None:
                return Decision(DecisionKind.MERGE, merged, "disjoint field changes")

        local_ts = _stamp(local.updated_at)
        remote_ts = _stamp(remote.updated_at)

        if local_ts - remote_ts > self.tolerance:
            reason = "local deletion is newer" if local.deleted else "local is newer"
            return Decision(DecisionKind.KEEP_LOCAL, reason=reason)

        if remote_ts - local_ts > self.tolerance:
            reason = "remote deletion is newer" if remote.deleted else "remote is newer"
        else:
            reason = "tie within clock-skew tolerance"
        return Decision(DecisionKind.KEEP_REMOTE, reason=reason)

    @staticmethod
    def _merge(local: VersionedEntity, remote: VersionedEntity) -> Optional[Dict[str, Any]]:
        if local.changed_fields is None or remote.changed_fields is None:
            return None
        if local.fields is None or remote.fields is None:
            return None
        if local.changed_fields & remote.changed_fields:
            return None
        merged = dict(local.fields)
        for name in sorted(remote.changed_fields):
            if name in remote.fields:
                merged[name] = remote.fields[name]
            else:
                merged.pop(name, None)
        return merged


_default = ConflictResolver()


def resolve(local: VersionedEntity, remote: VersionedEntity) -> Decision:
    """Resolve with the default 2s tolerance."""
    return _default.resolve(local, remote)


def _stamp(value: Optional[datetime]) -> datetime:
    # Missing timestamps lose to any real one
    if value is None:
        return datetime.min
    return to_naive_utc(value)
