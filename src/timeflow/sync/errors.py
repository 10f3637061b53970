"""Error taxonomy for the sync engine.

Item-level errors (provider failures, mapping conflicts) are caught by the
orchestrator and recorded on the SyncRun; run-level errors (storage,
lease) abort the run and surface to the caller.
"""
from typing import Any, Optional


class SyncError(RuntimeError):
    """Base class for all sync engine errors."""


# ── Provider ──────────────────────────────────────────────────────────────────

class ProviderError(SyncError):
    """A provider call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    """Timeout, 5xx or rate limit. Retried with backoff before surfacing."""


class PermanentProviderError(ProviderError):
    """4xx (other than rate limit) or malformed payload. Never retried."""

    @property
    def not_found(self) -> bool:
        return self.status in (404, 410)


# ── Mapping ───────────────────────────────────────────────────────────────────

class MappingConflict(SyncError):
    """Two entities claim the same mapping slot."""

    def __init__(self, message: str, existing: Any = None):
        super().__init__(message)
        self.existing = existing


class StaleMappingError(MappingConflict):
    """A compare-and-set upsert lost the race to another writer."""


class StorageError(SyncError):
    """The mapping store (database) is unavailable. Aborts the run."""


# ── Run control ───────────────────────────────────────────────────────────────

class AlreadyRunning(SyncError):
    """The scope lease is held by another run. Retry later."""

    def __init__(self, owner_id: str, entity_kind: str):
        super().__init__(f"A sync for {owner_id}/{entity_kind} is already running")
        self.owner_id = owner_id
        self.entity_kind = entity_kind


class AlreadyFinished(SyncError):
    """SyncLogger.finish() was called twice for the same run."""


class AdapterUnavailable(SyncError):
    """The provider adapter could not be built (no integration, no token)."""


class RunTimeout(SyncError):
    """A run exceeded the maximum duration and was abandoned."""
