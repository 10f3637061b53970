"""Sync engine tables: identity mappings, run audit log, leases, webhooks."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from timeflow.timeutil import utcnow


class SyncMapping(SQLModel, table=True):
    """Durable correspondence between a local entity and its remote twin."""

    __table_args__ = (
        UniqueConstraint("owner_id", "entity_kind", "local_id", name="uq_mapping_local"),
        UniqueConstraint("owner_id", "entity_kind", "remote_id", name="uq_mapping_remote"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    entity_kind: str  # "calendar_event", "task"
    local_id: str
    # None only while the row is flagged for manual reconciliation
    remote_id: Optional[str] = None

    last_synced_at: datetime = Field(default_factory=utcnow)
    last_local_version: Optional[str] = None
    last_remote_version: Optional[str] = None

    # Serialized ProviderMetadata (see models.metadata)
    provider_metadata: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    # Local-shape fields as of the last successful sync (merge base)
    synced_fields: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    needs_reconciliation: bool = False
    conflict_remote_id: Optional[str] = None


class SyncRun(SQLModel, table=True):
    """One row per sync attempt. Finalized exactly once."""

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    provider: str = "google"
    trigger: str = "manual"  # "manual", "webhook", "scheduled"
    direction: str  # "to_remote", "from_remote", "bidirectional"
    entity_kind: str
    status: str = "started"  # "started", "completed", "failed"

    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    # [{"ref": ..., "message": ..., "kind": ...}] in the order they happened
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    error_message: Optional[str] = None

    started_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    # Trigger context: webhook headers, scope bounds
    sync_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))


class SyncLease(SQLModel, table=True):
    """Mutual-exclusion token for one (owner, entity kind) scope."""

    key: str = Field(primary_key=True)  # "{owner_id}:{entity_kind}"
    holder: str
    run_id: Optional[int] = None
    acquired_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class WebhookSubscription(SQLModel, table=True):
    """A provider watch channel that routes push notifications to an owner."""

    id: Optional[int] = Field(default=None, primary_key=True)
    channel_id: str = Field(unique=True, index=True)
    resource_id: str
    owner_id: str = Field(index=True)
    entity_kind: str
    calendar_id: Optional[str] = None
    task_list_id: Optional[str] = None
    token: Optional[str] = None
    resource_uri: Optional[str] = None
    expires_at: datetime
    last_message_number: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class Integration(SQLModel, table=True):
    """Per-owner provider connection settings."""

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    provider: str = "google"
    status: str = "active"  # "active", "revoked"
    calendar_id: str = "primary"
    task_list_id: str = "@default"
    sync_calendar: bool = True
    sync_tasks: bool = True
    last_synced_at: Optional[datetime] = None
