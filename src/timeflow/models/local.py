"""
Local store tables.

These belong to the wider TaskTimeFlow app. The sync engine only touches
them through sync.local_store.LocalStore. Deletions are soft: deleted_at is
the tombstone timestamp used by conflict resolution.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel

from timeflow.timeutil import utcnow


def _new_id() -> str:
    return uuid4().hex


class Task(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    list_id: Optional[str] = Field(default=None, index=True)
    title: str = "Untitled Task"
    description: str = ""
    status: str = "todo"  # "todo", "in_progress", "completed"
    priority: str = "medium"  # "urgent", "high", "medium", "low"
    due_date: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class TimelineSlot(SQLModel, table=True):
    """A scheduled block on the user's timeline; mirrors a calendar event."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    task_id: Optional[str] = None
    title: str = "Untitled Task"
    description: str = ""
    priority: str = "medium"
    start_time: datetime = Field(index=True)
    end_time: datetime
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
