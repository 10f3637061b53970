"""
Provider metadata carried alongside a mapping.

Google entities have fields the local schema has no column for (event
colour, time zone, task parent/position, ...). They are captured here when
translating remote -> local and fed back when translating local -> remote so
a round trip does not lose them. The union is discriminated on ``kind``,
which matches SyncMapping.entity_kind.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class CalendarEventMetadata(BaseModel):
    kind: Literal["calendar_event"] = "calendar_event"
    etag: Optional[str] = None
    color_id: Optional[str] = None
    time_zone: Optional[str] = None
    html_link: Optional[str] = None
    all_day: bool = False
    recurring_event_id: Optional[str] = None
    extended_private: Dict[str, str] = Field(default_factory=dict)


class TaskMetadata(BaseModel):
    kind: Literal["task"] = "task"
    etag: Optional[str] = None
    parent: Optional[str] = None
    position: Optional[str] = None
    links: List[Dict[str, Any]] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    hidden: bool = False


ProviderMetadata = Annotated[
    Union[CalendarEventMetadata, TaskMetadata], Field(discriminator="kind")
]

_adapter = TypeAdapter(ProviderMetadata)


def load_metadata(data: Optional[Dict[str, Any]]) -> Optional[Union[CalendarEventMetadata, TaskMetadata]]:
    """Rebuild typed metadata from the JSON column; None if absent."""
    if not data:
        return None
    return _adapter.validate_python(data)


def dump_metadata(meta: Optional[Union[CalendarEventMetadata, TaskMetadata]]) -> Optional[Dict[str, Any]]:
    if meta is None:
        return None
    return meta.model_dump(mode="json")
