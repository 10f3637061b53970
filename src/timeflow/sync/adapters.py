"""
Entity adapters: translate between local rows and Google resources.

CalendarAdapter (TimelineSlot <-> Calendar event) and TaskAdapter
(Task <-> Google Task) share one shape:

  pull(owner_id, scope)               -> [RemoteEntity]   (pages followed)
  push(owner_id, local, remote_id)    -> RemoteEntity     (insert or patch)
  get(owner_id, remote_id)            -> RemoteEntity     (404/410 is a tombstone)
  remove(owner_id, remote_id)         -> None             (404/410 is success)
  to_local_shape(raw)                 -> LocalEntity      (pure)
  to_remote_shape(local, metadata)    -> dict             (pure)

Adapters make network calls only. They never touch the mapping store or the
local tables; deduplication is the orchestrator's job (it looks the mapping
up before deciding between insert and patch).

Fields Google has no local column for are captured in provider metadata
(models.metadata) and written back by to_remote_shape, so an event's colour
or time zone survives a local edit.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from timeflow.models.metadata import CalendarEventMetadata, TaskMetadata
from timeflow.sync.entities import EntityKind, LocalEntity, RemoteEntity, SyncScope
from timeflow.sync.errors import PermanentProviderError
from timeflow.timeutil import parse_rfc3339, to_rfc3339, utcnow

logger = logging.getLogger(__name__)

UNTITLED = "Untitled Task"

# Google Calendar predefined colour ids
PRIORITY_COLORS = {
    "urgent": "11",  # red
    "high": "5",  # yellow
    "medium": "7",  # blue
    "low": "2",  # green
}
COLOR_PRIORITIES = {color: priority for priority, color in PRIORITY_COLORS.items()}


class EntityAdapter:
    """Shared pull/push/remove plumbing. Subclasses supply the translation."""

    kind: EntityKind

    def __init__(self, client, page_size: int = 250):
        self.client = client
        self.page_size = page_size

    async def pull(self, owner_id: str, scope: SyncScope) -> List[RemoteEntity]:
        """Every remote entity in scope, tombstones included."""
        entities: List[RemoteEntity] = []
        page_token: Optional[str] = None
        while True:
            page = await self._list_page(scope, page_token)
            for raw in page.get("items") or []:
                if not raw.get("id"):
                    continue
                entities.append(self.parse(raw))
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        logger.debug("Pulled %d %s entities for %s", len(entities), self.kind.value, owner_id)
        return entities

    async def push(
        self,
        owner_id: str,
        local: LocalEntity,
        remote_id: Optional[str] = None,
        metadata=None,
    ) -> RemoteEntity:
        """Create (remote_id None) or update the remote counterpart."""
        body = self.to_remote_shape(local, metadata)
        if remote_id is None:
            raw = await self._insert(body)
        else:
            raw = await self._patch(remote_id, body)
        if not isinstance(raw, dict) or not raw.get("id"):
            raise PermanentProviderError("provider response carried no id")
        return self.parse(raw)

    async def get(self, owner_id: str, remote_id: str) -> RemoteEntity:
        """Fetch one remote entity by id, whether or not it is in scope.

        A 404/410 comes back as a tombstone dated now: the resource was
        purged and no deletion time survives.
        """
        try:
            raw = await self._get(remote_id)
        except PermanentProviderError as exc:
            if not exc.not_found:
                raise
            logger.info("%s %s purged on provider", self.kind.value, remote_id)
            return RemoteEntity(remote_id=remote_id, kind=self.kind, fields={}, updated_at=utcnow(), deleted=True)
        if not isinstance(raw, dict) or not raw.get("id"):
            raise PermanentProviderError("provider response carried no id")
        return self.parse(raw)

    async def remove(self, owner_id: str, remote_id: str) -> None:
        try:
            await self._delete(remote_id)
        except PermanentProviderError as exc:
            if exc.not_found:
                logger.info("%s %s already gone on provider", self.kind.value, remote_id)
                return
            raise

    def parse(self, raw: Dict[str, Any]) -> RemoteEntity:
        local_view = self.to_local_shape(raw)
        meta = self.extract_metadata(raw)
        return RemoteEntity(
            remote_id=raw["id"],
            kind=self.kind,
            fields=local_view.fields,
            updated_at=local_view.updated_at,
            deleted=local_view.deleted,
            etag=raw.get("etag"),
            metadata=meta,
            local_hint=local_view.local_id,
            raw=raw,
        )

    def localize(self, remote_fields: Dict[str, Any], local_fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Remote fields as they would land locally, given the current row.

        Where the provider is coarser than the local schema (second
        precision, date-only due dates, two-state status) an equivalent
        local value is kept rather than degraded.
        """
        result = dict(remote_fields)
        if not local_fields:
            return result
        for name, value in remote_fields.items():
            current = local_fields.get(name)
            if isinstance(value, datetime) and isinstance(current, datetime):
                if value == current.replace(microsecond=0):
                    result[name] = current
        return result

    def bind(self, scope: SyncScope) -> "EntityAdapter":
        return self

    # Subclass hooks
    def to_local_shape(self, raw: Dict[str, Any]) -> LocalEntity:
        raise NotImplementedError

    def to_remote_shape(self, local: LocalEntity, metadata=None) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_metadata(self, raw: Dict[str, Any]):
        raise NotImplementedError

    async def _list_page(self, scope: SyncScope, page_token: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _get(self, remote_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def _insert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _patch(self, remote_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _delete(self, remote_id: str) -> None:
        raise NotImplementedError


class CalendarAdapter(EntityAdapter):
    """TimelineSlot <-> Google Calendar event."""

    kind = EntityKind.CALENDAR_EVENT

    def __init__(self, client, calendar_id: str = "primary", page_size: int = 250):
        super().__init__(client, page_size)
        self.calendar_id = calendar_id

    def to_local_shape(self, raw: Dict[str, Any]) -> LocalEntity:
        start_raw = raw.get("start") or {}
        end_raw = raw.get("end") or {}
        start = parse_rfc3339(start_raw.get("dateTime") or start_raw.get("date"))
        end = parse_rfc3339(end_raw.get("dateTime") or end_raw.get("date"))
        if start is not None and end is None:
            end = start + timedelta(hours=1)
        private = (raw.get("extendedProperties") or {}).get("private") or {}
        updated = parse_rfc3339(raw.get("updated"))
        deleted = raw.get("status") == "cancelled"
        return LocalEntity(
            local_id=private.get("slotId"),
            kind=self.kind,
            fields={
                "title": raw.get("summary") or UNTITLED,
                "description": raw.get("description") or "",
                "priority": COLOR_PRIORITIES.get(raw.get("colorId"), "medium"),
                "start_time": start,
                "end_time": end,
                "task_id": private.get("taskId"),
            },
            updated_at=updated,
            deleted_at=updated if deleted else None,
        )

    def to_remote_shape(self, local: LocalEntity, metadata: Optional[CalendarEventMetadata] = None) -> Dict[str, Any]:
        f = local.fields
        meta = metadata or CalendarEventMetadata()
        priority = f.get("priority") or "medium"

        color_id = PRIORITY_COLORS.get(priority, PRIORITY_COLORS["medium"])
        # Keep a colour we don't model if it still reads as the same priority
        if meta.color_id and COLOR_PRIORITIES.get(meta.color_id, "medium") == priority:
            color_id = meta.color_id

        private = dict(meta.extended_private)
        if local.local_id:
            private["taskTimeFlowId"] = f"slot_{local.local_id}"
            private["slotId"] = local.local_id
        if f.get("task_id"):
            private["taskId"] = f["task_id"]

        return {
            "summary": f.get("title") or UNTITLED,
            "description": f.get("description") or "",
            "start": self._when(f.get("start_time"), meta),
            "end": self._when(f.get("end_time"), meta),
            "colorId": color_id,
            "extendedProperties": {"private": private},
        }

    def extract_metadata(self, raw: Dict[str, Any]) -> CalendarEventMetadata:
        start_raw = raw.get("start") or {}
        private = (raw.get("extendedProperties") or {}).get("private") or {}
        return CalendarEventMetadata(
            etag=raw.get("etag"),
            color_id=raw.get("colorId"),
            time_zone=start_raw.get("timeZone"),
            html_link=raw.get("htmlLink"),
            all_day="date" in start_raw and "dateTime" not in start_raw,
            recurring_event_id=raw.get("recurringEventId"),
            extended_private={str(k): str(v) for k, v in private.items()},
        )

    @staticmethod
    def _when(value: Optional[datetime], meta: CalendarEventMetadata) -> Dict[str, str]:
        if value is None:
            return {}
        if meta.all_day and value.time() == datetime.min.time():
            return {"date": value.date().isoformat()}
        when = {"dateTime": to_rfc3339(value)}
        if meta.time_zone:
            when["timeZone"] = meta.time_zone
        return when

    async def _list_page(self, scope: SyncScope, page_token: Optional[str]) -> Dict[str, Any]:
        return await self.client.list_events(
            self.calendar_id,
            time_min=scope.time_min,
            time_max=scope.time_max,
            page_token=page_token,
            page_size=self.page_size,
        )

    async def _get(self, remote_id: str) -> Dict[str, Any]:
        return await self.client.get_event(self.calendar_id, remote_id)

    async def _insert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.insert_event(self.calendar_id, body)

    async def _patch(self, remote_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.patch_event(self.calendar_id, remote_id, body)

    async def _delete(self, remote_id: str) -> None:
        await self.client.delete_event(self.calendar_id, remote_id)


class TaskAdapter(EntityAdapter):
    """Task <-> Google Task."""

    kind = EntityKind.TASK

    def __init__(self, client, task_list_id: str = "@default", page_size: int = 100):
        super().__init__(client, page_size)
        self.task_list_id = task_list_id

    def to_local_shape(self, raw: Dict[str, Any]) -> LocalEntity:
        updated = parse_rfc3339(raw.get("updated"))
        return LocalEntity(
            local_id=None,
            kind=self.kind,
            fields={
                "title": (raw.get("title") or "").strip() or UNTITLED,
                "description": raw.get("notes") or "",
                "status": "completed" if raw.get("status") == "completed" else "todo",
                "due_date": parse_rfc3339(raw.get("due")),
            },
            updated_at=updated,
            deleted_at=updated if raw.get("deleted") else None,
        )

    def to_remote_shape(self, local: LocalEntity, metadata: Optional[TaskMetadata] = None) -> Dict[str, Any]:
        f = local.fields
        completed = f.get("status") == "completed"
        body: Dict[str, Any] = {
            "title": (f.get("title") or "").strip() or UNTITLED,
            "notes": f.get("description") or "",
            "status": "completed" if completed else "needsAction",
            "due": _format_due(f.get("due_date")),
        }
        if not completed:
            # Re-opening a task requires clearing the completion stamp
            body["completed"] = None
        elif metadata is not None and metadata.completed_at is not None:
            body["completed"] = to_rfc3339(metadata.completed_at)
        return body

    def extract_metadata(self, raw: Dict[str, Any]) -> TaskMetadata:
        return TaskMetadata(
            etag=raw.get("etag"),
            parent=raw.get("parent"),
            position=raw.get("position"),
            links=list(raw.get("links") or []),
            completed_at=parse_rfc3339(raw.get("completed")),
            hidden=bool(raw.get("hidden")),
        )

    def localize(self, remote_fields: Dict[str, Any], local_fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        result = super().localize(remote_fields, local_fields)
        if not local_fields:
            return result
        # Google only knows open/completed
        if result.get("status") == "todo" and local_fields.get("status") == "in_progress":
            result["status"] = "in_progress"
        # Google keeps the date of a due timestamp and drops the time
        remote_due, local_due = result.get("due_date"), local_fields.get("due_date")
        if remote_due is not None and local_due is not None and remote_due.date() == local_due.date():
            result["due_date"] = local_due
        return result

    def bind(self, scope: SyncScope) -> "TaskAdapter":
        """Writes must land in the list being synced, not the default one."""
        if not scope.list_id or scope.list_id == self.task_list_id:
            return self
        return TaskAdapter(self.client, task_list_id=scope.list_id, page_size=self.page_size)

    async def _list_page(self, scope: SyncScope, page_token: Optional[str]) -> Dict[str, Any]:
        return await self.client.list_tasks(
            scope.list_id or self.task_list_id,
            page_token=page_token,
            page_size=self.page_size,
        )

    async def _get(self, remote_id: str) -> Dict[str, Any]:
        return await self.client.get_task(self.task_list_id, remote_id)

    async def _insert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.insert_task(self.task_list_id, body)

    async def _patch(self, remote_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.patch_task(self.task_list_id, remote_id, body)

    async def _delete(self, remote_id: str) -> None:
        await self.client.delete_task(self.task_list_id, remote_id)


def _format_due(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # Tasks API expects midnight timestamps; the time part is discarded
    return to_rfc3339(value.replace(hour=0, minute=0, second=0, microsecond=0))
