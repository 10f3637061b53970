"""Shared test fixtures."""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from timeflow.models.local import Task, TimelineSlot  # noqa: F401
from timeflow.models.sync import (  # noqa: F401
    Integration,
    SyncLease,
    SyncMapping,
    SyncRun,
    WebhookSubscription,
)
from timeflow.sync.errors import PermanentProviderError
from timeflow.timeutil import parse_rfc3339, to_rfc3339, utcnow


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine):
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="integration")
def integration_fixture(test_session: Session) -> Integration:
    """An active Google integration for owner u1, tasks in list-1."""
    integration = Integration(owner_id="u1", task_list_id="list-1", calendar_id="primary")
    test_session.add(integration)
    test_session.commit()
    test_session.refresh(integration)
    return integration


# ─── Stateful fake Google client ──────────────────────────────────────────────

class FakeGoogle:
    """
    In-memory stand-in for GoogleClient: same async methods, Google-shaped
    payloads, etags bumped on every write, tombstones kept on delete.

    ``now`` pins the "updated" stamp of writes; None means the real clock.
    """

    def __init__(self):
        self.tasks: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.events: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.channels: Dict[str, Dict[str, Any]] = {}
        self.calendars: Dict[str, Dict[str, Any]] = {"primary": {"id": "primary", "summary": "Primary", "primary": True}}
        self.tasklists: Dict[str, Dict[str, Any]] = {"@default": {"id": "@default", "title": "My Tasks"}}
        self.now: Optional[datetime] = None
        self.list_delay: float = 0.0
        self._seq = 0
        self._failures: List[list] = []

    # Failure injection
    def fail(self, op: str, exc: Exception, when=None, times: Optional[int] = None) -> None:
        self._failures.append([op, exc, when, times])

    def heal(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, op: str, *args) -> None:
        for failure in self._failures:
            name, exc, when, times = failure
            if name != op or (times is not None and times <= 0):
                continue
            if when is None or when(*args):
                if times is not None:
                    failure[3] = times - 1
                raise exc

    def _stamp(self) -> str:
        return to_rfc3339(self.now or utcnow())

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def _etag(self) -> str:
        self._seq += 1
        return f'"etag-{self._seq}"'

    # Direct manipulation, as if a human edited in Google's UI
    def seed_task(self, tasklist: str, **fields) -> Dict[str, Any]:
        task = {
            "kind": "tasks#task",
            "id": self._next("gt"),
            "etag": self._etag(),
            "title": "",
            "notes": "",
            "status": "needsAction",
            "updated": self._stamp(),
        }
        task.update(fields)
        self.tasks.setdefault(tasklist, {})[task["id"]] = task
        return task

    def edit_task(self, tasklist: str, task_id: str, **fields) -> Dict[str, Any]:
        task = self.tasks[tasklist][task_id]
        task.update(fields)
        task["etag"] = self._etag()
        task["updated"] = self._stamp()
        return task

    def edit_event(self, event_id: str, **fields) -> Dict[str, Any]:
        event = self.events[event_id]
        event.update(fields)
        event["etag"] = self._etag()
        event["updated"] = self._stamp()
        return event

    def live_tasks(self, tasklist: str) -> List[Dict[str, Any]]:
        return [t for t in self.tasks.get(tasklist, {}).values() if not t.get("deleted")]

    def ops(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    # ── Tasks v1 ──────────────────────────────────────────────────────────────

    async def list_tasks(self, tasklist, page_token=None, page_size=100, updated_min=None):
        self.calls.append(("list_tasks", tasklist, page_token))
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        self._maybe_fail("list_tasks", tasklist)
        items = list(self.tasks.get(tasklist, {}).values())
        return _page(items, page_token, page_size)

    async def get_task(self, tasklist, task_id):
        self.calls.append(("get_task", tasklist, task_id))
        self._maybe_fail("get_task", task_id)
        task = self.tasks.get(tasklist, {}).get(task_id)
        if task is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)
        return dict(task)

    async def insert_task(self, tasklist, body):
        self.calls.append(("insert_task", tasklist, body))
        self._maybe_fail("insert_task", body)
        task = {"kind": "tasks#task", "id": self._next("gt"), "etag": self._etag(), "updated": self._stamp()}
        task.update(body)
        self.tasks.setdefault(tasklist, {})[task["id"]] = task
        return dict(task)

    async def patch_task(self, tasklist, task_id, body):
        self.calls.append(("patch_task", tasklist, task_id, body))
        self._maybe_fail("patch_task", task_id, body)
        task = self.tasks.get(tasklist, {}).get(task_id)
        if task is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)
        task.update(body)
        task["etag"] = self._etag()
        task["updated"] = self._stamp()
        return dict(task)

    async def delete_task(self, tasklist, task_id):
        self.calls.append(("delete_task", tasklist, task_id))
        self._maybe_fail("delete_task", task_id)
        task = self.tasks.get(tasklist, {}).get(task_id)
        if task is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)
        task["deleted"] = True
        task["etag"] = self._etag()
        task["updated"] = self._stamp()

    async def list_tasklists(self):
        self.calls.append(("list_tasklists",))
        self._maybe_fail("list_tasklists")
        return {"items": [dict(t) for t in self.tasklists.values()]}

    async def insert_tasklist(self, body):
        self.calls.append(("insert_tasklist", body))
        self._maybe_fail("insert_tasklist", body)
        tasklist = {"kind": "tasks#taskList", "id": self._next("tl"), "etag": self._etag(), "updated": self._stamp()}
        tasklist.update(body)
        self.tasklists[tasklist["id"]] = tasklist
        return dict(tasklist)

    # ── Calendar v3 ───────────────────────────────────────────────────────────

    async def list_events(self, calendar_id, time_min=None, time_max=None, page_token=None, page_size=250):
        self.calls.append(("list_events", calendar_id, page_token))
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        self._maybe_fail("list_events", calendar_id)
        items = []
        for event in self.events.values():
            start = parse_rfc3339(event["start"].get("dateTime") or event["start"].get("date"))
            end = parse_rfc3339(event["end"].get("dateTime") or event["end"].get("date"))
            if time_max is not None and start >= time_max:
                continue
            if time_min is not None and end <= time_min:
                continue
            items.append(event)
        return _page(items, page_token, page_size)

    async def get_event(self, calendar_id, event_id):
        self.calls.append(("get_event", calendar_id, event_id))
        self._maybe_fail("get_event", event_id)
        event = self.events.get(event_id)
        if event is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)
        return dict(event)

    async def insert_event(self, calendar_id, body):
        self.calls.append(("insert_event", calendar_id, body))
        self._maybe_fail("insert_event", body)
        event_id = self._next("ev")
        event = {
            "kind": "calendar#event",
            "id": event_id,
            "etag": self._etag(),
            "status": "confirmed",
            "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
            "updated": self._stamp(),
        }
        event.update(body)
        self.events[event_id] = event
        return dict(event)

    async def patch_event(self, calendar_id, event_id, body):
        self.calls.append(("patch_event", calendar_id, event_id, body))
        self._maybe_fail("patch_event", event_id, body)
        event = self.events.get(event_id)
        if event is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)
        event.update(body)
        event["etag"] = self._etag()
        event["updated"] = self._stamp()
        return dict(event)

    async def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete_event", calendar_id, event_id))
        self._maybe_fail("delete_event", event_id)
        event = self.events.get(event_id)
        if event is None or event["status"] == "cancelled":
            raise PermanentProviderError("Google API error 410: deleted", status=410)
        event["status"] = "cancelled"
        event["etag"] = self._etag()
        event["updated"] = self._stamp()

    async def watch_events(self, calendar_id, body):
        self.calls.append(("watch_events", calendar_id, body))
        self._maybe_fail("watch_events", body)
        channel = {
            "kind": "api#channel",
            "id": body["id"],
            "resourceId": f"res-{calendar_id}",
            "resourceUri": f"https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events",
            "expiration": body.get("expiration"),
        }
        self.channels[body["id"]] = channel
        return dict(channel)

    async def stop_channel(self, channel_id, resource_id):
        self.calls.append(("stop_channel", channel_id, resource_id))
        self._maybe_fail("stop_channel", channel_id)
        if self.channels.pop(channel_id, None) is None:
            raise PermanentProviderError("Google API error 404: notFound", status=404)

    async def list_calendars(self):
        self.calls.append(("list_calendars",))
        self._maybe_fail("list_calendars")
        return {"items": [dict(c) for c in self.calendars.values()]}

    async def insert_calendar(self, body):
        self.calls.append(("insert_calendar", body))
        self._maybe_fail("insert_calendar", body)
        calendar = {"kind": "calendar#calendar", "id": f"{self._next('cal')}@group.calendar.google.com", "etag": self._etag()}
        calendar.update(body)
        self.calendars[calendar["id"]] = calendar
        return dict(calendar)


def _page(items, page_token, page_size):
    start = int(page_token) if page_token else 0
    page = {"items": [dict(i) for i in items[start:start + page_size]]}
    if start + page_size < len(items):
        page["nextPageToken"] = str(start + page_size)
    return page


@pytest.fixture(name="fake_google")
def fake_google_fixture() -> FakeGoogle:
    return FakeGoogle()
