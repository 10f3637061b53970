"""Tests for GoogleClient: error classification, retries, request params.

googleapiclient services are replaced with MagicMocks; no network calls.
"""
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from googleapiclient.errors import HttpError

from timeflow.google.client import GoogleClient, classify_error
from timeflow.sync.errors import PermanentProviderError, TransientProviderError


class _Resp:
    def __init__(self, status: int):
        self.status = status
        self.reason = "error"


def http_error(status: int, reason: str = "") -> HttpError:
    payload = {"error": {"code": status, "message": "x", "errors": [{"reason": reason}] if reason else []}}
    return HttpError(_Resp(status), json.dumps(payload).encode("utf-8"))


def make_client(**kwargs) -> GoogleClient:
    return GoogleClient(
        calendar_service=MagicMock(),
        tasks_service=MagicMock(),
        backoff_seconds=0,
        max_backoff_seconds=0,
        **kwargs,
    )


class TestClassifyError:
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient_statuses(self, status):
        err = classify_error(http_error(status))
        assert isinstance(err, TransientProviderError)
        assert err.status == status

    def test_403_rate_limit_is_transient(self):
        assert isinstance(classify_error(http_error(403, "userRateLimitExceeded")), TransientProviderError)

    def test_403_forbidden_is_permanent(self):
        assert isinstance(classify_error(http_error(403, "forbidden")), PermanentProviderError)

    @pytest.mark.parametrize("status", [400, 401, 404, 410])
    def test_other_4xx_permanent(self, status):
        err = classify_error(http_error(status))
        assert isinstance(err, PermanentProviderError)
        assert err.not_found == (status in (404, 410))

    def test_timeout_is_transient(self):
        assert isinstance(classify_error(TimeoutError("read timed out")), TransientProviderError)

    def test_malformed_payload_is_permanent(self):
        assert isinstance(classify_error(KeyError("id")), PermanentProviderError)


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        client = make_client()
        execute = client.tasks.tasks.return_value.list.return_value.execute
        execute.side_effect = [http_error(503), {"items": [{"id": "gt-1"}]}]

        page = await client.list_tasks("list-1")

        assert page["items"][0]["id"] == "gt-1"
        assert execute.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        client = make_client(max_attempts=3)
        execute = client.tasks.tasks.return_value.list.return_value.execute
        execute.side_effect = http_error(500)

        with pytest.raises(TransientProviderError):
            await client.list_tasks("list-1")
        assert execute.call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        client = make_client()
        execute = client.calendar.events.return_value.patch.return_value.execute
        execute.side_effect = http_error(404)

        with pytest.raises(PermanentProviderError) as exc_info:
            await client.patch_event("primary", "ev-1", {"summary": "x"})
        assert exc_info.value.not_found
        assert execute.call_count == 1


class TestRequestParams:
    @pytest.mark.asyncio
    async def test_list_events_params(self):
        client = make_client()
        events = client.calendar.events.return_value
        events.list.return_value.execute.return_value = {"items": []}

        await client.list_events(
            "primary",
            time_min=datetime(2026, 3, 1),
            time_max=datetime(2026, 3, 8),
            page_token="tok",
        )

        kwargs = events.list.call_args.kwargs
        assert kwargs["calendarId"] == "primary"
        assert kwargs["showDeleted"] is True
        assert kwargs["singleEvents"] is True
        assert kwargs["timeMin"] == "2026-03-01T00:00:00Z"
        assert kwargs["timeMax"] == "2026-03-08T00:00:00Z"
        assert kwargs["pageToken"] == "tok"

    @pytest.mark.asyncio
    async def test_list_tasks_caps_page_size(self):
        client = make_client()
        tasks = client.tasks.tasks.return_value
        tasks.list.return_value.execute.return_value = {"items": []}

        await client.list_tasks("list-1", page_size=250)

        kwargs = tasks.list.call_args.kwargs
        assert kwargs["maxResults"] == 100
        assert kwargs["showDeleted"] is True
        assert kwargs["showHidden"] is True

    @pytest.mark.asyncio
    async def test_stop_channel_body(self):
        client = make_client()
        channels = client.calendar.channels.return_value
        channels.stop.return_value.execute.return_value = ""

        await client.stop_channel("ch-1", "res-1")

        assert channels.stop.call_args.kwargs["body"] == {"id": "ch-1", "resourceId": "res-1"}

    @pytest.mark.asyncio
    async def test_get_event_and_task_by_id(self):
        client = make_client()
        events = client.calendar.events.return_value
        events.get.return_value.execute.return_value = {"id": "ev-1"}
        tasks = client.tasks.tasks.return_value
        tasks.get.return_value.execute.return_value = {"id": "gt-1"}

        assert await client.get_event("primary", "ev-1") == {"id": "ev-1"}
        assert await client.get_task("list-1", "gt-1") == {"id": "gt-1"}

        assert events.get.call_args.kwargs == {"calendarId": "primary", "eventId": "ev-1"}
        assert tasks.get.call_args.kwargs == {"tasklist": "list-1", "task": "gt-1"}

    @pytest.mark.asyncio
    async def test_get_missing_event_is_permanent(self):
        client = make_client()
        events = client.calendar.events.return_value
        events.get.return_value.execute.side_effect = http_error(404, "notFound")

        with pytest.raises(PermanentProviderError) as exc_info:
            await client.get_event("primary", "ev-1")
        assert exc_info.value.not_found

    @pytest.mark.asyncio
    async def test_insert_calendar_and_tasklist_bodies(self):
        client = make_client()
        calendars = client.calendar.calendars.return_value
        calendars.insert.return_value.execute.return_value = {"id": "cal-1"}
        tasklists = client.tasks.tasklists.return_value
        tasklists.insert.return_value.execute.return_value = {"id": "tl-1"}

        await client.insert_calendar({"summary": "TaskTimeFlow"})
        await client.insert_tasklist({"title": "TaskTimeFlow"})

        assert calendars.insert.call_args.kwargs["body"] == {"summary": "TaskTimeFlow"}
        assert tasklists.insert.call_args.kwargs["body"] == {"title": "TaskTimeFlow"}
