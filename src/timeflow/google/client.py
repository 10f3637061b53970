"""
Async wrapper around googleapiclient for Calendar v3 and Tasks v1.

googleapiclient is synchronous; every request's execute() runs in the
default thread pool executor so it doesn't block the asyncio event loop.

Every failure leaves this module as either TransientProviderError (timeouts,
5xx, rate limits: retried here with exponential backoff) or
PermanentProviderError (everything else: never retried). Callers never see
HttpError.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from timeflow.sync.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from timeflow.timeutil import to_rfc3339

logger = logging.getLogger(__name__)

# 403 reasons Google uses for quota / rate limiting rather than auth failures
RATE_LIMIT_REASONS = frozenset({
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "quotaExceeded",
    "backendError",
})


def classify_error(exc: BaseException) -> ProviderError:
    """Map a raw client exception onto the provider error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, HttpError):
        status = getattr(getattr(exc, "resp", None), "status", None)
        status = int(status) if status is not None else None
        reason = _error_reason(exc)
        message = f"Google API error {status}: {reason or exc}"
        if status == 429 or (status is not None and status >= 500):
            return TransientProviderError(message, status=status)
        if status == 403 and reason in RATE_LIMIT_REASONS:
            return TransientProviderError(message, status=status)
        return PermanentProviderError(message, status=status)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientProviderError(f"network error: {exc}")
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return PermanentProviderError(f"malformed payload: {exc}")
    if isinstance(exc, OSError):
        return TransientProviderError(f"network error: {exc}")
    return PermanentProviderError(f"unexpected provider failure: {exc!r}")


def _error_reason(exc: HttpError) -> Optional[str]:
    try:
        payload = json.loads(exc.content.decode("utf-8"))
    except (AttributeError, ValueError, UnicodeDecodeError):
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None
    errors = error.get("errors") or []
    if errors and isinstance(errors[0], dict) and errors[0].get("reason"):
        return errors[0]["reason"]
    return error.get("status") or error.get("message")


class GoogleClient:
    """
    Thin async wrapper over the Calendar and Tasks discovery services.

    Services are built lazily from credentials on first use; tests inject
    ready-made (mock) services instead.
    """

    def __init__(
        self,
        credentials=None,
        *,
        calendar_service=None,
        tasks_service=None,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ):
        self._credentials = credentials
        self._calendar = calendar_service
        self._tasks = tasks_service
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

    @classmethod
    def from_settings(cls, credentials, settings) -> "GoogleClient":
        return cls(
            credentials,
            max_attempts=settings.provider_max_attempts,
            backoff_seconds=settings.provider_backoff_seconds,
            max_backoff_seconds=settings.provider_max_backoff_seconds,
        )

    @property
    def calendar(self):
        if self._calendar is None:
            self._calendar = build("calendar", "v3", credentials=self._credentials, cache_discovery=False)
        return self._calendar

    @property
    def tasks(self):
        if self._tasks is None:
            self._tasks = build("tasks", "v1", credentials=self._credentials, cache_discovery=False)
        return self._tasks

    # ── Calendar v3 ───────────────────────────────────────────────────────────

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        page_token: Optional[str] = None,
        page_size: int = 250,
    ) -> Dict[str, Any]:
        """One page of events; cancelled events are included as tombstones."""
        params: Dict[str, Any] = {
            "calendarId": calendar_id,
            "singleEvents": True,
            "showDeleted": True,
            "maxResults": page_size,
        }
        if time_min is not None:
            params["timeMin"] = to_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = to_rfc3339(time_max)
        if page_token:
            params["pageToken"] = page_token
        return await self._run(lambda: self.calendar.events().list(**params))

    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        return await self._run(lambda: self.calendar.events().get(calendarId=calendar_id, eventId=event_id))

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(lambda: self.calendar.events().insert(calendarId=calendar_id, body=body))

    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(
            lambda: self.calendar.events().patch(calendarId=calendar_id, eventId=event_id, body=body)
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._run(lambda: self.calendar.events().delete(calendarId=calendar_id, eventId=event_id))

    async def watch_events(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(lambda: self.calendar.events().watch(calendarId=calendar_id, body=body))

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._run(
            lambda: self.calendar.channels().stop(body={"id": channel_id, "resourceId": resource_id})
        )

    async def list_calendars(self) -> Dict[str, Any]:
        """Calendars on the user's calendar list (first page, hidden excluded)."""
        return await self._run(
            lambda: self.calendar.calendarList().list(maxResults=250, showHidden=False)
        )

    async def insert_calendar(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(lambda: self.calendar.calendars().insert(body=body))

    # ── Tasks v1 ──────────────────────────────────────────────────────────────

    async def list_tasks(
        self,
        tasklist: str,
        page_token: Optional[str] = None,
        page_size: int = 100,
        updated_min: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """One page of tasks, including completed, hidden and deleted ones."""
        params: Dict[str, Any] = {
            "tasklist": tasklist,
            "showCompleted": True,
            "showHidden": True,
            "showDeleted": True,
            # Tasks v1 caps maxResults at 100
            "maxResults": min(page_size, 100),
        }
        if updated_min is not None:
            params["updatedMin"] = to_rfc3339(updated_min)
        if page_token:
            params["pageToken"] = page_token
        return await self._run(lambda: self.tasks.tasks().list(**params))

    async def get_task(self, tasklist: str, task_id: str) -> Dict[str, Any]:
        return await self._run(lambda: self.tasks.tasks().get(tasklist=tasklist, task=task_id))

    async def insert_task(self, tasklist: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(lambda: self.tasks.tasks().insert(tasklist=tasklist, body=body))

    async def patch_task(self, tasklist: str, task_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(
            lambda: self.tasks.tasks().patch(tasklist=tasklist, task=task_id, body=body)
        )

    async def delete_task(self, tasklist: str, task_id: str) -> None:
        await self._run(lambda: self.tasks.tasks().delete(tasklist=tasklist, task=task_id))

    async def list_tasklists(self) -> Dict[str, Any]:
        return await self._run(lambda: self.tasks.tasklists().list(maxResults=100))

    async def insert_tasklist(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(lambda: self.tasks.tasklists().insert(body=body))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _run(self, make_request: Callable[[], Any]) -> Any:
        """Execute a request in the thread pool, retrying transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._execute_once(make_request)

    async def _execute_once(self, make_request: Callable[[], Any]) -> Any:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, lambda: make_request().execute())
        except Exception as exc:
            raise classify_error(exc) from exc
