"""
First-time provisioning of a Google integration.

Creates the dedicated calendar and task list synced items live in, and points
the owner's Integration row at them. Slots and tasks then stay out of the
user's primary calendar and default list.

The two halves are independent: a task list failure does not undo the
calendar. Provider failures are collected per half and returned, not raised.
Running setup again reuses containers that already carry the managed name.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from timeflow.config import Settings, get_settings
from timeflow.models.sync import Integration
from timeflow.sync.errors import PermanentProviderError, ProviderError, StorageError

logger = logging.getLogger(__name__)


@dataclass
class SetupResult:
    calendar_id: Optional[str] = None
    task_list_id: Optional[str] = None
    # {"type": "calendar" | "task_list", "message": ...}
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class IntegrationSetup:
    def __init__(self, engine, client, settings: Optional[Settings] = None):
        self.engine = engine
        self.client = client
        self.settings = settings or get_settings()

    async def run(self, owner_id: str) -> SetupResult:
        """Provision both containers and record them on the integration.

        Raises:
            StorageError: the integration row could not be written.
        """
        result = SetupResult()

        try:
            result.calendar_id = await self.ensure_calendar()
        except ProviderError as exc:
            logger.error("Calendar setup failed for %s: %s", owner_id, exc)
            result.errors.append({"type": "calendar", "message": str(exc)})

        try:
            result.task_list_id = await self.ensure_task_list()
        except ProviderError as exc:
            logger.error("Task list setup failed for %s: %s", owner_id, exc)
            result.errors.append({"type": "task_list", "message": str(exc)})

        if result.calendar_id or result.task_list_id:
            self._save(owner_id, result.calendar_id, result.task_list_id)
        logger.info(
            "Setup for %s: calendar=%s task_list=%s errors=%d",
            owner_id, result.calendar_id, result.task_list_id, len(result.errors),
        )
        return result

    async def ensure_calendar(self) -> str:
        name = self.settings.managed_container_name
        for calendar in await self.list_calendars():
            if calendar.get("summary") == name:
                return calendar["id"]
        created = await self.client.insert_calendar({
            "summary": name,
            "description": f"Tasks and schedules from {name}",
            "timeZone": self.settings.calendar_time_zone,
        })
        return _id_of(created)

    async def ensure_task_list(self) -> str:
        name = self.settings.managed_container_name
        for task_list in await self.list_task_lists():
            if task_list.get("title") == name:
                return task_list["id"]
        created = await self.client.insert_tasklist({"title": name})
        return _id_of(created)

    async def list_calendars(self) -> List[Dict[str, Any]]:
        page = await self.client.list_calendars()
        return [c for c in page.get("items") or [] if c.get("id")]

    async def list_task_lists(self) -> List[Dict[str, Any]]:
        page = await self.client.list_tasklists()
        return [t for t in page.get("items") or [] if t.get("id")]

    def _save(self, owner_id: str, calendar_id: Optional[str], task_list_id: Optional[str]) -> Integration:
        try:
            with Session(self.engine) as s:
                integration = s.exec(
                    select(Integration).where(
                        Integration.owner_id == owner_id,
                        Integration.provider == self.settings.provider,
                    )
                ).first()
                if integration is None:
                    integration = Integration(owner_id=owner_id, provider=self.settings.provider)
                if calendar_id:
                    integration.calendar_id = calendar_id
                if task_list_id:
                    integration.task_list_id = task_list_id
                s.add(integration)
                s.commit()
                s.refresh(integration)
                return integration
        except SQLAlchemyError as exc:
            raise StorageError(f"cannot save integration: {exc}") from exc


def _id_of(created: Any) -> str:
    if not isinstance(created, dict) or not created.get("id"):
        raise PermanentProviderError("provider response carried no id")
    return created["id"]
