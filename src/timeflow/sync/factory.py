"""
Wiring: Integration row + stored token -> GoogleClient -> adapter.

GoogleAdapterFactory is the adapter_factory the orchestrator calls at the
start of every run, so a revoked integration or missing token fails that run
(AdapterUnavailable) instead of the whole process.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlmodel import Session, select

from timeflow.config import Settings, get_settings
from timeflow.google.auth import GoogleAuth
from timeflow.google.client import GoogleClient
from timeflow.models.sync import Integration
from timeflow.sync.adapters import CalendarAdapter, EntityAdapter, TaskAdapter
from timeflow.sync.dispatcher import SyncDispatcher
from timeflow.sync.entities import EntityKind, SyncScope
from timeflow.sync.errors import AdapterUnavailable
from timeflow.sync.orchestrator import SyncOrchestrator
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)


class GoogleAdapterFactory:
    def __init__(self, engine, settings: Optional[Settings] = None, auth: Optional[GoogleAuth] = None):
        self.engine = engine
        self.settings = settings or get_settings()
        self.auth = auth or GoogleAuth(self.settings.google_token_dir)

    async def __call__(self, owner_id: str, kind: EntityKind) -> EntityAdapter:
        integration = self.integration(owner_id)
        if kind == EntityKind.CALENDAR_EVENT and not integration.sync_calendar:
            raise AdapterUnavailable(f"calendar sync is disabled for {owner_id}")
        if kind == EntityKind.TASK and not integration.sync_tasks:
            raise AdapterUnavailable(f"task sync is disabled for {owner_id}")

        client = self.client_for(owner_id)
        page_size = self.settings.provider_page_size
        if kind == EntityKind.CALENDAR_EVENT:
            return CalendarAdapter(client, calendar_id=integration.calendar_id, page_size=page_size)
        return TaskAdapter(client, task_list_id=integration.task_list_id, page_size=min(page_size, 100))

    def integration(self, owner_id: str) -> Integration:
        """The owner's active Google integration, or AdapterUnavailable."""
        with Session(self.engine) as s:
            integration = s.exec(
                select(Integration).where(
                    Integration.owner_id == owner_id,
                    Integration.provider == self.settings.provider,
                )
            ).first()
        if integration is None:
            raise AdapterUnavailable(f"no {self.settings.provider} integration for {owner_id}")
        if integration.status != "active":
            raise AdapterUnavailable(
                f"{self.settings.provider} integration for {owner_id} is {integration.status}"
            )
        return integration

    def client_for(self, owner_id: str) -> GoogleClient:
        credentials = self.auth.load(owner_id)
        return GoogleClient.from_settings(credentials, self.settings)

    def default_scope(self, owner_id: str, kind: EntityKind) -> SyncScope:
        """Scope for runs that did not name one: the next N days, or the linked list."""
        integration = self.integration(owner_id)
        if kind == EntityKind.CALENDAR_EVENT:
            now = utcnow()
            return SyncScope(
                kind,
                time_min=now,
                time_max=now + timedelta(days=self.settings.default_calendar_window_days),
            )
        return SyncScope(kind, list_id=integration.task_list_id)


def build_orchestrator(engine, settings: Optional[Settings] = None) -> SyncOrchestrator:
    settings = settings or get_settings()
    return SyncOrchestrator(
        engine,
        GoogleAdapterFactory(engine, settings),
        settings=settings,
        provider=settings.provider,
    )


def build_dispatcher(engine, settings: Optional[Settings] = None) -> SyncDispatcher:
    return SyncDispatcher(build_orchestrator(engine, settings))
