"""
Integration tests for SyncOrchestrator.

Real MappingStore / LocalStore / SyncLogger / LeaseManager over in-memory
SQLite; the provider is the stateful FakeGoogle from conftest. No network.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlmodel import Session, select

from timeflow.config import Settings
from timeflow.models.local import Task, TimelineSlot
from timeflow.models.sync import Integration, SyncMapping, SyncRun
from timeflow.sync.adapters import CalendarAdapter, TaskAdapter
from timeflow.sync.entities import Direction, EntityKind, RemoteEntity, RunSummary, SyncScope, Trigger
from timeflow.sync.errors import (
    AdapterUnavailable,
    AlreadyRunning,
    PermanentProviderError,
    StorageError,
    TransientProviderError,
)
from timeflow.sync.mapping_store import MappingStore
from timeflow.sync.orchestrator import SyncOrchestrator
from timeflow.timeutil import to_rfc3339, utcnow

TASKS = SyncScope(EntityKind.TASK, list_id="list-1")


def calendar_scope() -> SyncScope:
    now = utcnow()
    return SyncScope(EntityKind.CALENDAR_EVENT, time_min=now - timedelta(days=1), time_max=now + timedelta(days=7))


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(engine, fake_google) -> SyncOrchestrator:
    async def adapter_factory(owner_id, kind):
        if kind == EntityKind.TASK:
            return TaskAdapter(fake_google, task_list_id="list-1")
        return CalendarAdapter(fake_google, calendar_id="primary")

    return SyncOrchestrator(engine, adapter_factory, settings=Settings())


def add_task(session, task_id="t1", **fields) -> Task:
    task = Task(id=task_id, owner_id="u1", list_id="list-1", title=fields.pop("title", "Write report"), **fields)
    session.add(task)
    session.commit()
    session.refresh(task)
    return task


def edit_task(engine, task_id, updated_at=None, **fields) -> None:
    with Session(engine) as s:
        task = s.get(Task, task_id)
        for name, value in fields.items():
            setattr(task, name, value)
        task.updated_at = updated_at or utcnow()
        s.add(task)
        s.commit()


def get_task(engine, task_id) -> Task:
    with Session(engine) as s:
        return s.get(Task, task_id)


def mappings(engine):
    with Session(engine) as s:
        return s.exec(select(SyncMapping)).all()


def remote_id_for(engine, local_id):
    return MappingStore(engine).get("u1", "task", local_id).remote_id


# ─── Creation and idempotence ─────────────────────────────────────────────────

class TestToRemote:
    @pytest.mark.asyncio
    async def test_creates_remote_and_mapping(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)

        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert run.status == "completed"
        assert run.items_created == 1
        [remote] = fake_google.live_tasks("list-1")
        assert remote["title"] == "Write report"
        assert remote_id_for(engine, "t1") == remote["id"]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, orchestrator, test_session, fake_google):
        add_task(test_session, "t1")
        add_task(test_session, "t2", title="Second")
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        writes_before = len(fake_google.ops("insert_task")) + len(fake_google.ops("patch_task"))

        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert (run.items_created, run.items_updated, run.items_deleted) == (0, 0, 0)
        assert len(fake_google.live_tasks("list-1")) == 2
        assert len(fake_google.ops("insert_task")) + len(fake_google.ops("patch_task")) == writes_before

    @pytest.mark.asyncio
    async def test_to_remote_never_writes_local(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        fake_google.edit_task("list-1", remote_id_for(engine, "t1"), title="Edited in Google")
        fake_google.seed_task("list-1", title="Only in Google")

        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert get_task(engine, "t1").title == "Write report"
        with Session(engine) as s:
            assert len(s.exec(select(Task)).all()) == 1

    @pytest.mark.asyncio
    async def test_tombstone_without_counterpart_is_skipped(self, orchestrator, test_session, fake_google):
        add_task(test_session, deleted_at=utcnow())
        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        assert run.items_created == 0
        assert fake_google.ops("insert_task") == []

    @pytest.mark.asyncio
    async def test_other_lists_untouched(self, orchestrator, test_session, fake_google):
        add_task(test_session, "t1")
        test_session.add(Task(id="t2", owner_id="u1", list_id="list-2", title="Elsewhere"))
        test_session.commit()

        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert [t["title"] for t in fake_google.live_tasks("list-1")] == ["Write report"]


class TestFromRemote:
    @pytest.mark.asyncio
    async def test_creates_local_in_synced_list(self, orchestrator, engine, fake_google):
        fake_google.seed_task("list-1", title="From phone", notes="call back", due="2026-03-05T00:00:00.000Z")

        run = await orchestrator.run("u1", Direction.FROM_REMOTE, TASKS)

        assert run.items_created == 1
        with Session(engine) as s:
            [task] = s.exec(select(Task)).all()
        assert task.title == "From phone"
        assert task.description == "call back"
        assert task.list_id == "list-1"
        assert task.due_date == datetime(2026, 3, 5)

        again = await orchestrator.run("u1", Direction.FROM_REMOTE, TASKS)
        assert again.items_created == 0

    @pytest.mark.asyncio
    async def test_from_remote_never_writes_remote(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        edit_task(engine, "t1", title="Local edit")
        writes = len(fake_google.ops("patch_task"))

        await orchestrator.run("u1", Direction.FROM_REMOTE, TASKS)

        assert len(fake_google.ops("patch_task")) == writes

    @pytest.mark.asyncio
    async def test_remote_deletion_tombstones_local(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        fake_google.edit_task("list-1", remote_id_for(engine, "t1"), deleted=True)

        run = await orchestrator.run("u1", Direction.FROM_REMOTE, TASKS)

        assert run.items_deleted == 1
        assert get_task(engine, "t1").deleted_at is not None
        assert MappingStore(engine).get("u1", "task", "t1") is None


# ─── Bidirectional ────────────────────────────────────────────────────────────

class TestBidirectional:
    @pytest.mark.asyncio
    async def test_local_edit_updates_remote_without_duplicates(self, orchestrator, engine, test_session, fake_google):
        """T1 mapped to R1, only the local side changed: one update, no create."""
        add_task(test_session, "t1")
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        r1 = remote_id_for(engine, "t1")
        edit_task(engine, "t1", updated_at=utcnow() + timedelta(seconds=10), title="Write final report")

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_updated == 1
        assert run.items_created == 0
        assert fake_google.tasks["list-1"][r1]["title"] == "Write final report"
        assert len(fake_google.live_tasks("list-1")) == 1

    @pytest.mark.asyncio
    async def test_remote_edit_updates_local(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session, "t1", status="in_progress")
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        fake_google.edit_task("list-1", remote_id_for(engine, "t1"), title="Renamed on phone")

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_updated == 1
        task = get_task(engine, "t1")
        assert task.title == "Renamed on phone"
        # Google only knows open/completed; the finer local status survives
        assert task.status == "in_progress"

    @pytest.mark.asyncio
    async def test_newer_local_wins_same_field_conflict(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        r1 = remote_id_for(engine, "t1")
        fake_google.now = utcnow()
        fake_google.edit_task("list-1", r1, title="Remote title")
        edit_task(engine, "t1", updated_at=utcnow() + timedelta(minutes=5), title="Local title")

        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert fake_google.tasks["list-1"][r1]["title"] == "Local title"
        assert get_task(engine, "t1").title == "Local title"

    @pytest.mark.asyncio
    async def test_newer_remote_wins_same_field_conflict(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        r1 = remote_id_for(engine, "t1")
        edit_task(engine, "t1", updated_at=utcnow() - timedelta(minutes=5), title="Local title")
        fake_google.now = utcnow()
        fake_google.edit_task("list-1", r1, title="Remote title")

        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert get_task(engine, "t1").title == "Remote title"
        assert fake_google.tasks["list-1"][r1]["title"] == "Remote title"

    @pytest.mark.asyncio
    async def test_disjoint_edits_are_merged(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        r1 = remote_id_for(engine, "t1")
        edit_task(engine, "t1", description="bring charts")
        fake_google.edit_task("list-1", r1, title="Write Q3 report")

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_updated == 1
        task = get_task(engine, "t1")
        assert (task.title, task.description) == ("Write Q3 report", "bring charts")
        remote = fake_google.tasks["list-1"][r1]
        assert (remote["title"], remote["notes"]) == ("Write Q3 report", "bring charts")

    @pytest.mark.asyncio
    async def test_local_deletion_removes_remote(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        edit_task(engine, "t1", deleted_at=utcnow() + timedelta(seconds=10))

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_deleted == 1
        assert fake_google.live_tasks("list-1") == []
        assert MappingStore(engine).get("u1", "task", "t1") is None

        # Nothing left to do afterwards
        again = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        assert (again.items_created, again.items_updated, again.items_deleted) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_newer_remote_update_beats_older_local_deletion(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        r1 = remote_id_for(engine, "t1")
        edit_task(engine, "t1", deleted_at=utcnow() - timedelta(minutes=10))
        fake_google.now = utcnow()
        fake_google.edit_task("list-1", r1, title="Still needed")

        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        task = get_task(engine, "t1")
        assert task.deleted_at is None
        assert task.title == "Still needed"

    @pytest.mark.asyncio
    async def test_vanished_remote_is_recreated_on_edit(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        old_id = remote_id_for(engine, "t1")
        del fake_google.tasks["list-1"][old_id]
        edit_task(engine, "t1", updated_at=utcnow() + timedelta(seconds=10), title="Edited")

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_created == 1
        new_id = remote_id_for(engine, "t1")
        assert new_id != old_id
        assert fake_google.tasks["list-1"][new_id]["title"] == "Edited"

    @pytest.mark.asyncio
    async def test_purged_remote_tombstones_unchanged_local(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        del fake_google.tasks["list-1"][remote_id_for(engine, "t1")]

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.items_deleted == 1
        assert run.items_created == 0
        assert len(fake_google.ops("insert_task")) == 1
        assert get_task(engine, "t1").deleted_at is not None
        assert MappingStore(engine).get("u1", "task", "t1") is None

    @pytest.mark.asyncio
    async def test_purged_remote_not_recreated_by_older_edit(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        del fake_google.tasks["list-1"][remote_id_for(engine, "t1")]
        edit_task(engine, "t1", updated_at=utcnow() - timedelta(minutes=5), title="Stale edit")

        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert run.items_created == 0
        assert fake_google.live_tasks("list-1") == []
        assert len(fake_google.ops("insert_task")) == 1


# ─── Calendar ─────────────────────────────────────────────────────────────────

class TestCalendar:
    @pytest.mark.asyncio
    async def test_slot_round_trip_and_relink(self, orchestrator, engine, test_session, fake_google):
        start = utcnow().replace(microsecond=0) + timedelta(days=1)
        test_session.add(TimelineSlot(
            id="s1", owner_id="u1", title="Deep work", priority="high",
            start_time=start, end_time=start + timedelta(hours=2),
        ))
        test_session.commit()

        first = await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())
        assert first.items_created == 1
        [event] = fake_google.events.values()
        assert event["colorId"] == "5"
        assert event["extendedProperties"]["private"]["slotId"] == "s1"

        # Lose the mapping: the slotId marker on the event re-links it
        MappingStore(engine).delete("u1", "calendar_event", "s1")
        second = await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())

        assert second.items_created == 0
        assert len(fake_google.events) == 1
        assert MappingStore(engine).get("u1", "calendar_event", "s1").remote_id == event["id"]

    @pytest.mark.asyncio
    async def test_remote_cancellation_tombstones_slot(self, orchestrator, engine, test_session, fake_google):
        start = utcnow().replace(microsecond=0) + timedelta(days=1)
        test_session.add(TimelineSlot(id="s1", owner_id="u1", start_time=start, end_time=start + timedelta(hours=1)))
        test_session.commit()
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())
        [event_id] = fake_google.events
        fake_google.edit_event(event_id, status="cancelled")

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())

        assert run.items_deleted == 1
        with Session(engine) as s:
            assert s.get(TimelineSlot, "s1").deleted_at is not None

    @pytest.mark.asyncio
    async def test_newer_remote_moved_out_of_window_wins(self, orchestrator, engine, test_session, fake_google):
        start = utcnow().replace(microsecond=0) + timedelta(days=1)
        test_session.add(TimelineSlot(
            id="s1", owner_id="u1", title="Deep work",
            start_time=start, end_time=start + timedelta(hours=2),
        ))
        test_session.commit()
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())
        [event_id] = fake_google.events

        with Session(engine) as s:
            slot = s.get(TimelineSlot, "s1")
            slot.title = "Local rename"
            slot.updated_at = utcnow() + timedelta(seconds=5)
            s.add(slot)
            s.commit()
        moved = start + timedelta(days=30)
        fake_google.now = utcnow() + timedelta(hours=1)
        fake_google.edit_event(
            event_id,
            summary="Moved in Google",
            start={"dateTime": to_rfc3339(moved)},
            end={"dateTime": to_rfc3339(moved + timedelta(hours=2))},
        )
        patches = len(fake_google.ops("patch_event"))

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())

        assert run.items_updated == 1
        assert run.items_created == 0
        assert len(fake_google.ops("patch_event")) == patches
        assert fake_google.events[event_id]["summary"] == "Moved in Google"
        assert len(fake_google.events) == 1
        with Session(engine) as s:
            slot = s.get(TimelineSlot, "s1")
        assert slot.title == "Moved in Google"
        assert slot.start_time == moved

    @pytest.mark.asyncio
    async def test_remote_move_out_of_window_not_reverted(self, orchestrator, engine, test_session, fake_google):
        start = utcnow().replace(microsecond=0) + timedelta(days=1)
        test_session.add(TimelineSlot(id="s1", owner_id="u1", start_time=start, end_time=start + timedelta(hours=1)))
        test_session.commit()
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, calendar_scope())
        [event_id] = fake_google.events
        moved = start + timedelta(days=30)
        fake_google.edit_event(
            event_id,
            start={"dateTime": to_rfc3339(moved)},
            end={"dateTime": to_rfc3339(moved + timedelta(hours=1))},
        )
        # The local slot is unchanged, so the stale in-window times must not be pushed back
        await orchestrator.run("u1", Direction.TO_REMOTE, calendar_scope())

        assert fake_google.ops("patch_event") == []
        assert fake_google.events[event_id]["start"]["dateTime"] == to_rfc3339(moved)


# ─── Failure handling ─────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session, "t1", title="ok one")
        add_task(test_session, "t2", title="boom")
        add_task(test_session, "t3", title="ok two")
        fake_google.fail(
            "insert_task",
            PermanentProviderError("Google API error 400: invalid", status=400),
            when=lambda body: body["title"] == "boom",
        )

        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert run.status == "completed"
        assert run.items_created == 2
        assert len(run.errors) == 1
        assert run.errors[0]["ref"] == "local:t2"
        assert RunSummary.from_run(run).success is False
        assert MappingStore(engine).get("u1", "task", "t2") is None

        # The failed item is retried by the next run
        fake_google.heal()
        retry = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        assert retry.items_created == 1

    @pytest.mark.asyncio
    async def test_failed_update_does_not_block_others(self, orchestrator, engine, test_session, fake_google):
        for i in range(4):
            add_task(test_session, f"t{i}", title=f"task {i}")
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        bad = remote_id_for(engine, "t2")
        for i in range(4):
            edit_task(engine, f"t{i}", updated_at=utcnow() + timedelta(seconds=10), title=f"task {i} v2")
        fake_google.fail(
            "patch_task",
            PermanentProviderError("Google API error 400: invalid", status=400),
            when=lambda task_id, body: task_id == bad,
        )

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.status == "completed"
        assert run.items_updated == 3
        assert len(run.errors) == 1
        assert run.errors[0]["kind"] == "PermanentProviderError"

    @pytest.mark.asyncio
    async def test_transient_errors_become_item_errors(self, orchestrator, test_session, fake_google):
        add_task(test_session)
        fake_google.fail("insert_task", TransientProviderError("Google API error 503", status=503))

        run = await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert run.status == "completed"
        assert run.errors[0]["kind"] == "TransientProviderError"

    @pytest.mark.asyncio
    async def test_pull_failure_fails_run(self, orchestrator, fake_google):
        fake_google.fail("list_tasks", PermanentProviderError("Google API error 401", status=401))
        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        assert run.status == "failed"
        assert "401" in run.error_message

    @pytest.mark.asyncio
    async def test_adapter_unavailable_fails_run(self, engine):
        async def no_adapter(owner_id, kind):
            raise AdapterUnavailable("no google integration for u1")

        orchestrator = SyncOrchestrator(engine, no_adapter, settings=Settings())
        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        assert run.status == "failed"
        assert "no google integration" in run.error_message

    @pytest.mark.asyncio
    async def test_lease_held_raises_already_running(self, orchestrator, engine):
        orchestrator.leases.acquire("u1", "task")

        with pytest.raises(AlreadyRunning):
            await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        with Session(engine) as s:
            assert s.exec(select(SyncRun)).all() == []

    @pytest.mark.asyncio
    async def test_concurrent_runs_on_one_scope(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session)
        fake_google.list_delay = 0.05

        results = await asyncio.gather(
            orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS),
            orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS),
            return_exceptions=True,
        )

        refused = [r for r in results if isinstance(r, AlreadyRunning)]
        finished = [r for r in results if isinstance(r, SyncRun)]
        assert len(refused) == 1
        assert len(finished) == 1
        assert finished[0].status == "completed"
        with Session(engine) as s:
            assert len(s.exec(select(SyncRun)).all()) == 1
        assert len(fake_google.live_tasks("list-1")) == 1
        assert not orchestrator.leases.is_held("u1", "task")

    @pytest.mark.asyncio
    async def test_other_scope_not_blocked(self, orchestrator, fake_google):
        orchestrator.leases.acquire("u1", "calendar_event")
        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        assert run.status == "completed"

    @pytest.mark.asyncio
    async def test_timeout_fails_run_and_releases_lease(self, engine, fake_google):
        async def adapter_factory(owner_id, kind):
            return TaskAdapter(fake_google, task_list_id="list-1")

        fake_google.list_delay = 1.0
        orchestrator = SyncOrchestrator(engine, adapter_factory, settings=Settings(), max_run_seconds=0.05)

        run = await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        assert run.status == "failed"
        assert "timed out" in run.error_message
        assert not orchestrator.leases.is_held("u1", "task")

    @pytest.mark.asyncio
    async def test_storage_error_aborts_run(self, engine, test_session, fake_google):
        add_task(test_session)

        async def adapter_factory(owner_id, kind):
            return TaskAdapter(fake_google, task_list_id="list-1")

        broken = MagicMock(spec=MappingStore)
        broken.get.side_effect = StorageError("mapping store unavailable: disk I/O error")
        orchestrator = SyncOrchestrator(engine, adapter_factory, mapping_store=broken, settings=Settings())

        with pytest.raises(StorageError):
            await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        with Session(engine) as s:
            [run] = s.exec(select(SyncRun)).all()
        assert run.status == "failed"
        assert fake_google.ops("insert_task") == []
        assert not orchestrator.leases.is_held("u1", "task")

    @pytest.mark.asyncio
    async def test_mapping_conflict_flags_older_mapping(self, orchestrator, engine, test_session):
        add_task(test_session, "t1")
        store = MappingStore(engine)
        # Another local row already claims the remote
        store.upsert(SyncMapping(owner_id="u1", entity_kind="task", local_id="ghost", remote_id="gt-1"))
        local = orchestrator.local.get("u1", EntityKind.TASK, "t1")
        remote = RemoteEntity("gt-1", EntityKind.TASK, {"title": "Write report"}, etag='"e1"')

        message = orchestrator._save_mapping("u1", None, local, remote)

        assert "already mapped" in message
        assert store.get("u1", "task", "t1").remote_id == "gt-1"
        flagged = store.get("u1", "task", "ghost")
        assert flagged.needs_reconciliation is True
        assert flagged.remote_id is None
        assert flagged.conflict_remote_id == "gt-1"

    @pytest.mark.asyncio
    async def test_flagged_mapping_is_left_alone(self, orchestrator, engine, test_session, fake_google):
        add_task(test_session, "t1")
        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)
        store = MappingStore(engine)
        store.flag_for_reconciliation(store.get("u1", "task", "t1"))
        edit_task(engine, "t1", updated_at=utcnow() + timedelta(seconds=10), title="Edited")
        patches = len(fake_google.ops("patch_task"))

        await orchestrator.run("u1", Direction.TO_REMOTE, TASKS)

        assert len(fake_google.ops("patch_task")) == patches


class TestMappingUniqueness:
    @pytest.mark.asyncio
    async def test_one_mapping_per_remote(self, orchestrator, engine, test_session, fake_google):
        for i in range(4):
            add_task(test_session, f"t{i}", title=f"task {i}")
        fake_google.seed_task("list-1", title="remote only")

        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)

        rows = mappings(engine)
        remote_ids = [m.remote_id for m in rows]
        local_ids = [m.local_id for m in rows]
        assert len(rows) == 5
        assert len(set(remote_ids)) == 5
        assert len(set(local_ids)) == 5
        assert len(fake_google.live_tasks("list-1")) == 5


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_run_records_scope_and_trigger(self, orchestrator, engine):
        run = await orchestrator.run("u1", Direction.FROM_REMOTE, TASKS, trigger=Trigger.WEBHOOK, sync_data={"channel_id": "c1"})
        assert run.trigger == "webhook"
        assert run.direction == "from_remote"
        assert run.sync_data["scope"]["list_id"] == "list-1"
        assert run.sync_data["channel_id"] == "c1"

    @pytest.mark.asyncio
    async def test_completion_stamps_integration(self, orchestrator, engine, integration):
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        with Session(engine) as s:
            assert s.get(Integration, integration.id).last_synced_at is not None

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, orchestrator):
        await orchestrator.run("u1", Direction.BIDIRECTIONAL, TASKS)
        assert not orchestrator.leases.is_held("u1", "task")
