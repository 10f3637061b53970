"""
SyncOrchestrator: runs one synchronization over one scope.

Flow for a single run:
  1. Take the (owner, entity kind) lease         -> AlreadyRunning if held
  2. Open a SyncRun (status="started")
  3. Read local entities in scope, pull remote entities in scope
  4. Pair them through the mapping store and process each pair:
       no mapping        -> create the counterpart
       one side changed  -> propagate it
       both changed      -> ConflictResolver decides
       remote not pulled -> fetched by id, then as above
  5. Close the SyncRun (completed / failed), release the lease

Per-item failures (provider errors, mapping conflicts) are recorded on the
run and the loop moves on. StorageError aborts the run: continuing without
the mapping store would create duplicate remote entities.

Change detection compares each side's version marker with the one stored on
the mapping at the last sync, so a pair nobody touched costs no writes and a
second run over an unchanged scope is a no-op.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from timeflow.config import Settings, get_settings
from timeflow.models.metadata import dump_metadata, load_metadata
from timeflow.models.sync import Integration, SyncMapping, SyncRun
from timeflow.sync.adapters import EntityAdapter
from timeflow.sync.conflict import (
    ConflictResolver,
    Decision,
    DecisionKind,
    VersionedEntity,
    changed_since,
)
from timeflow.sync.entities import (
    Direction,
    EntityKind,
    ItemOutcome,
    LocalEntity,
    RemoteEntity,
    RunStatus,
    SyncScope,
    Trigger,
    snapshot_fields,
)
from timeflow.sync.errors import (
    AdapterUnavailable,
    AlreadyRunning,
    MappingConflict,
    PermanentProviderError,
    ProviderError,
    StorageError,
    SyncError,
)
from timeflow.sync.lease import LeaseManager
from timeflow.sync.local_store import LocalStore
from timeflow.sync.logger import SyncLogger
from timeflow.sync.mapping_store import MappingStore
from timeflow.timeutil import utcnow

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, EntityKind], Awaitable[EntityAdapter]]


@dataclass
class _Candidate:
    mapping: Optional[SyncMapping]
    local: Optional[LocalEntity]
    remote: Optional[RemoteEntity]

    @property
    def ref(self) -> str:
        if self.local is not None and self.local.local_id:
            return f"local:{self.local.local_id}"
        if self.mapping is not None:
            return f"local:{self.mapping.local_id}"
        return f"remote:{self.remote.remote_id}"


class SyncOrchestrator:
    def __init__(
        self,
        engine,
        adapter_factory: AdapterFactory,
        *,
        mapping_store: Optional[MappingStore] = None,
        local_store: Optional[LocalStore] = None,
        sync_logger: Optional[SyncLogger] = None,
        lease_manager: Optional[LeaseManager] = None,
        resolver: Optional[ConflictResolver] = None,
        settings: Optional[Settings] = None,
        provider: str = "google",
        max_run_seconds: Optional[float] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine holding mappings, runs and local rows.
            adapter_factory: async (owner_id, kind) -> EntityAdapter. Raises
                AdapterUnavailable when the owner has no usable integration.
        """
        settings = settings or get_settings()
        self.engine = engine
        self.adapter_factory = adapter_factory
        self.mappings = mapping_store or MappingStore(engine)
        self.local = local_store or LocalStore(engine)
        self.sync_log = sync_logger or SyncLogger(engine)
        self.leases = lease_manager or LeaseManager(
            engine, timedelta(seconds=settings.lease_ttl_seconds)
        )
        self.resolver = resolver or ConflictResolver(
            timedelta(seconds=settings.clock_skew_tolerance_seconds)
        )
        self.provider = provider
        self.max_run_seconds = max_run_seconds or settings.max_run_seconds

    async def run(
        self,
        owner_id: str,
        direction: Direction,
        scope: SyncScope,
        trigger: Trigger = Trigger.MANUAL,
        sync_data: Optional[Dict[str, Any]] = None,
    ) -> SyncRun:
        """
        Synchronize one scope for one owner.

        Returns:
            The finished SyncRun. Adapter and provider failures that end the
            run early are reported through its status, not raised.

        Raises:
            AlreadyRunning: another run holds the scope lease. No run row is
                written.
            StorageError: the database failed; the run is marked failed when
                that is still possible.
        """
        direction = Direction(direction)
        trigger = Trigger(trigger)
        kind = scope.entity_kind.value

        holder = self.leases.acquire(owner_id, kind)
        if holder is None:
            logger.info("Sync for %s/%s refused: lease held", owner_id, kind)
            raise AlreadyRunning(owner_id, kind)

        try:
            run = self.sync_log.start(
                owner_id,
                self.provider,
                trigger.value,
                direction.value,
                kind,
                sync_data={"scope": scope.as_dict(), **(sync_data or {})},
            )
            self.leases.attach_run(owner_id, kind, holder, run.id)

            try:
                await asyncio.wait_for(
                    self._execute(run.id, owner_id, direction, scope),
                    timeout=self.max_run_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(
                    "Sync run %s exceeded %ss and was cancelled", run.id, self.max_run_seconds
                )
                return self.sync_log.finish(
                    run.id, RunStatus.FAILED, f"timed out after {self.max_run_seconds}s"
                )
            except (AdapterUnavailable, ProviderError) as exc:
                logger.error("Sync run %s aborted: %s", run.id, exc)
                return self.sync_log.finish(run.id, RunStatus.FAILED, str(exc))
            except StorageError as exc:
                self._finish_quietly(run.id, f"storage unavailable: {exc}")
                raise
            except Exception as exc:
                logger.exception("Sync run %s crashed", run.id)
                self._finish_quietly(run.id, f"{type(exc).__name__}: {exc}")
                raise

            finished = self.sync_log.finish(run.id, RunStatus.COMPLETED)
            self._touch_integration(owner_id)
            return finished
        finally:
            self.leases.release(owner_id, kind, holder)

    # ─── Run body ─────────────────────────────────────────────────────────────

    async def _execute(self, run_id: int, owner_id: str, direction: Direction, scope: SyncScope) -> None:
        adapter = (await self.adapter_factory(owner_id, scope.entity_kind)).bind(scope)

        # Remote is read in every direction; in to_remote it is only compared
        locals_ = self.local.list_entities(owner_id, scope) if direction.writes_remote else []
        remotes = await adapter.pull(owner_id, scope)

        candidates = self._pair(owner_id, scope.entity_kind, locals_, remotes)
        logger.info(
            "Sync run %s: %d local, %d remote, %d candidates",
            run_id, len(locals_), len(remotes), len(candidates),
        )

        for candidate in candidates:
            try:
                outcome = await self._sync_one(adapter, owner_id, direction, candidate)
            except StorageError:
                raise
            except (ProviderError, MappingConflict) as exc:
                outcome = ItemOutcome(candidate.ref, "failed", str(exc), type(exc).__name__)
            except Exception as exc:
                logger.exception("Unexpected error syncing %s", candidate.ref)
                outcome = ItemOutcome(candidate.ref, "failed", str(exc), type(exc).__name__)
            self.sync_log.record_item(run_id, outcome)

    def _pair(
        self,
        owner_id: str,
        kind: EntityKind,
        locals_: List[LocalEntity],
        remotes: List[RemoteEntity],
    ) -> List[_Candidate]:
        by_remote_id = {r.remote_id: r for r in remotes}
        # Remote entities that echo a local id back (calendar private props)
        hinted = {r.local_hint: r for r in remotes if r.local_hint}
        claimed = set()
        candidates: List[_Candidate] = []

        for local in locals_:
            mapping = self.mappings.get(owner_id, kind.value, local.local_id)
            remote = None
            if mapping is not None and mapping.remote_id:
                remote = by_remote_id.get(mapping.remote_id)
                claimed.add(mapping.remote_id)
            elif mapping is None:
                remote = self._relink(owner_id, kind, hinted.get(local.local_id), claimed)
            candidates.append(_Candidate(mapping, local, remote))

        seen_locals = {local.local_id for local in locals_}
        for remote in remotes:
            if remote.remote_id in claimed:
                continue
            claimed.add(remote.remote_id)
            mapping = self.mappings.get_by_remote_id(owner_id, kind.value, remote.remote_id)
            local = None
            if mapping is not None:
                if mapping.local_id in seen_locals:
                    continue
                local = self.local.get(owner_id, kind, mapping.local_id)
            elif remote.local_hint:
                if (
                    remote.local_hint in seen_locals
                    or self.mappings.get(owner_id, kind.value, remote.local_hint) is not None
                ):
                    # A stray copy of an entity that is already paired
                    logger.warning(
                        "Ignoring remote %s: local %s is paired with another remote",
                        remote.remote_id, remote.local_hint,
                    )
                    continue
                local = self.local.get(owner_id, kind, remote.local_hint)
            candidates.append(_Candidate(mapping, local, remote))
        return candidates

    def _relink(self, owner_id, kind, remote, claimed) -> Optional[RemoteEntity]:
        """A remote that names this local but lost its mapping row."""
        if remote is None or remote.remote_id in claimed:
            return None
        if self.mappings.get_by_remote_id(owner_id, kind.value, remote.remote_id) is not None:
            return None
        claimed.add(remote.remote_id)
        logger.info("Re-linking remote %s to local %s", remote.remote_id, remote.local_hint)
        return remote

    # ─── Per-item processing ──────────────────────────────────────────────────

    async def _sync_one(self, adapter, owner_id, direction, c: _Candidate) -> ItemOutcome:
        if c.mapping is not None and c.mapping.needs_reconciliation:
            return ItemOutcome(c.ref, "skipped", "awaiting manual reconciliation")
        if c.mapping is None and (c.local is None or c.remote is None):
            return await self._create(adapter, owner_id, direction, c)
        if c.remote is None:
            return await self._remote_missing(adapter, owner_id, direction, c)
        if c.local is None:
            return await self._local_missing(adapter, owner_id, direction, c)
        return await self._reconcile(adapter, owner_id, direction, c)

    async def _create(self, adapter, owner_id, direction, c: _Candidate) -> ItemOutcome:
        if c.local is not None:
            if c.local.deleted:
                return ItemOutcome(c.ref, "skipped", "deleted before it was ever synced")
            if not direction.writes_remote:
                return ItemOutcome(c.ref, "skipped")
            pushed = await adapter.push(owner_id, c.local)
            conflict = self._save_mapping(owner_id, None, c.local, pushed)
            return _outcome(c.ref, "created", conflict)

        if c.remote.deleted or not direction.writes_local:
            return ItemOutcome(c.ref, "skipped")
        stored = self.local.apply(
            owner_id,
            LocalEntity(None, c.remote.kind, dict(c.remote.fields)),
            defaults=_insert_defaults(adapter),
        )
        conflict = self._save_mapping(owner_id, None, stored, c.remote)
        return _outcome(f"local:{stored.local_id}", "created", conflict)

    async def _remote_missing(self, adapter, owner_id, direction, c: _Candidate) -> ItemOutcome:
        """Mapped, but the remote did not come back from pull.

        It may have moved out of the window or been purged, so it is fetched
        by id and reconciled like any other pair. A purged remote comes back
        as a tombstone dated now.
        """
        mapping, local = c.mapping, c.local
        if not mapping.remote_id:
            if local.deleted or not direction.writes_remote:
                return ItemOutcome(c.ref, "skipped")
            pushed = await adapter.push(owner_id, local, metadata=load_metadata(mapping.provider_metadata))
            conflict = self._save_mapping(owner_id, mapping, local, pushed)
            return _outcome(c.ref, "created", conflict)

        remote = await adapter.get(owner_id, mapping.remote_id)
        return await self._reconcile(adapter, owner_id, direction, _Candidate(mapping, local, remote))

    async def _local_missing(self, adapter, owner_id, direction, c: _Candidate) -> ItemOutcome:
        """Mapped, but the local row is gone for good (hard delete)."""
        mapping, remote = c.mapping, c.remote
        kind = remote.kind
        remote_changed = remote.version != mapping.last_remote_version

        if remote.deleted:
            self._drop_mapping(owner_id, kind, mapping.local_id)
            return ItemOutcome(c.ref, "skipped", "deleted on both sides")
        if remote_changed:
            if not direction.writes_local:
                return ItemOutcome(c.ref, "skipped")
            stored = self.local.apply(
                owner_id,
                LocalEntity(mapping.local_id, kind, dict(remote.fields)),
                defaults=_insert_defaults(adapter),
            )
            conflict = self._save_mapping(owner_id, mapping, stored, remote)
            return _outcome(c.ref, "created", conflict)
        if direction.writes_remote:
            await adapter.remove(owner_id, remote.remote_id)
            self._drop_mapping(owner_id, kind, mapping.local_id)
            return ItemOutcome(c.ref, "deleted")
        return ItemOutcome(c.ref, "skipped")

    async def _reconcile(self, adapter, owner_id, direction, c: _Candidate) -> ItemOutcome:
        mapping, local, remote = c.mapping, c.local, c.remote
        remote_fields = adapter.localize(remote.fields, local.fields)

        if mapping is not None:
            local_changed = local.version != mapping.last_local_version
            remote_changed = remote.version != mapping.last_remote_version
            if not local_changed and not remote_changed:
                return ItemOutcome(c.ref, "skipped", "unchanged")
        else:
            # Re-linked pair: no baseline to diff against
            local_changed = remote_changed = True

        if local.deleted and remote.deleted:
            self._drop_mapping(owner_id, local.kind, local.local_id)
            return ItemOutcome(c.ref, "skipped", "deleted on both sides")

        if local_changed and not remote_changed:
            decision = Decision(DecisionKind.KEEP_LOCAL, reason="only local changed")
        elif remote_changed and not local_changed:
            decision = Decision(DecisionKind.KEEP_REMOTE, reason="only remote changed")
        else:
            snapshot = mapping.synced_fields if mapping is not None else None
            decision = self.resolver.resolve(
                VersionedEntity(
                    updated_at=local.deleted_at or local.updated_at,
                    deleted=local.deleted,
                    fields=local.fields,
                    changed_fields=changed_since(snapshot_fields(local.fields), snapshot),
                ),
                VersionedEntity(
                    updated_at=remote.updated_at,
                    deleted=remote.deleted,
                    fields=remote_fields,
                    changed_fields=changed_since(snapshot_fields(remote_fields), snapshot),
                ),
            )
        logger.debug("%s: %s (%s)", c.ref, decision.kind.value, decision.reason)

        if decision.kind == DecisionKind.MERGE:
            return await self._merge(adapter, owner_id, direction, c, remote_fields, decision.fields)
        if decision.kind == DecisionKind.KEEP_LOCAL:
            return await self._keep_local(adapter, owner_id, direction, c, remote_fields)
        return await self._keep_remote(owner_id, direction, c, remote_fields)

    async def _keep_local(self, adapter, owner_id, direction, c: _Candidate, remote_fields) -> ItemOutcome:
        mapping, local, remote = c.mapping, c.local, c.remote
        if not direction.writes_remote:
            return ItemOutcome(c.ref, "skipped", "local wins but remote is read-only")
        if local.deleted:
            if not remote.deleted:
                await adapter.remove(owner_id, remote.remote_id)
            self._drop_mapping(owner_id, local.kind, local.local_id)
            return ItemOutcome(c.ref, "deleted")
        if not remote.deleted and _matches(local.fields, remote_fields):
            conflict = self._save_mapping(owner_id, mapping, local, remote)
            return _outcome(c.ref, "skipped", conflict)

        # A remote tombstone cannot be patched back to life; create a new one
        remote_id = None if remote.deleted else remote.remote_id
        pushed, created = await self._push(adapter, owner_id, local, remote_id, remote.metadata)
        conflict = self._save_mapping(owner_id, mapping, local, pushed)
        return _outcome(c.ref, "created" if created else "updated", conflict)

    async def _keep_remote(self, owner_id, direction, c: _Candidate, remote_fields) -> ItemOutcome:
        mapping, local, remote = c.mapping, c.local, c.remote
        if not direction.writes_local:
            return ItemOutcome(c.ref, "skipped", "remote wins but local is read-only")
        if remote.deleted:
            if not local.deleted:
                self.local.delete(owner_id, local.kind, local.local_id)
            self._drop_mapping(owner_id, local.kind, local.local_id)
            return ItemOutcome(c.ref, "deleted")
        if not local.deleted and _matches(local.fields, remote_fields):
            conflict = self._save_mapping(owner_id, mapping, local, remote)
            return _outcome(c.ref, "skipped", conflict)

        stored = self.local.apply(owner_id, LocalEntity(local.local_id, local.kind, remote_fields))
        conflict = self._save_mapping(owner_id, mapping, stored, remote)
        return _outcome(c.ref, "created" if local.deleted else "updated", conflict)

    async def _merge(self, adapter, owner_id, direction, c: _Candidate, remote_fields, merged) -> ItemOutcome:
        mapping, local, remote = c.mapping, c.local, c.remote
        wrote = False

        stored_local = local
        if direction.writes_local and not _matches(local.fields, merged):
            stored_local = self.local.apply(owner_id, LocalEntity(local.local_id, local.kind, merged))
            wrote = True

        stored_remote = remote
        if direction.writes_remote and not _matches(merged, remote_fields):
            desired = LocalEntity(local.local_id, local.kind, merged, local.updated_at)
            stored_remote, _ = await self._push(
                adapter, owner_id, desired, remote.remote_id, remote.metadata
            )
            wrote = True

        conflict = None
        # One-way runs leave the other side behind; keep the old baseline
        if direction == Direction.BIDIRECTIONAL:
            conflict = self._save_mapping(owner_id, mapping, stored_local, stored_remote)
        return _outcome(c.ref, "updated" if wrote else "skipped", conflict)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _push(self, adapter, owner_id, local, remote_id, metadata):
        """Insert or patch; a patch that hits 404/410 re-creates the remote."""
        if remote_id is None:
            return await adapter.push(owner_id, local, metadata=metadata), True
        try:
            return await adapter.push(owner_id, local, remote_id=remote_id, metadata=metadata), False
        except PermanentProviderError as exc:
            if not exc.not_found:
                raise
            logger.info("Remote %s is gone; re-creating it", remote_id)
            return await adapter.push(owner_id, local, metadata=metadata), True

    def _save_mapping(
        self,
        owner_id: str,
        previous: Optional[SyncMapping],
        local: LocalEntity,
        remote: RemoteEntity,
    ) -> Optional[str]:
        """Record the pair as in sync. Returns a message if a slot conflict was resolved."""
        mapping = SyncMapping(
            owner_id=owner_id,
            entity_kind=local.kind.value,
            local_id=local.local_id,
            remote_id=remote.remote_id,
            last_synced_at=utcnow(),
            last_local_version=local.version,
            last_remote_version=remote.version,
            provider_metadata=dump_metadata(remote.metadata),
            synced_fields=snapshot_fields(local.fields),
            needs_reconciliation=False,
            conflict_remote_id=None,
        )
        expected = previous.last_synced_at if previous is not None else None
        try:
            self.mappings.upsert(mapping, expected_synced_at=expected)
            return None
        except MappingConflict as exc:
            if exc.existing is None:
                raise
            self.mappings.flag_for_reconciliation(exc.existing)
            self.mappings.upsert(mapping, expected_synced_at=expected)
            return str(exc)

    def _drop_mapping(self, owner_id: str, kind: EntityKind, local_id: str) -> None:
        self.mappings.delete(owner_id, kind.value, local_id)

    def _finish_quietly(self, run_id: int, message: str) -> None:
        try:
            self.sync_log.finish(run_id, RunStatus.FAILED, message)
        except SyncError as exc:
            logger.error("Could not close sync run %s: %s", run_id, exc)

    def _touch_integration(self, owner_id: str) -> None:
        try:
            with Session(self.engine) as s:
                s.connection().execute(
                    update(Integration)
                    .where(Integration.owner_id == owner_id, Integration.provider == self.provider)
                    .values(last_synced_at=utcnow())
                )
                s.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to stamp last_synced_at for %s: %s", owner_id, exc)


def _matches(current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """True when ``current`` already holds every value in ``desired``."""
    return all(current.get(name) == value for name, value in desired.items())


def _insert_defaults(adapter) -> Optional[Dict[str, Any]]:
    if adapter.kind == EntityKind.TASK:
        return {"list_id": adapter.task_list_id}
    return None


def _outcome(ref: str, action: str, conflict: Optional[str]) -> ItemOutcome:
    if conflict:
        return ItemOutcome(ref, action, conflict, "MappingConflict")
    return ItemOutcome(ref, action)
