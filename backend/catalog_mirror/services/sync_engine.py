"""
sync_engine.py

Pulls one entity type from the remote catalog into the local store.

A run walks the remote listing page by page (never an unbounded page), splits
each page into commit batches, and upserts every batch in its own transaction
so a failure after batch N leaves batches 1..N durably applied. Relations are
diff-and-replaced against the junction tables. A full run then reconciles
deletions by comparing the remote ID set with local live rows and tombstoning
the difference.

Runs for the same type are serialized by a per-type lock. A newer on-demand
run can supersede a running one by cancelling its token; the token is checked
at every page and batch boundary, never inside a batch.

Store calls run on the default executor, so a sync started from the API does
not stall the event loop serving queries.
"""
import asyncio
import enum
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_, bindparam, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from catalog_mirror.core.config import settings
from catalog_mirror.core.database import SessionLocal
from catalog_mirror.errors import SyncCancelled, SyncLockBusy
from catalog_mirror.models import (
    ENTITY_MODELS,
    RELATIONS,
    Base,
    EntityType,
    RelationSpec,
    SyncState,
)
from catalog_mirror.services.stash_client import RemoteEntity
from catalog_mirror.utils.timezone import elapsed_ms, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COMMITTING = "committing"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation flag checked at phase and batch boundaries."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelled(self.reason or "cancelled")

    async def checkpoint(self) -> None:
        """Called by the engine at every page and batch boundary."""
        self.raise_if_cancelled()


@dataclass
class SyncResult:
    entity_type: EntityType
    count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    cancelled: bool = False
    incremental: bool = False
    batches: int = 0
    inserted: int = 0
    revived: int = 0
    tombstoned: int = 0
    # Existing rows whose references changed
    relinked: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def universe_changed(self) -> bool:
        return bool(self.inserted or self.revived or self.tombstoned or self.relinked)


@dataclass
class _BatchChanges:
    inserted: int = 0
    revived: int = 0
    relinked: int = 0


def _insert_for(db):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _column_default(column):
    default = column.default
    if default is not None and default.is_scalar:
        return default.arg
    return None


class SyncEngine:
    """Mirrors entity types from a StashClient into the local store."""

    def __init__(
        self,
        client,
        session_factory=SessionLocal,
        page_size: int = None,
        batch_size: int = None,
        id_page_size: int = None,
        reconcile_chunk_size: int = None,
        on_universe_changed: Optional[Callable[[EntityType], None]] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.page_size = page_size or settings.page_size
        self.batch_size = batch_size or settings.batch_size
        self.id_page_size = id_page_size or settings.id_page_size
        self.reconcile_chunk_size = reconcile_chunk_size or settings.reconcile_chunk_size
        self.on_universe_changed = on_universe_changed
        self.instance_id = getattr(client, "instance_id", None)
        self.phases: Dict[EntityType, SyncPhase] = {}
        self._locks: Dict[EntityType, asyncio.Lock] = {}
        self._tokens: Dict[EntityType, CancellationToken] = {}

    # --- Public API ----------------------------------------------------------

    def is_running(self, entity_type) -> bool:
        lock = self._locks.get(EntityType.parse(entity_type))
        return bool(lock and lock.locked())

    def cancel(self, entity_type, reason: str = "cancelled") -> bool:
        """Cancel the running sync for `entity_type`; returns False when none is running."""
        token = self._tokens.get(EntityType.parse(entity_type))
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def sync(
        self,
        entity_type,
        incremental: bool = False,
        supersede: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> SyncResult:
        """Run one sync pass for `entity_type`.

        Remote and storage failures are recorded in sync state and returned in
        SyncResult.error, never raised. SyncLockBusy is raised when a run for
        the same type is in flight and `supersede` is False.
        """
        entity_type = EntityType.parse(entity_type)
        lock = self._locks.setdefault(entity_type, asyncio.Lock())
        if lock.locked():
            if not supersede:
                raise SyncLockBusy(f"Sync already running for {entity_type.value}")
            logger.info(f"[SyncEngine] Superseding running {entity_type.value} sync")
            self.cancel(entity_type, "superseded by a newer sync request")

        async with lock:
            token = token or CancellationToken()
            self._tokens[entity_type] = token
            try:
                result = await self._run(entity_type, incremental, token)
            finally:
                if self._tokens.get(entity_type) is token:
                    del self._tokens[entity_type]

        if result.universe_changed and self.on_universe_changed is not None:
            try:
                self.on_universe_changed(entity_type)
            except Exception as e:
                logger.error(f"[SyncEngine] Universe-change listener failed for {entity_type.value}: {e}", exc_info=True)
        return result

    async def sync_all(self, entity_types: Iterable = None, incremental: bool = False) -> Dict[EntityType, SyncResult]:
        """Sync several types one after another; a busy type is skipped."""
        results = {}
        for entity_type in entity_types or list(EntityType):
            entity_type = EntityType.parse(entity_type)
            try:
                results[entity_type] = await self.sync(entity_type, incremental=incremental)
            except SyncLockBusy as e:
                logger.info(f"[SyncEngine] Skipping {entity_type.value}: {e}")
        return results

    # --- Run -----------------------------------------------------------------

    def _set_phase(self, entity_type: EntityType, phase: SyncPhase) -> None:
        previous = self.phases.get(entity_type)
        if previous != phase:
            logger.debug(f"[SyncEngine] {entity_type.value}: {previous.value if previous else 'idle'} -> {phase.value}")
        self.phases[entity_type] = phase

    async def _blocking(self, fn, *args, **kwargs):
        # Store calls are synchronous; keep them off the loop that serves queries
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _run(self, entity_type: EntityType, incremental: bool, token: CancellationToken) -> SyncResult:
        started = utc_now()
        result = SyncResult(entity_type=entity_type)

        since = None
        if incremental:
            since = await self._blocking(self._incremental_since, entity_type)
            if since is None:
                logger.info(f"[SyncEngine] No previous {entity_type.value} sync; running a full sync instead")
                incremental = False
        result.incremental = incremental

        logger.info(
            f"[SyncEngine] Starting {'incremental' if incremental else 'full'} {entity_type.value} sync "
            f"(page_size={self.page_size}, batch_size={self.batch_size})"
        )
        await self._blocking(self._write_state, entity_type, phase=SyncPhase.FETCHING)

        try:
            await self._fetch_and_commit(entity_type, since, token, result)
            if not incremental:
                await token.checkpoint()
                self._set_phase(entity_type, SyncPhase.RECONCILING)
                result.tombstoned = await self._reconcile(entity_type, token)
            await token.checkpoint()
            result.duration_ms = elapsed_ms(started)
            self._set_phase(entity_type, SyncPhase.DONE)
            await self._blocking(self._record_success, entity_type, result, started)
            logger.info(
                f"[SyncEngine] ✅ {entity_type.value} sync complete: {result.count} records in "
                f"{result.batches} batches, {result.inserted} new, {result.revived} revived, "
                f"{result.tombstoned} tombstoned ({result.duration_ms}ms)"
            )
        except SyncCancelled as e:
            result.cancelled = True
            result.error = f"cancelled: {e}"
            result.duration_ms = elapsed_ms(started)
            self._set_phase(entity_type, SyncPhase.CANCELLED)
            await self._blocking(self._record_failure, entity_type, result)
            logger.info(f"[SyncEngine] {entity_type.value} sync cancelled after {result.count} records: {e}")
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            result.duration_ms = elapsed_ms(started)
            self._set_phase(entity_type, SyncPhase.FAILED)
            logger.error(
                f"[SyncEngine] {entity_type.value} sync failed after {result.batches} batches: {e}",
                exc_info=True,
            )
            await self._blocking(self._record_failure, entity_type, result)
        return result

    async def _fetch_and_commit(self, entity_type: EntityType, since: Optional[datetime],
                                token: CancellationToken, result: SyncResult) -> None:
        page = 1
        while True:
            await token.checkpoint()
            self._set_phase(entity_type, SyncPhase.FETCHING)
            remote_page = await self.client.list_entities(
                entity_type, page, self.page_size, updated_since=since
            )
            items = remote_page.items
            logger.debug(
                f"[SyncEngine] {entity_type.value} page {page}: {len(items)} items "
                f"(remote total {remote_page.total_count})"
            )
            if not items:
                break

            self._set_phase(entity_type, SyncPhase.COMMITTING)
            for start in range(0, len(items), self.batch_size):
                await token.checkpoint()
                batch = items[start:start + self.batch_size]
                changes = await self._blocking(self._commit_batch, entity_type, batch)
                result.batches += 1
                result.count += len(batch)
                result.inserted += changes.inserted
                result.revived += changes.revived
                result.relinked += changes.relinked
                logger.debug(f"[SyncEngine] {entity_type.value} batch {result.batches} committed ({len(batch)} rows)")

            if len(items) < self.page_size or result.count >= remote_page.total_count:
                break
            page += 1

    # --- Batch upsert --------------------------------------------------------

    def _commit_batch(self, entity_type: EntityType, batch: List[RemoteEntity]) -> _BatchChanges:
        model = ENTITY_MODELS[entity_type]
        table = model.__table__
        # Last occurrence wins; ON CONFLICT cannot touch the same row twice
        entities = list({str(e.id): e for e in batch}.values())
        ids = [str(e.id) for e in entities]
        now = utc_now()

        columns = {c.name: c for c in table.columns}
        field_keys = sorted({k for e in entities for k in e.fields if k in columns and k != "id"})
        rows = []
        for e in entities:
            row = {"id": str(e.id), "synced_at": now, "deleted_at": None}
            for key in field_keys:
                row[key] = e.fields[key] if key in e.fields else _column_default(columns[key])
            rows.append(row)

        db = self.session_factory()
        try:
            ref_cols = [
                s.related_col for s in RELATIONS[entity_type].values() if s.via_column and s.related_col in field_keys
            ]
            existing, existing_refs = {}, {}
            query = select(model.id, model.deleted_at, *[columns[c] for c in ref_cols]).where(model.id.in_(ids))
            for row in db.execute(query):
                existing[row[0]] = row[1]
                existing_refs[row[0]] = tuple(row[2:])
            changes = _BatchChanges(
                inserted=sum(1 for i in ids if i not in existing),
                revived=sum(1 for i in ids if i in existing and existing[i] is not None),
                relinked=sum(
                    1 for row in rows
                    if row["id"] in existing_refs and existing_refs[row["id"]] != tuple(row[c] for c in ref_cols)
                ),
            )

            insert = _insert_for(db)
            stmt = insert(table).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.id],
                set_={key: stmt.excluded[key] for key in rows[0] if key != "id"},
            )
            db.execute(stmt)
            changes.relinked += self._replace_relations(db, entity_type, entities)
            db.commit()
            return changes
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _replace_relations(self, db, entity_type: EntityType, entities: List[RemoteEntity]) -> int:
        """Diff every junction relation; returns how many links were added or removed."""
        touched = 0
        for spec in RELATIONS[entity_type].values():
            if spec.via_column:
                continue
            # Entities that did not carry this relation at all keep their rows
            carrying = [e for e in entities if spec.name in e.relations]
            if carrying:
                touched += self._diff_junction(db, spec, carrying)
        return touched

    def _diff_junction(self, db, spec: RelationSpec, entities: List[RemoteEntity]) -> int:
        table = Base.metadata.tables[spec.table]
        parent_c, related_c = table.c[spec.parent_col], table.c[spec.related_col]

        desired: Dict[Tuple[str, str], Dict] = {}
        for e in entities:
            for ref in e.relations.get(spec.name) or []:
                ref = ref if isinstance(ref, dict) else {"id": ref}
                if ref.get("id") is None:
                    continue
                key = (str(e.id), str(ref["id"]))
                desired[key] = {col: ref.get(col) for col in spec.extra_cols}

        parent_ids = [str(e.id) for e in entities]
        existing: Dict[Tuple[str, str], Dict] = {}
        cols = [parent_c, related_c] + [table.c[c] for c in spec.extra_cols]
        for row in db.execute(select(*cols).where(parent_c.in_(parent_ids))):
            existing[(row[0], row[1])] = {c: row[2 + i] for i, c in enumerate(spec.extra_cols)}

        stale = [k for k in existing if k not in desired]
        fresh = [k for k in desired if k not in existing]
        changed = [k for k in desired if k in existing and desired[k] != existing[k]]

        match = and_(parent_c == bindparam("p_id"), related_c == bindparam("r_id"))
        if stale:
            db.execute(table.delete().where(match), [{"p_id": p, "r_id": r} for p, r in stale])
        if fresh:
            db.execute(
                table.insert(),
                [{spec.parent_col: p, spec.related_col: r, **desired[(p, r)]} for p, r in fresh],
            )
        if changed and spec.extra_cols:
            stmt = table.update().where(match).values({c: bindparam(f"x_{c}") for c in spec.extra_cols})
            db.execute(
                stmt,
                [{"p_id": p, "r_id": r, **{f"x_{c}": desired[(p, r)][c] for c in spec.extra_cols}} for p, r in changed],
            )
        return len(stale) + len(fresh)

    # --- Reconciliation ------------------------------------------------------

    async def _fetch_remote_ids(self, entity_type: EntityType, token: CancellationToken) -> Tuple[Set[str], int]:
        remote_ids: Set[str] = set()
        total = 0
        page = 1
        while True:
            await token.checkpoint()
            id_page = await self.client.list_ids(entity_type, page, self.id_page_size)
            total = id_page.total_count
            remote_ids.update(str(i) for i in id_page.items)
            if len(id_page.items) < self.id_page_size or len(remote_ids) >= total:
                break
            page += 1
        return remote_ids, total

    async def _reconcile(self, entity_type: EntityType, token: CancellationToken) -> int:
        """Tombstone live local rows whose IDs are missing from the remote listing."""
        remote_ids, total = await self._fetch_remote_ids(entity_type, token)
        if len(remote_ids) != total:
            logger.warning(
                f"[SyncEngine] Skipping {entity_type.value} reconciliation: fetched {len(remote_ids)} IDs "
                f"but remote reports {total}"
            )
            return 0

        model = ENTITY_MODELS[entity_type]
        tombstoned = 0
        last_id = None
        while True:
            await token.checkpoint()
            last_id, missing = await self._blocking(self._tombstone_chunk, model, remote_ids, last_id)
            if last_id is None:
                break
            if missing:
                tombstoned += missing
                logger.debug(f"[SyncEngine] Tombstoned {missing} {entity_type.value} rows")
        return tombstoned

    def _tombstone_chunk(self, model, remote_ids: Set[str], after_id: Optional[str]) -> Tuple[Optional[str], int]:
        """Scan the next keyset chunk of live IDs; returns (last ID scanned, rows tombstoned)."""
        db = self.session_factory()
        try:
            query = select(model.id).where(model.live()).order_by(model.id).limit(self.reconcile_chunk_size)
            if after_id is not None:
                query = query.where(model.id > after_id)
            chunk = db.execute(query).scalars().all()
            if not chunk:
                return None, 0
            missing = [i for i in chunk if i not in remote_ids]
            if missing:
                db.execute(
                    update(model)
                    .where(model.id.in_(missing), model.live())
                    .values(deleted_at=utc_now())
                )
                db.commit()
            return chunk[-1], len(missing)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- Sync state ----------------------------------------------------------

    def _state_row(self, db, entity_type: EntityType) -> SyncState:
        query = db.query(SyncState).filter(SyncState.entity_type == entity_type.value)
        if self.instance_id is None:
            query = query.filter(SyncState.instance_id.is_(None))
        else:
            query = query.filter(SyncState.instance_id == self.instance_id)
        state = query.first()
        if state is None:
            state = SyncState(entity_type=entity_type.value, instance_id=self.instance_id)
            db.add(state)
        return state

    def _incremental_since(self, entity_type: EntityType) -> Optional[datetime]:
        db = self.session_factory()
        try:
            state = self._state_row(db, entity_type)
            marks = [ensure_utc(m) for m in (state.last_full_sync, state.last_incremental_sync) if m]
            return max(marks) if marks else None
        finally:
            db.rollback()
            db.close()

    def _write_state(self, entity_type: EntityType, **values) -> None:
        db = self.session_factory()
        try:
            state = self._state_row(db, entity_type)
            for key, value in values.items():
                if isinstance(value, enum.Enum):
                    value = value.value
                setattr(state, key, value)
            db.commit()
        except Exception as e:
            db.rollback()
            # Sync state is bookkeeping; losing one write must not fail the run
            logger.error(f"[SyncEngine] Failed to write sync state for {entity_type.value}: {e}")
        finally:
            db.close()

    def _live_count(self, entity_type: EntityType) -> int:
        model = ENTITY_MODELS[entity_type]
        db = self.session_factory()
        try:
            return db.execute(select(func.count()).select_from(model).where(model.live())).scalar() or 0
        finally:
            db.close()

    def _record_success(self, entity_type: EntityType, result: SyncResult, started: datetime) -> None:
        values = {
            "last_sync_count": result.count,
            "last_sync_duration_ms": result.duration_ms,
            "last_error": None,
            "total_entities": self._live_count(entity_type),
            "phase": SyncPhase.DONE,
        }
        # Stamp with the start time so the next incremental pass covers edits made during this run
        if result.incremental:
            values["last_incremental_sync"] = started
        else:
            values["last_full_sync"] = started
        self._write_state(entity_type, **values)

    def _record_failure(self, entity_type: EntityType, result: SyncResult) -> None:
        self._write_state(
            entity_type,
            last_error=result.error,
            last_sync_duration_ms=result.duration_ms,
            phase=SyncPhase.CANCELLED if result.cancelled else SyncPhase.FAILED,
        )


def get_sync_state(db, entity_type, instance_id: Optional[str] = None) -> Dict:
    """Read-only view of the sync state for one type (empty values when never synced)."""
    entity_type = EntityType.parse(entity_type)
    query = db.query(SyncState).filter(SyncState.entity_type == entity_type.value)
    if instance_id is not None:
        query = query.filter(SyncState.instance_id == instance_id)
    state = query.order_by(SyncState.updated_at.desc()).first()
    if state is None:
        return {
            "entity_type": entity_type.value,
            "last_full_sync": None,
            "last_incremental_sync": None,
            "last_sync_count": 0,
            "last_sync_duration_ms": None,
            "last_error": None,
            "total_entities": 0,
            "phase": SyncPhase.IDLE.value,
        }
    return {
        "entity_type": entity_type.value,
        "last_full_sync": ensure_utc(state.last_full_sync),
        "last_incremental_sync": ensure_utc(state.last_incremental_sync),
        "last_sync_count": state.last_sync_count,
        "last_sync_duration_ms": state.last_sync_duration_ms,
        "last_error": state.last_error,
        "total_entities": state.total_entities,
        "phase": state.phase or SyncPhase.IDLE.value,
    }
