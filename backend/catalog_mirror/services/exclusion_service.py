"""
exclusion_service.py

Materializes each user's exclusion set into user_excluded_entities.

A recompute replaces the user's rows inside one transaction:
1. direct rows from EXCLUDE rules (the listed IDs),
2. direct rows from INCLUDE rules (every live ID of the type minus the list,
   read from the entity table itself),
3. direct rows for individually hidden entities,
4. cascade rows onto dependent types, derived from the rules and hidden
   entities only (cascades never feed further cascades),
5. for non-admin users, rows for organizational entities left with no
   visible content once 1-4 are applied (galleries, groups, studios,
   performers, tags, in that order).

Either all of it commits or none of it does, so a failed recompute leaves the
previous exclusion set in force. Recomputes for one user are serialized across
processes by a Redis lock.
"""
import logging
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Callable, ContextManager, Dict, List, Optional, Set, Tuple, TypeVar

from redis.exceptions import LockError
from sqlalchemy import text
from sqlalchemy.orm import Session

from catalog_mirror.core.config import settings
from catalog_mirror.core.database import SessionLocal
from catalog_mirror.core.redis_client import get_redis_sync
from catalog_mirror.errors import RecomputeLockBusy
from catalog_mirror.models import (
    ENTITY_MODELS,
    RELATIONS,
    EntityType,
    ExclusionReason,
    RelationSpec,
    RestrictionMode,
    live_sql,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANY = "any"
ALL = "all"


@dataclass(frozen=True)
class Cascade:
    source: EntityType
    dependent: EntityType
    relation: str  # RELATIONS[dependent] key that points at `source`
    quantifier: str  # ANY: one hidden reference hides the dependent; ALL: every reference must be hidden

    @property
    def spec(self) -> RelationSpec:
        return RELATIONS[self.dependent][self.relation]


CASCADES: List[Cascade] = [
    Cascade(EntityType.TAG, EntityType.SCENE, "tags", ANY),
    Cascade(EntityType.TAG, EntityType.IMAGE, "tags", ANY),
    Cascade(EntityType.TAG, EntityType.GALLERY, "tags", ANY),
    Cascade(EntityType.STUDIO, EntityType.SCENE, "studios", ANY),
    Cascade(EntityType.STUDIO, EntityType.IMAGE, "studios", ANY),
    Cascade(EntityType.STUDIO, EntityType.GALLERY, "studios", ANY),
    Cascade(EntityType.STUDIO, EntityType.GROUP, "studios", ANY),
    Cascade(EntityType.GROUP, EntityType.SCENE, "groups", ANY),
    Cascade(EntityType.GALLERY, EntityType.SCENE, "galleries", ANY),
    Cascade(EntityType.GALLERY, EntityType.IMAGE, "galleries", ANY),
    Cascade(EntityType.PERFORMER, EntityType.SCENE, "performers", ALL),
    Cascade(EntityType.PERFORMER, EntityType.IMAGE, "performers", ALL),
    Cascade(EntityType.PERFORMER, EntityType.GALLERY, "performers", ALL),
]


def cascade_sources(entity_type: EntityType) -> Set[EntityType]:
    """Types whose rules can exclude rows of `entity_type` (including itself)."""
    return {entity_type} | {c.source for c in CASCADES if c.dependent is entity_type}


# An organizational entity is empty when none of these content references is
# visible. Order matters: studios and performers count the galleries and groups
# left visible by the earlier steps, tags count everything.
EMPTY_CONTENT: List[Tuple[EntityType, List[Tuple[EntityType, str]]]] = [
    (EntityType.GALLERY, [(EntityType.IMAGE, "galleries")]),
    (EntityType.GROUP, [(EntityType.SCENE, "groups")]),
    (EntityType.STUDIO, [
        (EntityType.SCENE, "studios"),
        (EntityType.IMAGE, "studios"),
        (EntityType.GALLERY, "studios"),
        (EntityType.GROUP, "studios"),
    ]),
    (EntityType.PERFORMER, [
        (EntityType.SCENE, "performers"),
        (EntityType.IMAGE, "performers"),
        (EntityType.GALLERY, "performers"),
    ]),
    (EntityType.TAG, [
        (EntityType.SCENE, "tags"),
        (EntityType.IMAGE, "tags"),
        (EntityType.GALLERY, "tags"),
        (EntityType.GROUP, "tags"),
        (EntityType.PERFORMER, "tags"),
        (EntityType.STUDIO, "tags"),
    ]),
]


@contextmanager
def redis_user_lock(user_id: int):
    """Serialize one user's recomputes across the API and every worker."""
    lock = get_redis_sync().lock(
        f"lock:exclusions:user:{user_id}",
        timeout=settings.exclusion_lock_timeout_seconds,
        blocking_timeout=settings.exclusion_lock_wait_seconds,
        thread_local=False,
    )
    if not lock.acquire():
        raise RecomputeLockBusy(f"Exclusion recompute for user {user_id} is held by another process")
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError as e:
            logger.warning(f"[Exclusions] Recompute lock for user {user_id} expired before release: {e}")


@dataclass
class RecomputeResult:
    user_id: int
    counts: Dict[str, int] = field(default_factory=dict)
    coalesced: bool = False


# --- SQL fragments ------------------------------------------------------------

_NOT_ALREADY = (
    "NOT EXISTS (SELECT 1 FROM user_excluded_entities ex "
    "WHERE ex.user_id = :user_id AND ex.entity_type = :dep_type AND ex.entity_id = {id_expr})"
)

# IDs named by EXCLUDE rules plus hidden IDs, for one source type
_DIRECT_SOURCE_IDS = (
    "SELECT re.entity_id FROM restriction_entries re "
    "JOIN user_content_restrictions ucr ON ucr.id = re.restriction_id "
    "WHERE ucr.user_id = :user_id AND ucr.entity_type = :src_type AND ucr.mode = 'EXCLUDE' "
    "UNION "
    "SELECT h.entity_id FROM user_hidden_entities h "
    "WHERE h.user_id = :user_id AND h.entity_type = :src_type"
)

_INCLUDE_LIST_IDS = "SELECT re.entity_id FROM restriction_entries re WHERE re.restriction_id = :restriction_id"


def _insert_prefix(reason: ExclusionReason) -> str:
    return (
        "INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, reason) "
        f"SELECT :user_id, :dep_type, x.id, '{reason.value}' "
    )


def _ref_exists(spec: RelationSpec, id_subquery: Optional[str], negate_ids: bool = False) -> str:
    """EXISTS over the dependent's references, optionally restricted to an ID subquery."""
    if spec.via_column:
        col = f"x.{spec.related_col}"
        if id_subquery is None:
            return f"{col} IS NOT NULL"
        op = "NOT IN" if negate_ids else "IN"
        return f"({col} IS NOT NULL AND {col} {op} ({id_subquery}))"
    clause = f"SELECT 1 FROM {spec.table} j WHERE j.{spec.parent_col} = x.id"
    if id_subquery is not None:
        op = "NOT IN" if negate_ids else "IN"
        clause += f" AND j.{spec.related_col} {op} ({id_subquery})"
    return f"EXISTS ({clause})"


def _has_visible(content_type: EntityType, spec: RelationSpec) -> str:
    """EXISTS over live, not-yet-excluded `content_type` rows that reference x."""
    content_table = ENTITY_MODELS[content_type].__tablename__
    visible = (
        f"{live_sql('c')} AND NOT EXISTS (SELECT 1 FROM user_excluded_entities cx "
        f"WHERE cx.user_id = :user_id AND cx.entity_type = '{content_type.value}' AND cx.entity_id = c.id)"
    )
    if spec.via_column:
        return f"EXISTS (SELECT 1 FROM {content_table} c WHERE c.{spec.related_col} = x.id AND {visible})"
    return (
        f"EXISTS (SELECT 1 FROM {spec.table} j JOIN {content_table} c ON c.id = j.{spec.parent_col} "
        f"WHERE j.{spec.related_col} = x.id AND {visible})"
    )


class ExclusionService:
    """Computes and persists per-user exclusion sets.

    `user_lock` returns a context manager held around each recompute; the
    module-level service uses a Redis lock so API and worker processes
    never rebuild the same user at once. `hide_empty` enables step 5.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        user_lock: Optional[Callable[[int], ContextManager]] = None,
        hide_empty: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.user_lock = user_lock or (lambda user_id: nullcontext())
        self.hide_empty = settings.hide_empty_entities if hide_empty is None else hide_empty
        self._guard = threading.Lock()
        self._slots: Dict[int, "_UserSlot"] = {}

    # --- Core computation ----------------------------------------------------

    def compute_exclusions(self, db: Session, user_id: int) -> Dict[EntityType, Set[str]]:
        """Rebuild the user's exclusion rows in the caller's transaction and return them.

        The caller owns commit/rollback.
        """
        self._rebuild(db, user_id)
        return self.get_exclusions(db, user_id)

    def _rebuild(self, db: Session, user_id: int) -> None:
        db.execute(text("DELETE FROM user_excluded_entities WHERE user_id = :user_id"), {"user_id": user_id})

        rules = db.execute(
            text(
                "SELECT id, entity_type, mode, restrict_empty FROM user_content_restrictions "
                "WHERE user_id = :user_id ORDER BY id"
            ),
            {"user_id": user_id},
        ).mappings().all()

        for rule in rules:
            entity_type = EntityType.parse(rule["entity_type"])
            table = ENTITY_MODELS[entity_type].__tablename__
            params = {"user_id": user_id, "dep_type": entity_type.value, "restriction_id": rule["id"]}
            if rule["mode"] == RestrictionMode.EXCLUDE.value:
                db.execute(
                    text(
                        "INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, reason) "
                        f"SELECT :user_id, :dep_type, re.entity_id, '{ExclusionReason.RESTRICTED.value}' "
                        "FROM restriction_entries re WHERE re.restriction_id = :restriction_id"
                    ),
                    params,
                )
            else:
                # Everything currently in the store that is not on the list
                db.execute(
                    text(
                        _insert_prefix(ExclusionReason.RESTRICTED)
                        + f"FROM {table} x WHERE {live_sql('x')} "
                        f"AND x.id NOT IN ({_INCLUDE_LIST_IDS})"
                    ),
                    params,
                )

        db.execute(
            text(
                "INSERT INTO user_excluded_entities (user_id, entity_type, entity_id, reason) "
                f"SELECT h.user_id, h.entity_type, h.entity_id, '{ExclusionReason.HIDDEN.value}' "
                "FROM user_hidden_entities h WHERE h.user_id = :user_id "
                "AND NOT EXISTS (SELECT 1 FROM user_excluded_entities ex WHERE ex.user_id = h.user_id "
                "AND ex.entity_type = h.entity_type AND ex.entity_id = h.entity_id)"
            ),
            {"user_id": user_id},
        )

        rules_by_type = {EntityType.parse(r["entity_type"]): r for r in rules}
        for cascade in CASCADES:
            self._apply_direct_cascade(db, user_id, cascade)
            rule = rules_by_type.get(cascade.source)
            if rule is None:
                continue
            if rule["mode"] == RestrictionMode.INCLUDE.value:
                self._apply_include_cascade(db, user_id, cascade, rule["id"])
            if rule["restrict_empty"]:
                self._apply_unreferenced_cascade(db, user_id, cascade)

        if self.hide_empty and not self._is_admin(db, user_id):
            for target, content in EMPTY_CONTENT:
                self._apply_empty(db, user_id, target, content)

    def _is_admin(self, db: Session, user_id: int) -> bool:
        row = db.execute(text("SELECT is_admin FROM users WHERE id = :user_id"), {"user_id": user_id}).first()
        return bool(row and row[0])

    def _apply_direct_cascade(self, db: Session, user_id: int, cascade: Cascade) -> None:
        spec = cascade.spec
        if cascade.quantifier == ANY:
            condition = _ref_exists(spec, _DIRECT_SOURCE_IDS)
        else:
            # At least one reference, and no reference outside the hidden set
            condition = f"{_ref_exists(spec, None)} AND NOT {_ref_exists(spec, _DIRECT_SOURCE_IDS, negate_ids=True)}"
        self._insert_cascade(db, user_id, cascade, condition, {"src_type": cascade.source.value})

    def _apply_include_cascade(self, db: Session, user_id: int, cascade: Cascade, restriction_id: int) -> None:
        """Hide dependents that reference the source type but none of the included IDs."""
        spec = cascade.spec
        condition = f"({_ref_exists(spec, None)} AND NOT {_ref_exists(spec, _INCLUDE_LIST_IDS)})"
        self._insert_cascade(db, user_id, cascade, condition, {"restriction_id": restriction_id})

    def _apply_unreferenced_cascade(self, db: Session, user_id: int, cascade: Cascade) -> None:
        """restrict_empty: hide dependents with no reference of the source type at all."""
        self._insert_cascade(db, user_id, cascade, f"NOT {_ref_exists(cascade.spec, None)}", {})

    def _insert_cascade(self, db: Session, user_id: int, cascade: Cascade, condition: str, params: Dict) -> None:
        dep_table = ENTITY_MODELS[cascade.dependent].__tablename__
        sql = (
            _insert_prefix(ExclusionReason.CASCADE)
            + f"FROM {dep_table} x WHERE {live_sql('x')} AND {condition} "
            + "AND " + _NOT_ALREADY.format(id_expr="x.id")
        )
        db.execute(text(sql), {"user_id": user_id, "dep_type": cascade.dependent.value, **params})

    def _apply_empty(self, db: Session, user_id: int, target: EntityType,
                     content: List[Tuple[EntityType, str]]) -> None:
        """Hide live `target` rows that no visible content references."""
        table = ENTITY_MODELS[target].__tablename__
        conditions = " AND ".join(
            f"NOT {_has_visible(content_type, RELATIONS[content_type][relation])}"
            for content_type, relation in content
        )
        sql = (
            _insert_prefix(ExclusionReason.EMPTY)
            + f"FROM {table} x WHERE {live_sql('x')} AND {conditions} "
            + "AND " + _NOT_ALREADY.format(id_expr="x.id")
        )
        db.execute(text(sql), {"user_id": user_id, "dep_type": target.value})

    # --- Reads ---------------------------------------------------------------

    def get_exclusions(self, db: Session, user_id: int) -> Dict[EntityType, Set[str]]:
        result: Dict[EntityType, Set[str]] = {t: set() for t in EntityType}
        rows = db.execute(
            text("SELECT entity_type, entity_id FROM user_excluded_entities WHERE user_id = :user_id"),
            {"user_id": user_id},
        )
        for entity_type, entity_id in rows:
            result[EntityType.parse(entity_type)].add(entity_id)
        return result

    def get_exclusion_counts(self, db: Session, user_id: int) -> Dict[str, Dict[str, int]]:
        """Counts per entity type and reason."""
        counts: Dict[str, Dict[str, int]] = {}
        rows = db.execute(
            text(
                "SELECT entity_type, reason, COUNT(*) FROM user_excluded_entities "
                "WHERE user_id = :user_id GROUP BY entity_type, reason"
            ),
            {"user_id": user_id},
        )
        for entity_type, reason, n in rows:
            counts.setdefault(entity_type, {})[reason] = n
        return counts

    # --- Serialized recompute ------------------------------------------------

    def _slot(self, user_id: int) -> "_UserSlot":
        with self._guard:
            slot = self._slots.get(user_id)
            if slot is None:
                slot = self._slots[user_id] = _UserSlot()
            return slot

    def recompute_for_user(self, user_id: int) -> RecomputeResult:
        """Recompute and commit one user's exclusions.

        Calls for the same user are serialized, within this process by the
        user's slot and across processes by `user_lock`. Requests that arrive
        while a recompute is running are answered by a single follow-up
        recompute.
        """
        slot = self._slot(user_id)
        with slot.state:
            slot.requested += 1
            ticket = slot.requested

        with slot.run_lock:
            with slot.state:
                if slot.completed >= ticket:
                    logger.debug(f"[Exclusions] Recompute for user {user_id} coalesced")
                    return RecomputeResult(user_id=user_id, coalesced=True)
                covers = slot.requested

            with self.user_lock(user_id):
                db = self.session_factory()
                try:
                    self._rebuild(db, user_id)
                    db.commit()
                    counts = {t: sum(r.values()) for t, r in self.get_exclusion_counts(db, user_id).items()}
                except Exception as e:
                    db.rollback()
                    logger.error(f"[Exclusions] Recompute failed for user {user_id}, previous set kept: {e}", exc_info=True)
                    raise
                finally:
                    db.close()

            with slot.state:
                slot.completed = covers
                slot.runs += 1

        logger.info(f"[Exclusions] Recomputed exclusions for user {user_id}: {counts}")
        return RecomputeResult(user_id=user_id, counts=counts)

    def apply_and_recompute(self, user_id: int, mutate: Callable[[Session], T]) -> T:
        """Run `mutate` and a full recompute for the user in one transaction.

        Used for rule edits: the new rule and the exclusion set it implies
        commit together or not at all.
        """
        slot = self._slot(user_id)
        with slot.run_lock:
            with slot.state:
                covers = slot.requested
            with self.user_lock(user_id):
                db = self.session_factory()
                try:
                    value = mutate(db)
                    db.flush()
                    self._rebuild(db, user_id)
                    db.commit()
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()
            with slot.state:
                slot.completed = max(slot.completed, covers)
                slot.runs += 1
        return value

    def affected_users(self, db: Session, entity_type) -> List[int]:
        """Users whose exclusion set can change when rows of `entity_type` change.

        With empty-entity hiding on, that is every non-admin user.
        """
        entity_type = EntityType.parse(entity_type)
        sources = sorted(t.value for t in cascade_sources(entity_type))
        params = {f"t{i}": t for i, t in enumerate(sources)}
        in_list = ", ".join(f":{k}" for k in params)
        sql = (
            f"SELECT user_id FROM user_content_restrictions WHERE entity_type IN ({in_list}) "
            f"UNION SELECT user_id FROM user_hidden_entities WHERE entity_type IN ({in_list})"
        )
        if self.hide_empty:
            sql += " UNION SELECT id FROM users WHERE is_admin = :is_admin"
            params["is_admin"] = False
        rows = db.execute(text(sql), params)
        return sorted({r[0] for r in rows})

    def recompute_for_affected_users(self, entity_type,
                                     on_failure: Optional[Callable[[int], None]] = None) -> Dict[int, RecomputeResult]:
        """Recompute every user who might see a different set after `entity_type` changed.

        One user's failure is logged and handed to `on_failure` (the task layer
        queues a retrying per-user recompute); it does not stop the others.
        """
        entity_type = EntityType.parse(entity_type)
        db = self.session_factory()
        try:
            user_ids = self.affected_users(db, entity_type)
        finally:
            db.close()

        results = {}
        for user_id in user_ids:
            try:
                results[user_id] = self.recompute_for_user(user_id)
            except Exception as e:
                logger.error(f"[Exclusions] Recompute for user {user_id} after {entity_type.value} change failed: {e}")
                if on_failure is not None:
                    on_failure(user_id)
        logger.info(f"[Exclusions] {entity_type.value} universe changed; recomputed {len(results)}/{len(user_ids)} users")
        return results


class _UserSlot:
    def __init__(self):
        self.state = threading.Lock()
        self.run_lock = threading.Lock()
        self.requested = 0
        self.completed = 0
        self.runs = 0


exclusion_service = ExclusionService(user_lock=redis_user_lock)
