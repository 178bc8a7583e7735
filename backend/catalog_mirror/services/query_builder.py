"""
query_builder.py

Builds and runs paginated library queries entirely in SQL.

One WHERE clause and one parameter dict feed both the COUNT(DISTINCT id) query
and the LIMIT/OFFSET data query, so `total` always describes the page that was
returned. Related entities are never joined into the paginated query; the
RelationPopulator loads them for the page afterwards.
"""
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import Boolean, DateTime, text
from sqlalchemy.orm import Session

from catalog_mirror.core.config import settings
from catalog_mirror.errors import QueryValidationError
from catalog_mirror.models import ENTITY_MODELS, EntityType, live_sql
from catalog_mirror.services import filters as f
from catalog_mirror.services.entity_specs import EntitySpec, FilterKind, get_spec
from catalog_mirror.services.relation_populator import RelationPopulator

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 1000
RANDOM_MODULUS = 2147483647
# Scatters sequential IDs across the modulus before the seeded step
RANDOM_SCATTER = 1103515245
BOOL_OUTPUTS = {"favorite", "organized"}
DATETIME_OUTPUTS = {"last_played_at", "last_viewed_at"}


@dataclass
class QueryOptions:
    user_id: Optional[int] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    # IDs of the queried type, or a mapping of entity type -> IDs
    excluded_ids: Optional[Union[Iterable[str], Mapping[str, Iterable[str]]]] = None
    sort: Optional[str] = None
    direction: str = "DESC"
    page: int = 1
    per_page: int = 40
    random_seed: Optional[int] = None
    q: Optional[str] = None
    include_deleted: bool = False
    apply_exclusions: bool = True
    hydrate: bool = True


@dataclass
class QueryResult:
    entities: List[Dict[str, Any]]
    total: int
    page: int
    per_page: int
    random_seed: Optional[int] = None

    @property
    def total_pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page if self.per_page else 0


@dataclass
class BuiltQuery:
    count_sql: str
    data_sql: str
    params: Dict[str, Any]
    random_seed: Optional[int] = None


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class QueryBuilder:
    """Query builder for one entity type."""

    def __init__(self, entity_type, chunk_limit: int = None, max_chunks: int = None,
                 populator: Optional[RelationPopulator] = None):
        self.entity_type = EntityType.parse(entity_type)
        self.spec: EntitySpec = get_spec(self.entity_type)
        self.chunk_limit = chunk_limit or settings.exclusion_chunk_limit
        self.max_chunks = max_chunks or settings.max_exclusion_chunks
        self.populator = populator or RelationPopulator()

    # --- Filter parsing ------------------------------------------------------

    def parse_filter(self, name: str, raw: Any):
        """Turn one `{value, value2, modifier}` entry into a filter variant."""
        spec = self.spec
        if name == "ids":
            return self._parse_ids(raw)
        definition = spec.filters.get(name)
        if definition is None:
            raise QueryValidationError(
                f"Unknown filter {name!r} for {self.entity_type.plural}", field=name
            )

        if definition.kind is FilterKind.RELATION:
            if isinstance(raw, (list, tuple)):
                raw = {"value": list(raw), "modifier": "INCLUDES"}
            entry = self._entry(name, raw)
            modifier = f.Modifier.parse(entry.get("modifier", "INCLUDES"), name)
            if modifier not in f.RELATION_MODIFIERS:
                raise QueryValidationError(f"Modifier {modifier.value} is not valid for {name}", field=name)
            ids = entry.get("value")
            if not isinstance(ids, (list, tuple)) or not ids:
                raise QueryValidationError(f"{name} value must be a non-empty list of IDs", field=name)
            relation = spec.relations[definition.relation]
            cls = {
                f.Modifier.INCLUDES: f.Includes,
                f.Modifier.INCLUDES_ALL: f.IncludesAll,
                f.Modifier.EXCLUDES: f.Excludes,
            }[modifier]
            return cls(spec.id_expr, relation, [str(i) for i in ids], spec.alias)

        if definition.kind is FilterKind.BOOL:
            if isinstance(raw, bool):
                raw = {"value": raw}
            entry = self._entry(name, raw)
            modifier = f.Modifier.parse(entry.get("modifier", "EQUALS"), name)
            if modifier not in f.BOOL_MODIFIERS:
                raise QueryValidationError(f"Modifier {modifier.value} is not valid for {name}", field=name)
            value = entry.get("value")
            if not isinstance(value, bool):
                raise QueryValidationError(f"{name} value must be a boolean", field=name)
            return f.Equality(definition.expr, value, negate=modifier is f.Modifier.NOT_EQUALS)

        if definition.kind is FilterKind.TEXT:
            entry = self._entry(name, raw)
            modifier = f.Modifier.parse(entry.get("modifier", "EQUALS"), name)
            if modifier not in f.TEXT_MODIFIERS:
                raise QueryValidationError(f"Modifier {modifier.value} is not valid for {name}", field=name)
            value = entry.get("value")
            if modifier not in (f.Modifier.IS_NULL, f.Modifier.NOT_NULL) and not isinstance(value, str):
                raise QueryValidationError(f"{name} value must be a string", field=name)
            return f.TextMatch(definition.expr, modifier, value)

        entry = self._entry(name, raw)
        modifier = f.Modifier.parse(entry.get("modifier", "EQUALS"), name)
        if modifier not in f.RANGE_MODIFIERS:
            raise QueryValidationError(f"Modifier {modifier.value} is not valid for {name}", field=name)
        value, value2 = entry.get("value"), entry.get("value2")
        if modifier not in (f.Modifier.IS_NULL, f.Modifier.NOT_NULL) and not _is_number(value):
            raise QueryValidationError(f"{name} value must be a number", field=name)
        if modifier in (f.Modifier.BETWEEN, f.Modifier.NOT_BETWEEN) and not _is_number(value2):
            raise QueryValidationError(f"{name} requires a numeric value2 for {modifier.value}", field=name)
        return f.Range(definition.expr, modifier, value, value2)

    def _parse_ids(self, raw: Any):
        if isinstance(raw, (list, tuple)):
            raw = {"value": list(raw)}
        entry = self._entry("ids", raw)
        modifier = f.Modifier.parse(entry.get("modifier", "INCLUDES"), "ids")
        if modifier not in f.ID_MODIFIERS:
            raise QueryValidationError(f"Modifier {modifier.value} is not valid for ids", field="ids")
        ids = entry.get("value")
        if not isinstance(ids, (list, tuple)):
            raise QueryValidationError("ids value must be a list", field="ids")
        return f.IdSet(self.spec.id_expr, [str(i) for i in ids], exclude=modifier is f.Modifier.EXCLUDES)

    @staticmethod
    def _entry(name: str, raw: Any) -> Mapping[str, Any]:
        if not isinstance(raw, Mapping):
            raise QueryValidationError(f"Filter {name!r} must be an object with value/modifier", field=name)
        unknown = set(raw) - {"value", "value2", "modifier"}
        if unknown:
            raise QueryValidationError(f"Filter {name!r} has unknown keys: {sorted(unknown)}", field=name)
        return raw

    # --- Statement assembly --------------------------------------------------

    def _excluded_for_type(self, excluded) -> List[str]:
        if not excluded:
            return []
        if isinstance(excluded, Mapping):
            for key, ids in excluded.items():
                try:
                    key_type = EntityType.parse(key)
                except ValueError:
                    raise QueryValidationError(
                        f"Unknown entity type {key!r} in excluded_ids", field="excluded_ids"
                    ) from None
                if key_type is self.entity_type:
                    return [str(i) for i in ids]
            return []
        return [str(i) for i in excluded]

    def _order_by(self, options: QueryOptions, params: Dict[str, Any]) -> Tuple[str, Optional[int]]:
        direction = str(options.direction or "DESC").upper()
        if direction not in ("ASC", "DESC"):
            raise QueryValidationError(f"Unknown sort direction {options.direction!r}", field="direction")
        sort = options.sort or self.spec.default_sort
        seed = None
        if sort == "random":
            seed = options.random_seed
            if seed is None:
                seed = random.randint(1, RANDOM_MODULUS - 1)
            seed = int(seed)
            # Seeded affine map mod 2^31-1; the id tie-breaker below keeps it total
            params["seed_mult"] = (seed * 48271) % (RANDOM_MODULUS - 1) + 1
            params["seed_offset"] = seed % RANDOM_MODULUS
            expr = (
                f"((((CAST({self.spec.id_expr} AS BIGINT) * {RANDOM_SCATTER} + :seed_offset) % {RANDOM_MODULUS})"
                f" * :seed_mult) % {RANDOM_MODULUS})"
            )
        else:
            expr = self.spec.sorts.get(sort)
            if expr is None:
                raise QueryValidationError(
                    f"Unknown sort key {sort!r} for {self.entity_type.plural}", field="sort"
                )
        # id tie-breaker makes every ordering total
        return f"{expr} {direction}, {self.spec.id_expr} {direction}", seed

    def build(self, options: QueryOptions) -> BuiltQuery:
        if not isinstance(options.page, int) or options.page < 1:
            raise QueryValidationError("page must be a positive integer", field="page")
        if not isinstance(options.per_page, int) or not 1 <= options.per_page <= MAX_PER_PAGE:
            raise QueryValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}", field="per_page")
        if not isinstance(options.filters or {}, Mapping):
            raise QueryValidationError("filters must be an object", field="filters")

        spec = self.spec
        predicates = []
        if not options.include_deleted:
            predicates.append(f.Raw(live_sql(spec.alias)))
        if options.user_id is not None and options.apply_exclusions:
            predicates.append(f.PersistedExclusion(spec.id_expr, self.entity_type.value))
        excluded = self._excluded_for_type(options.excluded_ids)
        if excluded:
            predicates.append(f.ExcludedIdChunks(spec.id_expr, excluded, self.chunk_limit, self.max_chunks))
        if options.q and options.q.strip():
            predicates.append(f.Search(spec.search_columns, options.q))
        for name, raw in (options.filters or {}).items():
            predicates.append(self.parse_filter(name, raw))

        names = f.ParamNames()
        where = f.combine(predicates, names)
        params: Dict[str, Any] = {"user_id": options.user_id, **where.params}
        order_by, seed = self._order_by(options, params)
        params["limit"] = options.per_page
        params["offset"] = (options.page - 1) * options.per_page

        from_sql = f"FROM {spec.table} {spec.alias} {' '.join(spec.joins)} WHERE {where.sql}"
        count_sql = f"SELECT COUNT(DISTINCT {spec.id_expr}) {from_sql}"
        data_sql = f"SELECT {spec.select_list()} {from_sql} ORDER BY {order_by} LIMIT :limit OFFSET :offset"
        return BuiltQuery(count_sql, data_sql, params, seed)

    def _typed(self, sql: str):
        model = ENTITY_MODELS[self.entity_type]
        types = {}
        for name, _ in self.spec.columns:
            if name in model.__table__.c:
                col_type = model.__table__.c[name].type
                if isinstance(col_type, (Boolean, DateTime)):
                    types[name] = col_type
            elif name in BOOL_OUTPUTS:
                types[name] = Boolean()
            elif name in DATETIME_OUTPUTS:
                types[name] = DateTime(timezone=True)
        return text(sql).columns(**types)

    # --- Execution -----------------------------------------------------------

    def execute(self, db: Session, options: QueryOptions) -> QueryResult:
        built = self.build(options)
        total = db.execute(text(built.count_sql), built.params).scalar() or 0
        rows = [dict(r._mapping) for r in db.execute(self._typed(built.data_sql), built.params)]
        if options.hydrate and rows:
            self.populator.populate(db, self.entity_type, rows, options.user_id)
        logger.debug(
            f"[QueryBuilder] {self.entity_type.plural}: page {options.page} -> {len(rows)} of {total}"
        )
        return QueryResult(rows, int(total), options.page, options.per_page, built.random_seed)

    def get_one(self, db: Session, entity_id: str, user_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Single live entity with relations, or None when missing or excluded for the user."""
        options = QueryOptions(user_id=user_id, filters={"ids": [str(entity_id)]}, sort="id", per_page=1)
        result = self.execute(db, options)
        return result.entities[0] if result.entities else None


def execute_query(db: Session, entity_type, options: QueryOptions) -> QueryResult:
    return QueryBuilder(entity_type).execute(db, options)
