"""
filters.py

Filter predicates as tagged variants. Each variant maps to one
FilterClause(sql, params) without touching the others; the query builder
joins the clauses with AND.

Parameter names come from a shared ParamNames counter so clauses built for the
same statement never collide.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from catalog_mirror.errors import ExclusionLimitError, QueryValidationError
from catalog_mirror.models import RelationSpec


class Modifier(str, enum.Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    BETWEEN = "BETWEEN"
    NOT_BETWEEN = "NOT_BETWEEN"
    INCLUDES = "INCLUDES"
    INCLUDES_ALL = "INCLUDES_ALL"
    EXCLUDES = "EXCLUDES"
    IS_NULL = "IS_NULL"
    NOT_NULL = "NOT_NULL"

    @classmethod
    def parse(cls, value, field_name: str = None) -> "Modifier":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise QueryValidationError(f"Unknown modifier {value!r}", field=field_name) from None


RANGE_MODIFIERS = {
    Modifier.EQUALS, Modifier.NOT_EQUALS, Modifier.GREATER_THAN, Modifier.LESS_THAN,
    Modifier.BETWEEN, Modifier.NOT_BETWEEN, Modifier.IS_NULL, Modifier.NOT_NULL,
}
RELATION_MODIFIERS = {Modifier.INCLUDES, Modifier.INCLUDES_ALL, Modifier.EXCLUDES}
TEXT_MODIFIERS = {
    Modifier.EQUALS, Modifier.NOT_EQUALS, Modifier.INCLUDES, Modifier.EXCLUDES,
    Modifier.IS_NULL, Modifier.NOT_NULL,
}
BOOL_MODIFIERS = {Modifier.EQUALS, Modifier.NOT_EQUALS}
ID_MODIFIERS = {Modifier.INCLUDES, Modifier.EXCLUDES}


@dataclass(frozen=True)
class FilterClause:
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


class ParamNames:
    """Hands out unique bind-parameter names for one statement."""

    def __init__(self):
        self._n = 0

    def new(self, stem: str = "p") -> str:
        self._n += 1
        return f"{stem}_{self._n}"

    def bind_list(self, values: Sequence[Any], stem: str = "p") -> Tuple[str, Dict[str, Any]]:
        """Return ':a, :b, ...' and the matching params for an IN list."""
        params = {}
        for value in values:
            params[self.new(stem)] = value
        return ", ".join(f":{name}" for name in params), params


def _dedupe(ids: Sequence[Any]) -> List[str]:
    seen = {}
    for value in ids:
        seen.setdefault(str(value), None)
    return list(seen)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class Includes:
    """Parent is related to at least one of `ids`."""
    id_expr: str
    relation: RelationSpec
    ids: Sequence[str]
    alias: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        in_list, params = names.bind_list(_dedupe(self.ids), "rel")
        rel = self.relation
        if rel.via_column:
            return FilterClause(f"{self.alias}.{rel.related_col} IN ({in_list})", params)
        return FilterClause(
            f"{self.id_expr} IN (SELECT j.{rel.parent_col} FROM {rel.table} j "
            f"WHERE j.{rel.related_col} IN ({in_list}))",
            params,
        )


@dataclass(frozen=True)
class IncludesAll:
    """Parent is related to every one of `ids`."""
    id_expr: str
    relation: RelationSpec
    ids: Sequence[str]
    alias: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        ids = _dedupe(self.ids)
        in_list, params = names.bind_list(ids, "rel")
        rel = self.relation
        if rel.via_column:
            # A single-valued column can equal every ID only when there is one
            if len(ids) > 1:
                return FilterClause("1 = 0", {})
            return FilterClause(f"{self.alias}.{rel.related_col} IN ({in_list})", params)
        count_name = names.new("n")
        params[count_name] = len(ids)
        return FilterClause(
            f"{self.id_expr} IN (SELECT j.{rel.parent_col} FROM {rel.table} j "
            f"WHERE j.{rel.related_col} IN ({in_list}) "
            f"GROUP BY j.{rel.parent_col} HAVING COUNT(DISTINCT j.{rel.related_col}) = :{count_name})",
            params,
        )


@dataclass(frozen=True)
class Excludes:
    """Parent is related to none of `ids`."""
    id_expr: str
    relation: RelationSpec
    ids: Sequence[str]
    alias: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        in_list, params = names.bind_list(_dedupe(self.ids), "rel")
        rel = self.relation
        if rel.via_column:
            col = f"{self.alias}.{rel.related_col}"
            return FilterClause(f"({col} IS NULL OR {col} NOT IN ({in_list}))", params)
        return FilterClause(
            f"{self.id_expr} NOT IN (SELECT j.{rel.parent_col} FROM {rel.table} j "
            f"WHERE j.{rel.related_col} IN ({in_list}))",
            params,
        )


@dataclass(frozen=True)
class Range:
    expr: str
    modifier: Modifier
    value: Optional[float] = None
    value2: Optional[float] = None

    def to_clause(self, names: ParamNames) -> FilterClause:
        m, expr = self.modifier, self.expr
        if m is Modifier.IS_NULL:
            return FilterClause(f"{expr} IS NULL")
        if m is Modifier.NOT_NULL:
            return FilterClause(f"{expr} IS NOT NULL")
        v = names.new("v")
        params = {v: self.value}
        if m is Modifier.EQUALS:
            return FilterClause(f"{expr} = :{v}", params)
        if m is Modifier.NOT_EQUALS:
            return FilterClause(f"({expr} IS NULL OR {expr} <> :{v})", params)
        if m is Modifier.GREATER_THAN:
            return FilterClause(f"{expr} > :{v}", params)
        if m is Modifier.LESS_THAN:
            return FilterClause(f"{expr} < :{v}", params)
        v2 = names.new("v")
        params[v2] = self.value2
        if m is Modifier.BETWEEN:
            return FilterClause(f"{expr} BETWEEN :{v} AND :{v2}", params)
        return FilterClause(f"({expr} < :{v} OR {expr} > :{v2})", params)


@dataclass(frozen=True)
class Equality:
    expr: str
    value: Any
    negate: bool = False

    def to_clause(self, names: ParamNames) -> FilterClause:
        v = names.new("b")
        op = "<>" if self.negate else "="
        return FilterClause(f"{self.expr} {op} :{v}", {v: self.value})


@dataclass(frozen=True)
class TextMatch:
    expr: str
    modifier: Modifier
    value: Optional[str] = None

    def to_clause(self, names: ParamNames) -> FilterClause:
        m, expr = self.modifier, self.expr
        if m is Modifier.IS_NULL:
            return FilterClause(f"({expr} IS NULL OR {expr} = '')")
        if m is Modifier.NOT_NULL:
            return FilterClause(f"({expr} IS NOT NULL AND {expr} <> '')")
        v = names.new("t")
        if m is Modifier.EQUALS:
            return FilterClause(f"{expr} = :{v}", {v: self.value})
        if m is Modifier.NOT_EQUALS:
            return FilterClause(f"({expr} IS NULL OR {expr} <> :{v})", {v: self.value})
        pattern = f"%{_escape_like(str(self.value).lower())}%"
        if m is Modifier.INCLUDES:
            return FilterClause(f"LOWER({expr}) LIKE :{v} ESCAPE '\\'", {v: pattern})
        return FilterClause(f"({expr} IS NULL OR LOWER({expr}) NOT LIKE :{v} ESCAPE '\\')", {v: pattern})


@dataclass(frozen=True)
class IdSet:
    id_expr: str
    ids: Sequence[str]
    exclude: bool = False

    def to_clause(self, names: ParamNames) -> FilterClause:
        ids = _dedupe(self.ids)
        if not ids:
            return FilterClause("1 = 1" if self.exclude else "1 = 0")
        in_list, params = names.bind_list(ids, "id")
        op = "NOT IN" if self.exclude else "IN"
        return FilterClause(f"{self.id_expr} {op} ({in_list})", params)


@dataclass(frozen=True)
class Search:
    """Case-insensitive substring match across several columns."""
    columns: Sequence[str]
    text: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        v = names.new("q")
        pattern = f"%{_escape_like(self.text.strip().lower())}%"
        ors = " OR ".join(f"LOWER({c}) LIKE :{v} ESCAPE '\\'" for c in self.columns)
        return FilterClause(f"({ors})", {v: pattern})


@dataclass(frozen=True)
class ExcludedIdChunks:
    """Ad-hoc exclusion list applied as bounded NOT IN chunks, ANDed together."""
    id_expr: str
    ids: Sequence[str]
    chunk_limit: int
    max_chunks: int

    def to_clause(self, names: ParamNames) -> FilterClause:
        ids = _dedupe(self.ids)
        capacity = self.chunk_limit * self.max_chunks
        if len(ids) > capacity:
            raise ExclusionLimitError(
                f"{len(ids)} excluded IDs exceed the inline capacity of {capacity} "
                f"({self.max_chunks} chunks of {self.chunk_limit}); persist them as user exclusions instead",
                field="excluded_ids",
            )
        if not ids:
            return FilterClause("1 = 1")
        parts, params = [], {}
        for start in range(0, len(ids), self.chunk_limit):
            in_list, chunk_params = names.bind_list(ids[start:start + self.chunk_limit], "ex")
            parts.append(f"{self.id_expr} NOT IN ({in_list})")
            params.update(chunk_params)
        return FilterClause(" AND ".join(parts), params)


@dataclass(frozen=True)
class PersistedExclusion:
    """Anti-join against the user's materialized exclusion set; no size limit."""
    id_expr: str
    entity_type: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        t = names.new("etype")
        return FilterClause(
            f"NOT EXISTS (SELECT 1 FROM user_excluded_entities ue WHERE ue.user_id = :user_id "
            f"AND ue.entity_type = :{t} AND ue.entity_id = {self.id_expr})",
            {t: self.entity_type},
        )


@dataclass(frozen=True)
class Raw:
    """A fixed predicate with no parameters, such as the tombstone filter."""
    sql: str

    def to_clause(self, names: ParamNames) -> FilterClause:
        return FilterClause(self.sql)


def combine(filters, names: ParamNames) -> FilterClause:
    """AND every clause together in order; parameters are merged."""
    parts, params = [], {}
    for f in filters:
        clause = f.to_clause(names)
        parts.append(f"({clause.sql})")
        params.update(clause.params)
    return FilterClause(" AND ".join(parts) if parts else "1 = 1", params)
