"""
relation_populator.py

Hydrates a page of query rows with their related entities using one batched
lookup per relation, keyed by the page's IDs. Tombstoned related rows and
related rows excluded for the user are left out.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from catalog_mirror.models import ENTITY_MODELS, RELATIONS, EntityType, RelationSpec, live_sql
from catalog_mirror.services.filters import ParamNames

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = {
    EntityType.PERFORMER: ["name", "disambiguation", "gender", "image_path", "favorite"],
    EntityType.TAG: ["name", "image_path", "favorite"],
    EntityType.STUDIO: ["name", "parent_id", "image_path", "favorite"],
    EntityType.GROUP: ["name", "date", "front_image_path"],
    EntityType.GALLERY: ["title", "date", "cover_path", "image_count"],
}

LOOKUP_CHUNK = 500


class RelationPopulator:
    def __init__(self, chunk_size: int = LOOKUP_CHUNK):
        self.chunk_size = chunk_size

    def populate(self, db: Session, entity_type, rows: List[Dict[str, Any]], user_id: Optional[int] = None) -> None:
        """Attach related entities to `rows` in place."""
        entity_type = EntityType.parse(entity_type)
        if not rows:
            return
        for spec in RELATIONS[entity_type].values():
            if spec.via_column:
                self._populate_single(db, spec, rows, user_id)
            else:
                self._populate_many(db, spec, rows, user_id)

    def _visible(self, alias: str, related_type: EntityType, user_id: Optional[int], params: Dict[str, Any]) -> str:
        clause = live_sql(alias)
        if user_id is not None:
            params["user_id"] = user_id
            params["rel_type"] = related_type.value
            clause += (
                f" AND NOT EXISTS (SELECT 1 FROM user_excluded_entities ue WHERE ue.user_id = :user_id "
                f"AND ue.entity_type = :rel_type AND ue.entity_id = {alias}.id)"
            )
        return clause

    def _summary_select(self, related_type: EntityType, alias: str) -> str:
        return ", ".join([f"{alias}.id"] + [f"{alias}.{c}" for c in SUMMARY_COLUMNS[related_type]])

    def _summary(self, related_type: EntityType, mapping) -> Dict[str, Any]:
        out = {"id": mapping["id"]}
        for c in SUMMARY_COLUMNS[related_type]:
            value = mapping[c]
            out[c] = bool(value) if c == "favorite" and value is not None else value
        return out

    def _populate_single(self, db: Session, spec: RelationSpec, rows: List[Dict[str, Any]], user_id) -> None:
        key = spec.hydrate_key
        wanted = sorted({str(r[spec.related_col]) for r in rows if r.get(spec.related_col)})
        found: Dict[str, Dict[str, Any]] = {}
        related_table = ENTITY_MODELS[spec.related_type].__tablename__
        for start in range(0, len(wanted), self.chunk_size):
            names = ParamNames()
            in_list, params = names.bind_list(wanted[start:start + self.chunk_size], "rid")
            sql = (
                f"SELECT {self._summary_select(spec.related_type, 'e')} FROM {related_table} e "
                f"WHERE e.id IN ({in_list}) AND {self._visible('e', spec.related_type, user_id, params)}"
            )
            for row in db.execute(text(sql), params):
                found[row._mapping["id"]] = self._summary(spec.related_type, row._mapping)
        for r in rows:
            r[key] = found.get(str(r[spec.related_col])) if r.get(spec.related_col) else None

    def _populate_many(self, db: Session, spec: RelationSpec, rows: List[Dict[str, Any]], user_id) -> None:
        parent_ids = [str(r["id"]) for r in rows]
        related: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        related_table = ENTITY_MODELS[spec.related_type].__tablename__
        extras = "".join(f", j.{c}" for c in spec.extra_cols)
        order = ", ".join([f"j.{c}" for c in spec.extra_cols] + ["e.id"])
        for start in range(0, len(parent_ids), self.chunk_size):
            names = ParamNames()
            in_list, params = names.bind_list(parent_ids[start:start + self.chunk_size], "pid")
            sql = (
                f"SELECT j.{spec.parent_col} AS parent_id{extras}, {self._summary_select(spec.related_type, 'e')} "
                f"FROM {spec.table} j JOIN {related_table} e ON e.id = j.{spec.related_col} "
                f"WHERE j.{spec.parent_col} IN ({in_list}) "
                f"AND {self._visible('e', spec.related_type, user_id, params)} "
                f"ORDER BY {order}"
            )
            for row in db.execute(text(sql), params):
                m = row._mapping
                item = self._summary(spec.related_type, m)
                for c in spec.extra_cols:
                    item[c] = m[c]
                related[m["parent_id"]].append(item)
        for r in rows:
            r[spec.hydrate_key] = related.get(str(r["id"]), [])
