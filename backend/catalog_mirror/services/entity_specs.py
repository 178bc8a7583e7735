"""
entity_specs.py

Per-type query definitions: the table alias, overlay joins, output columns,
the fixed filter vocabulary and the sort map. The query builder is generic and
reads everything type-specific from here.
"""
import enum
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from catalog_mirror.models import ENTITY_MODELS, RELATIONS, EntityType


class FilterKind(str, enum.Enum):
    RELATION = "relation"
    RANGE = "range"
    BOOL = "bool"
    TEXT = "text"


@dataclass(frozen=True)
class FilterDef:
    kind: FilterKind
    expr: str = ""  # SQL expression for range/bool/text filters
    relation: str = ""  # RELATIONS key for relation filters


@dataclass
class EntitySpec:
    entity_type: EntityType
    table: str
    alias: str
    joins: List[str]
    columns: List[Tuple[str, str]]  # (output name, SQL expression)
    filters: Dict[str, FilterDef]
    sorts: Dict[str, str]
    search_columns: List[str]
    default_sort: str = "created_at"
    relations: Dict = field(default_factory=dict)

    @property
    def id_expr(self) -> str:
        return f"{self.alias}.id"

    def select_list(self) -> str:
        return ", ".join(
            expr if expr == f"{self.alias}.{name}" else f"{expr} AS {name}"
            for name, expr in self.columns
        )


def _rating_join(entity_type: EntityType, alias: str) -> str:
    return (
        f"LEFT JOIN user_ratings r ON r.user_id = :user_id "
        f"AND r.entity_type = '{entity_type.value}' AND r.entity_id = {alias}.id"
    )


def _count_expr(entity_type: EntityType, relation: str, alias: str) -> str:
    rel = RELATIONS[entity_type][relation]
    return f"(SELECT COUNT(*) FROM {rel.table} jc WHERE jc.{rel.parent_col} = {alias}.id)"


def _build(entity_type: EntityType, alias: str, overrides: Dict[str, str], extra_columns: Dict[str, str],
           extra_joins: List[str], filters: Dict[str, FilterDef], sorts: Dict[str, str],
           search_columns: List[str], default_sort: str = "created_at") -> EntitySpec:
    model = ENTITY_MODELS[entity_type]
    a = alias
    columns = []
    for col in model.__table__.columns:
        columns.append((col.name, overrides.get(col.name, f"{a}.{col.name}")))
    columns.append(("rating", f"COALESCE(r.rating, {a}.rating100)" if "rating100" in model.__table__.c else "r.rating"))
    columns.append(("user_rating", "r.rating"))
    if "favorite" not in overrides:
        columns.append(("favorite", "COALESCE(r.favorite, FALSE)"))
    columns.extend(extra_columns.items())

    rating_expr = dict(columns)["rating"]
    favorite_expr = dict(columns)["favorite"]

    base_filters = {
        "rating": FilterDef(FilterKind.RANGE, rating_expr),
        "rating100": FilterDef(FilterKind.RANGE, rating_expr),
        "favorite": FilterDef(FilterKind.BOOL, favorite_expr),
    }
    for name in RELATIONS[entity_type]:
        base_filters[name] = FilterDef(FilterKind.RELATION, relation=name)
    base_filters.update(filters)

    base_sorts = {
        "id": f"CAST({a}.id AS BIGINT)",
        "created_at": f"{a}.remote_created_at",
        "updated_at": f"{a}.remote_updated_at",
        "rating": rating_expr,
    }
    base_sorts.update(sorts)

    return EntitySpec(
        entity_type=entity_type,
        table=model.__tablename__,
        alias=a,
        joins=[_rating_join(entity_type, a)] + extra_joins,
        columns=columns,
        filters=base_filters,
        sorts=base_sorts,
        search_columns=search_columns,
        default_sort=default_sort,
        relations=RELATIONS[entity_type],
    )


def _scene_spec() -> EntitySpec:
    t = EntityType.SCENE
    overrides = {
        "play_count": "COALESCE(w.play_count, s.play_count)",
        "play_duration": "COALESCE(w.play_duration, s.play_duration)",
        "o_counter": "COALESCE(w.o_count, s.o_counter)",
    }
    extra = {"resume_time": "w.resume_time", "last_played_at": "w.last_played_at"}
    filters = {
        "play_count": FilterDef(FilterKind.RANGE, overrides["play_count"]),
        "play_duration": FilterDef(FilterKind.RANGE, overrides["play_duration"]),
        "o_counter": FilterDef(FilterKind.RANGE, overrides["o_counter"]),
        "duration": FilterDef(FilterKind.RANGE, "s.duration"),
        "resolution": FilterDef(FilterKind.RANGE, "s.file_height"),
        "bitrate": FilterDef(FilterKind.RANGE, "s.file_bit_rate"),
        "framerate": FilterDef(FilterKind.RANGE, "s.file_frame_rate"),
        "file_size": FilterDef(FilterKind.RANGE, "s.file_size"),
        "performer_count": FilterDef(FilterKind.RANGE, _count_expr(t, "performers", "s")),
        "tag_count": FilterDef(FilterKind.RANGE, _count_expr(t, "tags", "s")),
        "organized": FilterDef(FilterKind.BOOL, "s.organized"),
        "title": FilterDef(FilterKind.TEXT, "s.title"),
        "code": FilterDef(FilterKind.TEXT, "s.code"),
        "details": FilterDef(FilterKind.TEXT, "s.details"),
        "path": FilterDef(FilterKind.TEXT, "s.file_path"),
        "video_codec": FilterDef(FilterKind.TEXT, "s.file_video_codec"),
        "audio_codec": FilterDef(FilterKind.TEXT, "s.file_audio_codec"),
        "date": FilterDef(FilterKind.TEXT, "s.date"),
    }
    sorts = {
        "title": "LOWER(s.title)",
        "date": "s.date",
        "duration": "s.duration",
        "play_count": overrides["play_count"],
        "play_duration": overrides["play_duration"],
        "o_counter": overrides["o_counter"],
        "last_played_at": "w.last_played_at",
        "filesize": "s.file_size",
        "bitrate": "s.file_bit_rate",
        "resolution": "s.file_height",
        "performer_count": _count_expr(t, "performers", "s"),
        "tag_count": _count_expr(t, "tags", "s"),
    }
    joins = ["LEFT JOIN watch_history w ON w.user_id = :user_id AND w.scene_id = s.id"]
    return _build(t, "s", overrides, extra, joins, filters, sorts, ["s.title", "s.details", "s.code", "s.file_path"])


def _performer_spec() -> EntitySpec:
    t = EntityType.PERFORMER
    overrides = {"favorite": "COALESCE(r.favorite, p.favorite)"}
    filters = {
        "name": FilterDef(FilterKind.TEXT, "p.name"),
        "gender": FilterDef(FilterKind.TEXT, "p.gender"),
        "country": FilterDef(FilterKind.TEXT, "p.country"),
        "scene_count": FilterDef(FilterKind.RANGE, "p.scene_count"),
        "image_count": FilterDef(FilterKind.RANGE, "p.image_count"),
        "gallery_count": FilterDef(FilterKind.RANGE, "p.gallery_count"),
        "tag_count": FilterDef(FilterKind.RANGE, _count_expr(t, "tags", "p")),
    }
    sorts = {
        "name": "LOWER(p.name)",
        "scene_count": "p.scene_count",
        "image_count": "p.image_count",
        "birthdate": "p.birthdate",
    }
    return _build(t, "p", overrides, {}, [], filters, sorts, ["p.name", "p.disambiguation", "p.alias_list"], "name")


def _studio_spec() -> EntitySpec:
    t = EntityType.STUDIO
    overrides = {"favorite": "COALESCE(r.favorite, st.favorite)"}
    filters = {
        "name": FilterDef(FilterKind.TEXT, "st.name"),
        "scene_count": FilterDef(FilterKind.RANGE, "st.scene_count"),
        "tag_count": FilterDef(FilterKind.RANGE, _count_expr(t, "tags", "st")),
    }
    sorts = {"name": "LOWER(st.name)", "scene_count": "st.scene_count"}
    return _build(t, "st", overrides, {}, [], filters, sorts, ["st.name", "st.details"], "name")


def _tag_spec() -> EntitySpec:
    t = EntityType.TAG
    overrides = {"favorite": "COALESCE(r.favorite, tg.favorite)"}
    filters = {
        "name": FilterDef(FilterKind.TEXT, "tg.name"),
        "scene_count": FilterDef(FilterKind.RANGE, "tg.scene_count"),
        "performer_count": FilterDef(FilterKind.RANGE, "tg.performer_count"),
    }
    sorts = {"name": "LOWER(tg.name)", "scene_count": "tg.scene_count", "performer_count": "tg.performer_count"}
    return _build(t, "tg", overrides, {}, [], filters, sorts, ["tg.name", "tg.description"], "name")


def _group_spec() -> EntitySpec:
    t = EntityType.GROUP
    filters = {
        "name": FilterDef(FilterKind.TEXT, "g.name"),
        "director": FilterDef(FilterKind.TEXT, "g.director"),
        "duration": FilterDef(FilterKind.RANGE, "g.duration"),
        "scene_count": FilterDef(FilterKind.RANGE, "g.scene_count"),
    }
    sorts = {"name": "LOWER(g.name)", "date": "g.date", "duration": "g.duration", "scene_count": "g.scene_count"}
    return _build(t, "g", {}, {}, [], filters, sorts, ["g.name", "g.synopsis", "g.director"], "name")


def _gallery_spec() -> EntitySpec:
    t = EntityType.GALLERY
    filters = {
        "title": FilterDef(FilterKind.TEXT, "ga.title"),
        "path": FilterDef(FilterKind.TEXT, "ga.folder_path"),
        "image_count": FilterDef(FilterKind.RANGE, "ga.image_count"),
        "organized": FilterDef(FilterKind.BOOL, "ga.organized"),
        "performer_count": FilterDef(FilterKind.RANGE, _count_expr(t, "performers", "ga")),
        "tag_count": FilterDef(FilterKind.RANGE, _count_expr(t, "tags", "ga")),
    }
    sorts = {"title": "LOWER(ga.title)", "date": "ga.date", "image_count": "ga.image_count"}
    return _build(t, "ga", {}, {}, [], filters, sorts, ["ga.title", "ga.details", "ga.folder_path"])


def _image_spec() -> EntitySpec:
    t = EntityType.IMAGE
    overrides = {"o_counter": "COALESCE(v.o_count, i.o_counter)"}
    extra = {"view_count": "COALESCE(v.view_count, 0)", "last_viewed_at": "v.last_viewed_at"}
    filters = {
        "title": FilterDef(FilterKind.TEXT, "i.title"),
        "path": FilterDef(FilterKind.TEXT, "i.file_path"),
        "o_counter": FilterDef(FilterKind.RANGE, overrides["o_counter"]),
        "view_count": FilterDef(FilterKind.RANGE, extra["view_count"]),
        "resolution": FilterDef(FilterKind.RANGE, "i.height"),
        "organized": FilterDef(FilterKind.BOOL, "i.organized"),
        "performer_count": FilterDef(FilterKind.RANGE, _count_expr(t, "performers", "i")),
        "tag_count": FilterDef(FilterKind.RANGE, _count_expr(t, "tags", "i")),
    }
    sorts = {
        "title": "LOWER(i.title)",
        "date": "i.date",
        "o_counter": overrides["o_counter"],
        "view_count": extra["view_count"],
        "filesize": "i.file_size",
    }
    joins = ["LEFT JOIN image_view_history v ON v.user_id = :user_id AND v.image_id = i.id"]
    return _build(t, "i", overrides, extra, joins, filters, sorts, ["i.title", "i.file_path"])


ENTITY_SPECS: Dict[EntityType, EntitySpec] = {
    EntityType.SCENE: _scene_spec(),
    EntityType.PERFORMER: _performer_spec(),
    EntityType.STUDIO: _studio_spec(),
    EntityType.TAG: _tag_spec(),
    EntityType.GROUP: _group_spec(),
    EntityType.GALLERY: _gallery_spec(),
    EntityType.IMAGE: _image_spec(),
}


def get_spec(entity_type) -> EntitySpec:
    return ENTITY_SPECS[EntityType.parse(entity_type)]
