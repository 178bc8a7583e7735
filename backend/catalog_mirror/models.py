"""
models.py

SQLAlchemy models for the mirrored catalog: one table per entity type, junction
tables for every many-to-many relation, per-user overlay tables (ratings,
favorites, watch/view history), restriction rules, computed exclusions and
per-type sync state.

Relations are never serialized into the parent row; RELATIONS below describes
how each relation is reached so the query, sync and exclusion layers can all
address it through a subquery.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple, Type

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from catalog_mirror.utils.timezone import utc_now

Base = declarative_base()


class EntityType(str, enum.Enum):
    SCENE = "scene"
    PERFORMER = "performer"
    STUDIO = "studio"
    TAG = "tag"
    GROUP = "group"
    GALLERY = "gallery"
    IMAGE = "image"

    @classmethod
    def parse(cls, value) -> "EntityType":
        """Accept 'scene', 'scenes', 'Scenes' or an EntityType; raise ValueError otherwise."""
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        if raw == "galleries":
            raw = "gallery"
        elif raw.endswith("s"):
            raw = raw[:-1]
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown entity type: {value!r}") from None

    @property
    def plural(self) -> str:
        return "galleries" if self is EntityType.GALLERY else f"{self.value}s"


class EntityLifecycle(str, enum.Enum):
    ACTIVE = "active"
    TOMBSTONED = "tombstoned"


def live_sql(alias: str) -> str:
    """The one place the 'not tombstoned' predicate is spelled out for raw SQL."""
    return f"{alias}.deleted_at IS NULL"


class CachedEntityMixin:
    """Columns and lifecycle shared by every mirrored entity table."""

    id = Column(String, primary_key=True)  # remote ID, stable across syncs
    remote_created_at = Column(DateTime(timezone=True), nullable=True)
    remote_updated_at = Column(DateTime(timezone=True), nullable=True, index=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)

    @property
    def lifecycle(self) -> EntityLifecycle:
        return EntityLifecycle.ACTIVE if self.deleted_at is None else EntityLifecycle.TOMBSTONED

    def tombstone(self, when: Optional[datetime] = None) -> None:
        if self.deleted_at is None:
            self.deleted_at = when or utc_now()

    def revive(self) -> None:
        self.deleted_at = None

    @classmethod
    def live(cls):
        """ORM expression selecting active rows only."""
        return cls.deleted_at.is_(None)


# --- Entity tables -----------------------------------------------------------

class Scene(CachedEntityMixin, Base):
    __tablename__ = "scenes"
    title = Column(String, nullable=True)
    code = Column(String, nullable=True)
    date = Column(String, nullable=True, index=True)  # YYYY-MM-DD as delivered by the source
    details = Column(Text, nullable=True)
    studio_id = Column(String, nullable=True, index=True)
    rating100 = Column(Integer, nullable=True, index=True)
    duration = Column(Float, nullable=True, index=True)  # seconds
    organized = Column(Boolean, nullable=False, default=False)
    file_path = Column(String, nullable=True)
    file_bit_rate = Column(BigInteger, nullable=True)
    file_frame_rate = Column(Float, nullable=True)
    file_width = Column(Integer, nullable=True)
    file_height = Column(Integer, nullable=True)
    file_video_codec = Column(String, nullable=True)
    file_audio_codec = Column(String, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    path_screenshot = Column(String, nullable=True)
    path_preview = Column(String, nullable=True)
    path_stream = Column(String, nullable=True)
    o_counter = Column(Integer, nullable=False, default=0)
    play_count = Column(Integer, nullable=False, default=0)
    play_duration = Column(Float, nullable=False, default=0)


class Performer(CachedEntityMixin, Base):
    __tablename__ = "performers"
    name = Column(String, nullable=False, index=True)
    disambiguation = Column(String, nullable=True)
    gender = Column(String, nullable=True, index=True)
    birthdate = Column(String, nullable=True)
    country = Column(String, nullable=True)
    alias_list = Column(Text, nullable=True)  # display string, not a relation
    details = Column(Text, nullable=True)
    favorite = Column(Boolean, nullable=False, default=False)
    rating100 = Column(Integer, nullable=True, index=True)
    scene_count = Column(Integer, nullable=False, default=0)
    image_count = Column(Integer, nullable=False, default=0)
    gallery_count = Column(Integer, nullable=False, default=0)
    group_count = Column(Integer, nullable=False, default=0)
    image_path = Column(String, nullable=True)


class Studio(CachedEntityMixin, Base):
    __tablename__ = "studios"
    name = Column(String, nullable=False, index=True)
    parent_id = Column(String, nullable=True, index=True)
    details = Column(Text, nullable=True)
    url = Column(String, nullable=True)
    favorite = Column(Boolean, nullable=False, default=False)
    rating100 = Column(Integer, nullable=True)
    scene_count = Column(Integer, nullable=False, default=0)
    image_count = Column(Integer, nullable=False, default=0)
    gallery_count = Column(Integer, nullable=False, default=0)
    image_path = Column(String, nullable=True)


class Tag(CachedEntityMixin, Base):
    __tablename__ = "tags"
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    favorite = Column(Boolean, nullable=False, default=False)
    scene_count = Column(Integer, nullable=False, default=0)
    image_count = Column(Integer, nullable=False, default=0)
    gallery_count = Column(Integer, nullable=False, default=0)
    performer_count = Column(Integer, nullable=False, default=0)
    image_path = Column(String, nullable=True)


class Group(CachedEntityMixin, Base):
    __tablename__ = "groups"
    name = Column(String, nullable=False, index=True)
    date = Column(String, nullable=True)
    studio_id = Column(String, nullable=True, index=True)
    rating100 = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    director = Column(String, nullable=True)
    synopsis = Column(Text, nullable=True)
    scene_count = Column(Integer, nullable=False, default=0)
    front_image_path = Column(String, nullable=True)


class Gallery(CachedEntityMixin, Base):
    __tablename__ = "galleries"
    title = Column(String, nullable=True)
    code = Column(String, nullable=True)
    date = Column(String, nullable=True, index=True)
    details = Column(Text, nullable=True)
    studio_id = Column(String, nullable=True, index=True)
    rating100 = Column(Integer, nullable=True)
    organized = Column(Boolean, nullable=False, default=False)
    image_count = Column(Integer, nullable=False, default=0)
    folder_path = Column(String, nullable=True)
    cover_path = Column(String, nullable=True)


class Image(CachedEntityMixin, Base):
    __tablename__ = "images"
    title = Column(String, nullable=True)
    date = Column(String, nullable=True)
    studio_id = Column(String, nullable=True, index=True)
    rating100 = Column(Integer, nullable=True)
    o_counter = Column(Integer, nullable=False, default=0)
    organized = Column(Boolean, nullable=False, default=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    file_path = Column(String, nullable=True)
    path_thumbnail = Column(String, nullable=True)
    path_image = Column(String, nullable=True)


ENTITY_MODELS: Dict[EntityType, Type[CachedEntityMixin]] = {
    EntityType.SCENE: Scene,
    EntityType.PERFORMER: Performer,
    EntityType.STUDIO: Studio,
    EntityType.TAG: Tag,
    EntityType.GROUP: Group,
    EntityType.GALLERY: Gallery,
    EntityType.IMAGE: Image,
}


# --- Junction tables ---------------------------------------------------------
# Only the parent side carries a foreign key: related rows may arrive in a later
# sync pass than the rows that reference them.

class ScenePerformer(Base):
    __tablename__ = "scene_performers"
    scene_id = Column(String, ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    performer_id = Column(String, primary_key=True, index=True)


class SceneTag(Base):
    __tablename__ = "scene_tags"
    scene_id = Column(String, ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


class SceneGroup(Base):
    __tablename__ = "scene_groups"
    scene_id = Column(String, ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    group_id = Column(String, primary_key=True, index=True)
    scene_index = Column(Integer, nullable=True)


class SceneGallery(Base):
    __tablename__ = "scene_galleries"
    scene_id = Column(String, ForeignKey("scenes.id", ondelete="CASCADE"), primary_key=True)
    gallery_id = Column(String, primary_key=True, index=True)


class ImagePerformer(Base):
    __tablename__ = "image_performers"
    image_id = Column(String, ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    performer_id = Column(String, primary_key=True, index=True)


class ImageTag(Base):
    __tablename__ = "image_tags"
    image_id = Column(String, ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


class ImageGallery(Base):
    __tablename__ = "image_galleries"
    image_id = Column(String, ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    gallery_id = Column(String, primary_key=True, index=True)


class GalleryPerformer(Base):
    __tablename__ = "gallery_performers"
    gallery_id = Column(String, ForeignKey("galleries.id", ondelete="CASCADE"), primary_key=True)
    performer_id = Column(String, primary_key=True, index=True)


class GalleryTag(Base):
    __tablename__ = "gallery_tags"
    gallery_id = Column(String, ForeignKey("galleries.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


class PerformerTag(Base):
    __tablename__ = "performer_tags"
    performer_id = Column(String, ForeignKey("performers.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


class StudioTag(Base):
    __tablename__ = "studio_tags"
    studio_id = Column(String, ForeignKey("studios.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


class GroupTag(Base):
    __tablename__ = "group_tags"
    group_id = Column(String, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String, primary_key=True, index=True)


@dataclass(frozen=True)
class RelationSpec:
    """How a parent entity reaches one kind of related entity.

    For junction relations `table` is the junction table. For `via_column`
    relations (studio) `table` is the parent table itself and `related_col`
    is the foreign-ID column on it.
    """
    name: str
    related_type: EntityType
    table: str
    parent_col: str
    related_col: str
    via_column: bool = False
    extra_cols: Tuple[str, ...] = ()

    @property
    def hydrate_key(self) -> str:
        # A scene has one studio but many performers
        return self.related_type.value if self.via_column else self.name


def _junction(name: str, related: EntityType, table: str, parent_col: str, related_col: str, extra=()) -> RelationSpec:
    return RelationSpec(name, related, table, parent_col, related_col, False, tuple(extra))


def _column(name: str, related: EntityType, table: str, related_col: str) -> RelationSpec:
    return RelationSpec(name, related, table, "id", related_col, True)


RELATIONS: Dict[EntityType, Dict[str, RelationSpec]] = {
    EntityType.SCENE: {
        "performers": _junction("performers", EntityType.PERFORMER, "scene_performers", "scene_id", "performer_id"),
        "tags": _junction("tags", EntityType.TAG, "scene_tags", "scene_id", "tag_id"),
        "groups": _junction("groups", EntityType.GROUP, "scene_groups", "scene_id", "group_id", ["scene_index"]),
        "galleries": _junction("galleries", EntityType.GALLERY, "scene_galleries", "scene_id", "gallery_id"),
        "studios": _column("studios", EntityType.STUDIO, "scenes", "studio_id"),
    },
    EntityType.IMAGE: {
        "performers": _junction("performers", EntityType.PERFORMER, "image_performers", "image_id", "performer_id"),
        "tags": _junction("tags", EntityType.TAG, "image_tags", "image_id", "tag_id"),
        "galleries": _junction("galleries", EntityType.GALLERY, "image_galleries", "image_id", "gallery_id"),
        "studios": _column("studios", EntityType.STUDIO, "images", "studio_id"),
    },
    EntityType.GALLERY: {
        "performers": _junction("performers", EntityType.PERFORMER, "gallery_performers", "gallery_id", "performer_id"),
        "tags": _junction("tags", EntityType.TAG, "gallery_tags", "gallery_id", "tag_id"),
        "studios": _column("studios", EntityType.STUDIO, "galleries", "studio_id"),
    },
    EntityType.GROUP: {
        "tags": _junction("tags", EntityType.TAG, "group_tags", "group_id", "tag_id"),
        "studios": _column("studios", EntityType.STUDIO, "groups", "studio_id"),
    },
    EntityType.PERFORMER: {
        "tags": _junction("tags", EntityType.TAG, "performer_tags", "performer_id", "tag_id"),
    },
    EntityType.STUDIO: {
        "tags": _junction("tags", EntityType.TAG, "studio_tags", "studio_id", "tag_id"),
    },
    EntityType.TAG: {},
}


# --- Users and overlay data --------------------------------------------------

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    # Admins see empty galleries, groups, studios, performers and tags
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class UserRating(Base):
    """Personal rating/favorite for any entity type; wins over the source rating."""
    __tablename__ = "user_ratings"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    rating = Column(Integer, nullable=True)  # 0-100
    favorite = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_rating"),
        Index("ix_user_ratings_entity", "entity_type", "entity_id"),
    )


class WatchHistory(Base):
    __tablename__ = "watch_history"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    scene_id = Column(String, nullable=False, index=True)
    play_count = Column(Integer, nullable=False, default=0)
    play_duration = Column(Float, nullable=False, default=0)
    resume_time = Column(Float, nullable=True)
    last_played_at = Column(DateTime(timezone=True), nullable=True)
    o_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("user_id", "scene_id", name="uq_watch_history"),)


class ImageViewHistory(Base):
    __tablename__ = "image_view_history"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    image_id = Column(String, nullable=False, index=True)
    view_count = Column(Integer, nullable=False, default=0)
    o_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("user_id", "image_id", name="uq_image_view_history"),)


# --- Visibility restrictions -------------------------------------------------

class RestrictionMode(str, enum.Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class ExclusionReason(str, enum.Enum):
    RESTRICTED = "restricted"
    HIDDEN = "hidden"
    CASCADE = "cascade"
    EMPTY = "empty"


class UserContentRestriction(Base):
    """One rule per user per entity type; the ID list lives in restriction_entries."""
    __tablename__ = "user_content_restrictions"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    mode = Column(String, nullable=False)
    restrict_empty = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (UniqueConstraint("user_id", "entity_type", name="uq_user_restriction_type"),)


class RestrictionEntry(Base):
    __tablename__ = "restriction_entries"
    restriction_id = Column(
        Integer, ForeignKey("user_content_restrictions.id", ondelete="CASCADE"), primary_key=True
    )
    entity_id = Column(String, primary_key=True)


class UserHiddenEntity(Base):
    __tablename__ = "user_hidden_entities"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    hidden_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_hidden_entity"),)


class UserExcludedEntity(Base):
    """Materialized exclusion set; written only by the exclusion service."""
    __tablename__ = "user_excluded_entities"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    reason = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", name="uq_user_excluded_entity"),
        Index("ix_user_excluded_lookup", "user_id", "entity_type", "entity_id"),
    )


# --- Sync bookkeeping --------------------------------------------------------

class SyncState(Base):
    __tablename__ = "sync_state"
    id = Column(Integer, primary_key=True)
    entity_type = Column(String, nullable=False)
    instance_id = Column(String, nullable=True)
    last_full_sync = Column(DateTime(timezone=True), nullable=True)
    last_incremental_sync = Column(DateTime(timezone=True), nullable=True)
    last_sync_count = Column(Integer, nullable=False, default=0)
    last_sync_duration_ms = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    total_entities = Column(Integer, nullable=False, default=0)
    phase = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (UniqueConstraint("entity_type", "instance_id", name="uq_sync_state_type_instance"),)
