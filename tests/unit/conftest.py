import os

# Must be set before catalog_mirror.core.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from catalog_mirror.core.database import build_engine, init_db
from catalog_mirror.models import (
    ENTITY_MODELS,
    Base,
    EntityType,
    User,
    UserRating,
)
from catalog_mirror.services.stash_client import RemoteEntity, RemotePage
from catalog_mirror.utils.timezone import utc_now


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# --- Seeding helpers ---------------------------------------------------------

def add_entity(db, entity_type, entity_id: str, deleted: bool = False, **fields):
    model = ENTITY_MODELS[EntityType.parse(entity_type)]
    columns = model.__table__.c
    if "name" in columns and "name" not in fields:
        fields["name"] = f"{entity_type}-{entity_id}"
    row = model(id=str(entity_id), synced_at=utc_now(), **fields)
    if deleted:
        row.tombstone()
    db.add(row)
    return row


def link(db, parent_type, relation: str, parent_id: str, related_ids: List[str], **extra):
    from catalog_mirror.models import RELATIONS

    spec = RELATIONS[EntityType.parse(parent_type)][relation]
    table = Base.metadata.tables[spec.table]
    for related_id in related_ids:
        db.execute(table.insert().values({spec.parent_col: parent_id, spec.related_col: related_id, **extra}))


def add_user(db, user_id: int = 1, username: Optional[str] = None, is_admin: bool = False):
    user = User(id=user_id, username=username or f"user{user_id}", is_admin=is_admin)
    db.add(user)
    return user


def rate(db, user_id: int, entity_type, entity_id: str, rating: Optional[int] = None, favorite: bool = False):
    db.add(
        UserRating(
            user_id=user_id,
            entity_type=EntityType.parse(entity_type).value,
            entity_id=entity_id,
            rating=rating,
            favorite=favorite,
        )
    )


# --- Remote catalog fake -----------------------------------------------------

class FakeStashClient:
    """In-memory remote listing with the StashClient listing interface."""

    instance_id = "http://stash.test"

    def __init__(self, entities: Dict[EntityType, List[RemoteEntity]] = None, fail_on_page: Optional[int] = None,
                 error: Exception = None):
        self.entities = {EntityType.parse(k): list(v) for k, v in (entities or {}).items()}
        self.fail_on_page = fail_on_page
        self.error = error
        self.calls = []
        self.id_calls = []
        self.id_total_override = None

    def set(self, entity_type, items: List[RemoteEntity]):
        self.entities[EntityType.parse(entity_type)] = list(items)

    def _items(self, entity_type, updated_since=None):
        items = sorted(self.entities.get(EntityType.parse(entity_type), []), key=lambda e: int(e.id))
        if updated_since is not None:
            items = [
                e for e in items
                if e.fields.get("remote_updated_at") and e.fields["remote_updated_at"] > updated_since
            ]
        return items

    async def list_entities(self, entity_type, page, per_page, updated_since=None):
        self.calls.append({"entity_type": entity_type, "page": page, "per_page": per_page, "updated_since": updated_since})
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise self.error
        items = self._items(entity_type, updated_since)
        start = (page - 1) * per_page
        return RemotePage(items=items[start:start + per_page], total_count=len(items))

    async def list_ids(self, entity_type, page, per_page):
        self.id_calls.append({"entity_type": entity_type, "page": page, "per_page": per_page})
        ids = [e.id for e in self._items(entity_type)]
        start = (page - 1) * per_page
        total = self.id_total_override if self.id_total_override is not None else len(ids)
        return RemotePage(items=ids[start:start + per_page], total_count=total)


def remote_scene(scene_id, title=None, performers=None, tags=None, groups=None, studio_id=None, **fields):
    relations = {}
    if performers is not None:
        relations["performers"] = list(performers)
    if tags is not None:
        relations["tags"] = list(tags)
    if groups is not None:
        relations["groups"] = list(groups)
    return RemoteEntity(
        id=str(scene_id),
        fields={"title": title or f"Scene {scene_id}", "studio_id": studio_id, **fields},
        relations=relations,
    )
