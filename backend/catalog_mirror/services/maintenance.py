"""
maintenance.py

Physical removal of tombstoned rows once they are past the retention window.
Junction rows go with their parent through ON DELETE CASCADE.
"""
import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, select

from catalog_mirror.core.config import settings
from catalog_mirror.core.database import SessionLocal
from catalog_mirror.models import ENTITY_MODELS, EntityType, UserExcludedEntity
from catalog_mirror.utils.timezone import days_ago

logger = logging.getLogger(__name__)


def purge_tombstones(
    entity_type,
    older_than_days: Optional[int] = None,
    session_factory=SessionLocal,
    chunk_size: Optional[int] = None,
) -> int:
    """Delete rows of `entity_type` tombstoned more than `older_than_days` ago.

    Works in chunks, committing each, and returns the number of rows removed.
    """
    entity_type = EntityType.parse(entity_type)
    days = settings.tombstone_retention_days if older_than_days is None else older_than_days
    if days < 0:
        raise ValueError("older_than_days must be >= 0")
    chunk_size = chunk_size or settings.reconcile_chunk_size
    model = ENTITY_MODELS[entity_type]
    cutoff = days_ago(days)

    purged = 0
    db = session_factory()
    try:
        while True:
            ids = db.execute(
                select(model.id)
                .where(model.deleted_at.is_not(None), model.deleted_at < cutoff)
                .order_by(model.id)
                .limit(chunk_size)
            ).scalars().all()
            if not ids:
                break
            db.execute(delete(model).where(model.id.in_(ids)))
            db.execute(
                delete(UserExcludedEntity).where(
                    UserExcludedEntity.entity_type == entity_type.value,
                    UserExcludedEntity.entity_id.in_(ids),
                )
            )
            db.commit()
            purged += len(ids)
    except Exception as e:
        db.rollback()
        logger.error(f"[Maintenance] Purge of {entity_type.value} tombstones failed after {purged} rows: {e}")
        raise
    finally:
        db.close()

    if purged:
        logger.info(f"[Maintenance] Purged {purged} {entity_type.value} tombstones older than {days} days")
    return purged


def purge_all_tombstones(entity_types: Iterable = None, older_than_days: Optional[int] = None,
                         session_factory=SessionLocal) -> Dict[str, int]:
    return {
        EntityType.parse(t).value: purge_tombstones(t, older_than_days, session_factory=session_factory)
        for t in (entity_types or list(EntityType))
    }
