"""
library.py

Paginated library queries and single-entity lookups.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from catalog_mirror.core.database import get_db
from catalog_mirror.errors import QueryValidationError
from catalog_mirror.models import EntityType
from catalog_mirror.schemas import LibraryPage, LibraryQuery
from catalog_mirror.services.query_builder import QueryBuilder, QueryOptions

router = APIRouter()
logger = logging.getLogger(__name__)


def _entity_type(value: str) -> EntityType:
    try:
        return EntityType.parse(value)
    except ValueError as e:
        raise QueryValidationError(str(e), field="entity_type") from None


@router.post("/{entity_type}/query", response_model=LibraryPage)
def query_library(entity_type: str, body: LibraryQuery, db: Session = Depends(get_db)):
    """Filtered, sorted page of one entity type for a user."""
    builder = QueryBuilder(_entity_type(entity_type))
    result = builder.execute(
        db,
        QueryOptions(
            user_id=body.user_id,
            filters=body.filters,
            excluded_ids=body.excluded_ids,
            sort=body.sort,
            direction=body.direction,
            page=body.page,
            per_page=body.per_page,
            random_seed=body.random_seed,
            q=body.q,
            include_deleted=body.include_deleted,
        ),
    )
    return LibraryPage(
        entities=result.entities,
        total=result.total,
        page=result.page,
        per_page=result.per_page,
        total_pages=result.total_pages,
        random_seed=result.random_seed,
    )


@router.get("/{entity_type}/{entity_id}")
def get_entity(entity_type: str, entity_id: str, user_id: Optional[int] = None, db: Session = Depends(get_db)):
    entity = QueryBuilder(_entity_type(entity_type)).get_one(db, entity_id, user_id=user_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"{entity_type} {entity_id} not found")
    return entity
