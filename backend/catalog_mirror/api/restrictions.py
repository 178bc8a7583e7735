"""
restrictions.py

Per-user visibility rules, hidden entities and the resulting exclusion sets.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from catalog_mirror.core.database import get_db
from catalog_mirror.schemas import (
    ExclusionSummary,
    HiddenEntitySchema,
    RestrictionSchema,
    RestrictionUpdate,
)
from catalog_mirror.services.exclusion_service import ExclusionService, exclusion_service
from catalog_mirror.services.restriction_service import (
    RestrictionService,
    parse_entity_type,
    restriction_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_restriction_service() -> RestrictionService:
    return restriction_service


def get_exclusion_service() -> ExclusionService:
    return exclusion_service


@router.get("/{user_id}/restrictions", response_model=List[RestrictionSchema])
def list_restrictions(user_id: int, db: Session = Depends(get_db),
                      service: RestrictionService = Depends(get_restriction_service)):
    return service.get_restrictions(db, user_id)


@router.put("/{user_id}/restrictions/{entity_type}", response_model=RestrictionSchema)
def put_restriction(user_id: int, entity_type: str, body: RestrictionUpdate,
                    service: RestrictionService = Depends(get_restriction_service)):
    """Replace the rule for one entity type; exclusions are recomputed before this returns."""
    return service.set_restriction(user_id, entity_type, body.mode, body.ids, body.restrict_empty)


@router.delete("/{user_id}/restrictions/{entity_type}")
def delete_restriction(user_id: int, entity_type: str,
                       service: RestrictionService = Depends(get_restriction_service)):
    removed = service.clear_restriction(user_id, entity_type)
    return {"removed": removed, "entity_type": parse_entity_type(entity_type).value}


@router.get("/{user_id}/hidden", response_model=List[HiddenEntitySchema])
def list_hidden(user_id: int, entity_type: Optional[str] = None, db: Session = Depends(get_db),
                service: RestrictionService = Depends(get_restriction_service)):
    return service.list_hidden(db, user_id, entity_type)


@router.post("/{user_id}/hidden/{entity_type}/{entity_id}")
def hide_entity(user_id: int, entity_type: str, entity_id: str,
                service: RestrictionService = Depends(get_restriction_service)):
    created = service.hide_entity(user_id, entity_type, entity_id)
    return {"hidden": True, "created": created}


@router.delete("/{user_id}/hidden/{entity_type}/{entity_id}")
def unhide_entity(user_id: int, entity_type: str, entity_id: str,
                  service: RestrictionService = Depends(get_restriction_service)):
    removed = service.unhide_entity(user_id, entity_type, entity_id)
    return {"hidden": False, "removed": removed}


@router.get("/{user_id}/exclusions", response_model=ExclusionSummary)
def exclusion_summary(user_id: int, db: Session = Depends(get_db),
                      service: ExclusionService = Depends(get_exclusion_service)):
    return ExclusionSummary(user_id=user_id, counts=service.get_exclusion_counts(db, user_id))


@router.post("/{user_id}/exclusions/recompute")
def recompute_exclusions(user_id: int, service: ExclusionService = Depends(get_exclusion_service)):
    result = service.recompute_for_user(user_id)
    return {"user_id": user_id, "counts": result.counts, "coalesced": result.coalesced}
