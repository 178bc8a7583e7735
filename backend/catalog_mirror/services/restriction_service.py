"""
restriction_service.py

Edits to a user's visibility rules and hidden entities. Every edit is
committed together with the recomputed exclusion set it implies.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from catalog_mirror.errors import RestrictionError
from catalog_mirror.models import (
    EntityType,
    RestrictionEntry,
    RestrictionMode,
    User,
    UserContentRestriction,
    UserHiddenEntity,
)
from catalog_mirror.services.exclusion_service import ExclusionService, exclusion_service
from catalog_mirror.utils.timezone import utc_now

logger = logging.getLogger(__name__)


def parse_entity_type(value) -> EntityType:
    try:
        return EntityType.parse(value)
    except ValueError as e:
        raise RestrictionError(str(e)) from None


def parse_mode(value) -> RestrictionMode:
    try:
        return RestrictionMode(str(value).upper())
    except ValueError:
        raise RestrictionError(f"Unknown restriction mode: {value!r} (expected INCLUDE or EXCLUDE)") from None


def _require_user(db: Session, user_id: int) -> None:
    if db.get(User, user_id) is None:
        raise RestrictionError(f"Unknown user: {user_id}")


def _rule_dict(db: Session, rule: UserContentRestriction) -> Dict[str, Any]:
    ids = [
        e.entity_id
        for e in db.query(RestrictionEntry)
        .filter(RestrictionEntry.restriction_id == rule.id)
        .order_by(RestrictionEntry.entity_id)
    ]
    return {
        "entity_type": rule.entity_type,
        "mode": rule.mode,
        "ids": ids,
        "restrict_empty": bool(rule.restrict_empty),
        "updated_at": rule.updated_at,
    }


class RestrictionService:
    def __init__(self, exclusions: Optional[ExclusionService] = None):
        self.exclusions = exclusions or exclusion_service

    def set_restriction(
        self,
        user_id: int,
        entity_type,
        mode,
        ids: Iterable[str],
        restrict_empty: bool = False,
    ) -> Dict[str, Any]:
        """Create or replace the user's rule for one entity type."""
        entity_type = parse_entity_type(entity_type)
        mode = parse_mode(mode)
        if ids is None or isinstance(ids, (str, bytes)):
            raise RestrictionError("ids must be a list of entity IDs")
        wanted = sorted({str(i) for i in ids})

        def mutate(db: Session) -> Dict[str, Any]:
            _require_user(db, user_id)
            rule = (
                db.query(UserContentRestriction)
                .filter(
                    UserContentRestriction.user_id == user_id,
                    UserContentRestriction.entity_type == entity_type.value,
                )
                .first()
            )
            if rule is None:
                rule = UserContentRestriction(user_id=user_id, entity_type=entity_type.value)
                db.add(rule)
            rule.mode = mode.value
            rule.restrict_empty = bool(restrict_empty)
            rule.updated_at = utc_now()
            db.flush()

            current = {
                e.entity_id: e
                for e in db.query(RestrictionEntry).filter(RestrictionEntry.restriction_id == rule.id)
            }
            for entity_id, entry in current.items():
                if entity_id not in wanted:
                    db.delete(entry)
            for entity_id in wanted:
                if entity_id not in current:
                    db.add(RestrictionEntry(restriction_id=rule.id, entity_id=entity_id))
            db.flush()
            return _rule_dict(db, rule)

        result = self.exclusions.apply_and_recompute(user_id, mutate)
        logger.info(
            f"[Restrictions] User {user_id} {entity_type.value}: {mode.value} {len(wanted)} IDs "
            f"(restrict_empty={bool(restrict_empty)})"
        )
        return result

    def clear_restriction(self, user_id: int, entity_type) -> bool:
        entity_type = parse_entity_type(entity_type)

        def mutate(db: Session) -> bool:
            rule = (
                db.query(UserContentRestriction)
                .filter(
                    UserContentRestriction.user_id == user_id,
                    UserContentRestriction.entity_type == entity_type.value,
                )
                .first()
            )
            if rule is None:
                return False
            db.query(RestrictionEntry).filter(RestrictionEntry.restriction_id == rule.id).delete()
            db.delete(rule)
            return True

        removed = self.exclusions.apply_and_recompute(user_id, mutate)
        if removed:
            logger.info(f"[Restrictions] Cleared {entity_type.value} rule for user {user_id}")
        return removed

    def get_restrictions(self, db: Session, user_id: int) -> List[Dict[str, Any]]:
        rules = (
            db.query(UserContentRestriction)
            .filter(UserContentRestriction.user_id == user_id)
            .order_by(UserContentRestriction.entity_type)
            .all()
        )
        return [_rule_dict(db, r) for r in rules]

    def hide_entity(self, user_id: int, entity_type, entity_id: str) -> bool:
        """Hide one entity; returns False if it was already hidden."""
        entity_type = parse_entity_type(entity_type)
        entity_id = str(entity_id)

        def mutate(db: Session) -> bool:
            _require_user(db, user_id)
            exists = (
                db.query(UserHiddenEntity)
                .filter(
                    UserHiddenEntity.user_id == user_id,
                    UserHiddenEntity.entity_type == entity_type.value,
                    UserHiddenEntity.entity_id == entity_id,
                )
                .first()
            )
            if exists is not None:
                return False
            db.add(UserHiddenEntity(user_id=user_id, entity_type=entity_type.value, entity_id=entity_id))
            return True

        return self.exclusions.apply_and_recompute(user_id, mutate)

    def unhide_entity(self, user_id: int, entity_type, entity_id: str) -> bool:
        entity_type = parse_entity_type(entity_type)
        entity_id = str(entity_id)

        def mutate(db: Session) -> bool:
            deleted = (
                db.query(UserHiddenEntity)
                .filter(
                    UserHiddenEntity.user_id == user_id,
                    UserHiddenEntity.entity_type == entity_type.value,
                    UserHiddenEntity.entity_id == entity_id,
                )
                .delete()
            )
            return deleted > 0

        return self.exclusions.apply_and_recompute(user_id, mutate)

    def list_hidden(self, db: Session, user_id: int, entity_type=None) -> List[Dict[str, Any]]:
        query = db.query(UserHiddenEntity).filter(UserHiddenEntity.user_id == user_id)
        if entity_type is not None:
            query = query.filter(UserHiddenEntity.entity_type == parse_entity_type(entity_type).value)
        return [
            {"entity_type": h.entity_type, "entity_id": h.entity_id, "hidden_at": h.hidden_at}
            for h in query.order_by(UserHiddenEntity.hidden_at)
        ]


restriction_service = RestrictionService()
