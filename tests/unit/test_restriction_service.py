import pytest

from catalog_mirror.errors import RestrictionError
from catalog_mirror.models import EntityType
from catalog_mirror.services.exclusion_service import ExclusionService
from catalog_mirror.services.restriction_service import RestrictionService, parse_entity_type, parse_mode

from conftest import add_entity, add_user


@pytest.fixture
def service(db, session_factory):
    add_user(db, 1)
    for tid in ("1", "2"):
        add_entity(db, "tag", tid)
    db.commit()
    return RestrictionService(ExclusionService(session_factory, hide_empty=False))


def test_parsers():
    assert parse_entity_type("Galleries") is EntityType.GALLERY
    assert parse_mode("include").value == "INCLUDE"
    with pytest.raises(RestrictionError):
        parse_entity_type("planets")
    with pytest.raises(RestrictionError):
        parse_mode("MAYBE")


def test_set_replaces_rule(service, db):
    first = service.set_restriction(1, "tag", "EXCLUDE", ["2", "1", "1"])
    assert first["ids"] == ["1", "2"]
    assert first["mode"] == "EXCLUDE"

    second = service.set_restriction(1, "tags", "INCLUDE", ["2"], restrict_empty=True)
    assert second["ids"] == ["2"]
    assert second["restrict_empty"] is True

    rules = service.get_restrictions(db, 1)
    assert len(rules) == 1
    assert rules[0]["mode"] == "INCLUDE"


def test_unknown_user_is_rejected(service):
    with pytest.raises(RestrictionError):
        service.set_restriction(99, "tag", "EXCLUDE", ["1"])
    with pytest.raises(RestrictionError):
        service.hide_entity(99, "tag", "1")


def test_ids_must_be_a_list(service):
    with pytest.raises(RestrictionError):
        service.set_restriction(1, "tag", "EXCLUDE", "1")


def test_clear_restriction(service, db):
    service.set_restriction(1, "tag", "EXCLUDE", ["1"])
    assert service.clear_restriction(1, "tag") is True
    assert service.clear_restriction(1, "tag") is False
    assert service.get_restrictions(db, 1) == []
    assert service.exclusions.get_exclusion_counts(db, 1) == {}
