import pytest

from catalog_mirror.errors import ExclusionLimitError, QueryValidationError
from catalog_mirror.models import UserExcludedEntity, WatchHistory
from catalog_mirror.services.query_builder import QueryBuilder, QueryOptions

from conftest import add_entity, add_user, link, rate


@pytest.fixture
def library(db):
    add_user(db, 1)
    add_user(db, 2)
    for pid in ("1", "2", "3"):
        add_entity(db, "performer", pid)
    add_entity(db, "studio", "10")
    add_entity(db, "studio", "11")
    add_entity(db, "scene", "1", title="Morning Run", studio_id="10", rating100=20)
    add_entity(db, "scene", "2", title="Evening Walk", studio_id="11", rating100=80)
    add_entity(db, "scene", "3", title="100% Pure_Fun", rating100=50)
    add_entity(db, "scene", "4", title="Group Hike", studio_id="10")
    add_entity(db, "scene", "5", title="Quiet Night", rating100=60)
    add_entity(db, "scene", "6", title="Removed", deleted=True)
    db.flush()
    link(db, "scene", "performers", "1", ["1", "2"])
    link(db, "scene", "performers", "2", ["1"])
    link(db, "scene", "performers", "3", ["2"])
    link(db, "scene", "performers", "4", ["1", "2", "3"])
    link(db, "scene", "performers", "6", ["1", "2"])
    rate(db, 1, "scene", "1", rating=90, favorite=True)
    db.commit()
    return db


def _ids(db, filters=None, **kwargs):
    result = QueryBuilder("scene").execute(db, QueryOptions(filters=filters or {}, sort="id", direction="ASC", **kwargs))
    return [e["id"] for e in result.entities]


def test_includes_all_requires_every_performer(library):
    assert _ids(library, {"performers": {"value": ["1", "2"], "modifier": "INCLUDES_ALL"}}) == ["1", "4"]


def test_includes_and_excludes(library):
    assert _ids(library, {"performers": ["1"]}) == ["1", "2", "4"]
    assert _ids(library, {"performers": {"value": ["1"], "modifier": "EXCLUDES"}}) == ["3", "5"]


def test_studio_filters_read_the_column(library):
    assert _ids(library, {"studios": {"value": ["10"], "modifier": "INCLUDES"}}) == ["1", "4"]
    assert _ids(library, {"studios": {"value": ["10", "11"], "modifier": "INCLUDES_ALL"}}) == []
    assert _ids(library, {"studios": {"value": ["10"], "modifier": "EXCLUDES"}}) == ["2", "3", "5"]


def test_tombstoned_rows_only_with_include_deleted(library):
    flt = {"performers": {"value": ["1", "2"], "modifier": "INCLUDES_ALL"}}
    assert "6" not in _ids(library, flt)
    assert _ids(library, flt, include_deleted=True) == ["1", "4", "6"]


def test_user_rating_overlays_source_rating(library):
    flt = {"rating": {"value": 85, "modifier": "GREATER_THAN"}}
    assert _ids(library, flt, user_id=1) == ["1"]
    assert _ids(library, flt) == []
    assert _ids(library, flt, user_id=2) == []

    result = QueryBuilder("scene").execute(library, QueryOptions(user_id=1, sort="rating", direction="DESC"))
    by_id = {e["id"]: e for e in result.entities}
    assert [e["id"] for e in result.entities[:2]] == ["1", "2"]
    assert by_id["1"]["rating"] == 90
    assert by_id["1"]["user_rating"] == 90
    assert by_id["1"]["favorite"] is True
    assert by_id["2"]["rating"] == 80
    assert by_id["2"]["user_rating"] is None


def test_favorite_filter_uses_user_overlay(library):
    assert _ids(library, {"favorite": True}, user_id=1) == ["1"]
    assert _ids(library, {"favorite": {"value": True, "modifier": "EQUALS"}}, user_id=2) == []


def test_watch_history_overlays_play_count(library):
    library.add(WatchHistory(user_id=1, scene_id="2", play_count=5, play_duration=120.0))
    library.commit()

    flt = {"play_count": {"value": 3, "modifier": "GREATER_THAN"}}
    assert _ids(library, flt, user_id=1) == ["2"]
    assert _ids(library, flt, user_id=2) == []


def test_range_between_and_null_modifiers(library):
    assert _ids(library, {"rating100": {"value": 50, "value2": 70, "modifier": "BETWEEN"}}) == ["3", "5"]
    assert _ids(library, {"rating100": {"value": 50, "value2": 70, "modifier": "NOT_BETWEEN"}}) == ["1", "2"]
    assert _ids(library, {"rating100": {"modifier": "IS_NULL"}}) == ["4"]


def test_relation_count_filter(library):
    assert _ids(library, {"performer_count": {"value": 1, "modifier": "GREATER_THAN"}}) == ["1", "4"]


def test_text_filter_escapes_wildcards(library):
    assert _ids(library, {"title": {"value": "_", "modifier": "INCLUDES"}}) == ["3"]
    assert _ids(library, q="100%") == ["3"]
    assert _ids(library, q="  night ") == ["5"]


def test_ids_filter(library):
    assert _ids(library, {"ids": ["5", "2", "404"]}) == ["2", "5"]
    assert _ids(library, {"ids": {"value": ["1"], "modifier": "EXCLUDES"}}) == ["2", "3", "4", "5"]


def test_persisted_exclusions_apply_per_user(library):
    library.add(UserExcludedEntity(user_id=1, entity_type="scene", entity_id="2", reason="restricted"))
    library.commit()

    result = QueryBuilder("scene").execute(library, QueryOptions(user_id=1))
    assert "2" not in [e["id"] for e in result.entities]
    assert result.total == 4
    assert "2" in _ids(library, user_id=2)
    assert "2" in _ids(library, user_id=1, apply_exclusions=False)


def test_adhoc_exclusions_are_chunked(library):
    builder = QueryBuilder("scene", chunk_limit=2, max_chunks=2)
    result = builder.execute(library, QueryOptions(excluded_ids=["1", "2", "3"], sort="id", direction="ASC"))
    assert [e["id"] for e in result.entities] == ["4", "5"]

    built = builder.build(QueryOptions(excluded_ids=["1", "2", "3"]))
    assert built.count_sql.count("NOT IN") == 2

    with pytest.raises(ExclusionLimitError):
        builder.build(QueryOptions(excluded_ids=["1", "2", "3", "4", "5"]))


def test_adhoc_exclusions_by_type_mapping(library):
    assert _ids(library, excluded_ids={"scenes": ["1"], "performers": ["2"]}) == ["2", "3", "4", "5"]
    with pytest.raises(QueryValidationError):
        _ids(library, excluded_ids={"planets": ["1"]})


@pytest.mark.parametrize(
    "options",
    [
        QueryOptions(filters={"nope": {"value": 1}}),
        QueryOptions(filters={"rating": {"value": 1, "modifier": "ROUGHLY"}}),
        QueryOptions(filters={"rating": {"value": 1, "modifier": "INCLUDES_ALL"}}),
        QueryOptions(filters={"rating": {"value": 1, "modifier": "BETWEEN"}}),
        QueryOptions(filters={"rating": {"value": "high"}}),
        QueryOptions(filters={"rating": {"value": 1, "extra": True}}),
        QueryOptions(filters={"performers": {"value": [], "modifier": "INCLUDES"}}),
        QueryOptions(filters={"organized": {"value": "yes"}}),
        QueryOptions(sort="popularity"),
        QueryOptions(direction="SIDEWAYS"),
        QueryOptions(page=0),
        QueryOptions(per_page=0),
        QueryOptions(per_page=1001),
    ],
)
def test_invalid_queries_are_rejected(options):
    with pytest.raises(QueryValidationError):
        QueryBuilder("scene").build(options)


def test_hydrates_relations_for_the_page(library):
    result = QueryBuilder("scene").execute(library, QueryOptions(filters={"ids": ["1", "5"]}, sort="id", direction="ASC"))
    first, fifth = result.entities

    assert [p["id"] for p in first["performers"]] == ["1", "2"]
    assert first["performers"][0]["name"] == "performer-1"
    assert first["studio"]["id"] == "10"
    assert fifth["performers"] == []
    assert fifth["studio"] is None
    assert fifth["tags"] == []


def test_hydration_drops_related_rows_excluded_for_user(library):
    library.add(UserExcludedEntity(user_id=1, entity_type="performer", entity_id="2", reason="hidden"))
    library.commit()

    entity = QueryBuilder("scene").get_one(library, "1", user_id=1)
    assert [p["id"] for p in entity["performers"]] == ["1"]


def test_get_one(library):
    assert QueryBuilder("scene").get_one(library, "2")["title"] == "Evening Walk"
    assert QueryBuilder("scene").get_one(library, "6") is None
    assert QueryBuilder("scene").get_one(library, "404") is None


def test_other_entity_types_query(library):
    result = QueryBuilder("performers").execute(library, QueryOptions(sort="name", direction="ASC"))
    assert [e["id"] for e in result.entities] == ["1", "2", "3"]
    assert result.total == 3


@pytest.fixture
def big_library(db):
    for i in range(1, 26):
        add_entity(db, "scene", str(i), title=f"Scene {i:02d}")
    db.commit()
    return db


def _collect_pages(db, per_page, **kwargs):
    builder = QueryBuilder("scene")
    seen, page, total = [], 1, None
    while True:
        result = builder.execute(db, QueryOptions(page=page, per_page=per_page, hydrate=False, **kwargs))
        total = result.total
        if not result.entities:
            break
        seen.extend(e["id"] for e in result.entities)
        page += 1
    return seen, total


def test_pages_cover_every_row_exactly_once(big_library):
    for sort in ("title", "id", "created_at", "random"):
        seen, total = _collect_pages(big_library, 7, sort=sort, random_seed=42)
        assert total == 25
        assert len(seen) == 25
        assert set(seen) == {str(i) for i in range(1, 26)}


def test_random_order_is_stable_per_seed(big_library):
    first, _ = _collect_pages(big_library, 7, sort="random", random_seed=42)
    again, _ = _collect_pages(big_library, 7, sort="random", random_seed=42)
    other, _ = _collect_pages(big_library, 7, sort="random", random_seed=1234)

    assert first == again
    assert first != other


@pytest.fixture
def catalog_sized_ids(db):
    # IDs as a real catalog hands them out: large and sequential
    for i in range(480001, 480121):
        add_entity(db, "scene", str(i), title=f"Scene {i}")
    db.commit()
    return db


def test_random_order_shuffles_realistic_ids(catalog_sized_ids):
    ids = [str(i) for i in range(480001, 480121)]
    orders = {}
    for seed in (1, 42, 1234):
        seen, total = _collect_pages(catalog_sized_ids, 25, sort="random", random_seed=seed)
        assert total == 120
        assert sorted(seen) == sorted(ids)
        assert seen != sorted(seen, key=int)
        assert seen != sorted(seen, key=int, reverse=True)
        orders[seed] = seen

    assert orders[1] != orders[42]
    assert orders[42] != orders[1234]
    # First pages differ too, not just the tail
    assert orders[42][:25] != orders[1234][:25]


def test_random_seed_is_generated_and_returned(big_library):
    builder = QueryBuilder("scene")
    result = builder.execute(big_library, QueryOptions(sort="random", per_page=5, hydrate=False))
    assert result.random_seed is not None

    replay = builder.execute(
        big_library, QueryOptions(sort="random", per_page=5, random_seed=result.random_seed, hydrate=False)
    )
    assert [e["id"] for e in replay.entities] == [e["id"] for e in result.entities]
    assert result.total_pages == 5
