import threading
import time
from types import SimpleNamespace

import pytest

from catalog_mirror.models import EntityType
from catalog_mirror.services.exclusion_service import ExclusionService, cascade_sources
from catalog_mirror.services.query_builder import QueryBuilder, QueryOptions
from catalog_mirror.services.restriction_service import RestrictionService

from conftest import add_entity, add_user, link


@pytest.fixture
def catalog(db):
    add_user(db, 1)
    add_user(db, 2)
    for tid in ("1", "2", "3"):
        add_entity(db, "tag", tid)
    for sid in ("10", "11"):
        add_entity(db, "studio", sid)
    for pid in ("1", "2"):
        add_entity(db, "performer", pid)
    add_entity(db, "scene", "1", studio_id="10")
    add_entity(db, "scene", "2", studio_id="11")
    add_entity(db, "scene", "3")
    add_entity(db, "scene", "4")
    add_entity(db, "scene", "5")
    add_entity(db, "scene", "6")
    add_entity(db, "group", "30", studio_id="10")
    add_entity(db, "group", "31")
    db.flush()
    link(db, "scene", "tags", "1", ["1"])
    link(db, "scene", "tags", "2", ["2"])
    link(db, "scene", "tags", "3", ["1", "2"])
    link(db, "scene", "performers", "5", ["1"])
    link(db, "scene", "performers", "6", ["1", "2"])
    db.commit()
    return db


@pytest.fixture
def services(session_factory):
    exclusions = ExclusionService(session_factory, hide_empty=False)
    return exclusions, RestrictionService(exclusions)


def _visible_scenes(db, user_id):
    result = QueryBuilder("scene").execute(db, QueryOptions(user_id=user_id, sort="id", direction="ASC", per_page=100))
    return [e["id"] for e in result.entities]


def test_include_rule_excludes_everything_else(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "tags", "INCLUDE", ["1"])

    excluded = exclusions.get_exclusions(catalog, 1)
    assert excluded[EntityType.TAG] == {"2", "3"}
    # Scene 2 only references tag 2; scene 3 also carries the included tag
    assert excluded[EntityType.SCENE] == {"2"}
    assert _visible_scenes(catalog, 1) == ["1", "3", "4", "5", "6"]
    assert _visible_scenes(catalog, 2) == ["1", "2", "3", "4", "5", "6"]


def test_include_rule_with_restrict_empty_hides_untagged(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "tags", "INCLUDE", ["1"], restrict_empty=True)

    assert exclusions.get_exclusions(catalog, 1)[EntityType.SCENE] == {"2", "4", "5", "6"}
    assert _visible_scenes(catalog, 1) == ["1", "3"]


def test_exclude_rule_with_restrict_empty_hides_untagged(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "tags", "EXCLUDE", ["1"], restrict_empty=True)

    assert exclusions.get_exclusions(catalog, 1)[EntityType.SCENE] == {"1", "3", "4", "5", "6"}
    assert _visible_scenes(catalog, 1) == ["2"]


def test_include_rule_picks_up_newly_synced_entities(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "tags", "INCLUDE", ["1"])

    add_entity(catalog, "tag", "4")
    catalog.commit()
    results = exclusions.recompute_for_affected_users("tags")

    assert list(results) == [1]
    assert exclusions.get_exclusions(catalog, 1)[EntityType.TAG] == {"2", "3", "4"}


def test_exclude_studio_cascades_to_any_reference(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "studios", "EXCLUDE", ["10"])

    excluded = exclusions.get_exclusions(catalog, 1)
    assert excluded[EntityType.STUDIO] == {"10"}
    assert excluded[EntityType.SCENE] == {"1"}
    assert excluded[EntityType.GROUP] == {"30"}
    counts = exclusions.get_exclusion_counts(catalog, 1)
    assert counts["studio"] == {"restricted": 1}
    assert counts["scene"] == {"cascade": 1}


def test_performer_cascade_needs_every_performer_excluded(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "performers", "EXCLUDE", ["1"])

    assert exclusions.get_exclusions(catalog, 1)[EntityType.SCENE] == {"5"}

    restrictions.hide_entity(1, "performer", "2")
    assert exclusions.get_exclusions(catalog, 1)[EntityType.SCENE] == {"5", "6"}


def test_hidden_entities(catalog, services):
    exclusions, restrictions = services
    assert restrictions.hide_entity(1, "scene", "4") is True
    assert restrictions.hide_entity(1, "scene", "4") is False

    assert exclusions.get_exclusion_counts(catalog, 1) == {"scene": {"hidden": 1}}
    assert [h["entity_id"] for h in restrictions.list_hidden(catalog, 1)] == ["4"]
    assert "4" not in _visible_scenes(catalog, 1)

    assert restrictions.unhide_entity(1, "scenes", "4") is True
    assert exclusions.get_exclusions(catalog, 1)[EntityType.SCENE] == set()


def test_failed_recompute_keeps_previous_rule_and_set(catalog, services, session_factory, monkeypatch):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "studios", "EXCLUDE", ["10"])

    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(exclusions, "_apply_direct_cascade", boom)
    with pytest.raises(RuntimeError):
        restrictions.set_restriction(1, "studios", "EXCLUDE", ["11"])

    db = session_factory()
    try:
        assert restrictions.get_restrictions(db, 1)[0]["ids"] == ["10"]
        assert exclusions.get_exclusions(db, 1)[EntityType.SCENE] == {"1"}
    finally:
        db.close()


def test_users_are_isolated(catalog, services):
    exclusions, restrictions = services
    restrictions.set_restriction(1, "studios", "EXCLUDE", ["10", "11"])

    assert all(not ids for ids in exclusions.get_exclusions(catalog, 2).values())
    assert exclusions.affected_users(catalog, "scene") == [1]
    assert exclusions.affected_users(catalog, "performer") == []


@pytest.fixture
def sparse_catalog(db):
    add_user(db, 1)
    add_user(db, 9, is_admin=True)
    for tid in ("1", "2"):
        add_entity(db, "tag", tid)
    for sid in ("10", "11"):
        add_entity(db, "studio", sid)
    for pid in ("1", "2"):
        add_entity(db, "performer", pid)
    add_entity(db, "scene", "1", studio_id="10")
    add_entity(db, "scene", "2", studio_id="11")
    add_entity(db, "gallery", "40")
    add_entity(db, "gallery", "41")
    add_entity(db, "image", "50")
    add_entity(db, "group", "30")
    db.flush()
    link(db, "scene", "tags", "1", ["1"])
    link(db, "scene", "tags", "2", ["2"])
    link(db, "scene", "performers", "1", ["1"])
    link(db, "scene", "performers", "2", ["2"])
    link(db, "image", "galleries", "50", ["40"])
    db.commit()
    return db


@pytest.fixture
def hiding_services(session_factory):
    exclusions = ExclusionService(session_factory, hide_empty=True)
    return exclusions, RestrictionService(exclusions)


def test_empty_galleries_and_groups_are_hidden(sparse_catalog, hiding_services):
    exclusions, _ = hiding_services
    exclusions.recompute_for_user(1)

    excluded = exclusions.get_exclusions(sparse_catalog, 1)
    assert excluded[EntityType.GALLERY] == {"41"}
    assert excluded[EntityType.GROUP] == {"30"}
    assert excluded[EntityType.STUDIO] == set()
    assert excluded[EntityType.TAG] == set()
    assert exclusions.get_exclusion_counts(sparse_catalog, 1) == {"gallery": {"empty": 1}, "group": {"empty": 1}}


def test_entities_left_with_only_hidden_content_are_empty(sparse_catalog, hiding_services):
    exclusions, restrictions = hiding_services
    restrictions.hide_entity(1, "scene", "2")

    excluded = exclusions.get_exclusions(sparse_catalog, 1)
    assert excluded[EntityType.SCENE] == {"2"}
    assert excluded[EntityType.STUDIO] == {"11"}
    assert excluded[EntityType.PERFORMER] == {"2"}
    assert excluded[EntityType.TAG] == {"2"}
    assert exclusions.get_exclusion_counts(sparse_catalog, 1)["studio"] == {"empty": 1}


def test_admins_see_empty_entities(sparse_catalog, hiding_services):
    exclusions, restrictions = hiding_services
    restrictions.hide_entity(9, "scene", "2")

    excluded = exclusions.get_exclusions(sparse_catalog, 9)
    assert excluded[EntityType.SCENE] == {"2"}
    assert all(not excluded[t] for t in (EntityType.GALLERY, EntityType.GROUP, EntityType.STUDIO, EntityType.TAG))


def test_every_non_admin_is_affected_when_hiding_empty(sparse_catalog, hiding_services):
    exclusions, _ = hiding_services
    assert exclusions.affected_users(sparse_catalog, "tag") == [1]


def test_failed_user_is_handed_back(sparse_catalog, hiding_services, monkeypatch):
    exclusions, _ = hiding_services

    def boom(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(exclusions, "_apply_empty", boom)
    failed = []

    results = exclusions.recompute_for_affected_users("scene", on_failure=failed.append)

    assert results == {}
    assert failed == [1]


def test_cascade_sources():
    assert cascade_sources(EntityType.SCENE) == {
        EntityType.SCENE, EntityType.TAG, EntityType.STUDIO, EntityType.GROUP,
        EntityType.GALLERY, EntityType.PERFORMER,
    }
    assert cascade_sources(EntityType.TAG) == {EntityType.TAG}


class _NullSession:
    def commit(self):
        pass

    def flush(self):
        pass

    def rollback(self):
        pass

    def close(self):
        pass


def test_concurrent_requests_coalesce(monkeypatch):
    service = ExclusionService(session_factory=_NullSession)
    calls = []
    started = threading.Event()
    release = threading.Event()

    def slow_rebuild(db, user_id):
        calls.append(user_id)
        if len(calls) == 1:
            started.set()
            release.wait(5)

    monkeypatch.setattr(service, "_rebuild", slow_rebuild)
    monkeypatch.setattr(service, "get_exclusion_counts", lambda db, user_id: {})

    results = []
    threads = [threading.Thread(target=lambda: results.append(service.recompute_for_user(7)))]
    threads[0].start()
    assert started.wait(5)

    for _ in range(3):
        t = threading.Thread(target=lambda: results.append(service.recompute_for_user(7)))
        threads.append(t)
        t.start()
    deadline = time.time() + 5
    while service._slot(7).requested < 4 and time.time() < deadline:
        time.sleep(0.01)
    release.set()
    for t in threads:
        t.join(5)

    # One run in flight plus a single follow-up for the three queued requests
    assert len(calls) == 2
    assert len(results) == 4
    assert sum(1 for r in results if r.coalesced) == 2


def test_recomputes_for_one_user_never_overlap_across_services(monkeypatch):
    # Two services stand in for the API and worker processes
    locks = {}
    guard = threading.Lock()

    def shared_lock(user_id):
        with guard:
            return locks.setdefault(user_id, threading.Lock())

    services = [ExclusionService(session_factory=_NullSession, user_lock=shared_lock) for _ in range(3)]
    active = []
    overlap = []

    def slow_rebuild(db, user_id):
        active.append(user_id)
        overlap.append(len(active))
        time.sleep(0.05)
        active.pop()

    for service in services:
        monkeypatch.setattr(service, "_rebuild", slow_rebuild)
        monkeypatch.setattr(service, "get_exclusion_counts", lambda db, user_id: {})

    threads = [
        threading.Thread(target=services[0].recompute_for_user, args=(7,)),
        threading.Thread(target=services[1].recompute_for_user, args=(7,)),
        threading.Thread(target=services[2].apply_and_recompute, args=(7, lambda db: None)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(overlap) == 3
    assert max(overlap) == 1


def test_busy_user_lock_fails_the_recompute(monkeypatch):
    from contextlib import contextmanager

    from catalog_mirror.errors import RecomputeLockBusy

    @contextmanager
    def busy(user_id):
        raise RecomputeLockBusy(f"user {user_id}")
        yield

    service = ExclusionService(session_factory=_NullSession, user_lock=busy)
    rebuilt = []
    monkeypatch.setattr(service, "_rebuild", lambda db, user_id: rebuilt.append(user_id))

    with pytest.raises(RecomputeLockBusy):
        service.recompute_for_user(7)
    assert rebuilt == []


class _FakeUserLock:
    def __init__(self, held, name, **kwargs):
        self.held = held
        self.name = name
        self.kwargs = kwargs

    def acquire(self):
        if self.name in self.held:
            return False
        self.held.add(self.name)
        return True

    def release(self):
        self.held.discard(self.name)


def test_redis_user_lock(monkeypatch):
    from catalog_mirror.errors import RecomputeLockBusy
    from catalog_mirror.services import exclusion_service as module

    held = set()
    locks = []

    def make_lock(name, **kwargs):
        locks.append(_FakeUserLock(held, name, **kwargs))
        return locks[-1]

    monkeypatch.setattr(module, "get_redis_sync", lambda: SimpleNamespace(lock=make_lock))

    with module.redis_user_lock(3):
        assert held == {"lock:exclusions:user:3"}
        with pytest.raises(RecomputeLockBusy):
            with module.redis_user_lock(3):
                pass
        with module.redis_user_lock(4):
            assert held == {"lock:exclusions:user:3", "lock:exclusions:user:4"}
    assert held == set()
    assert locks[0].kwargs["thread_local"] is False
