"""
Sync engine tests against an in-memory remote listing and a SQLite store.
"""
import asyncio
import threading
import time
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from catalog_mirror.errors import StashNetworkError, SyncLockBusy
from catalog_mirror.models import EntityType, Scene, SceneGroup, ScenePerformer, SceneTag, SyncState
from catalog_mirror.services.sync_engine import SyncEngine, SyncPhase, get_sync_state
from catalog_mirror.utils.timezone import utc_now

from conftest import FakeStashClient, remote_scene


def _scenes(n, start=1):
    return [remote_scene(i) for i in range(start, start + n)]


def _live_ids(session_factory):
    db = session_factory()
    try:
        return set(db.execute(select(Scene.id).where(Scene.live())).scalars().all())
    finally:
        db.close()


def _all_rows(session_factory, model, *columns):
    db = session_factory()
    try:
        return set(db.execute(select(*columns)).all())
    finally:
        db.close()


def _state(session_factory):
    db = session_factory()
    try:
        return get_sync_state(db, EntityType.SCENE)
    finally:
        db.close()


def test_full_sync_pages_and_batches(session_factory):
    client = FakeStashClient({"scene": _scenes(2500)})
    engine = SyncEngine(client, session_factory, page_size=1000, batch_size=500)

    result = asyncio.run(engine.sync("scenes"))

    assert result.ok
    assert result.count == 2500
    assert result.batches == 5
    assert [c["page"] for c in client.calls] == [1, 2, 3]
    assert all(c["per_page"] == 1000 for c in client.calls)
    assert len(_live_ids(session_factory)) == 2500

    state = _state(session_factory)
    assert state["last_sync_count"] == 2500
    assert state["total_entities"] == 2500
    assert state["last_error"] is None
    assert state["last_full_sync"] is not None
    assert state["phase"] == SyncPhase.DONE.value


def test_failure_keeps_committed_batches_and_next_run_recovers(session_factory):
    client = FakeStashClient({"scene": _scenes(2500)}, fail_on_page=2, error=StashNetworkError("connection reset"))
    engine = SyncEngine(client, session_factory, page_size=1000, batch_size=500)

    result = asyncio.run(engine.sync("scene"))

    assert not result.ok
    assert "connection reset" in result.error
    assert result.batches == 2
    # Batches 1 and 2 were committed before page 2 failed
    assert len(_live_ids(session_factory)) == 1000
    state = _state(session_factory)
    assert "connection reset" in state["last_error"]
    assert state["phase"] == SyncPhase.FAILED.value
    assert state["last_full_sync"] is None

    client.fail_on_page = None
    retry = asyncio.run(engine.sync("scene"))

    assert retry.ok
    assert len(_live_ids(session_factory)) == 2500
    state = _state(session_factory)
    assert state["last_error"] is None
    assert state["last_sync_count"] == 2500


def test_commit_failure_in_third_batch(session_factory, monkeypatch):
    client = FakeStashClient({"scene": _scenes(2500)})
    engine = SyncEngine(client, session_factory, page_size=1000, batch_size=500)
    commit_batch = engine._commit_batch
    attempts = []

    def flaky_commit(entity_type, batch):
        attempts.append(len(batch))
        if len(attempts) == 3:
            raise RuntimeError("database connection lost")
        return commit_batch(entity_type, batch)

    monkeypatch.setattr(engine, "_commit_batch", flaky_commit)
    result = asyncio.run(engine.sync("scene"))

    assert result.batches == 2
    assert "database connection lost" in result.error
    assert len(_live_ids(session_factory)) == 1000
    assert "database connection lost" in _state(session_factory)["last_error"]

    monkeypatch.setattr(engine, "_commit_batch", commit_batch)
    assert asyncio.run(engine.sync("scene")).count == 2500
    assert len(_live_ids(session_factory)) == 2500


def test_store_writes_run_off_the_event_loop(session_factory, monkeypatch):
    engine = SyncEngine(FakeStashClient({"scene": _scenes(3)}), session_factory, page_size=10, batch_size=10)
    commit_batch = engine._commit_batch
    writer_threads = []

    def slow_commit(entity_type, batch):
        writer_threads.append(threading.get_ident())
        time.sleep(0.2)
        return commit_batch(entity_type, batch)

    monkeypatch.setattr(engine, "_commit_batch", slow_commit)

    async def scenario():
        ticks = 0
        sync = asyncio.ensure_future(engine.sync("scene"))
        while not sync.done():
            ticks += 1
            await asyncio.sleep(0.01)
        return threading.get_ident(), ticks, sync.result()

    loop_thread, ticks, result = asyncio.run(scenario())

    assert result.count == 3
    assert writer_threads and loop_thread not in writer_threads
    # The loop kept serving other work during the slow commit
    assert ticks > 5


def test_rerun_is_idempotent(session_factory):
    items = [remote_scene(i, performers=[str(i)], tags=["1", "2"]) for i in range(1, 21)]
    client = FakeStashClient({"scene": items})
    engine = SyncEngine(client, session_factory, page_size=7, batch_size=3)

    first = asyncio.run(engine.sync("scene"))
    rows_after_first = _all_rows(session_factory, Scene, Scene.id, Scene.title, Scene.deleted_at)
    tags_after_first = _all_rows(session_factory, SceneTag, SceneTag.scene_id, SceneTag.tag_id)

    second = asyncio.run(engine.sync("scene"))

    assert first.inserted == 20
    assert second.inserted == 0
    assert second.revived == 0
    assert second.tombstoned == 0
    assert not second.universe_changed
    assert _all_rows(session_factory, Scene, Scene.id, Scene.title, Scene.deleted_at) == rows_after_first
    assert _all_rows(session_factory, SceneTag, SceneTag.scene_id, SceneTag.tag_id) == tags_after_first


def test_duplicate_ids_in_one_batch_keep_the_last(session_factory):
    client = FakeStashClient({"scene": [remote_scene(1, title="old"), remote_scene(1, title="new")]})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)

    result = asyncio.run(engine.sync("scene"))

    assert result.ok
    assert _all_rows(session_factory, Scene, Scene.id, Scene.title) == {("1", "new")}


def test_full_sync_tombstones_missing_and_revives_returning(session_factory):
    client = FakeStashClient({"scene": _scenes(10)})
    engine = SyncEngine(client, session_factory, page_size=4, batch_size=2, id_page_size=3)
    asyncio.run(engine.sync("scene"))

    client.set("scene", [s for s in _scenes(10) if s.id not in ("3", "7", "9")])
    result = asyncio.run(engine.sync("scene"))

    assert result.tombstoned == 3
    assert _live_ids(session_factory) == {str(i) for i in range(1, 11)} - {"3", "7", "9"}
    # Tombstoned rows stay in the table
    assert len(_all_rows(session_factory, Scene, Scene.id)) == 10

    client.set("scene", _scenes(10))
    again = asyncio.run(engine.sync("scene"))

    assert again.revived == 3
    assert again.tombstoned == 0
    assert len(_live_ids(session_factory)) == 10


def test_reconciliation_skipped_when_id_listing_is_incomplete(session_factory):
    client = FakeStashClient({"scene": _scenes(5)})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)
    asyncio.run(engine.sync("scene"))

    client.set("scene", _scenes(3))
    client.id_total_override = 5
    result = asyncio.run(engine.sync("scene"))

    assert result.ok
    assert result.tombstoned == 0
    assert len(_live_ids(session_factory)) == 5


def test_relations_are_diffed(session_factory):
    client = FakeStashClient({
        "scene": [remote_scene(1, performers=["1", "2"], tags=["5"], groups=[{"id": "7", "scene_index": 1}])]
    })
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)
    asyncio.run(engine.sync("scene"))

    # No "tags" key this time: existing tag links are left alone
    client.set("scene", [remote_scene(1, performers=["2", "3"], groups=[{"id": "7", "scene_index": 4}])])
    asyncio.run(engine.sync("scene"))

    performers = _all_rows(session_factory, ScenePerformer, ScenePerformer.scene_id, ScenePerformer.performer_id)
    assert performers == {("1", "2"), ("1", "3")}
    groups = _all_rows(session_factory, SceneGroup, SceneGroup.scene_id, SceneGroup.group_id, SceneGroup.scene_index)
    assert groups == {("1", "7", 4)}
    tags = _all_rows(session_factory, SceneTag, SceneTag.scene_id, SceneTag.tag_id)
    assert tags == {("1", "5")}


def test_incremental_sync_uses_last_sync_mark(session_factory):
    old = utc_now() - timedelta(days=2)
    client = FakeStashClient({"scene": [remote_scene(i, remote_updated_at=old) for i in range(1, 6)]})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)
    asyncio.run(engine.sync("scene"))

    changed = remote_scene(3, title="edited", remote_updated_at=utc_now() + timedelta(hours=1))
    others = [remote_scene(i, remote_updated_at=old) for i in (1, 2, 4)]
    client.set("scene", others + [changed])
    client.calls.clear()
    client.id_calls.clear()

    result = asyncio.run(engine.sync("scene", incremental=True))

    assert result.incremental
    assert result.count == 1
    assert client.calls[0]["updated_since"] is not None
    # Incremental runs never reconcile, so scene 5 stays live
    assert client.id_calls == []
    assert "5" in _live_ids(session_factory)
    assert ("3", "edited") in _all_rows(session_factory, Scene, Scene.id, Scene.title)
    assert _state(session_factory)["last_incremental_sync"] is not None


def test_incremental_without_history_falls_back_to_full(session_factory):
    client = FakeStashClient({"scene": _scenes(3)})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)

    result = asyncio.run(engine.sync("scene", incremental=True))

    assert not result.incremental
    assert client.calls[0]["updated_since"] is None
    assert client.id_calls


def test_universe_listener_only_fires_on_changes(session_factory):
    seen = []
    client = FakeStashClient({"scene": _scenes(3)})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10, on_universe_changed=seen.append)

    asyncio.run(engine.sync("scene"))
    asyncio.run(engine.sync("scene"))

    assert seen == [EntityType.SCENE]


def test_reference_changes_on_existing_rows_fire_the_listener(session_factory):
    seen = []
    client = FakeStashClient({"scene": [remote_scene(1, tags=["1"]), remote_scene(2, studio_id="10")]})
    engine = SyncEngine(client, session_factory, page_size=10, batch_size=10, on_universe_changed=seen.append)
    asyncio.run(engine.sync("scene"))
    seen.clear()

    client.set("scene", [remote_scene(1, tags=["1", "2"]), remote_scene(2, studio_id="10")])
    result = asyncio.run(engine.sync("scene"))
    assert result.relinked == 1
    assert seen == [EntityType.SCENE]

    client.set("scene", [remote_scene(1, tags=["1", "2"]), remote_scene(2, studio_id="11")])
    result = asyncio.run(engine.sync("scene"))
    assert result.relinked == 1
    assert result.inserted == 0
    assert seen == [EntityType.SCENE, EntityType.SCENE]
    assert seen == [EntityType.SCENE]


class GatedClient(FakeStashClient):
    """Blocks the first listing call until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self._gated = True

    async def list_entities(self, entity_type, page, per_page, updated_since=None):
        if self._gated:
            self._gated = False
            self.started.set()
            await self.release.wait()
        return await super().list_entities(entity_type, page, per_page, updated_since)


def test_concurrent_sync_without_supersede_is_rejected(session_factory):
    async def scenario():
        client = GatedClient({"scene": _scenes(5)})
        engine = SyncEngine(client, session_factory, page_size=10, batch_size=10)
        first = asyncio.create_task(engine.sync("scene"))
        await client.started.wait()
        assert engine.is_running("scene")
        with pytest.raises(SyncLockBusy):
            await engine.sync("scene")
        client.release.set()
        return await first

    result = asyncio.run(scenario())
    assert result.ok


def test_supersede_cancels_running_sync(session_factory):
    async def scenario():
        client = GatedClient({"scene": _scenes(10)})
        engine = SyncEngine(client, session_factory, page_size=10, batch_size=5)
        first = asyncio.create_task(engine.sync("scene"))
        await client.started.wait()
        running_token = engine._tokens[EntityType.SCENE]

        second = asyncio.create_task(engine.sync("scene", supersede=True))
        for _ in range(100):
            if running_token.cancelled:
                break
            await asyncio.sleep(0)
        client.release.set()
        return await asyncio.gather(first, second)

    superseded, newer = asyncio.run(scenario())

    assert superseded.cancelled
    assert superseded.batches == 0
    assert newer.ok
    assert newer.count == 10
    assert len(_live_ids(session_factory)) == 10


def test_sync_state_is_scoped_per_instance(session_factory):
    client = FakeStashClient({"scene": _scenes(2)})
    asyncio.run(SyncEngine(client, session_factory, page_size=10, batch_size=10).sync("scene"))

    db = session_factory()
    try:
        rows = db.execute(select(SyncState.instance_id, func.count()).group_by(SyncState.instance_id)).all()
        assert rows == [(FakeStashClient.instance_id, 1)]
        assert get_sync_state(db, "scene", instance_id="http://other")["last_sync_count"] == 0
    finally:
        db.close()
