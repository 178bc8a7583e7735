"""
tasks.py

Celery task definitions for catalog syncs, exclusion recomputes and tombstone
purges. A Redis lock keeps one sync per entity type across all workers; an
on-demand request supersedes a running sync through a Redis cancel flag that
the running sync reads at its next page or batch boundary.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from redis.exceptions import LockError

from catalog_mirror.core.celery_app import celery_app
from catalog_mirror.core.config import settings
from catalog_mirror.core.redis_client import get_redis, get_redis_sync, release_redis
from catalog_mirror.errors import SyncCancelled, SyncLockBusy
from catalog_mirror.models import EntityType
from catalog_mirror.services.exclusion_service import exclusion_service
from catalog_mirror.services.maintenance import purge_all_tombstones
from catalog_mirror.services.stash_client import StashClient
from catalog_mirror.services.sync_engine import CancellationToken, SyncEngine, SyncResult

logger = logging.getLogger(__name__)


def lock_key(entity_type: EntityType) -> str:
    return f"lock:sync:{entity_type.value}"


def cancel_key(entity_type: EntityType) -> str:
    return f"sync:cancel:{entity_type.value}"


class SyncLock:
    """Redis lock for one entity type's sync.

    Built on redis-py's Lock: release and renewal are atomic and only succeed
    for the holder's token. The running sync renews it at every checkpoint, so
    a run longer than the TTL keeps the lock as long as it makes progress.
    """

    def __init__(self, entity_type, timeout: int = None, redis=None):
        self.entity_type = EntityType.parse(entity_type)
        self.lock_key = lock_key(self.entity_type)
        self.timeout = timeout or settings.sync_lock_timeout_seconds
        self.redis = redis or get_redis()
        self._lock = self.redis.lock(self.lock_key, timeout=self.timeout, blocking=False, thread_local=False)

    async def acquire(self) -> bool:
        acquired = await self._lock.acquire()
        if not acquired:
            logger.info(f"[SyncLock] Lock already held: {self.lock_key}")
        return bool(acquired)

    async def extend(self) -> None:
        """Reset the TTL; a lock that expired and was taken over cancels the run."""
        try:
            await self._lock.extend(self.timeout, replace_ttl=True)
        except LockError as e:
            raise SyncCancelled(f"lost sync lock {self.lock_key}: {e}") from e

    async def release(self):
        try:
            await self._lock.release()
        except LockError as e:
            logger.warning(f"[SyncLock] {self.lock_key} was no longer ours at release: {e}")

    async def __aenter__(self):
        if not await self.acquire():
            raise SyncLockBusy(f"Could not acquire lock: {self.lock_key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


class RedisCancellationToken(CancellationToken):
    """Cancellation token that also honours the cross-process cancel flag.

    With a SyncLock attached, every checkpoint also renews the lock.
    """

    def __init__(self, entity_type, redis=None, lock: Optional[SyncLock] = None):
        super().__init__()
        self.entity_type = EntityType.parse(entity_type)
        self.key = cancel_key(self.entity_type)
        self.redis = redis or get_redis_sync()
        self.lock = lock

    def reset(self) -> None:
        """Drop a cancel flag aimed at an earlier run."""
        self.redis.delete(self.key)

    @property
    def cancelled(self) -> bool:
        if super().cancelled:
            return True
        reason = self.redis.get(self.key)
        if reason:
            self.cancel(str(reason))
            return True
        return False

    async def checkpoint(self) -> None:
        self.raise_if_cancelled()
        if self.lock is not None:
            await self.lock.extend()


def request_supersede(entity_type, reason: str = "superseded by on-demand sync") -> None:
    """Ask whichever worker is syncing `entity_type` to stop at its next boundary."""
    entity_type = EntityType.parse(entity_type)
    get_redis_sync().set(cancel_key(entity_type), reason, ex=settings.sync_lock_timeout_seconds)
    logger.info(f"[Tasks] Supersede requested for {entity_type.value} sync")


def _run_async(coro):
    # Ensure a fresh event loop inside Celery worker
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(release_redis())
        loop.close()


def _notify_universe_changed(entity_type: EntityType) -> None:
    recompute_exclusions_for_type_task.delay(entity_type.value)


def build_sync_engine(client: Optional[StashClient] = None) -> SyncEngine:
    return SyncEngine(client or StashClient(), on_universe_changed=_notify_universe_changed)


def result_dict(result: SyncResult) -> Dict[str, Any]:
    return {
        "status": "cancelled" if result.cancelled else ("failed" if result.error else "completed"),
        "entity_type": result.entity_type.value,
        "count": result.count,
        "duration_ms": result.duration_ms,
        "error": result.error,
        "incremental": result.incremental,
        "batches": result.batches,
        "inserted": result.inserted,
        "revived": result.revived,
        "tombstoned": result.tombstoned,
        "relinked": result.relinked,
    }


async def run_locked_sync(entity_type, incremental: bool = False, engine: Optional[SyncEngine] = None) -> Dict[str, Any]:
    """Take the type lock, clear stale cancel flags and run one sync."""
    entity_type = EntityType.parse(entity_type)
    async with SyncLock(entity_type) as lock:
        token = RedisCancellationToken(entity_type, lock=lock)
        token.reset()
        engine = engine or build_sync_engine()
        result = await engine.sync(entity_type, incremental=incremental, token=token)
        return result_dict(result)


@celery_app.task(bind=True, max_retries=12, default_retry_delay=10)
def sync_entity_type_task(self, entity_type: str, incremental: bool = False, supersede: bool = False):
    """Sync one entity type.

    A busy lock means another worker is already syncing this type. Scheduled
    runs skip; superseding runs retry until the old run has stopped.
    """
    try:
        return _run_async(run_locked_sync(entity_type, incremental=incremental))
    except SyncLockBusy as e:
        if supersede:
            raise self.retry(exc=e, countdown=5)
        logger.info(f"[Tasks] Skipping {entity_type} sync: {e}")
        return {"status": "skipped", "entity_type": entity_type, "error": str(e)}


@celery_app.task(bind=True)
def sync_all_entity_types_task(self, incremental: bool = False):
    """Fan out one sync task per entity type; types sync concurrently."""
    queued = []
    for entity_type in EntityType:
        sync_entity_type_task.delay(entity_type.value, incremental=incremental)
        queued.append(entity_type.value)
    logger.info(f"[Tasks] Queued {'incremental' if incremental else 'full'} sync for {', '.join(queued)}")
    return {"queued": queued}


def enqueue_sync(entity_type, incremental: bool = False, supersede: bool = False):
    """Queue a sync from the API; with `supersede` the running sync is cancelled first."""
    entity_type = EntityType.parse(entity_type)
    if supersede:
        request_supersede(entity_type)
    return sync_entity_type_task.delay(entity_type.value, incremental=incremental, supersede=supersede)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def recompute_user_exclusions_task(self, user_id: int):
    try:
        result = exclusion_service.recompute_for_user(user_id)
    except Exception as e:
        logger.error(f"[Tasks] Exclusion recompute failed for user {user_id}: {e}")
        raise self.retry(exc=e)
    return {"user_id": user_id, "counts": result.counts, "coalesced": result.coalesced}


@celery_app.task(bind=True)
def recompute_exclusions_for_type_task(self, entity_type: str):
    # Users whose recompute failed get their own retrying task
    results = exclusion_service.recompute_for_affected_users(
        entity_type, on_failure=lambda user_id: recompute_user_exclusions_task.delay(user_id)
    )
    return {"entity_type": entity_type, "users": sorted(results)}


@celery_app.task(bind=True)
def purge_tombstones_task(self, older_than_days: int = None):
    purged = purge_all_tombstones(older_than_days=older_than_days)
    logger.info(f"[Tasks] Tombstone purge complete: {purged}")
    return purged
