"""
Redis clients for sync locks, supersede flags and health checks.

Async clients are kept per event loop: every Celery task runs its sync on a
fresh loop, and a connection opened on one loop cannot be awaited from
another. The sync client is one pooled singleton per process.
"""
import asyncio
import threading
from typing import Dict, Optional

import redis as redis_sync
from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from redis.connection import ConnectionPool as SyncConnectionPool

from catalog_mirror.core.config import settings

POOL_OPTIONS = {
	"decode_responses": True,
	"max_connections": 50,
	"socket_connect_timeout": 5,
	"socket_timeout": 5,
	"retry_on_timeout": True,
}

_async_clients: Dict[str, aioredis.Redis] = {}
_sync_client: Optional[redis_sync.Redis] = None
_sync_guard = threading.Lock()


def _loop_key() -> str:
	try:
		return f"loop-{id(asyncio.get_running_loop())}"
	except RuntimeError:
		return f"thread-{threading.get_ident()}"


def get_redis() -> aioredis.Redis:
	"""Async client for the running event loop, created on first use."""
	key = _loop_key()
	client = _async_clients.get(key)
	if client is None:
		pool = AsyncConnectionPool.from_url(settings.redis_url, **POOL_OPTIONS)
		client = aioredis.Redis(connection_pool=pool)
		_async_clients[key] = client
	return client


async def release_redis() -> None:
	"""Close the running loop's client; call before that loop is closed."""
	client = _async_clients.pop(_loop_key(), None)
	if client is not None:
		await client.aclose()


def get_redis_sync() -> redis_sync.Redis:
	global _sync_client
	with _sync_guard:
		if _sync_client is None:
			pool = SyncConnectionPool.from_url(settings.redis_url, **POOL_OPTIONS)
			_sync_client = redis_sync.Redis(connection_pool=pool)
	return _sync_client
