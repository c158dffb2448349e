"""
Single-writer leases guarding similarity-cluster refresh runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Protocol
from uuid import uuid4

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from src.core.config import settings
from src.processing.errors import ClusterRunInProgressError, ExternalStoreError

logger = structlog.get_logger(__name__)

# Delete the key only while it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ClusterRunLease(Protocol):
    def acquire(self) -> AbstractAsyncContextManager[Any]:
        """Async context manager; raises ClusterRunInProgressError when held elsewhere."""


class LocalClusterLease:
    """In-process lease for single-worker deployments and tests."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        if self._lock.locked():
            msg = "cluster run already in progress"
            raise ClusterRunInProgressError(msg)
        async with self._lock:
            yield


class RedisClusterLease:
    """Cross-process lease using ``SET NX PX`` with a token-checked release."""

    def __init__(
        self,
        *,
        key: str | None = None,
        ttl_seconds: int | None = None,
        redis_url: str | None = None,
        redis_client: redis.Redis | None = None,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self.key = (key or settings.DISCOVERY_CLUSTER_LEASE_KEY).strip()
        self.ttl_seconds = max(
            1,
            settings.DISCOVERY_CLUSTER_LEASE_TTL_SECONDS if ttl_seconds is None else ttl_seconds,
        )
        self.redis_url = settings.REDIS_URL if redis_url is None else str(redis_url).strip()
        self._redis_client = redis_client
        self._token_factory = token_factory or (lambda: uuid4().hex)

    def _get_redis_client(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis_client

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[str]:
        client = self._get_redis_client()
        token = self._token_factory()
        try:
            acquired = await client.set(
                self.key,
                token,
                nx=True,
                px=self.ttl_seconds * 1000,
            )
        except RedisError as exc:
            msg = "Cluster lease backend unavailable"
            raise ExternalStoreError(msg) from exc
        if not acquired:
            msg = "cluster run already in progress"
            raise ClusterRunInProgressError(msg)

        logger.debug("Acquired cluster run lease", key=self.key, ttl_seconds=self.ttl_seconds)
        try:
            yield token
        finally:
            try:
                await client.eval(_RELEASE_SCRIPT, 1, self.key, token)
            except RedisError:
                # The lease still expires via its TTL.
                logger.warning("Failed to release cluster run lease", key=self.key)
