"""
Per-environment mutual exclusion.

One in-flight deployment per environment; different environments never
block each other. A second request for a busy environment is rejected,
not queued. Each CLI stage runs in its own process, so the default lock
lives in a lock file per environment; Redis extends it across machines.
"""

import asyncio
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
from filelock import FileLock, Timeout

from core.exceptions import DeploymentInProgressError
from core.logging import get_logger

logger = get_logger(__name__, domain="locks")

# Delete the key only if this holder still owns it
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class EnvironmentLocks:
    """In-process keyed locks, one per environment name."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, environment: str) -> asyncio.Lock:
        if environment not in self._locks:
            self._locks[environment] = asyncio.Lock()
        return self._locks[environment]

    @asynccontextmanager
    async def hold(self, environment: str) -> AsyncIterator[None]:
        lock = self._lock(environment)
        # No await between the check and the acquire
        if lock.locked():
            raise DeploymentInProgressError(environment)
        await lock.acquire()
        logger.debug(f"Acquired deployment lock for {environment}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released deployment lock for {environment}")


class FileEnvironmentLocks(EnvironmentLocks):
    """Keyed locks shared between processes on one machine through lock files."""

    def __init__(self, lock_dir: str):
        super().__init__()
        self.lock_dir = Path(os.path.expanduser(lock_dir))

    def _path(self, environment: str) -> Path:
        return self.lock_dir / f"{environment}.lock"

    @asynccontextmanager
    async def hold(self, environment: str) -> AsyncIterator[None]:
        async with super().hold(environment):
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self._path(environment)), timeout=0)
            try:
                lock.acquire()
            except Timeout:
                raise DeploymentInProgressError(environment) from None
            logger.debug(f"Acquired lock file {lock.lock_file}")
            try:
                yield
            finally:
                lock.release()


class RedisEnvironmentLocks(EnvironmentLocks):
    """Keyed locks shared between processes through Redis SET NX EX."""

    def __init__(self, redis_url: str, ttl: int = 1800, namespace: str = "promotion",
                 client: Optional[aioredis.Redis] = None):
        super().__init__()
        self.ttl = ttl
        self.namespace = namespace
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)

    def _key(self, environment: str) -> str:
        return f"{self.namespace}:deploy-lock:{environment}"

    @asynccontextmanager
    async def hold(self, environment: str) -> AsyncIterator[None]:
        async with super().hold(environment):
            token = secrets.token_hex(16)
            acquired = await self._redis.set(self._key(environment), token, nx=True, ex=self.ttl)
            if not acquired:
                raise DeploymentInProgressError(environment)
            logger.info(f"Acquired shared deployment lock for {environment} (TTL: {self.ttl})")
            try:
                yield
            finally:
                released = await self._redis.eval(RELEASE_SCRIPT, 1, self._key(environment), token)
                if not released:
                    logger.warning(f"Shared deployment lock for {environment} expired before release")


def build_locks(redis_url: Optional[str], ttl: int = 1800, lock_dir: Optional[str] = None) -> EnvironmentLocks:
    if redis_url:
        return RedisEnvironmentLocks(redis_url, ttl=ttl)
    if lock_dir:
        return FileEnvironmentLocks(lock_dir)
    return EnvironmentLocks()
