import logging
import time
import uuid
from typing import Optional

import redis
import redis.asyncio

from .config import Settings
from .errors import LockUnavailableError, MergeInProgressError
from .metrics import merge_lock_acquired_total, merge_lock_contended_total

logger = logging.getLogger(__name__)

# Refresh/delete only if the lock is still owned by this worker
REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
else
    return 0
end
"""

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class PullRequestLock:
    """Redis mutual exclusion for one merge attempt per pull request."""

    def __init__(self, settings: Settings, worker_id: Optional[str] = None):
        self.settings = settings
        self.worker_id = worker_id or str(uuid.uuid4())
        self.r = redis.asyncio.Redis.from_url(settings.redis_url, decode_responses=True)

    def _key(self, number: int) -> str:
        return self.settings.redis_key("lock", self.settings.repository, str(number))

    async def aclose(self) -> None:
        await self.r.aclose()

    async def acquire(self, number: int) -> None:
        key = self._key(number)
        t0 = time.perf_counter()
        try:
            ok = await self.r.set(key, self.worker_id, nx=True, ex=self.settings.redis_lock_ttl_seconds)
        except redis.RedisError as e:
            raise LockUnavailableError(f"Could not reach the lock store for PR #{number}: {e}") from e
        logger.debug("lock.acquire: key=%s ok=%s duration_ms=%d", key, bool(ok), int((time.perf_counter() - t0) * 1000))
        if not ok:
            merge_lock_contended_total.inc()
            raise MergeInProgressError(f"Another run is already merging PR #{number}")
        merge_lock_acquired_total.inc()

    async def refresh(self, number: int) -> bool:
        try:
            res = await self.r.eval(REFRESH_SCRIPT, 1, self._key(number), self.worker_id, self.settings.redis_lock_ttl_seconds)
        except redis.RedisError as e:
            raise LockUnavailableError(f"Could not refresh the lock for PR #{number}: {e}") from e
        return bool(res)

    async def release(self, number: int) -> None:
        try:
            await self.r.eval(RELEASE_SCRIPT, 1, self._key(number), self.worker_id)
        except redis.RedisError as e:
            # The TTL expires the key anyway; never mask the merge result
            logger.warning("Failed to release lock for PR #%s: %s", number, e)
