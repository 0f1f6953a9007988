"""Redis-based distributed lock preventing overlapping pipeline runs."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from pricewatch.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "pipeline:run:lock"

# Atomically verify run_id + token and delete the lock
# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
_SAFE_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


class RunLockManager:
    """
    Distributed pipeline run lock.

    The lock carries a TTL longer than the run timeout, so a crashed run
    frees it eventually without a watchdog.
    """

    def __init__(self, redis_url: Optional[str] = None, key: str = LOCK_KEY):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            key: Redis key holding the lock
        """
        self.redis_url = redis_url or settings.redis_url
        self.key = key
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the run lock.

        Args:
            run_id: Unique run identifier (UUID hex)
            ttl_seconds: Time-to-live (defaults to settings.pipeline_lock_ttl_seconds)

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        ttl_seconds = ttl_seconds or settings.pipeline_lock_ttl_seconds

        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(self.key, lock_value, nx=True, ex=ttl_seconds)
        if acquired:
            logger.info(f"Acquired pipeline lock for run_id: {run_id[:16]}...")
            return token

        logger.debug(f"Pipeline lock already held: {await redis_client.get(self.key)}")
        return None

    async def safe_unlock(self, run_id: str, token: str) -> bool:
        """
        Release the lock only if it is still ours.

        Returns:
            True if released (or already gone), False if held by another run
        """
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(_SAFE_UNLOCK_SCRIPT, 1, self.key, run_id, token)
        except RedisError as e:
            logger.error(f"Error releasing pipeline lock: {e}")
            return False

        if result == 2:
            logger.warning(
                f"Attempted to release pipeline lock with mismatched token/run_id: "
                f"requested={run_id[:16]}..."
            )
            return False
        if result == 1:
            logger.info(f"Released pipeline lock for run_id: {run_id[:16]}...")
        return True

    async def force_unlock(self) -> bool:
        """Force unlock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        await redis_client.delete(self.key)
        logger.warning("Force-cleared pipeline lock")
        return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, started_at, ttl_seconds, or None if no lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(self.key)
        if not value:
            return None
        ttl = await redis_client.ttl(self.key)

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }


# Global lock manager instance
run_lock_manager = RunLockManager()
