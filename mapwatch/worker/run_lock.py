"""Exclusive lock for matching runs."""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from mapwatch.config import Settings, settings

logger = logging.getLogger(__name__)

# Redis keys for the matching run lock
LOCK_KEY = "match:run:lock"
HEARTBEAT_KEY = "match:run:heartbeat"


class RunLock(ABC):
    """Non-blocking exclusive lock; at most one matching run holds it."""

    @abstractmethod
    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Try to take the lock.

        Args:
            run_id: Unique run identifier
            ttl_seconds: Lock expiry where the backend supports it

        Returns:
            Ownership token, or None when another run holds the lock
        """

    @abstractmethod
    async def release(self, run_id: str, token: str) -> bool:
        """Release the lock if (run_id, token) still owns it."""

    @abstractmethod
    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """Current holder, or None when free."""

    async def close(self):
        """Release backend resources."""


class LocalRunLock(RunLock):
    """In-process lock for single-process deployments."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._holder: Optional[Dict[str, Any]] = None

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        if self._lock.locked():
            holder = self._holder or {}
            logger.debug(f"Lock already held by run_id: {str(holder.get('run_id', 'unknown'))[:16]}...")
            return None

        await self._lock.acquire()
        token = uuid4().hex
        self._holder = {
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        }
        logger.info(f"Acquired matching lock for run_id: {run_id[:16]}...")
        return token

    async def release(self, run_id: str, token: str) -> bool:
        holder = self._holder
        if holder is None:
            logger.debug("Lock already released")
            return True
        if holder["run_id"] != run_id or holder["token"] != token:
            logger.warning(
                f"Attempted to release lock with mismatched token/run_id: requested={run_id[:16]}..."
            )
            return False

        self._holder = None
        self._lock.release()
        logger.info(f"Released matching lock for run_id: {run_id[:16]}...")
        return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        return dict(self._holder) if self._holder else None


class RedisRunLock(RunLock):
    """
    Distributed lock using Redis.

    Features:
    - TTL-based expiration
    - Heartbeat key tracking acquisition time
    - Token-based ownership verification on release
    """

    _release_script = """
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
        redis.call('DEL', KEYS[2])
        return 1
    else
        return 2
    end
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            ttl_seconds: Default lock TTL (defaults to settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.run_lock_ttl_seconds
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

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        redis_client = await self._get_redis()
        ttl = ttl_seconds or self.ttl_seconds

        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(LOCK_KEY, lock_value, nx=True, ex=ttl)
        if acquired:
            await redis_client.set(HEARTBEAT_KEY, str(time.time()), ex=ttl)
            logger.info(f"Acquired matching lock for run_id: {run_id[:16]}...")
            return token

        existing_value = await redis_client.get(LOCK_KEY)
        if existing_value:
            try:
                existing_run_id = json.loads(existing_value).get("run_id", "unknown")
                logger.debug(f"Lock already held by run_id: {existing_run_id[:16]}...")
            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"Lock exists but value is invalid: {existing_value}")
        return None

    async def release(self, run_id: str, token: str) -> bool:
        """Safe unlock - only delete if run_id and token match (atomic)."""
        if not token:
            logger.warning("Unlock requested without token; refusing.")
            return False

        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                self._release_script,
                2,
                LOCK_KEY,
                HEARTBEAT_KEY,
                run_id,
                token,
            )
        except redis.RedisError as e:
            logger.error(f"Error executing release Lua script: {e}")
            return False

        if result == 0:
            logger.debug("Lock already released")
            return True
        if result == 1:
            logger.info(f"Released matching lock for run_id: {run_id[:16]}...")
            return True

        logger.warning(
            f"Attempted to release lock with mismatched token/run_id: requested={run_id[:16]}..."
        )
        return False

    async def force_unlock(self) -> bool:
        """Force unlock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        try:
            await redis_client.delete(LOCK_KEY, HEARTBEAT_KEY)
        except redis.RedisError as e:
            logger.error(f"Failed to force unlock: {e}")
            return False
        logger.warning("Force-cleared matching lock and heartbeat keys")
        return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        redis_client = await self._get_redis()
        value = await redis_client.get(LOCK_KEY)
        ttl = await redis_client.ttl(LOCK_KEY)
        if not value:
            return None

        try:
            data = json.loads(value)
            return {
                "run_id": data.get("run_id"),
                "token": data.get("token"),
                "started_at": data.get("started_at"),
                "ttl_seconds": ttl if ttl > 0 else None,
            }
        except (json.JSONDecodeError, AttributeError) as e:
            logger.error(f"Invalid lock value format: {e}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}


def build_run_lock(config: Settings = settings) -> RunLock:
    """Create the configured lock backend."""
    if config.run_lock_backend.lower() == "redis":
        return RedisRunLock(redis_url=config.redis_url, ttl_seconds=config.run_lock_ttl_seconds)
    return LocalRunLock()


# Global run lock instance
run_lock = build_run_lock()
