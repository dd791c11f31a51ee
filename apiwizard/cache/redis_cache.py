from __future__ import annotations
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import msgpack
import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SampleCache:
    """
    Distributed TTL cache for fetched source payloads.

    Connection tests, previews and record requests for the same source and
    parameters share one entry, so iterating on mappings in the authoring UI
    does not hammer upstream APIs.

    Key schema:
        apiwizard:sample:{source_id}:{md5(sorted_params)}

    Value: MessagePack-serialized dict:
        {"data": <any JSON payload>, "fetched_at": float}

    TTL is set via native Redis EXPIRE (per source freshness_ttl_ms).
    """

    KEY_PREFIX = "apiwizard:sample"

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    def _build_key(self, source_id: str, params: Optional[Dict[str, Any]] = None) -> str:
        param_str = json.dumps(sorted((params or {}).items()), sort_keys=True, default=str)
        param_hash = hashlib.md5(param_str.encode()).hexdigest()[:12]
        return f"{self.KEY_PREFIX}:{source_id}:{param_hash}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(
        self,
        source_id: str,
        max_staleness_ms: int,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Tuple[Any, int]]:
        """
        Retrieve a cached payload if within the staleness budget.

        max_staleness_ms == 0 means "live only" and always misses.

        Returns:
            (payload, age_ms) on a hit within budget, None otherwise.
        """
        if max_staleness_ms == 0:
            return None

        key = self._build_key(source_id, params)
        raw = await self._redis.get(key)
        if raw is None:
            return None

        try:
            entry = msgpack.unpackb(raw, raw=False)
        except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError, ValueError) as exc:
            logger.warning("Cache deserialization failed for %s: %s", key, exc)
            return None

        age_ms = int((time.time() - entry["fetched_at"]) * 1000)
        if age_ms > max_staleness_ms:
            return None

        logger.debug("Cache HIT %s (age=%dms)", key, age_ms)
        return entry["data"], age_ms

    async def put(
        self,
        source_id: str,
        data: Any,
        ttl_ms: int,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Store a payload with the source's configured TTL."""
        key = self._build_key(source_id, params)
        packed = msgpack.packb({"data": data, "fetched_at": time.time()}, use_bin_type=True, default=str)
        ttl_seconds = max(1, ttl_ms // 1000)
        await self._redis.set(key, packed, ex=ttl_seconds)
        logger.debug("Cache PUT %s (ttl=%ds)", key, ttl_seconds)

    async def invalidate(self, source_id: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self._redis.delete(self._build_key(source_id, params))

    async def ping(self) -> bool:
        """Health check: True if Redis is reachable."""
        try:
            return await self._redis.ping()
        except (RedisError, OSError):
            return False
