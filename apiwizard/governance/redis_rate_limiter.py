from __future__ import annotations
import logging
import math
import time
from typing import Any, Dict

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# Atomic refill + consume for one source bucket.
#
# KEYS[1] = apiwizard:ratelimit:{source_id}
# ARGV    = capacity, refill_rate (tokens/s), requested, now (Unix ts)
#
# Returns: [allowed (0|1), remaining (int), retry_after_ms (int)]
_CONSUME_LUA = """
local capacity  = tonumber(ARGV[1])
local rate      = tonumber(ARGV[2])
local requested = tonumber(ARGV[3])
local now       = tonumber(ARGV[4])

local state  = redis.call('HMGET', KEYS[1], 'tokens', 'last_refill')
local tokens = tonumber(state[1]) or capacity
local since  = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - since) * rate)

local allowed, wait_ms = 0, 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
elseif rate > 0 then
    wait_ms = math.ceil((requested - tokens) / rate * 1000)
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'last_refill', tostring(now))
if rate > 0 then
    redis.call('EXPIRE', KEYS[1], math.ceil(capacity / rate * 2))
end
return {allowed, math.floor(tokens), wait_ms}
"""


class SourceRateLimiter:
    """
    Token bucket per data source, shared through Redis.

    Previews, connection tests and record requests all draw from the same
    bucket, so together they stay under the upstream API's budget
    (DataSource.rate_limit_capacity / rate_limit_refill_rate).

    Key schema:
        apiwizard:ratelimit:{source_id}   hash {tokens, last_refill}
    """

    KEY_PREFIX = "apiwizard:ratelimit"

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client
        self._consume = self._redis.register_script(_CONSUME_LUA)

    def _key(self, source_id: str) -> str:
        return f"{self.KEY_PREFIX}:{source_id}"

    async def consume(
        self,
        source_id: str,
        capacity: int,
        refill_rate: float,
        amount: int = 1,
    ) -> bool:
        """True if `amount` tokens were taken, False if the source is throttled."""
        allowed, remaining, retry_after_ms = await self._consume(
            keys=[self._key(source_id)],
            args=[capacity, refill_rate, amount, time.time()],
        )
        if not allowed:
            logger.warning(
                "Source %s throttled: %d token(s) left, retry in %dms",
                source_id, int(remaining), int(retry_after_ms),
            )
        return bool(allowed)

    async def get_status(
        self,
        source_id: str,
        capacity: int,
        refill_rate: float = 0.0,
    ) -> Dict[str, Any]:
        """
        Bucket state projected to now, without consuming.

        retry_after_ms is 0 while at least one token is available.
        """
        tokens_raw, last_raw = await self._redis.hmget(self._key(source_id), "tokens", "last_refill")
        if tokens_raw is None:
            tokens = float(capacity)
        else:
            elapsed = max(0.0, time.time() - float(last_raw or 0))
            tokens = min(float(capacity), float(tokens_raw) + elapsed * refill_rate)

        retry_after_ms = 0
        if tokens < 1 and refill_rate > 0:
            retry_after_ms = math.ceil((1 - tokens) / refill_rate * 1000)
        return {
            "source_id": source_id,
            "remaining": int(tokens),
            "capacity": capacity,
            "retry_after_ms": retry_after_ms,
        }
