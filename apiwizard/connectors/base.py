from __future__ import annotations
import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from opentelemetry import trace

from apiwizard.cache.redis_cache import SampleCache
from apiwizard.config.models import DataSource
from apiwizard.discovery.fields import FieldInfo, discover
from apiwizard.errors import ConfigurationError
from apiwizard.governance.redis_rate_limiter import SourceRateLimiter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("apiwizard.connector")

MOCK_URL = "mock"


@dataclass
class ConnectionTestResult:
    success: bool
    source: DataSource
    fields: List[FieldInfo] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


class AsyncBaseConnector(ABC):
    """
    Abstract base for all async source connectors.

    Responsibilities (subclasses override only fetch_data):
    - Redis sample-cache check before every fetch
    - Distributed per-source rate limit, with stale-cache fallback
    - Exponential-backoff retry: 3 attempts, 2x delay, ±10% jitter
    - Shared aiohttp.ClientSession (connection pooling)
    - OpenTelemetry tracing spans

    A source whose URL is "mock", or that has no type-specific config but
    carries sample_data, is served from sample_data (dev/demo mode).
    """

    source_type = ""

    MAX_RETRIES = 3
    RETRY_BASE_DELAY_S = 0.5
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        rate_limiter: SourceRateLimiter,
        cache: SampleCache,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._cache = cache
        self._session = session
        self._own_session = session is None
        self._logger = logging.getLogger(f"apiwizard.connector.{self.source_type or 'base'}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10)
            )
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def get_data(
        self,
        source: DataSource,
        params: Optional[Dict[str, str]] = None,
        max_staleness_ms: int = 0,
    ) -> Dict[str, Any]:
        """
        Orchestrates: cache check → rate limit → fetch+retry → cache write-back.

        Returns:
            {data, freshness_ms, from_cache, rate_limit_status}
            May include "stale": True if returning stale data due to rate limit.

        Raises:
            RuntimeError("RATE_LIMIT_EXHAUSTED:...") budget exhausted and no stale data.
            RuntimeError("SOURCE_TIMEOUT:...")        all retries failed.
            MissingParameterError                     a required parameter has no value.
        """
        params = params or {}
        with tracer.start_as_current_span(
            f"connector.{self.source_type}.get_data",
            attributes={
                "source.id": source.id,
                "source.type": source.type,
                "source.max_staleness_ms": max_staleness_ms,
            },
        ) as span:
            # 1. Cache check
            cached = await self._cache.get(source.id, max_staleness_ms, params)
            if cached:
                data, age_ms = cached
                span.set_attribute("source.from_cache", True)
                span.set_attribute("source.freshness_ms", age_ms)
                return {
                    "data": data,
                    "freshness_ms": age_ms,
                    "from_cache": True,
                    "rate_limit_status": await self._rate_limiter.get_status(
                        source.id, source.rate_limit_capacity, source.rate_limit_refill_rate,
                    ),
                }

            # 2. Rate limit check
            allowed = await self._rate_limiter.consume(
                source.id, source.rate_limit_capacity, source.rate_limit_refill_rate,
            )
            if not allowed:
                stale = await self._cache.get(source.id, 999_999_999, params)
                rate_status = await self._rate_limiter.get_status(
                    source.id, source.rate_limit_capacity, source.rate_limit_refill_rate,
                )
                if stale:
                    stale_data, stale_age_ms = stale
                    span.set_attribute("source.stale_fallback", True)
                    self._logger.warning(
                        "Rate limit exhausted for %s, returning stale sample (age=%dms)",
                        source.id, stale_age_ms,
                    )
                    return {
                        "data": stale_data,
                        "freshness_ms": stale_age_ms,
                        "from_cache": True,
                        "stale": True,
                        "rate_limit_status": rate_status,
                    }
                span.set_attribute("source.rate_limited", True)
                raise RuntimeError(
                    f"RATE_LIMIT_EXHAUSTED:{source.id}:{rate_status.get('remaining', 0)}"
                )

            # 3. Fetch with retry
            fetch_start = time.time()
            data = await self._fetch_with_retry(source, params)
            fetch_ms = int((time.time() - fetch_start) * 1000)
            span.set_attribute("source.fetch_ms", fetch_ms)
            span.set_attribute("source.from_cache", False)

            # 4. Write-back
            await self._cache.put(source.id, data, source.freshness_ttl_ms, params)

            return {
                "data": data,
                "freshness_ms": fetch_ms,
                "from_cache": False,
                "rate_limit_status": await self._rate_limiter.get_status(
                    source.id, source.rate_limit_capacity, source.rate_limit_refill_rate,
                ),
            }

    async def fetch_sample(
        self,
        source: DataSource,
        params: Optional[Dict[str, str]] = None,
        max_staleness_ms: int = 0,
    ) -> Any:
        """Payload for `source`, or None on any failure (logged)."""
        try:
            result = await self.get_data(source, params, max_staleness_ms)
        except (RuntimeError, ConfigurationError) as exc:
            self._logger.warning("Sample fetch failed for %s: %s", source.id, exc)
            return None
        return result["data"]

    async def test_connection(
        self,
        source: DataSource,
        test_values: Optional[Dict[str, str]] = None,
    ) -> ConnectionTestResult:
        """
        Fetch a live sample and discover its fields.

        On success the returned source is a copy carrying `fields` and
        `sample_data`; the input source is left untouched.

        Raises:
            MissingParameterError: a required parameter mapping has no value.
        """
        self.check_parameters(source, test_values or {})
        try:
            result = await self.get_data(source, test_values, max_staleness_ms=0)
        except RuntimeError as exc:
            return ConnectionTestResult(success=False, source=source, error=str(exc))

        payload = result["data"]
        discovered = discover(payload)
        updated = source.model_copy(update={
            "fields": discovered.paths(),
            "sample_data": payload,
        })
        warnings = list(discovered.warnings)
        if result.get("stale"):
            warnings.append("STALE_DATA")
        return ConnectionTestResult(
            success=True, source=updated, fields=discovered.fields, warnings=warnings,
        )

    def check_parameters(self, source: DataSource, params: Dict[str, str]) -> None:
        """Hook for connectors with parameterized URLs. No-op by default."""

    # ------------------------------------------------------------------
    # Abstract: subclasses implement data fetching
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_data(self, source: DataSource, params: Dict[str, str]) -> Any:
        """
        Perform the actual fetch and return the parsed payload.
        Raise aiohttp.ClientResponseError for HTTP errors so _fetch_with_retry
        can apply the retry policy.
        """
        ...

    def is_mock(self, source: DataSource, url: Optional[str]) -> bool:
        return url == MOCK_URL or (url is None and source.sample_data is not None)

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def _fetch_with_retry(self, source: DataSource, params: Dict[str, str]) -> Any:
        """Wrap fetch_data() with exponential-backoff retry."""
        last_exc: Optional[Exception] = None
        for attempt in range(self.MAX_RETRIES):
            try:
                with tracer.start_as_current_span(
                    f"connector.{self.source_type}.fetch_attempt",
                    attributes={"attempt": attempt + 1, "source.id": source.id},
                ):
                    return await asyncio.wait_for(
                        self.fetch_data(source, params), timeout=source.timeout_s
                    )
            except ConfigurationError:
                raise
            except (aiohttp.ClientResponseError, asyncio.TimeoutError, aiohttp.ClientConnectionError) as exc:
                status = getattr(exc, "status", None)
                if status is not None and status not in self.RETRYABLE_STATUS_CODES:
                    # 400/401/403/404: non-retryable
                    raise RuntimeError(f"SOURCE_HTTP_ERROR:{source.id}:{status}") from exc
                last_exc = exc
                if attempt < self.MAX_RETRIES - 1:
                    delay = self.RETRY_BASE_DELAY_S * (2 ** attempt)
                    jitter = random.uniform(0, delay * 0.1)
                    self._logger.warning(
                        "Retryable error for %s (attempt %d/%d): %s, sleeping %.2fs",
                        source.id, attempt + 1, self.MAX_RETRIES, status or type(exc).__name__,
                        delay + jitter,
                    )
                    await asyncio.sleep(delay + jitter)
            except Exception as exc:
                last_exc = exc
                break

        raise RuntimeError(
            f"SOURCE_TIMEOUT:{source.id} after {self.MAX_RETRIES} attempts ({last_exc})"
        ) from last_exc
