from __future__ import annotations
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, ValidationError

from apiwizard.cache.redis_cache import SampleCache
from apiwizard.config.models import DataSource, EndpointConfig
from apiwizard.config.normalize import normalize_endpoint
from apiwizard.config.registry import EndpointRegistry
from apiwizard.connectors.api import ApiConnector
from apiwizard.connectors.base import AsyncBaseConnector
from apiwizard.connectors.database import DatabaseConnector
from apiwizard.connectors.file import FileConnector
from apiwizard.connectors.rss import RssConnector
from apiwizard.discovery.fields import discover, explore, suggest_mappings
from apiwizard.engine.resolution_engine import AsyncResolutionEngine
from apiwizard.errors import ConfigurationError, MissingParameterError
from apiwizard.governance.redis_rate_limiter import SourceRateLimiter
from apiwizard.paths.resolver import get_value
from apiwizard.planner.resolution_planner import validate_endpoint

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
RESOLUTION_COUNT = Counter(
    "apiwizard_resolutions_total",
    "Total endpoint resolutions processed",
    ["status", "endpoint"],
)
RESOLUTION_LATENCY = Histogram(
    "apiwizard_resolution_latency_seconds",
    "Endpoint resolution latency",
    ["endpoint"],
    buckets=[0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

RSS_MEDIA_TYPE = "application/rss+xml"

# ---------------------------------------------------------------------------
# Shared process-level resources (populated in lifespan)
# ---------------------------------------------------------------------------
_registry: Optional[EndpointRegistry] = None
_engine: Optional[AsyncResolutionEngine] = None
_connectors: Dict[str, AsyncBaseConnector] = {}
_redis: Optional[aioredis.Redis] = None


def _build_connectors(
    cache: SampleCache,
    rate_limiter: SourceRateLimiter,
    database_path: str = ":memory:",
) -> Dict[str, AsyncBaseConnector]:
    """One connector per source type, shared by every endpoint."""
    return {
        "api": ApiConnector(rate_limiter, cache),
        "rss": RssConnector(rate_limiter, cache),
        "file": FileConnector(rate_limiter, cache),
        "database": DatabaseConnector(rate_limiter, cache, database_path=database_path),
    }


def _init_tracing() -> None:
    """
    Initialize OpenTelemetry tracing.

    - OTEL_EXPORTER_OTLP_ENDPOINT set → OTLP HTTP exporter (Jaeger, Tempo, etc.)
    - Otherwise → ConsoleSpanExporter (visible in server stdout for local runs)
    """
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        resource = Resource.create({
            "service.name": "apiwizard-gateway",
            "service.version": "1.0.0",
        })
        provider = TracerProvider(resource=resource)

        otlp_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
        if otlp_endpoint:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info("OpenTelemetry: OTLP exporter → %s", otlp_endpoint)
        else:
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            logger.info("OpenTelemetry: ConsoleSpanExporter (set OTEL_EXPORTER_OTLP_ENDPOINT for production)")

        trace.set_tracer_provider(provider)
    except Exception as exc:
        logger.warning("OpenTelemetry init failed (non-fatal): %s", exc)


# ---------------------------------------------------------------------------
# App lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _registry, _engine, _connectors, _redis

    # 0. Tracing (first: other modules read the global provider)
    _init_tracing()

    # 1. Endpoint registry
    config_dir = os.environ.get("ENDPOINT_CONFIG_DIR", "configs/endpoints")
    _registry = EndpointRegistry(config_dir=config_dir)
    try:
        _registry.load_all()
    except FileNotFoundError:
        logger.warning("Endpoint config dir not found: %s, no endpoints loaded", config_dir)

    # 2. Redis (with graceful fallback for local dev without Redis)
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    try:
        _redis = aioredis.from_url(redis_url, decode_responses=False)
        await _redis.ping()
        logger.info("Redis connected: %s", redis_url)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("Redis unavailable (%s), sample cache/rate-limit disabled", exc)
        _redis = None

    cache = SampleCache(_redis) if _redis else _NullCache()
    rate_limiter = SourceRateLimiter(_redis) if _redis else _NullRateLimiter()

    # 3. Connectors + engine
    database_path = os.environ.get("DATABASE_PATH", ":memory:")
    _connectors = _build_connectors(cache, rate_limiter, database_path=database_path)
    _engine = AsyncResolutionEngine(_connectors)

    logger.info("API Wizard gateway started. Endpoints: %s", _registry.all_keys())

    yield

    # Shutdown: close connections
    for conn in _connectors.values():
        await conn.close()
    if _redis:
        await _redis.aclose()
    logger.info("API Wizard gateway shut down.")


app = FastAPI(title="API Wizard Gateway", version="1.0.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class DiscoverRequest(BaseModel):
    sample: Any = None
    data_path: Optional[str] = None
    explore: bool = False
    target_paths: List[str] = []


class EndpointRequest(BaseModel):
    # Raw endpoint document; flat or legacy nested shapes are both accepted.
    endpoint: Dict[str, Any]


class PreviewRequest(EndpointRequest):
    params: Dict[str, str] = {}
    use_samples: bool = True
    max_staleness_ms: int = 0


class SourceTestRequest(BaseModel):
    source: Dict[str, Any]
    test_values: Dict[str, str] = {}


def _parse_endpoint(raw: Dict[str, Any]) -> EndpointConfig:
    try:
        return normalize_endpoint(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))


def _error_response(result: Dict[str, Any], trace_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=result.get("status_code", 500),
        content={"error": result["error"], "details": result.get("details"), "trace_id": trace_id},
    )


def _endpoint_label(config: EndpointConfig) -> str:
    return f"{config.owner}/{config.slug}"


# ---------------------------------------------------------------------------
# Authoring routes
# ---------------------------------------------------------------------------

@app.post("/v1/discover")
async def discover_fields(request: DiscoverRequest):
    """
    List the field paths of a sample payload.

    explore=false: first-element, one-level discovery under data_path.
    explore=true:  full-depth explorer with '[*]' and '[n]' paths.
    target_paths, when given, adds mapping suggestions by name similarity.
    """
    try:
        result = discover(request.sample, request.data_path)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())

    if request.explore:
        target = get_value(request.sample, request.data_path) if request.data_path else request.sample
        fields = explore(target)
    else:
        fields = result.fields
    response: Dict[str, Any] = {
        "fields": [{"path": f.path, "type": f.inferred_type, "sample": f.sample} for f in fields],
        "warnings": result.warnings,
    }
    if request.target_paths:
        response["suggestions"] = suggest_mappings([f.path for f in fields], request.target_paths)
    return response


@app.post("/v1/validate")
async def validate(request: EndpointRequest):
    config = _parse_endpoint(request.endpoint)
    return validate_endpoint(config).to_dict()


@app.post("/v1/preview")
async def preview(request: PreviewRequest):
    """Resolve an unsaved endpoint, by default against cached sample_data."""
    config = _parse_endpoint(request.endpoint)
    trace_id = str(uuid.uuid4())
    result = await _engine.execute(
        config,
        params=request.params,
        max_staleness_ms=request.max_staleness_ms,
        use_samples=request.use_samples,
    )
    if "error" in result:
        return _error_response(result, trace_id)
    result["trace_id"] = trace_id
    return result


@app.post("/v1/sources/test")
async def test_source(request: SourceTestRequest):
    try:
        source = DataSource.model_validate(request.source)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))

    connector = _connectors.get(source.type)
    if connector is None:
        raise HTTPException(status_code=400, detail=f"No connector for source type '{source.type}'")
    try:
        result = await connector.test_connection(source, request.test_values)
    except MissingParameterError as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())

    return {
        "success": result.success,
        "error": result.error,
        "warnings": result.warnings,
        "fields": [{"path": f.path, "type": f.inferred_type, "sample": f.sample} for f in result.fields],
        "source": result.source.model_dump(mode="json", exclude_none=True),
    }


@app.put("/v1/endpoints")
async def upsert_endpoint(request: EndpointRequest):
    """Create or replace an endpoint (idempotent per owner + slug)."""
    config = _parse_endpoint(request.endpoint)
    saved = _registry.upsert(config)
    return {"owner": saved.owner, "slug": saved.slug, "status": saved.status}


@app.post("/v1/endpoints/{owner}/{slug}/finalize")
async def finalize_endpoint(owner: str, slug: str):
    config = _registry.get(owner, slug)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Unknown endpoint {owner}/{slug}")

    report = validate_endpoint(config)
    if not report.valid:
        return JSONResponse(status_code=422, content=report.to_dict())

    finalized = _registry.finalize(owner, slug)
    return {"owner": finalized.owner, "slug": finalized.slug, "status": finalized.status}


# ---------------------------------------------------------------------------
# Serving route
# ---------------------------------------------------------------------------

@app.get("/v1/endpoints/{owner}/{slug}/records")
async def endpoint_records(
    owner: str,
    slug: str,
    request: Request,
    max_staleness_ms: int = Query(0, ge=0),
):
    """
    Serve a published endpoint.

    Query parameters other than max_staleness_ms are passed to the sources'
    parameter mappings. RSS endpoints answer with application/rss+xml.
    """
    config = _registry.get(owner, slug) if _registry else None
    if config is None:
        raise HTTPException(status_code=404, detail=f"Unknown endpoint {owner}/{slug}")
    if config.status != "active":
        raise HTTPException(status_code=409, detail=f"Endpoint {owner}/{slug} is a draft")

    params = {k: v for k, v in request.query_params.items() if k != "max_staleness_ms"}
    label = _endpoint_label(config)
    trace_id = str(uuid.uuid4())
    start_time = time.time()
    try:
        result = await _engine.execute(
            config, params=params, max_staleness_ms=max_staleness_ms,
        )
    except Exception as exc:
        RESOLUTION_COUNT.labels(status="500", endpoint=label).inc()
        logger.exception("Resolution failed for %s", label)
        raise HTTPException(status_code=500, detail=str(exc))
    duration = time.time() - start_time

    if "error" in result:
        RESOLUTION_COUNT.labels(status=str(result.get("status_code", 500)), endpoint=label).inc()
        return _error_response(result, trace_id)

    RESOLUTION_LATENCY.labels(endpoint=label).observe(duration)
    RESOLUTION_COUNT.labels(status="200", endpoint=label).inc()

    headers = {"X-Trace-Id": trace_id}
    if result["warnings"]:
        headers["X-Resolution-Warnings"] = ",".join(w.split(":", 1)[0] for w in result["warnings"])
    if config.output_format == "rss":
        return Response(content=result["output"], media_type=RSS_MEDIA_TYPE, headers=headers)
    return JSONResponse(content=result["output"], headers=headers)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    """Liveness and readiness check."""
    checks: Dict[str, str] = {}

    # Redis
    if _redis:
        try:
            await _redis.ping()
            checks["redis"] = "ok"
        except (aioredis.RedisError, OSError) as exc:
            checks["redis"] = f"error: {exc}"
    else:
        checks["redis"] = "disabled"

    # Endpoint registry
    checks["endpoints"] = str(_registry.count()) if _registry else "0"

    all_ok = all(v in ("ok", "disabled") or v.isdigit() for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Null implementations for Redis-unavailable mode
# ---------------------------------------------------------------------------

class _NullCache:
    """No-op sample cache used when Redis is unavailable (local dev without Docker)."""
    async def get(self, *a, **kw): return None
    async def put(self, *a, **kw): pass
    async def invalidate(self, *a, **kw): pass
    async def ping(self): return False


class _NullRateLimiter:
    """No-op rate limiter that always allows (for local dev without Redis)."""
    async def consume(self, *a, **kw): return True
    async def get_status(self, source_id: str = "", capacity: int = 0, refill_rate: float = 0.0):
        return {"source_id": source_id, "remaining": 9999, "capacity": 9999, "retry_after_ms": 0}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
