from __future__ import annotations
import asyncio
import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace

from apiwizard.config.models import EndpointConfig
from apiwizard.connectors.base import AsyncBaseConnector
from apiwizard.engine.resolver import Resolver, render
from apiwizard.errors import ConfigurationError, MissingParameterError
from apiwizard.planner.models import ExecutionDAG, FetchNode
from apiwizard.planner.resolution_planner import ResolutionPlanner

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("apiwizard.engine")


class AsyncResolutionEngine:
    """
    Request-time resolution of one endpoint.

    Flow per request:
      plan (structural checks) → parameter check → parallel fetch (DAG
      waves) → barrier → resolve (combine / map / transform) → render

    A failed fetch does not fail the request: the source's payload becomes
    None and a SOURCE_UNAVAILABLE warning is returned with whatever the
    remaining sources produce. Configuration problems are reported before
    any fetch is issued.

    Returns a dict; errors come back as {"error", "status_code"} the same
    way the gateway expects them.
    """

    def __init__(self, connectors: Dict[str, AsyncBaseConnector]) -> None:
        self._connectors = connectors

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        config: EndpointConfig,
        params: Optional[Dict[str, str]] = None,
        max_staleness_ms: int = 0,
        use_samples: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Args:
            use_samples: resolve against each source's cached sample_data
                instead of fetching (authoring preview).
            now: timestamp for wrapper metadata and RSS lastBuildDate.
        """
        params = dict(params or {})
        with tracer.start_as_current_span(
            "engine.execute",
            attributes={
                "endpoint.owner": config.owner,
                "endpoint.slug": config.slug,
                "endpoint.output_format": config.output_format,
                "max_staleness_ms": max_staleness_ms,
            },
        ) as root_span:
            warnings: List[str] = []
            source_timings: Dict[str, Dict[str, Any]] = {}

            # 1. Plan
            plan_start = time.time()
            with tracer.start_as_current_span("engine.plan"):
                try:
                    plan = ResolutionPlanner(config).plan(params)
                except ConfigurationError as exc:
                    logger.warning("Rejected %s/%s: %s", config.owner, config.slug, exc)
                    return {"error": str(exc), "details": exc.to_dict(), "status_code": 422}
            planning_ms = int((time.time() - plan_start) * 1000)

            # 2. Required parameters, before anything is fetched
            if not use_samples:
                try:
                    self._check_parameters(config, plan.fetch_dag, params)
                except MissingParameterError as exc:
                    return {"error": str(exc), "details": exc.to_dict(), "status_code": 400}

            # 3. Fetch
            fetch_start = time.time()
            if use_samples:
                node_results = {
                    node.source_id: {"data": copy.deepcopy(config.source_map()[node.source_id].sample_data)}
                    for node in plan.fetch_dag.nodes
                }
            else:
                node_results = await self._execute_dag(
                    config, plan.fetch_dag, max_staleness_ms, source_timings,
                )
            fetch_ms = int((time.time() - fetch_start) * 1000)

            payloads: Dict[str, Any] = {}
            freshness_ms = 0
            for source_id, result in node_results.items():
                payloads[source_id] = result["data"]
                freshness_ms = max(freshness_ms, result.get("freshness_ms", 0))
                if result.get("stale"):
                    warnings.append(f"STALE_DATA:{source_id}")

            # 4. Resolve
            resolve_start = time.time()
            with tracer.start_as_current_span("engine.resolve") as span:
                try:
                    resolution = Resolver(config).resolve(payloads)
                except ConfigurationError as exc:
                    return {"error": str(exc), "details": exc.to_dict(), "status_code": 422}
                span.set_attribute("engine.records", len(resolution.records))
            resolve_ms = int((time.time() - resolve_start) * 1000)

            for warning in resolution.warnings:
                if warning not in warnings:
                    warnings.append(warning)

            # 5. Build response
            total_ms = planning_ms + fetch_ms + resolve_ms
            root_span.set_attribute("engine.total_ms", total_ms)
            root_span.set_attribute("engine.records", len(resolution.records))
            root_span.set_attribute("engine.warnings", len(warnings))

            return {
                "records": resolution.records,
                "output": render(config, resolution, now=now or datetime.now(timezone.utc)),
                "output_format": config.output_format,
                "sources": resolution.sources,
                "warnings": warnings,
                "freshness_ms": freshness_ms,
                "from_cache": bool(node_results) and all(
                    r.get("from_cache") for r in node_results.values()
                ),
                "source_timings": source_timings,
                "timing": {
                    "total_ms": total_ms,
                    "planning_ms": planning_ms,
                    "fetch_ms": fetch_ms,
                    "resolve_ms": resolve_ms,
                },
            }

    # ------------------------------------------------------------------
    # DAG execution
    # ------------------------------------------------------------------

    def _connector_for(self, source_type: str) -> AsyncBaseConnector:
        connector = self._connectors.get(source_type)
        if connector is None:
            raise RuntimeError(f"No connector registered for source type '{source_type}'")
        return connector

    def _check_parameters(
        self,
        config: EndpointConfig,
        dag: ExecutionDAG,
        params: Dict[str, str],
    ) -> None:
        sources = config.source_map()
        for node in dag.nodes:
            source = sources[node.source_id]
            connector = self._connectors.get(source.type)
            if connector is not None:
                connector.check_parameters(source, params)

    async def _execute_dag(
        self,
        config: EndpointConfig,
        dag: ExecutionDAG,
        max_staleness_ms: int,
        source_timings: Dict[str, Dict[str, Any]],
    ) -> Dict[str, Dict[str, Any]]:
        """
        Execute the fetch DAG level by level.

        Each wave runs concurrently with asyncio.gather(); the next wave
        starts once every node of the current one has finished.
        """
        all_results: Dict[str, Dict[str, Any]] = {}
        levels = dag.get_levels()

        logger.info(
            "Executing DAG: %d fetch node(s) in %d wave(s) for %s/%s",
            len(dag.nodes), len(levels), config.owner, config.slug,
        )

        with tracer.start_as_current_span(
            "engine.execute_dag",
            attributes={"dag.nodes": len(dag.nodes), "dag.waves": len(levels)},
        ):
            for wave_idx, wave in enumerate(levels):
                logger.debug("Wave %d/%d: %s", wave_idx + 1, len(levels), [n.id for n in wave])
                wave_results = await asyncio.gather(*[
                    self._execute_node(config, node, max_staleness_ms, source_timings)
                    for node in wave
                ])
                for source_id, result in wave_results:
                    all_results[source_id] = result

        return all_results

    async def _execute_node(
        self,
        config: EndpointConfig,
        node: FetchNode,
        max_staleness_ms: int,
        source_timings: Dict[str, Dict[str, Any]],
    ) -> Tuple[str, Dict[str, Any]]:
        source = config.source_map()[node.source_id]
        node_start = time.time()
        with tracer.start_as_current_span(
            f"engine.fetch.{source.id}",
            attributes={"source.id": source.id, "source.type": source.type},
        ) as span:
            try:
                connector = self._connector_for(source.type)
                result = await connector.get_data(source, node.params, max_staleness_ms)
            except (RuntimeError, ConfigurationError) as exc:
                # The resolver reports the None payload as SOURCE_UNAVAILABLE.
                logger.warning("Fetch failed for %s: %s", source.id, exc)
                span.set_attribute("source.error", str(exc))
                source_timings[source.id] = {
                    "fetch_ms": int((time.time() - node_start) * 1000),
                    "from_cache": False,
                    "stale": False,
                    "error": str(exc),
                }
                return source.id, {"data": None, "from_cache": False}

            node_ms = int((time.time() - node_start) * 1000)
            span.set_attribute("source.total_ms", node_ms)
            span.set_attribute("source.from_cache", result.get("from_cache", False))
            source_timings[source.id] = {
                "fetch_ms": node_ms,
                "from_cache": result.get("from_cache", False),
                "stale": result.get("stale", False),
                "rate_limit_status": result.get("rate_limit_status", {}),
            }

        return source.id, result
