from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FetchNode:
    """
    A single unit of work in the execution DAG: fetch one data source.

    depends_on lists node ids whose payloads must be available first. Fetches
    are independent today (one parallel wave); join nodes use the same DAG
    type with relationship dependencies.
    """

    id: str                                         # "fetch_events"
    source_id: str                                  # "events"
    params: Dict[str, str] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)   # node IDs that must run first


@dataclass
class JoinNode:
    """One relationship join; runs after every join that feeds its child source."""

    id: str                                         # relationship id
    parent_source: str
    child_source: str
    depends_on: List[str] = field(default_factory=list)


@dataclass
class ExecutionDAG:
    """
    Directed acyclic graph of FetchNodes / JoinNodes.

    get_levels() returns execution waves via Kahn's BFS topological sort.
    Each wave is a list of nodes that can run in parallel with asyncio.gather().
    """

    nodes: List[Any] = field(default_factory=list)

    def add_node(self, node: Any) -> None:
        self.nodes.append(node)

    def add_dependency(self, dependent_id: str, depends_on_id: str) -> None:
        """Mark that node `dependent_id` cannot start until `depends_on_id` completes."""
        for node in self.nodes:
            if node.id == dependent_id:
                if depends_on_id not in node.depends_on:
                    node.depends_on.append(depends_on_id)
                return
        raise ValueError(f"Node not found: {dependent_id}")

    def get_levels(self) -> List[List[Any]]:
        """
        Kahn's BFS-based topological sort. Returns execution waves.

        Waves keep the insertion order of their nodes so results are
        deterministic for a given configuration.

        Raises:
            ValueError: if the graph contains a cycle.
        """
        if not self.nodes:
            return []

        # in-degree per node (number of unfulfilled dependencies)
        in_degree: Dict[str, int] = {n.id: len(n.depends_on) for n in self.nodes}

        levels: List[List[Any]] = []
        remaining = [n for n in self.nodes]

        while remaining:
            wave = [n for n in remaining if in_degree[n.id] == 0]
            if not wave:
                raise ValueError(
                    f"ExecutionDAG has a cycle among nodes: {[n.id for n in remaining]}"
                )
            levels.append(wave)

            done = {n.id for n in wave}
            remaining = [n for n in remaining if n.id not in done]
            for candidate in remaining:
                in_degree[candidate.id] -= sum(1 for dep in candidate.depends_on if dep in done)

        return levels


@dataclass
class ResolutionPlan:
    """
    Output of ResolutionPlanner.plan(): what to fetch, how to join, and the
    configuration snapshot the resolution runs against.
    """

    endpoint_key: str
    fetch_dag: ExecutionDAG
    join_order: List[str] = field(default_factory=list)     # relationship ids, child-first
    params: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    missing_params: Optional[List[str]] = None
