from __future__ import annotations
import copy
import logging
from typing import Any, Dict, List

from apiwizard.config.models import DataRelationship
from apiwizard.errors import JoinCycleError
from apiwizard.paths.resolver import get_value, set_value
from apiwizard.planner.models import ExecutionDAG, JoinNode

logger = logging.getLogger(__name__)


def _keys_match(parent_key: Any, child_key: Any, many_to_many: bool) -> bool:
    if parent_key is None or child_key is None:
        return False
    if parent_key == child_key:
        return True
    if many_to_many:
        # Either side may hold a list of ids (e.g. tag_ids on the child).
        if isinstance(child_key, list) and parent_key in child_key:
            return True
        if isinstance(parent_key, list) and child_key in parent_key:
            return True
    return False


def join(
    parents: List[Dict[str, Any]],
    children: List[Dict[str, Any]],
    relationship: DataRelationship,
) -> List[Dict[str, Any]]:
    """
    Embed matching children into copies of `parents`.

    A child matches when child[foreign_key] == parent[parent_key]. one-to-many
    and many-to-many embed a list under `embed_as`; one-to-one embeds the
    first match or None. Parents without a match are dropped unless
    `include_orphans` is set. Inputs are never mutated.

    Raises:
        InvalidRelationshipError: if the relationship joins a source to itself.
    """
    relationship.check()
    many_to_many = relationship.type == "many-to-many"

    joined: List[Dict[str, Any]] = []
    orphans = 0
    for parent in parents:
        if not isinstance(parent, dict):
            continue
        parent_key = get_value(parent, relationship.parent_key)
        matches = [
            child for child in children
            if isinstance(child, dict)
            and _keys_match(parent_key, get_value(child, relationship.foreign_key), many_to_many)
        ]
        if not matches and not relationship.include_orphans:
            orphans += 1
            continue

        record = copy.deepcopy(parent)
        if relationship.type == "one-to-one":
            embedded = copy.deepcopy(matches[0]) if matches else None
        else:
            embedded = copy.deepcopy(matches)
        set_value(record, relationship.embed_as, embedded)
        joined.append(record)

    if orphans:
        logger.debug(
            "Relationship %s dropped %d orphan parent(s) of %s",
            relationship.id, orphans, relationship.parent_source,
        )
    return joined


def join_order(relationships: List[DataRelationship]) -> List[DataRelationship]:
    """
    Order relationships child-first: a relationship whose child source is the
    parent of another relationship runs after that one, so nested children
    are already embedded when their parent is joined.

    Raises:
        InvalidRelationshipError: a relationship joins a source to itself.
        JoinCycleError: the relationships form a cycle.
    """
    dag = ExecutionDAG()
    for rel in relationships:
        rel.check()
        dag.add_node(JoinNode(id=rel.id, parent_source=rel.parent_source, child_source=rel.child_source))

    for rel in relationships:
        for other in relationships:
            if other.id != rel.id and other.parent_source == rel.child_source:
                dag.add_dependency(rel.id, other.id)

    try:
        levels = dag.get_levels()
    except ValueError as exc:
        raise JoinCycleError(
            str(exc), relationship_ids=[r.id for r in relationships]
        ) from exc

    by_id = {r.id: r for r in relationships}
    return [by_id[node.id] for wave in levels for node in wave]


def apply_relationships(
    streams: Dict[str, List[Dict[str, Any]]],
    relationships: List[DataRelationship],
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Run every relationship over per-source record streams and return the
    updated streams. Child sources are folded into their parents and no
    longer appear as standalone streams.
    """
    current = dict(streams)
    children = set()
    for rel in join_order(relationships):
        parents = current.get(rel.parent_source, [])
        kids = current.get(rel.child_source, [])
        current[rel.parent_source] = join(parents, kids, rel)
        children.add(rel.child_source)
    return {sid: records for sid, records in current.items() if sid not in children}
