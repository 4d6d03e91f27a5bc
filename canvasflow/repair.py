"""Load-time reconciliation of the flat node list.

Every pass here is a pure function over a list of nodes: it returns a new list
plus a record of what it changed, and never mutates the input nodes.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable

from .nodes import ESSENTIAL_IDS, ROOT_ID, ContentNode, seed_nodes


logger = logging.getLogger(__name__)


def required_nodes() -> dict[str, ContentNode]:
    """Static table of containers that must always exist, keyed by id."""
    return {node.id: node for node in seed_nodes() if node.id in ESSENTIAL_IDS}


def reconcile(nodes: Iterable[ContentNode]) -> tuple[list[ContentNode], list[str]]:
    """Re-add missing essential containers. Other nodes pass through untouched."""
    out = list(nodes)
    present = {n.id for n in out}
    added: list[str] = []
    for node_id, node in required_nodes().items():
        if node_id in present:
            continue
        out.append(node)
        added.append(node_id)
    if added:
        logger.warning("Restored missing essential containers: %s", ", ".join(added))
    return out, added


def detach_root(nodes: Iterable[ContentNode]) -> list[ContentNode]:
    out: list[ContentNode] = []
    for node in nodes:
        if node.id == ROOT_ID and node.parent_id is not None:
            logger.warning("Root had parentId=%s; cleared", node.parent_id)
            node = replace(node, parent_id=None)
        out.append(node)
    return out


def find_cycle_members(nodes: Iterable[ContentNode]) -> set[str]:
    """Ids of nodes whose parent chain loops back on itself."""
    parent_of = {n.id: n.parent_id for n in nodes}
    parent_of[ROOT_ID] = None
    state: dict[str, int] = {}  # 1 = on current path, 2 = resolved
    members: set[str] = set()
    for start in parent_of:
        if start in state:
            continue
        path: list[str] = []
        current: str | None = start
        while current is not None and current in parent_of and current not in state:
            state[current] = 1
            path.append(current)
            current = parent_of[current]
        if current is not None and state.get(current) == 1:
            members.update(path[path.index(current):])
        for node_id in path:
            state[node_id] = 2
    return members


def repair_cycles(nodes: Iterable[ContentNode]) -> tuple[list[ContentNode], list[str]]:
    """Re-parent every member of a parent cycle to root."""
    nodes = list(nodes)
    members = find_cycle_members(nodes)
    if not members:
        return nodes, []
    logger.warning("Broke parent cycle by moving %d node(s) to root: %s", len(members), sorted(members))
    return [replace(n, parent_id=ROOT_ID) if n.id in members else n for n in nodes], sorted(members)


def dedupe(nodes: Iterable[ContentNode]) -> list[ContentNode]:
    """Keep the last record for each id, at the position of its first occurrence."""
    latest: dict[str, ContentNode] = {}
    for node in nodes:
        if node.id in latest:
            logger.warning("Duplicate record for %s; keeping the latest", node.id)
        latest[node.id] = node
    return list(latest.values())


def needs_span_reset(nodes: Iterable[ContentNode]) -> bool:
    return any(n.grid_span_col != 1 or n.grid_span_row != 1 for n in nodes)


def normalize_grid_spans(nodes: Iterable[ContentNode]) -> list[ContentNode]:
    """One-time migration: every item back to a 1x1 grid cell."""
    return [
        n if (n.grid_span_col == 1 and n.grid_span_row == 1) else replace(n, grid_span_col=1, grid_span_row=1)
        for n in nodes
    ]


def repair_all(nodes: Iterable[ContentNode]) -> tuple[list[ContentNode], dict[str, list[str]]]:
    out = dedupe(nodes)
    out = detach_root(out)
    out, broken = repair_cycles(out)
    out, added = reconcile(out)
    return out, {"cycles": broken, "restored": added}
