from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .nodes import ROOT_ID, SYSTEM_FOLDER_IDS, ContentNode, sort_order
from .repair import find_cycle_members


logger = logging.getLogger(__name__)

DEFAULT_RATING = 5.0


@dataclass
class NodeStats:
    child_count: int = 0
    item_count: int = 0
    average_rating: float = DEFAULT_RATING
    level: int = 0
    hierarchy_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "childCount": self.child_count,
            "itemCount": self.item_count,
            "averageRating": self.average_rating,
            "level": self.level,
            "hierarchyId": self.hierarchy_id,
        }


@dataclass
class Hierarchy:
    nodes: dict[str, ContentNode]
    children: dict[str, list[str]]
    parents: dict[str, str | None]
    stats: dict[str, NodeStats]
    top_level: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    cycles: list[str] = field(default_factory=list)
    version: int = 0

    def get(self, node_id: str) -> ContentNode | None:
        return self.nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def children_of(self, node_id: str) -> list[ContentNode]:
        return [self.nodes[c] for c in self.children.get(node_id, [])]

    def stats_for(self, node_id: str) -> NodeStats:
        return self.stats.get(node_id) or NodeStats()

    def parent_of(self, node_id: str) -> str | None:
        """Display parent, after orphan and cycle fallback."""
        return self.parents.get(node_id)

    def ancestors(self, node_id: str) -> list[str]:
        out: list[str] = []
        seen = {node_id}
        current = self.parents.get(node_id)
        while current is not None and current not in seen:
            out.append(current)
            seen.add(current)
            current = self.parents.get(current)
        return out

    def descendants(self, node_id: str) -> list[str]:
        out: list[str] = []
        stack = list(reversed(self.children.get(node_id, [])))
        seen = {node_id}
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            out.append(current)
            stack.extend(reversed(self.children.get(current, [])))
        return out

    def to_records(self) -> list[dict[str, Any]]:
        """Persisted records with the derived stats merged in, depth-first in display order."""
        records: list[dict[str, Any]] = []
        for top in self.top_level:
            for node_id in [top, *self.descendants(top)]:
                record = self.nodes[node_id].to_dict()
                record.update(self.stats_for(node_id).to_dict())
                records.append(record)
        return records

    def to_tree(self, node_id: str) -> dict[str, Any] | None:
        node = self.nodes.get(node_id)
        if node is None:
            return None
        out = node.to_dict()
        out.update(self.stats_for(node_id).to_dict())
        out["children"] = [self.to_tree(c) for c in self.children.get(node_id, [])]
        return out


def _ratings_of(node: ContentNode) -> list[float]:
    values: list[float] = []
    if not isinstance(node.ratings, list):
        return values
    for event in node.ratings:
        if not isinstance(event, dict):
            continue
        value = event.get("rating")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            values.append(float(value))
    return values


def build_hierarchy(nodes: Iterable[ContentNode], version: int = 0) -> Hierarchy:
    """Derive ordered children and rolled-up stats from the flat node list.

    Never raises on malformed input: orphans (missing or null parent) and members
    of parent cycles are shown under root, or become forest roots when root itself
    is missing.
    """
    by_id: dict[str, ContentNode] = {}
    position: dict[str, int] = {}
    for node in nodes:
        if node.id not in position:
            position[node.id] = len(position)
        by_id[node.id] = node

    cycles = find_cycle_members(by_id.values())
    has_root = ROOT_ID in by_id
    fallback = ROOT_ID if has_root else None

    parents: dict[str, str | None] = {}
    orphans: list[str] = []
    for node_id, node in by_id.items():
        if node_id == ROOT_ID:
            parents[node_id] = None
            continue
        parent_id = node.parent_id
        if node_id in cycles:
            parents[node_id] = fallback
        elif parent_id is None:
            parents[node_id] = fallback
        elif parent_id not in by_id:
            orphans.append(node_id)
            parents[node_id] = fallback
        else:
            parents[node_id] = parent_id

    if orphans:
        logger.warning("%d orphaned node(s) shown at top level: %s", len(orphans), orphans[:10])
    if cycles:
        logger.warning("Parent cycle detected among %s; treating as top level", sorted(cycles))
    if not has_root:
        logger.warning("Root container missing; building a forest")

    def sort_key(node_id: str) -> tuple[float, int]:
        return (sort_order(by_id[node_id]), position[node_id])

    children: dict[str, list[str]] = {node_id: [] for node_id in by_id}
    top_level: list[str] = []
    for node_id in by_id:
        parent = parents[node_id]
        if parent is None:
            top_level.append(node_id)
        else:
            children[parent].append(node_id)
    for kids in children.values():
        kids.sort(key=sort_key)
    top_level.sort(key=lambda n: (n != ROOT_ID, *sort_key(n)))

    stats: dict[str, NodeStats] = {node_id: NodeStats() for node_id in by_id}

    # Pre-order walk assigns level and dotted numbering; post-order rolls up counts.
    order: list[str] = []
    stack: list[tuple[str, int]] = []
    for top in reversed(top_level):
        stack.append((top, 0))
    if not has_root:
        _number(top_level, "", by_id, stats, first_level=True)
    visited: set[str] = set()
    while stack:
        node_id, level = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        order.append(node_id)
        stats[node_id].level = level
        kids = children[node_id]
        _number(kids, stats[node_id].hierarchy_id, by_id, stats, first_level=(node_id == ROOT_ID))
        for kid in reversed(kids):
            stack.append((kid, level + 1))

    rating_sum: dict[str, float] = {}
    rating_n: dict[str, int] = {}
    for node_id in reversed(order):
        own = _ratings_of(by_id[node_id])
        total, count = sum(own), len(own)
        item_count = 0
        for kid in children[node_id]:
            total += rating_sum.get(kid, 0.0)
            count += rating_n.get(kid, 0)
            item_count += 1 + stats[kid].item_count
        rating_sum[node_id], rating_n[node_id] = total, count
        entry = stats[node_id]
        entry.child_count = len(children[node_id])
        entry.item_count = item_count
        entry.average_rating = total / count if count else DEFAULT_RATING

    return Hierarchy(
        nodes=by_id,
        children=children,
        parents=parents,
        stats=stats,
        top_level=top_level,
        orphans=orphans,
        cycles=sorted(cycles),
        version=version,
    )


def _number(
    kids: list[str],
    prefix: str,
    by_id: dict[str, ContentNode],
    stats: dict[str, NodeStats],
    first_level: bool = False,
) -> None:
    counter = 0
    for kid in kids:
        node = by_id[kid]
        if first_level and (kid in SYSTEM_FOLDER_IDS or node.type == "user-profile"):
            stats[kid].hierarchy_id = ""
            continue
        counter += 1
        stats[kid].hierarchy_id = f"{prefix}.{counter}" if prefix else str(counter)


class HierarchyCache:
    """Memoises `build_hierarchy` against a version counter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._version: int | None = None
        self._value: Hierarchy | None = None
        self.builds = 0

    def get(self, version: int, source: Callable[[], Iterable[ContentNode]]) -> Hierarchy:
        with self._lock:
            if self._value is None or self._version != version:
                self._value = build_hierarchy(source(), version=version)
                self._version = version
                self.builds += 1
            return self._value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._version = None
