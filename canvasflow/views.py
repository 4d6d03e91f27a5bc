from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from .hierarchy import Hierarchy, NodeStats, build_hierarchy
from .nodes import ROOT_ID, ContentNode, seed_node, sort_order


logger = logging.getLogger(__name__)

SORT_OPTIONS = (
    "manual",
    "name",
    "createdAt",
    "updatedAt",
    "averageRating",
    "itemCount",
    "platformViews",
    "platformLikes",
    "sourceViews",
    "sourceLikes",
    "sourceCreatedAt",
)
SORT_ALIASES = {
    "rating": "averageRating",
    "viewCount": "sourceViews",
    "likeCount": "sourceLikes",
}
SORT_DIRECTIONS = ("asc", "desc")


@dataclass
class ResolvedView:
    node: ContentNode
    children: list[ContentNode] = field(default_factory=list)
    stats: dict[str, NodeStats] = field(default_factory=dict)
    sort_option: str = "manual"
    sort_direction: str = "asc"

    @property
    def id(self) -> str:
        return self.node.id

    def to_dict(self) -> dict[str, Any]:
        def record(node: ContentNode) -> dict[str, Any]:
            data = node.to_dict()
            data.update((self.stats.get(node.id) or NodeStats()).to_dict())
            return data

        out = record(self.node)
        out["children"] = [record(child) for child in self.children]
        out["sortOption"] = self.sort_option
        out["sortDirection"] = self.sort_direction
        return out


def normalize_sort_option(option: str | None) -> str:
    option = SORT_ALIASES.get(option or "", option or "manual")
    return option if option in SORT_OPTIONS else "manual"


def _timestamp(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except (TypeError, ValueError):
        return None


def _sort_key(option: str, stats: dict[str, NodeStats]) -> Callable[[ContentNode], Any]:
    """Key for `option`; returns None for a missing optional value."""
    def stat(node: ContentNode) -> NodeStats:
        return stats.get(node.id) or NodeStats()

    keys: dict[str, Callable[[ContentNode], Any]] = {
        "name": lambda n: (n.title or "").casefold(),
        "createdAt": lambda n: _timestamp(n.created_at),
        "updatedAt": lambda n: _timestamp(n.updated_at),
        "averageRating": lambda n: stat(n).average_rating or 0,
        "itemCount": lambda n: stat(n).item_count or 0,
        "platformViews": lambda n: n.platform_view_count or 0,
        "platformLikes": lambda n: n.platform_like_count or 0,
        "sourceViews": lambda n: n.view_count or 0,
        "sourceLikes": lambda n: n.like_count or 0,
        "sourceCreatedAt": lambda n: _timestamp(n.published_at),
    }
    return keys[option]


def sort_children(
    children: Iterable[ContentNode],
    sort_option: str | None = None,
    sort_direction: str | None = None,
    stats: dict[str, NodeStats] | None = None,
) -> list[ContentNode]:
    """Stable sort; ties keep input order and missing values go last either way."""
    items = list(children)
    option = normalize_sort_option(sort_option)
    descending = (sort_direction or "asc") == "desc"
    if option == "manual":
        return sorted(items, key=sort_order)

    key = _sort_key(option, stats or {})
    keyed = [(key(n), n) for n in items]
    present = [pair for pair in keyed if pair[0] is not None]
    missing = [n for value, n in keyed if value is None]
    # sorted(reverse=True) keeps equal elements in their original order.
    present.sort(key=lambda pair: pair[0], reverse=descending)
    return [n for _, n in present] + missing


def resolve_view(
    view_id: str | None,
    source: Hierarchy | Iterable[ContentNode],
    sort_option: str | None = None,
    sort_direction: str | None = None,
) -> ResolvedView | None:
    """Look up a container and return it with its sorted children.

    A missing root falls back to the seed root definition so the dashboard
    always has something to show; any other missing id resolves to None.
    """
    hierarchy = source if isinstance(source, Hierarchy) else build_hierarchy(source)
    view_id = view_id or ROOT_ID
    node = hierarchy.get(view_id)
    if node is None:
        if view_id != ROOT_ID:
            return None
        node = seed_node(ROOT_ID)
        logger.warning("Root missing from store; resolving against the seed definition")
        children = [hierarchy.nodes[i] for i in hierarchy.top_level]
    else:
        children = hierarchy.children_of(view_id)

    option = normalize_sort_option(sort_option or node.sort_option)
    direction = sort_direction or node.sort_direction or "asc"
    if direction not in SORT_DIRECTIONS:
        direction = "asc"
    return ResolvedView(
        node=node,
        children=sort_children(children, option, direction, hierarchy.stats),
        stats=hierarchy.stats,
        sort_option=option,
        sort_direction=direction,
    )
