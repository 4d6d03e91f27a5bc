"""YAML outline of a container subtree.

Containers become `{title: [children]}`, links become `{title: url}` and
anything else `{title: null}`. Importing reverses the mapping into fresh nodes.
"""

from __future__ import annotations

import io
import logging
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError

from .hierarchy import Hierarchy
from .nodes import CONTAINER_TYPES, ContentNode, new_id, node_from_dict


logger = logging.getLogger(__name__)

yaml = YAML()
yaml.preserve_quotes = True
yaml.indent(mapping=2, sequence=2, offset=2)
yaml.width = 4096


def _outline_seq(hierarchy: Hierarchy, node_id: str, seen: set[str]) -> CommentedSeq:
    seq = CommentedSeq()
    for child in hierarchy.children_of(node_id):
        if child.id in seen:
            continue
        seen.add(child.id)
        title = (child.title or "").strip() or "untitled"
        if child.type in CONTAINER_TYPES:
            seq.append(CommentedMap({title: _outline_seq(hierarchy, child.id, seen)}))
            continue
        seq.append(CommentedMap({title: child.url or None}))
    return seq


def tree_to_outline(hierarchy: Hierarchy, root_id: str) -> str:
    if root_id not in hierarchy:
        raise ValueError(f"Unknown container: {root_id}")
    nav = _outline_seq(hierarchy, root_id, {root_id})
    buf = io.StringIO()
    yaml.dump(nav, buf)
    return buf.getvalue()


def _entry_nodes(entries: Any, parent_id: str) -> list[ContentNode]:
    nodes: list[ContentNode] = []
    if not isinstance(entries, (list, CommentedSeq)):
        return nodes
    for order, entry in enumerate(entries):
        if isinstance(entry, str):
            nodes.append(node_from_dict({"type": "website", "title": entry, "url": entry, "parentId": parent_id, "order": order}))
            continue
        if not isinstance(entry, (dict, CommentedMap)):
            continue
        items = list(entry.items())
        if not items:
            continue
        title, value = items[0]
        title_str = str(title).strip() or "untitled"

        if isinstance(value, (list, CommentedSeq)):
            folder = node_from_dict({"id": new_id("folder"), "type": "folder", "title": title_str, "parentId": parent_id, "order": order})
            nodes.append(folder)
            nodes.extend(_entry_nodes(value, folder.id))
            continue

        if value is None:
            nodes.append(node_from_dict({"type": "notes", "title": title_str, "parentId": parent_id, "order": order}))
            continue

        nodes.append(node_from_dict({"type": "website", "title": title_str, "url": str(value), "parentId": parent_id, "order": order}))
    return nodes


def outline_to_nodes(text: str, parent_id: str) -> list[ContentNode]:
    """Parse an outline document into nodes, parents listed before their children."""
    try:
        data = yaml.load(text or "") or CommentedSeq()
    except YAMLError as exc:
        raise ValueError(f"Invalid outline: {exc}") from exc
    if not isinstance(data, (list, CommentedSeq)):
        raise ValueError("Outline must be a YAML list.")
    return _entry_nodes(data, parent_id)
