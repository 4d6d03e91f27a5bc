from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from .hierarchy import Hierarchy, HierarchyCache
from .nodes import (
    ROOT_ID,
    ContentNode,
    apply_fields,
    coerce_fields,
    node_from_dict,
    nodes_from_records,
    now_iso,
    seed_nodes,
    sort_order,
)
from .repair import needs_span_reset, normalize_grid_spans, reconcile, repair_all
from .storage import GRID_SPANS_RESET_KEY, ITEMS_KEY


logger = logging.getLogger(__name__)


@dataclass
class Mutation:
    """What a single store operation changed; handed to subscribers after the rebuild."""

    op: str  # insert | update | move | delete | reorder | load
    ids: list[str] = field(default_factory=list)
    nodes: list[ContentNode] = field(default_factory=list)
    version: int = 0


Listener = Callable[[Mutation], None]


def _sibling_sort_key(node: ContentNode, position: dict[str, int]) -> tuple[float, int]:
    return (sort_order(node), position.get(node.id, 0))


class ContentStore:
    """The single mutable collection of content nodes.

    Every public mutation runs under one re-entrant lock: apply the change, bump
    the version, persist, then notify subscribers. The hierarchy is rebuilt
    lazily from the version counter, so any reader that asks after a mutation
    returns sees the post-mutation tree.
    """

    def __init__(self, nodes: Iterable[ContentNode] | None = None, storage: Any = None) -> None:
        self._lock = threading.RLock()
        self._nodes: dict[str, ContentNode] = {}
        for node in nodes if nodes is not None else seed_nodes():
            self._nodes[node.id] = node
        self._storage = storage
        self._listeners: list[Listener] = []
        self._cache = HierarchyCache()
        self.version = 0

    # -- loading -----------------------------------------------------------

    @classmethod
    def load(cls, storage: Any) -> "ContentStore":
        records = storage.get(ITEMS_KEY) if storage is not None else None
        if not isinstance(records, list) or not records:
            logger.info("No stored items; seeding defaults")
            store = cls(seed_nodes(), storage=storage)
            store._persist()
            if storage is not None and storage.get(GRID_SPANS_RESET_KEY) is None:
                storage.set(GRID_SPANS_RESET_KEY, True)
            return store

        nodes, rejected = nodes_from_records(records)
        if rejected:
            logger.warning("Dropped %d unreadable stored item(s): %s", len(rejected), rejected[:5])
        nodes, report = repair_all(nodes)

        migrated = False
        if storage.get(GRID_SPANS_RESET_KEY) is None:
            if needs_span_reset(nodes):
                nodes = normalize_grid_spans(nodes)
                migrated = True
                logger.info("Reset grid spans to 1x1")
            storage.set(GRID_SPANS_RESET_KEY, True)

        store = cls(nodes, storage=storage)
        if rejected or migrated or report["cycles"] or report["restored"]:
            store._persist()
        return store

    # -- reads -------------------------------------------------------------

    def get(self, node_id: str) -> ContentNode | None:
        with self._lock:
            return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def all(self) -> list[ContentNode]:
        with self._lock:
            return list(self._nodes.values())

    def hierarchy(self) -> Hierarchy:
        with self._lock:
            return self._cache.get(self.version, lambda: list(self._nodes.values()))

    def children(self, parent_id: str) -> list[ContentNode]:
        return self.hierarchy().children_of(parent_id)

    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [n.to_dict() for n in self._nodes.values()]

    # -- subscription ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # -- mutations ---------------------------------------------------------

    def insert(self, node: ContentNode | dict[str, Any], parent_id: str | None = ROOT_ID, index: int | None = None) -> ContentNode | None:
        if isinstance(node, dict):
            node = node_from_dict(node)
        parent_id = parent_id or ROOT_ID
        with self._lock:
            if node.id in self._nodes:
                logger.debug("insert of existing id %s treated as move", node.id)
                return self.move(node.id, parent_id, index)
            if node.id == ROOT_ID:
                logger.warning("Refusing to insert a second root")
                return None
            if parent_id not in self._nodes:
                logger.info("Inserting %s under unknown parent %s (orphan)", node.id, parent_id)

            shifted, order = self._place(parent_id, index, exclude=None)
            stamp = now_iso()
            node = replace(node, parent_id=parent_id, order=order, updated_at=stamp, created_at=node.created_at or stamp)
            self._nodes[node.id] = node
            self._nodes.update(shifted)
            self._commit("insert", [node.id, *shifted], [node, *shifted.values()])
            return node

    def update(self, node_id: str, fields: dict[str, Any]) -> ContentNode | None:
        """Apply a partial change; a badly typed field raises ValueError and nothing is applied."""
        with self._lock:
            current = self._nodes.get(node_id)
            if current is None:
                logger.debug("update of unknown id %s ignored", node_id)
                return None
            changes = coerce_fields(fields)
            moved: ContentNode | None = None
            if "parent_id" in changes:
                new_parent = changes.pop("parent_id") or ROOT_ID
                if new_parent != current.parent_id:
                    changes.pop("order", None)
                    moved = self.move(node_id, new_parent)
                    if moved is None:
                        return None
            if node_id == ROOT_ID:
                changes.pop("is_deletable", None)
            if not changes:
                return moved or current
            node = apply_fields(self._nodes[node_id], changes)
            self._nodes[node_id] = node
            self._commit("update", [node_id], [node])
            return node

    def bulk_update(self, ids: Iterable[str], fields: dict[str, Any]) -> list[ContentNode]:
        """Apply the same field changes to several nodes as one step."""
        with self._lock:
            changes = coerce_fields(fields)
            changes.pop("parent_id", None)
            if not changes:
                return []
            stamp = now_iso()
            updated: list[ContentNode] = []
            for node_id in dict.fromkeys(ids):
                current = self._nodes.get(node_id)
                if current is None:
                    continue
                node = apply_fields(current, changes, stamp=stamp)
                self._nodes[node_id] = node
                updated.append(node)
            if updated:
                self._commit("update", [n.id for n in updated], updated)
            return updated

    def move(self, node_id: str, new_parent_id: str | None, index: int | None = None) -> ContentNode | None:
        new_parent_id = new_parent_id or ROOT_ID
        with self._lock:
            current = self._nodes.get(node_id)
            if current is None:
                logger.debug("move of unknown id %s ignored", node_id)
                return None
            if node_id == ROOT_ID:
                logger.warning("Refusing to move root")
                return None
            if new_parent_id == node_id or self._is_descendant(new_parent_id, node_id):
                logger.warning("Refusing to move %s into its own subtree (%s)", node_id, new_parent_id)
                return None

            shifted, order = self._place(new_parent_id, index, exclude=node_id)
            node = replace(current, parent_id=new_parent_id, order=order, updated_at=now_iso())
            self._nodes[node_id] = node
            self._nodes.update(shifted)
            self._commit("move", [node_id, *shifted], [node, *shifted.values()])
            return node

    def reorder(self, parent_id: str, ordered_ids: list[str]) -> list[ContentNode]:
        """Rewrite sibling orders so `ordered_ids` come first, in that order."""
        with self._lock:
            siblings = self._siblings(parent_id, exclude=None)
            by_id = {n.id: n for n in siblings}
            sequence = [by_id[i] for i in dict.fromkeys(ordered_ids) if i in by_id]
            sequence += [n for n in siblings if n.id not in {s.id for s in sequence}]
            stamp = now_iso()
            changed: list[ContentNode] = []
            for idx, node in enumerate(sequence):
                if node.order == idx:
                    continue
                node = replace(node, order=idx, updated_at=stamp)
                self._nodes[node.id] = node
                changed.append(node)
            if changed:
                self._commit("reorder", [n.id for n in changed], changed)
            return changed

    def delete_subtree(self, node_id: str) -> list[str]:
        with self._lock:
            if node_id not in self._nodes:
                logger.debug("delete of unknown id %s ignored", node_id)
                return []
            doomed = self._subtree_ids(node_id)
            removed = [self._nodes.pop(i) for i in doomed]

            # Deleting may have taken an essential container with it.
            nodes, restored = reconcile(self._nodes.values())
            for node in nodes:
                self._nodes.setdefault(node.id, node)
            gone = [i for i in doomed if i not in self._nodes]
            self._commit("delete", gone, [n for n in removed if n.id in gone])
            if restored:
                self._commit("insert", restored, [self._nodes[i] for i in restored])
            return gone

    def replace_all(self, nodes: Iterable[ContentNode]) -> None:
        with self._lock:
            repaired, _ = repair_all(nodes)
            self._nodes = {n.id: n for n in repaired}
            self._commit("load", list(self._nodes), list(self._nodes.values()))

    # -- internals ---------------------------------------------------------

    def _siblings(self, parent_id: str, exclude: str | None) -> list[ContentNode]:
        position = {node_id: i for i, node_id in enumerate(self._nodes)}
        group = [n for n in self._nodes.values() if n.parent_id == parent_id and n.id != exclude and n.id != ROOT_ID]
        return sorted(group, key=lambda n: _sibling_sort_key(n, position))

    def _place(self, parent_id: str, index: int | None, exclude: str | None) -> tuple[dict[str, ContentNode], float]:
        """Order value for a node entering `parent_id` at `index`, plus shifted siblings."""
        siblings = self._siblings(parent_id, exclude)
        if index is None or index >= len(siblings):
            if not siblings:
                return {}, 0
            return {}, max(sort_order(n) for n in siblings) + 1

        index = max(0, index)
        order = sort_order(siblings[index])
        if index > 0 and sort_order(siblings[index - 1]) >= order:
            order = sort_order(siblings[index - 1]) + 1

        shifted: dict[str, ContentNode] = {}
        last = order
        stamp = now_iso()
        for node in siblings[index:]:
            new_order = max(sort_order(node) + 1, last + 1)
            last = new_order
            if new_order != node.order:
                shifted[node.id] = replace(node, order=new_order, updated_at=stamp)
        return shifted, order

    def _is_descendant(self, candidate: str, ancestor: str) -> bool:
        """True when walking up from `candidate` reaches `ancestor`."""
        seen: set[str] = set()
        current: str | None = candidate
        while current is not None and current not in seen:
            if current == ancestor:
                return True
            seen.add(current)
            node = self._nodes.get(current)
            current = node.parent_id if node else None
        return False

    def _subtree_ids(self, node_id: str) -> list[str]:
        children: dict[str, list[str]] = {}
        for node in self._nodes.values():
            if node.parent_id is not None:
                children.setdefault(node.parent_id, []).append(node.id)
        out: list[str] = []
        seen: set[str] = set()
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            out.append(current)
            queue.extend(children.get(current, []))
        return out

    def _persist(self) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set(ITEMS_KEY, [n.to_dict() for n in self._nodes.values()])
        except OSError as exc:
            logger.error("Could not persist items: %s", exc)

    def _commit(self, op: str, ids: list[str], nodes: list[ContentNode]) -> None:
        self.version += 1
        self._persist()
        event = Mutation(op=op, ids=list(ids), nodes=list(nodes), version=self.version)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Store listener failed for %s", op)
