from __future__ import annotations

import functools
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

from .config import Settings
from .layout import Rect, drag_to, find_non_overlapping_position, layout_items
from .metadata import fetch_metadata, hostname_title
from .nodes import (
    CONTAINER_TYPES,
    LAYOUT_MODES,
    MEDIA_TYPES,
    ROOT_ID,
    ContentNode,
    clone_node,
    coerce_fields,
    node_from_dict,
)
from .outline import outline_to_nodes, tree_to_outline
from .relay import BroadcastBus, CrossTabRelay, RemoteMirror, RestTransport
from .storage import TABS_KEY, LocalStorage
from .store import ContentStore, Mutation
from .tabs import Tab, TabController
from .views import ResolvedView, resolve_view


logger = logging.getLogger(__name__)

TAB_DROP_PREFIX = "tab-drop-"
CANVAS_DROPPABLE = "canvas-droppable"
DEFAULT_VIEWPORT = (1280, 800)


def _spawn_daemon(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


def _command(default: Any = None) -> Callable:
    """Run a workspace command under the lock; input errors become `default`."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(self: "Workspace", *args: Any, **kwargs: Any) -> Any:
            with self._lock:
                try:
                    return fn(self, *args, **kwargs)
                except (ValueError, TypeError, KeyError) as exc:
                    logger.warning("%s ignored: %s", fn.__name__, exc)
                    return default() if callable(default) else default

        return wrapper

    return decorator


class Workspace:
    """Every user-facing command, applied one at a time against one content store."""

    def __init__(
        self,
        store: ContentStore | None = None,
        tabs: TabController | None = None,
        relay: CrossTabRelay | None = None,
        mirror: RemoteMirror | None = None,
        storage: Any = None,
        settings: Settings | None = None,
        fetcher: Callable[[str, float], dict[str, Any]] | None = None,
        spawn: Callable[..., None] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self.settings = settings or Settings()
        self.storage = storage
        self.store = store or ContentStore(storage=storage)
        self.tabs = tabs or TabController()
        self.relay = relay or CrossTabRelay(BroadcastBus(), self.settings.session_id)
        self.mirror = mirror or RemoteMirror()
        self.fetcher = fetcher or fetch_metadata
        self._spawn = spawn or _spawn_daemon
        self.selection: list[str] = []
        self.clipboard: dict[str, Any] | None = None
        self.store.subscribe(self._on_mutation)
        self.store.subscribe(self.mirror.on_mutation)
        self.tabs.reconcile_views(lambda view_id: view_id in self.store)

    @classmethod
    def from_settings(cls, settings: Settings, bus: BroadcastBus | None = None) -> "Workspace":
        state_path = Path(settings.state_path)
        storage = LocalStorage(
            state_path,
            backup_dir=settings.backup_dir or (state_path.parent / "backups"),
            keep_backups=settings.keep_backups,
        )
        store = ContentStore.load(storage)
        tabs = TabController.from_dict(storage.get(TABS_KEY))
        relay = CrossTabRelay(bus or BroadcastBus(), settings.session_id)
        transport = RestTransport(settings.remote_url, settings.remote_key) if settings.remote_url else None
        mirror = RemoteMirror(transport, settings.user_id)
        workspace = cls(store=store, tabs=tabs, relay=relay, mirror=mirror, storage=storage, settings=settings)
        if mirror.enabled:
            mirror.start()
        logger.info("Workspace loaded from %s (%d items)", state_path, len(store))
        return workspace

    # -- internals ---------------------------------------------------------

    def _on_mutation(self, event: Mutation) -> None:
        if event.op == "delete":
            gone = set(event.ids)
            self.selection = [i for i in self.selection if i not in gone]
            self.tabs.reconcile_views(lambda view_id: view_id in self.store)

    def _save_tabs(self) -> None:
        if self.storage is None:
            return
        try:
            self.storage.set(TABS_KEY, self.tabs.to_dict())
        except OSError as exc:
            logger.error("Could not persist tabs: %s", exc)

    def _tab(self, tab_id: str | None) -> Tab | None:
        return self.tabs.get(tab_id) if tab_id else self.tabs.active_tab

    def _active_view_id(self, tab_id: str | None = None) -> str:
        tab = self._tab(tab_id)
        return tab.active_view_id if tab else ROOT_ID

    def _push_undo(self, tab_id: str | None = None) -> None:
        self.tabs.push_undo(tab_id)
        self._save_tabs()

    def _view_changed(self, view_id: str | None) -> None:
        self._save_tabs()
        if view_id:
            self.relay.publish_navigation(view_id)

    def _sorted_child_ids(self, parent_id: str) -> list[str]:
        return [n.id for n in self.store.children(parent_id)]

    def _default_index(self, parent_id: str) -> int | None:
        """Right after the last selected sibling, when one is selected."""
        siblings = self._sorted_child_ids(parent_id)
        positions = [siblings.index(i) for i in self.selection if i in siblings]
        return positions[-1] + 1 if positions else None

    def _canvas_spot(self, parent_id: str, width: float, height: float) -> tuple[float, float]:
        existing = [Rect.from_node(n) for n in self.store.children(parent_id) if n.x is not None and n.y is not None]
        return find_non_overlapping_position((width, height), existing, *DEFAULT_VIEWPORT)

    def _schedule_metadata(self, node: ContentNode) -> None:
        if not (self.settings.fetch_metadata and node.url and node.type in MEDIA_TYPES):
            return
        timeout = self.settings.metadata_timeout

        def _run(node_id: str, url: str, title_was_guessed: bool) -> None:
            fields = self.fetcher(url, timeout)
            if not title_was_guessed:
                fields.pop("title", None)
            self.apply_metadata(node_id, fields)

        guessed = node.title in ("", hostname_title(node.url), f"New {node.type}")
        self._spawn(_run, node.id, node.url, guessed)

    # -- items -------------------------------------------------------------

    @_command()
    def add_item(
        self,
        data: dict[str, Any],
        parent_id: str | None = None,
        index: int | None = None,
        tab_id: str | None = None,
    ) -> ContentNode | None:
        if not isinstance(data, dict):
            raise ValueError("Item must be an object.")
        data = dict(data)
        if not data.get("type"):
            if not data.get("url"):
                raise ValueError("Item type is required.")
            data["type"] = "website"
        if not (data.get("title") or "").strip():
            data["title"] = hostname_title(data["url"]) if data.get("url") else f"New {data['type']}"
        parent_id = parent_id or self._active_view_id(tab_id)

        existing = data.get("id")
        if existing and existing in self.store:
            self._push_undo(tab_id)
            return self.store.move(existing, parent_id, index)

        node = node_from_dict(data)
        if index is None:
            index = self._default_index(parent_id)
        parent = self.store.get(parent_id)
        if parent is not None and parent.layout_mode == "canvas" and (node.x is None or node.y is None):
            x, y = self._canvas_spot(parent_id, node.width or 320, node.height or 240)
            node = node_from_dict({**node.to_dict(), "x": x, "y": y})

        self._push_undo(tab_id)
        inserted = self.store.insert(node, parent_id, index)
        if inserted is not None:
            self._schedule_metadata(inserted)
        return inserted

    @_command()
    def update_item(self, node_id: str, fields: dict[str, Any], tab_id: str | None = None) -> ContentNode | None:
        if node_id not in self.store:
            return None
        coerce_fields(fields)
        self._push_undo(tab_id)
        return self.store.update(node_id, fields)

    @_command(default=list)
    def bulk_update(self, ids: Iterable[str], fields: dict[str, Any], tab_id: str | None = None) -> list[ContentNode]:
        ids = [i for i in ids if i in self.store]
        if not ids:
            return []
        coerce_fields(fields)
        self._push_undo(tab_id)
        return self.store.bulk_update(ids, fields)

    @_command()
    def move_item(self, node_id: str, parent_id: str, index: int | None = None, tab_id: str | None = None) -> ContentNode | None:
        if node_id not in self.store:
            return None
        self._push_undo(tab_id)
        return self.store.move(node_id, parent_id, index)

    @_command(default=list)
    def delete_item(self, node_id: str, tab_id: str | None = None) -> list[str]:
        node = self.store.get(node_id)
        if node is None:
            return []
        if not node.is_deletable:
            logger.info("Refusing to delete protected item %s", node_id)
            return []
        self._push_undo(tab_id)
        return self.store.delete_subtree(node_id)

    @_command()
    def set_layout_mode(self, view_id: str, mode: str, tab_id: str | None = None) -> ContentNode | None:
        if mode not in LAYOUT_MODES:
            raise ValueError(f"Invalid layout mode: {mode}")
        return self.update_item(view_id, {"layoutMode": mode}, tab_id=tab_id)

    @_command()
    def drag_item(self, node_id: str, dx: float, dy: float, tab_id: str | None = None) -> ContentNode | None:
        """Canvas drag: offset the stored position by the pointer delta, snapped to the grid."""
        node = self.store.get(node_id)
        if node is None:
            return None
        x, y = drag_to((node.x or 0, node.y or 0), (float(dx), float(dy)), self.settings.grid_size)
        self._push_undo(tab_id)
        return self.store.update(node_id, {"x": x, "y": y})

    @_command(default=False)
    def apply_metadata(self, node_id: str, fields: dict[str, Any]) -> bool:
        """Late result of a background fetch; dropped when the item is gone."""
        if node_id not in self.store or not fields:
            logger.debug("Metadata for %s dropped", node_id)
            return False
        return self.store.update(node_id, fields) is not None

    # -- views -------------------------------------------------------------

    @_command()
    def current_view(self, tab_id: str | None = None) -> ResolvedView | None:
        tab = self._tab(tab_id)
        view_id = tab.active_view_id if tab else ROOT_ID
        hierarchy = self.store.hierarchy()
        view = resolve_view(view_id, hierarchy)
        if view is None and tab is not None:
            logger.info("Tab %s points at missing view %s; falling back to root", tab.id, view_id)
            self.tabs.reconcile_views(lambda v: v in self.store)
            self._save_tabs()
            view = resolve_view(ROOT_ID, hierarchy)
        return view

    @_command()
    def layout(
        self,
        tab_id: str | None = None,
        width: float = DEFAULT_VIEWPORT[0],
        height: float = DEFAULT_VIEWPORT[1],
        mode: str | None = None,
        page: int = 1,
    ) -> dict[str, Any] | None:
        view = self.current_view(tab_id)
        if view is None:
            return None
        mode = mode or view.node.layout_mode or "grid"
        extras = {"cell_size": self.settings.cell_size} if self.settings.cell_size else {}
        result = layout_items(mode, view.children, width, height, current_page=page, extras=extras)
        result["viewId"] = view.id
        return result

    # -- navigation & tabs -------------------------------------------------

    @_command(default=False)
    def navigate(self, view_id: str, tab_id: str | None = None) -> bool:
        if resolve_view(view_id, self.store.hierarchy()) is None:
            return False
        changed = self.tabs.navigate(tab_id, view_id)
        if changed:
            self._view_changed(view_id)
        return changed

    @_command()
    def back(self, tab_id: str | None = None) -> str | None:
        view_id = self.tabs.back(tab_id)
        self._view_changed(view_id)
        return view_id

    @_command()
    def forward(self, tab_id: str | None = None) -> str | None:
        view_id = self.tabs.forward(tab_id)
        self._view_changed(view_id)
        return view_id

    @_command()
    def undo(self, tab_id: str | None = None) -> str | None:
        view_id = self.tabs.undo(tab_id)
        self._view_changed(view_id)
        return view_id

    @_command()
    def redo(self, tab_id: str | None = None) -> str | None:
        view_id = self.tabs.redo(tab_id)
        self._view_changed(view_id)
        return view_id

    @_command()
    def open_tab(self, node_id: str, is_temporary: bool = False) -> Tab | None:
        node = self.store.get(node_id)
        if node is None:
            return None
        tab = self.tabs.open_in_new_tab(node, is_temporary)
        self._save_tabs()
        return tab

    @_command()
    def new_tab(self) -> Tab:
        tab = self.tabs.create_new_tab()
        self._save_tabs()
        return tab

    @_command()
    def close_tab(self, tab_id: str) -> Tab | None:
        tab = self.tabs.close_tab(tab_id)
        self._save_tabs()
        return tab

    @_command(default=False)
    def activate_tab(self, tab_id: str) -> bool:
        ok = self.tabs.set_active_tab(tab_id)
        if ok:
            self._save_tabs()
        return ok

    @_command(default=False)
    def update_media_state(self, tab_id: str, has_media: bool | None = None, has_timer: bool | None = None) -> bool:
        ok = self.tabs.update_media_state(tab_id, has_media, has_timer)
        if ok:
            self._save_tabs()
        return ok

    # -- drag and drop -----------------------------------------------------

    @_command(default="ignored")
    def handle_drop(self, result: Any) -> str:
        """Apply a drop result; returns what happened (`tab-reorder`, `reparent`, `reorder` or `ignored`)."""
        if not isinstance(result, dict):
            return "ignored"
        source = result.get("source") or {}
        destination = result.get("destination")
        if not isinstance(destination, dict) or not isinstance(source, dict):
            return "ignored"
        drop_id = destination.get("droppableId")
        dest_index = destination.get("index")
        if not isinstance(drop_id, str):
            return "ignored"

        if result.get("type") == "tab":
            src_index = source.get("index")
            if not isinstance(src_index, int) or not isinstance(dest_index, int):
                return "ignored"
            if not self.tabs.reorder(src_index, dest_index):
                return "ignored"
            self._save_tabs()
            return "tab-reorder"

        if result.get("type") != "canvas-item":
            return "ignored"
        dragged = result.get("draggableId")
        if not isinstance(dragged, str) or dragged not in self.store:
            return "ignored"
        if dest_index is not None and not isinstance(dest_index, int):
            return "ignored"

        if drop_id.startswith(TAB_DROP_PREFIX):
            tab = self.tabs.get(drop_id[len(TAB_DROP_PREFIX) :])
            if tab is None or tab.active_view_id not in self.store:
                return "ignored"
            moving = list(self.selection) if dragged in self.selection else [dragged]
            self._push_undo()
            moved = [self.store.move(i, tab.active_view_id) for i in moving if i in self.store]
            if dragged in self.selection:
                self.selection = []
            return "reparent" if any(moved) else "ignored"

        active_view = self._active_view_id()
        if drop_id in (CANVAS_DROPPABLE, active_view):
            node = self.store.get(dragged)
            if node is None or dest_index is None:
                return "ignored"
            if node.parent_id != active_view:
                self._push_undo()
                return "reparent" if self.store.move(dragged, active_view, dest_index) else "ignored"
            ids = [i for i in self._sorted_child_ids(active_view) if i != dragged]
            ids.insert(max(0, min(dest_index, len(ids))), dragged)
            self._push_undo()
            self.store.reorder(active_view, ids)
            return "reorder"

        target = self.store.get(drop_id)
        if target is not None and target.type in CONTAINER_TYPES:
            self._push_undo()
            return "reparent" if self.store.move(dragged, drop_id, dest_index) else "ignored"
        return "ignored"

    # -- selection & clipboard ---------------------------------------------

    @_command(default=list)
    def select(self, node_id: str, ctrl: bool = False, shift: bool = False, ordered_ids: list[str] | None = None) -> list[str]:
        if node_id not in self.store:
            return list(self.selection)
        if shift and self.selection:
            ordered = ordered_ids or self._sorted_child_ids(self._active_view_id())
            anchor = self.selection[-1]
            if anchor in ordered and node_id in ordered:
                start, end = sorted((ordered.index(anchor), ordered.index(node_id)))
                self.selection = list(dict.fromkeys([*self.selection, *ordered[start : end + 1]]))
                return list(self.selection)
        if ctrl:
            if node_id in self.selection:
                self.selection.remove(node_id)
            else:
                self.selection.append(node_id)
        else:
            self.selection = [node_id]
        return list(self.selection)

    @_command(default=list)
    def clear_selection(self) -> list[str]:
        self.selection = []
        return []

    @_command(default=0)
    def copy(self, ids: list[str] | None = None) -> int:
        ids = [i for i in (ids or self.selection) if i in self.store]
        self.clipboard = {"op": "copy", "ids": ids} if ids else None
        return len(ids)

    @_command(default=0)
    def cut(self, ids: list[str] | None = None) -> int:
        ids = [i for i in (ids or self.selection) if i in self.store]
        self.clipboard = {"op": "cut", "ids": ids} if ids else None
        return len(ids)

    @_command(default=list)
    def paste(self, parent_id: str | None = None, tab_id: str | None = None) -> list[ContentNode]:
        if not self.clipboard:
            return []
        target = parent_id or self._active_view_id(tab_id)
        ids = [i for i in self.clipboard["ids"] if i in self.store]
        if not ids:
            self.clipboard = None
            return []
        self._push_undo(tab_id)
        out: list[ContentNode] = []
        if self.clipboard["op"] == "cut":
            for node_id in ids:
                moved = self.store.move(node_id, target)
                if moved is not None:
                    out.append(moved)
            self.clipboard = None
            return out
        for node_id in ids:
            source = self.store.get(node_id)
            if source is None:
                continue
            inserted = self.store.insert(clone_node(source), target)
            if inserted is not None:
                out.append(inserted)
        return out

    @_command(default=list)
    def delete_selected(self, tab_id: str | None = None) -> list[str]:
        doomed = [i for i in self.selection if (n := self.store.get(i)) is not None and n.is_deletable]
        if not doomed:
            return []
        self._push_undo(tab_id)
        removed: list[str] = []
        for node_id in doomed:
            removed.extend(self.store.delete_subtree(node_id))
        self.selection = []
        return removed

    # -- outline -----------------------------------------------------------

    @_command()
    def export_outline(self, root_id: str | None = None) -> str | None:
        return tree_to_outline(self.store.hierarchy(), root_id or self._active_view_id())

    @_command(default=list)
    def import_outline(self, text: str, parent_id: str | None = None, tab_id: str | None = None) -> list[ContentNode]:
        parent_id = parent_id or self._active_view_id(tab_id)
        if parent_id not in self.store:
            raise ValueError(f"Unknown container: {parent_id}")
        nodes = outline_to_nodes(text, parent_id)
        if not nodes:
            return []
        self._push_undo(tab_id)
        inserted = [self.store.insert(node, node.parent_id) for node in nodes]
        return [n for n in inserted if n is not None]

    # -- cross-tab ---------------------------------------------------------

    @_command(default=False)
    def arm_broadcast(self, target: str) -> bool:
        self.relay.arm(target)
        return True

    @_command(default=False)
    def disarm_broadcast(self) -> bool:
        self.relay.disarm()
        return True

    @_command(default=False)
    def receive_broadcast(self, message: Any) -> bool:
        view_id = self.relay.receive(message)
        if view_id is None or view_id not in self.store:
            return False
        changed = self.tabs.navigate(None, view_id)
        if changed:
            self._save_tabs()
        return changed

    def state(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self.tabs.to_dict(),
                "selection": list(self.selection),
                "clipboard": dict(self.clipboard) if self.clipboard else None,
                "broadcastTarget": self.relay.target,
                "sessionId": self.relay.session_id,
                "version": self.store.version,
            }

    def close(self) -> None:
        self.mirror.stop()
