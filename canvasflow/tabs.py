from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from .nodes import CONTAINER_TYPES, ROOT_ID, ContentNode


logger = logging.getLogger(__name__)

TAB_TYPES = ("normal", "new-tab", "item-viewer")
VIEWER_TYPES = frozenset({"website", "video", "image"})
RECENT_TABS_KEPT = 3


def _now() -> float:
    return time.time()


@dataclass
class Snapshot:
    active_view_id: str
    timestamp: float = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {"activeViewId": self.active_view_id, "timestamp": self.timestamp}


@dataclass
class Tab:
    id: str
    active_view_id: str
    title: str = ""
    type: str = "normal"
    is_temporary: bool = False
    navigation_history: list[str] = field(default_factory=list)
    navigation_index: int = 0
    undo_redo_stack: list[Snapshot] = field(default_factory=list)
    undo_redo_index: int = 0
    last_accessed_at: float | None = None
    is_suspended: bool = False
    has_active_media: bool = False
    has_active_timer: bool = False

    def __post_init__(self) -> None:
        if not self.navigation_history:
            self.navigation_history = [self.active_view_id]
            self.navigation_index = 0
        if not self.undo_redo_stack:
            self.undo_redo_stack = [Snapshot(self.active_view_id)]
            self.undo_redo_index = 0

    @property
    def can_go_back(self) -> bool:
        return self.navigation_index > 0

    @property
    def can_go_forward(self) -> bool:
        return self.navigation_index < len(self.navigation_history) - 1

    @property
    def can_undo(self) -> bool:
        return self.undo_redo_index > 0

    @property
    def can_redo(self) -> bool:
        return self.undo_redo_index < len(self.undo_redo_stack) - 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "activeViewId": self.active_view_id,
            "isTemporary": self.is_temporary,
            "navigationHistory": list(self.navigation_history),
            "navigationIndex": self.navigation_index,
            "undoRedoStack": [s.to_dict() for s in self.undo_redo_stack],
            "undoRedoIndex": self.undo_redo_index,
            "lastAccessedAt": self.last_accessed_at,
            "isSuspended": self.is_suspended,
            "hasActiveMedia": self.has_active_media,
            "hasActiveTimer": self.has_active_timer,
        }


def tab_from_dict(data: dict[str, Any]) -> Tab:
    if not isinstance(data, dict):
        raise ValueError("Tab must be an object.")
    tab_id = str(data.get("id") or "").strip()
    if not tab_id:
        raise ValueError("Tab id is required.")
    view_id = str(data.get("activeViewId") or ROOT_ID)
    tab_type = data.get("type") if data.get("type") in TAB_TYPES else "normal"

    history = [str(v) for v in data.get("navigationHistory") or [] if v]
    nav_index = data.get("navigationIndex") or 0
    stack = []
    for entry in data.get("undoRedoStack") or []:
        if isinstance(entry, dict) and entry.get("activeViewId"):
            stack.append(Snapshot(str(entry["activeViewId"]), float(entry.get("timestamp") or 0)))
    undo_index = data.get("undoRedoIndex") or 0

    tab = Tab(
        id=tab_id,
        active_view_id=view_id,
        title=str(data.get("title") or ""),
        type=tab_type,
        is_temporary=bool(data.get("isTemporary")),
        navigation_history=history,
        navigation_index=int(nav_index) if history else 0,
        undo_redo_stack=stack,
        undo_redo_index=int(undo_index) if stack else 0,
        last_accessed_at=data.get("lastAccessedAt"),
        is_suspended=bool(data.get("isSuspended")),
        has_active_media=bool(data.get("hasActiveMedia")),
        has_active_timer=bool(data.get("hasActiveTimer")),
    )
    # Clamp cursors from older or hand-edited state.
    tab.navigation_index = max(0, min(tab.navigation_index, len(tab.navigation_history) - 1))
    tab.undo_redo_index = max(0, min(tab.undo_redo_index, len(tab.undo_redo_stack) - 1))
    return tab


class TabController:
    """Tabs over one shared content tree.

    Each tab keeps its own view pointer, back/forward history and undo cursor.
    Not thread-safe on its own; the workspace serialises access.
    """

    def __init__(self, tabs: list[Tab] | None = None, active_tab_id: str | None = None) -> None:
        self.tabs: list[Tab] = list(tabs or [])
        self.active_tab_id: str | None = active_tab_id
        self.access_history: list[tuple[str, float]] = []
        if self.tabs and self.get(self.active_tab_id or "") is None:
            self.active_tab_id = self.tabs[0].id
        if not self.tabs:
            self._open_root_tab()

    # -- lookup ------------------------------------------------------------

    def get(self, tab_id: str | None) -> Tab | None:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    @property
    def active_tab(self) -> Tab | None:
        return self.get(self.active_tab_id)

    def _resolve(self, tab_id: str | None) -> Tab | None:
        return self.get(tab_id) if tab_id else self.active_tab

    # -- open / close ------------------------------------------------------

    def _open_root_tab(self) -> Tab:
        tab = Tab(id=ROOT_ID, active_view_id=ROOT_ID, title="Library")
        self.tabs.append(tab)
        self.set_active_tab(tab.id)
        return tab

    def open_in_new_tab(self, node: ContentNode, is_temporary: bool = False) -> Tab:
        existing = self.get(node.id)
        if existing is not None:
            self.set_active_tab(existing.id)
            return existing

        if node.type == "scan" or (node.type in VIEWER_TYPES and node.url and node.type not in CONTAINER_TYPES):
            tab_type = "item-viewer"
        else:
            tab_type = "normal"
        tab = Tab(
            id=node.id,
            active_view_id=node.id,
            title=node.title,
            type=tab_type,
            is_temporary=is_temporary,
        )
        self.tabs.append(tab)
        self.set_active_tab(tab.id)
        logger.debug("Opened tab %s (%s)", tab.id, tab_type)
        return tab

    def create_new_tab(self) -> Tab:
        tab = Tab(id=f"tab-{uuid4().hex[:12]}", active_view_id=ROOT_ID, title="New Tab", type="new-tab")
        self.tabs.append(tab)
        self.set_active_tab(tab.id)
        return tab

    def close_tab(self, tab_id: str) -> Tab | None:
        """Close a tab; returns the tab that is active afterwards."""
        tab = self.get(tab_id)
        if tab is None:
            return self.active_tab
        self.tabs.remove(tab)
        self.access_history = [(t, ts) for t, ts in self.access_history if t != tab_id]
        if not self.tabs:
            return self._open_root_tab()
        if self.active_tab_id == tab_id:
            self.set_active_tab(self.tabs[-1].id)
        return self.active_tab

    def set_active_tab(self, tab_id: str) -> bool:
        tab = self.get(tab_id)
        if tab is None:
            return False
        now = _now()
        self.access_history = [(tab_id, now), *[(t, ts) for t, ts in self.access_history if t != tab_id]][:RECENT_TABS_KEPT]
        tab.last_accessed_at = now
        tab.is_suspended = False
        self.active_tab_id = tab_id
        self.suspend_background_tabs()
        return True

    def suspend_background_tabs(self) -> list[str]:
        """Suspend every tab outside the recent-access window that has no live media or timer."""
        recent = {t for t, _ in self.access_history}
        suspended: list[str] = []
        for tab in self.tabs:
            keep = tab.id in recent or tab.id == self.active_tab_id or tab.has_active_media or tab.has_active_timer
            if not keep and not tab.is_suspended:
                tab.is_suspended = True
                suspended.append(tab.id)
        return suspended

    def update_media_state(self, tab_id: str, has_media: bool | None = None, has_timer: bool | None = None) -> bool:
        tab = self.get(tab_id)
        if tab is None:
            return False
        if has_media is not None:
            tab.has_active_media = bool(has_media)
        if has_timer is not None:
            tab.has_active_timer = bool(has_timer)
        return True

    def reorder(self, source_index: int, destination_index: int) -> bool:
        if not (0 <= source_index < len(self.tabs)) or not (0 <= destination_index < len(self.tabs)):
            return False
        tab = self.tabs.pop(source_index)
        self.tabs.insert(destination_index, tab)
        return True

    # -- navigation --------------------------------------------------------

    def navigate(self, tab_id: str | None, view_id: str) -> bool:
        tab = self._resolve(tab_id)
        if tab is None or not view_id or tab.active_view_id == view_id:
            return False
        del tab.navigation_history[tab.navigation_index + 1 :]
        tab.navigation_history.append(view_id)
        tab.navigation_index = len(tab.navigation_history) - 1
        tab.active_view_id = view_id
        return True

    def back(self, tab_id: str | None = None) -> str | None:
        tab = self._resolve(tab_id)
        if tab is None or not tab.can_go_back:
            return None
        tab.navigation_index -= 1
        tab.active_view_id = tab.navigation_history[tab.navigation_index]
        return tab.active_view_id

    def forward(self, tab_id: str | None = None) -> str | None:
        tab = self._resolve(tab_id)
        if tab is None or not tab.can_go_forward:
            return None
        tab.navigation_index += 1
        tab.active_view_id = tab.navigation_history[tab.navigation_index]
        return tab.active_view_id

    # -- undo / redo -------------------------------------------------------

    def push_undo(self, tab_id: str | None = None, view_id: str | None = None) -> Snapshot | None:
        """Record the view in effect before a content mutation; drops any redo tail."""
        tab = self._resolve(tab_id)
        if tab is None:
            return None
        snapshot = Snapshot(view_id or tab.active_view_id)
        del tab.undo_redo_stack[tab.undo_redo_index + 1 :]
        tab.undo_redo_stack.append(snapshot)
        tab.undo_redo_index = len(tab.undo_redo_stack) - 1
        return snapshot

    def undo(self, tab_id: str | None = None) -> str | None:
        tab = self._resolve(tab_id)
        if tab is None or not tab.can_undo:
            return None
        tab.undo_redo_index -= 1
        tab.active_view_id = tab.undo_redo_stack[tab.undo_redo_index].active_view_id
        return tab.active_view_id

    def redo(self, tab_id: str | None = None) -> str | None:
        tab = self._resolve(tab_id)
        if tab is None or not tab.can_redo:
            return None
        tab.undo_redo_index += 1
        tab.active_view_id = tab.undo_redo_stack[tab.undo_redo_index].active_view_id
        return tab.active_view_id

    # -- consistency -------------------------------------------------------

    def reconcile_views(self, exists: Callable[[str], bool]) -> list[str]:
        """Point tabs whose view no longer exists back at root."""
        repointed: list[str] = []
        for tab in self.tabs:
            if tab.active_view_id == ROOT_ID or exists(tab.active_view_id):
                continue
            logger.info("Tab %s lost view %s; returning to root", tab.id, tab.active_view_id)
            tab.active_view_id = ROOT_ID
            tab.navigation_history[tab.navigation_index] = ROOT_ID
            repointed.append(tab.id)
        return repointed

    # -- persistence -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeTabId": self.active_tab_id,
            "tabs": [t.to_dict() for t in self.tabs],
            "accessHistory": [{"tabId": t, "timestamp": ts} for t, ts in self.access_history],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TabController":
        if not isinstance(data, dict):
            return cls()
        tabs: list[Tab] = []
        for raw in data.get("tabs") or []:
            try:
                tabs.append(tab_from_dict(raw))
            except ValueError as exc:
                logger.warning("Skipping unreadable tab: %s", exc)
        controller = cls(tabs, data.get("activeTabId"))
        history = data.get("accessHistory") or []
        controller.access_history = [
            (str(h["tabId"]), float(h.get("timestamp") or 0))
            for h in history
            if isinstance(h, dict) and controller.get(h.get("tabId")) is not None
        ][:RECENT_TABS_KEPT]
        return controller
