from conftest import FakeFetcher, make_workspace

from canvasflow.nodes import ROOT_ID, TRASH_ID, WELCOME_ID
from canvasflow.relay import BroadcastBus
from canvasflow.storage import TABS_KEY


def _child_ids(ws, parent_id=ROOT_ID):
    return [n.id for n in ws.store.children(parent_id)]


def test_add_link_at_top_then_undo(workspace, fetcher):
    count_before = workspace.store.hierarchy().stats_for(ROOT_ID).item_count
    node = workspace.add_item({"type": "website", "url": "https://example.com"}, index=0)

    assert _child_ids(workspace)[0] == node.id
    assert workspace.store.get(node.id).title == "Example Domain"
    assert fetcher.calls == ["https://example.com"]
    assert workspace.store.hierarchy().stats_for(ROOT_ID).item_count == count_before + 1

    assert workspace.undo() == ROOT_ID
    assert workspace.tabs.active_tab.undo_redo_index == 0


def test_title_falls_back_to_hostname():
    ws = make_workspace(fetch_metadata=False)
    node = ws.add_item({"url": "https://www.python.org/doc/"})
    assert node.type == "website"
    assert node.title == "python.org"


def test_explicit_title_is_not_replaced_by_metadata():
    fetcher = FakeFetcher({"title": "Remote", "thumbnail_url": "https://img.example/t.png"})
    ws = make_workspace(fetcher=fetcher)
    node = ws.add_item({"type": "video", "url": "https://video.example/v", "title": "Mine"})
    stored = ws.store.get(node.id)
    assert stored.title == "Mine"
    assert stored.thumbnail_url == "https://img.example/t.png"


def test_item_without_type_or_url_is_rejected(workspace):
    assert workspace.add_item({"title": "nothing"}) is None
    assert workspace.add_item({"type": "bogus"}) is None
    assert workspace.add_item("junk") is None


def test_new_item_lands_after_selection(workspace):
    a = workspace.add_item({"type": "notes", "title": "a"})
    b = workspace.add_item({"type": "notes", "title": "b"})
    workspace.select(a.id)
    c = workspace.add_item({"type": "notes", "title": "c"})
    assert _child_ids(workspace)[-3:] == [a.id, c.id, b.id]


def test_new_item_defaults_to_active_view(workspace):
    workspace.navigate(WELCOME_ID)
    node = workspace.add_item({"type": "notes", "title": "inside"})
    assert node.parent_id == WELCOME_ID


def test_metadata_for_deleted_item_is_dropped(workspace):
    node = workspace.add_item({"type": "notes", "title": "gone soon"})
    workspace.delete_item(node.id)
    assert workspace.apply_metadata(node.id, {"title": "late"}) is False
    assert workspace.store.get(node.id) is None


def test_protected_items_are_not_deleted(workspace):
    assert workspace.delete_item(TRASH_ID) == []
    assert workspace.delete_item(ROOT_ID) == []
    assert workspace.store.get(TRASH_ID) is not None


def test_tab_drag_reorders_tabs(workspace):
    workspace.open_tab(WELCOME_ID)
    outcome = workspace.handle_drop(
        {"type": "tab", "source": {"index": 1}, "destination": {"droppableId": "tabs", "index": 0}}
    )
    assert outcome == "tab-reorder"
    assert [t.id for t in workspace.tabs.tabs] == [WELCOME_ID, ROOT_ID]


def test_drop_on_tab_moves_whole_selection(workspace):
    folder = workspace.add_item({"type": "folder", "title": "F"})
    a = workspace.add_item({"type": "notes", "title": "a"})
    b = workspace.add_item({"type": "notes", "title": "b"})
    workspace.open_tab(folder.id)
    workspace.activate_tab(ROOT_ID)
    workspace.select(a.id)
    workspace.select(b.id, ctrl=True)

    outcome = workspace.handle_drop(
        {
            "type": "canvas-item",
            "draggableId": a.id,
            "source": {"droppableId": ROOT_ID, "index": 4},
            "destination": {"droppableId": f"tab-drop-{folder.id}", "index": 0},
        }
    )

    assert outcome == "reparent"
    assert set(_child_ids(workspace, folder.id)) == {a.id, b.id}
    assert workspace.selection == []


def test_drop_within_view_reorders(workspace):
    a = workspace.add_item({"type": "notes", "title": "A"})
    b = workspace.add_item({"type": "notes", "title": "B"})
    outcome = workspace.handle_drop(
        {
            "type": "canvas-item",
            "draggableId": a.id,
            "source": {"droppableId": "canvas-droppable", "index": 3},
            "destination": {"droppableId": "canvas-droppable", "index": 0},
        }
    )
    assert outcome == "reorder"
    assert _child_ids(workspace) == [a.id, "saved-items", WELCOME_ID, TRASH_ID, b.id]
    assert [n.order for n in workspace.store.children(ROOT_ID)] == [0, 1, 2, 3, 4]


def test_drop_on_container_reparents(workspace):
    note = workspace.add_item({"type": "notes", "title": "n"})
    outcome = workspace.handle_drop(
        {"type": "canvas-item", "draggableId": note.id, "destination": {"droppableId": WELCOME_ID, "index": 0}}
    )
    assert outcome == "reparent"
    assert workspace.store.get(note.id).parent_id == WELCOME_ID


def test_malformed_drops_are_ignored(workspace):
    version = workspace.store.version
    assert workspace.handle_drop("junk") == "ignored"
    assert workspace.handle_drop({"type": "canvas-item", "draggableId": "x"}) == "ignored"
    assert workspace.handle_drop(
        {"type": "canvas-item", "draggableId": "missing", "destination": {"droppableId": ROOT_ID, "index": 0}}
    ) == "ignored"
    assert workspace.handle_drop(
        {"type": "canvas-item", "draggableId": WELCOME_ID, "destination": {"droppableId": WELCOME_ID, "index": 0}}
    ) == "ignored"
    assert workspace.store.version == version


def test_shift_and_ctrl_selection(workspace):
    a = workspace.add_item({"type": "notes", "title": "a"})
    b = workspace.add_item({"type": "notes", "title": "b"})
    c = workspace.add_item({"type": "notes", "title": "c"})
    workspace.select(a.id)
    assert workspace.select(c.id, shift=True) == [a.id, b.id, c.id]
    assert workspace.select(b.id, ctrl=True) == [a.id, c.id]
    assert workspace.select(b.id) == [b.id]
    assert workspace.clear_selection() == []


def test_copy_paste_clones_and_cut_paste_moves(workspace):
    a = workspace.add_item({"type": "notes", "title": "a"})
    b = workspace.add_item({"type": "notes", "title": "b"})

    assert workspace.copy([a.id]) == 1
    pasted = workspace.paste(WELCOME_ID)
    assert len(pasted) == 1
    assert pasted[0].id != a.id
    assert pasted[0].title == "a"
    assert workspace.store.get(a.id).parent_id == ROOT_ID
    assert workspace.clipboard == {"op": "copy", "ids": [a.id]}

    workspace.cut([b.id])
    moved = workspace.paste(WELCOME_ID)
    assert [n.id for n in moved] == [b.id]
    assert workspace.store.get(b.id).parent_id == WELCOME_ID
    assert workspace.clipboard is None


def test_delete_selected_skips_protected(workspace):
    a = workspace.add_item({"type": "notes", "title": "a"})
    workspace.select(a.id)
    workspace.select(TRASH_ID, ctrl=True)
    assert workspace.delete_selected() == [a.id]
    assert workspace.store.get(TRASH_ID) is not None
    assert workspace.selection == []


def test_deleting_the_open_view_returns_tabs_to_root(workspace):
    folder = workspace.add_item({"type": "folder", "title": "F"})
    workspace.navigate(folder.id)
    workspace.delete_item(folder.id)
    assert workspace.tabs.active_tab.active_view_id == ROOT_ID
    assert workspace.current_view().id == ROOT_ID


def test_navigate_requires_existing_view(workspace):
    assert workspace.navigate("missing") is False
    assert workspace.navigate(WELCOME_ID) is True
    assert workspace.storage.get(TABS_KEY)["tabs"][0]["activeViewId"] == WELCOME_ID


def test_navigation_is_broadcast_to_same_session():
    bus = BroadcastBus()
    sender = make_workspace(bus=bus, session_id="s1")
    same = make_workspace(bus=bus, session_id="s1")
    other = make_workspace(bus=bus, session_id="s2")
    bus.listen(same.receive_broadcast)
    bus.listen(other.receive_broadcast)

    sender.navigate(WELCOME_ID)
    assert same.tabs.active_tab.active_view_id == ROOT_ID

    sender.arm_broadcast("current-session")
    sender.navigate(TRASH_ID)
    assert same.tabs.active_tab.active_view_id == TRASH_ID
    assert other.tabs.active_tab.active_view_id == ROOT_ID
    assert sender.tabs.active_tab.active_view_id == TRASH_ID


def test_received_navigation_is_not_republished():
    bus = BroadcastBus()
    receiver = make_workspace(bus=bus, session_id="s1")
    receiver.arm_broadcast("all")
    q = bus.subscribe()
    message = {"type": "NAVIGATE", "payload": {"viewId": WELCOME_ID}, "targetId": "all", "sourceId": "elsewhere", "sentAt": 1}
    assert receiver.receive_broadcast(message) is True
    assert q.empty()


def test_layout_clamps_page_on_narrow_viewport(workspace):
    out = workspace.layout(width=320, mode="grid-square", page=5)
    assert out["columns"] == 1
    assert out["pagination"]["currentPage"] == 1
    assert out["pagination"]["totalPages"] == 3
    assert out["visibleCount"] == 1
    assert out["viewId"] == ROOT_ID


def test_layout_uses_view_layout_mode(workspace):
    workspace.set_layout_mode(ROOT_ID, "grid-vertical")
    assert workspace.layout()["mode"] == "grid-vertical"
    assert workspace.set_layout_mode(ROOT_ID, "spiral") is None


def test_canvas_items_get_free_spots(workspace):
    workspace.set_layout_mode(WELCOME_ID, "canvas")
    first = workspace.add_item({"type": "notes", "title": "1"}, parent_id=WELCOME_ID)
    second = workspace.add_item({"type": "notes", "title": "2"}, parent_id=WELCOME_ID)
    assert (first.x, first.y) == (40, 40)
    assert (second.x, second.y) == (680, 40)


def test_drag_snaps_to_grid(workspace):
    node = workspace.add_item({"type": "notes", "title": "n", "x": 100, "y": 100})
    moved = workspace.drag_item(node.id, 10, -3)
    assert (moved.x, moved.y) == (112, 96)


def test_outline_import_and_export(workspace):
    text = "- Reading:\n  - Python: https://www.python.org\n  - Scratch:\n"
    imported = workspace.import_outline(text, WELCOME_ID)
    assert [n.type for n in imported] == ["folder", "website", "notes"]
    folder = imported[0]
    assert folder.parent_id == WELCOME_ID
    assert _child_ids(workspace, folder.id) == [imported[1].id, imported[2].id]

    exported = workspace.export_outline(folder.id)
    assert "Python: https://www.python.org" in exported
    assert "Scratch" in exported


def test_bad_outline_imports_nothing(workspace):
    version = workspace.store.version
    assert workspace.import_outline("key: [unclosed", ROOT_ID) == []
    assert workspace.import_outline("just: a mapping", ROOT_ID) == []
    assert workspace.store.version == version


def test_rejected_update_leaves_view_and_undo_alone(workspace):
    stack = list(workspace.tabs.active_tab.undo_redo_stack)
    assert workspace.update_item(WELCOME_ID, {"ratings": "abc"}) is None
    assert workspace.update_item(WELCOME_ID, {"order": "zzz"}) is None
    assert workspace.bulk_update([WELCOME_ID], {"viewCount": "lots"}) == []
    view = workspace.current_view()
    assert view is not None
    assert WELCOME_ID in [c.id for c in view.children]
    assert workspace.store.get(WELCOME_ID).ratings == []
    assert workspace.tabs.active_tab.undo_redo_stack == stack
