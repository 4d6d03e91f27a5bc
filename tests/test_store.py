import random

import pytest

from canvasflow.nodes import ROOT_ID, TRASH_ID, WELCOME_ID, node_from_dict
from canvasflow.repair import find_cycle_members
from canvasflow.storage import GRID_SPANS_RESET_KEY, ITEMS_KEY, MemoryStorage
from canvasflow.store import ContentStore


def _orders(store, parent_id):
    return {n.id: n.order for n in store.children(parent_id)}


def test_seed_has_only_essential_containers(store):
    assert sorted(n.id for n in store.all()) == sorted(["root", "saved-items", "welcome-folder", "trash-folder"])
    assert [n.id for n in store.children(ROOT_ID)] == ["saved-items", "welcome-folder", "trash-folder"]


def test_insert_at_index_zero_shifts_existing_siblings(store):
    before = _orders(store, ROOT_ID)
    count_before = store.hierarchy().stats_for(ROOT_ID).item_count

    node = store.insert({"type": "website", "url": "https://example.com"}, ROOT_ID, index=0)

    after = _orders(store, ROOT_ID)
    assert node.order == 0
    assert [n.id for n in store.children(ROOT_ID)][0] == node.id
    for node_id, order in before.items():
        assert after[node_id] == order + 1
    assert store.hierarchy().stats_for(ROOT_ID).item_count == count_before + 1


def test_insert_without_index_appends(store):
    node = store.insert({"type": "notes", "title": "Later"}, ROOT_ID)
    assert node.order == 11
    empty = store.insert({"type": "folder", "title": "Empty"}, ROOT_ID)
    child = store.insert({"type": "notes", "title": "First"}, empty.id)
    assert child.order == 0


def test_insert_in_middle_keeps_orders_strictly_increasing(store):
    parent = store.insert({"type": "folder", "title": "P"}, ROOT_ID)
    for title in "abcd":
        store.insert({"type": "notes", "title": title}, parent.id)
    mid = store.insert({"type": "notes", "title": "mid"}, parent.id, index=2)

    titles = [n.title for n in store.children(parent.id)]
    orders = [n.order for n in store.children(parent.id)]
    assert titles == ["a", "b", "mid", "c", "d"]
    assert orders == sorted(set(orders))
    assert mid.order == 2


def test_insert_none_parent_goes_to_root(store):
    node = store.insert({"type": "notes", "title": "x"}, None)
    assert node.parent_id == ROOT_ID


def test_insert_existing_id_is_a_move(store):
    folder = store.insert({"type": "folder", "title": "F"}, ROOT_ID)
    note = store.insert({"type": "notes", "title": "n"}, ROOT_ID)
    count = len(store)

    moved = store.insert(note, folder.id)

    assert len(store) == count
    assert moved.parent_id == folder.id
    assert store.get(note.id).parent_id == folder.id


def test_insert_under_missing_parent_is_accepted(store):
    node = store.insert({"type": "notes", "title": "early"}, "not-yet")
    assert store.get(node.id).parent_id == "not-yet"
    assert node.id in store.hierarchy().orphans


def test_move_refuses_root_self_and_descendants(store):
    a = store.insert({"type": "folder", "title": "A"}, ROOT_ID)
    b = store.insert({"type": "folder", "title": "B"}, a.id)
    version = store.version

    assert store.move(ROOT_ID, a.id) is None
    assert store.move(a.id, a.id) is None
    assert store.move(a.id, b.id) is None
    assert store.version == version
    assert store.get(a.id).parent_id == ROOT_ID


def test_move_with_index(store):
    target = store.insert({"type": "folder", "title": "T"}, ROOT_ID)
    first = store.insert({"type": "notes", "title": "1"}, target.id)
    loose = store.insert({"type": "notes", "title": "loose"}, ROOT_ID)

    store.move(loose.id, target.id, index=0)

    assert [n.id for n in store.children(target.id)] == [loose.id, first.id]


def test_update_unknown_id_is_noop(store):
    version = store.version
    assert store.update("nope", {"title": "x"}) is None
    assert store.version == version


def test_update_accepts_camel_and_snake_case(store):
    node = store.insert({"type": "website", "url": "https://a.example"}, ROOT_ID)
    store.update(node.id, {"gridSpanCol": 2, "sort_option": "name"})
    updated = store.get(node.id)
    assert updated.grid_span_col == 2
    assert updated.sort_option == "name"


def test_update_keeps_id_and_created_at(store):
    node = store.insert({"type": "notes", "title": "n"}, ROOT_ID)
    store.update(node.id, {"id": "other", "createdAt": "2000-01-01T00:00:00Z"})
    kept = store.get(node.id)
    assert kept.created_at == node.created_at
    assert store.get("other") is None


def test_update_parent_routes_through_move(store):
    folder = store.insert({"type": "folder", "title": "F"}, ROOT_ID)
    note = store.insert({"type": "notes", "title": "n"}, ROOT_ID)
    store.update(note.id, {"parentId": folder.id, "title": "renamed"})
    moved = store.get(note.id)
    assert moved.parent_id == folder.id
    assert moved.title == "renamed"

    # A rejected move rejects the whole update.
    assert store.update(folder.id, {"parentId": note.id, "title": "loop"}) is None
    assert store.get(folder.id).title == "F"


def test_update_replaces_node_objects(store):
    node = store.insert({"type": "notes", "title": "before"}, ROOT_ID)
    store.update(node.id, {"title": "after"})
    assert node.title == "before"
    assert store.get(node.id).title == "after"


def test_unknown_fields_are_kept_in_extra(store):
    node = store.insert({"type": "clock", "title": "c", "clockMode": "digital"}, ROOT_ID)
    assert node.extra == {"clockMode": "digital"}
    store.update(node.id, {"timezone": "UTC"})
    assert store.get(node.id).to_dict()["timezone"] == "UTC"
    assert store.get(node.id).to_dict()["clockMode"] == "digital"


def test_bulk_update(store):
    a = store.insert({"type": "notes", "title": "a"}, ROOT_ID)
    b = store.insert({"type": "notes", "title": "b"}, ROOT_ID)
    updated = store.bulk_update([a.id, b.id, "missing"], {"icon": "star"})
    assert [n.id for n in updated] == [a.id, b.id]
    assert store.get(a.id).icon == store.get(b.id).icon == "star"


BAD_FIELDS = [
    {"order": "zzz"},
    {"ratings": "abc"},
    {"title": 5},
    {"styles": ["wide"]},
    {"isDeletable": "no"},
    {"viewCount": "many"},
    {"gridSpanCol": "2"},
    {"parentId": 7},
]


@pytest.mark.parametrize("fields", BAD_FIELDS)
def test_update_rejects_badly_typed_fields(store, fields):
    before = store.get(WELCOME_ID)
    version = store.version
    with pytest.raises(ValueError):
        store.update(WELCOME_ID, {"icon": "star", **fields})
    assert store.get(WELCOME_ID) is before
    assert store.version == version
    assert [n.id for n in store.hierarchy().children_of(ROOT_ID)] == ["saved-items", WELCOME_ID, TRASH_ID]


def test_bulk_update_rejects_badly_typed_fields(store):
    a = store.insert({"type": "notes", "title": "a"}, ROOT_ID)
    with pytest.raises(ValueError):
        store.bulk_update([a.id, WELCOME_ID], {"icon": "star", "ratings": "abc"})
    assert store.get(a.id) is a
    assert store.get(WELCOME_ID).icon == "folder"


def test_rejected_update_survives_reload(storage, store):
    folder = store.insert({"type": "folder", "title": "F"}, ROOT_ID)
    child = store.insert({"type": "notes", "title": "c"}, folder.id)
    with pytest.raises(ValueError):
        store.update(folder.id, {"order": "1"})

    again = ContentStore.load(storage)
    assert again.get(folder.id).order == folder.order
    assert [n.id for n in again.children(folder.id)] == [child.id]
    assert again.hierarchy().orphans == []


def test_reorder_rewrites_sibling_orders(store):
    parent = store.insert({"type": "folder", "title": "P"}, ROOT_ID)
    ids = [store.insert({"type": "notes", "title": t}, parent.id).id for t in "abc"]
    store.reorder(parent.id, [ids[2], ids[0]])
    assert [n.id for n in store.children(parent.id)] == [ids[2], ids[0], ids[1]]
    assert [n.order for n in store.children(parent.id)] == [0, 1, 2]


def test_delete_subtree_removes_descendants_only(store):
    top = store.insert({"type": "folder", "title": "top"}, ROOT_ID)
    mid = store.insert({"type": "folder", "title": "mid"}, top.id)
    leaf = store.insert({"type": "notes", "title": "leaf"}, mid.id)
    other = store.insert({"type": "notes", "title": "other"}, ROOT_ID)

    removed = store.delete_subtree(top.id)

    assert set(removed) == {top.id, mid.id, leaf.id}
    assert store.get(other.id) is not None
    assert all(store.get(i) is None for i in removed)


def test_delete_essential_folder_is_restored(store):
    child = store.insert({"type": "notes", "title": "inside"}, WELCOME_ID)
    removed = store.delete_subtree(WELCOME_ID)
    assert child.id in removed
    assert store.get(WELCOME_ID) is not None
    assert store.get(child.id) is None


def test_subscribers_see_mutations_after_rebuild(store):
    seen = []
    store.subscribe(lambda event: seen.append((event.op, event.ids[0], store.hierarchy().version)))
    node = store.insert({"type": "notes", "title": "n"}, ROOT_ID)
    assert seen[0][0] == "insert"
    assert seen[0][1] == node.id
    assert seen[0][2] == store.version


def test_unsubscribe(store):
    seen = []
    stop = store.subscribe(seen.append)
    stop()
    store.insert({"type": "notes", "title": "n"}, ROOT_ID)
    assert seen == []


def test_mutations_are_persisted(storage, store):
    node = store.insert({"type": "notes", "title": "saved"}, TRASH_ID)
    records = storage.get(ITEMS_KEY)
    assert any(r["id"] == node.id and r["parentId"] == TRASH_ID for r in records)


def test_load_empty_storage_reseeds():
    storage = MemoryStorage()
    store = ContentStore.load(storage)
    assert len(store) == 4
    assert len(storage.get(ITEMS_KEY)) == 4


def test_load_restores_missing_root_and_keeps_other_nodes():
    records = [
        {"id": "saved-items", "type": "saved-items", "title": "Saved", "parentId": "root", "order": 0,
         "createdAt": "2024-05-24T12:00:00.000Z", "updatedAt": "2024-05-24T12:00:00.000Z"},
        {"id": "welcome-folder", "type": "folder", "title": "Welcome", "parentId": "root", "order": 1,
         "createdAt": "2024-05-24T12:00:00.000Z", "updatedAt": "2024-05-24T12:00:00.000Z"},
        {"id": "trash-folder", "type": "trash-folder", "title": "Trash", "parentId": "root", "order": 10,
         "createdAt": "2024-05-24T12:00:00.000Z", "updatedAt": "2024-05-24T12:00:00.000Z"},
        {"id": "mine", "type": "website", "title": "Mine", "url": "https://mine.example", "parentId": "root",
         "order": 3, "createdAt": "2024-05-24T12:00:00.000Z", "updatedAt": "2024-05-24T12:00:00.000Z"},
    ]
    storage = MemoryStorage({ITEMS_KEY: records, GRID_SPANS_RESET_KEY: True})

    store = ContentStore.load(storage)

    assert store.get(ROOT_ID) is not None
    for record in records:
        assert store.get(record["id"]).to_dict() == node_from_dict(record).to_dict()
    assert any(r["id"] == ROOT_ID for r in storage.get(ITEMS_KEY))


def test_load_resets_grid_spans_once():
    record = {"id": "big", "type": "notes", "title": "Big", "parentId": "root", "gridSpanCol": 3, "gridSpanRow": 2}
    storage = MemoryStorage({ITEMS_KEY: [record]})

    store = ContentStore.load(storage)
    assert (store.get("big").grid_span_col, store.get("big").grid_span_row) == (1, 1)
    assert storage.get(GRID_SPANS_RESET_KEY) is True

    store.update("big", {"gridSpanCol": 2})
    again = ContentStore.load(storage)
    assert again.get("big").grid_span_col == 2


def test_load_breaks_parent_cycles():
    records = [
        {"id": "a", "type": "folder", "title": "A", "parentId": "b"},
        {"id": "b", "type": "folder", "title": "B", "parentId": "a"},
    ]
    store = ContentStore.load(MemoryStorage({ITEMS_KEY: records}))
    assert store.get("a").parent_id == ROOT_ID
    assert store.get("b").parent_id == ROOT_ID


def test_load_skips_unreadable_records():
    records = [{"id": "ok", "type": "notes", "title": "ok", "parentId": "root"}, {"id": "bad", "type": "???"}, "junk"]
    store = ContentStore.load(MemoryStorage({ITEMS_KEY: records}))
    assert store.get("ok") is not None
    assert store.get("bad") is None


def _terminates(store, node_id):
    seen = set()
    current = node_id
    while current is not None:
        if current in seen:
            return False
        seen.add(current)
        node = store.get(current)
        current = node.parent_id if node else None
    return True


def test_random_insert_move_sequences_stay_acyclic():
    for seed in range(20):
        rng = random.Random(seed)
        store = ContentStore()
        for _ in range(80):
            ids = [n.id for n in store.all()]
            containers = [n.id for n in store.all() if n.is_container]
            if rng.random() < 0.5 or len(ids) < 6:
                kind = rng.choice(["folder", "notes", "website"])
                index = rng.choice([None, 0, 1, 5])
                store.insert({"type": kind, "title": kind}, rng.choice(containers), index=index)
            else:
                store.move(rng.choice(ids), rng.choice(containers), rng.choice([None, 0, 2]))
        assert not find_cycle_members(store.all())
        assert all(_terminates(store, n.id) for n in store.all())


def test_random_subtree_delete_is_complete():
    for seed in range(20):
        rng = random.Random(seed)
        store = ContentStore()
        created = []
        for _ in range(40):
            parents = [ROOT_ID] + [n for n in created if store.get(n).is_container]
            kind = rng.choice(["folder", "folder", "notes"])
            created.append(store.insert({"type": kind, "title": kind}, rng.choice(parents)).id)

        victim = rng.choice(created)
        expected = {n.id for n in store.all() if victim in _chain(store, n.id)}
        survivors = {n.id for n in store.all()} - expected

        removed = store.delete_subtree(victim)

        assert set(removed) == expected
        assert {n.id for n in store.all()} == survivors


def _chain(store, node_id):
    out = []
    current = node_id
    while current is not None and current not in out:
        out.append(current)
        node = store.get(current)
        current = node.parent_id if node else None
    return out
