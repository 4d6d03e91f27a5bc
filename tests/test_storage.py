import json

from canvasflow.storage import ITEMS_KEY, LocalStorage, MemoryStorage
from canvasflow.store import ContentStore


def test_memory_storage_returns_copies():
    storage = MemoryStorage()
    value = {"a": [1, 2]}
    storage.set("k", value)
    value["a"].append(3)
    got = storage.get("k")
    got["a"].append(4)
    assert storage.get("k") == {"a": [1, 2]}
    assert storage.get("missing", "dflt") == "dflt"
    storage.remove("k")
    assert storage.keys() == []


def test_local_storage_persists_across_instances(tmp_path):
    path = tmp_path / "state.json"
    storage = LocalStorage(path)
    storage.set("greeting", "hi")

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["data"] == {"greeting": "hi"}
    assert LocalStorage(path).get("greeting") == "hi"


def test_local_storage_keeps_recent_backups(tmp_path):
    path = tmp_path / "state.json"
    backups = tmp_path / "bk"
    storage = LocalStorage(path, backup_dir=backups, keep_backups=5)
    for i in range(9):
        storage.set("n", i)
    assert len(list(backups.glob("state.json.bak-*"))) == 5


def test_unreadable_state_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    assert LocalStorage(path).keys() == []


def test_store_round_trip_through_disk(tmp_path):
    path = tmp_path / "state.json"
    store = ContentStore.load(LocalStorage(path))
    node = store.insert({"type": "notes", "title": "kept"}, "welcome-folder")

    reloaded = ContentStore.load(LocalStorage(path))
    assert reloaded.get(node.id).title == "kept"
    assert reloaded.get(node.id).parent_id == "welcome-folder"
    assert len(LocalStorage(path).get(ITEMS_KEY)) == 5
