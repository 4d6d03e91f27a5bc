import pytest

from canvasflow.nodes import (
    ContentNode,
    apply_fields,
    clone_node,
    coerce_fields,
    node_from_dict,
    nodes_from_records,
    remote_payload,
    seed_nodes,
    sort_order,
    validate_field,
)


def test_seed_set():
    nodes = {n.id: n for n in seed_nodes()}
    assert set(nodes) == {"root", "saved-items", "welcome-folder", "trash-folder"}
    assert nodes["root"].parent_id is None
    assert nodes["root"].is_deletable is False
    assert nodes["welcome-folder"].is_deletable is True
    assert nodes["trash-folder"].order == 10


def test_from_dict_reads_camel_case_and_keeps_unknown_keys():
    node = node_from_dict(
        {
            "id": "x",
            "type": "website",
            "title": "  Site ",
            "parentId": "root",
            "gridSpanCol": 0,
            "viewCount": 12,
            "itemCount": 99,
            "customField": {"a": 1},
        }
    )
    assert node.title == "Site"
    assert node.parent_id == "root"
    assert node.grid_span_col == 1
    assert node.view_count == 12
    assert node.extra == {"customField": {"a": 1}}
    data = node.to_dict()
    assert data["customField"] == {"a": 1}
    assert "itemCount" not in data


def test_from_dict_accepts_snake_case_and_generates_ids():
    node = node_from_dict({"type": "notes", "parent_id": "root", "layout_mode": "canvas"})
    assert node.id.startswith("notes-")
    assert node.layout_mode == "canvas"


@pytest.mark.parametrize(
    "record",
    [
        {"type": "nope"},
        {"type": "notes", "order": "first"},
        {"type": "notes", "layoutMode": "spiral"},
        {"type": "notes", "styles": []},
        {"type": "notes", "title": 5},
        ["not", "a", "dict"],
    ],
)
def test_from_dict_rejects_bad_records(record):
    with pytest.raises(ValueError):
        node_from_dict(record)


def test_nodes_from_records_collects_failures():
    nodes, rejected = nodes_from_records([{"type": "notes", "title": "ok"}, {"type": "?"}])
    assert len(nodes) == 1
    assert rejected[0]["index"] == 1


def test_coerce_fields_drops_identity_and_stats():
    changes = coerce_fields({"id": "z", "createdAt": "x", "itemCount": 3, "title": "t", "mood": "happy"})
    assert changes == {"title": "t", "extra": {"mood": "happy"}}
    with pytest.raises(ValueError):
        coerce_fields({"layoutMode": "spiral"})


@pytest.mark.parametrize(
    "updates",
    [
        {"order": "zzz"},
        {"order": True},
        {"ratings": "abc"},
        {"title": 5},
        {"url": ["x"]},
        {"width": "10px"},
        {"isDeletable": 1},
        {"type": "nope"},
    ],
)
def test_coerce_fields_rejects_badly_typed_values(updates):
    with pytest.raises(ValueError):
        coerce_fields({"icon": "star", **updates})


def test_coerce_fields_normalises_like_records():
    changes = coerce_fields({"title": "  t ", "gridSpanCol": 0, "ratings": [{"rating": 4}, "junk"], "parentId": ""})
    assert changes == {"title": "t", "grid_span_col": 1, "ratings": [{"rating": 4}], "parent_id": None}
    assert validate_field("order", None) == 0
    assert validate_field("is_deletable", None) is True


def test_sort_order_tolerates_non_numbers():
    assert sort_order(ContentNode(id="a", type="notes", title="t", order=2.5)) == 2.5
    assert sort_order(ContentNode(id="a", type="notes", title="t", order="2")) == 0


def test_apply_fields_returns_new_node():
    node = ContentNode(id="a", type="notes", title="old", updated_at="2020-01-01T00:00:00.000Z")
    updated = apply_fields(node, {"title": "new"}, stamp="2024-01-01T00:00:00.000Z")
    assert node.title == "old"
    assert updated.title == "new"
    assert updated.updated_at == "2024-01-01T00:00:00.000Z"


def test_clone_gets_fresh_identity():
    node = ContentNode(id="a", type="notes", title="t", styles={"w": 1})
    copy = clone_node(node, parent_id="elsewhere")
    assert copy.id != node.id
    assert copy.parent_id == "elsewhere"
    copy.styles["w"] = 2
    assert node.styles == {"w": 1}


def test_remote_payload_shape():
    node = ContentNode(id="a", type="website", title="t", parent_id="root", url="https://x", like_count=3)
    row = remote_payload(node, "user-1")
    assert row["user_id"] == "user-1"
    assert row["parent_id"] == "root"
    assert row["metadata"]["likeCount"] == 3
