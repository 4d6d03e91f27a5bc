from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4


ROOT_ID = "root"
SAVED_ITEMS_ID = "saved-items"
WELCOME_ID = "welcome-folder"
TRASH_ID = "trash-folder"
ESSENTIAL_IDS = (ROOT_ID, SAVED_ITEMS_ID, WELCOME_ID, TRASH_ID)

ITEM_TYPES = frozenset(
    {
        "website", "image", "video", "audio", "pdf", "map", "folder", "list", "clock", "notes",
        "player", "calendar", "3dplayer", "award", "todolist", "weather", "calculator",
        "currencyConverter", "unitConverter", "currencyRates", "playerControls", "navigation",
        "mediaHub", "aiImage", "inventory", "space", "file", "pharmacy", "trash-folder",
        "flowchart", "kanban", "swot", "fishbone", "5s", "qfd", "processchart", "pmp", "rss",
        "devices", "profile-card", "profile-share", "mindmap", "financial-engineering", "book",
        "item", "saved-items", "alarm", "stopwatch", "timer", "world-clock", "pomodoro",
        "user-profile", "awards-folder", "spaces-folder", "devices-folder", "root", "match",
        "league-table", "fixture", "scan", "search", "todo", "social-feed", "user-list",
        "screenshot", "screen-recorder", "qrcode", "color-picker", "clipboard-manager",
        "gradient-generator", "lorem-ipsum", "business-model-canvas", "hue", "reservation",
        "purchase", "achievements", "training-module", "award-card", "new-tab",
    }
)

CONTAINER_TYPES = frozenset(
    {
        "root", "folder", "list", "inventory", "space", "devices", "calendar", "saved-items",
        "awards-folder", "spaces-folder", "devices-folder", "trash-folder",
    }
)

# Types whose URL is worth resolving to a title/thumbnail after insert.
MEDIA_TYPES = frozenset({"website", "video", "image", "audio"})

# Top-level containers that are not part of the dotted hierarchy numbering.
SYSTEM_FOLDER_IDS = frozenset({"awards-folder", "trash-folder", "spaces-folder", "devices-folder"})

LAYOUT_MODES = ("grid", "grid-vertical", "grid-square", "canvas")

# attribute name -> persisted (camelCase) key
_PERSISTED_KEYS: dict[str, str] = {
    "id": "id",
    "type": "type",
    "title": "title",
    "parent_id": "parentId",
    "order": "order",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "url": "url",
    "content": "content",
    "icon": "icon",
    "layout_mode": "layoutMode",
    "x": "x",
    "y": "y",
    "width": "width",
    "height": "height",
    "grid_span_col": "gridSpanCol",
    "grid_span_row": "gridSpanRow",
    "styles": "styles",
    "sort_option": "sortOption",
    "sort_direction": "sortDirection",
    "is_deletable": "isDeletable",
    "ratings": "ratings",
    "thumbnail_url": "thumbnail_url",
    "author_name": "author_name",
    "published_at": "published_at",
    "view_count": "viewCount",
    "like_count": "likeCount",
    "comment_count": "commentCount",
    "platform_view_count": "platformViewCount",
    "platform_like_count": "platformLikeCount",
    "cover_image": "coverImage",
}
_ATTRIBUTE_FOR_KEY = {key: attr for attr, key in _PERSISTED_KEYS.items()}
# Stats written by the hierarchy builder; dropped when records are read back.
DERIVED_KEYS = frozenset({"children", "itemCount", "childCount", "averageRating", "level", "hierarchyId"})
IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str | None = None) -> str:
    token = uuid4().hex
    return f"{prefix}-{token[:12]}" if prefix else token


@dataclass
class ContentNode:
    id: str
    type: str
    title: str
    parent_id: str | None = None
    order: float = 0
    created_at: str = ""
    updated_at: str = ""
    url: str | None = None
    content: str | None = None
    icon: str | None = None
    layout_mode: str | None = None  # per-container: grid | grid-vertical | grid-square | canvas
    x: float | None = None
    y: float | None = None
    width: float | None = None
    height: float | None = None
    grid_span_col: int = 1
    grid_span_row: int = 1
    styles: dict[str, Any] = field(default_factory=dict)
    sort_option: str | None = None
    sort_direction: str | None = None
    is_deletable: bool = True
    ratings: list[dict[str, Any]] = field(default_factory=list)
    thumbnail_url: str | None = None
    author_name: str | None = None
    published_at: str | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    platform_view_count: int | None = None
    platform_like_count: int | None = None
    cover_image: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)  # unknown persisted keys, round-tripped

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for attr, key in _PERSISTED_KEYS.items():
            value = getattr(self, attr)
            if value is None and attr not in ("parent_id",):
                continue
            if isinstance(value, dict):
                value = dict(value)
            elif isinstance(value, list):
                value = [dict(v) if isinstance(v, dict) else v for v in value]
            data[key] = value
        return data


def sort_order(node: ContentNode) -> float:
    """`order` as a number; anything non-numeric sorts as 0."""
    value = node.order
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _text(value: Any, key: str) -> str | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid {key}.")
    return value


def _title(value: Any, key: str) -> str:
    return (_text(value, key) or "").strip()


def _number(value: Any, key: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid {key}.")
    return value


def _order(value: Any, key: str) -> float:
    number = _number(value, key)
    return 0 if number is None else number


def _span(value: Any, key: str) -> int:
    number = _number(value, key)
    return 1 if number is None else max(1, int(number))


def _item_type(value: Any, key: str) -> str:
    if not isinstance(value, str) or value.strip() not in ITEM_TYPES:
        raise ValueError(f"Invalid item type: {value or '(empty)'}.")
    return value.strip()


def _layout_mode(value: Any, key: str) -> str | None:
    mode = _text(value, key)
    if mode is not None and mode not in LAYOUT_MODES:
        raise ValueError(f"Invalid {key}: {mode}.")
    return mode


def _styles(value: Any, key: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Invalid {key}.")
    return dict(value)


def _ratings(value: Any, key: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"Invalid {key}.")
    # Malformed rating events are dropped, not fatal.
    return [dict(r) for r in value if isinstance(r, dict)]


def _flag(value: Any, key: str) -> bool:
    if value is None:
        return True
    if not isinstance(value, bool):
        raise ValueError(f"Invalid {key}.")
    return value


_NUMBER_FIELDS = (
    "x", "y", "width", "height",
    "view_count", "like_count", "comment_count", "platform_view_count", "platform_like_count",
)
_TEXT_FIELDS = (
    "parent_id", "created_at", "updated_at", "url", "content", "icon", "sort_option",
    "sort_direction", "thumbnail_url", "author_name", "published_at", "cover_image",
)
_FIELD_CHECKS: dict[str, Any] = {
    **{attr: _number for attr in _NUMBER_FIELDS},
    **{attr: _text for attr in _TEXT_FIELDS},
    "type": _item_type,
    "title": _title,
    "order": _order,
    "layout_mode": _layout_mode,
    "grid_span_col": _span,
    "grid_span_row": _span,
    "styles": _styles,
    "ratings": _ratings,
    "is_deletable": _flag,
}


def validate_field(attr: str, value: Any) -> Any:
    """Check one attribute value and return it normalised; raises ValueError.

    Shared by record loading and partial updates so both accept exactly the
    same shapes.
    """
    check = _FIELD_CHECKS.get(attr)
    if check is None:
        return value
    return check(value, _PERSISTED_KEYS.get(attr, attr))


def node_from_dict(data: dict[str, Any]) -> ContentNode:
    """Build a node from a persisted/camelCase record, validating as we go.

    Snake_case attribute names are accepted as well so API payloads and stored
    records share one entry point. Derived stats are dropped; any other unknown
    key survives in `extra`.
    """
    if not isinstance(data, dict):
        raise ValueError("Item must be an object.")
    data = {_PERSISTED_KEYS.get(k, k): v for k, v in data.items()}

    node_type = validate_field("type", data.get("type") or "")
    node_id = str(data.get("id") or "").strip() or new_id(node_type)
    values = {
        attr: validate_field(attr, data.get(key))
        for attr, key in _PERSISTED_KEYS.items()
        if attr not in ("id", "type")
    }
    stamp = now_iso()
    values["created_at"] = values["created_at"] or stamp
    values["updated_at"] = values["updated_at"] or stamp

    known = set(_ATTRIBUTE_FOR_KEY) | DERIVED_KEYS
    extra = {k: v for k, v in data.items() if k not in known}
    return ContentNode(id=node_id, type=node_type, extra=extra, **values)


def coerce_fields(updates: dict[str, Any]) -> dict[str, Any]:
    """Map a partial update (camelCase or snake_case keys) onto node attributes.

    Every known field is validated before anything is returned, so a bad value
    rejects the whole update. Unknown keys go to `extra`; derived stats and
    immutable fields are dropped.
    """
    attrs = {f.name for f in fields(ContentNode)}
    out: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in (updates or {}).items():
        attr = _ATTRIBUTE_FOR_KEY.get(key, key)
        if key in DERIVED_KEYS or attr in IMMUTABLE_FIELDS or attr == "extra":
            continue
        if attr in attrs:
            out[attr] = validate_field(attr, value)
        else:
            extra[key] = value
    if extra:
        out["extra"] = extra
    return out


def apply_fields(node: ContentNode, changes: dict[str, Any], *, stamp: str | None = None) -> ContentNode:
    changes = dict(changes)
    extra = changes.pop("extra", None)
    if extra:
        changes["extra"] = {**node.extra, **extra}
    changes["updated_at"] = stamp or now_iso()
    return replace(node, **changes)


def clone_node(node: ContentNode, **changes: Any) -> ContentNode:
    """Copy a node under a fresh id (used by copy/paste)."""
    stamp = now_iso()
    base = replace(
        node,
        id=new_id(node.type),
        styles=dict(node.styles),
        ratings=[dict(r) for r in node.ratings],
        extra=dict(node.extra),
        created_at=stamp,
        updated_at=stamp,
    )
    return replace(base, **changes) if changes else base


def seed_nodes(stamp: str | None = None) -> list[ContentNode]:
    """The static default set: the four essential containers and nothing else."""
    stamp = stamp or now_iso()
    return [
        ContentNode(
            id=ROOT_ID, type="root", title="Library", icon="library", parent_id=None, order=0,
            created_at=stamp, updated_at=stamp, is_deletable=False,
        ),
        ContentNode(
            id=SAVED_ITEMS_ID, type="saved-items", title="Saved Items", icon="bookmark",
            parent_id=ROOT_ID, order=0, created_at=stamp, updated_at=stamp, is_deletable=False,
        ),
        ContentNode(
            id=WELCOME_ID, type="folder", title="Welcome", icon="folder", parent_id=ROOT_ID,
            order=1, created_at=stamp, updated_at=stamp, content="Welcome to CanvasFlow!",
            styles={"width": "400px", "height": "300px"},
        ),
        ContentNode(
            id=TRASH_ID, type="trash-folder", title="Trash", icon="trash-2", parent_id=ROOT_ID,
            order=10, created_at=stamp, updated_at=stamp, is_deletable=False,
            styles={"width": "400px", "height": "300px"},
        ),
    ]


def seed_node(node_id: str) -> ContentNode | None:
    for node in seed_nodes():
        if node.id == node_id:
            return node
    return None


def remote_payload(node: ContentNode, user_id: str) -> dict[str, Any]:
    """Row shape for the remote `items` table; display extras are denormalised into metadata."""
    return {
        "id": node.id,
        "user_id": user_id,
        "parent_id": node.parent_id,
        "type": node.type,
        "title": node.title,
        "content": node.content,
        "url": node.url,
        "icon": node.icon,
        "styles": dict(node.styles),
        "order": node.order,
        "metadata": {
            "thumbnail_url": node.thumbnail_url,
            "author_name": node.author_name,
            "published_at": node.published_at,
            "viewCount": node.view_count,
            "likeCount": node.like_count,
            "commentCount": node.comment_count,
            "coverImage": node.cover_image,
        },
    }


def nodes_from_records(records: Iterable[Any]) -> tuple[list[ContentNode], list[dict[str, Any]]]:
    """Parse stored records, collecting (not raising) per-record failures."""
    nodes: list[ContentNode] = []
    rejected: list[dict[str, Any]] = []
    for idx, record in enumerate(records or []):
        try:
            nodes.append(node_from_dict(record))
        except ValueError as exc:
            rejected.append({"index": idx, "error": str(exc)})
    return nodes, rejected
