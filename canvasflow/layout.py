"""Pure layout math for the four view modes.

Nothing here touches storage or the network; every function is cheap enough to
call on each render and never loops over more than the visible slice.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence, TypeVar

from .nodes import LAYOUT_MODES, ContentNode


logger = logging.getLogger(__name__)

T = TypeVar("T")

GAP = 24
MIN_CONTAINER_WIDTH = 320
MAX_SPAN = 4
VISIBLE_ROWS = 4
DEFAULT_SNAP = 16
CANVAS_ITEM_WIDTH = 320
CANVAS_ITEM_HEIGHT = 240
CANVAS_MIN_WIDTH = 1200
PLACEMENT_GRID = 40
PLACEMENT_ATTEMPTS = 100


@dataclass
class LayoutResult:
    position: tuple[float, float] | None = None
    size: tuple[float | None, float | None] | None = None
    z_index: int = 0
    class_name: str | None = None
    col_span: int = 1
    row_span: int = 1
    min_height: int | None = None
    styles: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": list(self.position) if self.position else None,
            "size": list(self.size) if self.size else None,
            "zIndex": self.z_index,
            "className": self.class_name,
            "colSpan": self.col_span,
            "rowSpan": self.row_span,
            "minHeight": self.min_height,
            "styles": dict(self.styles),
        }


@dataclass
class PaginationInfo:
    current_page: int
    total_pages: int
    items_on_current_page: int
    total_items: int
    columns: int
    rows: int
    items_per_page: int
    start_index: int
    end_index: int

    def to_dict(self) -> dict[str, int]:
        return {
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "itemsOnCurrentPage": self.items_on_current_page,
            "totalItems": self.total_items,
            "columns": self.columns,
            "rows": self.rows,
            "itemsPerPage": self.items_per_page,
            "startIndex": self.start_index,
            "endIndex": self.end_index,
        }


@dataclass
class Rect:
    x: float
    y: float
    width: float
    height: float
    id: str | None = None

    @classmethod
    def from_node(cls, node: ContentNode, default_width: float = CANVAS_ITEM_WIDTH, default_height: float = CANVAS_ITEM_HEIGHT) -> "Rect":
        return cls(
            x=node.x or 0,
            y=node.y or 0,
            width=node.width if node.width is not None else default_width,
            height=node.height if node.height is not None else default_height,
            id=node.id,
        )


@dataclass
class AlignmentGuide:
    type: str  # vertical | horizontal
    position: float
    offset: float
    snapped_item: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "position": self.position, "offset": self.offset, "snappedItem": self.snapped_item}


def cell_size_for(container_width: float) -> int:
    if container_width >= 2560:
        return 480
    if container_width >= 1920:
        return 360
    return 280


def grid_columns(container_width: float, cell_size: int | None = None, gap: int = GAP) -> int:
    cell = cell_size or cell_size_for(container_width)
    safe_width = max(container_width, MIN_CONTAINER_WIDTH)
    return max(1, int((safe_width + gap) // (cell + gap)))


def visible_slice(items: Sequence[T], columns: int, rows: int = VISIBLE_ROWS) -> list[T]:
    """First `columns * rows` items; the rest are revealed by the client on scroll."""
    return list(items[0 : max(1, columns) * max(1, rows)])


def total_pages(total_items: int, columns: int, square: bool = True) -> int:
    columns = max(1, columns)
    per_page = columns * (columns if square else 1)
    return math.ceil(max(0, total_items) / per_page)


def grid_pagination(total_items: int, columns: int, current_page: int = 1, square: bool = True) -> PaginationInfo:
    """Page window for a paginated grid. A page outside 1..total_pages snaps back to 1."""
    columns = max(1, columns)
    rows = columns if square else 1
    per_page = columns * rows
    pages = total_pages(total_items, columns, square)
    page = current_page if 1 <= current_page <= pages else 1
    start = (page - 1) * per_page
    end = min(start + per_page, max(0, total_items))
    return PaginationInfo(
        current_page=page,
        total_pages=pages,
        items_on_current_page=max(0, end - start),
        total_items=max(0, total_items),
        columns=columns,
        rows=rows,
        items_per_page=per_page,
        start_index=start,
        end_index=end,
    )


def paginated_items(items: Sequence[T], columns: int, current_page: int = 1, square: bool = True) -> list[T]:
    info = grid_pagination(len(items), columns, current_page, square)
    return list(items[info.start_index : info.end_index])


def _grid_cell(index: int, columns: int, cell: int, gap: int) -> tuple[float, float]:
    col = index % columns
    row = index // columns
    return (col * (cell + gap), row * (cell + gap))


def _grid_layout(index: int, container_width: float, item: ContentNode, cell_size: int | None, gap: int) -> LayoutResult:
    cell = cell_size or cell_size_for(container_width)
    columns = grid_columns(container_width, cell, gap)
    col_span = min(max(1, item.grid_span_col or 1), min(columns, MAX_SPAN))
    row_span = min(max(1, item.grid_span_row or 1), MAX_SPAN)
    folder_cover = item.type == "folder" and bool(item.cover_image)
    min_height = 240 if folder_cover else 200
    return LayoutResult(
        position=_grid_cell(index, columns, cell, gap),
        size=(col_span * cell + (col_span - 1) * gap, row_span * cell + (row_span - 1) * gap),
        z_index=1,
        class_name="folder-cover-grid-item" if folder_cover else None,
        col_span=col_span,
        row_span=row_span,
        min_height=min_height,
        styles={
            "gridColumn": f"span {col_span}",
            "gridRow": f"span {row_span}",
            "minHeight": f"{min_height}px",
            "maxHeight": "none" if row_span > 2 else "600px",
        },
    )


def _vertical_layout(index: int, container_width: float, cell_size: int | None, gap: int) -> LayoutResult:
    cell = cell_size or cell_size_for(container_width)
    columns = grid_columns(container_width, cell, gap)
    return LayoutResult(
        position=_grid_cell(index, columns, cell, gap),
        size=(cell, None),
        z_index=1,
        col_span=1,
        row_span=1,
        min_height=160,
        styles={"gridColumn": "span 1", "gridRow": "auto", "width": "100%", "height": "auto", "minHeight": "160px"},
    )


def _canvas_layout(index: int, container_width: float, item: ContentNode, gap: int) -> LayoutResult:
    width = item.width if item.width is not None else CANVAS_ITEM_WIDTH
    height = item.height if item.height is not None else CANVAS_ITEM_HEIGHT
    safe_width = max(container_width, CANVAS_MIN_WIDTH)
    columns = max(1, int((safe_width - gap) // (width + gap)))
    fallback_x = gap + (index % columns) * (width + gap)
    fallback_y = gap + (index // columns) * (height + gap)
    x = item.x if item.x is not None else fallback_x
    y = item.y if item.y is not None else fallback_y
    z_index = int(item.order if item.order is not None else index) + 1
    return LayoutResult(
        position=(x, y),
        size=(width, height),
        z_index=z_index,
        styles={"position": "absolute", "left": f"{x}px", "top": f"{y}px", "width": f"{width}px", "height": f"{height}px"},
    )


def compute_layout(
    mode: str,
    index: int,
    total_count: int,
    container_width: float,
    container_height: float,
    item: ContentNode,
    extras: dict[str, Any] | None = None,
) -> LayoutResult:
    """Position and size for the item at `index` of a sibling list.

    `total_count` and `container_height` are accepted so every mode shares one
    call shape; no mode iterates over them.
    """
    extras = extras or {}
    cell_size = extras.get("cell_size")
    gap = int(extras.get("gap", GAP))
    if mode in ("grid", "grid-square"):
        return _grid_layout(index, container_width, item, cell_size, gap)
    if mode == "grid-vertical":
        return _vertical_layout(index, container_width, cell_size, gap)
    if mode == "canvas":
        return _canvas_layout(index, container_width, item, gap)
    logger.debug("Unknown layout mode %r; returning empty layout", mode)
    return LayoutResult()


def layout_items(
    mode: str,
    items: Sequence[ContentNode],
    container_width: float,
    container_height: float,
    current_page: int = 1,
    extras: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Lay out the visible part of a sibling list for `mode`."""
    extras = extras or {}
    if mode not in LAYOUT_MODES:
        logger.debug("Unknown layout mode %r", mode)
        return {"mode": mode, "items": [], "pagination": None, "columns": 0, "visibleCount": 0}

    columns = grid_columns(container_width, extras.get("cell_size"))
    pagination: PaginationInfo | None = None
    visible: list[ContentNode]
    if mode == "grid-square":
        pagination = grid_pagination(len(items), columns, current_page, square=True)
        visible = list(items[pagination.start_index : pagination.end_index])
    elif mode == "grid-vertical":
        visible = visible_slice(items, columns)
    else:
        visible = list(items)

    laid_out = []
    for idx, node in enumerate(visible):
        result = compute_layout(mode, idx, len(items), container_width, container_height, node, extras)
        laid_out.append({"id": node.id, **result.to_dict()})
    return {
        "mode": mode,
        "columns": columns,
        "items": laid_out,
        "visibleCount": len(visible),
        "totalCount": len(items),
        "pagination": pagination.to_dict() if pagination else None,
    }


def _snap_value(value: float, grid_size: float) -> float:
    return math.floor(value / grid_size + 0.5) * grid_size


def snap(point: tuple[float, float], grid_size: float = DEFAULT_SNAP) -> tuple[float, float]:
    """Round each axis to the nearest multiple of `grid_size` (halves round up)."""
    if not grid_size or grid_size <= 0:
        return point
    x, y = point
    return (_snap_value(x, grid_size), _snap_value(y, grid_size))


def drag_to(origin: tuple[float, float], delta: tuple[float, float], grid_size: float = DEFAULT_SNAP) -> tuple[float, float]:
    return snap((origin[0] + delta[0], origin[1] + delta[1]), grid_size)


def check_collision(a: Rect, b: Rect, padding: float = 0) -> bool:
    return not (
        a.x + a.width + padding < b.x
        or b.x + b.width + padding < a.x
        or a.y + a.height + padding < b.y
        or b.y + b.height + padding < a.y
    )


def find_non_overlapping_position(
    size: tuple[float, float],
    existing: Iterable[Rect],
    container_width: float,
    container_height: float,
    start: tuple[float, float] = (GAP, GAP),
    padding: float = 12,
) -> tuple[float, float]:
    """Scan left-to-right, top-to-bottom for a free spot; gives up after a bounded number of tries."""
    width, height = size
    others = list(existing)
    x, y = start
    for _ in range(PLACEMENT_ATTEMPTS):
        candidate = Rect(x, y, width, height)
        if not any(check_collision(candidate, other, padding) for other in others):
            return snap((x, y), PLACEMENT_GRID)
        x += width + padding
        if x + width > container_width - padding:
            x = start[0]
            y += height + padding
        if y + height > container_height * 2:
            break
    return start


def alignment_guides(moving: Rect, others: Iterable[Rect], threshold: float = 10) -> list[AlignmentGuide]:
    """Closest vertical and closest horizontal guide within `threshold`, if any."""
    guides: list[AlignmentGuide] = []
    for other in others:
        candidates = [
            ("vertical", moving.x, other.x, other.x),
            ("vertical", moving.x + moving.width, other.x + other.width, other.x + other.width - moving.width),
            (
                "vertical",
                moving.x + moving.width / 2,
                other.x + other.width / 2,
                other.x + other.width / 2 - moving.width / 2,
            ),
            ("horizontal", moving.y, other.y, other.y),
            ("horizontal", moving.y + moving.height, other.y + other.height, other.y + other.height - moving.height),
            (
                "horizontal",
                moving.y + moving.height / 2,
                other.y + other.height / 2,
                other.y + other.height / 2 - moving.height / 2,
            ),
        ]
        for kind, mine, theirs, position in candidates:
            offset = abs(mine - theirs)
            if offset < threshold:
                guides.append(AlignmentGuide(kind, position, offset, other.id))

    out: list[AlignmentGuide] = []
    for kind in ("vertical", "horizontal"):
        matching = sorted((g for g in guides if g.type == kind), key=lambda g: g.offset)
        if matching:
            out.append(matching[0])
    return out


def measure_distance(a: tuple[float, float], b: tuple[float, float]) -> float:
    return math.hypot(b[0] - a[0], b[1] - a[1])


def measure_rect_distance(a: Rect, b: Rect) -> float:
    return measure_distance(
        (a.x + a.width / 2, a.y + a.height / 2),
        (b.x + b.width / 2, b.y + b.height / 2),
    )
