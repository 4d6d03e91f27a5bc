from __future__ import annotations

import json
import logging
import queue
from typing import Any

from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context

from .config import Settings, load_settings, setup_logging
from .nodes import LAYOUT_MODES
from .relay import BroadcastBus
from .workspace import Workspace


logger = logging.getLogger(__name__)

bp = Blueprint("canvasflow", __name__)

COMMANDS = ("undo", "redo", "copy", "cut", "paste", "delete", "select", "clear")


def _json_error(message: str, status: int = 400, **extra: Any):
    payload: dict[str, Any] = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _workspace() -> Workspace:
    return current_app.extensions["canvasflow"]


def _bus() -> BroadcastBus:
    return _workspace().relay.bus


def _json_object() -> dict[str, Any] | None:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else None


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    return int(raw)


def _float_arg(name: str, default: float) -> float:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    return float(raw)


def _item_payload(node: Any) -> dict[str, Any]:
    ws = _workspace()
    data = node.to_dict()
    data.update(ws.store.hierarchy().stats_for(node.id).to_dict())
    return data


# -- meta ------------------------------------------------------------------


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


@bp.route("/api/meta", methods=["GET"])
def api_meta():
    ws = _workspace()
    settings = ws.settings
    return jsonify(
        {
            "state_path": settings.state_path,
            "session_id": ws.relay.session_id,
            "channel": ws.relay.bus.name,
            "grid_size": settings.grid_size,
            "layout_modes": list(LAYOUT_MODES),
            "items": len(ws.store),
            "version": ws.store.version,
        }
    )


# -- items -----------------------------------------------------------------


@bp.route("/api/items", methods=["GET"])
def api_items():
    hierarchy = _workspace().store.hierarchy()
    return jsonify({"items": hierarchy.to_records(), "orphans": hierarchy.orphans, "cycles": hierarchy.cycles})


@bp.route("/api/items", methods=["POST"])
def api_add_item():
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    item = payload.get("item")
    if not isinstance(item, dict):
        return _json_error("Expected `item` to be a JSON object.", 400)
    index = payload.get("index")
    if index is not None and not isinstance(index, int):
        return _json_error("Invalid index.", 400)
    node = _workspace().add_item(item, parent_id=payload.get("parentId"), index=index, tab_id=payload.get("tabId"))
    if node is None:
        return _json_error("Invalid item.", 400)
    return jsonify({"status": "ok", "item": _item_payload(node)}), 201


@bp.route("/api/items/<item_id>", methods=["GET"])
def api_get_item(item_id: str):
    tree = _workspace().store.hierarchy().to_tree(item_id)
    if tree is None:
        return _json_error("Item not found.", 404)
    return jsonify(tree)


@bp.route("/api/items/<item_id>", methods=["PATCH"])
def api_update_item(item_id: str):
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    ws = _workspace()
    if item_id not in ws.store:
        return _json_error("Item not found.", 404)
    fields = payload.get("fields")
    if not isinstance(fields, dict):
        fields = {k: v for k, v in payload.items() if k != "tabId"}
    node = ws.update_item(item_id, fields, tab_id=payload.get("tabId"))
    if node is None:
        return _json_error("Update rejected.", 400)
    return jsonify({"status": "ok", "item": _item_payload(node)})


@bp.route("/api/items/<item_id>", methods=["DELETE"])
def api_delete_item(item_id: str):
    ws = _workspace()
    node = ws.store.get(item_id)
    if node is None:
        return _json_error("Item not found.", 404)
    if not node.is_deletable:
        return _json_error("Item cannot be deleted.", 409)
    removed = ws.delete_item(item_id, tab_id=request.args.get("tab"))
    return jsonify({"status": "ok", "removed": removed})


@bp.route("/api/items/bulk_update", methods=["POST"])
def api_bulk_update():
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    ids = payload.get("ids")
    fields = payload.get("fields")
    if not isinstance(ids, list) or not isinstance(fields, dict):
        return _json_error("Expected `ids` list and `fields` object.", 400)
    updated = _workspace().bulk_update([str(i) for i in ids], fields, tab_id=payload.get("tabId"))
    return jsonify({"status": "ok", "updated": [n.id for n in updated]})


@bp.route("/api/items/<item_id>/move", methods=["POST"])
def api_move_item(item_id: str):
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    ws = _workspace()
    if item_id not in ws.store:
        return _json_error("Item not found.", 404)
    index = payload.get("index")
    if index is not None and not isinstance(index, int):
        return _json_error("Invalid index.", 400)
    node = ws.move_item(item_id, payload.get("parentId"), index, tab_id=payload.get("tabId"))
    if node is None:
        return _json_error("Move rejected.", 409)
    return jsonify({"status": "ok", "item": _item_payload(node)})


@bp.route("/api/items/<item_id>/drag", methods=["POST"])
def api_drag_item(item_id: str):
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    try:
        dx, dy = float(payload.get("dx", 0)), float(payload.get("dy", 0))
    except (TypeError, ValueError):
        return _json_error("Invalid drag delta.", 400)
    node = _workspace().drag_item(item_id, dx, dy, tab_id=payload.get("tabId"))
    if node is None:
        return _json_error("Item not found.", 404)
    return jsonify({"status": "ok", "item": _item_payload(node)})


@bp.route("/api/items/<item_id>/refresh_metadata", methods=["POST"])
def api_refresh_metadata(item_id: str):
    ws = _workspace()
    node = ws.store.get(item_id)
    if node is None:
        return _json_error("Item not found.", 404)
    if not node.url:
        return _json_error("Item has no URL.", 400)
    fields = ws.fetcher(node.url, ws.settings.metadata_timeout)
    applied = ws.apply_metadata(item_id, fields)
    return jsonify({"status": "ok", "applied": applied, "metadata": fields})


# -- views & tabs ----------------------------------------------------------


@bp.route("/api/view", methods=["GET"])
def api_view():
    ws = _workspace()
    tab_id = request.args.get("tab") or None
    mode = request.args.get("mode") or None
    if mode is not None and mode not in LAYOUT_MODES:
        return _json_error("Invalid layout mode.", 400)
    try:
        width = _float_arg("width", 1280)
        height = _float_arg("height", 800)
        page = _int_arg("page", 1)
    except ValueError:
        return _json_error("Invalid viewport parameters.", 400)
    view = ws.current_view(tab_id)
    if view is None:
        return _json_error("View not found.", 404)
    layout = ws.layout(tab_id, width=width, height=height, mode=mode, page=page)
    return jsonify({"view": view.to_dict(), "layout": layout, "state": ws.state()})


@bp.route("/api/views/<view_id>/layout_mode", methods=["POST"])
def api_set_layout_mode(view_id: str):
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    node = _workspace().set_layout_mode(view_id, str(payload.get("mode") or ""), tab_id=payload.get("tabId"))
    if node is None:
        return _json_error("Invalid view or layout mode.", 400)
    return jsonify({"status": "ok", "item": _item_payload(node)})


@bp.route("/api/tabs", methods=["GET"])
def api_tabs():
    return jsonify(_workspace().state())


@bp.route("/api/tabs", methods=["POST"])
def api_open_tab():
    payload = _json_object() or {}
    ws = _workspace()
    item_id = payload.get("itemId")
    if item_id:
        tab = ws.open_tab(str(item_id), bool(payload.get("isTemporary")))
        if tab is None:
            return _json_error("Item not found.", 404)
    else:
        tab = ws.new_tab()
    return jsonify({"status": "ok", "tab": tab.to_dict(), "state": ws.state()}), 201


@bp.route("/api/tabs/<tab_id>/<action>", methods=["POST"])
def api_tab_action(tab_id: str, action: str):
    ws = _workspace()
    if ws.tabs.get(tab_id) is None:
        return _json_error("Tab not found.", 404)
    payload = _json_object() or {}
    if action == "activate":
        ok: Any = ws.activate_tab(tab_id)
    elif action == "navigate":
        view_id = payload.get("viewId")
        if not isinstance(view_id, str):
            return _json_error("Expected `viewId`.", 400)
        ok = ws.navigate(view_id, tab_id=tab_id)
    elif action == "back":
        ok = ws.back(tab_id)
    elif action == "forward":
        ok = ws.forward(tab_id)
    elif action == "undo":
        ok = ws.undo(tab_id)
    elif action == "redo":
        ok = ws.redo(tab_id)
    elif action == "close":
        ok = ws.close_tab(tab_id) is not None
    elif action == "media":
        ok = ws.update_media_state(tab_id, payload.get("hasActiveMedia"), payload.get("hasActiveTimer"))
    else:
        return _json_error(f"Unknown tab action: {action}", 404)
    return jsonify({"status": "ok", "changed": bool(ok), "state": ws.state()})


# -- drag & drop, keyboard ---------------------------------------------------


@bp.route("/api/drop", methods=["POST"])
def api_drop():
    payload = request.get_json(silent=True)
    outcome = _workspace().handle_drop(payload)
    return jsonify({"status": "ok", "outcome": outcome})


@bp.route("/api/commands/<name>", methods=["POST"])
def api_command(name: str):
    if name not in COMMANDS:
        return _json_error(f"Unknown command: {name}", 404)
    ws = _workspace()
    payload = _json_object() or {}
    tab_id = payload.get("tabId")
    ids = payload.get("ids") if isinstance(payload.get("ids"), list) else None

    result: Any
    if name == "undo":
        result = ws.undo(tab_id)
    elif name == "redo":
        result = ws.redo(tab_id)
    elif name == "copy":
        result = ws.copy(ids)
    elif name == "cut":
        result = ws.cut(ids)
    elif name == "paste":
        result = [n.id for n in ws.paste(payload.get("parentId"), tab_id=tab_id)]
    elif name == "delete":
        result = ws.delete_selected(tab_id)
    elif name == "select":
        item_id = payload.get("itemId")
        if not isinstance(item_id, str):
            return _json_error("Expected `itemId`.", 400)
        result = ws.select(
            item_id,
            ctrl=bool(payload.get("ctrl")),
            shift=bool(payload.get("shift")),
            ordered_ids=payload.get("orderedIds") if isinstance(payload.get("orderedIds"), list) else None,
        )
    else:
        result = ws.clear_selection()
    return jsonify({"status": "ok", "result": result, "state": ws.state()})


# -- broadcast ---------------------------------------------------------------


@bp.route("/api/broadcast/stream", methods=["GET"])
def api_broadcast_stream():
    bus = _bus()
    q: queue.Queue[str] = bus.subscribe()
    hello = {"kind": "hello", "sessionId": _workspace().relay.session_id, "channel": bus.name}

    def _event_stream():
        try:
            yield f"data: {json.dumps(hello, ensure_ascii=True)}\n\n"
            while True:
                try:
                    chunk = q.get(timeout=15)
                    yield chunk
                except queue.Empty:
                    yield ": ping\n\n"
        finally:
            bus.unsubscribe(q)

    return Response(stream_with_context(_event_stream()), mimetype="text/event-stream")


@bp.route("/api/broadcast/target", methods=["POST"])
def api_broadcast_target():
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    ws = _workspace()
    target = payload.get("target")
    if target in (None, ""):
        ws.disarm_broadcast()
    elif not isinstance(target, str) or not ws.arm_broadcast(target):
        return _json_error("Invalid broadcast target.", 400)
    return jsonify({"status": "ok", "target": ws.relay.target})


@bp.route("/api/broadcast", methods=["POST"])
def api_broadcast_receive():
    payload = _json_object()
    if payload is None:
        return _json_error("Expected a JSON object.", 400)
    applied = _workspace().receive_broadcast(payload)
    return jsonify({"status": "ok", "applied": applied})


@bp.route("/api/mirror/status", methods=["GET"])
def api_mirror_status():
    return jsonify(_workspace().mirror.status())


# -- outline -----------------------------------------------------------------


@bp.route("/api/export", methods=["GET"])
def api_export():
    ws = _workspace()
    root_id = request.args.get("root") or None
    text = ws.export_outline(root_id)
    if text is None:
        return _json_error("Container not found.", 404)
    return Response(text, mimetype="application/x-yaml")


@bp.route("/api/import", methods=["POST"])
def api_import():
    ws = _workspace()
    payload = _json_object()
    if payload is not None:
        text = payload.get("outline")
        parent_id = payload.get("parentId")
    else:
        text = request.get_data(as_text=True)
        parent_id = request.args.get("parent")
    if not isinstance(text, str) or not text.strip():
        return _json_error("Expected an outline document.", 400)
    nodes = ws.import_outline(text, parent_id)
    if not nodes:
        return _json_error("Nothing imported.", 400)
    return jsonify({"status": "ok", "imported": [n.id for n in nodes]})


def create_app(workspace: Workspace | None = None, settings: Settings | None = None) -> Flask:
    settings = settings or (workspace.settings if workspace else load_settings())
    app = Flask(__name__)
    app.extensions["canvasflow"] = workspace or Workspace.from_settings(settings)
    app.register_blueprint(bp)
    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    app = create_app(settings=settings)
    logger.info("Serving canvasflow on http://%s:%s", settings.host, settings.port)
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
