"""
Live session blueprint — test execution with live multi-tester sync.

Endpoints:
    POST        /api/v1/live-sessions                       open (first poll included)
    GET         /api/v1/live-sessions/<sid>                 view + overlay state
    DELETE      /api/v1/live-sessions/<sid>                 close (stops polling)
    POST        /api/v1/live-sessions/<sid>/edits           local status/notes edit
    POST        /api/v1/live-sessions/<sid>/focus           focus / blur a field
    POST/DELETE /api/v1/live-sessions/<sid>/expanded/<rid>  expand / collapse a result row
    POST        /api/v1/live-sessions/<sid>/poll            fire due timers + one poll
    POST/DELETE /api/v1/live-sessions/<sid>/polling         start / stop background polling
    POST        /api/v1/live-sessions/<sid>/retry/<rid>     re-send a failed save
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify

from checklist_sync.blueprints import json_body, register_error_handlers, registry
from checklist_sync.services.live_sync import open_live_session
from checklist_sync.utils.errors import E, api_error

logger = logging.getLogger(__name__)

live_sessions_bp = Blueprint("live_sessions", __name__, url_prefix="/api/v1")

register_error_handlers(live_sessions_bp, logger)


def _merger(session_id: str):
    return registry("live_sessions").get(session_id)


@live_sessions_bp.route("/live-sessions", methods=["POST"])
def open_session():
    """Open a live session for one tester.

    Body: {project_id, tester_id?}
    Returns: snapshot (201).
    """
    data = json_body()
    project_id = data.get("project_id")
    if not project_id:
        return api_error(E.VALIDATION_REQUIRED, "project_id is required")

    cfg = current_app.config
    merger = open_live_session(
        current_app.extensions["store_gateway"],
        project_id,
        tester_id=data.get("tester_id"),
        save_debounce=cfg["SAVE_DEBOUNCE_SECONDS"],
        clear_debounce=cfg["CLEAR_DEBOUNCE_SECONDS"],
        collapse_statuses=cfg["COLLAPSE_STATUSES"],
    )
    registry("live_sessions").add(merger)
    return jsonify(merger.snapshot()), 201


@live_sessions_bp.route("/live-sessions/<session_id>", methods=["GET"])
def get_session(session_id):
    return jsonify(_merger(session_id).snapshot()), 200


@live_sessions_bp.route("/live-sessions/<session_id>", methods=["DELETE"])
def close_session(session_id):
    registry("live_sessions").close(session_id)
    return jsonify({"closed": session_id}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/edits", methods=["POST"])
def apply_edit(session_id):
    """Body: {result_id, field: "status" | "notes", value}"""
    data = json_body()
    result_id = data.get("result_id")
    field_name = data.get("field")
    if not result_id or not field_name:
        return api_error(E.VALIDATION_REQUIRED, "result_id and field are required")

    merger = _merger(session_id)
    merger.apply_local_edit(result_id, field_name, data.get("value"))
    return jsonify(merger.snapshot()), 200


@live_sessions_bp.route("/live-sessions/<session_id>/focus", methods=["POST"])
def set_focus(session_id):
    """Body: {result_id, field, focused: bool}"""
    data = json_body()
    result_id = data.get("result_id")
    field_name = data.get("field")
    if not result_id or not field_name:
        return api_error(E.VALIDATION_REQUIRED, "result_id and field are required")

    _merger(session_id).set_focus(result_id, field_name, bool(data.get("focused", True)))
    return jsonify({"result_id": result_id, "field": field_name}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/expanded/<result_id>", methods=["POST"])
def expand_row(session_id, result_id):
    """Expand a result row; a status edit into a collapse status folds it again."""
    merger = _merger(session_id)
    merger.expand(result_id)
    return jsonify({"expanded": sorted(merger.expanded)}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/expanded/<result_id>", methods=["DELETE"])
def collapse_row(session_id, result_id):
    merger = _merger(session_id)
    merger.collapse(result_id)
    return jsonify({"expanded": sorted(merger.expanded)}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/poll", methods=["POST"])
def poll(session_id):
    """Run due timers, then one poll. ``applied`` is false when skipped or failed."""
    merger = _merger(session_id)
    merger.tick()
    applied = merger.poll()
    return jsonify({"applied": applied, **merger.snapshot()}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/polling", methods=["POST"])
def start_polling(session_id):
    """Body: {interval?} — seconds between polls (default POLL_INTERVAL_SECONDS)."""
    cfg = current_app.config
    data = json_body()
    try:
        interval = float(data.get("interval") or cfg["POLL_INTERVAL_SECONDS"])
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "interval must be a number")
    if interval <= 0:
        return api_error(E.VALIDATION_INVALID, "interval must be positive")

    merger = _merger(session_id)
    merger.start_polling(interval, tick_interval=cfg["TICK_INTERVAL_SECONDS"])
    return jsonify({"polling": merger.is_polling(), "interval": interval}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/polling", methods=["DELETE"])
def stop_polling(session_id):
    merger = _merger(session_id)
    merger.stop_polling()
    return jsonify({"polling": merger.is_polling()}), 200


@live_sessions_bp.route("/live-sessions/<session_id>/retry/<result_id>", methods=["POST"])
def retry(session_id, result_id):
    merger = _merger(session_id)
    merger.retry(result_id)
    return jsonify(merger.snapshot()), 200
