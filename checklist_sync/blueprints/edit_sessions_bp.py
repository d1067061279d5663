"""
Edit session blueprint — draft editing of module libraries and checklists.

Endpoints:
    POST   /api/v1/edit-sessions                      open + load
    GET    /api/v1/edit-sessions/<sid>                draft, unsaved flag, change count
    DELETE /api/v1/edit-sessions/<sid>                close
    POST   /api/v1/edit-sessions/<sid>/mutations      one local mutation
    POST   /api/v1/edit-sessions/<sid>/import         CSV import (?preview=1 for dry run)
    POST   /api/v1/edit-sessions/<sid>/save           persist the change set
    POST   /api/v1/edit-sessions/<sid>/discard        drop local edits

Nothing but /save talks to the resource store after the session is open.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from checklist_sync.blueprints import json_body, register_error_handlers, registry
from checklist_sync.services.edit_session import open_edit_session
from checklist_sync.utils.errors import E, api_error

logger = logging.getLogger(__name__)

edit_sessions_bp = Blueprint("edit_sessions", __name__, url_prefix="/api/v1")

register_error_handlers(edit_sessions_bp, logger)


def _session(session_id: str):
    return registry("edit_sessions").get(session_id)


@edit_sessions_bp.route("/edit-sessions", methods=["POST"])
def open_session():
    """Open an edit session and load its baseline.

    Body: {collection: "modules" | "checklist_modules", project_id?}
    Returns: session dict (201).
    """
    data = json_body()
    collection = (data.get("collection") or "").strip()
    if not collection:
        return api_error(E.VALIDATION_REQUIRED, "collection is required")

    session = open_edit_session(
        current_app.extensions["store_gateway"],
        collection,
        project_id=data.get("project_id"),
        max_workers=current_app.config["BATCH_MAX_WORKERS"],
    )
    registry("edit_sessions").add(session)
    return jsonify(session.to_dict()), 201


@edit_sessions_bp.route("/edit-sessions/<session_id>", methods=["GET"])
def get_session(session_id):
    """Return the draft; ?changes=1 also includes the pending change set."""
    include = request.args.get("changes", "").lower() in ("1", "true", "yes")
    return jsonify(_session(session_id).to_dict(include_changes=include)), 200


@edit_sessions_bp.route("/edit-sessions/<session_id>", methods=["DELETE"])
def close_session(session_id):
    registry("edit_sessions").close(session_id)
    return jsonify({"closed": session_id}), 200


@edit_sessions_bp.route("/edit-sessions/<session_id>/mutations", methods=["POST"])
def mutate(session_id):
    """Apply one local mutation (create / update / delete / reorder / move)."""
    session = _session(session_id)
    result = session.mutate(json_body())
    return jsonify({
        "result": result,
        "has_unsaved_changes": session.has_unsaved_changes(),
        "change_count": session.change_count(),
    }), 200


@edit_sessions_bp.route("/edit-sessions/<session_id>/import", methods=["POST"])
def import_csv(session_id):
    """Import modules from CSV.

    Accepts a multipart ``file`` upload or ``{"csv": "..."}`` JSON.
    """
    session = _session(session_id)
    upload = request.files.get("file")
    if upload is not None:
        content = upload.read()
    else:
        content = json_body().get("csv")
    if not content:
        return api_error(E.VALIDATION_REQUIRED, "CSV content is required (file or csv)")

    preview = request.args.get("preview", "").lower() in ("1", "true", "yes")
    summary = session.import_csv(content, preview=preview)
    return jsonify({
        "preview": preview,
        "summary": summary,
        "change_count": session.change_count(),
    }), 200


@edit_sessions_bp.route("/edit-sessions/<session_id>/save", methods=["POST"])
def save(session_id):
    """Persist the draft.

    Returns 200 when every operation succeeded, 207 when some failed, and
    503 when the batch ran but the re-fetch did not.
    """
    session = _session(session_id)
    result = session.save()
    body = {"result": result.to_dict(), "session": session.to_dict()}

    if result.refetch_error is not None:
        return api_error(
            E.STORE_REFETCH, str(result.refetch_error), details={"retryable": True, **body}
        )
    error = result.error
    if error is not None:
        return api_error(E.PARTIAL_FAILURE, str(error), details={**error.to_dict(), **body})
    return jsonify(body), 200


@edit_sessions_bp.route("/edit-sessions/<session_id>/discard", methods=["POST"])
def discard(session_id):
    session = _session(session_id)
    session.discard()
    return jsonify(session.to_dict()), 200
