"""
Health check blueprint.

Endpoints:
    GET /api/v1/health  — liveness plus open-session counts
"""

import logging

from flask import Blueprint, current_app, jsonify

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1")


@health_bp.route("/health", methods=["GET"])
def health():
    """Simple liveness probe — always 200 if the app is running."""
    gateway = current_app.extensions["store_gateway"]
    return jsonify({
        "status": "ok",
        "store_base_url": gateway.base_url,
        "sessions": {
            "edit": len(current_app.extensions["edit_sessions"]),
            "live": len(current_app.extensions["live_sessions"]),
        },
        "app": {
            "name": "Checklist Sync Engine",
            "debug": current_app.debug,
            "testing": current_app.testing,
        },
    }), 200
