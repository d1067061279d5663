"""
Checklist Sync Engine
Flask Application Factory.

Usage:
    from checklist_sync import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import atexit
import logging
import os

from flask import Flask
from flask_cors import CORS

from checklist_sync.config import config
from checklist_sync.integrations.store_gateway import StoreGateway
from checklist_sync.middleware.logging_config import configure_logging
from checklist_sync.middleware.timing import init_request_timing
from checklist_sync.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(config_name=None, gateway=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        gateway: Optional pre-built store gateway (tests inject a fake).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    config_cls = config[config_name]
    app.config.from_object(config_cls())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    if gateway is None:
        gateway = StoreGateway(
            app.config["STORE_BASE_URL"],
            token=app.config.get("STORE_API_TOKEN"),
            timeout=app.config["STORE_TIMEOUT_SECONDS"],
            retry_max=app.config["STORE_RETRY_MAX"],
        )
    app.extensions["store_gateway"] = gateway
    idle_ttl = app.config["SESSION_IDLE_TTL_SECONDS"]
    app.extensions["edit_sessions"] = SessionRegistry("EditSession", idle_ttl=idle_ttl)
    app.extensions["live_sessions"] = SessionRegistry("LiveSession", idle_ttl=idle_ttl)

    # Background pollers are daemon threads; stop them cleanly on exit.
    atexit.register(app.extensions["live_sessions"].close_all)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from checklist_sync.blueprints.edit_sessions_bp import edit_sessions_bp
    from checklist_sync.blueprints.health_bp import health_bp
    from checklist_sync.blueprints.live_sessions_bp import live_sessions_bp

    app.register_blueprint(edit_sessions_bp)
    app.register_blueprint(live_sessions_bp)
    app.register_blueprint(health_bp)

    logger.info("Checklist sync app created config=%s store=%s",
                config_name, app.config["STORE_BASE_URL"])
    return app
