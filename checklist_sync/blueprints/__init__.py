"""
Checklist Sync Engine
Blueprint registry.
"""

import logging

from flask import current_app, request

from checklist_sync.core.exceptions import (
    ConflictError,
    NetworkError,
    NotFoundError,
    RefetchError,
    ValidationError,
)
from checklist_sync.utils.errors import E, api_error


def json_body() -> dict:
    """Return the request JSON object, or {} when absent or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def registry(kind: str):
    """Session registry of the running app (``edit_sessions`` / ``live_sessions``)."""
    return current_app.extensions[kind]


def register_error_handlers(bp, logger: logging.Logger) -> None:
    """Translate engine exceptions into the standard JSON error body."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(RefetchError)
    def _handle_refetch(error: RefetchError):
        return api_error(E.STORE_REFETCH, str(error), details={"retryable": True})

    @bp.errorhandler(NetworkError)
    def _handle_network(error: NetworkError):
        logger.warning("Store unavailable endpoint=%s: %s", request.endpoint, error)
        return api_error(E.STORE_UNAVAILABLE, str(error), details={"retryable": True})

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
