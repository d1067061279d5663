"""
Logging setup for the sync engine.

Engine modules pass their context through ``extra=``. Two groups are
recognised and kept apart in the output:

    sync     session_id, project_id, collection, phase, resource_id
    request  request_id, method, path, status, remote_addr

``duration_ms`` is shared by both (batch saves and HTTP requests).

LOG_FORMAT picks the output: ``json`` for log shippers, ``text`` for a
terminal. Unset, production gets json and everything else gets text.
"""

import json
import logging
import sys
from datetime import datetime, timezone

SYNC_FIELDS = ("session_id", "project_id", "collection", "phase", "resource_id")
REQUEST_FIELDS = ("request_id", "method", "path", "status", "remote_addr")

_NOISY_LOGGERS = ("urllib3", "werkzeug")


def _collect(record: logging.LogRecord, names) -> dict:
    found = {}
    for name in names:
        value = getattr(record, name, None)
        if value is not None and value != "":
            found[name] = value
    return found


class SyncJSONFormatter(logging.Formatter):
    """One JSON object per line; sync and request context nested."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        sync = _collect(record, SYNC_FIELDS)
        if sync:
            entry["sync"] = sync
        req = _collect(record, REQUEST_FIELDS)
        if req:
            entry["request"] = req
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            entry["duration_ms"] = round(float(duration), 1)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class SyncTextFormatter(logging.Formatter):
    """Terminal format: ``HH:MM:SS LEVEL logger [collection/phase id] message``."""

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    _LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<7}"
        if self.color:
            level = f"{self._LEVEL_COLORS.get(record.levelno, '')}{level}\033[0m"

        line = f"{ts} {level} {record.name}"
        tag = self.context_tag(record)
        if tag:
            line += f" [{tag}]"
        line += f" {record.getMessage()}"

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({float(duration):.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line

    @staticmethod
    def context_tag(record: logging.LogRecord) -> str:
        sync = _collect(record, SYNC_FIELDS)
        scope = "/".join(str(sync[k]) for k in ("collection", "phase") if k in sync)
        ids = " ".join(
            f"{k}={sync[k]}" for k in ("session_id", "resource_id") if k in sync
        )
        return " ".join(part for part in (scope, ids) if part)


def build_formatter(app) -> logging.Formatter:
    fmt = (app.config.get("LOG_FORMAT") or "").lower()
    if not fmt:
        fmt = "text" if app.debug or app.testing else "json"
    if fmt == "json":
        return SyncJSONFormatter()
    return SyncTextFormatter(color=sys.stderr.isatty())


def configure_logging(app):
    """Install one stderr handler on the root logger, configured from app.config."""
    level_name = app.config.get("LOG_LEVEL") or ("DEBUG" if app.debug else "INFO")
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(app))

    root = logging.getLogger()
    # Replaced, not appended: create_app may run many times per process.
    root.handlers = [handler]
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)
