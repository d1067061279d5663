"""Unit tests for checklist_sync.middleware.logging_config.

Coverage
--------
    1. JSON output nests sync and request context
    2. Text output renders a collection/phase tag
    3. LOG_FORMAT overrides the environment default
"""

import json
import logging

from flask import Flask

from checklist_sync.middleware.logging_config import (
    SyncJSONFormatter,
    SyncTextFormatter,
    build_formatter,
)


def _record(msg="Batch phase", **extra):
    record = logging.LogRecord("checklist_sync.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_sync_context_nested(self):
        record = _record(collection="modules", phase="update_children",
                         resource_id="t-1", duration_ms=12.345)
        entry = json.loads(SyncJSONFormatter().format(record))
        assert entry["msg"] == "Batch phase"
        assert entry["sync"] == {
            "collection": "modules", "phase": "update_children", "resource_id": "t-1",
        }
        assert entry["duration_ms"] == 12.3
        assert "request" not in entry

    def test_request_context_separate(self):
        record = _record(method="POST", path="/api/v1/edit-sessions", status=201,
                         request_id="", session_id="s-1")
        entry = json.loads(SyncJSONFormatter().format(record))
        assert entry["request"] == {"method": "POST", "path": "/api/v1/edit-sessions", "status": 201}
        assert entry["sync"] == {"session_id": "s-1"}


class TestTextFormatter:
    def test_context_tag(self):
        line = SyncTextFormatter().format(
            _record(collection="modules", phase="refetch", session_id="s-1")
        )
        assert "[modules/refetch session_id=s-1] Batch phase" in line

    def test_no_context_no_tag(self):
        line = SyncTextFormatter().format(_record("plain"))
        assert line.endswith("checklist_sync.test plain")


class TestBuildFormatter:
    def test_testing_defaults_to_text(self):
        app = Flask(__name__)
        app.testing = True
        assert isinstance(build_formatter(app), SyncTextFormatter)

    def test_production_defaults_to_json(self):
        assert isinstance(build_formatter(Flask(__name__)), SyncJSONFormatter)

    def test_log_format_override(self):
        app = Flask(__name__)
        app.testing = True
        app.config["LOG_FORMAT"] = "JSON"
        assert isinstance(build_formatter(app), SyncJSONFormatter)
