"""HTTP tests for /api/v1/live-sessions and /api/v1/health.

The merger behind a session is fetched from the app registry and given the
FakeClock so debounce timers can be driven from the test.

Coverage
--------
    1. Open (first poll included), project required, store down → 503
    2. Edits: overlay visible immediately, ownership / field guards → 422
    3. Poll endpoint fires due saves and reports remote changes
    4. Focus, expand / collapse rows (Pass folds a row), retry after a failed save
    5. Background polling start / stop, interval validation
    6. Health counts open sessions
"""

import pytest


@pytest.fixture()
def seeded(store):
    store.seed_results([
        {"id": "r1", "testcase_id": "tc-1", "tester_id": "alice", "status": "Pending"},
        {"id": "r2", "testcase_id": "tc-1", "tester_id": "bob", "status": "Pending"},
    ])
    return store


def _open(client, **body):
    body.setdefault("project_id", "p-1")
    body.setdefault("tester_id", "alice")
    res = client.post("/api/v1/live-sessions", json=body)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _with_clock(app, session_id, clock):
    merger = app.extensions["live_sessions"].get(session_id)
    merger.clock = clock
    return merger


def _edit(client, sid, result_id, field, value):
    return client.post(
        f"/api/v1/live-sessions/{sid}/edits",
        json={"result_id": result_id, "field": field, "value": value},
    )


def _rows(snapshot):
    return {
        row["id"]: row
        for module in snapshot["view"]["modules"]
        for testcase in module["testcases"]
        for row in testcase["results"]
    }


class TestOpen:
    def test_open_includes_first_poll(self, client, seeded):
        snap = _open(client)
        assert snap["project_id"] == "p-1"
        assert snap["tester_id"] == "alice"
        assert snap["view"]["stats"]["total"] == 2
        assert snap["polling"] is False

    def test_project_required(self, client):
        res = client.post("/api/v1/live-sessions", json={})
        assert res.status_code == 400

    def test_store_down(self, client, store):
        store.fail("test_results", "list", status_code=503)
        res = client.post("/api/v1/live-sessions", json={"project_id": "p-1"})
        assert res.status_code == 503
        assert res.get_json()["code"] == "STORE_UNAVAILABLE"

    def test_unknown_session(self, client):
        assert client.get("/api/v1/live-sessions/nope").status_code == 404

    def test_close(self, client, seeded):
        sid = _open(client)["session_id"]
        assert client.delete(f"/api/v1/live-sessions/{sid}").status_code == 200
        assert client.get(f"/api/v1/live-sessions/{sid}").status_code == 404


class TestEdits:
    def test_edit_visible_before_save(self, client, seeded):
        sid = _open(client)["session_id"]
        res = _edit(client, sid, "r1", "status", "Fail")
        assert res.status_code == 200
        snap = res.get_json()
        assert _rows(snap)["r1"]["status"] == "Fail"
        assert snap["overlay"]["r1"]["state"] == "editing"
        assert seeded.calls_for("test_results", "update") == []

    def test_other_testers_row_rejected(self, client, seeded):
        sid = _open(client)["session_id"]
        assert _edit(client, sid, "r2", "status", "Pass").status_code == 422

    def test_field_not_editable(self, client, seeded):
        sid = _open(client)["session_id"]
        assert _edit(client, sid, "r1", "tester_id", "bob").status_code == 422

    def test_missing_fields(self, client, seeded):
        sid = _open(client)["session_id"]
        res = client.post(f"/api/v1/live-sessions/{sid}/edits", json={"result_id": "r1"})
        assert res.status_code == 400


class TestPollEndpoint:
    def test_poll_sends_due_save(self, app, client, seeded, clock):
        sid = _open(client)["session_id"]
        _with_clock(app, sid, clock)
        _edit(client, sid, "r1", "status", "Pass")
        clock.advance(2)

        res = client.post(f"/api/v1/live-sessions/{sid}/poll")
        assert res.status_code == 200
        body = res.get_json()
        assert body["overlay"]["r1"]["state"] == "settling"
        updates = seeded.calls_for("test_results", "update")
        assert len(updates) == 1
        assert updates[0][3]["status"] == "Pass"

    def test_remote_change_applied(self, client, seeded):
        sid = _open(client)["session_id"]
        seeded.data["test_results"][1]["status"] = "Fail"
        body = client.post(f"/api/v1/live-sessions/{sid}/poll").get_json()
        assert body["applied"] is True
        assert _rows(body)["r2"]["status"] == "Fail"

    def test_failed_poll_not_applied(self, client, seeded):
        sid = _open(client)["session_id"]
        seeded.fail("test_results", "list", status_code=503)
        body = client.post(f"/api/v1/live-sessions/{sid}/poll").get_json()
        assert body["applied"] is False
        assert body["view"]["stats"]["total"] == 2


class TestFocusAndRetry:
    def test_focus(self, client, seeded):
        sid = _open(client)["session_id"]
        res = client.post(
            f"/api/v1/live-sessions/{sid}/focus",
            json={"result_id": "r1", "field": "notes", "focused": True},
        )
        assert res.status_code == 200

    def test_expand_and_collapse_rows(self, client, seeded):
        sid = _open(client)["session_id"]
        res = client.post(f"/api/v1/live-sessions/{sid}/expanded/r1")
        assert res.get_json() == {"expanded": ["r1"]}
        client.post(f"/api/v1/live-sessions/{sid}/expanded/r2")

        res = client.delete(f"/api/v1/live-sessions/{sid}/expanded/r2")
        assert res.get_json() == {"expanded": ["r1"]}
        assert client.post(f"/api/v1/live-sessions/{sid}/expanded/ghost").status_code == 404

    def test_pass_edit_collapses_expanded_row(self, client, seeded):
        sid = _open(client)["session_id"]
        client.post(f"/api/v1/live-sessions/{sid}/expanded/r1")
        snap = _edit(client, sid, "r1", "status", "Fail").get_json()
        assert snap["expanded"] == ["r1"]
        snap = _edit(client, sid, "r1", "status", "Pass").get_json()
        assert snap["expanded"] == []

    def test_retry_failed_save(self, app, client, seeded, clock):
        sid = _open(client)["session_id"]
        _with_clock(app, sid, clock)
        seeded.fail("test_results", "update", "r1", status_code=500, times=1)
        _edit(client, sid, "r1", "notes", "flaky")
        clock.advance(2)
        body = client.post(f"/api/v1/live-sessions/{sid}/poll").get_json()
        assert body["overlay"]["r1"]["failed"] is True

        res = client.post(f"/api/v1/live-sessions/{sid}/retry/r1")
        assert res.status_code == 200
        assert res.get_json()["overlay"]["r1"]["state"] == "settling"

    def test_retry_without_failure(self, client, seeded):
        sid = _open(client)["session_id"]
        assert client.post(f"/api/v1/live-sessions/{sid}/retry/r1").status_code == 404


class TestPollingControl:
    def test_start_and_stop(self, client, seeded):
        sid = _open(client)["session_id"]
        res = client.post(f"/api/v1/live-sessions/{sid}/polling", json={"interval": 30})
        assert res.get_json() == {"polling": True, "interval": 30.0}
        res = client.delete(f"/api/v1/live-sessions/{sid}/polling")
        assert res.get_json() == {"polling": False}

    @pytest.mark.parametrize("interval", [-1, "often"])
    def test_invalid_interval(self, client, seeded, interval):
        sid = _open(client)["session_id"]
        res = client.post(f"/api/v1/live-sessions/{sid}/polling", json={"interval": interval})
        assert res.status_code == 400


class TestHealth:
    def test_counts_sessions(self, client, seeded):
        _open(client)
        body = client.get("/api/v1/health").get_json()
        assert body["status"] == "ok"
        assert body["sessions"] == {"edit": 0, "live": 1}
