"""Unit tests for checklist_sync.services.live_sync.

Time is driven by the FakeClock fixture; timers only fire from tick().

Coverage
--------
    1. merge_results / views_equal are pure and overlay-wins
    2. A poll landing mid-edit never reverts the local value
    3. Save debounce: one save after inactivity, reset by further edits
    4. Settling: overlay evicted after the clear debounce unless focused
    5. Edit during an in-flight save keeps the entry editing
    6. Failed save is retained, flagged and retried on demand
    7. Unchanged polls do not re-render; overlapping polls are skipped
    8. Ownership guard, editable fields, collapse on Pass
    9. Late responses after close() are discarded
"""

import threading

import pytest

from checklist_sync.core.exceptions import NetworkError, NotFoundError, ValidationError
from checklist_sync.integrations.store_gateway import StoreResult
from checklist_sync.services.live_sync import (
    CLEAR_TIMER,
    SAVE_TIMER,
    EditState,
    LivePollMerger,
    merge_results,
    open_live_session,
    views_equal,
)


@pytest.fixture()
def results(store):
    store.seed_results([
        {"id": "r1", "testcase_id": "tc-1", "tester_id": "alice", "status": "Pending"},
        {"id": "r2", "testcase_id": "tc-1", "tester_id": "bob", "status": "Pending"},
        {"id": "r3", "testcase_id": "tc-2", "tester_id": "alice", "status": "Pending"},
    ])
    return store.collection("test_results", project_id="p-1")


@pytest.fixture()
def merger(results, clock):
    renders = []
    m = LivePollMerger(
        results,
        tester_id="alice",
        clock=clock,
        on_render=renders.append,
        timestamp=lambda: "2026-01-01T00:00:00+00:00",
    )
    m.renders = renders
    assert m.poll()
    yield m
    m.close()


def _status(merger, result_id):
    for module in merger.get_view()["modules"]:
        for testcase in module["testcases"]:
            for row in testcase["results"]:
                if row["id"] == result_id:
                    return row["status"]
    raise AssertionError(result_id)


class TestPureHelpers:
    def test_overlay_fields_win(self):
        server = [{"id": "r1", "status": "Pending", "notes": None, "tester_id": "alice"}]
        merged = merge_results(server, {"r1": {"status": "Fail", "tester_id": "mallory"}})
        assert merged[0]["status"] == "Fail"
        assert merged[0]["tester_id"] == "alice"
        assert server[0]["status"] == "Pending"

    def test_overlay_for_missing_result_ignored(self):
        assert merge_results([], {"gone": {"status": "Pass"}}) == []

    def test_views_equal(self):
        assert views_equal({"a": [1]}, {"a": [1]})
        assert not views_equal({"a": [1]}, {"a": [2]})
        assert not views_equal(None, {"a": 1})
        assert views_equal(None, None)


class TestOverlayWins:
    def test_poll_mid_edit_keeps_local_value(self, store, merger):
        merger.apply_local_edit("r1", "status", "Fail")
        store.data["test_results"][0]["notes"] = "server side note"
        assert merger.poll()
        assert _status(merger, "r1") == "Fail"

    def test_edit_stamps_tested_at(self, merger):
        merger.apply_local_edit("r1", "status", "Pass")
        assert merger.overlay_state()["r1"]["fields"]["tested_at"] == "2026-01-01T00:00:00+00:00"

    def test_edit_renders_synchronously(self, merger):
        before = len(merger.renders)
        merger.apply_local_edit("r1", "status", "Fail")
        assert len(merger.renders) == before + 1
        assert merger.renders[-1]["stats"]["failed"] == 1


class TestSaveDebounce:
    def test_single_save_after_inactivity(self, store, merger, clock):
        merger.apply_local_edit("r1", "notes", "a")
        clock.advance(1.0)
        merger.apply_local_edit("r1", "notes", "ab")
        clock.advance(1.0)
        merger.tick()
        assert store.calls_for("test_results", "update") == []

        clock.advance(0.6)
        merger.tick()
        updates = store.calls_for("test_results", "update")
        assert len(updates) == 1
        assert updates[0][3] == {"notes": "ab"}
        assert merger.overlay_state()["r1"]["state"] == EditState.SETTLING.value
        assert merger.timers()["r1"].kind == CLEAR_TIMER

    def test_settled_entry_evicted(self, store, merger, clock):
        merger.apply_local_edit("r1", "status", "Fail")
        clock.advance(1.5)
        merger.tick()
        clock.advance(10)
        merger.tick()
        assert "r1" not in merger.overlay_state()
        assert merger.timers() == {}
        # the store now has the saved value, so the view is unchanged
        assert _status(merger, "r1") == "Fail"

    def test_focus_defers_eviction(self, merger, clock):
        merger.apply_local_edit("r1", "notes", "typing")
        merger.set_focus("r1", "notes")
        clock.advance(1.5)
        merger.tick()
        clock.advance(10)
        merger.tick()
        assert "r1" in merger.overlay_state()
        merger.set_focus("r1", "notes", False)
        clock.advance(10)
        merger.tick()
        assert "r1" not in merger.overlay_state()

    def test_edit_during_settling_rearms_save(self, store, merger, clock):
        merger.apply_local_edit("r1", "status", "Fail")
        clock.advance(1.5)
        merger.tick()
        merger.apply_local_edit("r1", "notes", "why")
        assert merger.timers()["r1"].kind == SAVE_TIMER
        clock.advance(10)
        merger.tick()
        assert len(store.calls_for("test_results", "update")) == 2
        assert "r1" in merger.overlay_state()


class TestEditDuringSave:
    def test_entry_stays_editing(self, clock):
        """A save response for an older revision must not settle the entry."""
        merger = None
        calls = []

        class SlowResults:
            def list(self):
                return StoreResult.success([
                    {"id": "r1", "checklist_module_id": "cm-1", "testcase_id": "tc-1",
                     "tester_id": "alice", "status": "Pending"},
                ])

            def update(self, resource_id, patch):
                calls.append(dict(patch))
                if len(calls) == 1:
                    merger.apply_local_edit("r1", "notes", "typed while saving")
                return StoreResult.success({"id": resource_id})

        merger = LivePollMerger(SlowResults(), clock=clock)
        merger.poll()
        merger.apply_local_edit("r1", "status", "Fail")
        clock.advance(1.5)
        merger.tick()

        assert merger.overlay_state()["r1"]["state"] == EditState.EDITING.value
        assert merger.timers()["r1"].kind == SAVE_TIMER
        clock.advance(1.5)
        merger.tick()
        assert calls[-1]["notes"] == "typed while saving"
        assert merger.overlay_state()["r1"]["state"] == EditState.SETTLING.value


class TestSaveFailure:
    def test_failed_save_retained_and_reported(self, store, results, clock):
        errors = []
        merger = LivePollMerger(results, clock=clock, on_save_error=lambda rid, err: errors.append(rid))
        merger.poll()
        store.fail("test_results", "update", "r1", status_code=500, times=1)
        merger.apply_local_edit("r1", "status", "Fail")
        clock.advance(1.5)
        merger.tick()

        state = merger.overlay_state()["r1"]
        assert state["failed"] is True
        assert errors == ["r1"]
        assert "r1" not in merger.timers()

        clock.advance(3600)
        merger.tick()
        assert "r1" in merger.overlay_state()

        merger.retry("r1")
        assert merger.overlay_state()["r1"]["state"] == EditState.SETTLING.value
        assert len(store.calls_for("test_results", "update")) == 2

    def test_retry_without_failure(self, merger):
        with pytest.raises(NotFoundError):
            merger.retry("r1")
        merger.apply_local_edit("r1", "notes", "x")
        with pytest.raises(ValidationError):
            merger.retry("r1")


class TestPolling:
    def test_unchanged_poll_does_not_render(self, merger):
        before = len(merger.renders)
        assert merger.poll()
        assert len(merger.renders) == before

    def test_remote_change_renders(self, store, merger):
        store.data["test_results"][1]["status"] = "Fail"
        merger.poll()
        assert _status(merger, "r2") == "Fail"
        assert merger.renders[-1]["stats"]["failed"] == 1

    def test_failed_poll_keeps_view(self, store, merger):
        view = merger.get_view()
        store.fail("test_results", "list", status_code=503)
        assert merger.poll() is False
        assert merger.get_view() == view

    def test_overlapping_poll_skipped(self, merger):
        entered = threading.Event()
        release = threading.Event()
        original = merger.results.list

        def slow_list():
            entered.set()
            release.wait(5)
            return original()

        merger.results.list = slow_list
        worker = threading.Thread(target=merger.poll)
        worker.start()
        assert entered.wait(5)
        assert merger.poll() is False
        assert merger.skipped_polls == 1
        release.set()
        worker.join(5)


class TestGuards:
    def test_cannot_edit_other_testers_row(self, merger):
        with pytest.raises(ValidationError):
            merger.apply_local_edit("r2", "status", "Pass")

    def test_unknown_result(self, merger):
        with pytest.raises(NotFoundError):
            merger.apply_local_edit("nope", "status", "Pass")

    def test_only_status_and_notes(self, merger):
        with pytest.raises(ValidationError):
            merger.apply_local_edit("r1", "tester_id", "bob")

    def test_invalid_status(self, merger):
        with pytest.raises(ValidationError):
            merger.apply_local_edit("r1", "status", "Blocked")

    def test_pass_collapses_row(self, merger):
        merger.expand("r1")
        merger.expand("r3")
        merger.apply_local_edit("r1", "status", "Fail")
        assert "r1" in merger.expanded
        merger.apply_local_edit("r1", "status", "Pass")
        assert "r1" not in merger.expanded
        assert "r3" in merger.expanded


class TestClose:
    def test_late_save_response_discarded(self, clock):
        merger = None

        class ClosingResults:
            def list(self):
                return StoreResult.success([
                    {"id": "r1", "checklist_module_id": "cm-1", "testcase_id": "tc-1",
                     "tester_id": "alice", "status": "Pending"},
                ])

            def update(self, resource_id, patch):
                merger.close()
                return StoreResult.success({"id": resource_id})

        merger = LivePollMerger(ClosingResults(), clock=clock)
        merger.poll()
        merger.apply_local_edit("r1", "status", "Pass")
        clock.advance(2)
        merger.tick()
        assert merger.overlay_state()["r1"]["state"] == EditState.SAVING.value
        assert merger.timers() == {}

    def test_poll_after_close_is_noop(self, store, merger):
        merger.close()
        calls = len(store.calls)
        assert merger.poll() is False
        assert len(store.calls) == calls

    def test_start_and_stop_polling(self, merger):
        merger.start_polling(interval=60, tick_interval=0.01)
        assert merger.is_polling()
        merger.stop_polling()
        assert not merger.is_polling()


class TestOpenLiveSession:
    def test_opens_with_first_poll(self, store):
        store.seed_results([{"id": "r1", "testcase_id": "tc-1", "tester_id": "alice", "status": "Pass"}])
        merger = open_live_session(store, "p-1", tester_id="alice")
        try:
            assert merger.get_view()["stats"]["passed"] == 1
            assert merger.project_id == "p-1"
        finally:
            merger.close()

    def test_store_down(self, store):
        store.fail("test_results", "list", status_code=503)
        with pytest.raises(NetworkError):
            open_live_session(store, "p-1")

    def test_project_required(self, store):
        with pytest.raises(ValidationError):
            open_live_session(store, "")
