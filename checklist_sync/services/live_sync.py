"""
Live Poll Merger — execution screen state for one tester session.

The store is the source of truth for test results and is re-polled on an
interval. The local tester's not-yet-settled edits live in an overlay that
always wins over polled values, so a poll landing mid-edit never reverts
what the tester is typing.

Per result id the overlay entry moves through:

    Clean ──edit──▶ Editing ──save timer──▶ Saving ──ok──▶ Settling ──clear timer──▶ Clean
                       ▲                       │                │
                       └──── edit / failure ───┘◀──── edit ─────┘

Timers are plain rows in ``_timers`` ({result_id: Timer}) and fire only
from ``tick(now)``; there is exactly one pending timer per result id.
Network calls are made outside the state lock.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from checklist_sync.core.exceptions import NetworkError, NotFoundError, ValidationError
from checklist_sync.models.resources import (
    RESULT_EDITABLE_FIELDS,
    RESULT_OVERLAY_FIELDS,
    VALID_STATUSES,
    TestStatus,
)
from checklist_sync.services.status_aggregator import build_checklist_view

logger = logging.getLogger(__name__)

SAVE_TIMER = "save"
CLEAR_TIMER = "clear"

DEFAULT_SAVE_DEBOUNCE = 1.5
DEFAULT_CLEAR_DEBOUNCE = 10.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TICK_INTERVAL = 0.25


class EditState(str, Enum):
    CLEAN = "clean"
    EDITING = "editing"
    SAVING = "saving"
    SETTLING = "settling"


@dataclass
class PendingEdit:
    """Overlay entry: field values the tester set locally for one result."""

    fields: dict = field(default_factory=dict)
    last_activity: float = 0.0
    state: EditState = EditState.EDITING
    revision: int = 0
    saving_revision: int | None = None
    failed: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "fields": dict(self.fields),
            "state": self.state.value,
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class Timer:
    kind: str
    deadline: float


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Pure helpers ────────────────────────────────────────────────────────────


def merge_results(
    server_results: Iterable[dict], overlay: Mapping[str, Mapping]
) -> list[dict]:
    """Overlay local field values onto a fresh server snapshot.

    Only status, notes and tested_at are taken from the overlay; identity
    and denormalised metadata always come from the server. Overlay keys for
    results absent from the snapshot are ignored.
    """
    merged = []
    for result in server_results:
        row = dict(result)
        local = overlay.get(row.get("id"))
        if local:
            for name in RESULT_OVERLAY_FIELDS:
                if name in local:
                    row[name] = local[name]
        merged.append(row)
    return merged


def views_equal(previous: dict | None, current: dict | None) -> bool:
    """Structural equality of two aggregated views (ids, statuses, stats)."""
    if previous is None or current is None:
        return previous is current
    return previous == current


# ── Merger ─────────────────────────────────────────────────────────────────


class LivePollMerger:
    """Merges polled test results with the local tester's pending edits.

    Args:
        results: Collection client for test results (``list`` / ``update``).
        tester_id: When set, only rows owned by this tester are editable.
        clock: Monotonic clock used for timer deadlines (injectable in tests).
        save_debounce: Seconds of edit inactivity before a save is sent.
        clear_debounce: Seconds a saved entry stays in the overlay.
        collapse_statuses: Statuses that collapse an expanded result row.
        on_render: Called with the new view whenever it changes.
        on_save_error: Called with (result_id, error) when a save fails.
        timestamp: Produces ``tested_at`` values for status edits.
    """

    def __init__(
        self,
        results,
        *,
        tester_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        save_debounce: float = DEFAULT_SAVE_DEBOUNCE,
        clear_debounce: float = DEFAULT_CLEAR_DEBOUNCE,
        collapse_statuses: Iterable[str] = (TestStatus.PASS.value,),
        on_render: Callable[[dict], None] | None = None,
        on_save_error: Callable[[str, str], None] | None = None,
        timestamp: Callable[[], str] = _now_iso,
        session_id: str | None = None,
        project_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.project_id = project_id
        self.results = results
        self.tester_id = tester_id
        self.clock = clock
        self.save_debounce = save_debounce
        self.clear_debounce = clear_debounce
        self.collapse_statuses = frozenset(collapse_statuses)
        self.on_render = on_render
        self.on_save_error = on_save_error
        self.timestamp = timestamp

        self._lock = threading.RLock()
        self._poll_lock = threading.Lock()
        self._server_results: list[dict] = []
        self._overlay: dict[str, PendingEdit] = {}
        self._timers: dict[str, Timer] = {}
        self._focus: set[tuple[str, str]] = set()
        self._expanded: set[str] = set()
        self._view: dict | None = None
        self._closed = False
        self.render_count = 0
        self.skipped_polls = 0

        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    # ── Read access ──────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    def get_view(self) -> dict | None:
        with self._lock:
            return copy.deepcopy(self._view)

    def overlay_state(self) -> dict[str, dict]:
        with self._lock:
            return {rid: entry.to_dict() for rid, entry in self._overlay.items()}

    def timers(self) -> dict[str, Timer]:
        with self._lock:
            return {rid: Timer(t.kind, t.deadline) for rid, t in self._timers.items()}

    @property
    def expanded(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._expanded)

    def snapshot(self) -> dict:
        """Everything the execution screen renders, JSON-ready."""
        with self._lock:
            return {
                "view": copy.deepcopy(self._view),
                "overlay": {rid: e.to_dict() for rid, e in self._overlay.items()},
                "expanded": sorted(self._expanded),
                "session_id": self.session_id,
                "project_id": self.project_id,
                "tester_id": self.tester_id,
                "polling": self.is_polling(),
            }

    # ── Local edits ──────────────────────────────────────────────────────

    def apply_local_edit(self, result_id: str, field_name: str, value) -> None:
        """Record a tester edit in the overlay and (re)arm its save timer.

        Raises:
            ValidationError: field not editable, bad status, or row owned by
                another tester.
            NotFoundError: result id not in the current snapshot.
        """
        if field_name not in RESULT_EDITABLE_FIELDS:
            raise ValidationError(
                f"Field '{field_name}' is not editable",
                details={field_name: f"must be one of {list(RESULT_EDITABLE_FIELDS)}"},
            )
        if field_name == "status" and value not in VALID_STATUSES:
            raise ValidationError(
                f"Invalid status '{value}'",
                details={"status": f"must be one of {sorted(VALID_STATUSES)}"},
            )

        with self._lock:
            self._check_owned(result_id)
            now = self.clock()
            entry = self._overlay.get(result_id)
            if entry is None:
                entry = PendingEdit()
                self._overlay[result_id] = entry

            entry.fields[field_name] = value
            if field_name == "status":
                entry.fields["tested_at"] = self.timestamp()
                if value in self.collapse_statuses:
                    self._expanded.discard(result_id)
            entry.last_activity = now
            entry.revision += 1
            entry.failed = False
            entry.error = None

            if entry.state != EditState.SAVING:
                # An in-flight save re-arms the timer when it completes.
                entry.state = EditState.EDITING
                self._timers[result_id] = Timer(SAVE_TIMER, now + self.save_debounce)

            view = self._render_locked()
        self._emit(view)

    def set_focus(self, result_id: str, field_name: str, focused: bool = True) -> None:
        """Track which overlay fields currently hold input focus."""
        with self._lock:
            if focused:
                self._focus.add((result_id, field_name))
            else:
                self._focus.discard((result_id, field_name))

    def expand(self, result_id: str) -> None:
        with self._lock:
            if not any(r.get("id") == result_id for r in self._server_results):
                raise NotFoundError("TestResult", result_id)
            self._expanded.add(result_id)

    def collapse(self, result_id: str) -> None:
        with self._lock:
            self._expanded.discard(result_id)

    def retry(self, result_id: str) -> None:
        """Re-arm a failed save so the next tick sends it again."""
        with self._lock:
            entry = self._overlay.get(result_id)
            if entry is None:
                raise NotFoundError("PendingEdit", result_id)
            if not entry.failed:
                raise ValidationError(f"No failed save to retry for result {result_id}")
            entry.failed = False
            entry.error = None
            entry.state = EditState.EDITING
            self._timers[result_id] = Timer(SAVE_TIMER, self.clock())
        self.tick()

    # ── Timers ───────────────────────────────────────────────────────────

    def tick(self, now: float | None = None) -> None:
        """Fire every due timer: send debounced saves, evict settled entries."""
        if self._closed:
            return
        saves: list[tuple[str, int, dict]] = []
        view = None
        with self._lock:
            now = self.clock() if now is None else now
            evicted = False
            for result_id, timer in list(self._timers.items()):
                if timer.deadline > now:
                    continue
                entry = self._overlay.get(result_id)
                if entry is None:
                    del self._timers[result_id]
                    continue

                if timer.kind == SAVE_TIMER:
                    if entry.state != EditState.EDITING:
                        continue
                    del self._timers[result_id]
                    entry.state = EditState.SAVING
                    entry.saving_revision = entry.revision
                    saves.append((result_id, entry.revision, dict(entry.fields)))

                elif timer.kind == CLEAR_TIMER:
                    if any(rid == result_id for rid, _ in self._focus):
                        self._timers[result_id] = Timer(CLEAR_TIMER, now + self.clear_debounce)
                        continue
                    del self._timers[result_id]
                    del self._overlay[result_id]
                    evicted = True
                    logger.debug("Overlay entry settled result_id=%s", result_id)

            if evicted:
                view = self._render_locked()
        self._emit(view)

        for result_id, revision, patch in saves:
            self._send_save(result_id, revision, patch)

    def _send_save(self, result_id: str, revision: int, patch: dict) -> None:
        try:
            outcome = self.results.update(result_id, patch)
            ok, error = outcome.ok, outcome.error
        except Exception as exc:  # noqa: BLE001
            logger.warning("Result save raised result_id=%s: %s", result_id, exc, exc_info=True)
            ok, error = False, str(exc) or type(exc).__name__

        notify = None
        with self._lock:
            if self._closed:
                logger.debug("Discarding save response after close result_id=%s", result_id)
                return
            entry = self._overlay.get(result_id)
            if entry is None:
                return
            now = self.clock()
            edited_since = entry.revision != revision
            entry.saving_revision = None

            if ok:
                # Confirmed values stand in for the server until the next poll.
                for row in self._server_results:
                    if row.get("id") == result_id:
                        row.update({k: v for k, v in patch.items() if k in RESULT_OVERLAY_FIELDS})
                        break
                if edited_since:
                    entry.state = EditState.EDITING
                    self._timers[result_id] = Timer(SAVE_TIMER, now + self.save_debounce)
                else:
                    entry.state = EditState.SETTLING
                    self._timers[result_id] = Timer(CLEAR_TIMER, now + self.clear_debounce)
            else:
                entry.state = EditState.EDITING
                entry.failed = not edited_since
                entry.error = error
                if edited_since:
                    self._timers[result_id] = Timer(SAVE_TIMER, now + self.save_debounce)
                else:
                    self._timers.pop(result_id, None)
                    notify = error
                logger.warning(
                    "Result save failed result_id=%s error=%s", result_id, error,
                    extra={"resource_id": result_id},
                )

        if notify is not None and self.on_save_error is not None:
            self.on_save_error(result_id, notify)

    # ── Polling ──────────────────────────────────────────────────────────

    def poll(self) -> bool:
        """Fetch a fresh snapshot and merge it with the overlay.

        Returns True when the snapshot was applied. An overlapping poll is
        skipped (not queued); a failed fetch keeps the previous view.
        """
        if self._closed:
            return False
        if not self._poll_lock.acquire(blocking=False):
            self.skipped_polls += 1
            logger.debug("Poll already in flight; skipping tick")
            return False
        try:
            outcome = self.results.list()
            if self._closed:
                logger.debug("Discarding poll response after close")
                return False
            if not outcome.ok:
                logger.warning("Poll failed: %s", outcome.error)
                return False
            with self._lock:
                self._server_results = [dict(r) for r in (outcome.data or [])]
                view = self._render_locked()
            self._emit(view)
            return True
        finally:
            self._poll_lock.release()

    def is_polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_polling(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        """Start the background thread that ticks timers and polls."""
        if self._closed or self.is_polling():
            return
        stop = threading.Event()
        self._stop_event = stop

        def _loop() -> None:
            next_poll = 0.0
            while not stop.is_set():
                try:
                    now = self.clock()
                    if now >= next_poll:
                        self.poll()
                        next_poll = now + interval
                    self.tick()
                except Exception:
                    logger.exception("Live sync loop iteration failed")
                stop.wait(tick_interval)

        self._thread = threading.Thread(target=_loop, name="live-sync-poller", daemon=True)
        self._thread.start()
        logger.info("Polling started interval=%ss", interval)

    def stop_polling(self, timeout: float = 5.0) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self._stop_event = None

    def close(self) -> None:
        """Stop polling and drop all pending timers; late responses are ignored."""
        self._closed = True
        self.stop_polling()
        with self._lock:
            self._timers.clear()

    # ── Internals ────────────────────────────────────────────────────────

    def _check_owned(self, result_id: str) -> None:
        for result in self._server_results:
            if result.get("id") == result_id:
                if self.tester_id is not None and result.get("tester_id") != self.tester_id:
                    raise ValidationError(
                        "Cannot edit another tester's result",
                        details={"tester_id": "not owner"},
                    )
                return
        raise NotFoundError("TestResult", result_id)

    def _render_locked(self) -> dict | None:
        """Rebuild the view; return it when it changed, else None."""
        merged = merge_results(
            self._server_results, {rid: e.fields for rid, e in self._overlay.items()}
        )
        view = build_checklist_view(merged)
        if views_equal(self._view, view):
            return None
        self._view = view
        self.render_count += 1
        return view

    def _emit(self, view: dict | None) -> None:
        if view is not None and self.on_render is not None:
            self.on_render(copy.deepcopy(view))


def open_live_session(
    gateway,
    project_id: str,
    *,
    tester_id: str | None = None,
    **options,
) -> LivePollMerger:
    """Create a merger over a project's test results and run the first poll.

    ``options`` are passed through to LivePollMerger (debounces, clock, …).

    Raises:
        ValidationError: project_id missing.
        NetworkError: the initial snapshot could not be fetched.
    """
    if not project_id:
        raise ValidationError("project_id is required", details={"project_id": "required"})
    results = gateway.collection("test_results", project_id=project_id)
    merger = LivePollMerger(results, tester_id=tester_id, project_id=project_id, **options)
    if not merger.poll():
        merger.close()
        raise NetworkError(f"Could not load test results for project {project_id}")
    return merger
