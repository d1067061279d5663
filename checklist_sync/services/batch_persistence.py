"""
Batch Persistence Orchestrator — turns a ChangeSet into remote calls.

Phases run strictly in this order; items inside one phase are independent
and are dispatched concurrently on a thread pool:

    1. delete tombstoned children
    2. delete tombstoned parents
    3. create parents            → local-id → server-id map
    4. create children           (parent ids translated through the map)
    5. update parents
    6. update children
    7. reorders                  (parents, then children per parent)

A failing item is recorded and never aborts the batch. Afterwards the
collection is re-fetched and the draft is rebased onto the fresh snapshot.
If the re-fetch fails the draft is left exactly as it was and the result
carries a retryable RefetchError.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from checklist_sync.core.exceptions import PartialBatchFailure, RefetchError
from checklist_sync.integrations.store_gateway import KIND_NOT_FOUND, StoreResult
from checklist_sync.models.resources import is_local_id
from checklist_sync.services.change_set import (
    CHILD,
    PARENT,
    ChangeSet,
    CreateOp,
    DeleteOp,
    ReorderOp,
    UpdateOp,
)
from checklist_sync.services.draft_state import DraftStateManager

logger = logging.getLogger(__name__)

CATEGORIES = ("created", "updated", "deleted", "reordered")

KIND_SKIPPED = "skipped"
KIND_ERROR = "error"


@dataclass
class BatchFailure:
    """One operation of a batch that did not go through."""

    operation: str
    level: str
    resource_id: str | None
    reason: str
    kind: str

    def describe(self) -> str:
        return f"{self.operation} {self.level} {self.resource_id}: {self.reason}"

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "level": self.level,
            "resource_id": self.resource_id,
            "reason": self.reason,
            "kind": self.kind,
        }


@dataclass
class BatchResult:
    succeeded: dict[str, int] = field(default_factory=lambda: dict.fromkeys(CATEGORIES, 0))
    failed: dict[str, int] = field(default_factory=lambda: dict.fromkeys(CATEGORIES, 0))
    failures: list[BatchFailure] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)
    rebased: bool = False
    refetch_error: RefetchError | None = None
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return sum(self.succeeded.values()) + sum(self.failed.values())

    @property
    def ok(self) -> bool:
        return not self.failures and self.refetch_error is None

    @property
    def error(self) -> PartialBatchFailure | None:
        """Aggregate error when at least one item failed, else None."""
        if not self.failures:
            return None
        return PartialBatchFailure(self.failures, self.total)

    def record(self, category: str, failure: BatchFailure | None) -> None:
        if failure is None:
            self.succeeded[category] += 1
        else:
            self.failed[category] += 1
            self.failures.append(failure)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "succeeded": dict(self.succeeded),
            "failed": dict(self.failed),
            "failures": [f.to_dict() for f in self.failures],
            "id_map": dict(self.id_map),
            "rebased": self.rebased,
            "refetch_error": str(self.refetch_error) if self.refetch_error else None,
            "duration_ms": self.duration_ms,
        }


def _failure(operation: str, level: str, resource_id: str | None, result: StoreResult) -> BatchFailure:
    return BatchFailure(
        operation=operation,
        level=level,
        resource_id=resource_id,
        reason=result.error or "unknown error",
        kind=result.error_kind or KIND_ERROR,
    )


class BatchPersistenceOrchestrator:
    """Persists the pending edits of one DraftStateManager.

    Args:
        draft: The draft whose change set is saved and which is rebased after.
        parents: Collection client for the top-level collection.
        children: Collection client for the embedded child collection.
        max_workers: Thread pool size for items inside one phase.
    """

    def __init__(
        self,
        draft: DraftStateManager,
        parents,
        children=None,
        max_workers: int = 4,
    ) -> None:
        self.draft = draft
        self.parents = parents
        self.children = children
        self.max_workers = max(1, int(max_workers))

    # ── Public API ───────────────────────────────────────────────────────

    def save(self) -> BatchResult:
        """Run every phase of the current change set and re-baseline."""
        change_set = self.draft.change_set()
        tombstones = self.draft.tombstones
        result = BatchResult()
        if change_set.is_empty:
            logger.info("Save requested with no pending changes")
            return result

        t0 = time.perf_counter()
        logger.info(
            "Batch save started collection=%s operations=%d",
            self.draft.schema.name,
            change_set.change_count,
            extra={"collection": self.draft.schema.name},
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            self._run_deletes(pool, change_set, tombstones, result)
            self._run_creates(pool, change_set, result)
            self._run_updates(pool, change_set, result)
            self._run_reorders(pool, change_set, result)

        self._refetch(result)
        result.duration_ms = int((time.perf_counter() - t0) * 1000)

        log = logger.info if result.ok else logger.warning
        log(
            "Batch save finished collection=%s succeeded=%s failed=%s rebased=%s",
            self.draft.schema.name,
            result.succeeded,
            result.failed,
            result.rebased,
            extra={"collection": self.draft.schema.name, "duration_ms": result.duration_ms},
        )
        return result

    # ── Phases ───────────────────────────────────────────────────────────

    def _run_phase(self, pool: ThreadPoolExecutor, phase: str, ops: list, fn) -> list:
        if not ops:
            return []
        logger.debug(
            "Phase %s: %d item(s)", phase, len(ops),
            extra={"collection": self.draft.schema.name, "phase": phase},
        )
        return list(pool.map(lambda op: self._guarded(phase, op, fn), ops))

    def _guarded(self, phase: str, op, fn):
        """Run one item; an unexpected exception becomes a failed StoreResult."""
        try:
            return fn(op)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Phase %s item raised: %s", phase, exc, exc_info=True,
                extra={"collection": self.draft.schema.name, "phase": phase},
            )
            return StoreResult.failure(str(exc) or type(exc).__name__, error_kind=KIND_ERROR)

    def _run_deletes(
        self,
        pool: ThreadPoolExecutor,
        change_set: ChangeSet,
        tombstones: frozenset[str],
        result: BatchResult,
    ) -> None:
        for level, phase in ((CHILD, "delete_children"), (PARENT, "delete_parents")):
            ops: list[DeleteOp] = [op for op in change_set.deletes if op.level == level]
            client = self._client(level)
            outcomes = self._run_phase(pool, phase, ops, lambda op, c=client: c.delete(op.resource_id))
            for op, outcome in zip(ops, outcomes):
                if outcome.ok or outcome.error_kind == KIND_NOT_FOUND:
                    result.record("deleted", None)
                elif level == CHILD and op.parent_id in tombstones:
                    # The parent delete removes it anyway.
                    logger.info(
                        "Ignoring child delete failure under deleted parent id=%s parent=%s: %s",
                        op.resource_id, op.parent_id, outcome.error,
                        extra={"resource_id": op.resource_id, "phase": phase},
                    )
                    result.record("deleted", None)
                else:
                    result.record("deleted", _failure("delete", level, op.resource_id, outcome))

    def _run_creates(self, pool: ThreadPoolExecutor, change_set: ChangeSet, result: BatchResult) -> None:
        parent_ops: list[CreateOp] = [op for op in change_set.creates if op.level == PARENT]
        outcomes = self._run_phase(
            pool, "create_parents", parent_ops, lambda op: self.parents.create(op.payload)
        )
        for op, outcome in zip(parent_ops, outcomes):
            server_id = (outcome.data or {}).get("id") if outcome.ok and isinstance(outcome.data, dict) else None
            if server_id:
                result.id_map[op.local_id] = server_id
                result.record("created", None)
            elif outcome.ok:
                result.record("created", BatchFailure(
                    "create", PARENT, op.local_id, "store returned no id", KIND_ERROR,
                ))
            else:
                result.record("created", _failure("create", PARENT, op.local_id, outcome))

        child_ops: list[CreateOp] = []
        for op in change_set.creates:
            if op.level != CHILD:
                continue
            parent_id = result.id_map.get(op.parent_id, op.parent_id)
            if parent_id is None or is_local_id(parent_id):
                result.record("created", BatchFailure(
                    "create", CHILD, op.local_id,
                    f"parent {op.parent_id} was not created", KIND_SKIPPED,
                ))
                continue
            child_ops.append(op)

        child_schema = self.draft.schema.child

        def create_child(op: CreateOp) -> StoreResult:
            parent_id = result.id_map.get(op.parent_id, op.parent_id)
            payload = dict(op.payload)
            if child_schema is not None and child_schema.parent_key:
                payload[child_schema.parent_key] = parent_id
            return self.children.create(payload, parent_id=parent_id)

        outcomes = self._run_phase(pool, "create_children", child_ops, create_child)
        for op, outcome in zip(child_ops, outcomes):
            if outcome.ok:
                if isinstance(outcome.data, dict) and outcome.data.get("id"):
                    result.id_map[op.local_id] = outcome.data["id"]
                result.record("created", None)
            else:
                result.record("created", _failure("create", CHILD, op.local_id, outcome))

    def _run_updates(self, pool: ThreadPoolExecutor, change_set: ChangeSet, result: BatchResult) -> None:
        for level, phase in ((PARENT, "update_parents"), (CHILD, "update_children")):
            ops: list[UpdateOp] = [op for op in change_set.updates if op.level == level]
            client = self._client(level)
            outcomes = self._run_phase(
                pool, phase, ops, lambda op, c=client: c.update(op.resource_id, op.patch)
            )
            for op, outcome in zip(ops, outcomes):
                result.record(
                    "updated", None if outcome.ok else _failure("update", level, op.resource_id, outcome)
                )

    def _run_reorders(self, pool: ThreadPoolExecutor, change_set: ChangeSet, result: BatchResult) -> None:
        for level, phase in ((PARENT, "reorder_parents"), (CHILD, "reorder_children")):
            ops: list[ReorderOp] = [op for op in change_set.reorders if op.level == level]
            client = self._client(level)
            outcomes = self._run_phase(
                pool, phase, ops,
                lambda op, c=client: c.reorder(list(op.positions), parent_id=op.parent_id),
            )
            for op, outcome in zip(ops, outcomes):
                result.record(
                    "reordered",
                    None if outcome.ok else _failure("reorder", level, op.parent_id, outcome),
                )

    # ── Re-baseline ──────────────────────────────────────────────────────

    def _refetch(self, result: BatchResult) -> None:
        snapshot = self.parents.list()
        if not snapshot.ok:
            result.refetch_error = RefetchError(
                f"Saved, but reloading {self.draft.schema.name} failed: {snapshot.error}",
                snapshot.status_code,
            )
            logger.warning(
                "Re-fetch after save failed collection=%s error=%s",
                self.draft.schema.name, snapshot.error,
                extra={"collection": self.draft.schema.name, "phase": "refetch"},
            )
            return
        self.draft.rebase(snapshot.data or [])
        result.rebased = True

    def _client(self, level: str):
        return self.parents if level == PARENT else self.children
