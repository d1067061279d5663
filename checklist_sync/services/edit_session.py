"""
Edit session — one user's draft of a hierarchical collection.

Ties a DraftStateManager to the store clients of its collection and exposes
the UI-facing operations: load, mutate, save, discard, import. Mutations and
a second save are rejected while a save is in flight.

Mutation ops (``mutate``):
    {"op": "create",  "payload": {...}, "parent_id": "…"?}
    {"op": "update",  "id": "…", "patch": {...}}
    {"op": "delete",  "id": "…"}
    {"op": "reorder", "ordered_ids": [...], "parent_id": "…"?}
    {"op": "move",    "id": "…", "to_index": 2}
"""

from __future__ import annotations

import logging
import threading
import uuid

from checklist_sync.core.exceptions import ConflictError, ValidationError
from checklist_sync.integrations.store_gateway import StoreGateway
from checklist_sync.models.resources import get_schema
from checklist_sync.services import checklist_import
from checklist_sync.services.batch_persistence import (
    BatchPersistenceOrchestrator,
    BatchResult,
)
from checklist_sync.services.draft_state import DraftStateManager

logger = logging.getLogger(__name__)

MUTATION_OPS = ("create", "update", "delete", "reorder", "move")


class EditSession:
    """Draft editing session bound to one collection (and project scope)."""

    def __init__(
        self,
        collection: str,
        parents,
        children=None,
        *,
        project_id: str | None = None,
        max_workers: int = 4,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.collection = collection
        self.project_id = project_id
        self.schema = get_schema(collection)
        self.parents = parents
        self.children = children
        self.draft = DraftStateManager(self.schema)
        self.orchestrator = BatchPersistenceOrchestrator(
            self.draft, parents, children, max_workers=max_workers
        )
        self.last_result: BatchResult | None = None
        self._state_lock = threading.Lock()
        self._saving = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    def load(self) -> None:
        """Fetch the collection and adopt it as baseline and draft.

        Raises:
            NetworkError / NotFoundError: the store could not provide it.
        """
        self._guard_not_saving()
        result = self.parents.list()
        if not result.ok:
            raise result.to_exception(self.schema.label)
        self.draft.rebase(result.data or [])
        logger.info(
            "Edit session loaded collection=%s records=%d",
            self.collection, len(result.data or []),
            extra={"session_id": self.session_id, "collection": self.collection},
        )

    def save(self) -> BatchResult:
        """Persist the pending change set.

        Raises:
            ConflictError: a save is already in flight for this session.
        """
        with self._state_lock:
            if self._saving:
                raise ConflictError("EditSession", "state", "saving")
            self._saving = True
        try:
            result = self.orchestrator.save()
        finally:
            with self._state_lock:
                self._saving = False
        self.last_result = result
        return result

    def discard(self) -> None:
        self._guard_not_saving()
        self.draft.discard()

    def close(self) -> None:
        if self.has_unsaved_changes():
            logger.info(
                "Closing edit session with unsaved changes",
                extra={"session_id": self.session_id, "collection": self.collection},
            )

    # ── Mutations ────────────────────────────────────────────────────────

    def mutate(self, op: dict) -> dict:
        """Apply one local mutation; returns ``{"id": ...}`` or the record."""
        self._guard_not_saving()
        kind = (op or {}).get("op")
        if kind not in MUTATION_OPS:
            raise ValidationError(
                f"Unknown mutation '{kind}'",
                details={"op": f"must be one of {list(MUTATION_OPS)}"},
            )

        if kind == "create":
            new_id = self.draft.create_local(op.get("payload") or {}, parent_id=op.get("parent_id"))
            return {"id": new_id}

        if kind == "reorder":
            ordered_ids = op.get("ordered_ids")
            if not isinstance(ordered_ids, list):
                raise ValidationError("ordered_ids must be a list", details={"ordered_ids": "required"})
            self.draft.reorder_local(ordered_ids, parent_id=op.get("parent_id"))
            return {"ordered_ids": ordered_ids}

        resource_id = op.get("id")
        if not resource_id:
            raise ValidationError("id is required", details={"id": "required"})

        if kind == "update":
            return self.draft.update_local(resource_id, op.get("patch") or {})
        if kind == "delete":
            self.draft.delete_local(resource_id)
            return {"id": resource_id}

        to_index = op.get("to_index")
        if not isinstance(to_index, int):
            raise ValidationError("to_index must be an integer", details={"to_index": "required"})
        self.draft.move_local(resource_id, to_index)
        return {"id": resource_id, "to_index": to_index}

    def import_csv(self, content: str | bytes, *, preview: bool = False) -> dict:
        """Parse a module CSV and preview or apply it to the draft."""
        self._guard_not_saving()
        modules = checklist_import.parse_csv(content)
        if preview:
            return checklist_import.preview_import(self.draft, modules)
        return checklist_import.apply_import(self.draft, modules)

    # ── Read access ──────────────────────────────────────────────────────

    @property
    def is_saving(self) -> bool:
        return self._saving

    def has_unsaved_changes(self) -> bool:
        return self.draft.has_unsaved_changes()

    def change_count(self) -> int:
        return self.draft.change_set().change_count

    def to_dict(self, include_changes: bool = False) -> dict:
        data = {
            "session_id": self.session_id,
            "collection": self.collection,
            "project_id": self.project_id,
            "draft": self.draft.get_draft(),
            "has_unsaved_changes": self.has_unsaved_changes(),
            "change_count": self.change_count(),
            "is_saving": self._saving,
        }
        if include_changes:
            data["changes"] = self.draft.change_set().to_dict()
        return data

    def _guard_not_saving(self) -> None:
        if self._saving:
            raise ConflictError("EditSession", "state", "saving")


def open_edit_session(
    gateway: StoreGateway,
    collection: str,
    *,
    project_id: str | None = None,
    max_workers: int = 4,
) -> EditSession:
    """Create and load an edit session for ``collection``.

    Raises:
        ValidationError: unknown collection or missing project_id.
    """
    try:
        schema = get_schema(collection)
    except KeyError as exc:
        raise ValidationError(str(exc.args[0]), details={"collection": "unknown"}) from None

    scope = {}
    if schema.name == "checklist_modules":
        if not project_id:
            raise ValidationError("project_id is required", details={"project_id": "required"})
        scope["project_id"] = project_id

    parents = gateway.collection(schema.name, **scope)
    children = gateway.collection(schema.child_collection, **scope) if schema.child_collection else None
    session = EditSession(
        collection, parents, children, project_id=project_id, max_workers=max_workers
    )
    session.load()
    return session
