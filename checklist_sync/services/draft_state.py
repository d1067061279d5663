"""
Draft State Manager — local, network-free editing of a resource collection.

Owns the (baseline, draft) pair for one edit session plus the tombstone set:

    baseline    last snapshot known to equal server state; replaced wholesale
    draft       deep-independent working copy the user edits
    tombstones  persisted ids removed from the draft that must be deleted
                remotely (the draft alone cannot tell "deleted" from
                "never existed")

Local-only records get ids with the ``temp-`` prefix. Deleting one simply
drops it; deleting a persisted record tombstones it (and, for a parent, its
persisted children).

Every mutation is synchronous and atomic under the manager's lock.
"""

from __future__ import annotations

import contextlib
import copy
import itertools
import logging
import threading

from checklist_sync.core.exceptions import NotFoundError, ValidationError
from checklist_sync.models.resources import (
    LOCAL_ID_PREFIX,
    ResourceSchema,
    is_local_id,
)
from checklist_sync.services.change_set import ChangeSet, calculate_change_set

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = ("id",)


class DraftStateManager:
    """Holds baseline/draft/tombstones for one hierarchical collection.

    Args:
        schema: Top-level ResourceSchema (optionally with a child schema).
        baseline: Initial server snapshot; defaults to an empty collection.
    """

    def __init__(self, schema: ResourceSchema, baseline: list[dict] | None = None) -> None:
        self.schema = schema
        self._lock = threading.RLock()
        self._counter = itertools.count(1)
        self._baseline: list[dict] = []
        self._draft: list[dict] = []
        self._tombstones: dict[str, str | None] = {}
        self.rebase(baseline or [])

    # ── Read access ──────────────────────────────────────────────────────

    @property
    def baseline(self) -> list[dict]:
        with self._lock:
            return copy.deepcopy(self._baseline)

    @property
    def tombstones(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._tombstones)

    def get_draft(self) -> list[dict]:
        """Return a deep copy of the draft, ordered as the user sees it."""
        with self._lock:
            return copy.deepcopy(self._draft)

    def find(self, resource_id: str) -> dict:
        """Return a copy of the draft record with this id (parent or child)."""
        with self._lock:
            record, _parent = self._locate(resource_id)
            return copy.deepcopy(record)

    def change_set(self) -> ChangeSet:
        with self._lock:
            return calculate_change_set(
                self.schema, self._baseline, self._draft, self._tombstones
            )

    def has_unsaved_changes(self) -> bool:
        """True iff saving now would send at least one remote operation."""
        with self._lock:
            if self._tombstones:
                return True
            return not self.change_set().is_empty

    def is_modified(self, resource_id: str) -> bool:
        """True if the record is local-only or differs from its baseline twin.

        Compares the schema's comparable fields plus the order field.
        """
        with self._lock:
            record, parent = self._locate(resource_id)
            if is_local_id(resource_id):
                return True
            schema = self.schema if parent is None else self.schema.child
            original = self._find_in(self._baseline, resource_id)
            if original is None:
                return False
            return (
                schema.comparable(record) != schema.comparable(original)
                or record.get(schema.order_field) != original.get(schema.order_field)
            )

    # ── Local mutations ──────────────────────────────────────────────────

    def create_local(self, payload: dict, parent_id: str | None = None) -> str:
        """Append a new local-only record and return its temporary id.

        Raises:
            NotFoundError: parent_id is not in the draft.
            ValidationError: required field missing, too long, bad enum value
                or duplicate name among siblings.
        """
        with self._lock:
            schema, siblings = self._level_for_create(parent_id)
            record = dict(schema.defaults)
            record.update(
                {k: v for k, v in (payload or {}).items() if k not in _IMMUTABLE_FIELDS}
            )
            self._validate(schema, record, siblings, exclude_id=None)

            resource_id = f"{LOCAL_ID_PREFIX}{schema.name}-{next(self._counter)}"
            record["id"] = resource_id
            record[schema.order_field] = 1 + max(
                (s.get(schema.order_field) or 0 for s in siblings), default=-1
            )
            if schema.children_key:
                record[schema.children_key] = []
            if parent_id is not None and schema.parent_key:
                record[schema.parent_key] = parent_id
            for name in schema.list_fields:
                record[name] = list(record.get(name) or [])

            siblings.append(record)
            logger.debug(
                "Draft create %s id=%s parent=%s", schema.label, resource_id, parent_id
            )
            return resource_id

    def update_local(self, resource_id: str, patch: dict) -> dict:
        """Merge ``patch`` into the draft record and return a copy of it."""
        with self._lock:
            record, parent = self._locate(resource_id)
            schema = self.schema if parent is None else self.schema.child
            siblings = self._draft if parent is None else parent[self.schema.children_key]

            blocked = {"id", schema.order_field}
            if schema.children_key:
                blocked.add(schema.children_key)
            if schema.parent_key:
                blocked.add(schema.parent_key)
            changes = {k: v for k, v in (patch or {}).items() if k not in blocked}

            candidate = {**record, **changes}
            self._validate(schema, candidate, siblings, exclude_id=resource_id)
            record.update(changes)
            logger.debug(
                "Draft update %s id=%s fields=%s", schema.label, resource_id, sorted(changes)
            )
            return copy.deepcopy(record)

    def delete_local(self, resource_id: str) -> None:
        """Remove a record from the draft, tombstoning it when persisted."""
        with self._lock:
            record, parent = self._locate(resource_id)
            if parent is None:
                self._draft.remove(record)
                if not is_local_id(resource_id):
                    self._tombstones[resource_id] = None
                    for child in record.get(self.schema.children_key or "", None) or []:
                        if not is_local_id(child["id"]):
                            self._tombstones[child["id"]] = resource_id
            else:
                parent[self.schema.children_key].remove(record)
                if not is_local_id(resource_id) and not is_local_id(parent["id"]):
                    self._tombstones[resource_id] = parent["id"]
            logger.debug(
                "Draft delete id=%s tombstoned=%s", resource_id, resource_id in self._tombstones
            )

    def reorder_local(self, ordered_ids: list[str], parent_id: str | None = None) -> None:
        """Rearrange siblings to ``ordered_ids`` and rewrite their order field.

        Only the order field changes; every record keeps its identity and all
        other fields.

        Raises:
            ValidationError: ordered_ids is not a permutation of the siblings.
        """
        with self._lock:
            if parent_id is None:
                schema, siblings = self.schema, self._draft
            else:
                parent = self._find_parent(parent_id)
                schema, siblings = self.schema.child, parent[self.schema.children_key]

            by_id = {r["id"]: r for r in siblings}
            ordered_ids = list(ordered_ids)
            if len(ordered_ids) != len(by_id) or set(ordered_ids) != set(by_id):
                raise ValidationError(
                    f"Reorder must list every {schema.label} exactly once",
                    details={"ordered_ids": "not a permutation of the current items"},
                )

            siblings[:] = [by_id[i] for i in ordered_ids]
            for position, record in enumerate(siblings):
                record[schema.order_field] = position

    def move_local(self, resource_id: str, to_index: int) -> None:
        """Move one record to ``to_index`` among its siblings (drag and drop)."""
        with self._lock:
            _record, parent = self._locate(resource_id)
            siblings = self._draft if parent is None else parent[self.schema.children_key]
            ids = [r["id"] for r in siblings]
            ids.remove(resource_id)
            to_index = max(0, min(int(to_index), len(ids)))
            ids.insert(to_index, resource_id)
            self.reorder_local(ids, None if parent is None else parent["id"])

    # ── Session lifecycle ────────────────────────────────────────────────

    def checkpoint(self) -> tuple:
        """Capture draft + tombstones so a multi-step edit can be rolled back."""
        with self._lock:
            return copy.deepcopy(self._draft), dict(self._tombstones)

    def restore(self, checkpoint: tuple) -> None:
        with self._lock:
            draft, tombstones = checkpoint
            self._draft = copy.deepcopy(draft)
            self._tombstones = dict(tombstones)

    @contextlib.contextmanager
    def transaction(self):
        """Hold the lock for a multi-step edit; any exception rolls it back.

        Other threads see either none or all of the steps.
        """
        with self._lock:
            checkpoint = self.checkpoint()
            try:
                yield self
            except BaseException:
                self.restore(checkpoint)
                raise

    def discard(self) -> None:
        """Drop every local edit: draft := copy of baseline, no tombstones."""
        with self._lock:
            self._draft = copy.deepcopy(self._baseline)
            self._tombstones = {}

    def rebase(self, new_baseline: list[dict]) -> None:
        """Adopt a fresh server snapshot as both baseline and draft.

        Called after save-and-refetch. Any edit not round-tripped through a
        save is lost; callers save first.
        """
        with self._lock:
            self._baseline = copy.deepcopy(list(new_baseline))
            self._draft = copy.deepcopy(self._baseline)
            self._tombstones = {}

    # ── Internals ────────────────────────────────────────────────────────

    def _children(self, record: dict) -> list[dict]:
        if not self.schema.children_key:
            return []
        return record.setdefault(self.schema.children_key, [])

    def _find_in(self, collection: list[dict], resource_id: str) -> dict | None:
        for record in collection:
            if record.get("id") == resource_id:
                return record
            for child in record.get(self.schema.children_key or "", None) or []:
                if child.get("id") == resource_id:
                    return child
        return None

    def _locate(self, resource_id: str) -> tuple[dict, dict | None]:
        """Return (record, parent) from the draft; parent is None at top level."""
        for record in self._draft:
            if record.get("id") == resource_id:
                return record, None
            for child in self._children(record):
                if child.get("id") == resource_id:
                    return child, record
        raise NotFoundError(self.schema.label, resource_id)

    def _find_parent(self, parent_id: str) -> dict:
        for record in self._draft:
            if record.get("id") == parent_id:
                return record
        raise NotFoundError(self.schema.label, parent_id)

    def _level_for_create(self, parent_id: str | None) -> tuple[ResourceSchema, list[dict]]:
        if parent_id is None:
            return self.schema, self._draft
        if self.schema.child is None:
            raise ValidationError(f"{self.schema.label} records have no children")
        parent = self._find_parent(parent_id)
        return self.schema.child, self._children(parent)

    def _validate(
        self,
        schema: ResourceSchema,
        record: dict,
        siblings: list[dict],
        exclude_id: str | None,
    ) -> None:
        errors: dict[str, str] = {}

        for name in schema.required_fields:
            value = record.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors[name] = "required"

        for name, limit in schema.max_lengths.items():
            value = record.get(name)
            if isinstance(value, str) and len(value) > limit:
                errors[name] = f"must be at most {limit} characters"

        for name, allowed in schema.enum_fields.items():
            value = record.get(name)
            if value is not None and value not in allowed:
                errors[name] = f"must be one of {sorted(allowed)}"

        for name in schema.list_fields:
            value = record.get(name)
            if value is not None and not isinstance(value, (list, tuple)):
                errors[name] = "must be a list"

        if errors:
            first = next(iter(errors))
            raise ValidationError(
                f"{schema.label} {first} {errors[first]}", details=errors
            )

        if schema.unique_field:
            value = str(record.get(schema.unique_field) or "").strip().lower()
            for other in siblings:
                if other.get("id") == exclude_id:
                    continue
                if str(other.get(schema.unique_field) or "").strip().lower() == value:
                    raise ValidationError(
                        f'{schema.label} "{record.get(schema.unique_field)}" already exists',
                        details={schema.unique_field: "duplicate"},
                    )
