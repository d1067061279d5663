"""
Change-Set Calculator — pure diff of (baseline, draft, tombstones).

Produces the minimal batch of remote operations a save has to send:

    creates   every local-only record (children of new parents reference
              the parent's local id; the orchestrator maps it later)
    deletes   every tombstoned id, children listed before parents
    updates   persisted records whose comparable fields changed
              (the order field is never part of this comparison)
    reorders  one operation per sibling list whose persisted records changed
              relative sequence, or that has a new record placed ahead of
              persisted ones; carries the full draft-ordered list of
              persisted ids

The calculator never mutates its inputs, and two calls on equal inputs
return equal ChangeSets.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from checklist_sync.models.resources import ResourceSchema, is_local_id

logger = logging.getLogger(__name__)

PARENT = "parent"
CHILD = "child"


@dataclass(frozen=True)
class CreateOp:
    level: str
    local_id: str
    parent_id: str | None
    payload: dict

    def to_dict(self) -> dict:
        return {
            "op": "create",
            "level": self.level,
            "local_id": self.local_id,
            "parent_id": self.parent_id,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class UpdateOp:
    level: str
    resource_id: str
    parent_id: str | None
    patch: dict

    def to_dict(self) -> dict:
        return {
            "op": "update",
            "level": self.level,
            "resource_id": self.resource_id,
            "parent_id": self.parent_id,
            "patch": dict(self.patch),
        }


@dataclass(frozen=True)
class DeleteOp:
    level: str
    resource_id: str
    parent_id: str | None

    def to_dict(self) -> dict:
        return {
            "op": "delete",
            "level": self.level,
            "resource_id": self.resource_id,
            "parent_id": self.parent_id,
        }


@dataclass(frozen=True)
class ReorderOp:
    """Batched position update for one sibling list.

    ``positions`` pairs each id with its draft order value so that records
    created in the same batch keep their slots.
    """

    level: str
    parent_id: str | None
    positions: tuple[tuple[str, int], ...]

    @property
    def ordered_ids(self) -> list[str]:
        return [resource_id for resource_id, _ in self.positions]

    def to_dict(self) -> dict:
        return {
            "op": "reorder",
            "level": self.level,
            "parent_id": self.parent_id,
            "ordered_ids": self.ordered_ids,
        }


@dataclass(frozen=True)
class ChangeSet:
    creates: tuple[CreateOp, ...] = ()
    updates: tuple[UpdateOp, ...] = ()
    deletes: tuple[DeleteOp, ...] = ()
    reorders: tuple[ReorderOp, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes or self.reorders)

    @property
    def change_count(self) -> int:
        """Number of user-visible changes (each reorder counts once)."""
        return len(self.creates) + len(self.updates) + len(self.deletes) + len(self.reorders)

    def at_level(self, level: str) -> ChangeSet:
        return ChangeSet(
            creates=tuple(op for op in self.creates if op.level == level),
            updates=tuple(op for op in self.updates if op.level == level),
            deletes=tuple(op for op in self.deletes if op.level == level),
            reorders=tuple(op for op in self.reorders if op.level == level),
        )

    def to_dict(self) -> dict:
        return {
            "creates": [op.to_dict() for op in self.creates],
            "updates": [op.to_dict() for op in self.updates],
            "deletes": [op.to_dict() for op in self.deletes],
            "reorders": [op.to_dict() for op in self.reorders],
            "change_count": self.change_count,
        }


def _payload(schema: ResourceSchema, record: dict, parent_id: str | None) -> dict:
    payload = {name: schema.normalise(record, name) for name in schema.comparable_fields}
    for name in schema.required_fields:
        payload.setdefault(name, record.get(name))
    payload[schema.order_field] = record.get(schema.order_field, 0)
    if parent_id is not None and schema.parent_key:
        payload[schema.parent_key] = parent_id
    return payload


def _patch(schema: ResourceSchema, record: dict) -> dict:
    return {name: schema.normalise(record, name) for name in schema.comparable_fields}


def _children(schema: ResourceSchema, record: dict) -> list[dict]:
    if not schema.children_key:
        return []
    return record.get(schema.children_key) or []


def _reorder_for(
    schema: ResourceSchema,
    level: str,
    parent_id: str | None,
    draft_siblings: list[dict],
    baseline_by_id: dict[str, dict],
) -> ReorderOp | None:
    persisted = [
        r for r in draft_siblings
        if not is_local_id(r.get("id")) and r.get("id") in baseline_by_id
    ]
    draft_ids = [r["id"] for r in persisted]
    rank = {resource_id: i for i, resource_id in enumerate(baseline_by_id)}
    baseline_ids = sorted(
        draft_ids,
        key=lambda i: (baseline_by_id[i].get(schema.order_field) or 0, rank[i]),
    )
    # Gaps in the stored order values are not a move; only sequence counts.
    moved = draft_ids != baseline_ids
    if not moved and persisted:
        last_persisted = max(
            i for i, r in enumerate(draft_siblings) if r.get("id") in baseline_by_id
        )
        # A new record placed ahead of persisted ones shifts their positions.
        moved = any(is_local_id(r.get("id")) for r in draft_siblings[:last_persisted])
    if not moved:
        return None
    return ReorderOp(
        level=level,
        parent_id=parent_id,
        positions=tuple((r["id"], r.get(schema.order_field)) for r in persisted),
    )


def calculate_change_set(
    schema: ResourceSchema,
    baseline: list[dict],
    draft: list[dict],
    tombstones: Iterable[str],
) -> ChangeSet:
    """Diff the draft against its baseline.

    Args:
        schema: Top-level schema; ``schema.child`` describes embedded children.
        baseline: Last server snapshot.
        draft: Working copy.
        tombstones: Persisted ids deleted locally (a subset of baseline ids;
            unknown ids are ignored).

    Returns:
        A frozen ChangeSet.
    """
    child_schema = schema.child
    baseline_parents = {r["id"]: r for r in baseline}
    baseline_children: dict[str, dict] = {}
    for parent in baseline:
        for child in _children(schema, parent):
            baseline_children[child["id"]] = child

    # Deletes: children first, each level in baseline order.
    tombstone_set = set(tombstones)
    child_deletes = []
    parent_deletes = []
    for parent in baseline:
        for child in _children(schema, parent):
            if child["id"] in tombstone_set:
                child_deletes.append(DeleteOp(CHILD, child["id"], parent["id"]))
        if parent["id"] in tombstone_set:
            parent_deletes.append(DeleteOp(PARENT, parent["id"], None))
    unknown = tombstone_set - set(baseline_parents) - set(baseline_children)
    if unknown:
        logger.debug("Ignoring tombstones not present in baseline: %s", sorted(unknown))

    parent_creates = []
    child_creates = []
    parent_updates = []
    child_updates = []
    parent_reorders = []
    child_reorders = []

    for record in draft:
        record_id = record.get("id")
        if is_local_id(record_id):
            parent_creates.append(
                CreateOp(PARENT, record_id, None, _payload(schema, record, None))
            )
            for child in _children(schema, record):
                child_creates.append(
                    CreateOp(CHILD, child["id"], record_id, _payload(child_schema, child, record_id))
                )
            continue

        original = baseline_parents.get(record_id)
        if original is None:
            continue

        if schema.comparable(record) != schema.comparable(original):
            parent_updates.append(
                UpdateOp(PARENT, record_id, None, _patch(schema, record))
            )

        if child_schema is None:
            continue

        for child in _children(schema, record):
            child_id = child.get("id")
            if is_local_id(child_id):
                child_creates.append(
                    CreateOp(CHILD, child_id, record_id, _payload(child_schema, child, record_id))
                )
                continue
            child_original = baseline_children.get(child_id)
            if child_original is None:
                continue
            if child_schema.comparable(child) != child_schema.comparable(child_original):
                child_updates.append(
                    UpdateOp(CHILD, child_id, record_id, _patch(child_schema, child))
                )

        reorder = _reorder_for(
            child_schema, CHILD, record_id, _children(schema, record), baseline_children
        )
        if reorder is not None:
            child_reorders.append(reorder)

    reorder = _reorder_for(schema, PARENT, None, draft, baseline_parents)
    if reorder is not None:
        parent_reorders.append(reorder)

    return ChangeSet(
        creates=tuple(parent_creates + child_creates),
        updates=tuple(parent_updates + child_updates),
        deletes=tuple(child_deletes + parent_deletes),
        reorders=tuple(parent_reorders + child_reorders),
    )
