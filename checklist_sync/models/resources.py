"""
Resource schemas for the draft engine.

The engine works on plain dicts in the store's wire format. A schema tells
the draft manager and the change-set calculator which fields matter:

    - comparable_fields: what makes a persisted record "modified"
    - order_field:       position among siblings (excluded from updates)
    - children_key:      embedded ordered child list (parents only)
    - parent_key:        child FK back to its parent

Usage:
    from checklist_sync.models.resources import get_schema
    schema = get_schema("modules")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Sentinel prefix for ids minted locally and never seen by the store.
LOCAL_ID_PREFIX = "temp-"


def is_local_id(resource_id: str | None) -> bool:
    """True if the id was minted by the draft manager (not server-assigned)."""
    return isinstance(resource_id, str) and resource_id.startswith(LOCAL_ID_PREFIX)


class TestStatus(str, Enum):
    """Execution status of one (test case × tester) result."""

    __test__ = False  # keep pytest from collecting the enum

    PENDING = "Pending"
    PASS = "Pass"
    FAIL = "Fail"
    SKIPPED = "Skipped"


class Priority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


VALID_STATUSES = frozenset(s.value for s in TestStatus)
VALID_PRIORITIES = frozenset(p.value for p in Priority)

# Overlay-able fields of a test result. Identity and denormalised metadata
# always come from the server.
RESULT_EDITABLE_FIELDS = ("status", "notes")
RESULT_OVERLAY_FIELDS = ("status", "notes", "tested_at")


@dataclass(frozen=True)
class ResourceSchema:
    """Describes one level of a hierarchical resource collection."""

    name: str
    label: str
    comparable_fields: tuple[str, ...]
    order_field: str = "order_index"
    required_fields: tuple[str, ...] = ()
    unique_field: str | None = None
    max_lengths: dict[str, int] = field(default_factory=dict)
    list_fields: tuple[str, ...] = ()
    enum_fields: dict[str, frozenset] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)
    children_key: str | None = None
    child: ResourceSchema | None = None
    parent_key: str | None = None
    child_collection: str | None = None

    def normalise(self, record: dict, name: str) -> Any:
        """Return a field value with None/missing list fields folded to []."""
        value = record.get(name)
        if name in self.list_fields and value is None:
            return []
        return value

    def comparable(self, record: dict) -> tuple:
        return tuple(self.normalise(record, f) for f in self.comparable_fields)


TESTCASE_SCHEMA = ResourceSchema(
    name="testcases",
    label="TestCase",
    comparable_fields=("title", "description", "priority"),
    required_fields=("title",),
    max_lengths={"title": 255, "description": 1000},
    enum_fields={"priority": VALID_PRIORITIES},
    defaults={"description": None, "priority": Priority.MEDIUM.value},
    parent_key="module_id",
)

MODULE_SCHEMA = ResourceSchema(
    name="modules",
    label="Module",
    comparable_fields=("name", "description", "icon", "tags"),
    required_fields=("name",),
    unique_field="name",
    max_lengths={"name": 255, "description": 1000},
    list_fields=("tags",),
    defaults={"description": None, "icon": "📦", "tags": []},
    children_key="testcases",
    child=TESTCASE_SCHEMA,
    child_collection="testcases",
)

CHECKLIST_TESTCASE_SCHEMA = ResourceSchema(
    name="checklist_testcases",
    label="ChecklistTestCase",
    comparable_fields=("testcase_title", "testcase_description", "testcase_priority"),
    required_fields=("testcase_title",),
    max_lengths={"testcase_title": 255, "testcase_description": 1000},
    enum_fields={"testcase_priority": VALID_PRIORITIES},
    defaults={"testcase_description": None, "testcase_priority": Priority.MEDIUM.value},
    parent_key="checklist_module_id",
)

CHECKLIST_MODULE_SCHEMA = ResourceSchema(
    name="checklist_modules",
    label="ChecklistModule",
    comparable_fields=("instance_label",),
    required_fields=("module_id",),
    max_lengths={"instance_label": 255},
    defaults={"instance_label": None},
    children_key="testcases",
    child=CHECKLIST_TESTCASE_SCHEMA,
    child_collection="checklist_testcases",
)

SCHEMAS: dict[str, ResourceSchema] = {
    MODULE_SCHEMA.name: MODULE_SCHEMA,
    CHECKLIST_MODULE_SCHEMA.name: CHECKLIST_MODULE_SCHEMA,
}


def get_schema(name: str) -> ResourceSchema:
    """Look up an editable (top-level) schema by collection name."""
    try:
        return SCHEMAS[name]
    except KeyError:
        raise KeyError(
            f"Unknown collection '{name}'. Valid: {sorted(SCHEMAS)}"
        ) from None
