"""
CSV module import into a module-library draft.

Columns:
    module_name, module_description, module_icon, module_tags,
    testcase_title, testcase_description, testcase_priority

Rows are grouped by module name (case-insensitive). A module already in
the draft keeps its id, gets description/icon/tags updated and has its
test cases replaced; unknown modules are created. Nothing reaches the
store until the edit session is saved.
"""

import csv
import io
import logging

from checklist_sync.core.exceptions import ValidationError
from checklist_sync.models.resources import MODULE_SCHEMA, VALID_PRIORITIES, Priority
from checklist_sync.services.draft_state import DraftStateManager

logger = logging.getLogger(__name__)

CSV_TEMPLATE_HEADER = [
    "module_name",
    "module_description",
    "module_icon",
    "module_tags",
    "testcase_title",
    "testcase_description",
    "testcase_priority",
]

_TAG_SEPARATORS = (";", "|")


def generate_csv_template() -> str:
    """Generate a CSV template string for module import."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_TEMPLATE_HEADER)
    writer.writerow(["Login", "Sign-in flows", "🔐", "auth;smoke", "Valid password", "", "High"])
    writer.writerow(["Login", "", "", "", "Locked account", "Shows lockout banner", "Medium"])
    return output.getvalue()


def _split_tags(raw: str) -> list[str]:
    for sep in _TAG_SEPARATORS:
        raw = raw.replace(sep, ",")
    return [t.strip() for t in raw.split(",") if t.strip()]


def parse_csv(file_content: str | bytes) -> list[dict]:
    """Parse CSV content into modules with their test cases.

    Returns:
        [{"name", "description", "icon", "tags", "testcases": [
            {"title", "description", "priority"}]}] in first-seen order.

    Raises:
        ValidationError: missing header or a row without module/test case.
    """
    if isinstance(file_content, bytes):
        file_content = file_content.decode("utf-8-sig")  # Handle BOM

    reader = csv.DictReader(io.StringIO(file_content))
    fieldnames = [f.strip().lower() for f in (reader.fieldnames or [])]
    missing = [c for c in ("module_name", "testcase_title") if c not in fieldnames]
    if missing:
        raise ValidationError(
            f"CSV must have columns: {', '.join(missing)}",
            details={c: "missing column" for c in missing},
        )

    modules: dict[str, dict] = {}
    errors: dict[str, str] = {}
    for row_num, raw_row in enumerate(reader, start=2):  # row 1 = header
        row = {
            (k or "").strip().lower(): (v or "").strip()
            for k, v in raw_row.items()
            if k is not None
        }
        name = row.get("module_name", "")
        title = row.get("testcase_title", "")
        if not name and not title:
            continue
        if not name:
            errors[f"row {row_num}"] = "module_name is required"
            continue

        key = name.lower()
        module = modules.get(key)
        if module is None:
            module = {
                "name": name,
                "description": row.get("module_description") or None,
                "icon": row.get("module_icon") or None,
                "tags": _split_tags(row.get("module_tags", "")),
                "testcases": [],
            }
            modules[key] = module
        else:
            # Later rows may fill in module fields left blank earlier.
            if not module["description"] and row.get("module_description"):
                module["description"] = row["module_description"]
            if not module["icon"] and row.get("module_icon"):
                module["icon"] = row["module_icon"]
            for tag in _split_tags(row.get("module_tags", "")):
                if tag not in module["tags"]:
                    module["tags"].append(tag)

        if not title:
            continue
        priority = row.get("testcase_priority") or Priority.MEDIUM.value
        if priority not in VALID_PRIORITIES:
            logger.warning(
                "Row %d: invalid priority '%s' for '%s'; using Medium", row_num, priority, title
            )
            priority = Priority.MEDIUM.value
        module["testcases"].append({
            "title": title,
            "description": row.get("testcase_description") or None,
            "priority": priority,
        })

    if errors:
        raise ValidationError(f"{len(errors)} invalid row(s) in CSV", details=errors)
    return list(modules.values())


def _by_name(draft: DraftStateManager) -> dict[str, dict]:
    return {str(m.get("name") or "").strip().lower(): m for m in draft.get_draft()}


def _require_module_draft(draft: DraftStateManager) -> None:
    if draft.schema is not MODULE_SCHEMA:
        raise ValidationError(
            f"CSV import is only supported for '{MODULE_SCHEMA.name}', "
            f"not '{draft.schema.name}'"
        )


def preview_import(draft: DraftStateManager, modules: list[dict]) -> dict:
    """Summarise what apply_import would do, without touching the draft."""
    _require_module_draft(draft)
    existing = _by_name(draft)
    added, updated = [], []
    testcases_added = testcases_replaced = 0
    for module in modules:
        current = existing.get(module["name"].strip().lower())
        testcases_added += len(module["testcases"])
        if current is None:
            added.append(module["name"])
        else:
            updated.append(current["name"])
            testcases_replaced += len(current.get("testcases") or [])
    return {
        "modules_added": added,
        "modules_updated": updated,
        "testcases_added": testcases_added,
        "testcases_replaced": testcases_replaced,
    }


def apply_import(draft: DraftStateManager, modules: list[dict]) -> dict:
    """Apply parsed modules to the draft; returns the preview summary.

    All-or-nothing: a validation failure on any row rolls the draft back.
    """
    with draft.transaction():
        summary = preview_import(draft, modules)
        _apply(draft, modules)

    logger.info(
        "CSV import applied: %d added, %d updated, %d test cases",
        len(summary["modules_added"]),
        len(summary["modules_updated"]),
        summary["testcases_added"],
        extra={"collection": draft.schema.name},
    )
    return summary


def _apply(draft: DraftStateManager, modules: list[dict]) -> None:
    existing = _by_name(draft)
    for module in modules:
        current = existing.get(module["name"].strip().lower())
        if current is None:
            payload = {k: v for k, v in module.items() if k != "testcases" and v is not None}
            module_id = draft.create_local(payload)
        else:
            module_id = current["id"]
            patch = {"tags": module["tags"]} if module["tags"] else {}
            if module["description"]:
                patch["description"] = module["description"]
            if module["icon"]:
                patch["icon"] = module["icon"]
            if patch:
                draft.update_local(module_id, patch)
            for testcase in current.get("testcases") or []:
                draft.delete_local(testcase["id"])

        for testcase in module["testcases"]:
            draft.create_local(testcase, parent_id=module_id)
