"""
Status aggregation for multi-tester test execution.

Each test case has one result per assigned tester. The checklist shows one
overall status per test case, derived with a fixed precedence:

    Fail > Skipped > Pass > Pending

A test case with no tester results is Pending by convention.

The view builders here are pure: callers recompute them from the merged
results on every change rather than patching a cached copy.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from checklist_sync.models.resources import TestStatus

STATUS_PRECEDENCE: tuple[TestStatus, ...] = (
    TestStatus.FAIL,
    TestStatus.SKIPPED,
    TestStatus.PASS,
    TestStatus.PENDING,
)


def aggregate_status(statuses: Iterable[str]) -> TestStatus:
    """Reduce per-tester statuses to one overall status.

    Unknown values are ignored; an empty (or all-unknown) input yields
    Pending.
    """
    seen = set()
    for status in statuses:
        try:
            seen.add(TestStatus(status))
        except ValueError:
            continue
    for candidate in STATUS_PRECEDENCE:
        if candidate in seen:
            return candidate
    return TestStatus.PENDING


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_stats(statuses: Iterable[str]) -> dict:
    """Count statuses and derive progress (% of non-pending entries)."""
    counts = {s: 0 for s in TestStatus}
    total = 0
    for status in statuses:
        total += 1
        try:
            counts[TestStatus(status)] += 1
        except ValueError:
            counts[TestStatus.PENDING] += 1

    pending = counts[TestStatus.PENDING]
    progress = _round_half_up((total - pending) / total * 100) if total else 0
    return {
        "total": total,
        "pending": pending,
        "passed": counts[TestStatus.PASS],
        "failed": counts[TestStatus.FAIL],
        "skipped": counts[TestStatus.SKIPPED],
        "progress": progress,
    }


def _sort_key(result: dict) -> tuple:
    return (
        result.get("module_order", 0) or 0,
        result.get("testcase_order", 0) or 0,
    )


def build_checklist_view(results: Iterable[dict]) -> dict:
    """Group flat test results into modules → test cases → tester results.

    Input results carry ``checklist_module_id``, ``testcase_id`` and the
    denormalised display fields. Grouping keeps the store's module/test case
    order (``module_order`` / ``testcase_order`` when present, otherwise
    first-seen order).

    Returns:
        {
          "modules": [{checklist_module_id, module_name, testcases: [
              {testcase_id, title, priority, results, overall_status}], stats}],
          "stats": {...}   # computed over the overall status of every test case
        }
    """
    modules: dict[str, dict] = {}
    ordered = sorted(enumerate(results), key=lambda pair: (_sort_key(pair[1]), pair[0]))

    for _, result in ordered:
        module_id = result.get("checklist_module_id")
        module = modules.get(module_id)
        if module is None:
            module = {
                "checklist_module_id": module_id,
                "module_name": result.get("module_name"),
                "instance_label": result.get("instance_label"),
                "_testcases": {},
            }
            modules[module_id] = module

        testcase_id = result.get("testcase_id")
        testcase = module["_testcases"].get(testcase_id)
        if testcase is None:
            testcase = {
                "testcase_id": testcase_id,
                "title": result.get("testcase_title"),
                "priority": result.get("testcase_priority"),
                "results": [],
            }
            module["_testcases"][testcase_id] = testcase
        testcase["results"].append(dict(result))

    view_modules = []
    all_overall = []
    for module in modules.values():
        testcases = list(module.pop("_testcases").values())
        overall = []
        for testcase in testcases:
            status = aggregate_status(r.get("status") for r in testcase["results"])
            testcase["overall_status"] = status.value
            overall.append(status.value)
        module["testcases"] = testcases
        module["stats"] = compute_stats(overall)
        all_overall.extend(overall)
        view_modules.append(module)

    return {"modules": view_modules, "stats": compute_stats(all_overall)}
