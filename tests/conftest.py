"""
Shared pytest fixtures for the checklist sync test suite.

Provides:
    - store: In-memory resource store (fake gateway) recording every call
    - clock: Manually advanced monotonic clock for the live merger
    - app: Flask application (session-scoped) wired to the fake store
    - client: Flask test client (function-scoped); closes sessions after
"""

import copy
import itertools

import pytest

from checklist_sync import create_app
from checklist_sync.integrations.store_gateway import StoreResult

# collection → (root key in FakeStore.data, child FK name or None)
_LAYOUT = {
    "modules": ("modules", None),
    "testcases": ("modules", "module_id"),
    "checklist_modules": ("checklist_modules", None),
    "checklist_testcases": ("checklist_modules", "checklist_module_id"),
    "test_results": ("test_results", None),
}


class FakeCollection:
    """Collection client over FakeStore data (same contract as CollectionClient)."""

    def __init__(self, store, name, scope):
        self.store = store
        self.name = name
        self.scope = scope
        self.root, self.fk = _LAYOUT[name]

    # ── helpers ──────────────────────────────────────────────────────────

    def _records(self):
        return self.store.data[self.root]

    def _find(self, resource_id):
        """Return (record, siblings) or (None, None)."""
        for record in self._records():
            if self.fk is None:
                if record["id"] == resource_id:
                    return record, self._records()
            else:
                for child in record.get("testcases", []):
                    if child["id"] == resource_id:
                        return child, record["testcases"]
        return None, None

    def _call(self, method, *args):
        self.store.calls.append((self.name, method) + args)
        return self.store.injected_failure(self.name, method, args[0] if args else None)

    # ── contract ─────────────────────────────────────────────────────────

    def list(self, parent_id=None):
        failure = self._call("list")
        if failure:
            return failure
        records = copy.deepcopy(self._records())
        records.sort(key=lambda r: r.get("order_index", 0))
        for record in records:
            if "testcases" in record:
                record["testcases"].sort(key=lambda r: r.get("order_index", 0))
        return StoreResult.success(records)

    def create(self, payload, parent_id=None):
        failure = self._call("create", parent_id or payload.get("name") or payload.get("title"))
        if failure:
            return failure
        record = {k: v for k, v in payload.items() if k != "project_id"}
        record["id"] = self.store.next_id(self.name)
        if self.fk is None:
            if self.root != "test_results":
                record.setdefault("testcases", [])
            self._records().append(record)
        else:
            parent = next((r for r in self._records() if r["id"] == parent_id), None)
            if parent is None:
                return StoreResult.failure("parent not found", status_code=404)
            record[self.fk] = parent_id
            parent.setdefault("testcases", []).append(record)
        return StoreResult.success(copy.deepcopy(record), status_code=201)

    def update(self, resource_id, patch):
        failure = self._call("update", resource_id, dict(patch))
        if failure:
            return failure
        record, _ = self._find(resource_id)
        if record is None:
            return StoreResult.failure("not found", status_code=404)
        record.update(patch)
        return StoreResult.success(copy.deepcopy(record))

    def delete(self, resource_id):
        failure = self._call("delete", resource_id)
        if failure:
            return failure
        record, siblings = self._find(resource_id)
        if record is None:
            return StoreResult.failure("not found", status_code=404)
        siblings.remove(record)
        return StoreResult.success({"id": resource_id})

    def reorder(self, positions, parent_id=None):
        failure = self._call("reorder", parent_id, list(positions))
        if failure:
            return failure
        for resource_id, order in positions:
            record, _ = self._find(resource_id)
            if record is not None:
                record["order_index"] = order
        return StoreResult.success({"updated": len(positions)})


class FakeStore:
    """Stands in for StoreGateway: ``collection(name, **scope)`` → FakeCollection."""

    base_url = "fake://store"

    def __init__(self):
        self.reset()

    def reset(self):
        self.data = {"modules": [], "checklist_modules": [], "test_results": []}
        self.calls = []
        self.failures = []
        self._ids = itertools.count(1)

    def collection(self, name, **scope):
        return FakeCollection(self, name, scope)

    def next_id(self, name):
        return f"{name[:3]}-{next(self._ids)}"

    def fail(self, collection, method, key=None, *, status_code=500, error="boom", times=None):
        """Make matching calls fail (``key`` matches the first call argument)."""
        self.failures.append({
            "collection": collection, "method": method, "key": key,
            "status_code": status_code, "error": error, "times": times,
        })

    def injected_failure(self, collection, method, key):
        for rule in self.failures:
            if rule["collection"] != collection or rule["method"] != method:
                continue
            if rule["key"] is not None and rule["key"] != key:
                continue
            if rule["times"] is not None:
                if rule["times"] <= 0:
                    continue
                rule["times"] -= 1
            return StoreResult.failure(rule["error"], status_code=rule["status_code"])
        return None

    def calls_for(self, collection, method=None):
        return [c for c in self.calls if c[0] == collection and (method is None or c[1] == method)]

    # ── seed helpers ─────────────────────────────────────────────────────

    def seed_modules(self, layout):
        """layout: [(name, [testcase titles])] → list of module dicts stored."""
        for m_index, (name, titles) in enumerate(layout):
            module_id = self.next_id("modules")
            self.data["modules"].append({
                "id": module_id,
                "name": name,
                "description": None,
                "icon": "📦",
                "tags": [],
                "order_index": m_index,
                "testcases": [
                    {
                        "id": self.next_id("testcases"),
                        "module_id": module_id,
                        "title": title,
                        "description": None,
                        "priority": "Medium",
                        "order_index": t_index,
                    }
                    for t_index, title in enumerate(titles)
                ],
            })
        return copy.deepcopy(self.data["modules"])

    def seed_results(self, rows):
        """rows: dicts with at least id, testcase_id, tester_id, status."""
        for row in rows:
            self.data["test_results"].append({
                "checklist_module_id": "cm-1",
                "module_name": "Login",
                "testcase_title": row["testcase_id"],
                "testcase_priority": "Medium",
                "notes": None,
                "tested_at": None,
                **row,
            })
        return copy.deepcopy(self.data["test_results"])


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def _shared_store():
    return FakeStore()


@pytest.fixture(scope="session")
def app(_shared_store):
    """Create the Flask application once per test session."""
    return create_app("testing", gateway=_shared_store)


@pytest.fixture()
def store(_shared_store):
    """Fresh, empty fake store for each test."""
    _shared_store.reset()
    return _shared_store


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def client(app, store):
    """Flask test client; every session opened by the test is closed after."""
    yield app.test_client()
    app.extensions["edit_sessions"].close_all()
    app.extensions["live_sessions"].close_all()
