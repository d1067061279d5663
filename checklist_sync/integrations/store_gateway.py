"""
Resource Store Gateway — every call to the checklist backend goes through here.

Direct `requests` calls in services or blueprints are FORBIDDEN.

  - Bearer token injected from STORE_API_TOKEN (optional)
  - Retry: transport errors and 5xx, max 2 retries with backoff (0.5 s → 2 s)
  - Timeout: 10 s (configurable)
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause per collection
  - Never raises for remote failures: callers get a StoreResult and check .ok

Wire envelope (both directions are JSON):
    {"success": true,  "data": {...} | [...]}
    {"success": false, "error": "Human readable message"}

Testability: pass a mock `session` to StoreGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from checklist_sync.core.exceptions import (
    ConflictError,
    NetworkError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [0.5, 2]

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 10

# Error kinds carried by StoreResult.error_kind
KIND_NOT_FOUND = "not_found"
KIND_CONFLICT = "conflict"
KIND_VALIDATION = "validation"
KIND_NETWORK = "network"
KIND_SERVER = "server"


def _kind_for_status(status_code: int | None) -> str:
    if status_code is None:
        return KIND_NETWORK
    if status_code == 404:
        return KIND_NOT_FOUND
    if status_code == 409:
        return KIND_CONFLICT
    if status_code in (400, 422):
        return KIND_VALIDATION
    return KIND_SERVER


class StoreResult:
    """Structured return value from every gateway call.

    Attributes:
        ok:           True if the call succeeded (HTTP 2xx and success envelope).
        status_code:  HTTP status code (None on transport failure).
        data:         Unwrapped ``data`` of the envelope, else None.
        error:        Human-readable error message or None.
        error_kind:   One of not_found / conflict / validation / network / server.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: Any,
        error: str | None,
        duration_ms: int = 0,
        error_kind: str | None = None,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.error_kind = error_kind if not ok else None
        if not ok and self.error_kind is None:
            self.error_kind = _kind_for_status(status_code)

    @classmethod
    def success(cls, data: Any = None, status_code: int = 200) -> StoreResult:
        return cls(ok=True, status_code=status_code, data=data, error=None)

    @classmethod
    def failure(
        cls, error: str, status_code: int | None = None, error_kind: str | None = None
    ) -> StoreResult:
        return cls(
            ok=False, status_code=status_code, data=None, error=error, error_kind=error_kind
        )

    def to_exception(self, resource: str = "Resource", resource_id: str | None = None) -> Exception:
        """Map a failed result onto the platform exception hierarchy."""
        if self.error_kind == KIND_NOT_FOUND:
            return NotFoundError(resource, resource_id)
        if self.error_kind == KIND_CONFLICT:
            return ConflictError(resource, "id", resource_id)
        if self.error_kind == KIND_VALIDATION:
            return ValidationError(self.error or f"{resource} rejected by store")
        return NetworkError(self.error or "Resource store unavailable", self.status_code)

    def to_log_dict(self) -> dict:
        return {
            "http_status_code": self.status_code,
            "error_message": self.error,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
            "sync_status": "success" if self.ok else "error",
        }

    def __repr__(self) -> str:
        if self.ok:
            return f"<StoreResult ok status={self.status_code}>"
        return f"<StoreResult error kind={self.error_kind} status={self.status_code} error={self.error!r}>"


@dataclass(frozen=True)
class CollectionRoutes:
    """URL templates for one store collection.

    Templates may reference ``{id}``, ``{parent_id}`` and any scope key
    passed to StoreGateway.collection() (e.g. ``{project_id}``).
    """

    list_path: str
    create_path: str
    item_path: str
    reorder_path: str | None = None
    reorder_key: str = "items"
    reorder_method: str = "PUT"
    update_method: str = "PUT"


ROUTES: dict[str, CollectionRoutes] = {
    "modules": CollectionRoutes(
        list_path="/api/modules",
        create_path="/api/modules",
        item_path="/api/modules/{id}",
        reorder_path="/api/modules/reorder",
        reorder_key="modules",
    ),
    "testcases": CollectionRoutes(
        list_path="/api/modules/{parent_id}/testcases",
        create_path="/api/modules/{parent_id}/testcases",
        item_path="/api/testcases/{id}",
        reorder_path="/api/testcases/reorder",
        reorder_key="testcases",
    ),
    "checklist_modules": CollectionRoutes(
        list_path="/api/checklists/{project_id}",
        create_path="/api/checklists/modules",
        item_path="/api/checklists/modules/{id}",
        reorder_path="/api/projects/{project_id}/checklist/reorder",
        reorder_key="modules",
        reorder_method="POST",
    ),
    "checklist_testcases": CollectionRoutes(
        list_path="/api/checklists/modules/{parent_id}/testcases",
        create_path="/api/checklists/modules/{parent_id}/testcases",
        item_path="/api/projects/{project_id}/checklist/testcases/{id}",
        reorder_path="/api/projects/{project_id}/checklist/modules/{parent_id}/testcases/reorder",
        reorder_key="testcases",
        reorder_method="POST",
    ),
    "test_results": CollectionRoutes(
        list_path="/api/projects/{project_id}/checklist/results",
        create_path="/api/projects/{project_id}/checklist/results",
        item_path="/api/projects/{project_id}/checklist/results/{id}",
    ),
}


class StoreGateway:
    """Checklist resource store REST gateway.

    One instance per application (kept in ``app.extensions``). Thread-safe:
    the batch orchestrator dispatches items of one phase concurrently.

    Usage:
        gateway = StoreGateway("https://store.example", token="…")
        modules = gateway.collection("modules")
        result = modules.list()
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        retry_max: int = _RETRY_MAX,
        backoff: list[float] | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.retry_max = retry_max
        self.backoff = list(_RETRY_BACKOFF_SECONDS if backoff is None else backoff)
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session
        # Circuit breaker: key → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[str, dict] = {}
        self._cb_lock = threading.Lock()

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def collection(self, name: str, **scope: Any) -> CollectionClient:
        """Return a client bound to one collection and scope (e.g. project_id)."""
        try:
            routes = ROUTES[name]
        except KeyError:
            raise KeyError(f"Unknown store collection '{name}'") from None
        return CollectionClient(self, name, routes, scope)

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _ensure_cb_entry(self, key: str) -> dict:
        if key not in self._cb_state:
            self._cb_state[key] = {"failures": [], "open_until": None}
        return self._cb_state[key]

    def _circuit_closed(self, key: str) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        with self._cb_lock:
            state = self._ensure_cb_entry(key)
            now = datetime.now(timezone.utc)

            if state["open_until"] and now < state["open_until"]:
                logger.warning("Circuit open for collection=%s until %s", key, state["open_until"])
                return False

            window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
            state["failures"] = [f for f in state["failures"] if f >= window_start]

            if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
                state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
                logger.error(
                    "Circuit opened for collection=%s: %d failures in %ds window",
                    key,
                    len(state["failures"]),
                    _CB_WINDOW_SECONDS,
                )
                return False
            return True

    def _record_failure(self, key: str) -> None:
        with self._cb_lock:
            self._ensure_cb_entry(key)["failures"].append(datetime.now(timezone.utc))

    def _record_success(self, key: str) -> None:
        """On success, reset failure history and close the circuit."""
        with self._cb_lock:
            state = self._ensure_cb_entry(key)
            state["failures"].clear()
            state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def _parse_body(resp: requests.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def request(
        self,
        method: str,
        path: str,
        *,
        key: str = "default",
        json_body: dict | list | None = None,
        params: dict | None = None,
    ) -> StoreResult:
        """Execute a store request with retries and unwrap the envelope.

        Retries transport errors and 5xx responses; 4xx responses are final.

        Returns:
            StoreResult — always returns (never raises). Callers check .ok.
        """
        if not self._circuit_closed(key):
            return StoreResult.failure(
                "Circuit breaker is open — store calls temporarily suspended",
                error_kind=KIND_NETWORK,
            )

        url = f"{self.base_url}{path}"
        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(self.retry_max + 1):
            kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": self.timeout}
            if json_body is not None:
                kwargs["json"] = json_body
            if params:
                kwargs["params"] = params
            try:
                t0 = time.perf_counter()
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code
                body = self._parse_body(resp)
                envelope = body if isinstance(body, dict) else {}

                if resp.ok and envelope.get("success", True) is not False:
                    self._record_success(key)
                    data = envelope.get("data", body) if "success" in envelope else body
                    return StoreResult(
                        ok=True,
                        status_code=resp.status_code,
                        data=data,
                        error=None,
                        duration_ms=duration_ms,
                    )

                last_error = envelope.get("error") or f"HTTP {resp.status_code}: {resp.text[:500]}"
                if resp.ok or resp.status_code < 500:
                    # Business rejection: final, and not a sign of a sick store.
                    logger.info(
                        "Store rejected %s %s status=%d error=%s",
                        method, path, resp.status_code, last_error,
                    )
                    return StoreResult(
                        ok=False,
                        status_code=resp.status_code,
                        data=None,
                        error=last_error,
                        duration_ms=duration_ms,
                        error_kind=KIND_VALIDATION if resp.ok else None,
                    )

                self._record_failure(key)
                logger.warning(
                    "Store request failed attempt=%d/%d status=%d %s %s",
                    attempt + 1, self.retry_max + 1, resp.status_code, method, path,
                )

            except requests.Timeout:
                last_status = None
                last_error = f"Request timed out after {self.timeout}s"
                self._record_failure(key)
                logger.warning(
                    "Store request timed out attempt=%d/%d %s %s",
                    attempt + 1, self.retry_max + 1, method, path,
                )

            except requests.RequestException as exc:
                last_status = None
                last_error = str(exc)[:500]
                self._record_failure(key)
                logger.warning(
                    "Store network error attempt=%d/%d %s %s error=%s",
                    attempt + 1, self.retry_max + 1, method, path, last_error,
                )

            if attempt < self.retry_max and self.backoff:
                sleep_s = self.backoff[min(attempt, len(self.backoff) - 1)]
                if sleep_s:
                    logger.info("Retrying store request in %ss (attempt %d)", sleep_s, attempt + 2)
                    time.sleep(sleep_s)

        return StoreResult(
            ok=False,
            status_code=last_status,
            data=None,
            error=last_error,
            duration_ms=duration_ms,
        )


class CollectionClient:
    """Resource Store Client for one named collection.

    Contract (every method returns a StoreResult and never raises):
        list(parent_id=None)               full snapshot
        create(payload, parent_id=None)    data = created record incl. server id
        update(resource_id, patch)         data = updated record
        delete(resource_id)
        reorder(positions, parent_id=None) positions = [(id, order_index), ...]
    """

    def __init__(
        self, gateway: StoreGateway, name: str, routes: CollectionRoutes, scope: dict
    ) -> None:
        self.gateway = gateway
        self.name = name
        self.routes = routes
        self.scope = dict(scope)

    def _path(self, template: str, **values: Any) -> str:
        return template.format(**{**self.scope, **values})

    def list(self, parent_id: str | None = None) -> StoreResult:
        result = self.gateway.request(
            "GET", self._path(self.routes.list_path, parent_id=parent_id), key=self.name
        )
        if result.ok and isinstance(result.data, dict):
            # Collection endpoints may wrap the list ({"modules": [...]}).
            for value in result.data.values():
                if isinstance(value, list):
                    result.data = value
                    break
        if result.ok and result.data is None:
            result.data = []
        return result

    def create(self, payload: dict, parent_id: str | None = None) -> StoreResult:
        body = {**{k: v for k, v in self.scope.items()}, **payload}
        return self.gateway.request(
            "POST",
            self._path(self.routes.create_path, parent_id=parent_id),
            key=self.name,
            json_body=body,
        )

    def update(self, resource_id: str, patch: dict) -> StoreResult:
        return self.gateway.request(
            self.routes.update_method,
            self._path(self.routes.item_path, id=resource_id),
            key=self.name,
            json_body=patch,
        )

    def delete(self, resource_id: str) -> StoreResult:
        return self.gateway.request(
            "DELETE", self._path(self.routes.item_path, id=resource_id), key=self.name
        )

    def reorder(self, positions, parent_id: str | None = None) -> StoreResult:
        if not self.routes.reorder_path:
            return StoreResult.failure(
                f"Collection '{self.name}' does not support reordering",
                error_kind=KIND_VALIDATION,
            )
        items = [{"id": rid, "order_index": order} for rid, order in positions]
        return self.gateway.request(
            self.routes.reorder_method,
            self._path(self.routes.reorder_path, parent_id=parent_id),
            key=self.name,
            json_body={self.routes.reorder_key: items},
        )
