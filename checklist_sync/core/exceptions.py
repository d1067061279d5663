"""
Engine-wide exception hierarchy.

Why this module exists:
  The draft, batch and live-sync services all fail in the same small set of
  ways. Defining the canonical types once lets every blueprint register one
  handler per type and keeps HTTP status codes consistent.

Usage:
    from checklist_sync.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Module", resource_id="temp-module-3")
    raise ValidationError("Module name is required", details={"name": "required"})
"""


class NotFoundError(Exception):
    """Raised when a resource is absent from the draft or vanished remotely.

    Args:
        resource: Human-readable entity name (e.g. "Module", "TestResult").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when a local mutation violates a business rule.

    Checked against the draft before any network call; never sent to the
    store. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a duplicate-value collision or a conflicting session state.

    Maps to HTTP 409.

    Args:
        resource: Entity name.
        field: The field that collided.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} conflicts"
        super().__init__(msg)


class NetworkError(Exception):
    """Raised when the resource store cannot be reached.

    Maps to HTTP 503. ``retryable`` is always True for transport failures.
    """

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RefetchError(NetworkError):
    """Raised when re-baselining after a save could not fetch fresh state.

    The previous baseline/draft pair is left untouched; the caller may retry
    the load without losing anything.
    """


class PartialBatchFailure(Exception):
    """Aggregate of per-item failures from one save batch.

    Args:
        failures: List of BatchFailure records (operation, resource id, reason).
        total: Number of operations attempted in the batch.
    """

    def __init__(self, failures: list, total: int) -> None:
        self.failures = list(failures)
        self.total = total
        reasons = ", ".join(f.describe() for f in self.failures[:5])
        if len(self.failures) > 5:
            reasons += f", … (+{len(self.failures) - 5} more)"
        super().__init__(
            f"{len(self.failures)} of {total} operations failed: {reasons}"
        )

    def to_dict(self) -> dict:
        return {
            "failed": len(self.failures),
            "total": self.total,
            "failures": [f.to_dict() for f in self.failures],
        }
