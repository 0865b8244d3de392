"""
Platform-wide exception hierarchy.

Services raise these types; the planning blueprint registers one handler per
type so every endpoint answers with the same status code for the same kind
of failure.

Recovery policy:
  - NotFoundError and HierarchyViolationError are recovered inside sync and
    commit runs (logged or collected per item, the run continues).
  - WriteConflictError is collected per item inside a commit run.
  - StoreUnavailableError aborts the whole run; the caller may retry, the
    reconciliation is idempotent.
  - BaselineLockedError rejects a single sandbox mutation.

Usage:
    from planbridge.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="PlanItem", resource_id=item_id)
    raise ValidationError("name is required", details={"name": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced sandbox item or governance record does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "PlanItem", "Milestone").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class HierarchyViolationError(ValidationError):
    """Raised when an item's parent chain does not allow the operation.

    Commit runs collect this per item ("Parent '<name>' must be committed
    first"); the sandbox write path raises it for invalid parent typing.
    """

    def __init__(self, message: str, item_id: str | None = None) -> None:
        self.item_id = item_id
        super().__init__(message, details={"item_id": item_id} if item_id else None)


class BaselineLockedError(Exception):
    """Raised when a mutation touches a field or structure frozen by a baseline lock.

    Args:
        message: Explanation pointing the user at the variation process.
        item_id: The sandbox item (or governance record) that is locked.
        fields: Protected fields the caller attempted to write, if any.
    """

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        fields: list[str] | None = None,
    ) -> None:
        self.item_id = item_id
        self.fields = fields or []
        super().__init__(message)


class WriteConflictError(Exception):
    """Raised when the governance store rejects a write through its own validation.

    Args:
        resource: Governance record type being written.
        message: Why the store refused the write.
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(f"{resource} write rejected: {message}")


class StoreUnavailableError(Exception):
    """Raised when a round trip to either store fails at the transport level.

    Fatal to the current sync/commit run. Safe to retry as a whole.

    Args:
        store: "governance" or "sandbox".
        operation: Short name of the call that failed.
        cause: Underlying driver message, for logs.
    """

    def __init__(self, store: str, operation: str, cause: str | None = None) -> None:
        self.store = store
        self.operation = operation
        self.cause = cause
        msg = f"{store} store unavailable during {operation}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)
