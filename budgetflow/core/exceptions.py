"""
Workflow-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Two families:
  * hard errors (NotFound, BadRequest, Conflict, Forbidden, Validation)
    abort the whole operation and roll the transaction back;
  * soft errors (NoTemplateError, ReadinessViolation) are raised for one
    item inside a batch; the batch loop logs them and moves on.

Usage:
    from budgetflow.core.exceptions import NotFoundError, ConflictError

    raise NotFoundError(resource="Budget", resource_id=42)
    raise ConflictError("Budget", "school_id/period", "7/02-2025", existing_id=1)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Budget", "ChatThread").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class BadRequestError(Exception):
    """Raised for missing or malformed input (HTTP 400).

    Args:
        message: Human-readable explanation.
        details: Optional per-field breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule (HTTP 422).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique record (HTTP 409).

    Args:
        resource: Model name.
        field: The unique field (or field combination) that collides.
        value: The conflicting value.
        existing_id: PK of the record already holding the value, when known.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        existing_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.existing_id = existing_id
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class UnauthorizedError(Exception):
    """Raised when a request carries no resolvable user (HTTP 401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the caller lacks the role or department ownership (HTTP 403)."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NoTemplateError(Exception):
    """Raised by the resolver when no binding matches (school, sub-account)."""

    def __init__(self, school_id: int | None, sub_account_id: int | None) -> None:
        self.school_id = school_id
        self.sub_account_id = sub_account_id
        super().__init__(
            f"No workflow template bound for school={school_id} account={sub_account_id}"
        )


class ReadinessViolation(Exception):
    """Raised when a coordinator decision targets an item still in the workflow."""

    def __init__(self, item_id: int, reason: str = "workflow not done") -> None:
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Item {item_id} is not ready for a final decision: {reason}")


class LockTimeoutError(Exception):
    """Raised when a named lock cannot be acquired within its timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Could not acquire lock {name!r} within {timeout}s")


class TransientBackendError(Exception):
    """A retriable backend failure (SMTP 432, concurrent-connection limit, deadlock)."""

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)
