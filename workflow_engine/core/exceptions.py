"""
Engine-wide exception hierarchy.

Services raise these types only; callers (CLI commands, scheduled jobs,
embedding applications) catch them once and get consistent behaviour:

    ValidationError       invalid action/status or malformed payload; no mutation
    ConcurrencyConflict   the row changed under us; safe to retry
    NotFoundError         the referenced workflow/task does not exist
    DependencyError       directory, real-time channel or orchestrator failed
    AuditWriteFailure     the audit trail could not be written (logged only)

Usage:
    from workflow_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workflow", resource_id=workflow_id)
    raise ValidationError("Cannot complete workflow with status PENDING")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Workflow", "Task").
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


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Covers invalid status transitions, unknown actions and malformed
    payloads. Nothing has been written when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured responses.
    """

    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConcurrencyConflict(ValidationError):
    """Raised when a conditional write matched zero rows because another
    writer changed the status first.

    A subclass of ValidationError so callers handling rejected transitions
    also handle lost races; ``retryable`` lets them tell the two apart.
    """

    retryable = True

    def __init__(self, resource: str, resource_id: str, expected_status: str,
                 actual_status: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"{resource} {resource_id} status changed concurrently "
            f"(expected {expected_status}, found {actual_status})",
            details={"expected_status": expected_status, "actual_status": actual_status},
        )


class DependencyError(Exception):
    """Raised when an external collaborator fails or times out.

    Always isolated by the caller: logged, never allowed to abort a scan
    or a status transition.

    Args:
        dependency: Collaborator name ("directory", "realtime", "orchestrator").
        message: What went wrong.
    """

    def __init__(self, dependency: str, message: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")


class AuditWriteFailure(Exception):
    """Raised internally when an audit row cannot be persisted.

    The audit recorder logs it and swallows it; business mutations
    never fail because of it.
    """

    def __init__(self, action: str, resource_type: str, resource_id: str | None,
                 cause: Exception | None = None) -> None:
        self.action = action
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.cause = cause
        super().__init__(
            f"Audit write failed for {action} on {resource_type}/{resource_id}: {cause}"
        )
