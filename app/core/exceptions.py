"""
Platform-wide exception hierarchy.

Services raise these types; callers (the transition engine's public entry
point, the HTTP surface that sits outside this package) map them to results
or status codes in one place.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransition

    raise NotFoundError(resource="Inspection", resource_id=42)
    raise InvalidTransition("draft", "approved")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "Inspection").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    http_status = 404
    code = "not_found"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured responses.
    """

    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    http_status = 409

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ═════════════════════════════════════════════════════════════════════════════
# Workflow errors
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowError(Exception):
    """Base for every typed failure of a workflow operation.

    ``code`` is the stable machine-readable identifier, ``http_status`` the
    status an HTTP surface should answer with.
    """

    code = "workflow_error"
    http_status = 400
    retryable = False

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class InvalidTransition(WorkflowError):
    """No transition rule exists for the requested (from, to) edge."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Transition {from_state} -> {to_state} is not allowed")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "from_state": self.from_state, "to_state": self.to_state}


class Forbidden(WorkflowError):
    """The principal's role is not in the transition's allowed roles."""

    code = "forbidden"
    http_status = 403

    def __init__(self, role: str, from_state: str, to_state: str) -> None:
        self.role = role
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Role '{role}' may not move an inspection {from_state} -> {to_state}")


class PreconditionFailed(WorkflowError):
    """A required condition of the transition does not hold."""

    code = "precondition_failed"
    http_status = 422

    def __init__(self, condition: str) -> None:
        self.condition = condition
        super().__init__(f"Required condition '{condition}' is not satisfied")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "condition": self.condition}


class ValidationFailed(WorkflowError):
    """One or more blocking (error-severity) validation rules failed."""

    code = "validation_failed"
    http_status = 422

    def __init__(self, violations: list) -> None:
        self.violations = list(violations)
        names = ", ".join(v.rule_name for v in self.violations)
        super().__init__(f"Validation failed: {names}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "violations": [v.to_dict() for v in self.violations]}


class AlreadyPending(WorkflowError):
    """The inspection already has a pending approval workflow."""

    code = "already_pending"
    http_status = 409

    def __init__(self, inspection_id: int, workflow_id: int | None = None) -> None:
        self.inspection_id = inspection_id
        self.workflow_id = workflow_id
        super().__init__(f"Inspection {inspection_id} already has a pending approval")


class ConcurrentModification(WorkflowError):
    """The inspection changed between snapshot and commit. Safe to retry."""

    code = "concurrent_modification"
    http_status = 409
    retryable = True

    def __init__(self, inspection_id: int) -> None:
        self.inspection_id = inspection_id
        super().__init__(f"Inspection {inspection_id} was modified concurrently; reload and retry")


class ConfigInvalid(WorkflowError):
    """A workflow configuration (or override) failed validation."""

    code = "config_invalid"
    http_status = 422

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid workflow configuration: " + "; ".join(self.errors))

    def to_dict(self) -> dict:
        return {**super().to_dict(), "errors": self.errors}
