"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Two families live here:

* Generic service errors (``NotFoundError``, ``ValidationError``,
  ``ConflictError``) raised by plan and item authoring.
* Lifecycle rejections (``PlanWorkflowError`` subclasses) produced by the
  status transition engine and the import commit.  Each one names the
  precondition that was not met, and is returned to callers as a
  ``(None, error.to_dict())`` result rather than propagated.

Usage:
    from app.core.exceptions import NotFoundError, PlanLocked

    raise NotFoundError(resource="ProcurementPlan", resource_id=42)
    raise PlanLocked(plan_id=42, status="locked")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ProcurementPlan").
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

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
                 Keys are field names; values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Lifecycle rejections ─────────────────────────────────────────────────────


class PlanWorkflowError(Exception):
    """Base class for rejected transitions and rejected import commits.

    ``precondition`` names what was missing: ``transition``, ``role``,
    ``ownership``, ``comment``, ``lock``, ``state`` or ``sequence``.
    Nothing is ever partially applied when one of these is raised, so the
    serialised form always carries ``changed: False``.
    """

    code = "ERR_WORKFLOW"
    http_status = 409
    precondition = "transition"

    def __init__(self, message: str, *, plan_id: int | None = None, details: dict | None = None) -> None:
        self.plan_id = plan_id
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {
            "error": str(self),
            "code": self.code,
            "precondition": self.precondition,
            "status": self.http_status,
            "changed": False,
        }
        if self.details:
            body["details"] = self.details
        return body


class IllegalTransition(PlanWorkflowError):
    """The (from, to) pair is not in the table, or the actor may not use it."""

    code = "ERR_ILLEGAL_TRANSITION"
    http_status = 409

    def __init__(self, message: str, *, precondition: str = "transition", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.precondition = precondition
        if precondition in ("role", "ownership"):
            self.http_status = 403


class PlanAccessDenied(PlanWorkflowError):
    """The actor may not author this plan: wrong role, or another agency's plan."""

    code = "ERR_FORBIDDEN"
    http_status = 403
    precondition = "ownership"

    def __init__(self, message: str, *, precondition: str = "ownership", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.precondition = precondition


class MissingRequiredComment(PlanWorkflowError):
    code = "ERR_COMMENT_REQUIRED"
    http_status = 422
    precondition = "comment"


class PlanLocked(PlanWorkflowError):
    """The plan's status does not allow header or item changes (or is locked)."""

    code = "ERR_PLAN_LOCKED"
    http_status = 409
    precondition = "lock"

    def __init__(self, message: str | None = None, *, plan_id: int | None = None,
                 status: str | None = None, **kwargs) -> None:
        self.plan_status = status
        if message is None:
            message = f"Plan {plan_id} is '{status}'; plans and items can only change while draft or returned"
        super().__init__(message, plan_id=plan_id, **kwargs)


class StaleState(PlanWorkflowError):
    """The plan changed between the caller's read and this write."""

    code = "ERR_STALE_STATE"
    http_status = 409
    precondition = "state"


class DuplicateSequenceNumber(PlanWorkflowError):
    code = "ERR_DUPLICATE_SEQUENCE"
    http_status = 409
    precondition = "sequence"
