"""Broker exception taxonomy.

Every error a caller can correct derives from ``BrokerError`` and carries a
stable ``kind`` string. Defects inside the broker (broken invariants,
conflicting completions) derive from ``BrokerInternalError`` instead and are
never part of the taxonomy.
"""

from typing import Any, Optional


class BrokerError(Exception):
    """Base class for recoverable, user-correctable broker errors."""

    kind = "BrokerError"
    default_message = "broker error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_error_response(self) -> dict[str, Any]:
        """Render the published broker error body."""
        return {"error": self.kind, "description": self.message}


class NotFoundError(BrokerError):
    kind = "NotFound"
    default_message = "not found"


class EntityNotFoundError(NotFoundError):
    """An entity looked up by identifier does not exist."""

    entity_type = "entity"

    def __init__(self, entity_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{self.entity_type} {entity_id} not found",
            {"entity_type": self.entity_type, "entity_id": entity_id},
        )
        self.entity_id = entity_id


class InstanceNotFoundError(EntityNotFoundError):
    entity_type = "service instance"


class BindingNotFoundError(EntityNotFoundError):
    entity_type = "binding"


class OperationNotFoundError(EntityNotFoundError):
    entity_type = "operation"


class ServiceNotFoundError(EntityNotFoundError):
    entity_type = "service"


class DuplicateError(BrokerError):
    kind = "Duplicate"
    default_message = "duplicate instance"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} {entity_id} already exists",
            {"entity_type": entity_type, "entity_id": entity_id},
        )


class AlreadyProvisionedError(BrokerError):
    kind = "AlreadyProvisioned"
    default_message = "already provisioned"


class BindingExistsError(BrokerError):
    kind = "BindingExists"
    default_message = "binding exists"


class OperationInProgressError(BrokerError):
    """An unfinished operation already holds the instance.

    ``operation`` is the active record when the tracker raised the error.
    """

    kind = "OperationInProgress"
    default_message = "operation in progress"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        operation: Any = None,
    ):
        super().__init__(message, details)
        self.operation = operation


class ProvisionInProgressError(OperationInProgressError):
    kind = "ProvisionInProgress"
    default_message = "provision in progress"


class DeprovisionInProgressError(OperationInProgressError):
    kind = "DeprovisionInProgress"
    default_message = "deprovision in progress"


class UpdateInProgressError(OperationInProgressError):
    kind = "UpdateInProgress"
    default_message = "update in progress"


class BindingInProgressError(OperationInProgressError):
    kind = "BindingInProgress"
    default_message = "bind or unbind in progress"


class PlanNotFoundError(BrokerError):
    kind = "PlanNotFound"
    default_message = "plan not found"


class ParameterNotFoundError(BrokerError):
    kind = "ParameterNotFound"
    default_message = "parameter not found"


class ParameterNotUpdatableError(BrokerError):
    kind = "ParameterNotUpdatable"
    default_message = "parameter not updatable"


class PlanUpdateNotPossibleError(BrokerError):
    kind = "PlanUpdateNotPossible"
    default_message = "plan update not possible"


class InvalidParametersError(BrokerError):
    kind = "InvalidParameters"
    default_message = "parameters do not match the plan schema"


class ForbiddenError(BrokerError):
    kind = "Forbidden"
    default_message = "User does not have sufficient permissions"


class AdapterFailureError(BrokerError):
    """Wraps whatever the provisioner raised, message preserved verbatim."""

    kind = "AdapterFailure"
    default_message = "provisioner failure"

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(
            str(cause) or type(cause).__name__,
            {"operation": operation, "cause": type(cause).__name__},
        )
        self.cause = cause


class BrokerInternalError(Exception):
    """Programming defect inside the broker, distinct from the taxonomy."""

    kind = "InternalError"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_error_response(self) -> dict[str, Any]:
        return {"error": self.kind, "description": self.message}


class InvariantViolationError(BrokerInternalError):
    pass


class OperationConflictError(BrokerInternalError):
    """An operation was completed twice with different outcomes."""
