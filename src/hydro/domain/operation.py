"""Operation records backing last-operation polling."""

import time
import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field

from hydro.domain.base_enum import BaseEnum


class OperationKind(BaseEnum):
    PROVISION = "provision"
    DEPROVISION = "deprovision"
    BIND = "bind"
    UNBIND = "unbind"
    UPDATE = "update"


class OperationState(BaseEnum):
    """Published last-operation states."""

    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationState.IN_PROGRESS


def generate_operation_token() -> str:
    """
    Generate an operation token.

    Tokens carry 122 random bits from ``uuid4`` and are never reused.

    Returns:
        Prefixed token string (e.g., "op-<uuid>")
    """
    return f"op-{uuid.uuid4()}"


class OperationRecord(BaseModel):
    """
    Represents one asynchronous lifecycle operation.

    Attributes:
        token (str): Opaque operation token handed to the client.
        instance_id (str): Instance the operation targets.
        binding_id (Optional[str]): Binding for bind/unbind operations.
        kind (OperationKind): What the operation does.
        state (OperationState): In progress, succeeded or failed.
        description (str): Human-readable status message.
        created_at (float): Epoch seconds when the operation was accepted.
        completed_at (Optional[float]): Epoch seconds when it reached a terminal state.
    """

    token: str = Field(default_factory=generate_operation_token)
    instance_id: str
    binding_id: Optional[str] = None
    kind: OperationKind
    state: OperationState = OperationState.IN_PROGRESS
    description: str = ""
    created_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.state is OperationState.IN_PROGRESS

    def is_expired(self, retention_seconds: float, now: Optional[float] = None) -> bool:
        if self.completed_at is None:
            return False
        now = time.time() if now is None else now
        return now - self.completed_at > retention_seconds

    def complete(self, state: OperationState, description: str = "") -> None:
        self.state = state
        if description:
            self.description = description
        self.completed_at = time.time()

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "OperationRecord":
        return cls.model_validate(data)

    def __str__(self) -> str:
        return (
            f"Operation(token={self.token}, kind={self.kind.value}, "
            f"instance={self.instance_id}, state={self.state.value})"
        )
