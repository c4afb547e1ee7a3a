"""Domain port for the operation tracker."""

from abc import ABC, abstractmethod
from typing import Optional

from hydro.domain.operation import OperationKind, OperationRecord, OperationState


class OperationTrackerPort(ABC):
    """Maps operation tokens to in-flight or completed work."""

    @abstractmethod
    def begin(
        self,
        instance_id: str,
        kind: OperationKind,
        binding_id: Optional[str] = None,
        description: str = "",
    ) -> str:
        """
        Register a new operation and return its token.

        Raises OperationInProgressError if an unfinished operation exists for
        the instance, whatever its kind.
        """

    @abstractmethod
    def complete(self, token: str, state: OperationState, description: str = "") -> OperationRecord:
        """
        Move an operation to a terminal state.

        Repeating the same outcome is a no-op; a different outcome raises
        OperationConflictError.
        """

    @abstractmethod
    def status(self, token: str) -> OperationRecord:
        """Return the record or raise OperationNotFoundError."""

    @abstractmethod
    def active_for(self, instance_id: str) -> Optional[OperationRecord]:
        """Return the unfinished operation for an instance, if any."""

    @abstractmethod
    def latest_for(self, instance_id: str) -> Optional[OperationRecord]:
        """Return the most recently created operation for an instance."""

    @abstractmethod
    def list_active(self) -> list[OperationRecord]:
        """Return every unfinished operation."""

    @abstractmethod
    def purge_expired(self, retention_seconds: float) -> int:
        """Drop terminal records older than the retention window, returning the count."""
