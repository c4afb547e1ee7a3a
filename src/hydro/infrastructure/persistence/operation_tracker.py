import time
from typing import Optional

from hydro.domain.exceptions import (
    OperationConflictError,
    OperationInProgressError,
    OperationNotFoundError,
)
from hydro.domain.operation import OperationKind, OperationRecord, OperationState
from hydro.domain.ports.tracker_port import OperationTrackerPort
from hydro.infrastructure.locking import KeyedLock
from hydro.infrastructure.logging.logger import get_logger
from hydro.infrastructure.storage.memory_handler import MemoryHandler
from hydro.infrastructure.storage.storage_handler_interface import BaseStorageHandler

logger = get_logger(__name__)

OPERATIONS = "operations"


class OperationTracker(OperationTrackerPort):
    """
    Operation tracker backed by a storage handler.

    At most one unfinished operation exists per instance. Terminal records stay
    pollable until a new operation on the same instance supersedes them or the
    retention window passes.
    """

    def __init__(self, backend: Optional[BaseStorageHandler] = None):
        self.backend = backend or MemoryHandler()
        self._locks = KeyedLock()

    def _records_for(self, instance_id: str) -> list[OperationRecord]:
        return [
            OperationRecord.from_record(data)
            for data in self.backend.query(OPERATIONS, {"instance_id": instance_id})
        ]

    def begin(
        self,
        instance_id: str,
        kind: OperationKind,
        binding_id: Optional[str] = None,
        description: str = "",
    ) -> str:
        with self._locks.hold(instance_id):
            records = self._records_for(instance_id)
            active = next((record for record in records if record.is_active), None)
            if active is not None:
                raise OperationInProgressError(
                    f"{active.kind.value} operation {active.token} in progress",
                    {"instance_id": instance_id, "kind": active.kind.value},
                    operation=active,
                )

            for superseded in records:
                self.backend.delete(OPERATIONS, superseded.token)

            record = OperationRecord(
                instance_id=instance_id,
                binding_id=binding_id,
                kind=kind,
                description=description or f"{kind.value} in progress",
            )
            self.backend.insert(OPERATIONS, record.token, record.to_record())

        logger.info(
            "Operation started",
            token=record.token,
            kind=kind.value,
            instance_id=instance_id,
            superseded=len(records),
        )
        return record.token

    def complete(self, token: str, state: OperationState, description: str = "") -> OperationRecord:
        if not state.is_terminal:
            raise ValueError(f"Cannot complete operation {token} with state {state}")

        record = self.status(token)
        with self._locks.hold(record.instance_id):
            record = self.status(token)
            if record.state.is_terminal:
                if record.state is state:
                    return record
                raise OperationConflictError(
                    f"operation {token} already {record.state.value}, cannot become {state.value}",
                    {"token": token, "current": record.state.value, "requested": state.value},
                )
            record.complete(state, description)
            self.backend.update(OPERATIONS, token, record.to_record())

        logger.info(
            "Operation completed",
            token=token,
            kind=record.kind.value,
            instance_id=record.instance_id,
            state=state.value,
        )
        return record

    def status(self, token: str) -> OperationRecord:
        data = self.backend.get(OPERATIONS, token)
        if data is None:
            raise OperationNotFoundError(token)
        return OperationRecord.from_record(data)

    def active_for(self, instance_id: str) -> Optional[OperationRecord]:
        return next((record for record in self._records_for(instance_id) if record.is_active), None)

    def latest_for(self, instance_id: str) -> Optional[OperationRecord]:
        records = self._records_for(instance_id)
        return max(records, key=lambda record: record.created_at) if records else None

    def list_active(self) -> list[OperationRecord]:
        return [
            OperationRecord.from_record(data)
            for data in self.backend.query(OPERATIONS, {"state": OperationState.IN_PROGRESS.value})
        ]

    def purge_expired(self, retention_seconds: float, now: Optional[float] = None) -> int:
        """
        Remove terminal operations completed more than ``retention_seconds`` ago.

        :return: Number of records removed.
        """
        now = time.time() if now is None else now
        expired = [
            record
            for record in (OperationRecord.from_record(data) for data in self.backend.scan(OPERATIONS))
            if record.is_expired(retention_seconds, now)
        ]
        for record in expired:
            with self._locks.hold(record.instance_id):
                self.backend.delete(OPERATIONS, record.token)
        if expired:
            logger.info("Purged expired operations", count=len(expired))
        return len(expired)
