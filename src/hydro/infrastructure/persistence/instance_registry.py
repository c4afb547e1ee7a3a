from typing import Optional

from hydro.domain.exceptions import (
    BindingNotFoundError,
    DuplicateError,
    InstanceNotFoundError,
    InvariantViolationError,
)
from hydro.domain.instance import BindInstance, ServiceInstance
from hydro.domain.ports.registry_port import (
    BindingMutator,
    InstanceMutator,
    InstanceRegistryPort,
)
from hydro.infrastructure.locking import KeyedLock
from hydro.infrastructure.logging.logger import get_logger
from hydro.infrastructure.storage.memory_handler import MemoryHandler
from hydro.infrastructure.storage.storage_handler_interface import BaseStorageHandler

logger = get_logger(__name__)

INSTANCES = "instances"
BINDINGS = "bindings"


class InstanceRegistry(InstanceRegistryPort):
    """
    Instance registry that bridges instance and binding records with a storage backend.

    Every read-modify-write runs under a per-ID lock, so mutators on one ID
    serialize while different IDs proceed in parallel.
    """

    def __init__(self, backend: Optional[BaseStorageHandler] = None):
        """
        Initialize the registry with a specific backend.

        :param backend: A storage handler. Defaults to in-memory storage.
        """
        self.backend = backend or MemoryHandler()
        self._locks = KeyedLock()

    # -------------------- Instance Operations --------------------

    def get_instance(self, instance_id: str) -> ServiceInstance:
        data = self.backend.get(INSTANCES, instance_id)
        if data is None:
            raise InstanceNotFoundError(instance_id)
        return ServiceInstance.from_record(data)

    def put_instance(self, instance: ServiceInstance) -> None:
        with self._locks.hold(f"instance:{instance.id}"):
            if self.backend.get(INSTANCES, instance.id) is not None:
                raise DuplicateError("service instance", instance.id)
            self.backend.insert(INSTANCES, instance.id, instance.to_record())
        logger.info("Added instance", instance_id=instance.id, state=str(instance.state))

    def update_instance(self, instance_id: str, mutator: InstanceMutator) -> ServiceInstance:
        """
        Atomically update an instance.

        :param instance_id: ID of the instance to update.
        :param mutator: Receives a private copy and returns the new value
                        (returning None keeps the mutated copy).
        :return: The stored instance.
        """
        with self._locks.hold(f"instance:{instance_id}"):
            current = self.get_instance(instance_id)
            updated = mutator(current) or current
            if updated.id != instance_id:
                raise InvariantViolationError(
                    "instance id is immutable",
                    {"instance_id": instance_id, "new_id": updated.id},
                )
            self.backend.update(INSTANCES, instance_id, updated.to_record())
        logger.debug("Updated instance", instance_id=instance_id, state=str(updated.state))
        return updated

    def delete_instance(self, instance_id: str) -> None:
        with self._locks.hold(f"instance:{instance_id}"):
            if self.backend.get(INSTANCES, instance_id) is None:
                raise InstanceNotFoundError(instance_id)
            self.backend.delete(INSTANCES, instance_id)
        logger.info("Deleted instance", instance_id=instance_id)

    def list_instances(self) -> list[ServiceInstance]:
        instances = []
        for data in self.backend.scan(INSTANCES):
            try:
                instances.append(ServiceInstance.from_record(data))
            except ValueError as e:
                logger.warning("Skipping invalid instance entry", error=str(e))
        return instances

    # -------------------- Binding Operations --------------------

    def get_binding(self, binding_id: str) -> BindInstance:
        data = self.backend.get(BINDINGS, binding_id)
        if data is None:
            raise BindingNotFoundError(binding_id)
        return BindInstance.from_record(data)

    def put_binding(self, binding: BindInstance) -> None:
        with self._locks.hold(f"binding:{binding.id}"):
            if self.backend.get(BINDINGS, binding.id) is not None:
                raise DuplicateError("binding", binding.id)
            self.backend.insert(BINDINGS, binding.id, binding.to_record())
        logger.info("Added binding", binding_id=binding.id, instance_id=binding.instance_id)

    def update_binding(self, binding_id: str, mutator: BindingMutator) -> BindInstance:
        with self._locks.hold(f"binding:{binding_id}"):
            current = self.get_binding(binding_id)
            updated = mutator(current) or current
            if updated.id != binding_id:
                raise InvariantViolationError(
                    "binding id is immutable",
                    {"binding_id": binding_id, "new_id": updated.id},
                )
            self.backend.update(BINDINGS, binding_id, updated.to_record())
        logger.debug("Updated binding", binding_id=binding_id, state=str(updated.state))
        return updated

    def delete_binding(self, binding_id: str) -> None:
        with self._locks.hold(f"binding:{binding_id}"):
            if self.backend.get(BINDINGS, binding_id) is None:
                raise BindingNotFoundError(binding_id)
            self.backend.delete(BINDINGS, binding_id)
        logger.info("Deleted binding", binding_id=binding_id)

    def list_bindings(self, instance_id: str) -> list[BindInstance]:
        return [
            BindInstance.from_record(data)
            for data in self.backend.query(BINDINGS, {"instance_id": instance_id})
        ]
