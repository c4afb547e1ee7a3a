"""Domain port for the instance registry."""

from abc import ABC, abstractmethod
from typing import Callable

from hydro.domain.instance import BindInstance, ServiceInstance

InstanceMutator = Callable[[ServiceInstance], ServiceInstance]
BindingMutator = Callable[[BindInstance], BindInstance]


class InstanceRegistryPort(ABC):
    """
    Authoritative store of service instances and bindings.

    Mutations are linearizable per record ID: concurrent mutators on one ID
    serialize, mutators on different IDs proceed independently.
    """

    @abstractmethod
    def get_instance(self, instance_id: str) -> ServiceInstance:
        """Return the instance or raise InstanceNotFoundError."""

    @abstractmethod
    def put_instance(self, instance: ServiceInstance) -> None:
        """Store a new instance or raise DuplicateError."""

    @abstractmethod
    def update_instance(self, instance_id: str, mutator: InstanceMutator) -> ServiceInstance:
        """Atomically apply ``mutator`` to a copy of the instance and store the result."""

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Remove the instance or raise InstanceNotFoundError."""

    @abstractmethod
    def list_instances(self) -> list[ServiceInstance]:
        """Return every stored instance."""

    @abstractmethod
    def get_binding(self, binding_id: str) -> BindInstance:
        """Return the binding or raise BindingNotFoundError."""

    @abstractmethod
    def put_binding(self, binding: BindInstance) -> None:
        """Store a new binding or raise DuplicateError."""

    @abstractmethod
    def update_binding(self, binding_id: str, mutator: BindingMutator) -> BindInstance:
        """Atomically apply ``mutator`` to a copy of the binding and store the result."""

    @abstractmethod
    def delete_binding(self, binding_id: str) -> None:
        """Remove the binding or raise BindingNotFoundError."""

    @abstractmethod
    def list_bindings(self, instance_id: str) -> list[BindInstance]:
        """Return the bindings owned by an instance."""
