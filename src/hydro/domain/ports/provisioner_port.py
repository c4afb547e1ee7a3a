"""Domain port for the resource provisioner."""

from abc import ABC, abstractmethod
from typing import Any, Optional

from hydro.domain.catalog import Plan
from hydro.domain.instance import BindInstance, ServiceInstance


class ProvisionerPort(ABC):
    """
    Performs the side effects behind each lifecycle operation.

    Calls may take an unbounded amount of time. Any exception raised is
    recorded as the failure of the operation and is never retried by the
    broker.
    """

    @abstractmethod
    async def create(self, instance: ServiceInstance) -> Optional[str]:
        """Create the backing service, returning its dashboard URL if it has one."""

    @abstractmethod
    async def destroy(self, instance: ServiceInstance) -> None:
        """Destroy the backing service."""

    @abstractmethod
    async def bind(self, instance: ServiceInstance, binding: BindInstance) -> dict[str, Any]:
        """Create a binding and return its credentials."""

    @abstractmethod
    async def unbind(self, instance: ServiceInstance, binding: BindInstance) -> None:
        """Revoke a binding."""

    @abstractmethod
    async def reconfigure(self, instance: ServiceInstance, new_plan: Plan) -> None:
        """Apply the instance's new plan and parameters."""
