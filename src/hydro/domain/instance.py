"""Service instance and binding records with their lifecycle state machines."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from hydro.domain.base_enum import BaseEnum
from hydro.domain.exceptions import InvariantViolationError


class InstanceState(BaseEnum):
    """Lifecycle of a service instance.

    ABSENT and GONE are never stored; they are represented by the record
    being missing from the registry.
    """

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    UPDATING = "updating"
    DEPROVISIONING = "deprovisioning"
    GONE = "gone"


class BindingState(BaseEnum):
    ABSENT = "absent"
    BINDING = "binding"
    BOUND = "bound"
    UNBINDING = "unbinding"
    GONE = "gone"


INSTANCE_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.ABSENT: {InstanceState.PROVISIONING},
    # failed provision drops the record
    InstanceState.PROVISIONING: {InstanceState.PROVISIONED, InstanceState.ABSENT},
    InstanceState.PROVISIONED: {InstanceState.UPDATING, InstanceState.DEPROVISIONING},
    InstanceState.UPDATING: {InstanceState.PROVISIONED},
    InstanceState.DEPROVISIONING: {InstanceState.GONE, InstanceState.PROVISIONED},
    InstanceState.GONE: set(),
}

BINDING_TRANSITIONS: dict[BindingState, set[BindingState]] = {
    BindingState.ABSENT: {BindingState.BINDING},
    BindingState.BINDING: {BindingState.BOUND, BindingState.ABSENT},
    BindingState.BOUND: {BindingState.UNBINDING},
    BindingState.UNBINDING: {BindingState.GONE, BindingState.BOUND},
    BindingState.GONE: set(),
}


class Context(BaseModel):
    """Platform context the instance was requested from."""

    platform: str = ""
    namespace: str = ""


class ServiceInstance(BaseModel):
    """A provisioned (or provisioning) unit of the backing service.

    Attributes:
        id: Instance UUID, immutable once created.
        service_id: Catalog service the instance belongs to.
        plan_id: Current plan.
        context: Platform and namespace.
        parameters: Opaque key/value parameters.
        binding_ids: Bindings attached to this instance, in any binding state.
        state: Current lifecycle state.
        dashboard_url: URL reported by the provisioner on create.
        previous_plan_id: Last-known-good plan, only set while UPDATING.
        previous_parameters: Last-known-good parameters, only set while UPDATING.
    """

    id: str
    service_id: str
    plan_id: str
    context: Context = Field(default_factory=Context)
    parameters: dict[str, Any] = Field(default_factory=dict)
    binding_ids: set[str] = Field(default_factory=set)
    state: InstanceState = InstanceState.PROVISIONING
    dashboard_url: Optional[str] = None
    previous_plan_id: Optional[str] = None
    previous_parameters: Optional[dict[str, Any]] = None

    def matches(self, service_id: str, plan_id: str, parameters: Optional[dict[str, Any]]) -> bool:
        """Whether a provision request is identical to the one that created this instance."""
        return (
            self.service_id == service_id
            and self.plan_id == plan_id
            and self.parameters == (parameters or {})
        )

    def transition_to(self, state: InstanceState) -> None:
        if state not in INSTANCE_TRANSITIONS[self.state]:
            raise InvariantViolationError(
                f"illegal instance transition {self.state} -> {state}",
                {"instance_id": self.id, "from": str(self.state), "to": str(state)},
            )
        self.state = state

    def begin_update(self, plan_id: str, parameters: dict[str, Any]) -> None:
        """Enter UPDATING, keeping the current configuration for rollback."""
        self.transition_to(InstanceState.UPDATING)
        self.previous_plan_id = self.plan_id
        self.previous_parameters = dict(self.parameters)
        self.plan_id = plan_id
        self.parameters = parameters

    def finish_update(self, succeeded: bool) -> None:
        if not succeeded:
            self.plan_id = self.previous_plan_id or self.plan_id
            if self.previous_parameters is not None:
                self.parameters = self.previous_parameters
        self.previous_plan_id = None
        self.previous_parameters = None
        self.transition_to(InstanceState.PROVISIONED)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "ServiceInstance":
        return cls.model_validate(data)


class BindInstance(BaseModel):
    """A binding granting an application access to an instance."""

    id: str
    instance_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    state: BindingState = BindingState.BINDING
    credentials: Optional[dict[str, Any]] = None
    app_guid: Optional[str] = None
    route: Optional[str] = None

    def matches(self, instance_id: str, parameters: Optional[dict[str, Any]]) -> bool:
        return self.instance_id == instance_id and self.parameters == (parameters or {})

    def transition_to(self, state: BindingState) -> None:
        if state not in BINDING_TRANSITIONS[self.state]:
            raise InvariantViolationError(
                f"illegal binding transition {self.state} -> {state}",
                {"binding_id": self.id, "from": str(self.state), "to": str(state)},
            )
        self.state = state

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "BindInstance":
        return cls.model_validate(data)
