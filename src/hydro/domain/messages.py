"""Request and response shapes exchanged at the broker boundary.

Field names follow the published Open Service Broker API verbatim.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from hydro.domain.instance import Context


class BrokerMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the wire, omitting empty optional fields."""
        return self.model_dump(mode="json", exclude_none=True)


class ProvisionRequest(BrokerMessage):
    organization_guid: Optional[str] = None
    plan_id: str
    service_id: str
    space_guid: Optional[str] = None
    context: Context = Field(default_factory=Context)
    parameters: dict[str, Any] = Field(default_factory=dict)
    accepts_incomplete: bool = False


class ProvisionResponse(BrokerMessage):
    dashboard_url: Optional[str] = None
    operation: Optional[str] = None


class DeprovisionResponse(BrokerMessage):
    operation: Optional[str] = None


class BindResource(BrokerMessage):
    app_guid: Optional[str] = None
    route: Optional[str] = None


class BindRequest(BrokerMessage):
    service_id: str
    plan_id: str
    # deprecated in favor of bind_resource.app_guid
    app_guid: Optional[str] = None
    bind_resource: BindResource = Field(default_factory=BindResource)
    parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_app_guid(self) -> Optional[str]:
        return self.bind_resource.app_guid or self.app_guid


class BindResponse(BrokerMessage):
    credentials: Optional[dict[str, Any]] = None
    syslog_drain_url: Optional[str] = None
    route_service_url: Optional[str] = None
    volume_mounts: Optional[list[Any]] = None
    operation: Optional[str] = None


class UnbindResponse(BrokerMessage):
    operation: Optional[str] = None


class PreviousValues(BrokerMessage):
    plan_id: Optional[str] = None
    service_id: Optional[str] = None
    organization_id: Optional[str] = None
    space_id: Optional[str] = None


class UpdateRequest(BrokerMessage):
    service_id: str
    plan_id: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    previous_values: PreviousValues = Field(default_factory=PreviousValues)
    context: Context = Field(default_factory=Context)
    accepts_incomplete: bool = False


class UpdateResponse(BrokerMessage):
    operation: Optional[str] = None


class LastOperationRequest(BrokerMessage):
    service_id: Optional[str] = None
    plan_id: Optional[str] = None
    operation: Optional[str] = None


class LastOperationResponse(BrokerMessage):
    state: str
    description: Optional[str] = None


class ServiceInstanceResponse(BrokerMessage):
    """Response for a get service instance request."""

    service_id: str
    plan_id: str
    dashboard_url: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None


class ErrorResponse(BrokerMessage):
    description: str
    error: Optional[str] = None
