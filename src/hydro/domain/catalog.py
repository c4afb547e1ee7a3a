"""Catalog of service offerings and plans.

The catalog is loaded once at startup and handed to the broker by reference.
All models are frozen; there is no runtime mutation path.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from hydro.domain.exceptions import PlanNotFoundError, ServiceNotFoundError


class CatalogModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class DashboardClient(CatalogModel):
    """Dashboard SSO client advertised by a service."""

    id: str
    secret: str
    redirect_uri: str


class ServiceInstanceSchema(CatalogModel):
    """Parameter schemas for creating and updating a service instance.

    Each entry follows the published shape ``{"parameters": <JSON schema>}``.
    """

    create: dict[str, Any] = Field(default_factory=dict)
    update: dict[str, Any] = Field(default_factory=dict)


class ServiceBindingSchema(CatalogModel):
    create: dict[str, Any] = Field(default_factory=dict)


class Schemas(CatalogModel):
    service_instance: ServiceInstanceSchema = Field(default_factory=ServiceInstanceSchema)
    service_binding: ServiceBindingSchema = Field(default_factory=ServiceBindingSchema)

    @property
    def create_parameters(self) -> dict[str, Any]:
        return self.service_instance.create.get("parameters", {})

    @property
    def update_parameters(self) -> dict[str, Any]:
        return self.service_instance.update.get("parameters", {})

    @property
    def bind_parameters(self) -> dict[str, Any]:
        return self.service_binding.create.get("parameters", {})


class Plan(CatalogModel):
    id: str
    name: str
    description: str = ""
    metadata: Optional[dict[str, Any]] = None
    free: bool = True
    bindable: Optional[bool] = None
    schemas: Schemas = Field(default_factory=Schemas)
    updates_to: list[str] = Field(default_factory=list)

    def recognized_parameters(self) -> set[str]:
        """Names declared by either the create or the update schema."""
        names = set(self.schemas.create_parameters.get("properties", {}))
        names.update(self.schemas.update_parameters.get("properties", {}))
        return names

    def updatable_parameters(self) -> set[str]:
        return set(self.schemas.update_parameters.get("properties", {}))


class Service(CatalogModel):
    id: str
    name: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    bindable: bool = True
    metadata: Optional[dict[str, Any]] = None
    dashboard_client: Optional[DashboardClient] = None
    plan_updateable: bool = False
    plans: list[Plan] = Field(default_factory=list)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return next((plan for plan in self.plans if plan.id == plan_id), None)


class CatalogResponse(CatalogModel):
    """Response for the catalog call."""

    services: list[Service] = Field(default_factory=list)


class Catalog(CatalogModel):
    """Read-only view over the advertised services and their update graph."""

    services: list[Service] = Field(default_factory=list)

    def to_response(self) -> CatalogResponse:
        return CatalogResponse(services=self.services)

    def get_service(self, service_id: str) -> Service:
        for service in self.services:
            if service.id == service_id:
                return service
        raise ServiceNotFoundError(service_id)

    def find_plan(self, plan_id: str) -> tuple[Service, Plan]:
        """Locate a plan anywhere in the catalog.

        :raises PlanNotFoundError: if no service advertises the plan.
        """
        for service in self.services:
            plan = service.get_plan(plan_id)
            if plan is not None:
                return service, plan
        raise PlanNotFoundError(f"plan {plan_id} not found", {"plan_id": plan_id})

    def get_plan(self, service_id: str, plan_id: str) -> tuple[Service, Plan]:
        service = self.get_service(service_id)
        plan = service.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(
                f"plan {plan_id} not found in service {service_id}",
                {"service_id": service_id, "plan_id": plan_id},
            )
        return service, plan

    def can_update(self, service_id: str, from_plan_id: str, to_plan_id: str) -> bool:
        """Whether the catalog's update graph has an edge ``from_plan -> to_plan``."""
        if from_plan_id == to_plan_id:
            return True
        service = self.get_service(service_id)
        if not service.plan_updateable:
            return False
        from_plan = service.get_plan(from_plan_id)
        return from_plan is not None and to_plan_id in from_plan.updates_to
