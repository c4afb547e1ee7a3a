"""Unit tests for domain models, state machines and errors."""

import re

import pytest

from hydro.domain.catalog import Catalog
from hydro.domain.exceptions import (
    AdapterFailureError,
    BrokerError,
    InstanceNotFoundError,
    InvariantViolationError,
    NotFoundError,
    PlanNotFoundError,
    ServiceNotFoundError,
    UpdateInProgressError,
)
from hydro.domain.instance import BindingState, BindInstance, InstanceState, ServiceInstance
from hydro.domain.messages import BindRequest, ProvisionResponse
from hydro.domain.operation import (
    OperationKind,
    OperationRecord,
    OperationState,
    generate_operation_token,
)
from tests.fixtures.catalog_data import (
    CACHE_PLAN_ID,
    CACHE_SERVICE_ID,
    ISOLATED_PLAN_ID,
    LARGE_PLAN_ID,
    SERVICE_ID,
    SMALL_PLAN_ID,
)


def make_instance(**overrides) -> ServiceInstance:
    values = {"id": "inst-1", "service_id": SERVICE_ID, "plan_id": SMALL_PLAN_ID, "parameters": {"storage_gb": 5}}
    values.update(overrides)
    return ServiceInstance(**values)


@pytest.mark.unit
class TestInstanceStateMachine:
    """Test the service instance lifecycle."""

    def test_happy_path(self):
        """Test provisioning through deprovisioning."""
        instance = make_instance()
        assert instance.state is InstanceState.PROVISIONING
        instance.transition_to(InstanceState.PROVISIONED)
        instance.transition_to(InstanceState.DEPROVISIONING)
        instance.transition_to(InstanceState.GONE)
        assert instance.state is InstanceState.GONE

    def test_updating_only_reachable_from_provisioned(self):
        """Test that UPDATING cannot be entered while provisioning."""
        instance = make_instance()
        with pytest.raises(InvariantViolationError, match="illegal instance transition"):
            instance.transition_to(InstanceState.UPDATING)

    def test_gone_is_final(self):
        instance = make_instance(state=InstanceState.GONE)
        with pytest.raises(InvariantViolationError):
            instance.transition_to(InstanceState.PROVISIONING)

    def test_failed_update_restores_previous_configuration(self):
        """Test that a failed update keeps the last-known-good plan and parameters."""
        instance = make_instance(state=InstanceState.PROVISIONED)
        instance.begin_update(LARGE_PLAN_ID, {"storage_gb": 50})
        assert instance.state is InstanceState.UPDATING
        assert instance.plan_id == LARGE_PLAN_ID

        instance.finish_update(succeeded=False)

        assert instance.state is InstanceState.PROVISIONED
        assert instance.plan_id == SMALL_PLAN_ID
        assert instance.parameters == {"storage_gb": 5}
        assert instance.previous_plan_id is None

    def test_successful_update_keeps_new_configuration(self):
        instance = make_instance(state=InstanceState.PROVISIONED)
        instance.begin_update(LARGE_PLAN_ID, {"storage_gb": 50})
        instance.finish_update(succeeded=True)
        assert instance.plan_id == LARGE_PLAN_ID
        assert instance.parameters == {"storage_gb": 50}

    def test_matches_treats_missing_parameters_as_empty(self):
        instance = make_instance(parameters={})
        assert instance.matches(SERVICE_ID, SMALL_PLAN_ID, None)
        assert not instance.matches(SERVICE_ID, LARGE_PLAN_ID, None)

    def test_record_round_trip_keeps_binding_ids(self):
        instance = make_instance(binding_ids={"b-1", "b-2"}, state=InstanceState.PROVISIONED)
        restored = ServiceInstance.from_record(instance.to_record())
        assert restored == instance


@pytest.mark.unit
class TestBindingStateMachine:
    """Test the binding lifecycle."""

    def test_unbind_failure_returns_to_bound(self):
        binding = BindInstance(id="b-1", instance_id="inst-1", state=BindingState.BOUND)
        binding.transition_to(BindingState.UNBINDING)
        binding.transition_to(BindingState.BOUND)
        assert binding.state is BindingState.BOUND

    def test_cannot_skip_binding(self):
        binding = BindInstance(id="b-1", instance_id="inst-1")
        with pytest.raises(InvariantViolationError):
            binding.transition_to(BindingState.UNBINDING)


@pytest.mark.unit
class TestOperationRecord:
    """Test operation records and tokens."""

    def test_tokens_are_unique_and_prefixed(self):
        tokens = {generate_operation_token() for _ in range(1000)}
        assert len(tokens) == 1000
        assert all(re.fullmatch(r"op-[0-9a-f-]{36}", token) for token in tokens)

    def test_complete_sets_completion_time(self):
        record = OperationRecord(instance_id="inst-1", kind=OperationKind.PROVISION)
        assert record.is_active
        record.complete(OperationState.FAILED, "boom")
        assert not record.is_active
        assert record.description == "boom"
        assert record.completed_at is not None

    def test_expiry_counts_from_completion(self):
        record = OperationRecord(instance_id="inst-1", kind=OperationKind.BIND, created_at=0.0)
        assert not record.is_expired(10, now=1000.0)
        record.completed_at = 100.0
        assert not record.is_expired(10, now=105.0)
        assert record.is_expired(10, now=111.0)

    def test_states_use_published_strings(self):
        assert OperationState.IN_PROGRESS.value == "in progress"
        assert OperationState.from_value("succeeded") is OperationState.SUCCEEDED
        assert not OperationState.IN_PROGRESS.is_terminal


@pytest.mark.unit
class TestErrors:
    """Test the error taxonomy."""

    def test_error_response_shape(self):
        error = UpdateInProgressError()
        assert error.to_error_response() == {"error": "UpdateInProgress", "description": "update in progress"}

    def test_not_found_family(self):
        error = InstanceNotFoundError("inst-9")
        assert isinstance(error, NotFoundError)
        assert error.kind == "NotFound"
        assert "inst-9" in error.message

    def test_adapter_failure_keeps_message_verbatim(self):
        cause = RuntimeError("quota exceeded in us-east-1")
        error = AdapterFailureError("create", cause)
        assert error.message == "quota exceeded in us-east-1"
        assert error.cause is cause
        assert error.details["operation"] == "create"

    def test_internal_errors_are_outside_taxonomy(self):
        assert not issubclass(InvariantViolationError, BrokerError)


@pytest.mark.unit
class TestCatalog:
    """Test catalog lookups and the plan update graph."""

    def test_get_plan(self, catalog: Catalog):
        service, plan = catalog.get_plan(SERVICE_ID, LARGE_PLAN_ID)
        assert service.name == "postgres"
        assert plan.name == "large"

    def test_unknown_service_and_plan(self, catalog: Catalog):
        with pytest.raises(ServiceNotFoundError):
            catalog.get_service("nope")
        with pytest.raises(PlanNotFoundError):
            catalog.get_plan(SERVICE_ID, "nope")
        with pytest.raises(PlanNotFoundError):
            catalog.find_plan("nope")

    def test_update_graph(self, catalog: Catalog):
        assert catalog.can_update(SERVICE_ID, SMALL_PLAN_ID, LARGE_PLAN_ID)
        assert catalog.can_update(SERVICE_ID, SMALL_PLAN_ID, SMALL_PLAN_ID)
        assert not catalog.can_update(SERVICE_ID, SMALL_PLAN_ID, ISOLATED_PLAN_ID)
        assert not catalog.can_update(SERVICE_ID, ISOLATED_PLAN_ID, SMALL_PLAN_ID)

    def test_service_without_plan_updates(self, catalog: Catalog):
        assert catalog.can_update(CACHE_SERVICE_ID, CACHE_PLAN_ID, CACHE_PLAN_ID)

    def test_parameter_names(self, catalog: Catalog):
        _, plan = catalog.find_plan(SMALL_PLAN_ID)
        assert plan.recognized_parameters() == {"storage_gb", "region"}
        assert plan.updatable_parameters() == {"storage_gb"}

    def test_catalog_is_immutable(self, catalog: Catalog):
        with pytest.raises(Exception):
            catalog.services = []


@pytest.mark.unit
class TestMessages:
    """Test boundary messages."""

    def test_wire_form_omits_empty_fields(self):
        assert ProvisionResponse(operation="op-1").to_wire() == {"operation": "op-1"}

    def test_bind_resource_app_guid_wins(self):
        request = BindRequest(
            service_id=SERVICE_ID,
            plan_id=SMALL_PLAN_ID,
            app_guid="legacy",
            bind_resource={"app_guid": "app-1"},
        )
        assert request.effective_app_guid == "app-1"
        assert BindRequest(service_id=SERVICE_ID, plan_id=SMALL_PLAN_ID, app_guid="legacy").effective_app_guid == "legacy"
