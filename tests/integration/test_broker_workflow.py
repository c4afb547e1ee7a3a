"""Integration tests running the broker as assembled from configuration."""

import pytest
from moto import mock_aws

from hydro.bootstrap import create_authorizer, create_broker, load_provisioner
from hydro.config.manager import ConfigurationError
from hydro.config.schemas.app_schema import BrokerConfig, OperationsConfig, StorageConfig
from hydro.domain.exceptions import AdapterFailureError, InstanceNotFoundError
from hydro.domain.instance import InstanceState, ServiceInstance
from hydro.domain.messages import LastOperationRequest, UpdateRequest
from hydro.domain.operation import OperationKind
from hydro.infrastructure.adapters.authorization_adapter import (
    AllowAllAuthorizer,
    NamespaceAuthorizer,
)
from hydro.infrastructure.persistence.instance_registry import InstanceRegistry
from hydro.infrastructure.persistence.operation_tracker import OperationTracker
from hydro.infrastructure.storage.storage_factory import StorageFactory
from tests.fixtures.catalog_data import LARGE_PLAN_ID, SERVICE_ID, SMALL_PLAN_ID
from tests.fixtures.mock_provisioner import MockProvisioner
from tests.fixtures.polling import wait_for_operation


async def run_lifecycle(broker, provision_request, bind_request) -> None:
    """Provision, bind, update, unbind and deprovision one instance."""
    response = await broker.provision("inst-1", provision_request, accepts_incomplete=True)
    assert (await wait_for_operation(broker, "inst-1", response.operation)).state == "succeeded"

    bound, created = await broker.bind("inst-1", "bind-1", bind_request)
    assert created
    assert bound.credentials["username"] == "user-bind-1"

    await broker.update("inst-1", UpdateRequest(service_id=SERVICE_ID, plan_id=LARGE_PLAN_ID))
    assert broker.get_service_instance("inst-1").plan_id == LARGE_PLAN_ID

    await broker.unbind("inst-1", "bind-1")
    await broker.deprovision("inst-1")
    with pytest.raises(InstanceNotFoundError):
        broker.get_service_instance("inst-1")


@pytest.mark.integration
class TestBrokerWorkflow:
    """Test the complete lifecycle on each storage backend."""

    @pytest.mark.asyncio
    async def test_lifecycle_in_memory(self, catalog, provision_request, bind_request):
        provisioner = MockProvisioner()
        async with create_broker(
            BrokerConfig(), provisioner=provisioner, catalog=catalog, configure_logging=False
        ) as broker:
            await run_lifecycle(broker, provision_request, bind_request)

        assert [name for name, _, _ in provisioner.calls] == ["create", "bind", "reconfigure", "unbind", "destroy"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("storage_type", ["json", "yaml", "sqlite"])
    async def test_lifecycle_on_file_storage(self, tmp_path, catalog, provision_request, bind_request, storage_type):
        config = BrokerConfig(storage=StorageConfig(type=storage_type, path=str(tmp_path)))
        async with create_broker(
            config, provisioner=MockProvisioner(), catalog=catalog, configure_logging=False
        ) as broker:
            await run_lifecycle(broker, provision_request, bind_request)

    @pytest.mark.asyncio
    async def test_queued_jobs_finish_before_shutdown(self, catalog, provision_request):
        provisioner = MockProvisioner()
        provisioner.delay = 0.05
        async with create_broker(
            BrokerConfig(), provisioner=provisioner, catalog=catalog, configure_logging=False
        ) as broker:
            response = await broker.provision("inst-1", provision_request, accepts_incomplete=True)

        request = LastOperationRequest(operation=response.operation)
        assert broker.last_operation("inst-1", request).state == "succeeded"

    @pytest.mark.asyncio
    async def test_job_timeout_fails_operation(self, catalog, provision_request):
        provisioner = MockProvisioner()
        provisioner.hold("create")
        config = BrokerConfig(operations=OperationsConfig(timeout_seconds=0.05))
        async with create_broker(
            config, provisioner=provisioner, catalog=catalog, configure_logging=False
        ) as broker:
            with pytest.raises(AdapterFailureError):
                await broker.provision("inst-1", provision_request)

            assert broker.last_operation("inst-1").state == "failed"
            with pytest.raises(InstanceNotFoundError):
                broker.get_service_instance("inst-1")


@pytest.mark.integration
class TestRestartRecovery:
    """Operations persisted by a stopped process are failed on startup."""

    @pytest.mark.asyncio
    async def test_interrupted_provision_on_sqlite(self, tmp_path, catalog, provision_request):
        config = BrokerConfig(storage=StorageConfig(type="sqlite", path=str(tmp_path)))
        backend = StorageFactory.create_storage_handler(config.storage)
        InstanceRegistry(backend).put_instance(
            ServiceInstance(id="inst-1", service_id=SERVICE_ID, plan_id=SMALL_PLAN_ID)
        )
        token = OperationTracker(backend).begin("inst-1", OperationKind.PROVISION)

        async with create_broker(
            config, provisioner=MockProvisioner(), catalog=catalog, configure_logging=False
        ) as broker:
            status = broker.last_operation("inst-1", LastOperationRequest(operation=token))
            assert status.state == "failed"
            assert status.description == "interrupted by broker restart"
            with pytest.raises(InstanceNotFoundError):
                broker.get_service_instance("inst-1")

            await broker.provision("inst-1", provision_request)
            assert broker.get_service_instance("inst-1").state is InstanceState.PROVISIONED


@pytest.mark.integration
@pytest.mark.aws
class TestDynamoDBBackend:
    """Test the broker against DynamoDB tables created on startup."""

    @pytest.fixture(autouse=True)
    def aws_credentials(self, monkeypatch):
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
        monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
        monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")

    @pytest.mark.asyncio
    async def test_lifecycle_on_dynamodb(self, catalog, provision_request, bind_request):
        config = BrokerConfig(storage=StorageConfig(type="dynamodb", table_prefix="hydro-test"))
        with mock_aws():
            async with create_broker(
                config, provisioner=MockProvisioner(), catalog=catalog, configure_logging=False
            ) as broker:
                await run_lifecycle(broker, provision_request, bind_request)


@pytest.mark.integration
class TestBootstrapHelpers:
    def test_load_provisioner(self):
        provisioner = load_provisioner("tests.fixtures.mock_provisioner:MockProvisioner")
        assert isinstance(provisioner, MockProvisioner)

    @pytest.mark.parametrize(
        "path",
        [
            "tests.fixtures.mock_provisioner",
            "tests.fixtures.no_such_module:Provisioner",
            "tests.fixtures.mock_provisioner:Missing",
            "collections:OrderedDict",
        ],
    )
    def test_load_provisioner_errors(self, path):
        with pytest.raises(ConfigurationError):
            load_provisioner(path)

    @pytest.mark.asyncio
    async def test_provisioner_from_configuration(self, catalog, provision_request):
        config = BrokerConfig(provisioner="tests.fixtures.mock_provisioner:MockProvisioner")
        async with create_broker(config, catalog=catalog, configure_logging=False) as broker:
            response = await broker.provision("inst-1", provision_request)
        assert response.dashboard_url == "https://dashboard.example.com/inst-1"

    @pytest.mark.asyncio
    async def test_missing_provisioner(self, catalog):
        with pytest.raises(ConfigurationError):
            async with create_broker(BrokerConfig(), catalog=catalog, configure_logging=False):
                pass

    def test_authorizer_selection(self):
        assert isinstance(create_authorizer(BrokerConfig()), AllowAllAuthorizer)
        config = BrokerConfig(authorization={"alice": ["team-a"]})
        assert isinstance(create_authorizer(config), NamespaceAuthorizer)
