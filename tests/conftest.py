"""Global test configuration and fixtures."""

import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hydro.application.broker import Broker
from hydro.application.dispatcher import OperationDispatcher
from hydro.domain.catalog import Catalog
from hydro.domain.messages import BindRequest, ProvisionRequest
from hydro.infrastructure.locking import AsyncKeyedLock
from hydro.infrastructure.persistence.instance_registry import InstanceRegistry
from hydro.infrastructure.persistence.operation_tracker import OperationTracker
from tests.fixtures.catalog_data import CATALOG_DATA, SERVICE_ID, SMALL_PLAN_ID
from tests.fixtures.mock_provisioner import MockProvisioner
from tests.fixtures.storage_handlers import FaultyMemoryHandler


@pytest.fixture
def catalog() -> Catalog:
    return Catalog.model_validate(CATALOG_DATA)


@pytest.fixture
def backend() -> FaultyMemoryHandler:
    return FaultyMemoryHandler()


@pytest.fixture
def registry(backend) -> InstanceRegistry:
    return InstanceRegistry(backend)


@pytest.fixture
def tracker(backend) -> OperationTracker:
    return OperationTracker(backend)


@pytest.fixture
def provisioner() -> MockProvisioner:
    return MockProvisioner()


@pytest_asyncio.fixture
async def dispatcher():
    dispatcher = OperationDispatcher(workers=4)
    await dispatcher.start()
    yield dispatcher
    await dispatcher.stop(drain=False)


@pytest_asyncio.fixture
async def broker(catalog, registry, tracker, provisioner, dispatcher) -> Broker:
    return Broker(
        catalog=catalog,
        registry=registry,
        tracker=tracker,
        provisioner=provisioner,
        dispatcher=dispatcher,
        locks=AsyncKeyedLock(),
    )


@pytest.fixture
def instance_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def provision_request() -> ProvisionRequest:
    return ProvisionRequest(
        service_id=SERVICE_ID,
        plan_id=SMALL_PLAN_ID,
        organization_guid="org-1",
        space_guid="space-1",
        context={"platform": "kubernetes", "namespace": "team-a"},
        parameters={"storage_gb": 10},
    )


@pytest.fixture
def bind_request() -> BindRequest:
    return BindRequest(
        service_id=SERVICE_ID,
        plan_id=SMALL_PLAN_ID,
        bind_resource={"app_guid": "app-1"},
        parameters={"role": "reader"},
    )
