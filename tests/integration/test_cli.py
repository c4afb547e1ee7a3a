"""Integration tests for the administration CLI."""

import json

import pytest
import yaml

from hydro.cli.main import build_parser, main
from hydro.config.schemas.app_schema import LoggingConfig, StorageConfig
from hydro.domain.instance import ServiceInstance
from hydro.domain.operation import OperationKind, OperationState
from hydro.infrastructure.logging.logger import setup_logging
from hydro.infrastructure.persistence.instance_registry import InstanceRegistry
from hydro.infrastructure.persistence.operation_tracker import OperationTracker
from hydro.infrastructure.storage.storage_factory import StorageFactory
from tests.fixtures.catalog_data import CATALOG_DATA, SERVICE_ID, SMALL_PLAN_ID


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    for name in ("HYDRO_SETTINGS_FILE", "HYDRO_STORAGE__TYPE", "HYDRO_OPERATIONS__WORKERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HYDRO_CONSOLE_ENABLED", "false")
    monkeypatch.chdir(tmp_path)
    setup_logging(LoggingConfig(destination="file", log_dir=str(tmp_path / "logs")))


@pytest.fixture
def storage(tmp_path) -> StorageConfig:
    return StorageConfig(type="sqlite", path=str(tmp_path / "data"))


@pytest.fixture
def settings_file(tmp_path, storage) -> str:
    catalog_path = tmp_path / "catalog.yml"
    catalog_path.write_text(yaml.safe_dump(CATALOG_DATA))
    settings = {
        "catalog_path": str(catalog_path),
        "provisioner": "tests.fixtures.mock_provisioner:MockProvisioner",
        "storage": {"type": storage.type, "path": storage.path},
        "logging": {"destination": "file", "log_dir": str(tmp_path / "logs")},
    }
    path = tmp_path / "settings.yml"
    path.write_text(yaml.safe_dump(settings))
    return str(path)


async def run_json(capsys, settings_file, *args):
    code = await main(["-c", settings_file, "--json", *args])
    return code, json.loads(capsys.readouterr().out)


@pytest.mark.integration
class TestCLI:
    """Test the hydro command line."""

    def test_parser_requires_resource(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    @pytest.mark.asyncio
    async def test_catalog(self, capsys, settings_file):
        code, output = await run_json(capsys, settings_file, "catalog")

        assert code == 0
        assert [service["name"] for service in output["services"]] == ["postgres", "redis"]

    @pytest.mark.asyncio
    async def test_instances(self, capsys, settings_file, storage):
        registry = InstanceRegistry(StorageFactory.create_storage_handler(storage))
        registry.put_instance(ServiceInstance(id="inst-1", service_id=SERVICE_ID, plan_id=SMALL_PLAN_ID))

        code, output = await run_json(capsys, settings_file, "instances")

        assert code == 0
        assert [instance["id"] for instance in output] == ["inst-1"]
        assert output[0]["state"] == "provisioning"

    @pytest.mark.asyncio
    async def test_operations_list_and_recover(self, capsys, settings_file, storage):
        backend = StorageFactory.create_storage_handler(storage)
        InstanceRegistry(backend).put_instance(
            ServiceInstance(id="inst-1", service_id=SERVICE_ID, plan_id=SMALL_PLAN_ID)
        )
        token = OperationTracker(backend).begin("inst-1", OperationKind.PROVISION)

        code, output = await run_json(capsys, settings_file, "operations", "list")
        assert code == 0
        assert [record["token"] for record in output] == [token]

        code, output = await run_json(capsys, settings_file, "operations", "recover")
        assert code == 0
        assert output == {"recovered": 1}

        code, output = await run_json(capsys, settings_file, "operations", "list")
        assert output == []

    @pytest.mark.asyncio
    async def test_operations_purge(self, capsys, settings_file, storage):
        tracker = OperationTracker(StorageFactory.create_storage_handler(storage))
        token = tracker.begin("inst-1", OperationKind.DEPROVISION)
        tracker.complete(token, OperationState.SUCCEEDED)

        code, output = await run_json(capsys, settings_file, "operations", "purge")
        assert (code, output) == (0, {"purged": 0})

        code, output = await run_json(
            capsys, settings_file, "operations", "purge", "--retention-seconds", "0"
        )
        assert (code, output) == (0, {"purged": 1})

    @pytest.mark.asyncio
    async def test_missing_settings_file(self, tmp_path):
        assert await main(["-c", str(tmp_path / "missing.yml"), "catalog"]) == 1
