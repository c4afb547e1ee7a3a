"""Unit tests for settings and catalog loading."""

import json

import pytest
import yaml

from hydro.config.catalog_loader import load_catalog, parse_catalog
from hydro.config.manager import ConfigurationError, load_config
from hydro.config.schemas.app_schema import BrokerConfig, StorageConfig
from tests.fixtures.catalog_data import CATALOG_DATA, SMALL_PLAN_ID


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    for name in ("HYDRO_SETTINGS_FILE", "HYDRO_STORAGE__TYPE", "HYDRO_OPERATIONS__WORKERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.mark.unit
class TestLoadConfig:
    """Test configuration loading through Dynaconf."""

    def test_defaults(self):
        config = load_config()
        assert config.storage.type == "memory"
        assert config.operations.workers == 4
        assert config.operations.retention_seconds == 86400
        assert config.authorization == {}

    def test_settings_file(self, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text(
            yaml.safe_dump(
                {
                    "catalog_path": "catalog.yaml",
                    "storage": {"type": "sqlite", "path": str(tmp_path)},
                    "operations": {"workers": 2, "timeout_seconds": 30},
                    "authorization": {"alice": ["team-a"]},
                }
            )
        )

        config = load_config(str(settings))

        assert config.catalog_path == "catalog.yaml"
        assert config.storage.type == "sqlite"
        assert config.operations.workers == 2
        assert config.operations.timeout_seconds == 30
        assert config.authorization == {"alice": ["team-a"]}

    def test_settings_file_from_environment(self, tmp_path, monkeypatch):
        settings = tmp_path / "settings.yaml"
        settings.write_text(yaml.safe_dump({"storage": {"type": "json"}}))
        monkeypatch.setenv("HYDRO_SETTINGS_FILE", str(settings))

        assert load_config().storage.type == "json"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HYDRO_STORAGE__TYPE", "yaml")
        monkeypatch.setenv("HYDRO_OPERATIONS__WORKERS", "8")

        config = load_config()

        assert config.storage.type == "yaml"
        assert config.operations.workers == 8

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_values(self, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text(yaml.safe_dump({"storage": {"type": "postgres"}}))
        with pytest.raises(ConfigurationError, match="Invalid broker configuration"):
            load_config(str(settings))

    def test_file_name_defaults_per_type(self):
        assert StorageConfig(type="sqlite").resolved_file_name == "hydro_database.sqlite"
        assert StorageConfig(type="json", file_name="x.json").resolved_file_name == "x.json"

    def test_dynamodb_requires_prefix(self):
        with pytest.raises(ValueError):
            BrokerConfig(storage={"type": "dynamodb", "table_prefix": ""})


@pytest.mark.unit
class TestCatalogLoader:
    """Test catalog files."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(yaml.safe_dump(CATALOG_DATA))

        catalog = load_catalog(str(path))

        assert [service.name for service in catalog.services] == ["postgres", "redis"]
        assert catalog.find_plan(SMALL_PLAN_ID)[1].name == "small"

    def test_load_json(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(CATALOG_DATA))
        assert len(load_catalog(str(path)).services) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_catalog(str(tmp_path / "nope.yaml"))

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text("{")
        with pytest.raises(ConfigurationError, match="could not be parsed"):
            load_catalog(str(path))

    def test_requires_services(self):
        with pytest.raises(ConfigurationError, match="services"):
            parse_catalog({"plans": []})

    def test_rejects_duplicate_plan_ids(self):
        data = {
            "services": [
                {"id": "s1", "name": "one", "plans": [{"id": "p", "name": "a"}]},
                {"id": "s2", "name": "two", "plans": [{"id": "p", "name": "b"}]},
            ]
        }
        with pytest.raises(ConfigurationError, match="duplicate plan ids"):
            parse_catalog(data)
