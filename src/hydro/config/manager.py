"""Settings loading.

Settings come from an optional file (YAML, JSON or TOML) and from environment
variables prefixed with ``HYDRO_``; nested keys use a double underscore, e.g.
``HYDRO_STORAGE__TYPE=sqlite``. A ``.env`` file is honored.
"""

import os
from typing import Any, Optional

from dynaconf import Dynaconf
from pydantic import ValidationError

from hydro.config.schemas.app_schema import BrokerConfig
from hydro.infrastructure.logging.logger import get_logger

logger = get_logger(__name__)

SETTINGS_FILE_ENV = "HYDRO_SETTINGS_FILE"
_SECTIONS = ("storage", "logging", "operations")


class ConfigurationError(Exception):
    """Settings or catalog could not be loaded."""


def _normalize(raw: dict[str, Any]) -> dict[str, Any]:
    """Lower-case the keys Dynaconf upper-cases, leaving user-supplied maps alone."""
    data = {str(key).lower(): value for key, value in raw.items()}
    for section in _SECTIONS:
        if isinstance(data.get(section), dict):
            data[section] = {str(key).lower(): value for key, value in data[section].items()}
    data.pop("settings_file", None)
    return data


def load_settings(settings_file: Optional[str] = None) -> Dynaconf:
    settings_file = settings_file or os.environ.get(SETTINGS_FILE_ENV)
    if settings_file and not os.path.exists(settings_file):
        raise ConfigurationError(f"Configuration file not found: {settings_file}")
    return Dynaconf(
        envvar_prefix="HYDRO",
        settings_files=[settings_file] if settings_file else [],
        load_dotenv=True,
        merge_enabled=True,
    )


def load_config(settings_file: Optional[str] = None) -> BrokerConfig:
    """
    Load and validate the broker configuration.

    :param settings_file: Settings file path. Falls back to ``HYDRO_SETTINGS_FILE``.
    :return: Validated configuration.
    :raises ConfigurationError: If the file is missing or the values are invalid.
    """
    settings = load_settings(settings_file)
    try:
        config = BrokerConfig.model_validate(_normalize(settings.as_dict()))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid broker configuration: {e}") from e

    logger.info(
        "Configuration loaded",
        storage=config.storage.type,
        workers=config.operations.workers,
        catalog=config.catalog_path,
    )
    return config
