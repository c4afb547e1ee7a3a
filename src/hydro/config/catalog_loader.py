"""Catalog file loading."""

import json
import os
from typing import Any

import yaml
from pydantic import ValidationError

from hydro.config.manager import ConfigurationError
from hydro.domain.catalog import Catalog
from hydro.infrastructure.logging.logger import get_logger

logger = get_logger(__name__)


def parse_catalog(data: Any) -> Catalog:
    """Validate raw catalog data of the form ``{"services": [...]}``."""
    if not isinstance(data, dict) or "services" not in data:
        raise ConfigurationError("Invalid catalog: expected a mapping with a 'services' list.")
    try:
        catalog = Catalog.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid catalog: {e}") from e

    plan_ids = [plan.id for service in catalog.services for plan in service.plans]
    duplicates = {plan_id for plan_id in plan_ids if plan_ids.count(plan_id) > 1}
    if duplicates:
        raise ConfigurationError(f"Invalid catalog: duplicate plan ids {sorted(duplicates)}")
    return catalog


def load_catalog(path: str) -> Catalog:
    """
    Load the catalog from a YAML or JSON file.

    :param path: Catalog file path; ``.json`` files are parsed as JSON, anything else as YAML.
    :return: The immutable catalog.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Catalog file not found: {path}")

    with open(path, "r") as f:
        try:
            data = json.load(f) if path.endswith(".json") else yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Catalog file {path} could not be parsed: {e}") from e

    catalog = parse_catalog(data)
    logger.info(
        "Catalog loaded",
        path=path,
        services=len(catalog.services),
        plans=sum(len(service.plans) for service in catalog.services),
    )
    return catalog
