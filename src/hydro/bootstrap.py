"""Wiring of the broker and its collaborators from configuration."""

import importlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from hydro.application.broker import Broker
from hydro.application.dispatcher import OperationDispatcher
from hydro.application.retention import RetentionSweeper
from hydro.config.catalog_loader import load_catalog
from hydro.config.manager import ConfigurationError
from hydro.config.schemas.app_schema import BrokerConfig
from hydro.domain.catalog import Catalog
from hydro.domain.ports.authorization_port import AuthorizationPort
from hydro.domain.ports.provisioner_port import ProvisionerPort
from hydro.infrastructure.adapters.authorization_adapter import (
    AllowAllAuthorizer,
    NamespaceAuthorizer,
)
from hydro.infrastructure.adapters.logging_adapter import LoggingAdapter
from hydro.infrastructure.locking import AsyncKeyedLock
from hydro.infrastructure.logging.logger import setup_logging
from hydro.infrastructure.persistence.instance_registry import InstanceRegistry
from hydro.infrastructure.persistence.operation_tracker import OperationTracker
from hydro.infrastructure.storage.storage_factory import StorageFactory


def load_provisioner(path: str) -> ProvisionerPort:
    """
    Instantiate a provisioner from an import path.

    :param path: ``"package.module:ClassName"``; the class is called without arguments.
    :raises ConfigurationError: If the path cannot be resolved to a ProvisionerPort.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Invalid provisioner path {path!r}, expected 'module:ClassName'")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load provisioner {path}: {e}") from e
    provisioner = factory()
    if not isinstance(provisioner, ProvisionerPort):
        raise ConfigurationError(f"{path} does not implement ProvisionerPort")
    return provisioner


def create_authorizer(config: BrokerConfig) -> AuthorizationPort:
    if config.authorization:
        return NamespaceAuthorizer(config.authorization)
    return AllowAllAuthorizer()


def resolve_catalog(config: BrokerConfig, catalog: Optional[Catalog] = None) -> Catalog:
    if catalog is not None:
        return catalog
    if not config.catalog_path:
        raise ConfigurationError("No catalog given and catalog_path is not configured")
    return load_catalog(config.catalog_path)


@asynccontextmanager
async def create_broker(
    config: BrokerConfig,
    provisioner: Optional[ProvisionerPort] = None,
    catalog: Optional[Catalog] = None,
    configure_logging: bool = True,
    recover: bool = True,
) -> AsyncIterator[Broker]:
    """
    Build a running broker.

    Starts the worker pool and the retention sweeper, fails operations a
    previous process left in progress, and shuts everything down on exit
    after the queued jobs have finished.

    Example:
        async with create_broker(load_config(), MyProvisioner()) as broker:
            response = await broker.provision(instance_id, request)
    """
    if configure_logging:
        setup_logging(config.logging)
    logger = LoggingAdapter("hydro.bootstrap")

    if provisioner is None:
        if not config.provisioner:
            raise ConfigurationError("No provisioner given and provisioner is not configured")
        provisioner = load_provisioner(config.provisioner)
    catalog = resolve_catalog(config, catalog)
    backend = StorageFactory.create_storage_handler(config.storage)
    tracker = OperationTracker(backend)
    dispatcher = OperationDispatcher(
        workers=config.operations.workers,
        job_timeout=config.operations.timeout_seconds,
    )
    sweeper = RetentionSweeper(
        tracker,
        retention_seconds=config.operations.retention_seconds,
        interval_seconds=config.operations.sweep_interval_seconds,
    )
    broker = Broker(
        catalog=catalog,
        registry=InstanceRegistry(backend),
        tracker=tracker,
        provisioner=provisioner,
        dispatcher=dispatcher,
        locks=AsyncKeyedLock(),
        authorizer=create_authorizer(config),
    )

    await dispatcher.start()
    await sweeper.start()
    try:
        recovered = await broker.recover_interrupted() if recover else 0
        logger.info("Broker ready", storage=config.storage.type, recovered=recovered)
        yield broker
    finally:
        await sweeper.stop()
        await dispatcher.stop(drain=True)
        logger.info("Broker stopped")
