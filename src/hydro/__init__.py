"""Hydro Broker - asynchronous provisioning core for Open Service Broker implementations.

This package implements the lifecycle state machine that sits behind the broker
contract (catalog, provision, deprovision, bind, unbind, update, last operation,
instance and binding lookup) and reconciles concurrent, long-running operations
against an injected resource provisioner.

Key Components:
    - domain: Catalog, instance, binding and operation models, exceptions and ports
    - application: The broker orchestrator and its background worker pool
    - infrastructure: Storage handlers, registry/tracker stores, logging
    - config: Settings schema, settings loading and catalog loading
    - cli: Operator command-line interface

Usage:
    >>> from hydro.bootstrap import create_broker
    >>> async with create_broker(config, provisioner) as broker:
    ...     response = await broker.provision(instance_id, request, accepts_incomplete=True)
"""

__version__ = "0.1.0"
