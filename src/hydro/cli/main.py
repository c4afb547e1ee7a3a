"""Command line entry point for broker administration."""

import argparse
import asyncio
import sys
from typing import Optional, Sequence

from hydro import __version__
from hydro.bootstrap import create_broker, resolve_catalog
from hydro.cli.console import (
    print_error,
    print_info,
    print_json,
    print_success,
    print_table,
    print_warning,
)
from hydro.config.manager import ConfigurationError, load_config
from hydro.config.schemas.app_schema import BrokerConfig
from hydro.domain.exceptions import BrokerError
from hydro.infrastructure.logging.logger import setup_logging
from hydro.infrastructure.persistence.instance_registry import InstanceRegistry
from hydro.infrastructure.persistence.operation_tracker import OperationTracker
from hydro.infrastructure.storage.storage_factory import StorageFactory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hydro", description="Service broker administration")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help="Settings file (defaults to $HYDRO_SETTINGS_FILE)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    resources = parser.add_subparsers(dest="resource", required=True)

    resources.add_parser("catalog", help="Show advertised services and plans")
    resources.add_parser("instances", help="List service instances and their bindings")

    operations = resources.add_parser("operations", help="Manage operation records")
    actions = operations.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="List operations still in progress")
    purge = actions.add_parser("purge", help="Remove expired terminal operations")
    purge.add_argument(
        "--retention-seconds",
        type=float,
        help="Override the configured retention window",
    )
    actions.add_parser("recover", help="Fail operations interrupted by a restart")
    return parser


def show_catalog(config: BrokerConfig, as_json: bool) -> int:
    catalog = resolve_catalog(config)
    if as_json:
        print_json(catalog.to_response().model_dump(mode="json", exclude_none=True))
        return 0
    rows = [
        (service.name, service.id, plan.name, plan.id, ", ".join(plan.updates_to))
        for service in catalog.services
        for plan in service.plans
    ]
    print_table("Catalog", ("Service", "Service ID", "Plan", "Plan ID", "Updates to"), rows)
    return 0


def show_instances(config: BrokerConfig, as_json: bool) -> int:
    registry = InstanceRegistry(StorageFactory.create_storage_handler(config.storage))
    instances = registry.list_instances()
    if as_json:
        print_json([instance.to_record() for instance in instances])
        return 0
    if not instances:
        print_info("No service instances")
        return 0
    rows = [
        (
            instance.id,
            instance.service_id,
            instance.plan_id,
            instance.state.value,
            ", ".join(sorted(instance.binding_ids)),
        )
        for instance in instances
    ]
    print_table("Service instances", ("ID", "Service", "Plan", "State", "Bindings"), rows)
    return 0


def list_operations(config: BrokerConfig, as_json: bool) -> int:
    tracker = OperationTracker(StorageFactory.create_storage_handler(config.storage))
    records = tracker.list_active()
    if as_json:
        print_json([record.to_record() for record in records])
        return 0
    if not records:
        print_info("No operations in progress")
        return 0
    rows = [(record.token, record.kind.value, record.instance_id, record.binding_id) for record in records]
    print_table("Operations in progress", ("Token", "Kind", "Instance", "Binding"), rows)
    return 0


def purge_operations(config: BrokerConfig, retention_seconds: Optional[float], as_json: bool) -> int:
    tracker = OperationTracker(StorageFactory.create_storage_handler(config.storage))
    retention = retention_seconds if retention_seconds is not None else config.operations.retention_seconds
    purged = tracker.purge_expired(retention)
    if as_json:
        print_json({"purged": purged})
    else:
        print_success(f"Purged {purged} expired operation(s)")
    return 0


async def recover_operations(config: BrokerConfig, as_json: bool) -> int:
    async with create_broker(config, configure_logging=False, recover=False) as broker:
        recovered = await broker.recover_interrupted()
    if as_json:
        print_json({"recovered": recovered})
    elif recovered:
        print_warning(f"Failed {recovered} interrupted operation(s)")
    else:
        print_success("No interrupted operations")
    return 0


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run one administration command and return the exit code."""
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
        setup_logging(config.logging)

        if args.resource == "catalog":
            return show_catalog(config, args.json)
        if args.resource == "instances":
            return show_instances(config, args.json)
        if args.action == "list":
            return list_operations(config, args.json)
        if args.action == "purge":
            return purge_operations(config, args.retention_seconds, args.json)
        return await recover_operations(config, args.json)
    except (ConfigurationError, BrokerError) as e:
        print_error(str(e))
        return 1


def cli_main() -> None:
    """Entry point function for console scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli_main()
