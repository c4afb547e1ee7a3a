"""Domain ports implemented by infrastructure adapters."""

from hydro.domain.ports.authorization_port import AuthorizationPort
from hydro.domain.ports.logging_port import LoggingPort
from hydro.domain.ports.provisioner_port import ProvisionerPort
from hydro.domain.ports.registry_port import InstanceRegistryPort
from hydro.domain.ports.tracker_port import OperationTrackerPort

__all__: list[str] = [
    "AuthorizationPort",
    "InstanceRegistryPort",
    "LoggingPort",
    "OperationTrackerPort",
    "ProvisionerPort",
]
