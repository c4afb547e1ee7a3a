from .instance_registry import InstanceRegistry
from .operation_tracker import OperationTracker

__all__: list[str] = ["InstanceRegistry", "OperationTracker"]
