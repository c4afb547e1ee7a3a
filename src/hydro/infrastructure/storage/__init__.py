from .memory_handler import MemoryHandler
from .storage_factory import StorageFactory
from .storage_handler_interface import TABLES, BaseStorageHandler

__all__: list[str] = ["TABLES", "BaseStorageHandler", "MemoryHandler", "StorageFactory"]
