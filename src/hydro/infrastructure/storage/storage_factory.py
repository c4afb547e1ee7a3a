import os

from hydro.config.schemas.app_schema import StorageConfig
from hydro.infrastructure.logging.logger import get_logger

from .dynamodb_handler import DynamoDBHandler
from .json_handler import JSONHandler
from .memory_handler import MemoryHandler
from .sqlite_handler import SQLiteHandler
from .storage_handler_interface import BaseStorageHandler
from .yaml_handler import YAMLHandler

logger = get_logger(__name__)


class StorageFactory:
    """
    Factory class to create storage handlers based on configuration.
    """

    @staticmethod
    def create_storage_handler(config: StorageConfig) -> BaseStorageHandler:
        """
        Create the storage backend named by the configuration.

        :param config: Storage settings.
        :return: A storage handler instance.
        :raises ValueError: If the storage type is unsupported.
        """
        storage_type = config.type.lower()

        if storage_type == "memory":
            backend = MemoryHandler()
        elif storage_type in ("json", "yaml", "sqlite"):
            os.makedirs(config.path, exist_ok=True)
            file_path = os.path.join(config.path, config.resolved_file_name)
            if storage_type == "json":
                backend = JSONHandler(file_path)
            elif storage_type == "yaml":
                backend = YAMLHandler(file_path)
            else:
                backend = SQLiteHandler(file_path)
        elif storage_type == "dynamodb":
            backend = DynamoDBHandler(config.region, config.table_prefix, config.endpoint_url)
            backend.create_tables()
        else:
            raise ValueError(f"Unsupported storage type: {storage_type}")

        logger.info("Storage backend created", type=storage_type)
        return backend
