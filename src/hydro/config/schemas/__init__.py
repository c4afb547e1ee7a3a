from hydro.config.schemas.app_schema import (
    BrokerConfig,
    LoggingConfig,
    OperationsConfig,
    StorageConfig,
)

__all__: list[str] = ["BrokerConfig", "LoggingConfig", "OperationsConfig", "StorageConfig"]
