"""Broker configuration schema."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """Backend for instance, binding and operation records."""

    type: Literal["memory", "json", "yaml", "sqlite", "dynamodb"] = Field(
        "memory", description="Storage backend type"
    )
    path: str = Field("./data", description="Directory for file-based backends")
    file_name: Optional[str] = Field(None, description="Database file name for file-based backends")
    table_prefix: str = Field("hydro", description="DynamoDB table name prefix")
    region: str = Field("us-east-1", description="AWS region for DynamoDB")
    endpoint_url: Optional[str] = Field(None, description="Override endpoint for DynamoDB")

    @property
    def resolved_file_name(self) -> str:
        return self.file_name or f"hydro_database.{self.type}"


class LoggingConfig(BaseModel):
    level: str = Field("INFO", description="Log level")
    destination: Literal["file", "stdout", "both"] = Field("stdout", description="Where to send logs")
    log_dir: str = Field("./logs", description="Directory for the log file")
    log_filename: str = Field("hydro.log", description="Log file name")
    renderer: Literal["console", "json"] = Field("console", description="Log line format")


class OperationsConfig(BaseModel):
    """Background worker pool and operation record retention."""

    workers: int = Field(4, ge=1, description="Number of background worker tasks")
    retention_seconds: float = Field(
        86400.0, gt=0, description="How long terminal operations stay pollable"
    )
    sweep_interval_seconds: float = Field(
        300.0, ge=0, description="Retention sweep interval, 0 disables the sweeper"
    )
    timeout_seconds: Optional[float] = Field(
        None, gt=0, description="Fail a provisioner call that runs longer than this"
    )


class BrokerConfig(BaseModel):
    """Top-level broker configuration."""

    catalog_path: Optional[str] = Field(None, description="YAML or JSON catalog file")
    provisioner: Optional[str] = Field(
        None, description="Provisioner class as 'package.module:ClassName'"
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    operations: OperationsConfig = Field(default_factory=OperationsConfig)
    authorization: dict[str, list[str]] = Field(
        default_factory=dict,
        description="User to namespace grants; empty allows everyone",
    )

    @model_validator(mode="after")
    def validate_storage(self) -> "BrokerConfig":
        if self.storage.type == "dynamodb" and not self.storage.table_prefix:
            raise ValueError("storage.table_prefix is required for DynamoDB")
        return self
