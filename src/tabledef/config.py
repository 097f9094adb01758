"""
Configuration system for tabledef using Pydantic.
"""

import os
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .database.connection import ConnectionConfig
from .exceptions import ConfigurationError, DatabaseConfigurationError
from .schema.operations import OperationMode


class DatabaseConnection(BaseModel):
    """Database connection configuration."""

    host: str = Field(..., description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field(..., description="Database password")
    ssl_mode: str = Field("prefer", description="SSL mode")
    command_timeout: int = Field(60, description="Command timeout in seconds")
    min_pool_size: int = Field(2, description="Minimum connections in pool")
    max_pool_size: int = Field(10, description="Maximum connections in pool")

    def to_connection_config(self) -> ConnectionConfig:
        try:
            return ConnectionConfig(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                ssl_mode=self.ssl_mode,
                command_timeout=self.command_timeout,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
        except ValidationError as e:
            raise DatabaseConfigurationError(f"Invalid database connection settings: {e}") from e


class SchemaManagementConfig(BaseModel):
    """Schema management configuration."""

    mode: Literal["execute", "dry_run"] = Field(
        "execute", description="Execute DDL or only report it"
    )
    physical_schema: str = Field("public", description="Schema holding the physical tables")
    metadata_schema: str = Field(
        "tabledef_metadata", description="Schema holding the logical table definitions"
    )
    backup_before_structural_changes: bool = Field(
        True, description="Back up non-empty tables before structural changes"
    )
    require_backup_when_forced: bool = Field(
        True, description="Abort a forced update when its backup cannot be created"
    )
    max_columns: int = Field(50, description="Maximum columns per table")

    @field_validator("physical_schema", "metadata_schema")
    @classmethod
    def validate_schema_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Schema name cannot be empty")
        return v.strip()

    @property
    def operation_mode(self) -> OperationMode:
        return OperationMode(self.mode)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")


class TabledefConfig(BaseSettings):
    """Main tabledef configuration."""

    service_name: str = Field("tabledef", description="Service name")
    debug: bool = Field(False, description="Enable debug mode")

    database: Optional[DatabaseConnection] = Field(
        None, description="Database connection"
    )
    schema_management: SchemaManagementConfig = Field(
        default_factory=SchemaManagementConfig,
        description="Schema management configuration",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TABLEDEF_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TabledefConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def require_database(self) -> DatabaseConnection:
        """The database section, which every database command needs."""
        if self.database is None:
            raise ConfigurationError("No database connection configured")
        return self.database

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(mode="json", exclude_none=True),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )
