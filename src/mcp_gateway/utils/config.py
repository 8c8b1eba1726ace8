"""
Configuration management for MCP Gateway.

Hierarchical configuration loading with Pydantic validation. Values from TOML
files and explicit overrides win; environment variables (``MCP_GATEWAY_``
prefix, ``__`` as the nested delimiter) fill in whatever they leave unset.
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

import toml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="INFO", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default="mcp-gateway.log", description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Quiet HTTP access logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class VaultConfig(BaseModel):
    """Credential vault configuration."""

    master_secret: Optional[SecretStr] = Field(
        default=None,
        description="Server-held master secret used to derive per-profile keys",
    )
    previous_master_secrets: List[SecretStr] = Field(
        default_factory=list,
        description="Retired master secrets still accepted for decryption",
    )
    keyring_service: Optional[str] = Field(
        default="mcp-gateway",
        description="System keyring service to read the master secret from",
    )
    kdf_iterations: int = Field(default=200_000, description="PBKDF2 iterations")

    @field_validator("kdf_iterations")
    @classmethod
    def validate_iterations(cls, v: int) -> int:
        """Validate KDF work factor."""
        if v < 1000:
            raise ValueError("kdf_iterations must be at least 1000")
        return v


class AuthConfig(BaseModel):
    """API credential configuration."""

    key_prefix: str = Field(default="mgw_", description="Prefix of issued API keys")

    @field_validator("key_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Validate key prefix."""
        if not v or "." in v:
            raise ValueError("key_prefix must be non-empty and must not contain '.'")
        return v


class PackagesConfig(BaseModel):
    """Package install and command transform configuration."""

    store_dir: str = Field(
        default="~/.cache/mcp-gateway/packages",
        description="Root directory for per-connection package installs",
    )
    node_client: str = Field(default="pnpm", description="Node installer (pnpm/npm)")
    uv_binary: str = Field(default="uv", description="uv executable")
    docker_binary: str = Field(default="docker", description="docker executable")
    install_timeout: float = Field(default=300.0, description="Install timeout in seconds")
    transform_on_resolve: bool = Field(
        default=True,
        description="Install and rewrite STDIO commands during resolution",
    )

    @field_validator("node_client")
    @classmethod
    def validate_node_client(cls, v: str) -> str:
        """Validate Node installer choice."""
        if v not in ["pnpm", "npm"]:
            raise ValueError(f"Invalid node client: {v}")
        return v


class APIConfig(BaseModel):
    """HTTP server configuration."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    rate_limit_per_minute: int = Field(default=120, description="Requests per minute per client")
    rate_limit_per_hour: int = Field(default=5000, description="Requests per hour per client")
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="CORS origins",
    )


class Config(BaseSettings):
    """Main configuration class."""

    debug: bool = Field(default=False, description="Enable debug mode")
    config_dir: str = Field(
        default="~/.config/mcp-gateway",
        description="Configuration directory",
    )
    db_path: Optional[str] = Field(default=None, description="SQLite database path")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    packages: PackagesConfig = Field(default_factory=PackagesConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    model_config = {
        "env_prefix": "MCP_GATEWAY_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    def get_config_dir(self) -> Path:
        """Get configuration directory path."""
        return Path(os.path.expanduser(self.config_dir))

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_config_dir() / log_path
            return log_path
        return None

    def get_package_store_dir(self) -> Path:
        """Get the root directory for package installs."""
        return Path(os.path.expanduser(self.packages.store_dir))

    @property
    def database_path(self) -> Path:
        """Get database path."""
        if self.db_path:
            return Path(os.path.expanduser(self.db_path))
        return self.get_config_dir() / "mcp_gateway.db"


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[Config] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Config:
        """
        Load configuration from multiple sources.

        Args:
            config_files: Configuration files to load, later files win
            **overrides: Configuration overrides

        Returns:
            Loaded configuration
        """
        if self._config is not None:
            return self._config

        if config_files is None:
            config_files = [
                "/etc/mcp-gateway/config.toml",
                "~/.config/mcp-gateway/config.toml",
                "./.mcp-gateway.toml",
            ]

        config_data = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    config_data.update(toml.load(file_path))
                    logger.debug(f"Loaded configuration from {file_path}")
                except (toml.TomlDecodeError, OSError) as e:
                    logger.warning(f"Failed to load config from {file_path}: {e}")

        config_data.update(overrides)

        self._config = Config(**config_data)
        return self._config

    def get_config(self) -> Config:
        """Get current configuration."""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Config:
        """Reload configuration."""
        self._config = None
        return self.load_config(config_files, **overrides)


_config_manager = ConfigManager()

load_config = _config_manager.load_config
get_config = _config_manager.get_config
reload_config = _config_manager.reload_config
