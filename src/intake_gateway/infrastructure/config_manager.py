"""Configuration Manager for Secure Credential Handling.

This module provides a secure configuration manager for the storage backend
and the per-source webhook bindings (tenant binding, shared secrets, accepted
credential kinds).

Security Impact:
    - Secrets are held as SecretStr and never logged or exposed in error messages
    - Supports environment variables, .env files and JSON config files
    - Validates configuration before use
    - Prevents credential leakage in stack traces

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from intake_gateway.domain.models import CredentialKind, SourceConfig

logger = logging.getLogger(__name__)

# Built-in sources and their default static tenant binding (None = multi-tenant)
BUILTIN_SOURCES: Dict[str, Optional[str]] = {
    "wellmedr": "wellmedr",
    "overtime": "ot",
    "heyflow": None,
}

# Usernames vendors are known to send with Basic auth
DEFAULT_ACCEPTED_USERNAMES = ["intake_webhook", "heyflow_user", "heyflow_webhook"]


class DatabaseConfig(BaseModel):
    """Storage backend configuration.

    Parameters:
        db_type: Storage engine ('duckdb' or 'memory')
        db_path: Path to DuckDB database file (or ':memory:')
    """

    db_type: str = Field(default="duckdb", description="Storage engine (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate storage engine."""
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate database directory exists (if a path is provided)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")

        return str(db_path_obj)


class ConfigManager:
    """Secure configuration manager for storage and source settings.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        sources = config.get_source_configs()

        # Load from file
        config = ConfigManager.from_file("intake.json")
        db_config = config.get_database_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with 'database' and 'sources' sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._source_configs: Optional[Dict[str, SourceConfig]] = None

    @staticmethod
    def _load_dotenv() -> None:
        env_path = Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - IG_DB_TYPE: Storage engine (duckdb, memory)
            - IG_DB_PATH: Path to DuckDB database file
            - IG_<SOURCE>_TENANT: Static tenant subdomain for a built-in source
            - IG_<SOURCE>_EXPECTED_TENANT_ID: Pinned tenant id assertion
            - IG_<SOURCE>_SECRET: Shared secret (secret)
            - IG_<SOURCE>_AUTH_KINDS: Comma-separated credential kinds
            - IG_<SOURCE>_SIGNING_SECRET: HMAC signing secret (enables signature check)

        Returns:
            ConfigManager instance

        Security Impact:
            - Credentials are read from environment (never logged)
            - .env file in the working directory is loaded if present
        """
        cls._load_dotenv()

        sources: Dict[str, Dict[str, Any]] = {}
        for name, default_subdomain in BUILTIN_SOURCES.items():
            prefix = f"IG_{name.upper()}_"
            source: Dict[str, Any] = {
                "name": name,
                "tenant_subdomain": os.getenv(f"{prefix}TENANT", default_subdomain or "") or None,
                "secret": os.getenv(f"{prefix}SECRET"),
            }
            expected = os.getenv(f"{prefix}EXPECTED_TENANT_ID")
            if expected:
                source["expected_tenant_id"] = int(expected)
            auth_kinds = os.getenv(f"{prefix}AUTH_KINDS")
            if auth_kinds:
                source["auth_kinds"] = [k.strip() for k in auth_kinds.split(",") if k.strip()]
            elif default_subdomain is None:
                source["auth_kinds"] = [k.value for k in CredentialKind]
                source["accepted_usernames"] = list(DEFAULT_ACCEPTED_USERNAMES)
            signing_secret = os.getenv(f"{prefix}SIGNING_SECRET")
            if signing_secret:
                source["signing_secret"] = signing_secret
                source["require_signature"] = True
            sources[name] = source

        config_data = {
            "database": {
                "db_type": os.getenv("IG_DB_TYPE", "duckdb"),
                "db_path": os.getenv("IG_DB_PATH"),
            },
            "sources": sources,
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get storage configuration.

        Returns:
            DatabaseConfig instance
        """
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_source_configs(self) -> Dict[str, SourceConfig]:
        """Get per-source webhook bindings keyed by source name.

        Returns:
            Dict[str, SourceConfig]: Validated source bindings

        Security Impact:
            - Secrets are wrapped in SecretStr during validation
        """
        if self._source_configs is None:
            raw_sources = self._config_data.get("sources", {})
            configs: Dict[str, SourceConfig] = {}
            for name, raw in raw_sources.items():
                config = SourceConfig(**{"name": name, **raw})
                configs[config.name] = config
            self._source_configs = configs
            logger.debug(f"Loaded source bindings: {sorted(configs)}")
        return self._source_configs

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "database.db_path")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def load_config() -> ConfigManager:
    """Load configuration from IG_CONFIG_FILE if set, else from the environment."""
    config_file = os.getenv("IG_CONFIG_FILE")
    if config_file:
        return ConfigManager.from_file(config_file)
    return ConfigManager.from_environment()


def get_database_config() -> DatabaseConfig:
    return load_config().get_database_config()


def get_source_configs() -> List[SourceConfig]:
    return list(load_config().get_source_configs().values())
