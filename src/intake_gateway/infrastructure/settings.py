"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with pipeline tuning knobs read from the
environment.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
    - Defaults are provided for development convenience
"""

import os
from typing import Dict, Optional

from intake_gateway.domain.models import SourceConfig
from intake_gateway.infrastructure.config_manager import ConfigManager, DatabaseConfig, load_config

# Application metadata
APP_NAME = "Intake-Gateway"
APP_VERSION = "1.0.0"

# Recent-patient window scanned by identity resolution
DEFAULT_DEDUP_WINDOW = 500

# Linear backoff for transient infrastructure steps
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 500

# Optimistic patient creation
DEFAULT_CREATE_MAX_ATTEMPTS = 5
DEFAULT_CREATE_DELAY_MS = 100


class Settings:
    """Application settings loaded from configuration manager and environment.

    Security Impact:
        - Source secrets are managed as SecretStr via SourceConfig
        - Settings are validated before use
        - Sensitive values are never exposed in logs
    """

    def __init__(self):
        """Initialize settings from configuration manager and environment."""
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("IG_APP_NAME", APP_NAME)
        self.log_level = os.getenv("IG_LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("IG_JSON_LOGS", "false").lower() == "true"

        # Identity resolution
        self.dedup_window = int(os.getenv("IG_DEDUP_WINDOW", str(DEFAULT_DEDUP_WINDOW)))
        self.create_max_attempts = int(os.getenv("IG_CREATE_MAX_ATTEMPTS", str(DEFAULT_CREATE_MAX_ATTEMPTS)))
        self.create_delay_ms = int(os.getenv("IG_CREATE_DELAY_MS", str(DEFAULT_CREATE_DELAY_MS)))

        # Retry / dead-letter
        self.retry_attempts = int(os.getenv("IG_RETRY_ATTEMPTS", str(DEFAULT_RETRY_ATTEMPTS)))
        self.retry_delay_ms = int(os.getenv("IG_RETRY_DELAY_MS", str(DEFAULT_RETRY_DELAY_MS)))
        self.dead_letter_path = os.getenv("IG_DEAD_LETTER_PATH", "data/dead_letters.jsonl")

        # Side effects
        self.object_store_dir = os.getenv("IG_OBJECT_STORE_DIR")
        self.notify_workers = int(os.getenv("IG_NOTIFY_WORKERS", "2"))
        self.affiliates_file = os.getenv("IG_AFFILIATES_FILE")

        # HTTP
        self.enable_hsts = os.getenv("IG_ENABLE_HSTS", "false").lower() == "true"

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance.

        Returns:
            ConfigManager instance
        """
        if self._config_manager is None:
            self._config_manager = load_config()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        """Get storage configuration, loaded lazily on first access."""
        return self.config_manager.get_database_config()

    @property
    def sources(self) -> Dict[str, SourceConfig]:
        return self.config_manager.get_source_configs()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        if self.db_config.db_type == "duckdb":
            return self.db_config.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_config.db_type}' does not use db_path")


# Global settings instance
settings = Settings()
