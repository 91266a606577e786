"""Application Settings and Configuration.

Combines the database configuration from the configuration manager with
application settings read from ``FV_*`` environment variables.

Security Impact:
    - Database credentials are managed via DatabaseConfig (SecretStr)
    - Sensitive values are never logged
    - Defaults are provided for development convenience
"""

import os
from typing import Optional

from fhir_vault import __version__
from fhir_vault.domain.query import DEFAULT_COUNT
from fhir_vault.infrastructure.config_manager import ConfigManager, DatabaseConfig

APP_NAME = "FHIR-Vault"
APP_VERSION = __version__

DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_BIND_PORT = 8080


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


class Settings:
    """Application settings loaded from the environment.

    Attributes:
        app_name: Software name reported by ``/metadata``
        app_version: Software version reported by ``/metadata`` and ``/health``
        default_count: Page size when a search omits ``_count``
        log_level: Root logging level
        json_logs: Emit JSON log lines instead of human-readable ones
        bind_host / bind_port: Where ``fhir-vault serve`` listens
        base_url: Public base URL used in Bundle links; derived from the
                  request when unset
        cors_origins: Allowed CORS origins (comma-separated in the environment)
    """

    def __init__(self):
        self._db_config: Optional[DatabaseConfig] = None
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("FV_APP_NAME", APP_NAME)
        self.app_version = APP_VERSION
        self.default_count = int(os.getenv("FV_DEFAULT_COUNT", str(DEFAULT_COUNT)))

        self.log_level = os.getenv("FV_LOG_LEVEL", "INFO")
        self.json_logs = _env_bool("FV_JSON_LOGS", False)

        self.bind_host = os.getenv("FV_BIND_HOST", DEFAULT_BIND_HOST)
        self.bind_port = int(os.getenv("FV_BIND_PORT", str(DEFAULT_BIND_PORT)))
        self.base_url = os.getenv("FV_BASE_URL") or None

        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("FV_CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        """Database configuration, loaded lazily on first access."""
        if self._db_config is None:
            self._db_config = self.config_manager.get_database_config()
        return self._db_config


# Global settings instance
settings = Settings()
