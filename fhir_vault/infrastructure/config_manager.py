"""Configuration Manager for Ledger Backends and Credentials.

Loads the storage backend selection and its connection settings from
environment variables or a JSON file, keeping credentials out of logs and
error messages.

Security Impact:
    - Passwords and connection strings are SecretStr (never logged)
    - Configuration is validated before any adapter is built
    - Config files with permissive modes are flagged

Architecture:
    - Infrastructure layer; the domain never imports it
    - Type-safe configuration using Pydantic
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

SUPPORTED_DB_TYPES = ("memory", "duckdb", "postgresql")

DEFAULT_DB_TYPE = "duckdb"
DEFAULT_DB_PATH = "fhir_vault.duckdb"

ENV_PREFIX = "FV_"


class DatabaseConfig(BaseModel):
    """Backend selection plus connection settings.

    Parameters:
        db_type: One of ``memory``, ``duckdb``, ``postgresql``
        db_path: DuckDB file path (``:memory:`` for an in-process database);
                 defaults to ``fhir_vault.duckdb`` in the working directory
        host: PostgreSQL host
        port: PostgreSQL port
        database: PostgreSQL database name
        username: PostgreSQL user
        password: PostgreSQL password (SecretStr - never logged)
        connection_string: Full PostgreSQL URL (SecretStr - never logged)
        ssl_mode: SSL mode (require, prefer, disable)
        pool_size: Base connection pool size
        max_overflow: Extra connections allowed above ``pool_size``
    """

    db_type: str = Field(DEFAULT_DB_TYPE, description="Ledger backend (memory, duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Full connection string (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode (require, prefer, disable)")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")
    max_overflow: int = Field(default=10, ge=0, description="Maximum connection pool overflow")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {list(SUPPORTED_DB_TYPES)}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Require the parent directory of a file database to exist."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @staticmethod
    def _parse_postgresql_connection_string(conn_str: str) -> Dict[str, Any]:
        """Split a ``postgresql://`` or ``postgres://`` URL into its parts.

        Raises:
            ValueError: If the scheme is not a PostgreSQL one
        """
        parsed = urlparse(conn_str)
        if parsed.scheme not in ("postgresql", "postgres"):
            raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")

        result: Dict[str, Any] = {
            "host": parsed.hostname,
            "port": parsed.port,
            "database": parsed.path.lstrip("/") if parsed.path else None,
            "username": unquote(parsed.username) if parsed.username else None,
            "password": unquote(parsed.password) if parsed.password else None,
        }
        query_params = parse_qs(parsed.query)
        if "sslmode" in query_params:
            result["ssl_mode"] = query_params["sslmode"][0]
        return result

    @model_validator(mode="after")
    def default_duckdb_file(self) -> "DatabaseConfig":
        """Give a DuckDB backend without a path the default database file."""
        if self.db_type == "duckdb" and self.db_path is None:
            self.db_path = DEFAULT_DB_PATH
        return self

    @model_validator(mode="after")
    def sync_connection_string_and_fields(self) -> "DatabaseConfig":
        """Keep ``connection_string`` and the individual fields consistent.

        A connection string always wins over individual fields. When only
        individual fields are given, a connection string is built from them.
        """
        if self.db_type != "postgresql":
            return self

        if self.connection_string:
            try:
                parsed = self._parse_postgresql_connection_string(self.connection_string.get_secret_value())
            except ValueError as e:
                logger.warning(f"Failed to parse connection string, using as-is: {str(e)}")
                return self

            for field_name in ("host", "port", "database", "username", "ssl_mode"):
                if parsed.get(field_name):
                    setattr(self, field_name, parsed[field_name])
            if parsed.get("password"):
                self.password = SecretStr(parsed["password"])

        elif self.host and self.database:
            self.connection_string = SecretStr(self._build_url())

        return self

    def _build_url(self) -> str:
        password_part = ""
        if self.password:
            password_part = f":{quote_plus(self.password.get_secret_value())}"
        username_part = quote_plus(self.username) if self.username else ""
        ssl_part = f"?sslmode={self.ssl_mode}" if self.ssl_mode else ""
        return f"postgresql://{username_part}{password_part}@{self.host}:{self.port or 5432}/{self.database}{ssl_part}"

    def get_connection_string(self) -> str:
        """Connection target appropriate for the backend.

        Raises:
            ValueError: For PostgreSQL without host and database
        """
        if self.db_type == "memory":
            return ":memory:"
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"
        if self.connection_string:
            return self.connection_string.get_secret_value()
        if not all([self.host, self.database]):
            raise ValueError("postgresql requires host and database")
        return self._build_url()

    def describe(self) -> str:
        """Credential-free description, safe to log or print."""
        if self.db_type == "memory":
            return "memory"
        if self.db_type == "duckdb":
            return f"duckdb ({self.db_path or ':memory:'})"
        return f"postgresql ({self.host or '?'}:{self.port or 5432}/{self.database or '?'})"


class ConfigManager:
    """Configuration loader for the ledger backend.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        config = ConfigManager.from_file("config.json")
        db_config = config.get_database_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> "ConfigManager":
        """Load configuration from environment variables.

        Environment Variables:
            - FV_DB_TYPE: memory, duckdb or postgresql (default: duckdb)
            - FV_DB_PATH: DuckDB file path (default: fhir_vault.duckdb)
            - FV_DB_HOST / FV_DB_PORT / FV_DB_NAME: PostgreSQL location
            - FV_DB_USER / FV_DB_PASSWORD: PostgreSQL credentials (password is secret)
            - FV_DB_CONNECTION_STRING: Full PostgreSQL URL (secret)
            - FV_DB_SSL_MODE: SSL mode
            - FV_DB_POOL_SIZE / FV_DB_MAX_OVERFLOW: Pool sizing

        Parameters:
            env_file: Optional ``.env`` file; defaults to ``.env`` in the project root

        Security Impact:
            - Credentials are read from environment (never logged)
            - Existing environment variables are never overridden by the .env file
        """
        env_path = Path(env_file) if env_file else Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str) -> Optional[str]:
            value = os.getenv(f"{ENV_PREFIX}{name}")
            return value if value else None

        database: Dict[str, Any] = {
            "db_type": env("DB_TYPE") or DEFAULT_DB_TYPE,
            "db_path": env("DB_PATH"),
            "host": env("DB_HOST"),
            "port": int(env("DB_PORT")) if env("DB_PORT") else None,
            "database": env("DB_NAME"),
            "username": env("DB_USER"),
            "password": env("DB_PASSWORD"),
            "connection_string": env("DB_CONNECTION_STRING"),
            "ssl_mode": env("DB_SSL_MODE"),
        }
        if env("DB_POOL_SIZE"):
            database["pool_size"] = int(env("DB_POOL_SIZE"))
        if env("DB_MAX_OVERFLOW"):
            database["max_overflow"] = int(env("DB_MAX_OVERFLOW"))

        return cls({"database": database})

    @classmethod
    def from_file(cls, config_path: str) -> "ConfigManager":
        """Load configuration from a JSON file with a ``database`` section.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_file.stat().st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, "r") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Build (once) and return the validated DatabaseConfig."""
        if self._database_config is None:
            db_config_data = dict(self._config_data.get("database", {}))
            for secret in ("password", "connection_string"):
                if db_config_data.get(secret):
                    db_config_data[secret] = SecretStr(db_config_data[secret])
            self._database_config = DatabaseConfig(**db_config_data)
        return self._database_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``database.host``."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Load the database configuration from the environment.

    Defaults to a DuckDB file in the working directory when nothing is
    configured.
    """
    return ConfigManager.from_environment().get_database_config()
