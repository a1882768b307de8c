"""Application settings with Pydantic Settings validation.

Secrets (tokens, signing secret, database password) are loaded from .env file.
Non-sensitive configuration is loaded from config/main.yaml and config/*.yaml files.
All configs are automatically merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from slack_ingest.config.logging_config import get_logger
from slack_ingest.domain.backfill_constants import (
    COMPLETED_RETENTION_SECONDS,
    DEFAULT_DELAY_SECONDS,
    DEFAULT_PAGE_SIZE,
    FAILED_RETENTION_SECONDS,
    MAX_PAGE_SIZE,
    MAX_RECORD_AGE_SECONDS,
    MIN_DELAY_SECONDS,
    THREAD_REPLIES_LIMIT,
)

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "slack_ingest"

RETRY_MAX_ATTEMPTS_DEFAULT: Final[int] = 3
RETRY_BATCH_SIZE_DEFAULT: Final[int] = 100
RETRY_INTERVAL_SECONDS_DEFAULT: Final[float] = 300.0

BACKOFF_BASE_SECONDS_DEFAULT: Final[float] = 1.0
BACKOFF_MAX_SECONDS_DEFAULT: Final[float] = 30.0
RATE_LIMIT_MAX_ATTEMPTS_DEFAULT: Final[int] = 5

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path) -> dict[str, Any]:
    """Load JSON Schema from <config_dir>/schemas/.

    Args:
        schema_name: Schema name without extension (e.g., "main")
        config_dir: Configuration directory

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    config_dir: Path,
    file_path: str = "",
) -> None:
    """Validate config section against JSON Schema.

    Args:
        config: Configuration dictionary to validate
        schema_name: Name of schema to validate against
        config_dir: Configuration directory holding schemas/
        file_path: Optional file path for error messages

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path | str = "config") -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. config/main.yaml (main config)
    2. All other config/*.yaml files (sorted alphabetically)

    Each config is validated against its JSON Schema if available.

    Returns:
        Merged configuration dictionary
    """
    config_path = Path(config_dir)
    merged_config: dict[str, Any] = {}

    main_path = config_path / "main.yaml"
    if main_path.exists():
        try:
            with open(main_path, encoding="utf-8") as f:
                main_config = yaml.safe_load(f) or {}
            validate_config_section(main_config, "main", config_path, str(main_path))
            merged_config = main_config
            logger.debug("config_file_loaded", path=str(main_path), schema="main")
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(main_path),
                error=str(e),
            )

    yaml_files: list[Path] = []
    if config_path.is_dir():
        yaml_files = sorted(
            f for f in config_path.glob("*.yaml") if f.name != "main.yaml"
        )

        for yaml_file in yaml_files:
            schema_name = yaml_file.stem
            try:
                with open(yaml_file, encoding="utf-8") as f:
                    file_config = yaml.safe_load(f) or {}
                validate_config_section(
                    file_config, schema_name, config_path, str(yaml_file)
                )
                merged_config = deep_merge(merged_config, file_config)
                logger.debug(
                    "config_file_loaded",
                    path=str(yaml_file),
                    schema=schema_name,
                )
            except (yaml.YAMLError, OSError) as e:
                logger.warning(
                    "config_file_load_failed",
                    path=str(yaml_file),
                    error=str(e),
                )

    file_count = (1 if main_path.exists() else 0) + len(yaml_files)
    logger.info("config_load_complete", file_count=file_count)
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file.
    Non-sensitive config is loaded from config/*.yaml with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    slack_bot_token: SecretStr | None = Field(
        default=None, description="Slack Bot User OAuth Token (from .env)"
    )
    slack_signing_secret: SecretStr | None = Field(
        default=None, description="Slack request signing secret (from .env)"
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    @field_validator("slack_bot_token", "slack_signing_secret", mode="before")
    @classmethod
    def _reject_blank_secret(
        cls, value: SecretStr | str | None, info: ValidationInfo
    ) -> SecretStr | None:
        if value is None:
            return None

        if isinstance(value, SecretStr):
            secret_value = value.get_secret_value()
        else:
            secret_value = str(value)

        if not secret_value.strip():
            raise ValueError(f"{info.field_name} must not be empty")

        return value if isinstance(value, SecretStr) else SecretStr(secret_value)

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))

        backfill_config = config.get("backfill") or {}
        _assign("backfill_default_page_size", backfill_config.get("default_page_size"))
        _assign("backfill_max_page_size", backfill_config.get("max_page_size"))
        _assign(
            "backfill_default_delay_seconds",
            backfill_config.get("default_delay_seconds"),
        )
        _assign("backfill_min_delay_seconds", backfill_config.get("min_delay_seconds"))
        _assign("backfill_max_concurrency", backfill_config.get("max_concurrency"))
        _assign(
            "backfill_completed_retention_seconds",
            backfill_config.get("completed_retention_seconds"),
        )
        _assign(
            "backfill_failed_retention_seconds",
            backfill_config.get("failed_retention_seconds"),
        )
        _assign(
            "backfill_max_record_age_seconds",
            backfill_config.get("max_record_age_seconds"),
        )
        _assign(
            "backfill_thread_replies_limit",
            backfill_config.get("thread_replies_limit"),
        )

        retry_config = config.get("retry") or {}
        _assign("retry_max_attempts", retry_config.get("max_attempts"))
        _assign("retry_batch_size", retry_config.get("batch_size"))
        _assign("retry_interval_seconds", retry_config.get("interval_seconds"))

        slack_config = config.get("slack") or {}
        _assign("backoff_base_seconds", slack_config.get("backoff_base_seconds"))
        _assign("backoff_max_seconds", slack_config.get("backoff_max_seconds"))
        _assign("rate_limit_max_attempts", slack_config.get("rate_limit_max_attempts"))
        _assign(
            "webhook_signature_tolerance_seconds",
            slack_config.get("signature_tolerance_seconds"),
        )

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("log_json", logging_config.get("json"))

        metrics_config = config.get("metrics") or {}
        _assign("metrics_port", metrics_config.get("port"))

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/slack_ingest.db", description="SQLite database path"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="slack_ingest", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum number of connections in PostgreSQL pool",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum number of connections in PostgreSQL pool",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="PostgreSQL statement timeout in milliseconds",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="Application name for PostgreSQL connections",
    )
    postgres_ssl_mode: str | None = Field(
        default=None,
        description="Optional SSL mode for PostgreSQL connections (e.g., require)",
    )

    # Backfill configuration
    backfill_default_page_size: int = Field(
        default=DEFAULT_PAGE_SIZE,
        ge=1,
        description="Messages requested per conversations.history page",
    )
    backfill_max_page_size: int = Field(
        default=MAX_PAGE_SIZE,
        ge=1,
        description="Upper bound for the requested page size",
    )
    backfill_default_delay_seconds: float = Field(
        default=DEFAULT_DELAY_SECONDS,
        description="Delay between Slack requests during a backfill",
    )
    backfill_min_delay_seconds: float = Field(
        default=MIN_DELAY_SECONDS,
        ge=0.0,
        description="Lower bound for the inter-request delay",
    )
    backfill_max_concurrency: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Worker pool size for message processing inside a backfill",
    )
    backfill_completed_retention_seconds: float = Field(
        default=COMPLETED_RETENTION_SECONDS,
        description="How long a completed operation stays queryable",
    )
    backfill_failed_retention_seconds: float = Field(
        default=FAILED_RETENTION_SECONDS,
        description="How long a failed or cancelled operation stays queryable",
    )
    backfill_max_record_age_seconds: float = Field(
        default=MAX_RECORD_AGE_SECONDS,
        description="Age after which the periodic sweep drops any record",
    )
    backfill_thread_replies_limit: int = Field(
        default=THREAD_REPLIES_LIMIT,
        ge=1,
        description="Replies requested per conversations.replies call",
    )

    # Retry sweep configuration
    retry_max_attempts: int = Field(
        default=RETRY_MAX_ATTEMPTS_DEFAULT,
        ge=1,
        description="Failed audit rows are retried while attempts stay below this",
    )
    retry_batch_size: int = Field(
        default=RETRY_BATCH_SIZE_DEFAULT,
        ge=1,
        description="Maximum failed events resubmitted per sweep",
    )
    retry_interval_seconds: float = Field(
        default=RETRY_INTERVAL_SECONDS_DEFAULT,
        gt=0,
        description="Interval between periodic retry sweeps",
    )

    # Slack API behaviour
    backoff_base_seconds: float = Field(
        default=BACKOFF_BASE_SECONDS_DEFAULT,
        gt=0,
        description="Base delay for exponential backoff",
    )
    backoff_max_seconds: float = Field(
        default=BACKOFF_MAX_SECONDS_DEFAULT,
        gt=0,
        description="Upper bound for computed backoff delays",
    )
    rate_limit_max_attempts: int = Field(
        default=RATE_LIMIT_MAX_ATTEMPTS_DEFAULT,
        ge=1,
        description="Retries of a rate-limited Slack request before giving up",
    )
    webhook_signature_tolerance_seconds: int = Field(
        default=300,
        description="Maximum age of a signed Slack request",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON logs")
    metrics_port: int | None = Field(
        default=None, description="Port for the Prometheus metrics endpoint"
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
