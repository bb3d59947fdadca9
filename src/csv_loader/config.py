import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ROW_FORMATS = ("json", "columns")

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, not '{raw}'")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    value = int(os.getenv(name, str(default)))
    if value < minimum:
        raise ValueError(f"{name} must be an integer >= {minimum}.")
    return value


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Database connection (required unless noted) ---
    db_host: str
    db_user: str
    db_name: str
    db_port: int
    db_password: str = ""

    # --- Sink behaviour ---
    db_table: str = "csv_raw_rows"
    row_format: str = "json"
    create_table_if_not_exists: bool = False
    replace_existing_rows: bool = True

    # --- Pool & timeouts ---
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_connect_timeout_seconds: int = 10
    db_statement_timeout_ms: int = 0

    # --- Pipeline ---
    batch_size: int = 100
    throw_on_error: bool = True
    read_chunk_size_kb: int = 64
    timeout_guard_threshold_seconds: int = 10

    # --- Service identity ---
    service_name: str = "csv-loader"
    environment: str = "dev"
    log_level: str = "INFO"

    # --- Derived Properties ---
    @property
    def read_chunk_size_bytes(self) -> int:
        return self.read_chunk_size_kb * 1024

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            db_host = os.environ["DB_HOST"]
            db_user = os.environ["DB_USER"]
            db_name = os.environ["DB_NAME"]

            db_port = _env_int("DB_PORT", 5432)
            if db_port > 65535:
                raise ValueError("DB_PORT must be a valid TCP port.")

            db_table = os.getenv("DB_TABLE", "").strip() or "csv_raw_rows"

            row_format = os.getenv("ROW_FORMAT", "json").strip().lower()
            if row_format not in ROW_FORMATS:
                raise ValueError(
                    f"ROW_FORMAT must be one of {list(ROW_FORMATS)}, not '{row_format}'"
                )

            db_pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
            db_pool_max_size = _env_int("DB_POOL_MAX_SIZE", 5)
            if db_pool_max_size < db_pool_min_size:
                raise ValueError(
                    "DB_POOL_MAX_SIZE must be greater than or equal to DB_POOL_MIN_SIZE."
                )

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            config = cls(
                db_host=db_host,
                db_user=db_user,
                db_name=db_name,
                db_port=db_port,
                db_password=os.getenv("DB_PASSWORD", ""),
                db_table=db_table,
                row_format=row_format,
                create_table_if_not_exists=_env_flag(
                    "CREATE_TABLE_IF_NOT_EXISTS", False
                ),
                replace_existing_rows=_env_flag("REPLACE_EXISTING_ROWS", True),
                db_pool_min_size=db_pool_min_size,
                db_pool_max_size=db_pool_max_size,
                db_connect_timeout_seconds=_env_int("DB_CONNECT_TIMEOUT_SECONDS", 10),
                db_statement_timeout_ms=_env_int(
                    "DB_STATEMENT_TIMEOUT_MS", 0, minimum=0
                ),
                batch_size=_env_int("BATCH_SIZE", 100),
                throw_on_error=_env_flag("THROW_ON_ERROR", True),
                read_chunk_size_kb=_env_int("READ_CHUNK_SIZE_KB", 64),
                timeout_guard_threshold_seconds=_env_int(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS", 10, minimum=0
                ),
                service_name=os.getenv("SERVICE_NAME", "csv-loader"),
                environment=os.getenv("ENVIRONMENT", "dev"),
                log_level=log_level,
            )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return config


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
