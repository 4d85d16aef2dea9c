"""Settings of the FormFlow engine.

Every setting can be given as an environment variable named after the field
with the ``FORMFLOW_`` prefix, e.g. ``FORMFLOW_MAX_LOOP_ITERATIONS=50``. List
settings take comma separated values.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError

ENV_PREFIX = "FORMFLOW_"
LIST_FIELDS = {"cors_origins", "cors_methods"}
SUPPORTED_SCHEMES = ("sqlite", "postgresql", "mysql")
MAX_SANE_LOOP_ITERATIONS = 10000


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class ConditionWaitingPolicy(str, Enum):
    """What a condition node does when its evaluation is waiting for data."""
    SUSPEND = "suspend"
    FALSE_BRANCH = "false_branch"


class AppConfig(BaseModel):
    """Application and engine settings."""

    app_name: str = "FormFlow Workflow Engine"
    app_version: str = "1.0.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False

    database_url: str = "sqlite:///./formflow.db"
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    max_loop_iterations: int = Field(
        default=100,
        description="Visits of a single node within one run before the path is forced terminal"
    )
    cancel_siblings_on_terminal: bool = Field(
        default=True,
        description="Drop pending sibling branches once one path reaches a terminal node"
    )
    condition_waiting_policy: ConditionWaitingPolicy = Field(
        default=ConditionWaitingPolicy.SUSPEND,
        description="Suspend the execution or take the false branch when a condition waits for data"
    )
    until_event_ceiling_days: int = Field(
        default=365,
        description="Latest resume time of an until_event wait, in days"
    )

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_structured: bool = Field(default=False, description="Emit one JSON object per record")
    log_file: Optional[str] = None
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    cors_origins: List[str] = ["*"]
    cors_methods: List[str] = ["GET", "POST", "PUT", "DELETE"]

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = _url_scheme(v)
        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_SCHEMES)}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_loop_iterations', 'until_event_ceiling_days')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(_url_scheme(self.database_url))

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Build settings from ``FORMFLOW_*`` variables; unset ones keep their defaults."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name in LIST_FIELDS:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        return cls(**values)


def _url_scheme(url: str) -> str:
    # "postgresql+psycopg2://..." -> "postgresql"
    return url.split("://")[0].lower().split("+")[0]


PRESETS: Dict[str, Dict[str, Any]] = {
    "development": {"debug": True, "reload": True, "log_level": LogLevel.DEBUG, "database_echo": True},
    "production": {"log_structured": True, "cors_origins": []},
    "testing": {"debug": True, "database_url": "sqlite:///:memory:", "log_level": LogLevel.WARNING},
}


def get_preset_config(name: str) -> AppConfig:
    """Settings for a named environment; unknown names raise ``ConfigurationError``."""
    if name not in PRESETS:
        raise ConfigurationError(f"Unknown environment preset: {name}", preset=name)
    return AppConfig(**PRESETS[name])


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide settings, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """
    Read a dotenv file into the environment and rebuild the process-wide settings.

    Args:
        config_file: Path of the dotenv file; ``.env`` in the working directory
            is used when omitted or missing

    Returns:
        The new settings
    """
    global _config
    for candidate in (config_file, ".env"):
        if candidate and os.path.exists(candidate):
            load_dotenv(candidate)
            break
    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_directory(path: str, label: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if not directory or os.path.isdir(directory):
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {label} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """
    Check the settings that depend on the host, creating missing directories.

    Raises:
        ConfigurationError: With every problem found, joined by ``; ``
    """
    errors: List[str] = []

    if config.is_sqlite:
        db_path = config.database_url.split(":///", 1)[-1]
        if db_path != ":memory:":
            _ensure_directory(db_path, "database", errors)

    if config.log_file:
        _ensure_directory(config.log_file, "log", errors)

    if config.max_loop_iterations > MAX_SANE_LOOP_ITERATIONS:
        errors.append(f"Loop ceiling above {MAX_SANE_LOOP_ITERATIONS} allows runaway executions")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}", errors=errors)
