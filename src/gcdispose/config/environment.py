import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from gcdispose.config.env_guard import RUNNING_PYTEST
from gcdispose.config.settings import get_system_file_path, get_value, load_settings, SETTINGS_FILE

DEFAULT_ENV = {
    "ENV": "development",
    "GCDISPOSE_DRAIN_WORKERS": 1,
    "GCDISPOSE_DRAIN_POLL_INTERVAL": 0.5,
    "GCDISPOSE_SOFT_MS_PER_MB": 1000.0,
    "GCDISPOSE_SOFT_MAX_RETAINED": 0,
    "GCDISPOSE_SOFT_MAINTENANCE_INTERVAL": 1.0,
    "GCDISPOSE_METRICS_ENABLED": "0",
}

"""
Environment Configuration Management Module

Centralizes configuration for the disposal runtime. Values are resolved in
this order:

- settings.yaml (see gcdispose.config.settings)
- Environment variables (optionally loaded from .env files)
- DEFAULT_ENV

The Environment class exposes class methods returning typed values and a
validated DisposalSettings model used to build the default drainer and the
soft retention pool.
"""


def _is_truthy(value: Any) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_dotenv_files():
    """Load environment variables from .env files based on current environment."""
    from dotenv import load_dotenv

    project_root = Path.cwd()
    env_name = os.environ.get("ENV", "development")

    # Later files override earlier ones
    env_files = [
        project_root / ".env",
        project_root / f".env.{env_name}",
        project_root / f".env.{env_name}.local",
    ]

    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)


class DisposalSettings(BaseModel):
    """Validated tuning knobs for the drainer and the soft retention pool."""

    workers: int = Field(default=1, ge=1, description="Number of drainer worker threads")
    poll_interval: float = Field(default=0.5, gt=0, description="Seconds a worker waits on the queue per tick")
    soft_ms_per_mb: float = Field(
        default=1000.0,
        ge=0,
        description="Idle milliseconds a soft pin survives per MB of available memory",
    )
    soft_max_retained: int = Field(default=0, ge=0, description="Maximum soft pins, 0 for unbounded")
    soft_maintenance_interval: float = Field(
        default=1.0,
        ge=0,
        description="Minimum seconds between two soft retention sweeps",
    )
    metrics_enabled: bool = False


class Environment(object):
    """
    Manages configuration values with defaults and type conversions.

    Settings are loaded lazily on first access; call `reset()` to drop the
    cached settings (tests do this between cases).
    """

    settings: Optional[Dict[str, Any]] = None

    @classmethod
    def load_settings(cls):
        if not RUNNING_PYTEST:
            load_dotenv_files()
        cls.settings = load_settings()

    @classmethod
    def get_settings(cls) -> Dict[str, Any]:
        if cls.settings is None:
            cls.load_settings()
        assert cls.settings is not None
        return cls.settings

    @classmethod
    def reset(cls) -> None:
        cls.settings = None

    @classmethod
    def has_settings(cls):
        return get_system_file_path(SETTINGS_FILE).exists()

    @classmethod
    def get(cls, key: str, default: Any = None):
        return get_value(key, cls.get_settings(), DEFAULT_ENV, default)

    @classmethod
    def get_env(cls):
        return cls.get("ENV")

    @classmethod
    def is_production(cls):
        return cls.get_env() == "production"

    @classmethod
    def is_test(cls):
        return cls.get_env() == "test" or RUNNING_PYTEST

    @classmethod
    def get_log_level(cls) -> str:
        """Return desired log level string.

        Priority:
        1) Explicit LOG_LEVEL env
        2) If DEBUG env is truthy, return "DEBUG"
        3) GCDISPOSE_LOG_LEVEL env (default "INFO")
        """
        level = os.getenv("LOG_LEVEL")
        if level:
            return str(level).upper()
        debug_env = os.getenv("DEBUG")
        if debug_env and debug_env.lower() not in ("0", "false", "no", "off", ""):
            return "DEBUG"
        return os.getenv("GCDISPOSE_LOG_LEVEL", "INFO").upper()

    @classmethod
    def get_drain_workers(cls) -> int:
        return int(cls.get("GCDISPOSE_DRAIN_WORKERS"))

    @classmethod
    def get_drain_poll_interval(cls) -> float:
        return float(cls.get("GCDISPOSE_DRAIN_POLL_INTERVAL"))

    @classmethod
    def get_soft_ms_per_mb(cls) -> float:
        """
        Idle milliseconds a soft reference survives per megabyte of available
        memory. Mirrors the JVM's SoftRefLRUPolicyMSPerMB.
        """
        return float(cls.get("GCDISPOSE_SOFT_MS_PER_MB"))

    @classmethod
    def get_soft_max_retained(cls) -> int:
        return int(cls.get("GCDISPOSE_SOFT_MAX_RETAINED"))

    @classmethod
    def get_soft_maintenance_interval(cls) -> float:
        return float(cls.get("GCDISPOSE_SOFT_MAINTENANCE_INTERVAL"))

    @classmethod
    def is_metrics_enabled(cls) -> bool:
        return _is_truthy(cls.get("GCDISPOSE_METRICS_ENABLED"))

    @classmethod
    def get_disposal_settings(cls) -> DisposalSettings:
        """Collect the disposal tuning values into a validated model."""
        return DisposalSettings(
            workers=cls.get_drain_workers(),
            poll_interval=cls.get_drain_poll_interval(),
            soft_ms_per_mb=cls.get_soft_ms_per_mb(),
            soft_max_retained=cls.get_soft_max_retained(),
            soft_maintenance_interval=cls.get_soft_maintenance_interval(),
            metrics_enabled=cls.is_metrics_enabled(),
        )
