"""Simplified configuration management using environment variables."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from ..error_coordination.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from ..error_coordination.retry import RetryConfig, RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "FARMFLOW_"


def _parse_bool(value: str | bool | None) -> bool:
    """Parse boolean value from various formats."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on", "enabled")
    return bool(value)


def _parse_list(value: str | List[str] | None, delimiter: str = ",") -> List[str]:
    """Parse list value from string or return as-is if already a list."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [item.strip() for item in value.split(delimiter) if item.strip()]
    return [] if value is None else [value]


def _parse_overrides(value: str | None) -> Dict[str, float]:
    """Parse ``name=value`` pairs, e.g. ``weather=0.5,market-prices=2``."""
    overrides: Dict[str, float] = {}
    for item in _parse_list(value):
        name, sep, number = item.partition("=")
        if not sep:
            raise ValueError(f"Invalid override '{item}'. Expected name=value")
        try:
            overrides[name.strip()] = float(number)
        except ValueError as e:
            raise ValueError(f"Invalid number in override '{item}'") from e
    return overrides


def _getenv(key: str, default: str = "") -> str:
    """Get a FARMFLOW_-prefixed environment variable with default."""
    return os.getenv(ENV_PREFIX + key, default)


def _getenv_int(key: str, default: int) -> int:
    """Get integer environment variable with validation.

    Args:
        key: Environment variable name, without the prefix
        default: Default value if not set

    Returns:
        Parsed integer value

    Raises:
        ValueError: If value cannot be parsed as integer
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid integer value for {ENV_PREFIX}{key}='{value}'. "
            f"Expected integer, got: {value}"
        ) from e


def _getenv_float(key: str, default: float) -> float:
    """Get float environment variable with validation.

    Raises:
        ValueError: If value cannot be parsed as float
    """
    value = os.getenv(ENV_PREFIX + key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(
            f"Invalid float value for {ENV_PREFIX}{key}='{value}'. "
            f"Expected float, got: {value}"
        ) from e


def _getenv_optional_float(key: str) -> Optional[float]:
    value = _getenv_float(key, 0.0)
    return value if value > 0 else None


def load_environment() -> Optional[Path]:
    """Load the first .env file found in the current, parent or home directory.

    Values already present in the environment win.
    """
    for env_path in (Path(".env"), Path("../.env"), Path.home() / ".env"):
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment from {env_path}")
            return env_path
    return None


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    # ========== Application Settings ==========
    app_name: str = field(default_factory=lambda: _getenv("APP_NAME", "farmflow"))

    # ========== Paths ==========
    data_dir: Path = field(default_factory=lambda: Path(_getenv("DATA_DIR", str(Path.home() / ".farmflow"))))
    definitions_path: Optional[Path] = field(
        default_factory=lambda: Path(_getenv("DEFINITIONS")) if _getenv("DEFINITIONS") else None
    )

    # ========== Logging ==========
    log_level: str = field(default_factory=lambda: _getenv("LOG_LEVEL", "INFO").upper())
    log_file: Optional[str] = field(default_factory=lambda: _getenv("LOG_FILE") or None)
    log_to_console: bool = field(default_factory=lambda: _parse_bool(_getenv("LOG_TO_CONSOLE", "true")))

    # ========== Retry Settings ==========
    max_attempts: int = field(default_factory=lambda: _getenv_int("MAX_ATTEMPTS", 3))
    retry_base_delay: float = field(default_factory=lambda: _getenv_float("RETRY_BASE_DELAY", 1.0))
    max_retry_delay: float = field(default_factory=lambda: _getenv_float("MAX_RETRY_DELAY", 60.0))
    retry_base_delay_overrides: Dict[str, float] = field(
        default_factory=lambda: _parse_overrides(_getenv("RETRY_BASE_DELAY_OVERRIDES"))
    )

    # ========== Circuit Breaker Settings ==========
    breaker_failure_threshold: int = field(default_factory=lambda: _getenv_int("BREAKER_FAILURE_THRESHOLD", 5))
    breaker_open_duration: float = field(default_factory=lambda: _getenv_float("BREAKER_OPEN_DURATION", 60.0))

    # ========== Execution Settings ==========
    workflow_timeout: Optional[float] = field(default_factory=lambda: _getenv_optional_float("WORKFLOW_TIMEOUT"))
    max_instances: int = field(default_factory=lambda: _getenv_int("MAX_INSTANCES", 100))

    # ========== Offline Queue ==========
    queue_cap_bytes: int = field(default_factory=lambda: _getenv_int("QUEUE_CAP_BYTES", 5 * 1024 * 1024))
    persist_state: bool = field(default_factory=lambda: _parse_bool(_getenv("PERSIST_STATE", "true")))

    def __post_init__(self):
        """Validate settings that would otherwise fail deep inside the executor."""
        if self.max_attempts < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_ATTEMPTS must be at least 1")
        if self.retry_base_delay < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_BASE_DELAY must be non-negative")
        if self.breaker_failure_threshold < 1:
            raise ValueError(f"{ENV_PREFIX}BREAKER_FAILURE_THRESHOLD must be at least 1")
        if self.queue_cap_bytes <= 0:
            raise ValueError(f"{ENV_PREFIX}QUEUE_CAP_BYTES must be positive")

    # ========== Derived Paths ==========

    @property
    def queue_db_path(self) -> Path:
        return self.data_dir / "offline_queue.db"

    @property
    def state_db_path(self) -> Path:
        return self.data_dir / "workflows.db"

    @property
    def idempotency_db_path(self) -> Path:
        return self.data_dir / "idempotency.db"

    # ========== Component Factories ==========

    def retry_config(self, base_delay: Optional[float] = None) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay if base_delay is None else base_delay,
            max_delay=self.max_retry_delay,
        )

    def build_retry_policy(self) -> RetryPolicy:
        """Retry policy with per-dependency base delay overrides applied."""
        return RetryPolicy(
            config=self.retry_config(),
            dependency_configs={
                dependency: self.retry_config(delay)
                for dependency, delay in self.retry_base_delay_overrides.items()
            },
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            open_duration=self.breaker_open_duration,
        )

    def build_breakers(self) -> CircuitBreakerRegistry:
        return CircuitBreakerRegistry(default_config=self.breaker_config())


# Singleton instance with thread-safe initialization
_config_instance: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Get global config instance (singleton pattern, thread-safe)."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            # Double-check pattern to prevent race conditions
            if _config_instance is None:
                load_environment()
                _config_instance = Config()
    return _config_instance


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the environment."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = ["Config", "get_config", "load_environment", "reset_config"]
