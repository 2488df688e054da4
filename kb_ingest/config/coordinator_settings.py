"""
Coordinator configuration loader.

Loads deploy-time settings from config/coordinator.yml and applies
environment variable overrides.

Consumers:
  - Lambda handler: builds the Bedrock and SQS adapters and the coordinator
  - Local worker: builds the local buffering queue and the coordinator

Usage:
    from kb_ingest.config.coordinator_settings import get_coordinator_settings

    settings = get_coordinator_settings()
    settings.retry_delay_seconds  # 300
    settings.debounce_window_seconds  # 0-300
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "coordinator.yml"
CONFIG_PATH_ENV = "KB_INGEST_CONFIG"

# Queue service limit on per-message delay
MAX_MESSAGE_DELAY_SECONDS = 900
MAX_DEBOUNCE_WINDOW_SECONDS = 300
MAX_BATCH_SIZE_LIMIT = 10
MAX_DEAD_LETTER_RETENTION_DAYS = 14

# Environment variable -> (setting name, type)
_ENV_OVERRIDES = {
    "KNOWLEDGE_BASE_ID": ("knowledge_base_id", str),
    "DATA_SOURCE_ID": ("data_source_id", str),
    "QUEUE_URL": ("queue_url", str),
    "AWS_REGION": ("aws_region", str),
    "DEBOUNCE_WINDOW_SECONDS": ("debounce_window_seconds", int),
    "BUFFER_DATABASE_URL": ("buffer_database_url", str),
    "WORKER_POLL_INTERVAL_SECONDS": ("worker_poll_interval_seconds", float),
    "LOG_LEVEL": ("log_level", str),
}


class ConfigurationError(Exception):
    """Raised when settings are missing or out of range."""
    pass


@dataclass(frozen=True)
class CoordinatorSettings:
    """
    Deploy-time coordinator settings.

    Attributes:
        knowledge_base_id: Knowledge base to keep in sync
        data_source_id: Data source within the knowledge base
        queue_url: Buffering queue URL (SQS deployments)
        aws_region: AWS region for service clients (None = boto3 default)
        debounce_window_seconds: Quiet window before a batch is delivered (0-300)
        retry_delay_seconds: Delay of retry tokens (fixed 300)
        max_batch_size: Notifications per batch (fixed 10)
        max_receive_count: Deliveries before dead-lettering (fixed 10)
        dead_letter_retention_days: Dead letter retention (fixed 14)
        purge_cooldown_seconds: Minimum interval between purges (~60)
        redelivery_interval_seconds: Delay before a failed batch is visible again
        queue_name: Local buffering queue name
        buffer_database_url: Database URL for the local buffering queue
        worker_poll_interval_seconds: Local worker poll interval
        log_level: Root log level for entry points
    """
    knowledge_base_id: Optional[str] = None
    data_source_id: Optional[str] = None
    queue_url: Optional[str] = None
    aws_region: Optional[str] = None
    debounce_window_seconds: int = 60
    retry_delay_seconds: int = 300
    max_batch_size: int = 10
    max_receive_count: int = 10
    dead_letter_retention_days: int = 14
    purge_cooldown_seconds: int = 60
    redelivery_interval_seconds: int = 300
    queue_name: str = "kb-ingest-notifications"
    buffer_database_url: str = "sqlite:///kb_ingest_buffer.db"
    worker_poll_interval_seconds: float = 5.0
    log_level: str = "INFO"

    def validate(self) -> "CoordinatorSettings":
        """
        Check ranges.

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: On the first out-of-range value
        """
        _check_range("debounce_window_seconds", self.debounce_window_seconds, 0, MAX_DEBOUNCE_WINDOW_SECONDS)
        _check_range("retry_delay_seconds", self.retry_delay_seconds, 0, MAX_MESSAGE_DELAY_SECONDS)
        _check_range("max_batch_size", self.max_batch_size, 1, MAX_BATCH_SIZE_LIMIT)
        _check_range("max_receive_count", self.max_receive_count, 1, None)
        _check_range("dead_letter_retention_days", self.dead_letter_retention_days, 1, MAX_DEAD_LETTER_RETENTION_DAYS)
        _check_range("purge_cooldown_seconds", self.purge_cooldown_seconds, 0, None)
        _check_range("redelivery_interval_seconds", self.redelivery_interval_seconds, 0, None)
        if self.worker_poll_interval_seconds <= 0:
            raise ConfigurationError("worker_poll_interval_seconds must be positive")
        if logging.getLevelName(self.log_level.upper()) not in (
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL
        ):
            raise ConfigurationError(f"Unknown log_level: {self.log_level!r}")
        return self

    def require(self, *names: str) -> None:
        """
        Ensure the named settings are set.

        Raises:
            ConfigurationError: Listing every missing setting
        """
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def _check_range(name: str, value: Any, low: Optional[int], high: Optional[int]) -> None:
    if low is not None and value < low:
        raise ConfigurationError(f"{name} must be >= {low}, got {value}")
    if high is not None and value > high:
        raise ConfigurationError(f"{name} must be <= {high}, got {value}")


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)

    env_path = os.getenv(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)

    candidates = [
        Path(__file__).parent.parent.parent / "config" / CONFIG_FILENAME,
        Path(os.getcwd()) / "config" / CONFIG_FILENAME,
    ]
    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved
    return None


def _read_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        logger.warning("%s not found, using built-in defaults", CONFIG_FILENAME)
        return {}

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using built-in defaults", path)
        return {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping, got {type(raw).__name__}")

    logger.info("Loaded coordinator settings from %s", path)
    # Nested sections are flattened: {"queue": {"max_batch_size": 10}} -> max_batch_size
    flat: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, dict):
            flat.update(value)
        else:
            flat[key] = value
    return flat


def _coerce(name: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be {kind.__name__}, got {value!r}")


def load_coordinator_settings(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> CoordinatorSettings:
    """
    Load settings from YAML and the environment.

    Args:
        config_path: Explicit YAML path (else KB_INGEST_CONFIG, else candidates)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated CoordinatorSettings

    Raises:
        ConfigurationError: On unknown keys, bad types or out-of-range values
    """
    environ = os.environ if environ is None else environ
    known = {f.name: f.type for f in fields(CoordinatorSettings)}

    file_values = _read_yaml(_resolve_path(config_path))
    unknown = sorted(set(file_values) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown settings in config file: {', '.join(unknown)}")

    settings = CoordinatorSettings()
    defaults = {f.name: getattr(settings, f.name) for f in fields(CoordinatorSettings)}

    values: Dict[str, Any] = {}
    for name, value in file_values.items():
        default = defaults[name]
        if default is None:
            values[name] = value
        elif value is None:
            raise ConfigurationError(f"{name} must be {type(default).__name__}, got null")
        else:
            values[name] = _coerce(name, value, type(default))

    for env_name, (name, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw not in (None, ""):
            values[name] = _coerce(env_name, raw, kind)

    return replace(settings, **values).validate()


_settings: Optional[CoordinatorSettings] = None
_settings_lock = Lock()


def get_coordinator_settings() -> CoordinatorSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_coordinator_settings()
    return _settings


def reset_coordinator_settings() -> None:
    """Forget cached settings (tests, config reload)."""
    global _settings
    with _settings_lock:
        _settings = None
