"""Deploy-time configuration."""

from kb_ingest.config.coordinator_settings import (
    ConfigurationError,
    CoordinatorSettings,
    get_coordinator_settings,
    load_coordinator_settings,
    reset_coordinator_settings,
)

__all__ = [
    "ConfigurationError",
    "CoordinatorSettings",
    "get_coordinator_settings",
    "load_coordinator_settings",
    "reset_coordinator_settings",
]
