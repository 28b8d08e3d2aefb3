"""Runtime configuration: ``messenger.toml`` loading and validation."""

from messenger_runtime.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
)
from messenger_runtime.config.schema import (
    ConfigValidationError,
    LoggingSettings,
    RegistrySettings,
    RuntimeConfig,
    StorageSettings,
    default_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "LoggingSettings",
    "RegistrySettings",
    "RuntimeConfig",
    "StorageSettings",
    "default_config",
    "load_config",
]
