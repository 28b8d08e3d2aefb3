"""
messenger-runtime — account session runtime.

Purpose
- Lazily constructed, thread-safe service handles for one account session and
  the protocols describing the messaging library that backs them.
"""

from messenger_runtime.runtime.dependencies import (
    ADDRESS_BOUND_SLOTS,
    BuildContext,
    ConfigurationOrderingViolation,
    RegistryConfiguration,
    RegistryError,
    ServiceRegistry,
    SignalDependencies,
    SlotBuildError,
)
from messenger_runtime.runtime.services import (
    CredentialsProvider,
    DataStore,
    HealthMonitor,
    KeyBackupConfig,
    ServiceEnvironmentConfig,
    ServiceFactory,
    ServiceLimits,
    SessionLock,
    Transport,
    TransportSettings,
)

__all__ = [
    "ADDRESS_BOUND_SLOTS",
    "BuildContext",
    "ConfigurationOrderingViolation",
    "CredentialsProvider",
    "DataStore",
    "HealthMonitor",
    "KeyBackupConfig",
    "RegistryConfiguration",
    "RegistryError",
    "ServiceEnvironmentConfig",
    "ServiceFactory",
    "ServiceLimits",
    "ServiceRegistry",
    "SessionLock",
    "SignalDependencies",
    "SlotBuildError",
    "Transport",
    "TransportSettings",
]
