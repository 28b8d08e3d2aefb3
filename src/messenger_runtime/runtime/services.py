"""
messenger-runtime — boundary to the external messaging library.

File: src/messenger_runtime/runtime/services.py

Purpose
- Describe, as structural protocols, the collaborators the service registry
  constructs or consumes: credentials, identity data store, transport, health
  monitor, and the factory that builds every network/service handle.
- Carry the per-environment service configuration as frozen values.

Non-functional requirements
- No cryptography, wire framing, or retry policy lives here; those belong to the
  library that implements ``ServiceFactory``.
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import Executor
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from messenger_runtime.constants import (
    AUTOMATIC_NETWORK_RETRY,
    DEFAULT_DEVICE_ID,
    GROUP_MAX_SIZE,
    KEY_BACKUP_MAX_TRIES,
    MAX_ENVELOPE_SIZE,
)


@dataclass(frozen=True, slots=True)
class KeyBackupConfig:
    enclave_name: str
    service_id: str
    mrenclave: str


@dataclass(frozen=True, slots=True)
class ServiceEnvironmentConfig:
    """Endpoints and trust anchors for one service environment (e.g. live or staging)."""

    name: str
    service_url: str
    key_backup: KeyBackupConfig
    fallback_key_backups: tuple[KeyBackupConfig, ...] = ()
    svr2_mrenclave: str = ""
    unidentified_sender_trust_root: str = ""


@dataclass(frozen=True, slots=True)
class ServiceLimits:
    automatic_network_retry: bool = AUTOMATIC_NETWORK_RETRY
    group_max_size: int = GROUP_MAX_SIZE
    max_envelope_size: int = MAX_ENVELOPE_SIZE
    key_backup_max_tries: int = KEY_BACKUP_MAX_TRIES


@dataclass(frozen=True, slots=True)
class ServiceAddress:
    aci: str | None
    e164: str | None


@dataclass(frozen=True, slots=True)
class TransportSettings:
    """Everything a transport captures at construction time."""

    environment: ServiceEnvironmentConfig
    user_agent: str
    credentials: CredentialsProvider | None
    allow_stories: bool


@runtime_checkable
class CredentialsProvider(Protocol):
    @property
    def aci(self) -> str | None: ...

    @property
    def e164(self) -> str | None: ...

    @property
    def device_id(self) -> int: ...

    @property
    def password(self) -> str | None: ...


class DataStore(Protocol):
    """Protocol store the library uses for identity, sessions and keys."""

    def aci(self) -> Any: ...


class SessionLock(Protocol):
    def acquire(self) -> AbstractContextManager[None]: ...


@runtime_checkable
class Transport(Protocol):
    """Long-lived websocket transport shared by sender, receiver and profile service."""

    def force_new_connections(self) -> None: ...


class HealthMonitor(Protocol):
    def monitor(self, transport: Transport) -> None: ...


class ClientZkOperations(Protocol):
    @property
    def profile_operations(self) -> Any: ...


class ServiceFactory(Protocol):
    """Constructors for every handle the registry caches, supplied by the messaging library."""

    def create_health_monitor(self) -> HealthMonitor: ...

    def create_transport(
        self, settings: TransportSettings, *, health_monitor: HealthMonitor
    ) -> Transport: ...

    def create_client_zk_operations(
        self, environment: ServiceEnvironmentConfig
    ) -> ClientZkOperations: ...

    def create_group_operations(
        self, zk_operations: ClientZkOperations, *, group_max_size: int
    ) -> Any: ...

    def create_account_manager(
        self,
        environment: ServiceEnvironmentConfig,
        *,
        credentials: CredentialsProvider | None,
        user_agent: str,
        group_operations: Any | None,
        limits: ServiceLimits,
        number: str | None = None,
        password: str | None = None,
        device_id: int = DEFAULT_DEVICE_ID,
    ) -> Any: ...

    def create_groups_api(self, account_manager: Any) -> Any: ...

    def create_message_receiver(
        self,
        environment: ServiceEnvironmentConfig,
        *,
        credentials: CredentialsProvider,
        user_agent: str,
        profile_operations: Any | None,
        limits: ServiceLimits,
    ) -> Any: ...

    def create_message_sender(
        self,
        environment: ServiceEnvironmentConfig,
        *,
        credentials: CredentialsProvider,
        data_store: DataStore,
        session_lock: SessionLock,
        user_agent: str,
        transport: Transport,
        profile_operations: Any | None,
        executor: Executor | None,
        limits: ServiceLimits,
    ) -> Any: ...

    def create_key_backup_service(
        self, account_manager: Any, config: KeyBackupConfig, *, max_tries: int
    ) -> Any: ...

    def create_secure_value_recovery(self, account_manager: Any, mrenclave: str) -> Any: ...

    def create_profile_service(
        self,
        *,
        profile_operations: Any | None,
        message_receiver: Any,
        transport: Transport,
    ) -> Any: ...

    def create_cipher(
        self,
        *,
        address: ServiceAddress,
        device_id: int,
        identity_store: Any,
        session_lock: SessionLock,
        trust_root: str,
    ) -> Any: ...


def profile_operations_of(zk_operations: ClientZkOperations | None) -> Any | None:
    return None if zk_operations is None else zk_operations.profile_operations


def key_backup_configs(environment: ServiceEnvironmentConfig) -> Sequence[KeyBackupConfig]:
    return environment.fallback_key_backups


__all__ = [
    "ClientZkOperations",
    "CredentialsProvider",
    "DataStore",
    "HealthMonitor",
    "KeyBackupConfig",
    "ServiceAddress",
    "ServiceEnvironmentConfig",
    "ServiceFactory",
    "ServiceLimits",
    "SessionLock",
    "Transport",
    "TransportSettings",
    "key_backup_configs",
    "profile_operations_of",
]
