"""
messenger-runtime — lazy dependency registry.

File: src/messenger_runtime/runtime/dependencies.py

Purpose
- Construct each long-lived service handle of an account session at most once,
  on first use, from any thread, and hand out the same instance afterwards.
- Record which handle depends on which, so dependencies are always resolved
  before their dependents and never captured stale.

Functional requirements
- Concurrent first access to one slot invokes its builder exactly once.
- A failed build leaves the slot empty; the next access retries.
- Invalidation clears exactly the named slots; everything else stays cached.
- Configuration read by a builder is pinned at build time; changing it after
  the reader was built is reported as an ordering violation.

Non-functional requirements
- No global lock: each slot has its own, and no lock is held while a
  dependency is being resolved.
"""

from __future__ import annotations

import dataclasses
import graphlib
import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import Executor
from dataclasses import dataclass
from functools import partial
from typing import Any, Final, Literal, TypeAlias

from messenger_runtime.observability.logging import correlation_scope
from messenger_runtime.runtime.services import (
    CredentialsProvider,
    DataStore,
    KeyBackupConfig,
    ServiceAddress,
    ServiceEnvironmentConfig,
    ServiceFactory,
    ServiceLimits,
    SessionLock,
    Transport,
    TransportSettings,
    key_backup_configs,
    profile_operations_of,
)
from messenger_runtime.utils.concurrency import Built, OnceSlot

logger = logging.getLogger(__name__)

ConfigViolationPolicy: TypeAlias = Literal["warn", "strict"]
CONFIG_VIOLATION_POLICIES: Final[tuple[ConfigViolationPolicy, ...]] = ("warn", "strict")

Builder: TypeAlias = Callable[["BuildContext"], Any]

# Slot names of the account-session container.
TRANSPORT: Final[str] = "transport"
CLIENT_ZK_OPERATIONS: Final[str] = "client_zk_operations"
GROUP_OPERATIONS: Final[str] = "group_operations"
ACCOUNT_MANAGER: Final[str] = "account_manager"
GROUPS_API: Final[str] = "groups_api"
MESSAGE_RECEIVER: Final[str] = "message_receiver"
MESSAGE_SENDER: Final[str] = "message_sender"
CIPHER: Final[str] = "cipher"
KEY_BACKUP_SERVICE: Final[str] = "key_backup_service"
SECURE_VALUE_RECOVERY: Final[str] = "secure_value_recovery"
PROFILE_SERVICE: Final[str] = "profile_service"

# Handles that embed the account's own address and must be rebuilt after it changes.
ADDRESS_BOUND_SLOTS: Final[tuple[str, ...]] = (MESSAGE_SENDER, CIPHER)


class RegistryError(RuntimeError):
    """Base class for dependency registry errors."""


class SlotBuildError(RegistryError):
    """Raised when a slot's builder fails; the slot stays empty."""

    def __init__(self, slot: str, message: str) -> None:
        super().__init__(message)
        self.slot = slot


class ConfigurationOrderingViolation(RegistryError):
    """Raised or logged when configuration changes after a slot that read it was built."""

    def __init__(self, option: str, slots: Iterable[str]) -> None:
        self.option = option
        self.slots = tuple(sorted(slots))
        super().__init__(
            f"configuration option {option!r} changed after {', '.join(self.slots)} "
            "captured it; the built handles keep the old value until invalidated"
        )


class _StaleDependency(Exception):
    """A dependency was invalidated while a dependent was being built."""


@dataclass(frozen=True, slots=True)
class RegistryConfiguration:
    allow_stories: bool = True

    @classmethod
    def option_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))


@dataclass(frozen=True, slots=True)
class SlotSpec:
    name: str
    builder: Builder
    depends_on: tuple[str, ...]
    reads_config: tuple[str, ...]


class BuildContext(Mapping[str, Any]):
    """Resolved dependencies and pinned configuration handed to a builder."""

    def __init__(
        self, slot: str, dependencies: Mapping[str, Any], config: RegistryConfiguration
    ) -> None:
        self._slot = slot
        self._dependencies = dict(dependencies)
        self._config = config

    @property
    def slot(self) -> str:
        return self._slot

    @property
    def config(self) -> RegistryConfiguration:
        return self._config

    def __getitem__(self, name: str) -> Any:
        try:
            return self._dependencies[name]
        except KeyError:
            raise RegistryError(
                f"slot {self._slot!r} did not declare a dependency on {name!r}"
            ) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._dependencies)

    def __len__(self) -> int:
        return len(self._dependencies)


class ServiceRegistry:
    """Named build-once slots with declared dependency edges."""

    def __init__(
        self,
        *,
        configuration: RegistryConfiguration | None = None,
        config_violation_policy: ConfigViolationPolicy = "warn",
    ) -> None:
        if config_violation_policy not in CONFIG_VIOLATION_POLICIES:
            raise ValueError(
                f"config_violation_policy must be one of {CONFIG_VIOLATION_POLICIES}, "
                f"got {config_violation_policy!r}"
            )
        self._policy: ConfigViolationPolicy = config_violation_policy
        self._specs: dict[str, SlotSpec] = {}
        self._slots: dict[str, OnceSlot[Any]] = {}
        self._registration_lock = threading.Lock()
        self._config_lock = threading.Lock()
        self._config = configuration or RegistryConfiguration()
        self._config_readers: dict[str, set[str]] = {}
        self._violations: list[ConfigurationOrderingViolation] = []

    @property
    def configuration(self) -> RegistryConfiguration:
        return self._config

    @property
    def violations(self) -> tuple[ConfigurationOrderingViolation, ...]:
        with self._config_lock:
            return tuple(self._violations)

    def slot_names(self) -> tuple[str, ...]:
        return tuple(self._specs)

    def register(
        self,
        name: str,
        builder: Builder,
        *,
        depends_on: Iterable[str] = (),
        reads_config: Iterable[str] = (),
    ) -> None:
        """Declare slot ``name``; its dependencies must already be registered."""

        depends_on = tuple(depends_on)
        reads_config = tuple(reads_config)
        if not name:
            raise RegistryError("slot name must be non-empty")
        unknown_options = sorted(set(reads_config) - set(RegistryConfiguration.option_names()))
        if unknown_options:
            raise RegistryError(
                f"slot {name!r} reads unknown configuration options: {unknown_options}"
            )

        with self._registration_lock:
            if name in self._specs:
                raise RegistryError(f"slot {name!r} is already registered")
            unknown = [dep for dep in depends_on if dep not in self._specs and dep != name]
            if unknown:
                raise RegistryError(
                    f"slot {name!r} depends on unregistered slots {unknown}; "
                    "register dependencies first"
                )
            graph = {spec.name: set(spec.depends_on) for spec in self._specs.values()}
            graph[name] = set(depends_on)
            try:
                graphlib.TopologicalSorter(graph).prepare()
            except graphlib.CycleError as exc:
                raise RegistryError(
                    f"slot {name!r} would introduce a dependency cycle: {exc.args[1]}"
                ) from exc

            self._specs[name] = SlotSpec(name, builder, depends_on, reads_config)
            self._slots[name] = OnceSlot(name)

    def construction_order(self) -> tuple[str, ...]:
        """All slots, each after the slots it depends on."""

        graph = {spec.name: set(spec.depends_on) for spec in self._specs.values()}
        return tuple(graphlib.TopologicalSorter(graph).static_order())

    def get_or_create(self, name: str) -> Any:
        slot = self._slot(name)
        built = slot.peek()
        if built is not None:
            return built.value

        spec = self._specs[name]
        while True:
            resolved = self._resolve_dependencies(spec)
            if resolved is None:
                continue
            try:
                return slot.get_or_build(lambda: self._build(spec, resolved))
            except _StaleDependency:
                logger.debug("dependency of slot %s was invalidated mid-build; retrying", name)

    def is_built(self, name: str) -> bool:
        return self._slot(name).is_built

    def invalidate(self, names: Iterable[str]) -> tuple[str, ...]:
        """Clear exactly ``names``; returns the slots that actually held a value."""

        slots = [self._slot(name) for name in names]
        cleared = tuple(
            slot.name
            for slot in slots
            if slot.clear(on_cleared=partial(self._release_config_readers, slot.name))
        )
        if cleared:
            logger.info("invalidated service slots: %s", ", ".join(cleared))
        return cleared

    def set_configuration(self, **options: Any) -> RegistryConfiguration:
        unknown = sorted(set(options) - set(RegistryConfiguration.option_names()))
        if unknown:
            raise RegistryError(f"unknown configuration options: {unknown}")

        with self._config_lock:
            current = self._config
            updated = dataclasses.replace(current, **options)
            for option in options:
                if getattr(updated, option) == getattr(current, option):
                    continue
                readers = self._config_readers.get(option)
                if not readers:
                    continue
                violation = ConfigurationOrderingViolation(option, readers)
                if self._policy == "strict":
                    raise violation
                self._violations.append(violation)
                logger.error("%s", violation, extra={"option": option})
            self._config = updated
            return updated

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {name: slot.snapshot() for name, slot in self._slots.items()}

    def _slot(self, name: str) -> OnceSlot[Any]:
        try:
            return self._slots[name]
        except KeyError:
            raise RegistryError(f"unknown service slot {name!r}") from None

    def _resolve_dependencies(self, spec: SlotSpec) -> dict[str, Built[Any]] | None:
        resolved: dict[str, Built[Any]] = {}
        for dep in spec.depends_on:
            self.get_or_create(dep)
            state = self._slots[dep].peek()
            if state is None:
                return None
            resolved[dep] = state
        return resolved

    def _check_fresh(self, resolved: Mapping[str, Built[Any]]) -> None:
        for dep, state in resolved.items():
            if self._slots[dep].peek() is not state:
                raise _StaleDependency(dep)

    def _pin_configuration(self, spec: SlotSpec) -> RegistryConfiguration:
        with self._config_lock:
            for option in spec.reads_config:
                self._config_readers.setdefault(option, set()).add(spec.name)
            return self._config

    def _release_config_readers(self, name: str) -> None:
        # Called under the slot lock, so a racing rebuild pins after this.
        with self._config_lock:
            for readers in self._config_readers.values():
                readers.discard(name)

    def _unpin_configuration(self, spec: SlotSpec) -> None:
        with self._config_lock:
            for option in spec.reads_config:
                self._config_readers.get(option, set()).discard(spec.name)

    def _build(self, spec: SlotSpec, resolved: Mapping[str, Built[Any]]) -> Any:
        # Runs under the slot's own lock.
        self._check_fresh(resolved)
        config = self._pin_configuration(spec)
        context = BuildContext(
            spec.name, {dep: state.value for dep, state in resolved.items()}, config
        )
        try:
            with correlation_scope(slot=spec.name):
                value = spec.builder(context)
            self._check_fresh(resolved)
        except _StaleDependency:
            self._unpin_configuration(spec)
            raise
        except Exception as exc:
            self._unpin_configuration(spec)
            logger.warning("building service slot %s failed: %s", spec.name, exc)
            raise SlotBuildError(
                spec.name, f"building service slot {spec.name!r} failed: {exc}"
            ) from exc
        logger.debug("built service slot %s", spec.name)
        return value


class SignalDependencies:
    """Service handles of one account session, built lazily on first access."""

    def __init__(
        self,
        service_environment: ServiceEnvironmentConfig,
        user_agent: str,
        credentials: CredentialsProvider,
        data_store: DataStore,
        session_lock: SessionLock,
        factory: ServiceFactory,
        *,
        executor: Executor | None = None,
        limits: ServiceLimits | None = None,
        configuration: RegistryConfiguration | None = None,
        config_violation_policy: ConfigViolationPolicy = "warn",
    ) -> None:
        self._environment = service_environment
        self._user_agent = user_agent
        self._credentials = credentials
        self._data_store = data_store
        self._session_lock = session_lock
        self._factory = factory
        self._executor = executor
        self._limits = limits or ServiceLimits()
        self._registry = ServiceRegistry(
            configuration=configuration,
            config_violation_policy=config_violation_policy,
        )
        self._register_slots()

    def _register_slots(self) -> None:
        register = self._registry.register
        register(TRANSPORT, self._build_transport, reads_config=("allow_stories",))
        register(CLIENT_ZK_OPERATIONS, self._build_client_zk_operations)
        register(
            GROUP_OPERATIONS, self._build_group_operations, depends_on=(CLIENT_ZK_OPERATIONS,)
        )
        register(ACCOUNT_MANAGER, self._build_account_manager, depends_on=(GROUP_OPERATIONS,))
        register(GROUPS_API, self._build_groups_api, depends_on=(ACCOUNT_MANAGER,))
        register(
            MESSAGE_RECEIVER, self._build_message_receiver, depends_on=(CLIENT_ZK_OPERATIONS,)
        )
        register(
            MESSAGE_SENDER,
            self._build_message_sender,
            depends_on=(TRANSPORT, CLIENT_ZK_OPERATIONS),
        )
        register(CIPHER, self._build_cipher)
        register(
            KEY_BACKUP_SERVICE, self._build_key_backup_service, depends_on=(ACCOUNT_MANAGER,)
        )
        register(
            SECURE_VALUE_RECOVERY,
            self._build_secure_value_recovery,
            depends_on=(ACCOUNT_MANAGER,),
        )
        register(
            PROFILE_SERVICE,
            self._build_profile_service,
            depends_on=(CLIENT_ZK_OPERATIONS, MESSAGE_RECEIVER, TRANSPORT),
        )

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def service_environment(self) -> ServiceEnvironmentConfig:
        return self._environment

    @property
    def session_lock(self) -> SessionLock:
        return self._session_lock

    @property
    def transport(self) -> Transport:
        return self._registry.get_or_create(TRANSPORT)

    @property
    def client_zk_operations(self) -> Any:
        return self._registry.get_or_create(CLIENT_ZK_OPERATIONS)

    @property
    def group_operations(self) -> Any:
        return self._registry.get_or_create(GROUP_OPERATIONS)

    @property
    def account_manager(self) -> Any:
        return self._registry.get_or_create(ACCOUNT_MANAGER)

    @property
    def groups_api(self) -> Any:
        return self._registry.get_or_create(GROUPS_API)

    @property
    def message_receiver(self) -> Any:
        return self._registry.get_or_create(MESSAGE_RECEIVER)

    @property
    def message_sender(self) -> Any:
        return self._registry.get_or_create(MESSAGE_SENDER)

    @property
    def cipher(self) -> Any:
        return self._registry.get_or_create(CIPHER)

    @property
    def key_backup_service(self) -> Any:
        return self._registry.get_or_create(KEY_BACKUP_SERVICE)

    @property
    def secure_value_recovery(self) -> Any:
        return self._registry.get_or_create(SECURE_VALUE_RECOVERY)

    @property
    def profile_service(self) -> Any:
        return self._registry.get_or_create(PROFILE_SERVICE)

    def set_allow_stories(self, allow_stories: bool) -> None:
        """Must be called before the transport is first built."""

        self._registry.set_configuration(allow_stories=allow_stories)

    def reset_after_address_change(self) -> None:
        """Drop the handles bound to the old address and reconnect the transport."""

        with correlation_scope(account=self._credentials.aci or None):
            self._registry.invalidate(ADDRESS_BOUND_SLOTS)
            self.transport.force_new_connections()
        logger.info("account address changed; sender and cipher will be rebuilt")

    def create_unauthenticated_account_manager(self, number: str, password: str) -> Any:
        """Uncached account manager for registration flows, bound to ``number``."""

        return self._factory.create_account_manager(
            self._environment,
            credentials=None,
            user_agent=self._user_agent,
            group_operations=None,
            limits=self._limits,
            number=number,
            password=password,
        )

    def fallback_key_backup_services(self) -> tuple[Any, ...]:
        account_manager = self.account_manager
        return tuple(
            self._create_key_backup_service(account_manager, config)
            for config in key_backup_configs(self._environment)
        )

    def _create_key_backup_service(self, account_manager: Any, config: KeyBackupConfig) -> Any:
        return self._factory.create_key_backup_service(
            account_manager, config, max_tries=self._limits.key_backup_max_tries
        )

    def _build_transport(self, context: BuildContext) -> Transport:
        health_monitor = self._factory.create_health_monitor()
        transport = self._factory.create_transport(
            TransportSettings(
                environment=self._environment,
                user_agent=self._user_agent,
                credentials=self._credentials,
                allow_stories=context.config.allow_stories,
            ),
            health_monitor=health_monitor,
        )
        health_monitor.monitor(transport)
        return transport

    def _build_client_zk_operations(self, context: BuildContext) -> Any:
        return self._factory.create_client_zk_operations(self._environment)

    def _build_group_operations(self, context: BuildContext) -> Any:
        return self._factory.create_group_operations(
            context[CLIENT_ZK_OPERATIONS], group_max_size=self._limits.group_max_size
        )

    def _build_account_manager(self, context: BuildContext) -> Any:
        return self._factory.create_account_manager(
            self._environment,
            credentials=self._credentials,
            user_agent=self._user_agent,
            group_operations=context[GROUP_OPERATIONS],
            limits=self._limits,
        )

    def _build_groups_api(self, context: BuildContext) -> Any:
        return self._factory.create_groups_api(context[ACCOUNT_MANAGER])

    def _build_message_receiver(self, context: BuildContext) -> Any:
        return self._factory.create_message_receiver(
            self._environment,
            credentials=self._credentials,
            user_agent=self._user_agent,
            profile_operations=profile_operations_of(context[CLIENT_ZK_OPERATIONS]),
            limits=self._limits,
        )

    def _build_message_sender(self, context: BuildContext) -> Any:
        return self._factory.create_message_sender(
            self._environment,
            credentials=self._credentials,
            data_store=self._data_store,
            session_lock=self._session_lock,
            user_agent=self._user_agent,
            transport=context[TRANSPORT],
            profile_operations=profile_operations_of(context[CLIENT_ZK_OPERATIONS]),
            executor=self._executor,
            limits=self._limits,
        )

    def _build_cipher(self, context: BuildContext) -> Any:
        return self._factory.create_cipher(
            address=ServiceAddress(aci=self._credentials.aci, e164=self._credentials.e164),
            device_id=self._credentials.device_id,
            identity_store=self._data_store.aci(),
            session_lock=self._session_lock,
            trust_root=self._environment.unidentified_sender_trust_root,
        )

    def _build_key_backup_service(self, context: BuildContext) -> Any:
        return self._create_key_backup_service(
            context[ACCOUNT_MANAGER], self._environment.key_backup
        )

    def _build_secure_value_recovery(self, context: BuildContext) -> Any:
        return self._factory.create_secure_value_recovery(
            context[ACCOUNT_MANAGER], self._environment.svr2_mrenclave
        )

    def _build_profile_service(self, context: BuildContext) -> Any:
        return self._factory.create_profile_service(
            profile_operations=profile_operations_of(context[CLIENT_ZK_OPERATIONS]),
            message_receiver=context[MESSAGE_RECEIVER],
            transport=context[TRANSPORT],
        )


__all__ = [
    "ACCOUNT_MANAGER",
    "ADDRESS_BOUND_SLOTS",
    "CIPHER",
    "CLIENT_ZK_OPERATIONS",
    "GROUPS_API",
    "GROUP_OPERATIONS",
    "KEY_BACKUP_SERVICE",
    "MESSAGE_RECEIVER",
    "MESSAGE_SENDER",
    "PROFILE_SERVICE",
    "SECURE_VALUE_RECOVERY",
    "TRANSPORT",
    "BuildContext",
    "ConfigViolationPolicy",
    "ConfigurationOrderingViolation",
    "RegistryConfiguration",
    "RegistryError",
    "ServiceRegistry",
    "SignalDependencies",
    "SlotBuildError",
    "SlotSpec",
]
