"""
messenger-runtime — account session bootstrap.

File: src/messenger_runtime/session.py

Purpose
- Bring one account session up in order: session log first, then the
  account store (fully migrated before anything reads it), then the lazy
  service registry wired to that store.

Functional requirements
- Nothing is left open when startup fails part way.
- Closing the session closes the store before the log, so shutdown is logged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, cast

from messenger_runtime.observability.logging import (
    ROOT_LOGGER_NAME,
    SessionLog,
    SessionLogOptions,
    correlation_scope,
    open_session_log,
)
from messenger_runtime.runtime.dependencies import (
    ConfigViolationPolicy,
    RegistryConfiguration,
    SignalDependencies,
)
from messenger_runtime.storage.account_db import AccountDatabase

if TYPE_CHECKING:
    from concurrent.futures import Executor

    from messenger_runtime.config.schema import RuntimeConfig
    from messenger_runtime.runtime.services import (
        CredentialsProvider,
        DataStore,
        ServiceEnvironmentConfig,
        ServiceFactory,
        ServiceLimits,
        SessionLock,
    )

logger = logging.getLogger(__name__)


class AccountSession:
    """A running account session: its log, its store and its service handles."""

    def __init__(
        self,
        session_id: str,
        log: SessionLog,
        database: AccountDatabase,
        dependencies: SignalDependencies,
    ) -> None:
        self.session_id = session_id
        self.log = log
        self.database = database
        self.dependencies = dependencies

    def close(self) -> None:
        logger.info("closing account session %s", self.session_id)
        try:
            self.database.close()
        finally:
            self.log.close()

    def __enter__(self) -> AccountSession:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()


def start_account_session(
    config: RuntimeConfig,
    *,
    session_id: str,
    environment: ServiceEnvironmentConfig,
    user_agent: str,
    credentials: CredentialsProvider,
    data_store: Callable[[AccountDatabase], DataStore],
    session_lock: SessionLock,
    factory: ServiceFactory,
    executor: Executor | None = None,
    limits: ServiceLimits | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> AccountSession:
    """Open the session log and account store, then wire the service registry.

    ``data_store`` builds the library-facing data store over the migrated
    account database.
    """

    log = open_session_log(
        session_id,
        SessionLogOptions(
            level=config.logging.level,
            log_dir=config.logging.log_dir,
            redact_secrets=config.logging.redact_secrets,
        ),
        logger_name=logger_name,
    )
    try:
        with correlation_scope(account=credentials.aci or None):
            database = AccountDatabase.init(
                config.storage.database_path,
                pool_size=config.storage.pool_size,
                busy_timeout_ms=config.storage.busy_timeout_ms,
                busy_retry_limit=config.storage.busy_retry_limit,
            )
    except BaseException:
        logger.exception("account store %s could not be opened", config.storage.database_path)
        log.close()
        raise

    try:
        dependencies = SignalDependencies(
            environment,
            user_agent,
            credentials,
            data_store(database),
            session_lock,
            factory,
            executor=executor,
            limits=limits,
            configuration=RegistryConfiguration(allow_stories=config.registry.allow_stories),
            config_violation_policy=cast(
                ConfigViolationPolicy, config.registry.config_violation_policy
            ),
        )
    except BaseException:
        database.close()
        log.close()
        raise

    logger.info(
        "account session %s started at schema version %d",
        session_id,
        database.user_version(),
    )
    return AccountSession(session_id, log, database, dependencies)


__all__ = ["AccountSession", "start_account_session"]
