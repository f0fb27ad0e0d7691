"""Bootstrap and dependency wiring for the issue operator.

This module is the composition root. It loads configuration, sets up
logging, creates the shared circuit breaker registry and assembles the
reconciler and controller around a record store.

Circuit breakers are created via dependency injection. The
CircuitBreakerRegistry is created here and the GitHub breaker is shared
by every per-pass client the factory builds.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from issue_operator.circuit_breaker import CircuitBreakerRegistry
from issue_operator.config import Config, load_config
from issue_operator.controller import Controller
from issue_operator.github_rest_client import TicketingClientFactory, github_client_factory
from issue_operator.logging import get_logger, setup_logging
from issue_operator.reconciler import IssueRequestReconciler
from issue_operator.store import InMemoryRecordStore, RecordStore
from issue_operator.validation import admit
from issue_operator.workqueue import WorkQueue

logger = get_logger(__name__)


class BootstrapContext:
    """Container for the wired operator components."""

    def __init__(
        self,
        config: Config,
        store: RecordStore,
        circuit_breaker_registry: CircuitBreakerRegistry,
        reconciler: IssueRequestReconciler,
        controller: Controller,
    ) -> None:
        self.config = config
        self.store = store
        self.circuit_breaker_registry = circuit_breaker_registry
        self.reconciler = reconciler
        self.controller = controller

    def health(self) -> dict[str, Any]:
        """Controller and circuit breaker status for health reporting."""
        return {
            "controller": self.controller.get_status(),
            "circuit_breakers": self.circuit_breaker_registry.get_all_status(),
        }


def create_client_factory(
    config: Config,
    circuit_breaker_registry: CircuitBreakerRegistry | None = None,
) -> TicketingClientFactory:
    """Create the per-token GitHub client factory.

    Args:
        config: Operator configuration.
        circuit_breaker_registry: Optional registry to get the shared
            "github" circuit breaker from.
    """
    circuit_breaker = (
        circuit_breaker_registry.get("github") if circuit_breaker_registry else None
    )
    return github_client_factory(
        base_url=config.github_api_url or None,
        circuit_breaker=circuit_breaker,
    )


def create_reconciler(
    config: Config,
    store: RecordStore,
    client_factory: TicketingClientFactory,
) -> IssueRequestReconciler:
    """Create the reconciler with the configured requeue delays."""
    return IssueRequestReconciler(
        store=store,
        client_factory=client_factory,
        token_poll_interval=config.token_poll_interval,
        conflict_retry_delay=config.conflict_retry_delay,
    )


def create_controller(
    config: Config,
    store: RecordStore,
    reconciler: IssueRequestReconciler,
) -> Controller:
    """Create the controller and its rate-limited work queue."""
    return Controller(
        store=store,
        reconciler=reconciler,
        workers=config.workers,
        queue=WorkQueue(
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            name="issue-requests",
        ),
        shutdown_timeout=config.shutdown_timeout,
    )


def bootstrap(
    config: Config | None = None,
    store: RecordStore | None = None,
    client_factory: TicketingClientFactory | None = None,
    env_file: Path | None = None,
    configure_logging: bool = True,
) -> BootstrapContext:
    """Assemble the operator.

    Args:
        config: Configuration to use. Loaded from the environment if None.
        store: Record store to reconcile. Defaults to an in-memory store
            with admission validation.
        client_factory: Ticketing client factory. Defaults to GitHub.
        env_file: Optional .env file, used only when ``config`` is None.
        configure_logging: Install the operator's log handler.

    Returns:
        BootstrapContext whose controller is ready to ``start()``.
    """
    if config is None:
        config = load_config(env_file)

    if configure_logging:
        setup_logging(
            config.log_level,
            json_format=config.log_json,
            diagnostic_tags=config.diagnostic_tags,
        )

    if store is None:
        store = InMemoryRecordStore(admission=admit)

    circuit_breaker_registry = CircuitBreakerRegistry()
    if client_factory is None:
        client_factory = create_client_factory(config, circuit_breaker_registry)

    reconciler = create_reconciler(config, store, client_factory)
    controller = create_controller(config, store, reconciler)

    logger.info(
        "Operator assembled: workers=%s, token_poll_interval=%ss, github_api_url=%s",
        config.workers,
        config.token_poll_interval,
        config.github_api_url or "default",
    )
    return BootstrapContext(
        config=config,
        store=store,
        circuit_breaker_registry=circuit_breaker_registry,
        reconciler=reconciler,
        controller=controller,
    )
