"""Dependency Injection container for the issue operator.

This module provides a centralized dependency injection container using the
dependency-injector library. It is an alternative to ``bootstrap()`` for
callers that want to swap single components:

Usage:
    # Production setup
    container = create_container()
    controller = container.controller()

    # Test setup with a fake tracker
    container = create_container(config)
    container.client_factory.override(providers.Object(MockClientFactory(tracker)))
    controller = container.controller()

Overrides must happen before the first provider that depends on them is
called; every component here is a Singleton.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from dependency_injector import containers, providers

from issue_operator.bootstrap import create_client_factory, create_controller, create_reconciler

if TYPE_CHECKING:
    from issue_operator.circuit_breaker import CircuitBreakerRegistry
    from issue_operator.config import Config
    from issue_operator.controller import Controller
    from issue_operator.github_rest_client import TicketingClientFactory
    from issue_operator.reconciler import IssueRequestReconciler
    from issue_operator.store import RecordStore


class OperatorContainer(containers.DeclarativeContainer):
    """Main dependency injection container for the issue operator.

    OperatorContainer
    ├── config (Config)
    ├── store (RecordStore)
    ├── circuit_breaker_registry
    ├── client_factory (TicketingClientFactory)
    ├── reconciler
    └── controller
    """

    # Using Dependency() makes it explicit these must be provided at container creation
    config: providers.Dependency[Config] = providers.Dependency()
    store: providers.Dependency[RecordStore] = providers.Dependency()
    circuit_breaker_registry: providers.Dependency[CircuitBreakerRegistry] = (
        providers.Dependency()
    )
    client_factory: providers.Dependency[TicketingClientFactory] = providers.Dependency()
    reconciler: providers.Dependency[IssueRequestReconciler] = providers.Dependency()
    controller: providers.Dependency[Controller] = providers.Dependency()


def create_store() -> RecordStore:
    """Create the in-memory record store with admission validation."""
    from issue_operator.store import InMemoryRecordStore
    from issue_operator.validation import admit

    return InMemoryRecordStore(admission=admit)


def create_circuit_breaker_registry() -> CircuitBreakerRegistry:
    from issue_operator.circuit_breaker import CircuitBreakerRegistry

    return CircuitBreakerRegistry()


def create_container(
    config: Config | None = None,
    store: RecordStore | None = None,
) -> containers.DynamicContainer:
    """Create and configure the main DI container.

    Args:
        config: Optional configuration. If not provided, loads from environment.
        store: Optional record store. Defaults to an in-memory store with
            admission validation.

    Returns:
        A DynamicContainer built from OperatorContainer, fully wired.
    """
    from issue_operator.config import load_config

    if config is None:
        config = load_config()

    container = OperatorContainer()

    container.config.override(providers.Object(config))
    if store is not None:
        container.store.override(providers.Object(store))
    else:
        container.store.override(providers.Singleton(create_store))

    container.circuit_breaker_registry.override(
        providers.Singleton(create_circuit_breaker_registry)
    )
    container.client_factory.override(
        providers.Singleton(
            create_client_factory,
            container.config,
            container.circuit_breaker_registry,
        )
    )
    container.reconciler.override(
        providers.Singleton(
            create_reconciler,
            container.config,
            container.store,
            container.client_factory,
        )
    )
    container.controller.override(
        providers.Singleton(
            create_controller,
            container.config,
            container.store,
            container.reconciler,
        )
    )

    return container


def create_test_container(config: Config | None = None) -> containers.DynamicContainer:
    """Create an OperatorContainer whose providers must all be overridden before use.

    Raises:
        dependency_injector.errors.Error: When accessing a Dependency() provider
            that has not been overridden.
    """
    container = OperatorContainer()
    if config is not None:
        container.config.override(providers.Object(config))
    return container
