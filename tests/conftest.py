"""Shared pytest fixtures for issue operator tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

import pytest

from issue_operator.reconciler import IssueRequestReconciler
from issue_operator.store import InMemoryRecordStore
from tests.mocks import MockClientFactory, MockTracker


@pytest.fixture(autouse=True)
def clean_operator_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep OPERATOR_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("OPERATOR_") or name == "GITHUB_API_URL":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def tracker() -> MockTracker:
    return MockTracker(next_number=42)


@pytest.fixture
def client_factory(tracker: MockTracker) -> MockClientFactory:
    return MockClientFactory(tracker)


@pytest.fixture
def reconciler(
    store: InMemoryRecordStore, client_factory: MockClientFactory
) -> IssueRequestReconciler:
    return IssueRequestReconciler(store=store, client_factory=client_factory)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Restore root and package logger state after tests that call setup_logging."""
    root = logging.getLogger()
    package = logging.getLogger("issue_operator")
    saved = (root.level, root.handlers[:], package.level)
    yield
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]
    package.setLevel(saved[2])
