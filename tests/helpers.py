"""Test helper functions for issue operator tests.

These helpers build records, credential holders and configs with sensible
defaults while allowing customization.

Usage
=====

Import and use helpers directly in tests::

    from tests.helpers import make_config, make_record, set_token

    def test_example():
        store = InMemoryRecordStore()
        record = store.create(make_record(title="Build fails on main"))
        set_token(store, record, "ghp_test")
        # ... use in test ...
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from issue_operator.config import Config
from issue_operator.models import (
    TOKEN_DATA_KEY,
    CredentialHolder,
    IssueRequest,
    IssueRequestSpec,
    ObjectKey,
)
from issue_operator.store import RecordStore

DEFAULT_REPO_URL = "https://github.com/acme/widgets"
DEFAULT_TOKEN = "ghp_test_token"


def make_config(**overrides: Any) -> Config:
    """Create a Config with test-friendly defaults.

    Args:
        **overrides: Config fields to override.
    """
    defaults: dict[str, Any] = {
        "workers": 2,
        "shutdown_timeout": 5.0,
        "token_poll_interval": 60.0,
        "conflict_retry_delay": 5.0,
        "backoff_base": 0.005,
        "backoff_max": 1.0,
    }
    defaults.update(overrides)
    return Config(**defaults)


def make_record(
    name: str = "build-fails",
    namespace: str = "default",
    repo_url: str = DEFAULT_REPO_URL,
    title: str = "Build fails on main",
    description: str = "",
    **fields: Any,
) -> IssueRequest:
    """Create an IssueRequest that has not been stored yet.

    Args:
        name: Record name.
        namespace: Record namespace.
        repo_url: Repository URL.
        title: Issue title.
        description: Issue body.
        **fields: Other IssueRequest fields (status, finalizers, ...).
    """
    return IssueRequest(
        key=ObjectKey(namespace, name),
        spec=IssueRequestSpec(repo_url=repo_url, title=title, description=description),
        **fields,
    )


def set_token(store: RecordStore, record: IssueRequest, token: str = DEFAULT_TOKEN) -> None:
    """Create or fill in the credential holder for ``record``, as an operator would."""
    key = record.credential_key
    try:
        holder = store.get_credential(key)
    except LookupError:
        store.create_credential(
            CredentialHolder(key=key, owner=record.key, data={TOKEN_DATA_KEY: token})
        )
        return
    holder.data[TOKEN_DATA_KEY] = token
    store.update_credential(holder)


def fixed_clock(when: datetime | None = None) -> Callable[[], datetime]:
    """Return a clock that always reads ``when``."""
    instant = when or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    return lambda: instant


def wait_for(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``condition`` until it is true or ``timeout`` elapses.

    Returns:
        The last value of ``condition()``.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()
