"""Exception hierarchy for the issue operator.

Errors are raised where they occur and only translated into a scheduling
directive by the reconciler:

- ``MalformedRepoRef``: static spec error, never retried.
- ``TicketingError`` and subclasses: remote issue-tracker failures.
  ``Unauthorized`` waits on an operator; the others retry with backoff.
- ``StoreError`` and subclasses: record-store failures. ``NotFound`` is
  benign, ``WriteConflict`` is an expected concurrent-editor condition.
"""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for all issue operator errors."""

    pass


class MalformedRepoRef(OperatorError, ValueError):
    """Raised when a repository URL cannot be split into owner and repo."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"invalid repo url: {url!r}")


class TicketingError(OperatorError):
    """Raised when a remote issue-tracker operation fails."""

    pass


class Unauthorized(TicketingError):
    """Raised when the bearer token is missing or rejected by the tracker."""

    pass


class RemoteUnavailable(TicketingError):
    """Raised on transport errors, timeouts, 5xx responses or an open circuit."""

    pass


class RemoteRejected(TicketingError):
    """Raised when the tracker refuses a request (validation, permissions, not found)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RemoteRateLimited(RemoteRejected):
    """Raised when the rate limit is still exhausted after all retries."""

    pass


class RemoteIssueGone(RemoteRejected):
    """Raised when the issue a record already tracks is no longer listed."""

    def __init__(self, owner: str, repo: str, number: int) -> None:
        self.owner = owner
        self.repo = repo
        self.number = number
        super().__init__(f"issue {owner}/{repo}#{number} is no longer listed by the tracker")


class StoreError(OperatorError):
    """Raised when a record-store operation fails."""

    pass


class NotFound(StoreError, LookupError):
    """Raised when a record or credential holder does not exist."""

    pass


class AlreadyExists(StoreError):
    """Raised when creating an object whose key is already taken."""

    pass


class WriteConflict(StoreError):
    """Raised when a compare-and-swap write loses against a concurrent writer."""

    pass


class AdmissionRejected(StoreError, ValueError):
    """Raised when the admission hook rejects a record write."""

    def __init__(self, name: str, errors: list[str]) -> None:
        self.name = name
        self.errors = errors
        super().__init__(f"IssueRequest {name!r} is invalid: {'; '.join(errors)}")


__all__ = [
    "AdmissionRejected",
    "AlreadyExists",
    "MalformedRepoRef",
    "NotFound",
    "OperatorError",
    "RemoteIssueGone",
    "RemoteRateLimited",
    "RemoteRejected",
    "RemoteUnavailable",
    "StoreError",
    "TicketingError",
    "Unauthorized",
    "WriteConflict",
]
