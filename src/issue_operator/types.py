"""Type definitions and enums for the issue operator.

Usage:
    from issue_operator.types import IssueState, Outcome

    # Since the enums inherit from StrEnum, direct string comparison works
    if issue.state == IssueState.OPEN:
        ...
"""

from __future__ import annotations

from enum import StrEnum


class IssueState(StrEnum):
    """State of a remote issue as reported by the tracker."""

    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string value is a valid issue state."""
        return value in cls._value2member_map_


class ConditionType(StrEnum):
    """Condition types published on an IssueRequest status."""

    ISSUE_OPEN = "IssueOpen"
    HAS_LINKED_CHANGE_REQUEST = "HasLinkedChangeRequest"


class TokenState(StrEnum):
    """Result of reading a record's credential holder.

    Values:
        NOT_FOUND: No holder exists yet; the caller should provision one.
        EMPTY: The holder exists but no operator has filled in a token.
        PRESENT: The holder carries a usable token.
    """

    NOT_FOUND = "not_found"
    EMPTY = "empty"
    PRESENT = "present"


class Outcome(StrEnum):
    """Scheduling directive returned by one reconcile pass.

    Values:
        DONE: Nothing further until the next watched change.
        REQUEUE: Run again as soon as a worker is free.
        REQUEUE_AFTER: Run again after a fixed delay.
        BACKOFF: Retry with the queue's per-key exponential backoff.
        FATAL: Static error; log it and do not retry.
    """

    DONE = "done"
    REQUEUE = "requeue"
    REQUEUE_AFTER = "requeue_after"
    BACKOFF = "backoff"
    FATAL = "fatal"


class EventType(StrEnum):
    """Kinds of change delivered by the record store's watch stream."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class ObjectKind(StrEnum):
    """Kinds of object held by the record store."""

    ISSUE_REQUEST = "IssueRequest"
    CREDENTIAL = "CredentialHolder"
