"""Projection of a remote issue's state onto a record's status."""

from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import UTC, datetime

from issue_operator.logging import get_logger
from issue_operator.models import Condition, IssueRequest, IssueRequestStatus, RemoteIssue
from issue_operator.store import RecordStore
from issue_operator.types import ConditionType

logger = get_logger(__name__)

# Condition reasons
REASON_ISSUE_OPEN = "IssueIsOpen"
REASON_ISSUE_CLOSED = "IssueIsClosed"
REASON_PR_EXISTS = "PullRequestExists"
REASON_NO_PR = "NoPullRequest"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _set_condition(conditions: list[Condition], new: Condition) -> None:
    """Upsert ``new`` by type, keeping ``last_transition_time`` unless status flips."""
    for i, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        if existing.status == new.status:
            new.last_transition_time = existing.last_transition_time
        conditions[i] = new
        return
    conditions.append(new)


class StatusProjector:
    """Builds and persists a record's status from the remote issue it tracks."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def project(
        self, record: IssueRequest, issue: RemoteIssue, now: datetime | None = None
    ) -> IssueRequestStatus:
        """Compute the status ``record`` should carry for ``issue``.

        Pure: ``record`` is not modified.
        """
        now = now or self._clock()
        status = copy.deepcopy(record.status)

        if issue.is_open:
            open_condition = Condition(
                type=ConditionType.ISSUE_OPEN,
                status=True,
                reason=REASON_ISSUE_OPEN,
                message=f"Issue #{issue.number} is currently open",
                last_transition_time=now,
            )
        else:
            open_condition = Condition(
                type=ConditionType.ISSUE_OPEN,
                status=False,
                reason=REASON_ISSUE_CLOSED,
                message=f"Issue #{issue.number} is closed",
                last_transition_time=now,
            )

        if issue.has_linked_change_request:
            pr_condition = Condition(
                type=ConditionType.HAS_LINKED_CHANGE_REQUEST,
                status=True,
                reason=REASON_PR_EXISTS,
                message=f"Issue #{issue.number} has a linked pull request",
                last_transition_time=now,
            )
        else:
            pr_condition = Condition(
                type=ConditionType.HAS_LINKED_CHANGE_REQUEST,
                status=False,
                reason=REASON_NO_PR,
                message=f"Issue #{issue.number} has no linked pull request",
                last_transition_time=now,
            )

        _set_condition(status.conditions, open_condition)
        _set_condition(status.conditions, pr_condition)
        status.remote_issue_id = issue.number
        status.last_updated = now
        return status

    def apply(self, store: RecordStore, record: IssueRequest, issue: RemoteIssue) -> IssueRequest:
        """Project and persist through the status channel.

        Raises:
            WriteConflict: If the status was written concurrently.
            NotFound: If the record was erased.
        """
        updated = record.copy()
        updated.status = self.project(record, issue)
        stored = store.update_status(updated)
        logger.debug(
            "Status of %s: issue #%s open=%s",
            record.key,
            issue.number,
            issue.is_open,
            extra={"diagnostic_tag": "status"},
        )
        return stored

    def set_token_required(
        self, store: RecordStore, record: IssueRequest, flag: bool
    ) -> IssueRequest:
        """Persist ``token_required`` if it differs from the stored value.

        Raises:
            WriteConflict: If the status was written concurrently.
        """
        if record.status.token_required == flag:
            return record

        updated = record.copy()
        updated.status.token_required = flag
        return store.update_status(updated)
