"""Tests for status projection."""

from datetime import UTC, datetime, timedelta

import pytest

from issue_operator.exceptions import WriteConflict
from issue_operator.models import RemoteIssue
from issue_operator.status import StatusProjector
from issue_operator.store import InMemoryRecordStore
from issue_operator.types import ConditionType, IssueState
from tests.helpers import fixed_clock, make_record

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
T1 = T0 + timedelta(minutes=5)


class TestProject:
    """Tests for StatusProjector.project."""

    def test_open_issue_without_pr(self) -> None:
        record = make_record()
        status = StatusProjector().project(record, RemoteIssue(number=42, title="t"), now=T0)

        open_condition = status.get_condition(ConditionType.ISSUE_OPEN)
        assert open_condition is not None
        assert open_condition.status is True
        assert open_condition.reason == "IssueIsOpen"
        assert open_condition.message == "Issue #42 is currently open"
        assert open_condition.last_transition_time == T0

        pr_condition = status.get_condition(ConditionType.HAS_LINKED_CHANGE_REQUEST)
        assert pr_condition is not None
        assert pr_condition.status is False
        assert pr_condition.reason == "NoPullRequest"
        assert "#42" in pr_condition.message

        assert status.remote_issue_id == 42
        assert status.last_updated == T0

    def test_closed_issue_with_pr(self) -> None:
        issue = RemoteIssue(
            number=7, title="t", state=IssueState.CLOSED, has_linked_change_request=True
        )
        status = StatusProjector().project(make_record(), issue, now=T0)

        assert status.issue_open is False
        open_condition = status.get_condition(ConditionType.ISSUE_OPEN)
        assert open_condition is not None
        assert open_condition.reason == "IssueIsClosed"
        assert open_condition.message == "Issue #7 is closed"

        pr_condition = status.get_condition(ConditionType.HAS_LINKED_CHANGE_REQUEST)
        assert pr_condition is not None
        assert pr_condition.status is True
        assert pr_condition.reason == "PullRequestExists"

    def test_one_condition_per_type(self) -> None:
        projector = StatusProjector()
        record = make_record()
        issue = RemoteIssue(number=1, title="t")
        record.status = projector.project(record, issue, now=T0)
        record.status = projector.project(record, issue, now=T1)
        assert len(record.status.conditions) == 2

    def test_transition_time_kept_when_unchanged(self) -> None:
        projector = StatusProjector()
        record = make_record()
        issue = RemoteIssue(number=1, title="t")
        record.status = projector.project(record, issue, now=T0)
        record.status = projector.project(record, issue, now=T1)

        condition = record.status.get_condition(ConditionType.ISSUE_OPEN)
        assert condition is not None
        assert condition.last_transition_time == T0
        assert record.status.last_updated == T1

    def test_transition_time_moves_on_flip(self) -> None:
        projector = StatusProjector()
        record = make_record()
        record.status = projector.project(record, RemoteIssue(number=1, title="t"), now=T0)
        closed = RemoteIssue(number=1, title="t", state=IssueState.CLOSED)
        record.status = projector.project(record, closed, now=T1)

        condition = record.status.get_condition(ConditionType.ISSUE_OPEN)
        assert condition is not None
        assert condition.status is False
        assert condition.last_transition_time == T1

    def test_carries_token_required(self) -> None:
        record = make_record()
        record.status.token_required = True
        status = StatusProjector().project(record, RemoteIssue(number=1, title="t"), now=T0)
        assert status.token_required is True

    def test_does_not_mutate_record(self) -> None:
        record = make_record()
        StatusProjector().project(record, RemoteIssue(number=1, title="t"), now=T0)
        assert record.status.conditions == []
        assert record.status.remote_issue_id == 0

    def test_uses_clock_when_now_omitted(self) -> None:
        projector = StatusProjector(clock=fixed_clock(T1))
        status = projector.project(make_record(), RemoteIssue(number=1, title="t"))
        assert status.last_updated == T1


class TestApply:
    """Tests for StatusProjector.apply and set_token_required."""

    def test_apply_writes_status_only(self, store: InMemoryRecordStore) -> None:
        record = store.create(make_record())
        stored = StatusProjector().apply(store, record, RemoteIssue(number=42, title="t"))
        assert stored.status.remote_issue_id == 42
        assert stored.resource_version == record.resource_version
        assert stored.status_version == record.status_version + 1

    def test_apply_conflict_propagates(self, store: InMemoryRecordStore) -> None:
        record = store.create(make_record())
        store.update_status(store.get(record.key))
        with pytest.raises(WriteConflict):
            StatusProjector().apply(store, record, RemoteIssue(number=42, title="t"))

    def test_set_token_required_writes_on_change(self, store: InMemoryRecordStore) -> None:
        record = store.create(make_record())
        updated = StatusProjector().set_token_required(store, record, True)
        assert updated.status.token_required is True
        assert store.get(record.key).status.token_required is True

    def test_set_token_required_skips_unchanged(self, store: InMemoryRecordStore) -> None:
        record = store.create(make_record())
        result = StatusProjector().set_token_required(store, record, False)
        assert result is record
        assert store.get(record.key).status_version == 1
