"""Data model for IssueRequest records, credential holders and remote issues."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from issue_operator.logging import get_logger
from issue_operator.types import ConditionType, IssueState

logger = get_logger(__name__)

# Key inside a credential holder's data that carries the bearer token
TOKEN_DATA_KEY = "token"

# Credential holders are named after their owning record
CREDENTIAL_NAME_SUFFIX = "-token-secret"


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Immutable identity of a stored object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ObjectKey:
        """Parse ``namespace/name``; a bare name lands in ``default``."""
        namespace, sep, name = value.partition("/")
        if not sep:
            return cls(namespace="default", name=namespace)
        return cls(namespace=namespace, name=name)


@dataclass
class IssueRequestSpec:
    """Desired state of a remote issue.

    Attributes:
        repo_url: Repository URL, e.g. ``https://github.com/acme/widgets``.
        title: Issue title; also the lookup key before a number is known.
        description: Issue body, at most 256 characters.
    """

    repo_url: str
    title: str
    description: str = ""


@dataclass
class Condition:
    """One observed boolean fact about the remote issue."""

    type: str
    status: bool
    reason: str
    message: str
    last_transition_time: datetime


@dataclass
class IssueRequestStatus:
    """Observed state of a record, written only through the status channel.

    Attributes:
        conditions: Ordered conditions, at most one per type.
        remote_issue_id: Number of the tracked remote issue, 0 while unknown.
        last_updated: When status was last projected from the tracker.
        token_required: True while the record waits on an operator-supplied token.
    """

    conditions: list[Condition] = field(default_factory=list)
    remote_issue_id: int = 0
    last_updated: datetime | None = None
    token_required: bool = False

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, if present."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @property
    def issue_open(self) -> bool | None:
        """Truth value of the IssueOpen condition, or None if never projected."""
        condition = self.get_condition(ConditionType.ISSUE_OPEN)
        return condition.status if condition else None


@dataclass
class IssueRequest:
    """A declarative request for one remote issue.

    ``resource_version`` guards writes to spec and metadata;
    ``status_version`` guards status writes. The two sub-documents are
    versioned independently so a spec edit never loses against a status
    write, or the reverse.
    """

    key: ObjectKey
    spec: IssueRequestSpec
    status: IssueRequestStatus = field(default_factory=IssueRequestStatus)
    deletion_timestamp: datetime | None = None
    finalizers: list[str] = field(default_factory=list)
    resource_version: int = 0
    status_version: int = 0

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def credential_key(self) -> ObjectKey:
        """Key of the credential holder owned by this record."""
        return ObjectKey(self.namespace, f"{self.name}{CREDENTIAL_NAME_SUFFIX}")

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def copy(self) -> IssueRequest:
        return copy.deepcopy(self)


@dataclass
class CredentialHolder:
    """Store object carrying the bearer token for one record.

    The controller creates it with an empty token; an operator fills it in.
    Erasing the owner record cascades to the holder.
    """

    key: ObjectKey
    owner: ObjectKey | None = None
    data: dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    @property
    def token(self) -> str:
        return self.data.get(TOKEN_DATA_KEY, "")

    def copy(self) -> CredentialHolder:
        return copy.deepcopy(self)


@dataclass
class RemoteIssue:
    """An issue in the remote tracker, reduced to the fields the operator reads.

    Attributes:
        number: The issue number within its repository.
        title: The issue title.
        body: The issue body.
        state: ``open`` or ``closed``.
        has_linked_change_request: True if the tracker reports a pull-request
            reference on the item.
        url: Browser URL of the issue.
    """

    number: int
    title: str
    body: str = ""
    state: str = IssueState.OPEN
    has_linked_change_request: bool = False
    url: str = ""

    @property
    def is_open(self) -> bool:
        return self.state == IssueState.OPEN

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> RemoteIssue:
        """Create a RemoteIssue from GitHub API response data.

        Args:
            data: Raw issue data from the GitHub REST API.

        Returns:
            RemoteIssue instance.
        """
        state = str(data.get("state") or IssueState.OPEN).lower()
        if not IssueState.is_valid(state):
            logger.warning("Unexpected issue state %r, treating as open", state)
            state = IssueState.OPEN

        return cls(
            number=data.get("number", 0),
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=state,
            has_linked_change_request=data.get("pull_request") is not None,
            url=data.get("html_url") or "",
        )
