"""Admission validation for IssueRequest records.

``validate_issue_request_spec`` returns every problem with a spec;
``admit`` is the store admission hook that rejects a record listing all
of them at once.
"""

from __future__ import annotations

import re
from typing import NamedTuple
from urllib.parse import urlsplit

from issue_operator.exceptions import AdmissionRejected
from issue_operator.models import IssueRequest, IssueRequestSpec

# Longest accepted issue body
MAX_DESCRIPTION_LENGTH = 256

# Exactly /{owner}/{repo}, no trailing segments
_REPO_PATH = re.compile(r"^/[^/]+/[^/]+$")


class FieldError(NamedTuple):
    """One failing field of a spec.

    Attributes:
        field: Dotted path of the field, e.g. ``spec.title``.
        message: Why the value was refused.
    """

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def _validate_repo_url(url: str) -> FieldError | None:
    if not url:
        return FieldError("spec.repo_url", "repo URL must not be empty")

    try:
        parts = urlsplit(url)
    except ValueError as e:
        return FieldError("spec.repo_url", f"invalid URL format: {e}")

    if parts.scheme != "https":
        return FieldError("spec.repo_url", "repo URL must use https")
    if parts.hostname != "github.com":
        return FieldError("spec.repo_url", "repo URL must be a github.com URL")
    if not _REPO_PATH.match(parts.path):
        return FieldError(
            "spec.repo_url",
            "repo URL must be in the format https://github.com/{owner}/{repo}",
        )
    return None


def validate_issue_request_spec(spec: IssueRequestSpec) -> list[FieldError]:
    """Check a spec against the admission rules.

    Rules:
    - ``repo_url`` is ``https://github.com/{owner}/{repo}``
    - ``title`` is non-empty
    - ``description`` is at most 256 characters

    Args:
        spec: The spec to check.

    Returns:
        Every failing field, empty if the spec is valid.
    """
    errors: list[FieldError] = []

    repo_error = _validate_repo_url(spec.repo_url)
    if repo_error is not None:
        errors.append(repo_error)

    if not spec.title.strip():
        errors.append(FieldError("spec.title", "title must not be empty"))

    if len(spec.description) > MAX_DESCRIPTION_LENGTH:
        errors.append(
            FieldError(
                "spec.description",
                f"description must be at most {MAX_DESCRIPTION_LENGTH} characters "
                f"(got {len(spec.description)})",
            )
        )

    return errors


def admit(record: IssueRequest) -> None:
    """Store admission hook.

    Raises:
        AdmissionRejected: If the record's spec fails validation.
    """
    errors = validate_issue_request_spec(record.spec)
    if errors:
        raise AdmissionRejected(str(record.key), [str(e) for e in errors])
