"""Repository URL parsing."""

from __future__ import annotations

from dataclasses import dataclass

from issue_operator.exceptions import MalformedRepoRef

# Accepted prefixes, stripped before splitting the path
_GITHUB_PREFIXES = ("https://github.com/", "http://github.com/")


@dataclass(frozen=True)
class RepoRef:
    """An (owner, repo) pair addressing a repository on the tracker."""

    owner: str
    repo: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_repo_url(url: str) -> RepoRef:
    """Split a repository URL into owner and repo.

    ``https://github.com/acme/widgets`` -> ``RepoRef("acme", "widgets")``.
    Trailing path segments (``/issues``, ``/tree/main``) and a ``.git``
    suffix on the repo are ignored.

    Raises:
        MalformedRepoRef: If fewer than two path segments remain.
    """
    path = url.strip()
    for prefix in _GITHUB_PREFIXES:
        if path.startswith(prefix):
            path = path[len(prefix):]
            break

    segments = [s for s in path.split("/") if s]
    if len(segments) < 2:
        raise MalformedRepoRef(url)

    owner, repo = segments[0], segments[1].removesuffix(".git")
    if not repo:
        raise MalformedRepoRef(url)
    return RepoRef(owner=owner, repo=repo)
