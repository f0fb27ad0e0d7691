"""Ticketing client for the GitHub issues REST API.

The reconciler talks to the remote tracker only through the abstract
``TicketingClient``. ``GitHubIssueClient`` implements it with direct httpx
calls against the GitHub REST API.

Implements exponential backoff with jitter for rate limiting per:
https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api

A shared circuit breaker fails calls fast while the API is unhealthy.
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Self, TypeVar

import httpx

from issue_operator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from issue_operator.exceptions import (
    RemoteRateLimited,
    RemoteRejected,
    RemoteUnavailable,
    TicketingError,
    Unauthorized,
)
from issue_operator.logging import get_logger
from issue_operator.models import RemoteIssue
from issue_operator.types import IssueState

logger = get_logger(__name__)

# Default timeout for HTTP requests (connect, read, write, pool)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

# GitHub API default base URL
DEFAULT_GITHUB_API_URL = "https://api.github.com"

# GitHub caps per_page at 100
ISSUES_PER_PAGE = 100

# Upper bound on pages scanned by find_issue (100 issues per page)
DEFAULT_MAX_PAGES = 50

T = TypeVar("T")


@dataclass(frozen=True)
class GitHubRetryConfig:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 4).
        initial_delay: Initial delay in seconds before first retry (default: 1.0).
        max_delay: Maximum delay in seconds between retries (default: 60.0).
        jitter_min: Minimum jitter multiplier (default: 0.7).
        jitter_max: Maximum jitter multiplier (default: 1.3).
    """

    max_retries: int = 4
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3


DEFAULT_RETRY_CONFIG = GitHubRetryConfig()


def _calculate_backoff_delay(
    attempt: int,
    config: GitHubRetryConfig,
    retry_after: float | None = None,
) -> float:
    """Calculate the delay before the next retry attempt.

    Args:
        attempt: Current retry attempt number (0-indexed).
        config: Retry configuration.
        retry_after: Optional Retry-After header value in seconds.

    Returns:
        Delay in seconds before next retry.
    """
    if retry_after is not None:
        base_delay = retry_after
    else:
        base_delay = min(config.initial_delay * (2**attempt), config.max_delay)

    jitter = random.uniform(config.jitter_min, config.jitter_max)
    return base_delay * jitter


def _check_rate_limit_warning(response: httpx.Response) -> None:
    """Log a warning if rate limit is near exhaustion."""
    remaining = response.headers.get("X-RateLimit-Remaining")
    if remaining is not None:
        try:
            if int(remaining) <= 10:
                reset_time = response.headers.get("X-RateLimit-Reset", "unknown")
                logger.warning(
                    "GitHub rate limit near exhaustion. Remaining: %s, Reset: %s",
                    remaining,
                    reset_time,
                )
        except ValueError:
            pass


def _get_retry_after(response: httpx.Response) -> float | None:
    """Extract Retry-After value from response headers.

    GitHub uses either Retry-After header or x-ratelimit-reset timestamp.

    Returns:
        Retry-After value in seconds, or None if not present.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            logger.warning("Invalid Retry-After header value: %s", retry_after)

    reset_time = response.headers.get("X-RateLimit-Reset")
    if reset_time is not None:
        try:
            delay = int(reset_time) - int(time.time())
            if delay > 0:
                return float(delay)
        except ValueError:
            logger.warning("Invalid X-RateLimit-Reset header value: %s", reset_time)

    return None


def _is_rate_limited(response: httpx.Response) -> bool:
    # 403 also means "forbidden"; only treat it as a rate limit when quota is gone
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    remaining = response.headers.get("X-RateLimit-Remaining")
    if remaining is None:
        return True
    try:
        return int(remaining) <= 0
    except ValueError:
        return True


def _execute_with_retry(
    operation: Callable[[], T],
    config: GitHubRetryConfig = DEFAULT_RETRY_CONFIG,
) -> T:
    """Execute an operation with retry logic for rate limiting.

    Args:
        operation: Callable that performs the HTTP operation and returns a result.
                  Should raise httpx.HTTPStatusError on error responses.
        config: Retry configuration.

    Returns:
        Result from the operation.

    Raises:
        RemoteRateLimited: If all retries are exhausted on rate limiting.
        httpx.HTTPStatusError: For non rate-limit error responses.
    """
    for attempt in range(config.max_retries + 1):
        try:
            return operation()
        except httpx.HTTPStatusError as e:
            if not _is_rate_limited(e.response):
                raise

            if attempt >= config.max_retries:
                raise RemoteRateLimited(
                    f"Rate limit exceeded after {config.max_retries} retries",
                    status_code=e.response.status_code,
                ) from e

            delay = _calculate_backoff_delay(attempt, config, _get_retry_after(e.response))
            logger.warning(
                "Rate limited (attempt %s/%s). Retrying in %.2fs",
                attempt + 1,
                config.max_retries + 1,
                delay,
            )
            time.sleep(delay)

    # range() above always returns or raises
    raise RemoteRateLimited("Retry failed with no attempts")


def _error_message(prefix: str, response: httpx.Response) -> str:
    error_msg = f"{prefix} failed with status {response.status_code}"
    try:
        error_data = response.json()
        if "message" in error_data:
            error_msg += f": {error_data['message']}"
    except (ValueError, KeyError, TypeError):
        # Body is not JSON; keep the base message
        pass
    return error_msg


class TicketingClient(ABC):
    """Abstract interface for remote issue operations.

    Implementations:
    - GitHubIssueClient (production)
    - in-memory fake (tests)

    Clients are built per reconcile pass from the current token and closed
    afterwards, so token rotation takes effect on the next pass.
    """

    @abstractmethod
    def find_issue(
        self, owner: str, repo: str, title: str, known_number: int = 0
    ) -> RemoteIssue | None:
        """Find the issue a record describes.

        Returns the issue numbered ``known_number`` when it is > 0 and
        listed; otherwise the first open issue titled ``title``; else None.
        A title match never shadows a number match. Closed issues and pull
        requests are not matched by title.

        Raises:
            Unauthorized: If the token is missing or rejected.
            RemoteUnavailable: On transport or server errors.
            RemoteRejected: If the tracker refuses the listing.
        """
        pass

    @abstractmethod
    def create_issue(self, owner: str, repo: str, title: str, body: str) -> RemoteIssue:
        """Create an issue and return it."""
        pass

    @abstractmethod
    def update_issue(
        self, owner: str, repo: str, issue: RemoteIssue, body: str, title: str
    ) -> RemoteIssue:
        """Set an issue's title and body. Idempotent."""
        pass

    @abstractmethod
    def close_issue(self, owner: str, repo: str, issue: RemoteIssue) -> None:
        """Close an issue. Safe to call on an already-closed issue."""
        pass

    def close(self) -> None:
        """Release any resources held by the client."""

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


TicketingClientFactory = Callable[[str], TicketingClient]


class BaseGitHubHttpClient:
    """Base class providing HTTP client connection pooling for GitHub API clients.

    This class encapsulates:
    - Lazy initialization of httpx.Client
    - Resource cleanup via close() method

    Subclasses must set self.timeout and self._headers before using _get_client().
    """

    timeout: httpx.Timeout
    _headers: dict[str, str]

    def __init__(self) -> None:
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the reusable HTTP client.

        Raises:
            RuntimeError: If subclass has not set required timeout or _headers attributes.
        """
        if self._client is None:
            if getattr(self, "timeout", None) is None:
                raise RuntimeError(
                    f"{self.__class__.__name__} must set self.timeout before "
                    "calling _get_client(). See BaseGitHubHttpClient docstring."
                )
            if getattr(self, "_headers", None) is None:
                raise RuntimeError(
                    f"{self.__class__.__name__} must set self._headers before "
                    "calling _get_client(). See BaseGitHubHttpClient docstring."
                )
            self._client = httpx.Client(timeout=self.timeout, headers=self._headers)
        return self._client

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            self._client.close()
            self._client = None


class GitHubIssueClient(BaseGitHubHttpClient, TicketingClient):
    """TicketingClient backed by the GitHub issues REST API.

    Supports both GitHub.com and GitHub Enterprise via configurable base URL.
    An empty token is a valid construction state; every call then raises
    ``Unauthorized`` without touching the network.
    """

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout: httpx.Timeout | None = None,
        retry_config: GitHubRetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> None:
        """Initialize the GitHub issue client.

        Args:
            token: GitHub personal access token or app token.
            base_url: Optional custom API base URL for GitHub Enterprise.
                     Defaults to "https://api.github.com".
                     For GitHub Enterprise: "https://your-ghe-host/api/v3"
            timeout: Optional custom timeout configuration.
            retry_config: Optional retry configuration for rate limiting.
            circuit_breaker: Circuit breaker shared across clients. If not provided,
                creates a default circuit breaker for the "github" service.
            max_pages: Maximum number of issue pages scanned by find_issue.
        """
        super().__init__()
        self.base_url = (base_url or DEFAULT_GITHUB_API_URL).rstrip("/")
        self.token = token
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self.max_pages = max_pages
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            service_name="github",
            config=CircuitBreakerConfig.from_env("github"),
        )
        self._headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        """Get the circuit breaker for this client."""
        return self._circuit_breaker

    def _request(self, action: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one API request, translating failures into TicketingError subclasses.

        Args:
            action: Human-readable action name used in error messages.
            method: HTTP method.
            url: Absolute request URL.
            **kwargs: Passed through to ``httpx.Client.request``.

        Returns:
            The successful response.

        Raises:
            Unauthorized: Empty token or HTTP 401.
            RemoteUnavailable: Open circuit, timeout, transport error or 5xx.
            RemoteRejected: Any other 4xx, or rate limit exhausted.
        """
        if not self.token:
            raise Unauthorized(f"{action}: no GitHub token configured")

        if not self._circuit_breaker.allow_request():
            raise RemoteUnavailable(
                f"GitHub circuit breaker is open - service may be unavailable. "
                f"State: {self._circuit_breaker.state.value}"
            )

        def do_request() -> httpx.Response:
            client = self._get_client()
            response = client.request(method, url, **kwargs)
            _check_rate_limit_warning(response)
            response.raise_for_status()
            return response

        try:
            response = _execute_with_retry(do_request, self.retry_config)
            self._circuit_breaker.record_success()
            return response
        except httpx.TimeoutException as e:
            self._circuit_breaker.record_failure(e)
            raise RemoteUnavailable(f"{action} timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = _error_message(action, e.response)
            if status >= 500:
                self._circuit_breaker.record_failure(e)
                raise RemoteUnavailable(message) from e
            # A 4xx is a healthy answer from the service
            self._circuit_breaker.record_success()
            if status == 401:
                raise Unauthorized(message) from e
            raise RemoteRejected(message, status_code=status) from e
        except httpx.RequestError as e:
            self._circuit_breaker.record_failure(e)
            raise RemoteUnavailable(f"{action} request failed: {e}") from e

    def _issues_url(self, owner: str, repo: str) -> str:
        return f"{self.base_url}/repos/{owner}/{repo}/issues"

    def find_issue(
        self, owner: str, repo: str, title: str, known_number: int = 0
    ) -> RemoteIssue | None:
        url = self._issues_url(owner, repo)
        title_match: RemoteIssue | None = None

        for page in range(1, self.max_pages + 1):
            params: dict[str, str | int] = {
                "state": "all",
                "per_page": ISSUES_PER_PAGE,
                "page": page,
            }
            response = self._request("List issues", "GET", url, params=params)
            items: list[dict[str, Any]] = response.json()

            for item in items:
                issue = RemoteIssue.from_api_response(item)
                if known_number > 0 and issue.number == known_number:
                    logger.debug("Found %s/%s#%s by number", owner, repo, issue.number)
                    return issue
                # Closed issues and pull requests are never adopted by title
                if (
                    title_match is None
                    and issue.title == title
                    and issue.is_open
                    and "pull_request" not in item
                ):
                    title_match = issue
                    if known_number <= 0:
                        logger.debug("Found %s/%s#%s by title", owner, repo, issue.number)
                        return issue

            if len(items) < ISSUES_PER_PAGE:
                break
        else:
            logger.warning(
                "Stopped listing %s/%s after %s pages; the issue may be beyond the scan limit",
                owner,
                repo,
                self.max_pages,
            )

        return title_match

    def create_issue(self, owner: str, repo: str, title: str, body: str) -> RemoteIssue:
        response = self._request(
            "Create issue",
            "POST",
            self._issues_url(owner, repo),
            json={"title": title, "body": body},
        )
        issue = RemoteIssue.from_api_response(response.json())
        logger.info("Created issue %s/%s#%s", owner, repo, issue.number)
        return issue

    def update_issue(
        self, owner: str, repo: str, issue: RemoteIssue, body: str, title: str
    ) -> RemoteIssue:
        response = self._request(
            "Update issue",
            "PATCH",
            f"{self._issues_url(owner, repo)}/{issue.number}",
            json={"title": title, "body": body},
        )
        updated = RemoteIssue.from_api_response(response.json())
        logger.info("Updated issue %s/%s#%s", owner, repo, updated.number)
        return updated

    def close_issue(self, owner: str, repo: str, issue: RemoteIssue) -> None:
        if not issue.is_open:
            logger.debug("Issue %s/%s#%s already closed", owner, repo, issue.number)
            return

        try:
            self._request(
                "Close issue",
                "PATCH",
                f"{self._issues_url(owner, repo)}/{issue.number}",
                json={"state": IssueState.CLOSED.value},
            )
        except RemoteRejected as e:
            # 422: the tracker refused a no-op transition (closed concurrently)
            if e.status_code != 422:
                raise
            logger.info(
                "Close of %s/%s#%s rejected as a no-op, treating as closed: %s",
                owner,
                repo,
                issue.number,
                e,
            )
            return
        logger.info("Closed issue %s/%s#%s", owner, repo, issue.number)


def github_client_factory(
    base_url: str | None = None,
    circuit_breaker: CircuitBreaker | None = None,
    retry_config: GitHubRetryConfig | None = None,
) -> TicketingClientFactory:
    """Build a factory producing a fresh GitHubIssueClient per token.

    The circuit breaker is shared by every client the factory produces.
    """

    def factory(token: str) -> TicketingClient:
        return GitHubIssueClient(
            token=token,
            base_url=base_url,
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
        )

    return factory


__all__ = [
    "DEFAULT_GITHUB_API_URL",
    "GitHubIssueClient",
    "GitHubRetryConfig",
    "TicketingClient",
    "TicketingClientFactory",
    "TicketingError",
    "github_client_factory",
]
