"""Tests for the GitHub ticketing client."""

import dataclasses
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from issue_operator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from issue_operator.exceptions import (
    RemoteRateLimited,
    RemoteRejected,
    RemoteUnavailable,
    TicketingError,
    Unauthorized,
)
from issue_operator.github_rest_client import (
    DEFAULT_GITHUB_API_URL,
    ISSUES_PER_PAGE,
    BaseGitHubHttpClient,
    GitHubIssueClient,
    GitHubRetryConfig,
    _calculate_backoff_delay,
    _check_rate_limit_warning,
    _execute_with_retry,
    _get_retry_after,
    github_client_factory,
)
from issue_operator.models import RemoteIssue
from issue_operator.types import IssueState

ISSUES_URL = "https://api.github.com/repos/acme/widgets/issues"
NO_RETRY = GitHubRetryConfig(max_retries=0, initial_delay=0.01)


def _issue(number: int, title: str = "t", state: str = "open", **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "number": number,
        "title": title,
        "body": "",
        "state": state,
        "html_url": f"https://github.com/acme/widgets/issues/{number}",
    }
    data.update(extra)
    return data


def _ok(payload: Any) -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.headers = {}
    response.json.return_value = payload
    return response


def _error(status: int, message: str = "", headers: dict[str, str] | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = {"message": message} if message else {}
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        message or str(status), request=MagicMock(), response=response
    )
    return response


def _breaker(threshold: int = 5) -> CircuitBreaker:
    return CircuitBreaker(
        service_name="github",
        config=CircuitBreakerConfig(failure_threshold=threshold, recovery_timeout=60.0),
    )


def _client(**kwargs: Any) -> GitHubIssueClient:
    kwargs.setdefault("retry_config", NO_RETRY)
    kwargs.setdefault("circuit_breaker", _breaker())
    return GitHubIssueClient(token=kwargs.pop("token", "ghp_test"), **kwargs)


class TestGitHubRetryConfig:
    """Tests for GitHubRetryConfig dataclass."""

    def test_default_values(self) -> None:
        config = GitHubRetryConfig()
        assert config.max_retries == 4
        assert config.initial_delay == 1.0
        assert config.max_delay == 60.0
        assert config.jitter_min == 0.7
        assert config.jitter_max == 1.3

    def test_is_frozen(self) -> None:
        config = GitHubRetryConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_retries = 10  # type: ignore[misc]


class TestCalculateBackoffDelay:
    """Tests for _calculate_backoff_delay function."""

    def test_exponential_backoff(self) -> None:
        config = GitHubRetryConfig(initial_delay=1.0, jitter_min=1.0, jitter_max=1.0)
        assert _calculate_backoff_delay(0, config) == 1.0
        assert _calculate_backoff_delay(1, config) == 2.0
        assert _calculate_backoff_delay(3, config) == 8.0

    def test_respects_max_delay(self) -> None:
        config = GitHubRetryConfig(initial_delay=1.0, max_delay=5.0, jitter_min=1.0, jitter_max=1.0)
        assert _calculate_backoff_delay(10, config) == 5.0

    def test_uses_retry_after(self) -> None:
        config = GitHubRetryConfig(jitter_min=1.0, jitter_max=1.0)
        assert _calculate_backoff_delay(0, config, retry_after=30.0) == 30.0


class TestRateLimitHeaders:
    """Tests for _check_rate_limit_warning and _get_retry_after."""

    def test_warns_when_remaining_low(self) -> None:
        response = MagicMock()
        response.headers = {"X-RateLimit-Remaining": "5", "X-RateLimit-Reset": "1234567890"}

        with patch("issue_operator.github_rest_client.logger") as mock_logger:
            _check_rate_limit_warning(response)
            mock_logger.warning.assert_called_once()

    def test_no_warning_when_remaining_high(self) -> None:
        response = MagicMock()
        response.headers = {"X-RateLimit-Remaining": "100"}

        with patch("issue_operator.github_rest_client.logger") as mock_logger:
            _check_rate_limit_warning(response)
            mock_logger.warning.assert_not_called()

    def test_retry_after_header(self) -> None:
        response = MagicMock()
        response.headers = {"Retry-After": "30"}
        assert _get_retry_after(response) == 30.0

    def test_ratelimit_reset_header(self) -> None:
        response = MagicMock()
        response.headers = {"X-RateLimit-Reset": "1060"}
        with patch("issue_operator.github_rest_client.time.time", return_value=1000):
            assert _get_retry_after(response) == 60.0

    def test_no_headers(self) -> None:
        response = MagicMock()
        response.headers = {}
        assert _get_retry_after(response) is None


class TestExecuteWithRetry:
    """Tests for _execute_with_retry function."""

    def test_success_on_first_attempt(self) -> None:
        operation = MagicMock(return_value="success")
        assert _execute_with_retry(operation) == "success"
        assert operation.call_count == 1

    def test_retries_on_rate_limit_403(self) -> None:
        error = httpx.HTTPStatusError(
            "Rate limited",
            request=MagicMock(),
            response=_error(403, headers={"X-RateLimit-Remaining": "0"}),
        )
        operation = MagicMock(side_effect=[error, error, "success"])

        config = GitHubRetryConfig(max_retries=3, initial_delay=0.01)
        assert _execute_with_retry(operation, config) == "success"
        assert operation.call_count == 3

    def test_no_retry_on_403_with_remaining_quota(self) -> None:
        error = httpx.HTTPStatusError(
            "Forbidden",
            request=MagicMock(),
            response=_error(403, headers={"X-RateLimit-Remaining": "100"}),
        )
        operation = MagicMock(side_effect=error)

        with pytest.raises(httpx.HTTPStatusError):
            _execute_with_retry(operation, GitHubRetryConfig(max_retries=3, initial_delay=0.01))
        assert operation.call_count == 1

    def test_raises_after_max_retries(self) -> None:
        error = httpx.HTTPStatusError("Too many requests", request=MagicMock(), response=_error(429))
        operation = MagicMock(side_effect=error)

        config = GitHubRetryConfig(max_retries=2, initial_delay=0.01)
        with pytest.raises(RemoteRateLimited, match="Rate limit exceeded") as exc_info:
            _execute_with_retry(operation, config)

        assert operation.call_count == 3
        assert exc_info.value.status_code == 429
        assert isinstance(exc_info.value, RemoteRejected)


class TestBaseGitHubHttpClient:
    """Tests for BaseGitHubHttpClient base class."""

    def test_requires_timeout(self) -> None:
        class Incomplete(BaseGitHubHttpClient):
            pass

        with pytest.raises(RuntimeError, match="timeout"):
            Incomplete()._get_client()

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_client_is_lazy_and_reused(self, mock_client_class: MagicMock) -> None:
        client = _client()
        assert client._client is None
        client._get_client()
        client._get_client()
        assert mock_client_class.call_count == 1

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_context_manager_closes(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        mock_client_class.return_value = http

        with _client() as client:
            client._get_client()

        http.close.assert_called_once()
        assert client._client is None


class TestGitHubIssueClientInit:
    """Tests for GitHubIssueClient construction."""

    def test_headers(self) -> None:
        client = _client(token="ghp_abc")
        assert client._headers == {
            "Accept": "application/vnd.github+json",
            "Authorization": "Bearer ghp_abc",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        assert client.base_url == DEFAULT_GITHUB_API_URL

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_enterprise_base_url(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([])
        mock_client_class.return_value = http

        client = _client(base_url="https://ghe.example.com/api/v3/")
        client.find_issue("acme", "widgets", "t")

        assert http.request.call_args[0][1] == (
            "https://ghe.example.com/api/v3/repos/acme/widgets/issues"
        )

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_empty_token_is_unauthorized_without_network(
        self, mock_client_class: MagicMock
    ) -> None:
        client = _client(token="")
        with pytest.raises(Unauthorized):
            client.find_issue("acme", "widgets", "t")
        with pytest.raises(Unauthorized):
            client.create_issue("acme", "widgets", "t", "b")
        mock_client_class.assert_not_called()


class TestFindIssue:
    """Tests for GitHubIssueClient.find_issue."""

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_lists_all_states(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([])
        mock_client_class.return_value = http

        assert _client().find_issue("acme", "widgets", "t") is None

        http.request.assert_called_once_with(
            "GET",
            ISSUES_URL,
            params={"state": "all", "per_page": ISSUES_PER_PAGE, "page": 1},
        )

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_finds_by_title(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([_issue(1, "other"), _issue(2, "Build fails")])
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails")

        assert issue is not None
        assert issue.number == 2
        assert issue.url == "https://github.com/acme/widgets/issues/2"

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_number_takes_precedence_over_title(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([_issue(3, "Build fails"), _issue(9, "renamed")])
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails", known_number=9)

        assert issue is not None
        assert issue.number == 9

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_falls_back_to_title_when_number_missing(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([_issue(3, "Build fails")])
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails", known_number=9)

        assert issue is not None
        assert issue.number == 3

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_paginates(self, mock_client_class: MagicMock) -> None:
        full_page = [_issue(n, f"issue {n}") for n in range(1, ISSUES_PER_PAGE + 1)]
        http = MagicMock()
        http.request.side_effect = [
            _ok(full_page),
            _ok([_issue(ISSUES_PER_PAGE + 1, "Build fails")]),
        ]
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails")

        assert issue is not None
        assert issue.number == ISSUES_PER_PAGE + 1
        pages = [c.kwargs["params"]["page"] for c in http.request.call_args_list]
        assert pages == [1, 2]

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_stops_at_max_pages(self, mock_client_class: MagicMock) -> None:
        full_page = [_issue(n, f"issue {n}") for n in range(1, ISSUES_PER_PAGE + 1)]
        http = MagicMock()
        http.request.return_value = _ok(full_page)
        mock_client_class.return_value = http

        assert _client(max_pages=3).find_issue("acme", "widgets", "missing") is None
        assert http.request.call_count == 3

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_detects_linked_pull_request(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(
            [_issue(4, "t", state="closed", pull_request={"url": "https://x"})]
        )
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "t", known_number=4)

        assert issue is not None
        assert issue.has_linked_change_request is True
        assert issue.state == IssueState.CLOSED

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_closed_issue_not_matched_by_title(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([_issue(42, "Build fails", state="closed")])
        mock_client_class.return_value = http

        assert _client().find_issue("acme", "widgets", "Build fails") is None

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_skips_closed_title_match_for_open_one(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(
            [_issue(42, "Build fails", state="closed"), _issue(57, "Build fails")]
        )
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails")

        assert issue is not None
        assert issue.number == 57

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_closed_issue_found_by_number(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok([_issue(42, "Build fails", state="closed")])
        mock_client_class.return_value = http

        issue = _client().find_issue("acme", "widgets", "Build fails", known_number=42)

        assert issue is not None
        assert issue.number == 42
        assert issue.is_open is False

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_pull_request_not_matched_by_title(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(
            [_issue(5, "Build fails", pull_request={"url": "https://x"})]
        )
        mock_client_class.return_value = http

        assert _client().find_issue("acme", "widgets", "Build fails") is None


class TestMutations:
    """Tests for create, update and close."""

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_create_issue(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(_issue(42, "Build fails", body="details"))
        mock_client_class.return_value = http

        issue = _client().create_issue("acme", "widgets", "Build fails", "details")

        assert issue.number == 42
        http.request.assert_called_once_with(
            "POST", ISSUES_URL, json={"title": "Build fails", "body": "details"}
        )

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_update_issue(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(_issue(42, "New title", body="new body"))
        mock_client_class.return_value = http

        issue = _client().update_issue(
            "acme", "widgets", RemoteIssue(number=42, title="old"), "new body", "New title"
        )

        assert issue.title == "New title"
        http.request.assert_called_once_with(
            "PATCH", f"{ISSUES_URL}/42", json={"title": "New title", "body": "new body"}
        )

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_close_issue(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _ok(_issue(42, state="closed"))
        mock_client_class.return_value = http

        _client().close_issue("acme", "widgets", RemoteIssue(number=42, title="t"))

        http.request.assert_called_once_with("PATCH", f"{ISSUES_URL}/42", json={"state": "closed"})

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_close_already_closed_sends_nothing(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        mock_client_class.return_value = http

        closed = RemoteIssue(number=42, title="t", state=IssueState.CLOSED)
        _client().close_issue("acme", "widgets", closed)

        http.request.assert_not_called()

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_close_tolerates_422(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _error(422, "Validation Failed")
        mock_client_class.return_value = http

        _client().close_issue("acme", "widgets", RemoteIssue(number=42, title="t"))

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_close_propagates_other_rejections(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _error(404, "Not Found")
        mock_client_class.return_value = http

        with pytest.raises(RemoteRejected) as exc_info:
            _client().close_issue("acme", "widgets", RemoteIssue(number=42, title="t"))
        assert exc_info.value.status_code == 404


class TestErrorMapping:
    """Tests for translating HTTP failures into TicketingError subclasses."""

    @pytest.mark.parametrize(
        ("status", "headers", "expected"),
        [
            (401, {}, Unauthorized),
            (403, {"X-RateLimit-Remaining": "100"}, RemoteRejected),
            (404, {}, RemoteRejected),
            (410, {}, RemoteRejected),
            (422, {}, RemoteRejected),
            (500, {}, RemoteUnavailable),
            (502, {}, RemoteUnavailable),
        ],
    )
    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_status_mapping(
        self,
        mock_client_class: MagicMock,
        status: int,
        headers: dict[str, str],
        expected: type[TicketingError],
    ) -> None:
        http = MagicMock()
        http.request.return_value = _error(status, "nope", headers)
        mock_client_class.return_value = http

        with pytest.raises(expected, match="nope"):
            _client().find_issue("acme", "widgets", "t")

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_rate_limit_exhausted(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _error(429)
        mock_client_class.return_value = http

        with pytest.raises(RemoteRateLimited):
            _client().find_issue("acme", "widgets", "t")

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_timeout(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.side_effect = httpx.ReadTimeout("slow")
        mock_client_class.return_value = http

        with pytest.raises(RemoteUnavailable, match="timed out"):
            _client().find_issue("acme", "widgets", "t")

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_transport_error(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.side_effect = httpx.ConnectError("refused")
        mock_client_class.return_value = http

        with pytest.raises(RemoteUnavailable, match="request failed"):
            _client().create_issue("acme", "widgets", "t", "b")

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_server_errors_open_circuit(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _error(503)
        mock_client_class.return_value = http
        breaker = _breaker(threshold=2)
        client = _client(circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(RemoteUnavailable):
                client.find_issue("acme", "widgets", "t")

        assert breaker.state == CircuitState.OPEN
        http.request.reset_mock()
        with pytest.raises(RemoteUnavailable, match="circuit breaker is open"):
            client.find_issue("acme", "widgets", "t")
        http.request.assert_not_called()

    @patch("issue_operator.github_rest_client.httpx.Client")
    def test_client_errors_do_not_open_circuit(self, mock_client_class: MagicMock) -> None:
        http = MagicMock()
        http.request.return_value = _error(404)
        mock_client_class.return_value = http
        breaker = _breaker(threshold=1)
        client = _client(circuit_breaker=breaker)

        with pytest.raises(RemoteRejected):
            client.find_issue("acme", "widgets", "t")

        assert breaker.state == CircuitState.CLOSED


class TestClientFactory:
    """Tests for github_client_factory."""

    def test_builds_fresh_clients_sharing_breaker(self) -> None:
        breaker = _breaker()
        factory = github_client_factory(
            base_url="https://ghe.example.com/api/v3", circuit_breaker=breaker
        )

        first = factory("ghp_one")
        second = factory("ghp_two")

        assert isinstance(first, GitHubIssueClient)
        assert isinstance(second, GitHubIssueClient)
        assert first is not second
        assert first.token == "ghp_one"
        assert second.token == "ghp_two"
        assert first.circuit_breaker is second.circuit_breaker is breaker
        assert first.base_url == "https://ghe.example.com/api/v3"
