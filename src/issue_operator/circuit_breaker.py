"""Circuit breaker shared by the GitHub clients of all reconcile passes.

Each pass builds a short-lived client for its own token, but they all
report to one breaker per service. After ``failure_threshold`` consecutive
failures the breaker opens and passes fail fast with ``RemoteUnavailable``
until ``recovery_timeout`` has elapsed. Then a few trial calls are let
through (half-open); enough successes close it, any failure reopens it.

Only unhealthy answers count as failures: 5xx responses, timeouts and
transport errors. The client reports a 4xx as a success.

Environment variables, read when the registry creates a breaker:
- OPERATOR_CIRCUIT_BREAKER_ENABLED (default: true)
- OPERATOR_CIRCUIT_BREAKER_FAILURE_THRESHOLD (default: 5)
- OPERATOR_CIRCUIT_BREAKER_RECOVERY_TIMEOUT (default: 30 seconds)
- OPERATOR_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS (default: 3)

``OPERATOR_<SERVICE>_CIRCUIT_BREAKER_*`` overrides the last three for one
service, e.g. ``OPERATOR_GITHUB_CIRCUIT_BREAKER_FAILURE_THRESHOLD``.
Invalid values log a warning and fall back to the default.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from issue_operator.config import _parse_bool, _parse_positive_float, _parse_positive_int
from issue_operator.logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "OPERATOR"


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfigError(ValueError):
    """Raised when a breaker is configured with a non-positive limit."""

    pass


def _require_positive(name: str, value: object, integer: bool = True) -> None:
    allowed: tuple[type, ...] = (int,) if integer else (int, float)
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise CircuitBreakerConfigError(f"{name} must be {kind}, got {value!r}")
    if value <= 0:
        raise CircuitBreakerConfigError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Limits for one breaker.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout: Seconds the circuit stays open before trial calls.
        half_open_max_calls: Trial calls allowed, and successes needed to close.
        enabled: When False every call is allowed and nothing is counted.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        _require_positive("failure_threshold", self.failure_threshold)
        _require_positive("recovery_timeout", self.recovery_timeout, integer=False)
        _require_positive("half_open_max_calls", self.half_open_max_calls)

    @classmethod
    def from_env(cls, service_name: str = "") -> CircuitBreakerConfig:
        """Build a config from the environment, with per-service overrides."""
        defaults = cls()

        def setting(suffix: str, default: object) -> tuple[str, str]:
            if service_name:
                name = f"{ENV_PREFIX}_{service_name.upper()}_CIRCUIT_BREAKER_{suffix}"
                value = os.getenv(name)
                if value:
                    return value, name
            name = f"{ENV_PREFIX}_CIRCUIT_BREAKER_{suffix}"
            return os.getenv(name, str(default)), name

        return cls(
            failure_threshold=_parse_positive_int(
                *setting("FAILURE_THRESHOLD", defaults.failure_threshold),
                defaults.failure_threshold,
            ),
            recovery_timeout=_parse_positive_float(
                *setting("RECOVERY_TIMEOUT", defaults.recovery_timeout),
                defaults.recovery_timeout,
            ),
            half_open_max_calls=_parse_positive_int(
                *setting("HALF_OPEN_MAX_CALLS", defaults.half_open_max_calls),
                defaults.half_open_max_calls,
            ),
            enabled=_parse_bool(os.getenv(f"{ENV_PREFIX}_CIRCUIT_BREAKER_ENABLED", "true")),
        )


@dataclass
class CircuitBreakerMetrics:
    """Counters reported by the health endpoint."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(vars(self))


class CircuitBreaker:
    """Thread-safe breaker for one remote service.

    Usage:
        breaker = CircuitBreaker("github")
        if not breaker.allow_request():
            raise RemoteUnavailable("circuit breaker is open")
        try:
            response = send()
        except httpx.TimeoutException as e:
            breaker.record_failure(e)
            raise
        breaker.record_success()
    """

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.metrics = CircuitBreakerMetrics()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_calls = 0
        self._trial_successes = 0
        self._opened_at = 0.0
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        # OPEN decays to HALF_OPEN lazily, on the next look at the state
        if (
            self._state == CircuitState.OPEN
            and time.monotonic() - self._opened_at >= self.config.recovery_timeout
        ):
            self._move_to(CircuitState.HALF_OPEN)
        return self._state

    def _move_to(self, state: CircuitState) -> None:
        previous, self._state = self._state, state
        self.metrics.state_changes += 1
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif state == CircuitState.HALF_OPEN:
            self._trial_calls = 0
            self._trial_successes = 0
        else:
            self._consecutive_failures = 0
        logger.info(
            "[CIRCUIT_BREAKER] %s: %s -> %s", self.service_name, previous.value, state.value
        )

    def allow_request(self) -> bool:
        """Return whether a call may go out now; counts rejections."""
        if not self.config.enabled:
            return True

        with self._lock:
            self.metrics.total_calls += 1
            state = self._current_state()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN:
                if self._trial_calls < self.config.half_open_max_calls:
                    self._trial_calls += 1
                    return True

            self.metrics.rejected_calls += 1
            logger.warning(
                "[CIRCUIT_BREAKER] %s: call rejected while %s", self.service_name, state.value
            )
            return False

    def record_success(self) -> None:
        if not self.config.enabled:
            return

        with self._lock:
            self.metrics.successful_calls += 1
            self.metrics.last_success_time = time.time()
            state = self._current_state()
            if state == CircuitState.CLOSED:
                self._consecutive_failures = 0
            elif state == CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.half_open_max_calls:
                    self._move_to(CircuitState.CLOSED)

    def record_failure(self, error: BaseException | None = None) -> None:
        """Count an unhealthy answer from the service."""
        if not self.config.enabled:
            return

        with self._lock:
            self.metrics.failed_calls += 1
            self.metrics.last_failure_time = time.time()
            logger.warning(
                "[CIRCUIT_BREAKER] %s: failure %s",
                self.service_name,
                f"{type(error).__name__}: {error}" if error is not None else "(no error)",
            )

            state = self._current_state()
            if state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
                return
            if state == CircuitState.CLOSED:
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.config.failure_threshold:
                    logger.warning(
                        "[CIRCUIT_BREAKER] %s: %s consecutive failures, opening",
                        self.service_name,
                        self._consecutive_failures,
                    )
                    self._move_to(CircuitState.OPEN)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "service_name": self.service_name,
                "state": self._current_state().value,
                "enabled": self.config.enabled,
                "failure_count": self._consecutive_failures,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "recovery_timeout": self.config.recovery_timeout,
                    "half_open_max_calls": self.config.half_open_max_calls,
                },
                "metrics": self.metrics.to_dict(),
            }


@dataclass
class CircuitBreakerRegistry:
    """Hands out one breaker per service name, created on first use."""

    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, service_name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Return the breaker for ``service_name``.

        ``config`` only applies when the breaker does not exist yet; by
        default it is read from the environment.
        """
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name, config or CircuitBreakerConfig.from_env(service_name)
                )
                self._breakers[service_name] = breaker
                logger.info(
                    "[CIRCUIT_BREAKER] %s: created (threshold=%s, recovery=%ss)",
                    service_name,
                    breaker.config.failure_threshold,
                    breaker.config.recovery_timeout,
                )
            return breaker

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: breaker.get_status() for name, breaker in self._breakers.items()}
