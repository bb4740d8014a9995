"""
Per-endpoint circuit breaker.

Each registered endpoint owns one breaker. The breaker is a small state
machine driven by two inputs, active health probes and passive request
outcomes, both of which land in the same consecutive-failure counter:

- CLOSED: serving. Consecutive failures reaching the policy threshold eject
  the endpoint, unless the ejection guard forbids it.
- OPEN: ejected, not serving. After ``ejection_seconds`` the breaker moves to
  HALF_OPEN the next time it is looked at.
- HALF_OPEN: probationary. At most ``half_open_max_requests`` requests are
  admitted at once. One success closes the breaker, one failure re-opens it
  with a fresh ejection timer.

The ejection guard bounds how much of a version's pool can be ejected at the
same time. The breaker does not know its pool; the owner passes in the pool
size and the number of peers already ejected when it records a failure.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitBreakerState(Enum):
    """
    Circuit breaker state enumeration.

    States:
        CLOSED: Normal operation - endpoint receives traffic
        OPEN: Ejected - endpoint receives no traffic until the ejection expires
        HALF_OPEN: Probation - limited traffic to test recovery
    """
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerPolicy(BaseModel):
    """
    Outlier-ejection policy for every endpoint of one backend version.

    A policy with ``max_ejection_percent`` of 100 is a fail-fast policy: the
    ejection guard never applies to it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    consecutive_errors: int = Field(
        default=5, ge=1, le=1000,
        description="Consecutive failures that eject an endpoint"
    )
    ejection_seconds: float = Field(
        default=30.0, gt=0, le=86400.0,
        description="How long an ejected endpoint stays out of the pool"
    )
    max_ejection_percent: int = Field(
        default=10, ge=0, le=100,
        description="Upper bound on the share of a pool that may be ejected at once"
    )
    half_open_max_requests: int = Field(
        default=1, ge=1, le=1000,
        description="Concurrent requests admitted to a half-open endpoint"
    )

    @property
    def fail_fast(self) -> bool:
        return self.max_ejection_percent >= 100


class EndpointBreaker:
    """
    Circuit breaker state machine for a single endpoint.

    Not thread-safe on its own: the backend pool serialises access under the
    owning version's lock.

    Usage:
        breaker = EndpointBreaker("frontend/v1/10.0.0.1:80", policy)

        if breaker.try_admit():
            ok = await forward()
            if ok:
                breaker.record_success()
            else:
                breaker.record_failure(ejected_peers=0, pool_size=2)
    """

    def __init__(self,
                 endpoint_id: str,
                 policy: Optional[CircuitBreakerPolicy] = None,
                 clock: Clock = time.monotonic):
        self.endpoint_id = endpoint_id
        self.policy = policy or CircuitBreakerPolicy()
        self._clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.consecutive_failures = 0
        self.ejected_until: Optional[float] = None
        self.half_open_in_flight = 0

        # Metrics
        self.total_successes = 0
        self.total_failures = 0
        self.total_ejections = 0
        self.suppressed_ejections = 0
        self.last_state_change_time = clock()

    def refresh(self, now: Optional[float] = None) -> bool:
        """
        Apply time-driven transitions.

        Returns:
            True if the state changed (OPEN -> HALF_OPEN)
        """
        if self.state != CircuitBreakerState.OPEN:
            return False

        now = self._clock() if now is None else now
        if self.ejected_until is not None and now >= self.ejected_until:
            self._transition_to_half_open(now)
            return True
        return False

    @property
    def is_serving(self) -> bool:
        """Whether the endpoint may appear in the serving snapshot."""
        return self.state != CircuitBreakerState.OPEN

    @property
    def is_ejected(self) -> bool:
        """Whether the endpoint counts against the ejection guard."""
        return self.state != CircuitBreakerState.CLOSED

    def try_admit(self) -> bool:
        """
        Reserve a request slot on this endpoint.

        CLOSED endpoints always admit. HALF_OPEN endpoints admit up to
        ``half_open_max_requests`` outstanding requests.
        """
        self.refresh()

        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.HALF_OPEN:
            if self.half_open_in_flight < self.policy.half_open_max_requests:
                self.half_open_in_flight += 1
                return True
            logger.debug(
                "Half-open endpoint at request allowance",
                extra={
                    "endpoint_id": self.endpoint_id,
                    "in_flight": self.half_open_in_flight,
                    "allowance": self.policy.half_open_max_requests
                }
            )
        return False

    def release(self) -> None:
        """Give back a half-open slot for a request that produced no outcome."""
        if self.state == CircuitBreakerState.HALF_OPEN and self.half_open_in_flight > 0:
            self.half_open_in_flight -= 1

    def record_success(self) -> bool:
        """
        Record a successful probe or request.

        Returns:
            True if the state changed (HALF_OPEN -> CLOSED)
        """
        self.refresh()
        self.total_successes += 1
        self.consecutive_failures = 0

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._close()
            return True

        if self.state == CircuitBreakerState.OPEN:
            # A late outcome from a request admitted before the ejection
            logger.debug(
                "Ignoring success recorded while ejected",
                extra={"endpoint_id": self.endpoint_id}
            )
        return False

    def record_failure(self, ejected_peers: int = 0, pool_size: int = 1) -> bool:
        """
        Record a failed probe or request and eject when the threshold is hit.

        Args:
            ejected_peers: Other endpoints of the same pool that are currently
                           OPEN or HALF_OPEN
            pool_size: Total endpoints registered in the pool, this one included

        Returns:
            True if the state changed (CLOSED -> OPEN or HALF_OPEN -> OPEN)
        """
        now = self._clock()
        self.refresh(now)
        self.total_failures += 1

        if self.state == CircuitBreakerState.OPEN:
            return False

        self.consecutive_failures += 1

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._open(now)
            logger.warning(
                "Probationary endpoint failed - ejecting again",
                extra={
                    "endpoint_id": self.endpoint_id,
                    "ejection_seconds": self.policy.ejection_seconds
                }
            )
            return True

        if self.consecutive_failures < self.policy.consecutive_errors:
            logger.debug(
                "Endpoint failure recorded",
                extra={
                    "endpoint_id": self.endpoint_id,
                    "consecutive_failures": self.consecutive_failures,
                    "threshold": self.policy.consecutive_errors
                }
            )
            return False

        if not self.ejection_allowed(ejected_peers, pool_size):
            self.suppressed_ejections += 1
            logger.warning(
                "Ejection suppressed - pool is at its max ejection percentage",
                extra={
                    "endpoint_id": self.endpoint_id,
                    "consecutive_failures": self.consecutive_failures,
                    "ejected_peers": ejected_peers,
                    "pool_size": pool_size,
                    "max_ejection_percent": self.policy.max_ejection_percent
                }
            )
            return False

        self._open(now)
        return True

    def ejection_allowed(self, ejected_peers: int, pool_size: int) -> bool:
        """
        Ejection guard.

        Ejecting is allowed when the pool, after this ejection, would have at
        most ``max_ejection_percent`` of its endpoints ejected. Fail-fast
        policies always allow it.
        """
        if self.policy.fail_fast:
            return True
        if pool_size <= 0:
            return False
        return (ejected_peers + 1) * 100 <= self.policy.max_ejection_percent * pool_size

    def reset(self) -> None:
        """Manually return the endpoint to service."""
        self._close()
        self.consecutive_failures = 0
        logger.info(
            "Circuit breaker manually reset to closed state",
            extra={"endpoint_id": self.endpoint_id}
        )

    def _open(self, now: float) -> None:
        old_state = self.state
        self.state = CircuitBreakerState.OPEN
        self.ejected_until = now + self.policy.ejection_seconds
        self.half_open_in_flight = 0
        self.total_ejections += 1
        self.last_state_change_time = now

        logger.warning(
            "Endpoint ejected",
            extra={
                "endpoint_id": self.endpoint_id,
                "previous_state": old_state.value,
                "consecutive_failures": self.consecutive_failures,
                "ejection_seconds": self.policy.ejection_seconds,
                "total_ejections": self.total_ejections
            }
        )

    def _transition_to_half_open(self, now: float) -> None:
        self.state = CircuitBreakerState.HALF_OPEN
        self.half_open_in_flight = 0
        self.last_state_change_time = now

        logger.info(
            "Endpoint ejection expired - entering half-open probation",
            extra={
                "endpoint_id": self.endpoint_id,
                "half_open_max_requests": self.policy.half_open_max_requests
            }
        )

    def _close(self) -> None:
        old_state = self.state
        self.state = CircuitBreakerState.CLOSED
        self.ejected_until = None
        self.half_open_in_flight = 0
        self.last_state_change_time = self._clock()

        if old_state != CircuitBreakerState.CLOSED:
            logger.info(
                "Endpoint returned to service",
                extra={"endpoint_id": self.endpoint_id, "previous_state": old_state.value}
            )

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of breaker state and counters for the admin API."""
        now = self._clock()
        remaining = 0.0
        if self.state == CircuitBreakerState.OPEN and self.ejected_until is not None:
            remaining = max(0.0, self.ejected_until - now)

        return {
            "endpoint_id": self.endpoint_id,
            "state": self.state.value,
            "state_duration_seconds": now - self.last_state_change_time,
            "consecutive_failures": self.consecutive_failures,
            "ejection_remaining_seconds": remaining,
            "half_open_in_flight": self.half_open_in_flight,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_ejections": self.total_ejections,
            "suppressed_ejections": self.suppressed_ejections,
            "policy": self.policy.model_dump()
        }
