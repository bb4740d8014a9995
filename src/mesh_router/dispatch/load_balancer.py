"""
Endpoint load balancing.

One strategy instance per (service, version), chosen statically by the
version's ``load_balancer`` setting. Strategies only pick among the
candidates they are handed; health filtering happens before them.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Sequence, Tuple

from mesh_router.pool import EndpointView
from mesh_router.routing.models import LoadBalancingPolicy

logger = logging.getLogger(__name__)


class LoadBalancingStrategy(ABC):
    """Base class for load balancing strategies. Tracks in-flight requests."""

    policy: LoadBalancingPolicy

    def __init__(self):
        self._in_flight: Dict[str, int] = {}
        self._lock = threading.Lock()

    @abstractmethod
    def select(self, candidates: Sequence[EndpointView]) -> Optional[EndpointView]:
        """Pick one of ``candidates``, or None when there are none."""

    def acquire(self, endpoint_id: str) -> None:
        with self._lock:
            self._in_flight[endpoint_id] = self._in_flight.get(endpoint_id, 0) + 1

    def release(self, endpoint_id: str) -> None:
        with self._lock:
            count = self._in_flight.get(endpoint_id, 0) - 1
            if count > 0:
                self._in_flight[endpoint_id] = count
            else:
                self._in_flight.pop(endpoint_id, None)

    def in_flight(self, endpoint_id: str) -> int:
        return self._in_flight.get(endpoint_id, 0)


class RoundRobinStrategy(LoadBalancingStrategy):
    """Round robin load balancing strategy."""

    policy = LoadBalancingPolicy.ROUND_ROBIN

    def __init__(self):
        super().__init__()
        self._current_index = 0

    def select(self, candidates: Sequence[EndpointView]) -> Optional[EndpointView]:
        if not candidates:
            return None
        with self._lock:
            endpoint = candidates[self._current_index % len(candidates)]
            self._current_index += 1
        return endpoint


class LeastConnectionsStrategy(LoadBalancingStrategy):
    """Picks the candidate with the fewest in-flight requests; ties go to the first."""

    policy = LoadBalancingPolicy.LEAST_CONNECTIONS

    def select(self, candidates: Sequence[EndpointView]) -> Optional[EndpointView]:
        if not candidates:
            return None
        with self._lock:
            return min(candidates, key=lambda view: self._in_flight.get(view.endpoint_id, 0))


_STRATEGIES = {
    LoadBalancingPolicy.ROUND_ROBIN: RoundRobinStrategy,
    LoadBalancingPolicy.LEAST_CONNECTIONS: LeastConnectionsStrategy,
}


class LoadBalancerRegistry:
    """Keeps the strategy of every (service, version)."""

    def __init__(self):
        self._strategies: Dict[Tuple[str, str], LoadBalancingStrategy] = {}
        self._lock = threading.Lock()

    def get(self, service: str, version: str, policy: LoadBalancingPolicy) -> LoadBalancingStrategy:
        """Return the version's strategy, replacing it if the policy changed."""
        key = (service, version)
        with self._lock:
            strategy = self._strategies.get(key)
            if strategy is None or strategy.policy != policy:
                if strategy is not None:
                    logger.info(
                        "Load balancing policy changed",
                        extra={"service": service, "version": version,
                               "old_policy": strategy.policy.value, "new_policy": policy.value}
                    )
                strategy = _STRATEGIES[LoadBalancingPolicy(policy)]()
                self._strategies[key] = strategy
            return strategy

    def prune(self, keep: Iterable[Tuple[str, str]]) -> int:
        """Drop strategies of (service, version) pairs no longer configured."""
        keep = set(keep)
        with self._lock:
            stale = [key for key in self._strategies if key not in keep]
            for key in stale:
                del self._strategies[key]
        if stale:
            logger.info("Pruned load balancers", extra={"removed": [f"{s}/{v}" for s, v in stale]})
        return len(stale)
