"""
Backend pool tracker.

Single owner of endpoint health. Probe results and request outcomes are
ingested here and applied to the endpoint's circuit breaker; the dispatcher
only ever reads an immutable PoolSnapshot.

Locking: every (service, version) pool has its own lock that serialises its
mutations. After mutating, the pool rebuilds its endpoint views and publishes
a new snapshot under a short pointer lock. Locks are always taken in that
order, version then pointer, and no lock spans the whole pool.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from mesh_router.circuit_breaker import CircuitBreakerPolicy, CircuitBreakerState, EndpointBreaker
from mesh_router.core.exceptions import UnknownServiceError
from mesh_router.routing.models import RoutingConfig

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, str]


class EndpointHealth(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EJECTED = "ejected"


class EndpointSource(str, Enum):
    CONFIG = "config"
    DYNAMIC = "dynamic"


def make_endpoint_id(service: str, version: str, address: str) -> str:
    """Stable endpoint identifier: ``service/version/host:port``."""
    parsed = urlparse(address)
    netloc = parsed.netloc or parsed.path
    return f"{service}/{version}/{netloc}"


@dataclass
class Endpoint:
    """Mutable endpoint record. Only touched under its version pool's lock."""
    endpoint_id: str
    service: str
    version: str
    address: str
    breaker: EndpointBreaker
    source: EndpointSource = EndpointSource.CONFIG
    registered_at: float = field(default_factory=time.time)
    last_probe_at: Optional[float] = None
    last_probe_ok: Optional[bool] = None
    last_error: Optional[str] = None
    probe_failures: int = 0

    @property
    def health(self) -> EndpointHealth:
        if self.breaker.state == CircuitBreakerState.OPEN:
            return EndpointHealth.EJECTED
        if self.breaker.state == CircuitBreakerState.HALF_OPEN or self.breaker.consecutive_failures > 0:
            return EndpointHealth.UNHEALTHY
        return EndpointHealth.HEALTHY

    def view(self) -> "EndpointView":
        return EndpointView(
            endpoint_id=self.endpoint_id,
            service=self.service,
            version=self.version,
            address=self.address,
            health=self.health,
            breaker_state=self.breaker.state,
            consecutive_failures=self.breaker.consecutive_failures,
            ejected_until=self.breaker.ejected_until,
            source=self.source,
            last_probe_at=self.last_probe_at,
            last_error=self.last_error
        )


@dataclass(frozen=True)
class EndpointView:
    """Read-only copy of an endpoint as of one snapshot."""
    endpoint_id: str
    service: str
    version: str
    address: str
    health: EndpointHealth
    breaker_state: CircuitBreakerState
    consecutive_failures: int
    ejected_until: Optional[float]
    source: EndpointSource
    last_probe_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def is_serving(self) -> bool:
        return self.health != EndpointHealth.EJECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint_id": self.endpoint_id,
            "service": self.service,
            "version": self.version,
            "address": self.address,
            "health": self.health.value,
            "breaker_state": self.breaker_state.value,
            "consecutive_failures": self.consecutive_failures,
            "ejected_until": self.ejected_until,
            "source": self.source.value,
            "last_probe_at": self.last_probe_at,
            "last_error": self.last_error
        }


@dataclass(frozen=True)
class PoolSnapshot:
    """Immutable point-in-time view of every version pool."""
    generation: int
    pools: Mapping[PoolKey, Tuple[EndpointView, ...]]

    def endpoints(self, service: str, version: str) -> Tuple[EndpointView, ...]:
        """All registered endpoints of a version, ejected ones included."""
        return self.pools.get((service, version), ())

    def serving(self, service: str, version: str) -> Tuple[EndpointView, ...]:
        """Endpoints of a version that may receive traffic."""
        return tuple(view for view in self.endpoints(service, version) if view.is_serving)

    def __iter__(self) -> Iterator[EndpointView]:
        for views in self.pools.values():
            yield from views


class _VersionPool:
    """Endpoints of one (service, version) and the lock guarding them."""

    def __init__(self, service: str, version: str, policy: CircuitBreakerPolicy):
        self.service = service
        self.version = version
        self.policy = policy
        self.endpoints: Dict[str, Endpoint] = {}
        self.lock = threading.Lock()

    @property
    def key(self) -> PoolKey:
        return (self.service, self.version)

    def ejected_peers(self, endpoint_id: str) -> int:
        return sum(
            1 for other in self.endpoints.values()
            if other.endpoint_id != endpoint_id and other.breaker.is_ejected
        )

    def next_expiry(self) -> Optional[float]:
        expiries = [
            endpoint.breaker.ejected_until for endpoint in self.endpoints.values()
            if endpoint.breaker.state == CircuitBreakerState.OPEN and endpoint.breaker.ejected_until is not None
        ]
        return min(expiries) if expiries else None

    def views(self) -> Tuple[EndpointView, ...]:
        return tuple(endpoint.view() for endpoint in self.endpoints.values())


class BackendPool:
    """
    Authoritative endpoint registry and health state.

    Ingest: record_probe_result, record_outcome.
    Read: snapshot.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._pools: Dict[PoolKey, _VersionPool] = {}
        self._index: Dict[str, PoolKey] = {}
        self._publish_lock = threading.Lock()
        self._snapshot = PoolSnapshot(generation=0, pools=MappingProxyType({}))
        self._next_expiry: Dict[PoolKey, float] = {}
        self.remove_after_failures: Optional[int] = None

        self._added_listeners: List[Callable[[EndpointView], None]] = []
        self._removed_listeners: List[Callable[[str], None]] = []

    def add_membership_listener(self,
                                on_added: Callable[[EndpointView], None],
                                on_removed: Callable[[str], None]) -> None:
        """Be told about endpoints entering and leaving the pool."""
        self._added_listeners.append(on_added)
        self._removed_listeners.append(on_removed)

    # Read side

    def snapshot(self) -> PoolSnapshot:
        """
        Current pool snapshot.

        Ejections that have expired since the last publish are applied first,
        so an endpoint becomes probationary as soon as its timer runs out.
        """
        if self._next_expiry:
            now = self._clock()
            for key, expiry in list(self._next_expiry.items()):
                if now >= expiry:
                    pool = self._pools.get(key)
                    if pool is not None:
                        with pool.lock:
                            for endpoint in pool.endpoints.values():
                                endpoint.breaker.refresh(now)
                            self._publish(pool)
        return self._snapshot

    def get_endpoint(self, endpoint_id: str) -> Optional[EndpointView]:
        for view in self.snapshot():
            if view.endpoint_id == endpoint_id:
                return view
        return None

    def endpoint_ids(self) -> List[str]:
        return list(self._index)

    # Membership

    def register(self,
                 service: str,
                 version: str,
                 address: str,
                 source: EndpointSource = EndpointSource.DYNAMIC,
                 policy: Optional[CircuitBreakerPolicy] = None) -> EndpointView:
        """
        Add an endpoint to a version pool.

        Registering an address that is already present returns the existing
        endpoint unchanged.

        Raises:
            UnknownServiceError: If the version pool does not exist and no
                                 policy is given to create it
        """
        address = address.rstrip('/')
        key = (service, version)
        pool = self._pools.get(key)
        if pool is None:
            if policy is None:
                raise UnknownServiceError(f"Unknown backend version '{service}/{version}'")
            pool = self._ensure_pool(service, version, policy)

        endpoint_id = make_endpoint_id(service, version, address)
        with pool.lock:
            existing = pool.endpoints.get(endpoint_id)
            if existing is not None:
                logger.debug("Endpoint already registered", extra={"endpoint_id": endpoint_id})
                return existing.view()

            endpoint = Endpoint(
                endpoint_id=endpoint_id,
                service=service,
                version=version,
                address=address,
                breaker=EndpointBreaker(endpoint_id, pool.policy, clock=self._clock),
                source=EndpointSource(source)
            )
            pool.endpoints[endpoint_id] = endpoint
            self._index[endpoint_id] = key
            self._publish(pool)
            view = endpoint.view()

        logger.info(
            "Endpoint registered",
            extra={"endpoint_id": endpoint_id, "address": address, "source": endpoint.source.value}
        )
        for listener in self._added_listeners:
            listener(view)
        return view

    def deregister(self, endpoint_id: str) -> bool:
        """Remove an endpoint. Returns False if it was not registered."""
        key = self._index.get(endpoint_id)
        pool = self._pools.get(key) if key else None
        if pool is None:
            return False

        with pool.lock:
            endpoint = pool.endpoints.pop(endpoint_id, None)
            if endpoint is None:
                return False
            self._index.pop(endpoint_id, None)
            self._publish(pool)

        logger.info("Endpoint deregistered", extra={"endpoint_id": endpoint_id})
        for listener in self._removed_listeners:
            listener(endpoint_id)
        return True

    def sync_from_config(self, config: RoutingConfig) -> Dict[str, int]:
        """
        Reconcile the pool with a routing configuration.

        Config-sourced endpoints are added and removed to match the file.
        Dynamically registered endpoints survive as long as their version
        exists. A changed breaker policy replaces the version's breakers.
        """
        self.remove_after_failures = config.probes.remove_after_failures
        added = removed = 0

        wanted: Dict[PoolKey, Tuple[CircuitBreakerPolicy, List[str]]] = {}
        for service_name, service in config.services.items():
            for version_name, version in service.versions.items():
                addresses = [str(url).rstrip('/') for url in version.endpoints]
                wanted[(service_name, version_name)] = (version.circuit_breaker, addresses)

        for key in [key for key in self._pools if key not in wanted]:
            for endpoint_id in list(self._pools[key].endpoints):
                if self.deregister(endpoint_id):
                    removed += 1
            with self._publish_lock:
                self._pools.pop(key, None)
                self._next_expiry.pop(key, None)
                pools = dict(self._snapshot.pools)
                pools.pop(key, None)
                self._snapshot = PoolSnapshot(self._snapshot.generation + 1, MappingProxyType(pools))

        for (service_name, version_name), (policy, addresses) in wanted.items():
            pool = self._ensure_pool(service_name, version_name, policy)
            if pool.policy != policy:
                self._replace_policy(pool, policy)

            wanted_ids = {make_endpoint_id(service_name, version_name, address) for address in addresses}
            stale = [
                endpoint_id for endpoint_id, endpoint in list(pool.endpoints.items())
                if endpoint.source == EndpointSource.CONFIG and endpoint_id not in wanted_ids
            ]
            for endpoint_id in stale:
                if self.deregister(endpoint_id):
                    removed += 1

            for address in addresses:
                if make_endpoint_id(service_name, version_name, address) not in pool.endpoints:
                    self.register(service_name, version_name, address, source=EndpointSource.CONFIG)
                    added += 1

        logger.info(
            "Backend pool reconciled with configuration",
            extra={"added": added, "removed": removed, "pools": len(self._pools)}
        )
        return {"added": added, "removed": removed}

    # Ingest side

    def record_probe_result(self, endpoint_id: str, ok: bool, error: Optional[str] = None) -> bool:
        """
        Apply an active health probe result.

        Returns:
            False if the endpoint is no longer registered
        """
        remove = False
        found = self._apply(endpoint_id, ok, probe=True, error=error)
        if found and not ok and self.remove_after_failures:
            key = self._index.get(endpoint_id)
            pool = self._pools.get(key) if key else None
            endpoint = pool.endpoints.get(endpoint_id) if pool else None
            remove = endpoint is not None and endpoint.probe_failures >= self.remove_after_failures

        if remove:
            logger.warning(
                "Removing permanently unhealthy endpoint",
                extra={"endpoint_id": endpoint_id, "probe_failures": self.remove_after_failures}
            )
            self.deregister(endpoint_id)
        return found

    def record_outcome(self, endpoint_id: str, ok: bool) -> bool:
        """
        Apply a passive request outcome.

        Returns:
            False if the endpoint is no longer registered
        """
        return self._apply(endpoint_id, ok, probe=False)

    def admit(self, endpoint_id: str) -> bool:
        """Reserve a request slot; limits traffic to half-open endpoints."""
        key = self._index.get(endpoint_id)
        pool = self._pools.get(key) if key else None
        if pool is None:
            return False
        with pool.lock:
            endpoint = pool.endpoints.get(endpoint_id)
            if endpoint is None:
                return False
            before = endpoint.breaker.state
            admitted = endpoint.breaker.try_admit()
            if endpoint.breaker.state != before:
                self._publish(pool)
            return admitted

    def release(self, endpoint_id: str) -> None:
        """Return an admitted slot for a request that produced no outcome."""
        key = self._index.get(endpoint_id)
        pool = self._pools.get(key) if key else None
        if pool is None:
            return
        with pool.lock:
            endpoint = pool.endpoints.get(endpoint_id)
            if endpoint is not None:
                endpoint.breaker.release()

    def reset_breaker(self, endpoint_id: str) -> bool:
        key = self._index.get(endpoint_id)
        pool = self._pools.get(key) if key else None
        if pool is None:
            return False
        with pool.lock:
            endpoint = pool.endpoints.get(endpoint_id)
            if endpoint is None:
                return False
            endpoint.breaker.reset()
            self._publish(pool)
        return True

    # Reporting

    def breaker_stats(self) -> List[Dict[str, Any]]:
        stats = []
        for pool in list(self._pools.values()):
            with pool.lock:
                for endpoint in pool.endpoints.values():
                    entry = endpoint.breaker.get_stats()
                    entry.update({"service": endpoint.service, "version": endpoint.version})
                    stats.append(entry)
        return stats

    def stats(self) -> Dict[str, Any]:
        snapshot = self.snapshot()
        pools = {}
        for (service, version), views in snapshot.pools.items():
            pools[f"{service}/{version}"] = {
                "total": len(views),
                "serving": sum(1 for view in views if view.is_serving),
                "healthy": sum(1 for view in views if view.health == EndpointHealth.HEALTHY),
                "unhealthy": sum(1 for view in views if view.health == EndpointHealth.UNHEALTHY),
                "ejected": sum(1 for view in views if view.health == EndpointHealth.EJECTED),
                "endpoints": [view.to_dict() for view in views]
            }
        return {"generation": snapshot.generation, "pools": pools}

    # Internals

    def _apply(self, endpoint_id: str, ok: bool, probe: bool, error: Optional[str] = None) -> bool:
        key = self._index.get(endpoint_id)
        pool = self._pools.get(key) if key else None
        if pool is None:
            logger.debug("Result for unknown endpoint ignored", extra={"endpoint_id": endpoint_id})
            return False

        with pool.lock:
            endpoint = pool.endpoints.get(endpoint_id)
            if endpoint is None:
                return False

            before = (endpoint.breaker.state, endpoint.breaker.consecutive_failures)
            if probe:
                endpoint.last_probe_at = time.time()
                endpoint.last_probe_ok = ok
                endpoint.last_error = None if ok else error
                endpoint.probe_failures = 0 if ok else endpoint.probe_failures + 1
            elif not ok and error:
                endpoint.last_error = error

            if ok:
                endpoint.breaker.record_success()
            else:
                endpoint.breaker.record_failure(
                    ejected_peers=pool.ejected_peers(endpoint_id),
                    pool_size=len(pool.endpoints)
                )

            after = (endpoint.breaker.state, endpoint.breaker.consecutive_failures)
            if after != before or probe:
                self._publish(pool)
        return True

    def _ensure_pool(self, service: str, version: str, policy: CircuitBreakerPolicy) -> _VersionPool:
        key = (service, version)
        with self._publish_lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = _VersionPool(service, version, policy)
                self._pools[key] = pool
            return pool

    def _replace_policy(self, pool: _VersionPool, policy: CircuitBreakerPolicy) -> None:
        with pool.lock:
            pool.policy = policy
            for endpoint in pool.endpoints.values():
                endpoint.breaker = EndpointBreaker(endpoint.endpoint_id, policy, clock=self._clock)
            self._publish(pool)
        logger.info(
            "Circuit breaker policy replaced",
            extra={"service": pool.service, "version": pool.version, "policy": policy.model_dump()}
        )

    def _publish(self, pool: _VersionPool) -> None:
        """Swap in a new snapshot with this pool's views. Caller holds pool.lock."""
        views = pool.views()
        expiry = pool.next_expiry()
        with self._publish_lock:
            if expiry is None:
                self._next_expiry.pop(pool.key, None)
            else:
                self._next_expiry[pool.key] = expiry
            pools = dict(self._snapshot.pools)
            pools[pool.key] = views
            self._snapshot = PoolSnapshot(
                generation=self._snapshot.generation + 1,
                pools=MappingProxyType(pools)
            )
