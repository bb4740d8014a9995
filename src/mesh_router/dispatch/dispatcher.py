"""
Request dispatcher.

Per request: resolve the service from the host, resolve the backend version
(rules, then the traffic split), take the serving endpoints of that version
from the current pool snapshot, and forward with retries. Every attempt's
outcome is reported back to the pool; every request produces one outcome
event.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from mesh_router.core.exceptions import ForwardingFailure, ServiceUnavailable
from mesh_router.core.proxy import ForwardingClient, UpstreamResponse
from mesh_router.events import OutcomeEvent, OutcomeStream
from mesh_router.pool import BackendPool, EndpointView
from mesh_router.routing.config_store import CompiledService, RoutingConfigStore

from .load_balancer import LoadBalancerRegistry, LoadBalancingStrategy

logger = logging.getLogger(__name__)


@dataclass
class InboundRequest:
    """The parts of a client request the router needs."""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: str = ""
    body: bytes = b""
    client_host: Optional[str] = None

    @property
    def host(self) -> Optional[str]:
        for name, value in self.headers.items():
            if name.lower() == "host":
                return value
        return None

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None


@dataclass(frozen=True)
class Resolution:
    """How a request's backend version was chosen."""
    service: str
    version: str
    reason: str
    rule: Optional[str] = None

    @property
    def from_split(self) -> bool:
        """Split-resolved requests may fail over; rule-pinned ones may not."""
        return self.reason in ("split", "hash")


@dataclass
class DispatchResult:
    response: UpstreamResponse
    service: str
    version: str
    endpoint_id: str
    attempts: int
    resolution: Resolution


class RequestDispatcher:
    """Routes inbound requests to backend endpoints."""

    def __init__(self,
                 config_store: RoutingConfigStore,
                 pool: BackendPool,
                 client: ForwardingClient,
                 stream: Optional[OutcomeStream] = None,
                 balancers: Optional[LoadBalancerRegistry] = None):
        self.config_store = config_store
        self.pool = pool
        self.client = client
        self.stream = stream
        self.balancers = balancers or LoadBalancerRegistry()

    def resolve(self, service: CompiledService, request: InboundRequest) -> Resolution:
        """Resolve the backend version: matched rule first, then the traffic split."""
        matched = service.matcher.match_rule(request.headers, request.path)
        if matched is not None and matched.version is not None:
            return Resolution(service.name, matched.version, matched.rule.kind, matched.rule.label)

        rule_label = matched.rule.label if matched else None
        hash_header = service.config.hash_header
        if hash_header:
            key = request.header(hash_header)
            if key:
                return Resolution(service.name, service.selector.select_for_key(key), "hash", rule_label)

        return Resolution(service.name, service.selector.select(), "split", rule_label)

    async def dispatch(self, request: InboundRequest) -> DispatchResult:
        """
        Route and forward one request.

        Raises:
            UnknownServiceError: If no service claims the request host
            ServiceUnavailable: If no endpoint is serving or every attempt failed
        """
        started = time.perf_counter()
        service = self.config_store.resolve_service(request.host)
        resolution = self.resolve(service, request)

        for version in self._candidate_versions(service, resolution):
            balancer = self.balancers.get(service.name, version, service.config.versions[version].load_balancer)
            endpoint = self._next_endpoint(service.name, version, balancer, [])
            if endpoint is None:
                continue

            if version != resolution.version:
                logger.warning(
                    "Failing over to another version",
                    extra={"service": service.name, "requested_version": resolution.version, "version": version}
                )
            return await self._forward_with_retries(
                service, request, resolution, version, balancer, endpoint, started
            )

        error = ServiceUnavailable(
            f"No healthy endpoints for {service.name}/{resolution.version}",
            service=service.name,
            version=resolution.version
        )
        self._publish_failure(request, resolution, resolution.version, [], started, error)
        raise error

    def _candidate_versions(self, service: CompiledService, resolution: Resolution) -> List[str]:
        """The resolved version, then the failover order when failover applies."""
        candidates = [resolution.version]
        if resolution.from_split and service.config.failover_across_versions:
            for version in list(service.selector.versions) + [service.config.default_version]:
                if version not in candidates:
                    candidates.append(version)
        return candidates

    async def _forward_with_retries(self,
                                    service: CompiledService,
                                    request: InboundRequest,
                                    resolution: Resolution,
                                    version: str,
                                    balancer: LoadBalancingStrategy,
                                    endpoint: EndpointView,
                                    started: float) -> DispatchResult:
        """Forward starting at an already admitted endpoint, retrying on untried ones."""
        retries = service.config.retries
        tried: List[str] = []
        last_error: Optional[str] = None

        while endpoint is not None:
            tried.append(endpoint.endpoint_id)

            ok, response, last_error = await self._attempt(
                endpoint, request, balancer, retries.per_attempt_timeout_seconds, retries.retry_on_status
            )
            if ok:
                result = DispatchResult(
                    response=response,
                    service=service.name,
                    version=version,
                    endpoint_id=endpoint.endpoint_id,
                    attempts=len(tried),
                    resolution=resolution
                )
                self._publish_success(request, result, tried, started)
                return result

            logger.info(
                "Forwarding attempt failed",
                extra={
                    "endpoint_id": endpoint.endpoint_id,
                    "attempt": len(tried),
                    "max_attempts": retries.attempts,
                    "error": last_error
                }
            )
            if len(tried) >= retries.attempts:
                break
            endpoint = self._next_endpoint(service.name, version, balancer, tried)

        error = ServiceUnavailable(
            f"All forwarding attempts to {service.name}/{version} failed",
            service=service.name,
            version=version,
            attempts=len(tried),
            last_error=last_error
        )
        self._publish_failure(request, resolution, version, tried, started, error)
        raise error

    def _next_endpoint(self,
                       service: str,
                       version: str,
                       balancer: LoadBalancingStrategy,
                       tried: List[str]) -> Optional[EndpointView]:
        """Pick an untried serving endpoint that admits the request."""
        candidates = [
            view for view in self.pool.snapshot().serving(service, version)
            if view.endpoint_id not in tried
        ]
        while candidates:
            endpoint = balancer.select(candidates)
            if endpoint is None:
                return None
            if self.pool.admit(endpoint.endpoint_id):
                return endpoint
            candidates = [view for view in candidates if view.endpoint_id != endpoint.endpoint_id]
        return None

    async def _attempt(self,
                       endpoint: EndpointView,
                       request: InboundRequest,
                       balancer: LoadBalancingStrategy,
                       timeout: float,
                       retry_on_status: List[int]) -> Tuple[bool, Optional[UpstreamResponse], Optional[str]]:
        """One forwarding attempt. Returns (ok, response, error)."""
        balancer.acquire(endpoint.endpoint_id)
        try:
            response = await asyncio.wait_for(
                self.client.forward_request(
                    endpoint_id=endpoint.endpoint_id,
                    address=endpoint.address,
                    method=request.method,
                    path=request.path,
                    headers=request.headers,
                    body=request.body or None,
                    query=request.query,
                    client_host=request.client_host
                ),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            self.pool.record_outcome(endpoint.endpoint_id, False)
            return False, None, f"Attempt timed out after {timeout}s"
        except ForwardingFailure as e:
            self.pool.record_outcome(endpoint.endpoint_id, False)
            return False, None, e.message
        except asyncio.CancelledError:
            # Client went away; the endpoint is not to blame
            self.pool.release(endpoint.endpoint_id)
            logger.debug("Request cancelled during forwarding", extra={"endpoint_id": endpoint.endpoint_id})
            raise
        except Exception:
            self.pool.release(endpoint.endpoint_id)
            logger.exception("Unexpected forwarding error", extra={"endpoint_id": endpoint.endpoint_id})
            raise
        finally:
            balancer.release(endpoint.endpoint_id)

        if response.status_code in retry_on_status:
            self.pool.record_outcome(endpoint.endpoint_id, False)
            return False, response, f"Upstream returned {response.status_code}"

        self.pool.record_outcome(endpoint.endpoint_id, True)
        return True, response, None

    def _publish_success(self, request: InboundRequest, result: DispatchResult,
                         tried: List[str], started: float) -> None:
        if self.stream is None:
            return
        failed_over = result.version != result.resolution.version
        self.stream.publish(OutcomeEvent.create_event(
            service=result.service,
            success=True,
            resolution="failover" if failed_over else result.resolution.reason,
            version=result.version,
            requested_version=result.resolution.version if failed_over else None,
            endpoint_id=result.endpoint_id,
            status_code=result.response.status_code,
            attempts=result.attempts,
            tried_endpoints=list(tried),
            latency_ms=(time.perf_counter() - started) * 1000,
            rule=result.resolution.rule,
            method=request.method,
            path=request.path
        ))

    def _publish_failure(self, request: InboundRequest, resolution: Resolution, version: str,
                         tried: List[str], started: float, error: ServiceUnavailable) -> None:
        if self.stream is None:
            return
        failed_over = version != resolution.version
        self.stream.publish(OutcomeEvent.create_event(
            service=resolution.service,
            success=False,
            resolution="failover" if failed_over else resolution.reason,
            version=version,
            requested_version=resolution.version if failed_over else None,
            endpoint_id=tried[-1] if tried else None,
            status_code=error.get_http_status_code(),
            attempts=len(tried),
            tried_endpoints=list(tried),
            latency_ms=(time.perf_counter() - started) * 1000,
            rule=resolution.rule,
            method=request.method,
            path=request.path,
            error=error.last_error or error.message
        ))
