"""
Mesh Router Forwarding Client
Forwards requests to backend endpoints and runs health probes over a shared,
pooled HTTP client
"""
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple
from urllib.parse import urljoin

import httpx

from mesh_router.core.config import Settings, get_settings
from mesh_router.core.exceptions import ForwardingFailure, ProbeFailure

logger = logging.getLogger(__name__)

ROUTER_HEADER = "X-Mesh-Router"
ROUTER_IDENTITY = "mesh-router/0.1.0"

# RFC 7230 connection-specific headers, plus those the client recomputes
HOP_BY_HOP_HEADERS = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate',
    'proxy-authorization', 'te', 'trailer', 'trailers', 'transfer-encoding',
    'upgrade', 'host', 'content-length'
})

# httpx decodes the body, so the upstream encoding no longer applies
_RESPONSE_DROP_HEADERS = HOP_BY_HOP_HEADERS | {'content-encoding'}


@dataclass
class UpstreamResponse:
    """Response received from a backend endpoint"""
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    content: bytes = b""
    elapsed_seconds: float = 0.0

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


class ForwardingClient:
    """HTTP client for forwarding requests to backend endpoints with connection pooling"""

    def __init__(self, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.http_client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def __aenter__(self):
        """Async context manager entry - initialize HTTP client with connection pooling"""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - cleanup HTTP client"""
        await self.close()

    async def start(self) -> None:
        if self.http_client is not None:
            return
        self.http_client = httpx.AsyncClient(
            # Read and write deadlines come from the per-attempt timeout
            timeout=httpx.Timeout(
                connect=self.settings.CONNECT_TIMEOUT,
                read=None,
                write=None,
                pool=self.settings.POOL_TIMEOUT
            ),
            limits=httpx.Limits(
                max_connections=self.settings.MAX_CONNECTIONS,
                max_keepalive_connections=self.settings.MAX_KEEPALIVE_CONNECTIONS
            ),
            http2=self.settings.HTTP2_ENABLED,
            follow_redirects=False,
            transport=self._transport
        )

    async def close(self) -> None:
        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None

    async def forward_request(
        self,
        endpoint_id: str,
        address: str,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = None,
        query: str = "",
        client_host: Optional[str] = None
    ) -> UpstreamResponse:
        """
        Forward an HTTP request to one endpoint

        Args:
            endpoint_id: Endpoint identifier, for errors and logs
            address: Base URL of the endpoint
            method: HTTP method (GET, POST, etc.)
            path: Request path
            headers: Inbound request headers
            body: Request body
            query: Raw query string
            client_host: Address of the downstream client

        Returns:
            The upstream response, whatever its status

        Raises:
            ForwardingFailure: If the endpoint could not be reached or timed out
        """
        if not self.http_client:
            raise RuntimeError("Forwarding client not initialized. Use async context manager.")

        full_url = urljoin(address.rstrip('/') + '/', path.lstrip('/'))
        if query:
            full_url = f"{full_url}?{query}"

        proxy_headers = self._prepare_headers(headers, client_host)

        logger.debug(
            "Forwarding request",
            extra={
                "endpoint_id": endpoint_id,
                "method": method,
                "url": full_url,
                "body_size": len(body) if body else 0
            }
        )

        try:
            response = await self.http_client.request(
                method=method,
                url=full_url,
                headers=proxy_headers,
                content=body
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream timeout: {e}", extra={"endpoint_id": endpoint_id})
            raise ForwardingFailure(
                f"Timeout forwarding to {endpoint_id}",
                endpoint_id=endpoint_id,
                original_exception=e
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"Upstream connection error: {e}", extra={"endpoint_id": endpoint_id})
            raise ForwardingFailure(
                f"Unable to reach {endpoint_id}: {type(e).__name__}",
                endpoint_id=endpoint_id,
                original_exception=e
            ) from e

        return UpstreamResponse(
            status_code=response.status_code,
            headers=[
                (key, value) for key, value in response.headers.multi_items()
                if key.lower() not in _RESPONSE_DROP_HEADERS
            ],
            content=response.content,
            elapsed_seconds=response.elapsed.total_seconds()
        )

    async def probe(self, endpoint_id: str, address: str, health_path: str, timeout: float) -> int:
        """
        Perform a health check on an endpoint

        Returns:
            The 2xx status code of a healthy endpoint

        Raises:
            ProbeFailure: On a non-2xx status, timeout or connection error
        """
        if not self.http_client:
            raise RuntimeError("Forwarding client not initialized. Use async context manager.")

        full_url = urljoin(address.rstrip('/') + '/', health_path.lstrip('/'))
        try:
            response = await self.http_client.get(
                full_url,
                headers={ROUTER_HEADER: ROUTER_IDENTITY},
                timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise ProbeFailure(f"Health probe timed out after {timeout}s", endpoint_id=endpoint_id) from e
        except httpx.HTTPError as e:
            raise ProbeFailure(f"Health probe failed: {type(e).__name__}: {e}", endpoint_id=endpoint_id) from e

        if not 200 <= response.status_code < 300:
            raise ProbeFailure(
                f"Health probe returned {response.status_code}",
                endpoint_id=endpoint_id,
                status_code=response.status_code
            )

        logger.debug(
            "Health probe succeeded",
            extra={"endpoint_id": endpoint_id, "url": full_url, "status_code": response.status_code}
        )
        return response.status_code

    def _prepare_headers(self, headers: Mapping[str, str], client_host: Optional[str]) -> dict:
        """
        Prepare headers for forwarding by filtering out hop-by-hop headers
        and adding the forwarding headers
        """
        filtered_headers = {
            key: value for key, value in headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        }

        lowered = {key.lower(): value for key, value in headers.items()}
        forwarded_for = lowered.get('x-forwarded-for')
        client = client_host or "unknown"
        filtered_headers = {
            key: value for key, value in filtered_headers.items()
            if key.lower() not in ('x-forwarded-for', 'x-forwarded-host')
        }
        filtered_headers["X-Forwarded-For"] = f"{forwarded_for}, {client}" if forwarded_for else client
        if 'host' in lowered:
            filtered_headers["X-Forwarded-Host"] = lowered['host']
        filtered_headers[ROUTER_HEADER] = ROUTER_IDENTITY

        return filtered_headers
