"""
Tests for the forwarding client - Unit tests only
Upstreams are simulated with httpx.MockTransport
"""
import httpx
import pytest

from mesh_router.core.config import Settings
from mesh_router.core.exceptions import ForwardingFailure, ProbeFailure
from mesh_router.core.proxy import ROUTER_HEADER, ForwardingClient


def client_for(handler):
    return ForwardingClient(Settings(), transport=httpx.MockTransport(handler))


class TestForwardRequest:
    """Request forwarding"""

    @pytest.mark.asyncio
    async def test_forwards_method_path_query_and_body(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(201, json={"ok": True})

        async with client_for(handler) as client:
            response = await client.forward_request(
                endpoint_id="svc/v1/10.0.0.1:80",
                address="http://10.0.0.1:8080/",
                method="POST",
                path="/orders/7",
                headers={"content-type": "application/json"},
                body=b'{"qty": 1}',
                query="debug=1"
            )

        assert seen == {
            "method": "POST",
            "url": "http://10.0.0.1:8080/orders/7?debug=1",
            "body": b'{"qty": 1}'
        }
        assert response.status_code == 201
        assert response.header("content-type") == "application/json"

    @pytest.mark.asyncio
    async def test_headers_prepared_for_upstream(self):
        seen = {}

        def handler(request: httpx.Request):
            seen.update(request.headers)
            return httpx.Response(200)

        async with client_for(handler) as client:
            await client.forward_request(
                endpoint_id="svc/v1/10.0.0.1:80",
                address="http://10.0.0.1:80",
                method="GET",
                path="/",
                headers={
                    "Host": "nginx-frontend.local",
                    "Connection": "keep-alive",
                    "Keep-Alive": "timeout=5",
                    "X-Forwarded-For": "203.0.113.9",
                    "version": "v2"
                },
                client_host="10.1.1.1"
            )

        assert "keep-alive" not in seen
        assert seen["x-forwarded-for"] == "203.0.113.9, 10.1.1.1"
        assert seen["x-forwarded-host"] == "nginx-frontend.local"
        assert seen[ROUTER_HEADER.lower()].startswith("mesh-router/")
        assert seen["version"] == "v2"

    @pytest.mark.asyncio
    async def test_error_statuses_are_returned_not_raised(self):
        async with client_for(lambda request: httpx.Response(503, text="down")) as client:
            response = await client.forward_request("svc/v1/a:1", "http://a:1", "GET", "/", {})

        assert response.status_code == 503
        assert response.content == b"down"

    @pytest.mark.asyncio
    async def test_hop_by_hop_response_headers_dropped(self):
        def handler(request):
            return httpx.Response(200, headers={"Connection": "close", "X-Backend": "v1"}, text="hi")

        async with client_for(handler) as client:
            response = await client.forward_request("svc/v1/a:1", "http://a:1", "GET", "/", {})

        names = [name.lower() for name, _ in response.headers]
        assert "connection" not in names
        assert "content-length" not in names
        assert response.header("x-backend") == "v1"

    @pytest.mark.asyncio
    async def test_connection_error_raises_forwarding_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ForwardingFailure) as exc_info:
                await client.forward_request("svc/v1/a:1", "http://a:1", "GET", "/", {})

        assert exc_info.value.endpoint_id == "svc/v1/a:1"
        assert isinstance(exc_info.value.original_exception, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_timeout_raises_forwarding_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ForwardingFailure) as exc_info:
                await client.forward_request("svc/v1/a:1", "http://a:1", "GET", "/", {})

        assert "Timeout" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_requires_initialization(self):
        client = client_for(lambda request: httpx.Response(200))

        with pytest.raises(RuntimeError):
            await client.forward_request("svc/v1/a:1", "http://a:1", "GET", "/", {})


class TestProbe:
    """Health probes"""

    @pytest.mark.asyncio
    async def test_healthy_probe(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(204)

        async with client_for(handler) as client:
            status_code = await client.probe("svc/v1/a:1", "http://a:1", "/health", timeout=1.0)

        assert status_code == 204
        assert seen["url"] == "http://a:1/health"

    @pytest.mark.asyncio
    async def test_non_2xx_probe_fails(self):
        async with client_for(lambda request: httpx.Response(500)) as client:
            with pytest.raises(ProbeFailure) as exc_info:
                await client.probe("svc/v1/a:1", "http://a:1", "/health", timeout=1.0)

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unreachable_probe_fails(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ProbeFailure):
                await client.probe("svc/v1/a:1", "http://a:1", "/health", timeout=1.0)
