#!/usr/bin/env python3
"""Routing demonstration against a running mesh router

Sends requests for the frontend service and reports which backend version
served each one, as announced by the router's X-Mesh-Version header:
- N unmatched requests (weighted split, expected ~80% v1 / ~20% v2)
- /v2 and /beta (path rules, expected v2)
- `version: v2` and `version: v1` headers (header rules)
- the health endpoint of each version
- router health and circuit breaker state from the admin API

Run: python scripts/verify_routing.py --router http://localhost:8080 --requests 100
"""

from __future__ import annotations
import argparse
import logging
import sys
from collections import Counter
from typing import Dict, Optional

import requests

logging.basicConfig(level=logging.INFO, format="[%(asctime)s][%(levelname)s] %(message)s")
log = logging.getLogger("verify_routing")

VERSION_HEADER = "X-Mesh-Version"
FRONTEND_HOST = "nginx-frontend.local"
ADMIN_PREFIX = "/_router"

SESSION = requests.Session()
SESSION.headers.update({"User-Agent": "verify-routing/1.0"})


def routed_version(router: str, path: str = "/", headers: Optional[Dict[str, str]] = None,
                   host: str = FRONTEND_HOST) -> str:
    """Send one request and return the version that served it, or 'failed'."""
    request_headers = {"Host": host}
    request_headers.update(headers or {})
    try:
        response = SESSION.get(f"{router}{path}", headers=request_headers, timeout=10)
    except requests.RequestException as e:
        log.warning("Request to %s failed: %s", path, e)
        return "failed"
    if response.status_code >= 500:
        log.warning("Request to %s returned %s: %s", path, response.status_code, response.text[:200])
        return "failed"
    return response.headers.get(VERSION_HEADER, "unknown")


def check(label: str, observed: str, expected: str) -> bool:
    ok = observed == expected
    log.info("%s %s -> %s (expected %s)", "PASS" if ok else "FAIL", label, observed, expected)
    return ok


def test_weight_routing(router: str, count: int, expected_v2: float, tolerance: float) -> bool:
    log.info("Weight-based routing: %d unmatched requests", count)
    versions = Counter(routed_version(router) for _ in range(count))
    for version, seen in sorted(versions.items()):
        log.info("  %s: %d (%.1f%%)", version, seen, 100.0 * seen / count)

    share = versions.get("v2", 0) / count
    ok = abs(share - expected_v2) <= tolerance
    log.info("%s v2 share %.3f within %.3f of %.3f", "PASS" if ok else "FAIL", share, tolerance, expected_v2)
    return ok


def test_path_routing(router: str) -> bool:
    log.info("Path-based routing")
    results = [
        check("/v2", routed_version(router, "/v2"), "v2"),
        check("/beta", routed_version(router, "/beta"), "v2"),
    ]
    return all(results)


def test_header_routing(router: str) -> bool:
    log.info("Header-based routing")
    results = [
        check("version: v2", routed_version(router, headers={"version": "v2"}), "v2"),
        check("version: v1", routed_version(router, headers={"version": "v1"}), "v1"),
    ]
    return all(results)


def test_health_endpoints(router: str) -> bool:
    log.info("Backend health endpoints")
    results = [
        check("v1 /health", routed_version(router, "/health", headers={"version": "v1"}), "v1"),
        check("v2 /health", routed_version(router, "/health", headers={"version": "v2"}), "v2"),
    ]
    return all(results)


def show_router_state(router: str) -> bool:
    try:
        health = SESSION.get(f"{router}{ADMIN_PREFIX}/health", timeout=5).json()
        breakers = SESSION.get(f"{router}{ADMIN_PREFIX}/breakers", timeout=5).json()
    except (requests.RequestException, ValueError) as e:
        log.error("Admin API unavailable: %s", e)
        return False

    log.info("Router status: %s (config generation %s)", health.get("status"), health.get("config_generation"))
    for version in health.get("unavailable_versions", []):
        log.warning("  no serving endpoints: %s", version)
    log.info("Circuit breakers: %s total, %s ejected", breakers.get("count"), breakers.get("ejected"))
    return health.get("status") == "healthy"


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify mesh router traffic routing")
    parser.add_argument("--router", default="http://localhost:8080", help="Router base URL")
    parser.add_argument("--requests", type=int, default=100, help="Unmatched requests for the split test")
    parser.add_argument("--expected-v2", type=float, default=0.20, help="Expected v2 share of the split")
    parser.add_argument("--tolerance", type=float, default=0.10, help="Allowed deviation of the v2 share")
    args = parser.parse_args()

    router = args.router.rstrip("/")
    results = {
        "router": show_router_state(router),
        "weights": test_weight_routing(router, args.requests, args.expected_v2, args.tolerance),
        "paths": test_path_routing(router),
        "headers": test_header_routing(router),
        "health": test_health_endpoints(router),
    }

    failed = [name for name, ok in results.items() if not ok]
    if failed:
        log.error("Routing verification failed: %s", ", ".join(failed))
        return 1
    log.info("Routing verification completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
