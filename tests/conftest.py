"""Shared fixtures for mesh router tests."""

import copy
from typing import Any, Dict

import pytest
import yaml

from mesh_router.events import OutcomeStore


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


FRONTEND_CONFIG: Dict[str, Any] = {
    "probes": {"interval_seconds": 5, "timeout_seconds": 1, "health_path": "/health", "enabled": False},
    "services": {
        "nginx-frontend": {
            "hosts": ["nginx-frontend.local"],
            "default_version": "v1",
            "traffic_split": {"v1": 80, "v2": 20},
            "rules": [
                {"name": "version-header-v2", "match": {"type": "header", "name": "version", "value": "v2"}, "version": "v2"},
                {"name": "version-header-v1", "match": {"type": "header", "name": "version", "value": "v1"}, "version": "v1"},
                {"name": "v2-path", "match": {"type": "path_prefix", "prefix": "/v2"}, "version": "v2"},
                {"name": "beta-path", "match": {"type": "path_prefix", "prefix": "/beta"}, "version": "v2"},
            ],
            "retries": {"attempts": 3, "per_attempt_timeout_seconds": 1.0},
            "versions": {
                "v1": {
                    "endpoints": ["http://127.0.0.1:9001", "http://127.0.0.1:9003"],
                    "circuit_breaker": {"consecutive_errors": 3, "ejection_seconds": 30, "max_ejection_percent": 100},
                },
                "v2": {
                    "endpoints": ["http://127.0.0.1:9002"],
                    "circuit_breaker": {"consecutive_errors": 3, "ejection_seconds": 30, "max_ejection_percent": 100},
                },
            },
        },
        "nginx-api": {
            "hosts": ["nginx-api.local"],
            "default_version": "v1",
            "versions": {
                "v1": {"endpoints": ["http://127.0.0.1:9011"], "load_balancer": "least_connections"},
            },
        },
    },
}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def routing_data():
    """A fresh, mutable copy of the two-service routing configuration."""
    return copy.deepcopy(FRONTEND_CONFIG)


@pytest.fixture
def routing_file(tmp_path, routing_data):
    """The routing configuration written to a temporary YAML file."""
    path = tmp_path / "routing.yaml"
    path.write_text(yaml.safe_dump(routing_data, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def reset_outcome_store():
    """Start every test with a fresh outcome store singleton."""
    OutcomeStore._instance = None
    yield
    OutcomeStore._instance = None
