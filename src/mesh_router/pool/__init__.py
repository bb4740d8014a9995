"""
Backend pool tracking.

Owns endpoint registration and health state for every (service, version) and
publishes immutable snapshots of the serving endpoints.
"""

from .backend_pool import (
    BackendPool,
    Endpoint,
    EndpointHealth,
    EndpointSource,
    EndpointView,
    PoolSnapshot,
    make_endpoint_id,
)

__all__ = [
    "BackendPool",
    "Endpoint",
    "EndpointHealth",
    "EndpointSource",
    "EndpointView",
    "PoolSnapshot",
    "make_endpoint_id",
]
