"""
Request dispatch: version resolution, endpoint selection and forwarding with
retries.
"""

from .dispatcher import DispatchResult, InboundRequest, RequestDispatcher, Resolution
from .load_balancer import (
    LeastConnectionsStrategy,
    LoadBalancerRegistry,
    LoadBalancingStrategy,
    RoundRobinStrategy,
)

__all__ = [
    "DispatchResult",
    "InboundRequest",
    "LeastConnectionsStrategy",
    "LoadBalancerRegistry",
    "LoadBalancingStrategy",
    "RequestDispatcher",
    "Resolution",
    "RoundRobinStrategy",
]
