"""
Circuit breaker module for the mesh router.

Outlier ejection for backend endpoints: every endpoint carries an
EndpointBreaker that ejects it after consecutive failures, keeps it out of the
pool for the ejection duration, and then lets limited probationary traffic
through before returning it to service.

The breakers are owned by the backend pool, which supplies the pool-wide
numbers the ejection guard needs.

Example Usage:
    from mesh_router.circuit_breaker import EndpointBreaker, CircuitBreakerPolicy

    policy = CircuitBreakerPolicy(consecutive_errors=3, ejection_seconds=30,
                                  max_ejection_percent=50)
    breaker = EndpointBreaker("frontend/v1/10.0.0.1:80", policy)
    breaker.record_failure(ejected_peers=0, pool_size=2)
"""

from .breaker import CircuitBreakerPolicy, CircuitBreakerState, EndpointBreaker

__all__ = [
    "CircuitBreakerPolicy",
    "CircuitBreakerState",
    "EndpointBreaker",
]
