"""
Active health probing of backend endpoints.
"""

from .prober import HealthProber

__all__ = ["HealthProber"]
