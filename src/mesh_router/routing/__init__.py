"""
Request routing for the mesh router.

Resolves the backend version of a request: header and path rules first, then
the weighted traffic split. Configuration is loaded from YAML, validated and
compiled into immutable snapshots that are swapped atomically on reload.
"""

from .config_store import CompiledService, RoutingConfigStore, RoutingSnapshot, compile_config
from .matcher import RuleMatch, RuleMatcher
from .models import (
    DefaultMatch,
    HeaderMatch,
    LoadBalancingPolicy,
    PathPrefixMatch,
    ProbeConfig,
    RetryPolicy,
    RoutingConfig,
    RoutingRule,
    ServiceConfig,
    VersionConfig,
)
from .selector import WeightedSelector, hash_draw, uniform_draw

__all__ = [
    "CompiledService",
    "DefaultMatch",
    "HeaderMatch",
    "LoadBalancingPolicy",
    "PathPrefixMatch",
    "ProbeConfig",
    "RetryPolicy",
    "RoutingConfig",
    "RoutingConfigStore",
    "RoutingRule",
    "RoutingSnapshot",
    "RuleMatch",
    "RuleMatcher",
    "ServiceConfig",
    "VersionConfig",
    "WeightedSelector",
    "compile_config",
    "hash_draw",
    "uniform_draw",
]
