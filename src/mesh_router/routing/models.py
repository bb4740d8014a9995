"""
Routing configuration models.

The routing YAML file is validated into these models. Rules are a closed
tagged union discriminated by ``type``; every model forbids unknown fields and
is frozen once loaded, so a validated configuration can be shared by all
request tasks without copying.
"""

import logging
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator

from mesh_router.circuit_breaker.breaker import CircuitBreakerPolicy

logger = logging.getLogger(__name__)


class LoadBalancingPolicy(str, Enum):
    """Endpoint selection policy, one per backend version."""

    ROUND_ROBIN = "round_robin"
    LEAST_CONNECTIONS = "least_connections"


class HeaderMatch(BaseModel):
    """Matches when a request header equals ``value`` (case-insensitive)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["header"] = "header"
    name: str = Field(..., min_length=1, description="Header name")
    value: str = Field(..., description="Expected header value")


class PathPrefixMatch(BaseModel):
    """Matches when the request path starts with ``prefix``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["path_prefix"] = "path_prefix"
    prefix: str = Field(..., min_length=1, description="Path prefix, e.g. /v2")

    @field_validator('prefix')
    @classmethod
    def validate_prefix(cls, v):
        if not v.startswith('/'):
            raise ValueError("Path prefix must start with '/'")
        return v


class DefaultMatch(BaseModel):
    """Matches every request; lowest priority."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["default"] = "default"


RouteMatch = Annotated[
    Union[HeaderMatch, PathPrefixMatch, DefaultMatch],
    Field(discriminator="type"),
]


class RoutingRule(BaseModel):
    """A single routing rule: one match predicate and its target version."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Optional[str] = Field(default=None, description="Rule name for logs")
    match: RouteMatch
    version: Optional[str] = Field(
        default=None,
        description="Target backend version; optional only for default rules"
    )

    @model_validator(mode='after')
    def validate_target(self):
        if self.version is None and not isinstance(self.match, DefaultMatch):
            raise ValueError(f"{self.match.type} rule requires a target version")
        return self

    @property
    def kind(self) -> str:
        return self.match.type

    @property
    def label(self) -> str:
        return self.name or f"{self.match.type}->{self.version or 'split'}"


class RetryPolicy(BaseModel):
    """Per-service retry behaviour."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    attempts: int = Field(default=3, ge=1, le=10, description="Total forwarding attempts per request")
    per_attempt_timeout_seconds: float = Field(default=5.0, gt=0, le=300.0)
    retry_on_status: List[int] = Field(default_factory=lambda: [502, 503, 504])


class VersionConfig(BaseModel):
    """A backend version: its endpoints and how traffic is spread over them."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    endpoints: List[HttpUrl] = Field(default_factory=list, description="Endpoint base URLs")
    load_balancer: LoadBalancingPolicy = LoadBalancingPolicy.ROUND_ROBIN
    circuit_breaker: CircuitBreakerPolicy = Field(default_factory=CircuitBreakerPolicy)

    @field_validator('endpoints')
    @classmethod
    def validate_unique_endpoints(cls, v):
        addresses = [str(url).rstrip('/') for url in v]
        if len(addresses) != len(set(addresses)):
            raise ValueError("Duplicate endpoint addresses")
        return v


class ServiceConfig(BaseModel):
    """A logical service fronted by the router."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    hosts: List[str] = Field(default_factory=list, description="Host names served")
    default_version: str = Field(..., min_length=1)
    traffic_split: Dict[str, int] = Field(default_factory=dict)
    rules: List[RoutingRule] = Field(default_factory=list)
    versions: Dict[str, VersionConfig] = Field(..., min_length=1)
    retries: RetryPolicy = Field(default_factory=RetryPolicy)
    failover_across_versions: bool = Field(
        default=False,
        description="Let split-resolved requests fall over to another version with healthy endpoints"
    )
    hash_header: Optional[str] = Field(
        default=None,
        description="Header whose value seeds a deterministic split draw"
    )

    @field_validator('hosts')
    @classmethod
    def normalize_hosts(cls, v):
        return [host.strip().lower() for host in v if host.strip()]

    @model_validator(mode='after')
    def validate_references(self):
        known = set(self.versions)
        if self.default_version not in known:
            raise ValueError(f"default_version '{self.default_version}' is not a declared version")
        for version in self.traffic_split:
            if version not in known:
                raise ValueError(f"traffic_split references unknown version '{version}'")
        for rule in self.rules:
            if rule.version is not None and rule.version not in known:
                raise ValueError(f"rule '{rule.label}' targets unknown version '{rule.version}'")
        return self


class ProbeConfig(BaseModel):
    """Health probe settings shared by all endpoints."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    interval_seconds: float = Field(default=10.0, gt=0, le=3600.0)
    timeout_seconds: float = Field(default=2.0, gt=0, le=60.0)
    health_path: str = Field(default="/health")
    remove_after_failures: Optional[int] = Field(
        default=None, ge=1,
        description="Deregister an endpoint after this many consecutive probe failures"
    )
    enabled: bool = True


class RoutingConfig(BaseModel):
    """Root of the routing configuration file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    probes: ProbeConfig = Field(default_factory=ProbeConfig)
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_unique_hosts(self):
        owners: Dict[str, str] = {}
        for service_name, service in self.services.items():
            for host in service.hosts:
                if host in owners:
                    raise ValueError(
                        f"host '{host}' is claimed by both '{owners[host]}' and '{service_name}'"
                    )
                owners[host] = service_name
        return self
