"""
Admin API request and response models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class EndpointRegistrationRequest(BaseModel):
    """Register a backend endpoint with a version pool."""

    model_config = ConfigDict(extra="forbid")

    address: HttpUrl = Field(..., description="Endpoint base URL, e.g. http://10.0.0.7:80")


class ConfigReloadResponse(BaseModel):
    reloaded: bool = Field(..., description="Whether a new configuration was published")
    generation: int
    checksum: str


class HealthResponse(BaseModel):
    status: str = Field(..., description="'healthy' or 'degraded'")
    service: str = "mesh-router"
    version: str = "0.1.0"
    config_generation: int
    unavailable_versions: List[str] = Field(
        default_factory=list,
        description="service/version pools with no serving endpoint"
    )
    last_config_error: Optional[Dict[str, Any]] = None
