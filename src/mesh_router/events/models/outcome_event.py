"""
Outcome event model for routed requests.

One OutcomeEvent is produced for every request that reaches the dispatcher,
whether it was served, failed over, or rejected. Events feed the in-memory
event store, live subscribers and the structured log.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OutcomeEvent(BaseModel):
    """
    Per-request routing outcome.

    Example:
        event = OutcomeEvent.create_event(
            service="nginx-frontend",
            version="v2",
            endpoint_id="nginx-frontend/v2/10.0.0.7:80",
            success=True,
            status_code=200,
            attempts=1,
            latency_ms=12.5,
            resolution="header"
        )
    """

    event_id: str = Field(..., description="Unique event identifier (UUID4 string)")
    timestamp: str = Field(..., description="Event timestamp in UTC ISO 8601 format")

    service: str = Field(..., description="Logical service the request was routed for")
    version: Optional[str] = Field(None, description="Backend version that was resolved")
    endpoint_id: Optional[str] = Field(None, description="Endpoint of the final attempt")

    success: bool = Field(..., description="Whether the request was served by an endpoint")
    status_code: Optional[int] = Field(None, description="Status returned to the client")
    attempts: int = Field(0, ge=0, description="Forwarding attempts made")
    tried_endpoints: List[str] = Field(default_factory=list, description="Endpoints tried, in order")
    latency_ms: float = Field(0.0, ge=0, description="Time spent in the dispatcher")

    resolution: str = Field(
        ...,
        description="How the version was chosen: 'header', 'path_prefix', 'default', 'split', 'hash' or 'failover'"
    )
    rule: Optional[str] = Field(None, description="Name of the matched rule, if any")
    requested_version: Optional[str] = Field(
        None, description="Version resolved before failover, when failover happened"
    )

    method: Optional[str] = Field(None, description="HTTP method")
    path: Optional[str] = Field(None, description="Request path")
    error: Optional[str] = Field(None, description="Error message for failed requests")

    @classmethod
    def create_event(cls, service: str, success: bool, resolution: str, **fields: Any) -> "OutcomeEvent":
        """Create an event stamped with a fresh id and the current UTC time."""
        return cls(
            event_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            service=service,
            success=success,
            resolution=resolution,
            **fields
        )

    def to_log_fields(self) -> Dict[str, Any]:
        """Fields for the structured log line, empty values left out."""
        return {
            key: value for key, value in self.model_dump().items()
            if value is not None and value != []
        }
