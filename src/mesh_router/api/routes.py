"""
Mesh Router Admin API Routes
Inspection and control endpoints for routing configuration, endpoint pools,
circuit breakers and outcome events
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from mesh_router.core.exceptions import ConfigError
from mesh_router.core.runtime import RouterRuntime

from .models import ConfigReloadResponse, EndpointRegistrationRequest, HealthResponse

logger = logging.getLogger(__name__)

# Create admin API router
router = APIRouter()


def get_runtime(request: Request) -> RouterRuntime:
    """Dependency injection for the router runtime created by the application"""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Router runtime not initialized")
    return runtime


@router.get("/health",
            summary="Health Check",
            description="Router status and backend versions without serving endpoints",
            response_model=HealthResponse,
            tags=["health"])
async def health_check(runtime: RouterRuntime = Depends(get_runtime)):
    """Health check endpoint. Degraded when any configured version has no serving endpoint."""
    snapshot = runtime.config_store.current
    pool = runtime.pool.snapshot()

    unavailable = [
        f"{service_name}/{version}"
        for service_name, compiled in snapshot.services.items()
        for version in compiled.config.versions
        if not pool.serving(service_name, version)
    ]
    last_error = runtime.config_store.last_error

    return HealthResponse(
        status="degraded" if unavailable else "healthy",
        config_generation=snapshot.generation,
        unavailable_versions=unavailable,
        last_config_error=last_error.to_dict() if last_error else None
    )


@router.get("/config",
            summary="Active Configuration",
            description="The routing configuration snapshot currently serving traffic",
            tags=["config"])
async def get_config(runtime: RouterRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    result = runtime.config_store.current.describe()
    result["reload_failures"] = runtime.config_store.reload_failures
    return result


@router.post("/config/reload",
             summary="Reload Configuration",
             description="Re-read the routing file; an invalid file leaves the active configuration in place",
             response_model=ConfigReloadResponse,
             tags=["config"])
async def reload_config(runtime: RouterRuntime = Depends(get_runtime)):
    previous = runtime.config_store.current
    try:
        snapshot = runtime.config_store.reload()
    except ConfigError as e:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=e.to_dict()
        )

    return ConfigReloadResponse(
        reloaded=snapshot.generation != previous.generation,
        generation=snapshot.generation,
        checksum=snapshot.checksum
    )


@router.get("/pool",
            summary="Endpoint Pools",
            description="Every registered endpoint with its health state, per service and version",
            tags=["pool"])
async def get_pool(runtime: RouterRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return runtime.pool.stats()


@router.post("/pool/{service}/{version}/endpoints",
             summary="Register Endpoint",
             status_code=status.HTTP_201_CREATED,
             tags=["pool"])
async def register_endpoint(
    service: str,
    version: str,
    registration: EndpointRegistrationRequest,
    runtime: RouterRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    """Register a dynamic endpoint with a configured backend version"""
    compiled = runtime.config_store.current.services.get(service)
    if compiled is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Service '{service}' not found"
        )
    if version not in compiled.config.versions:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Version '{version}' of service '{service}' not found"
        )

    view = runtime.pool.register(service, version, str(registration.address))
    logger.info("Endpoint registered via admin API", extra={"endpoint_id": view.endpoint_id})
    return view.to_dict()


@router.delete("/pool/endpoints/{endpoint_id:path}",
               summary="Deregister Endpoint",
               tags=["pool"])
async def deregister_endpoint(
    endpoint_id: str,
    runtime: RouterRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    if not runtime.pool.deregister(endpoint_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Endpoint '{endpoint_id}' not found"
        )
    return {"endpoint_id": endpoint_id, "deregistered": True}


@router.get("/breakers",
            summary="Circuit Breakers",
            description="Circuit breaker state and counters of every endpoint",
            tags=["pool"])
async def get_breakers(runtime: RouterRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    breakers = runtime.pool.breaker_stats()
    return {
        "count": len(breakers),
        "ejected": sum(1 for breaker in breakers if breaker["state"] != "closed"),
        "breakers": breakers
    }


@router.post("/breakers/{endpoint_id:path}/reset",
             summary="Reset Circuit Breaker",
             tags=["pool"])
async def reset_breaker(
    endpoint_id: str,
    runtime: RouterRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    """Manually return an ejected endpoint to service"""
    if not runtime.pool.reset_breaker(endpoint_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Endpoint '{endpoint_id}' not found"
        )
    return {"endpoint_id": endpoint_id, "state": "closed"}


@router.get("/events",
            summary="Outcome Events",
            description="Most recent request outcomes, newest first",
            tags=["events"])
async def get_events(
    limit: int = Query(100, ge=1, le=1000),
    service: Optional[str] = Query(None),
    success: Optional[bool] = Query(None),
    runtime: RouterRuntime = Depends(get_runtime)
) -> Dict[str, Any]:
    store = runtime.stream.store
    events = store.get_events(limit=limit, service=service, success=success)
    return {
        "count": len(events),
        "events": [event.model_dump() for event in events],
        "stats": store.get_stats()
    }


@router.get("/events/stream",
            summary="Outcome Event Stream",
            description="Live outcome events as newline-delimited JSON",
            tags=["events"])
async def stream_events(request: Request, runtime: RouterRuntime = Depends(get_runtime)):
    queue = runtime.stream.subscribe()

    async def event_lines():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                yield json.dumps(event.model_dump()) + "\n"
        finally:
            runtime.stream.unsubscribe(queue)

    return StreamingResponse(event_lines(), media_type="application/x-ndjson")
