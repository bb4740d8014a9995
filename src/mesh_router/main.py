"""Main entry point for the mesh router application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from mesh_router.api.routes import router
from mesh_router.core.config import Settings, settings as default_settings
from mesh_router.core.exceptions import ServiceUnavailable, UnknownServiceError
from mesh_router.core.logging import setup_logging
from mesh_router.core.runtime import RouterRuntime
from mesh_router.dispatch import InboundRequest

logger = logging.getLogger(__name__)

VERSION_HEADER = "X-Mesh-Version"
PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan management
    Starts the router runtime and stops it on shutdown
    """
    runtime: RouterRuntime = app.state.runtime
    logger.info("Starting mesh router...")

    try:
        await runtime.start()
    except Exception as e:
        logger.error(f"Failed to start router runtime: {e}")
        await runtime.stop()
        raise

    logger.info(
        "Router configuration",
        extra={
            "host": runtime.settings.HOST,
            "port": runtime.settings.PORT,
            "debug": runtime.settings.DEBUG,
            "log_level": runtime.settings.LOG_LEVEL,
            "routing_config_file": runtime.settings.ROUTING_CONFIG_FILE,
            "admin_prefix": runtime.settings.ADMIN_PREFIX
        }
    )

    yield

    # Shutdown
    logger.info("Shutting down mesh router...")
    await runtime.stop()


async def service_unavailable_handler(request: Request, exc: ServiceUnavailable):
    return JSONResponse(
        status_code=exc.get_http_status_code(),
        content=exc.to_dict(),
        headers={"Retry-After": "1"}
    )


async def unknown_service_handler(request: Request, exc: UnknownServiceError):
    logger.info("Request for unknown host", extra={"host": exc.host, "path": request.url.path})
    return JSONResponse(status_code=exc.get_http_status_code(), content=exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Custom validation error handler"""
    logger.warning(
        "Request validation failed",
        extra={
            "url": str(request.url),
            "method": request.method,
            "errors": exc.errors()
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Request validation failed",
            "errors": exc.errors()
        }
    )


async def general_exception_handler(request: Request, exc: Exception):
    """General exception handler for unhandled errors"""
    logger.error(
        "Unhandled exception",
        extra={
            "url": str(request.url),
            "method": request.method,
            "error": str(exc)
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error occurred"
        }
    )


async def route_request(request: Request, path: str):
    """Data plane: hand every non-admin request to the dispatcher"""
    runtime: RouterRuntime = request.app.state.runtime

    inbound = InboundRequest(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        query=request.url.query,
        body=await request.body(),
        client_host=request.client.host if request.client else None
    )

    result = await runtime.dispatcher.dispatch(inbound)

    response = Response(content=result.response.content, status_code=result.response.status_code)
    for key, value in result.response.headers:
        if key.lower() == "content-type":
            response.headers[key] = value
        else:
            response.headers.append(key, value)
    response.headers[VERSION_HEADER] = result.version
    return response


def create_app(settings: Optional[Settings] = None,
               runtime: Optional[RouterRuntime] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings
    runtime = runtime or RouterRuntime(settings)

    app = FastAPI(
        title="Mesh Router",
        description="Traffic router with weighted version splits and outlier ejection",
        version="0.1.0",
        docs_url=f"{settings.ADMIN_PREFIX}/docs",
        redoc_url=None,
        openapi_url=f"{settings.ADMIN_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Router health"},
            {"name": "config", "description": "Routing configuration"},
            {"name": "pool", "description": "Endpoint pools and circuit breakers"},
            {"name": "events", "description": "Request outcome events"},
            {"name": "proxy", "description": "Data plane"}
        ]
    )
    app.state.runtime = runtime

    # Add custom exception handlers
    app.add_exception_handler(ServiceUnavailable, service_unavailable_handler)
    app.add_exception_handler(UnknownServiceError, unknown_service_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Admin routes first; the data plane catches everything else
    app.include_router(router, prefix=settings.ADMIN_PREFIX)
    app.add_api_route(
        "/{path:path}",
        route_request,
        methods=PROXY_METHODS,
        tags=["proxy"],
        include_in_schema=False
    )

    return app


def main() -> None:
    """Main entry point for the application."""
    # Setup logging
    setup_logging()

    logger.info("Starting mesh router...")

    app = create_app()

    # Run the server
    uvicorn.run(
        app,
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_level=default_settings.LOG_LEVEL.lower(),
        access_log=default_settings.DEBUG,
        server_header=False,
        date_header=True,
    )


if __name__ == "__main__":
    main()
