from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from edge.app.api.health import router as health_router
from edge.app.api.subscribe import router as subscribe_router
from edge.app.core.config import settings
from edge.app.core.logging import get_logger, setup_logging
from edge.app.exceptions import EdgeException
from edge.app.middleware.request_id import RequestIdMiddleware, get_request_id
from edge.app.middleware.request_size import RequestSizeLimitMiddleware
from edge.app.services.rate_limit import close_rate_limiter


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Log startup and release the rate limit store on shutdown."""
        logger.info(
            "Application startup complete",
            extra={
                "project": settings.project_name,
                "region": settings.region,
                "rate_limit_backend": settings.rate_limit_backend,
                "allowed_origins": settings.allowed_origins,
            }
        )
        yield
        await close_rate_limiter()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=f"{settings.project_name} Edge",
        description="Newsletter subscription gate and health check for the marketing site",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Middleware order: last added = first executed
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware, max_body_size=settings.max_body_bytes)

    app.include_router(health_router)
    app.include_router(subscribe_router)

    @app.exception_handler(EdgeException)
    async def edge_exception_handler(request: Request, exc: EdgeException) -> JSONResponse:
        """Render EdgeException subclasses raised outside the gate."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side only; clients get an opaque
        internal_error (plus the message in debug mode).
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        content = {"ok": False, "error": "internal_error"}
        if settings.debug:
            content["detail"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
