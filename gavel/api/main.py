"""
Main FastAPI application.

Staff-facing bidding and checkout API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gavel import __version__
from gavel.config import get_settings
from gavel.core.exceptions import AuctionError
from gavel.database.connection import close_db, init_db
from gavel.monitoring.logging import clear_request_context, setup_logging

from .dependencies import Services
from .routes import (
    admin_router,
    bid_router,
    bidder_router,
    checkout_router,
    event_router,
    item_router,
    monitoring_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup and dispose of the engine on shutdown."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    services: Optional[Services] = getattr(app.state, "services", None)
    if services is not None:
        await services.checkout.replay_cache.close()
    await close_db()
    logger.info("database_connections_closed")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built collaborators (built on first request if omitted)
    """
    app = FastAPI(
        title="Gavel",
        description=(
            "Charity auction bidding and checkout engine: winning-bid tracking, "
            "fee calculation, checkout sessions and card payments."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Tag the request with an id for tracing and log its timing."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            clear_request_context()

    @app.exception_handler(AuctionError)
    async def auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
        """Domain errors carry their own status and a staff-readable message."""
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "auction_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
            **exc.metadata,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalServerError",
                }
            },
        )

    app.include_router(event_router)
    app.include_router(item_router)
    app.include_router(bid_router)
    app.include_router(bidder_router)
    app.include_router(checkout_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gavel.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
