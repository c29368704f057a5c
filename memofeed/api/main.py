"""
Main FastAPI application for memofeed.
Configures the API server with routes, middleware, and error handlers.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import structlog

from memofeed.core.config import settings
from memofeed.core.exceptions import (
    GatewayError,
    MemoFeedException,
    NoEndpointAvailableError,
    ValidationError,
)
from memofeed.core.logging import setup_logging
from memofeed.api.dependencies import get_service
from memofeed.api.routes import feed, likes, tips
from memofeed.api.schemas.common import ErrorResponse, HealthCheckResponse
from memofeed.services.feed_service import FeedService, close_feed_service


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting memofeed API server", environment=settings.environment, cluster=settings.cluster)
    yield
    logger.info("Shutting down memofeed API server")
    await close_feed_service()


def status_for(exc: MemoFeedException) -> int:
    if isinstance(exc, (NoEndpointAvailableError, GatewayError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def memofeed_exception_handler(request: Request, exc: MemoFeedException) -> JSONResponse:
    code = status_for(exc)
    log = logger.warning if code < 500 or code == status.HTTP_503_SERVICE_UNAVAILABLE else logger.error
    log("Request failed", url=str(request.url), error_code=exc.code, error=exc.message)
    body = ErrorResponse(message=exc.message, error_code=exc.code, details=exc.details)
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app = FastAPI(
        title="memofeed API",
        description="Read-only feed and like counts over ledger memo events.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )

    if settings.cors_origin_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    app.add_exception_handler(MemoFeedException, memofeed_exception_handler)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Endpoint pool and registry state"
    )
    async def health_check(
        probe: bool = Query(default=False, description="Ping every gateway endpoint"),
        service: FeedService = Depends(get_service),
    ):
        """Health check endpoint."""
        return HealthCheckResponse(
            status="healthy",
            version=settings.app_version,
            services=await service.health(probe=probe),
        )

    app.include_router(
        feed.router,
        prefix=f"{settings.api_v1_prefix}/feed",
        tags=["Feed"]
    )

    app.include_router(
        likes.router,
        prefix=f"{settings.api_v1_prefix}/likes",
        tags=["Likes"]
    )

    app.include_router(
        tips.router,
        prefix=f"{settings.api_v1_prefix}/tips",
        tags=["Tips"]
    )

    return app


app = create_app()
