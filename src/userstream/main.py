"""
Main FastAPI application entry point.

This module sets up the FastAPI app with middleware, routes and the lifespan
that wires the store, cache, cipher and ingestion pipeline together.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import healthz_router, metrics_router, users_router
from .config import Settings, get_settings
from .core.crypto import EmailCipher
from .core.exceptions import UserStreamException
from .core.health import HealthChecker
from .core.interfaces import IngestionSource, PIICipher, UserCache, UserStore
from .core.metrics import MetricsCollector
from .core.pagination import PaginationService
from .core.pipeline import IngestionPipeline
from .core.user_service import UserService
from .log_config import configure_logging
from .stores.postgres import PostgresUserStore
from .stores.rabbitmq import RabbitMQSource
from .stores.redis_cache import RedisUserCache


@dataclass
class AppComponents:
    """External collaborators shared by the pipeline and the read path."""
    store: UserStore
    cache: UserCache
    cipher: PIICipher
    source: Optional[IngestionSource] = None


def build_components(settings: Settings) -> AppComponents:
    """Create the production adapters from settings."""
    return AppComponents(
        store=PostgresUserStore(settings.database),
        cache=RedisUserCache(settings.cache),
        cipher=EmailCipher(settings.security.encryption_key.encode("utf-8")),
        source=RabbitMQSource(settings.queue) if settings.pipeline.enabled else None,
    )


async def _call_if_present(obj: Any, name: str) -> None:
    method: Optional[Callable[[], Awaitable[None]]] = getattr(obj, name, None)
    if method is not None:
        await method()


def create_lifespan_handler(
    settings: Settings,
    components: Optional[AppComponents] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Connects the adapters, starts the ingestion pipeline and, on shutdown,
        drains the pipeline before releasing connections.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting UserStream service", version=app.version)

        parts = components if components is not None else build_components(settings)
        metrics_collector = metrics if metrics is not None else MetricsCollector()
        app.state.metrics = metrics_collector
        app.state.settings = settings

        await _call_if_present(parts.store, "connect")
        if settings.database.migrate:
            await _call_if_present(parts.store, "migrate")

        app.state.user_service = UserService(
            store=parts.store,
            cache=parts.cache,
            cipher=parts.cipher,
            request_timeout=settings.database.request_timeout_seconds,
            metrics=metrics_collector,
        )
        app.state.pagination_service = PaginationService(
            store=parts.store,
            cipher=parts.cipher,
            request_timeout=settings.database.write_timeout_seconds,
        )

        pipeline: Optional[IngestionPipeline] = None
        if settings.pipeline.enabled and parts.source is not None:
            pipeline = IngestionPipeline(
                source=parts.source,
                store=parts.store,
                cache=parts.cache,
                cipher=parts.cipher,
                write_timeout=settings.database.write_timeout_seconds,
                error_buffer_size=settings.pipeline.error_buffer_size,
                metrics=metrics_collector,
            )
            await pipeline.start(settings.pipeline.buffer_size)
        app.state.pipeline = pipeline

        app.state.health_checker = HealthChecker(parts.store, parts.cache, pipeline)

        try:
            logger.info("UserStream service started successfully")
            yield
        finally:
            logger.info("Shutting down UserStream service")

            # Graceful shutdown: in-flight records finish before connections close
            if pipeline is not None:
                await pipeline.stop()

            await _call_if_present(parts.cache, "close")
            await _call_if_present(parts.store, "close")

            logger.info("UserStream service shutdown complete")

    return lifespan


async def userstream_exception_handler(request: Request, exc: UserStreamException) -> JSONResponse:
    """Handle custom UserStream exceptions."""
    logger = structlog.get_logger(__name__)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "UserStream exception occurred",
        error=str(exc),
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": str(exc),
            "details": exc.details,
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[AppComponents] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    ``components`` and ``metrics`` replace the production adapters and the
    global Prometheus registry, which is how the tests run the app.
    """
    settings = settings or get_settings()

    configure_logging(settings.log_level, json_output=settings.is_production)

    app = FastAPI(
        title="UserStream",
        description="User record ingestion and cache-aside read service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings, components, metrics),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        metrics_collector = getattr(request.app.state, "metrics", None)
        if metrics_collector is not None:
            route = request.scope.get("route")
            metrics_collector.record_request(
                method=request.method,
                endpoint=getattr(route, "path", request.url.path),
                status_code=response.status_code,
                duration_seconds=time.perf_counter() - started,
            )
        return response

    app.add_exception_handler(UserStreamException, userstream_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(users_router, tags=["users"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "UserStream",
            "version": app.version,
            "docs": "/docs",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "userstream.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
