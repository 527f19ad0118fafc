from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .middleware.logging import LoggingMiddleware
from .models.metrics import RoutesResponse
from .routers import metrics
from .services.metrics import MetricsService
from .services.reporting import ReportingService
from .services.search import TableSearchService
from .utils.caching import CacheSweeper, ReportCache
from .utils.database import DatabaseClient, DatabaseError
from .utils.logging import configure_logging, slogger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the cache sweeper for the lifetime of the app and release the pool on exit."""
    settings: Settings = app.state.settings
    try:
        async with CacheSweeper(app.state.cache, interval=settings.cache_cleanup_interval_seconds):
            yield
    finally:
        app.state.database.dispose()


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[DatabaseClient] = None,
    cache: Optional[ReportCache] = None,
) -> FastAPI:
    """
    Build the API with its collaborators.

    Tests pass their own ``database`` and ``cache``; everything else is
    derived from ``settings``.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="CFE Usage Metrics API",
        description="Reporting endpoints over the CFE database",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    database = database or DatabaseClient(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    if cache is None:
        cache = ReportCache(default_ttl=settings.cache_default_ttl_seconds)
    metrics_service = MetricsService(database, csr_statement_timeout_ms=settings.csr_statement_timeout_ms)

    app.state.settings = settings
    app.state.database = database
    app.state.cache = cache
    app.state.metrics_service = metrics_service
    app.state.reporting_service = ReportingService(cache, metrics_service)
    app.state.search_service = TableSearchService(metrics_service)

    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler to ensure all errors are logged."""
        slogger.error(
            "UNHANDLED_ERROR",
            "An unhandled error occurred",
            error=exc,
            data={
                "path": request.url.path,
                "method": request.method
            }
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "An internal server error occurred"}
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(metrics.router)

    @app.get("/", response_model=RoutesResponse)
    async def get_routes():
        """
        Get all available API routes.
        """
        routes = []
        for route in app.routes:
            # Skip the root endpoint itself and internal FastAPI routes
            if route.path != "/" and not route.path.startswith(("/openapi", "/docs", "/redoc")):
                routes.append({"path": route.path, "name": route.name})
        return {"message": "Successfully retrieved available routes", "routes": routes}

    @app.get("/health")
    async def health_check():
        """Report whether the database answers ``SELECT 1``."""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            await app.state.database.ping()
        except DatabaseError as e:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "timestamp": timestamp,
                    "database": "disconnected",
                    "error": str(e),
                },
            )
        return {"status": "healthy", "timestamp": timestamp, "database": "connected"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
