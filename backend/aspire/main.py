from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import time

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from aspire import __description__, __title__, __version__
from aspire.api.routes import cases, health, jobs
from aspire.core.config import Settings, get_settings
from aspire.core.security import JWTManager
from aspire.services.case_service import CaseService
from aspire.services.file_store import ContentStoreClient, LocalPayloadArchive, PayloadArchive
from aspire.services.prediction_client import PredictionClient
from aspire.storage import JsonBackend, StorageAdapter, create_storage_adapter
from aspire.utils.logger import bind_request_context, clear_request_context, setup_logging

logger = structlog.get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        # Route templates keep label cardinality bounded (/cases/{case_id})
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        # Generate correlation ID for request tracing
        correlation_id = request.headers.get("X-Correlation-ID", f"req-{int(time.time() * 1000)}")
        request.state.correlation_id = correlation_id
        bind_request_context(correlation_id, request.method, request.url.path)

        logger.info(
            "Request started",
            client_host=request.client.host if request.client else "unknown",
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request failed",
                duration=f"{time.time() - start_time:.4f}s",
                error=str(exc),
                exc_info=True,
            )
            clear_request_context()
            raise

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration=f"{time.time() - start_time:.4f}s",
        )
        response.headers["X-Correlation-ID"] = correlation_id
        clear_request_context()
        return response


def create_payload_archive(settings: Settings, storage: StorageAdapter) -> PayloadArchive:
    """Local payload files next to the JSON store, the content store otherwise"""
    if isinstance(storage, JsonBackend):
        return LocalPayloadArchive(storage)
    return ContentStoreClient(settings.file_store)


def create_case_service(settings: Settings) -> CaseService:
    """Build the case pipeline from explicit configuration"""
    storage = create_storage_adapter(settings.storage)
    return CaseService(
        storage=storage,
        prediction_client=PredictionClient(settings.prediction),
        payload_archive=create_payload_archive(settings, storage),
        case_id_prefix=settings.CASE_ID_PREFIX,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings: Settings = app.state.settings
    case_service: CaseService = app.state.case_service

    logger.info(
        "API startup completed",
        version=__version__,
        environment=settings.ENVIRONMENT,
        storage_mode=case_service.storage.mode,
        prediction_mode=case_service.prediction_client.mode,
        file_store_mode=case_service.payload_archive.mode,
    )

    yield  # Application runs here

    logger.info("Shutting down ASPIRE API")
    try:
        await case_service.close()
        logger.info("Application shutdown completed")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e), exc_info=True)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions"""
    correlation_id = getattr(request.state, "correlation_id", None) or request.headers.get(
        "X-Correlation-ID", "unknown"
    )

    logger.error(
        "Unhandled exception",
        url=str(request.url),
        method=request.method,
        correlation_id=correlation_id,
        error=str(exc),
        exc_info=True,
    )

    content: Dict[str, Any] = {
        "error": "Internal server error",
        "correlation_id": correlation_id,
    }
    # Don't expose internal errors in production
    if request.app.state.settings.ENVIRONMENT == "production":
        content["message"] = "An unexpected error occurred. Please try again later."
    else:
        content["message"] = str(exc)
        content["type"] = type(exc).__name__

    return JSONResponse(status_code=500, content=content)


def create_application(
    settings: Optional[Settings] = None,
    case_service: Optional[CaseService] = None,
) -> FastAPI:
    """Factory function to create FastAPI application"""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title=f"{__title__} API",
        description=__description__,
        version=__version__,
        openapi_url=f"/api/{settings.API_VERSION}/openapi.json" if settings.DEBUG else None,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
        license_info={"name": "MIT", "url": "https://opensource.org/licenses/MIT"},
    )

    app.state.settings = settings
    app.state.case_service = case_service or create_case_service(settings)
    app.state.jwt_manager = JWTManager(settings.security)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(LoggingMiddleware)
    if settings.PROMETHEUS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    app.add_exception_handler(Exception, global_exception_handler)

    api_prefix = f"/api/{settings.API_VERSION}"
    app.include_router(health.router, prefix=api_prefix, tags=["Health"])
    app.include_router(cases.router, prefix=api_prefix, tags=["Cases"])
    app.include_router(jobs.router, prefix=api_prefix, tags=["Jobs"])

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information"""
        return {
            "message": f"{__title__} API",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "docs_url": "/docs" if settings.DEBUG else "Contact administrator for API documentation",
            "health_check": f"{api_prefix}/health",
            "cases_endpoint": f"{api_prefix}/cases",
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint"""
        if not settings.PROMETHEUS_ENABLED:
            return JSONResponse(status_code=404, content={"error": "Metrics endpoint is disabled"})
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    """Main function to run the application"""
    settings = get_settings()

    uvicorn.run(
        "aspire.main:create_application",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
