from typing import Any, Dict
import asyncio
import time

from fastapi import APIRouter, Depends
import structlog

from aspire import __version__
from aspire.api.dependencies import get_app_settings, get_case_service, get_correlation_id
from aspire.core.config import AppConstants, Settings
from aspire.schemas.case import utcnow
from aspire.services.case_service import CaseService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/health",
    summary="Basic Health Check",
    description="Liveness check for load balancers and monitoring",
)
async def health_check(settings: Settings = Depends(get_app_settings)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "service": "aspire-api",
        "environment": settings.ENVIRONMENT,
    }


@router.get(
    "/health/detailed",
    summary="Detailed Health Check",
    description="Health of storage, the file store and the prediction mode",
)
async def detailed_health_check(
    correlation_id: str = Depends(get_correlation_id),
    settings: Settings = Depends(get_app_settings),
    case_service: CaseService = Depends(get_case_service),
) -> Dict[str, Any]:
    """
    Check every external dependency of the case pipeline.

    **Returns:**
    - **overall_status**: `healthy` or `degraded`
    - **components**: storage and file store status
    - **prediction_mode**: `mock` or `live`
    """
    start_time = time.time()
    logger.info("Detailed health check started", correlation_id=correlation_id)

    storage_health, file_store_health = await asyncio.gather(
        _with_timeout(case_service.storage.get_status(), "storage"),
        _with_timeout(case_service.payload_archive.get_status(), "file_store"),
    )

    components = {"storage": storage_health, "file_store": file_store_health}
    overall_status = "healthy"
    if any(component.get("status") != "online" for component in components.values()):
        overall_status = "degraded"

    duration = time.time() - start_time
    logger.info(
        "Detailed health check completed",
        correlation_id=correlation_id,
        overall_status=overall_status,
        duration=f"{duration:.4f}s",
    )

    return {
        "overall_status": overall_status,
        "timestamp": utcnow().isoformat(),
        "correlation_id": correlation_id,
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "prediction_mode": case_service.prediction_client.mode,
        "components": components,
        "check_duration_seconds": round(duration, 4),
    }


@router.get(
    "/status/storage",
    summary="Storage Status",
    description="Status of the configured case storage backend",
)
async def storage_status(case_service: CaseService = Depends(get_case_service)) -> Dict[str, Any]:
    return await case_service.storage.get_status()


@router.get(
    "/status/file-store",
    summary="File Store Status",
    description="Status of the payload archive (local files or the content store)",
)
async def file_store_status(case_service: CaseService = Depends(get_case_service)) -> Dict[str, Any]:
    return await case_service.payload_archive.get_status()


async def _with_timeout(check, component: str) -> Dict[str, Any]:
    try:
        return await asyncio.wait_for(check, timeout=AppConstants.HEALTH_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Health check timed out", component=component)
        return {"status": "unhealthy", "error": "timeout"}
