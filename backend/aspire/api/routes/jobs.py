from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from aspire.api.dependencies import get_case_service, get_correlation_id
from aspire.schemas.case import InferenceJob
from aspire.services.case_service import CaseService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/jobs",
    response_model=List[InferenceJob],
    summary="List Inference Jobs",
    description="All inference jobs, newest first, with their status history",
)
async def list_jobs(case_service: CaseService = Depends(get_case_service)) -> List[InferenceJob]:
    return await case_service.list_jobs()


@router.get(
    "/jobs/{job_id}",
    response_model=InferenceJob,
    summary="Get Inference Job",
)
async def get_job(
    job_id: str,
    correlation_id: str = Depends(get_correlation_id),
    case_service: CaseService = Depends(get_case_service),
) -> InferenceJob:
    job = await case_service.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Job not found", "job_id": job_id, "correlation_id": correlation_id},
        )
    return job
