from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
import structlog

from aspire.api.dependencies import get_case_service, get_correlation_id, require_admin
from aspire.core.config import AppConstants
from aspire.core.security import SessionUser
from aspire.schemas.case import CaseListResponse, CaseRecord, CaseStats, CaseSubmission
from aspire.services.case_service import CaseNotFoundError, CaseService
from aspire.storage.base import HidingNotSupportedError

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post(
    "/cases",
    response_model=CaseRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Case",
    description="Record a clinical intake and run the ASD risk prediction for it",
)
async def submit_case(
    submission: CaseSubmission,
    correlation_id: str = Depends(get_correlation_id),
    case_service: CaseService = Depends(get_case_service),
) -> CaseRecord:
    """
    Submit a new case.

    The case is stored even when the prediction fails; in that case its
    inference stays pending and the job is marked as failed.

    **Returns:**
    - the created case record, including its `jobId` and `inference`
    """
    logger.info("Case submission requested", correlation_id=correlation_id, label=submission.demographics.case_label)

    record = await case_service.submit_case(submission)

    logger.info(
        "Case submission stored",
        correlation_id=correlation_id,
        case_id=record.id,
        pending=record.inference.is_pending,
    )
    return record


@router.get(
    "/cases",
    response_model=CaseListResponse,
    summary="List Cases",
    description="Visible cases, newest first",
)
async def list_cases(
    page: int = Query(1, ge=1),
    page_size: int = Query(AppConstants.DEFAULT_PAGE_SIZE, ge=1, le=AppConstants.MAX_PAGE_SIZE),
    case_service: CaseService = Depends(get_case_service),
) -> CaseListResponse:
    return await case_service.list_cases(page=page, page_size=page_size)


@router.get(
    "/cases/stats",
    response_model=CaseStats,
    summary="Case Statistics",
    description="Prediction totals and averaged category probabilities over visible cases",
)
async def case_stats(case_service: CaseService = Depends(get_case_service)) -> CaseStats:
    return await case_service.get_case_stats()


@router.get(
    "/cases/{case_id}",
    response_model=CaseRecord,
    summary="Get Case",
)
async def get_case(
    case_id: str,
    correlation_id: str = Depends(get_correlation_id),
    case_service: CaseService = Depends(get_case_service),
) -> CaseRecord:
    """Fetch one case by id; hidden cases are still returned"""
    record = await case_service.get_case(case_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Case not found", "case_id": case_id, "correlation_id": correlation_id},
        )
    return record


@router.delete(
    "/cases/{case_id}",
    summary="Hide Case",
    description="Admin-only soft delete: the case disappears from list views but is kept in storage",
)
async def hide_case(
    case_id: str,
    current_user: SessionUser = Depends(require_admin),
    correlation_id: str = Depends(get_correlation_id),
    case_service: CaseService = Depends(get_case_service),
) -> Dict[str, Any]:
    try:
        await case_service.hide_case(case_id)
    except CaseNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"success": False, "error": "Case not found", "correlation_id": correlation_id},
        )
    except HidingNotSupportedError as e:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail={"success": False, "error": str(e), "correlation_id": correlation_id},
        )

    logger.info("Case hidden", case_id=case_id, username=current_user.username, correlation_id=correlation_id)
    return {"success": True, "message": f"Case {case_id} deleted successfully"}


@router.post(
    "/cases/{case_id}/retry",
    summary="Retry Prediction",
    description="Re-run the prediction for a stored case",
)
async def retry_case(
    case_id: str,
    correlation_id: str = Depends(get_correlation_id),
    case_service: CaseService = Depends(get_case_service),
) -> JSONResponse:
    """
    Re-run the prediction for an existing case.

    **Returns:**
    - `200 {success, caseRecord}` when the new prediction succeeded
    - `400 {error}` when it failed again; the stored inference is unchanged
    - `404 {error}` when the case does not exist
    """
    logger.info("Prediction retry requested", case_id=case_id, correlation_id=correlation_id)

    outcome = await case_service.retry_case(case_id)

    if outcome.success:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "success": True,
                "caseRecord": outcome.case_record.model_dump(by_alias=True, mode="json"),
            },
        )

    status_code = status.HTTP_404_NOT_FOUND if outcome.reason == "not_found" else status.HTTP_400_BAD_REQUEST
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": outcome.error, "correlationId": correlation_id},
    )
