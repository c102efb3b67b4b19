from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple
import asyncio
import secrets

import structlog

from aspire.core.config import AppConstants
from aspire.schemas.case import (
    CaseArtifacts,
    CaseListResponse,
    CaseRecord,
    CaseStats,
    CaseSubmission,
    CategoryAverage,
    InferenceJob,
    InferenceResult,
    JobStatus,
    RetryOutcome,
    utcnow,
)
from aspire.schemas.prediction import PredictionRequest, PredictionResponse
from aspire.services.file_store import PayloadArchive
from aspire.services.payload_mapper import map_to_request, validate_request
from aspire.services.prediction_client import (
    PayloadValidationError,
    PredictionApiError,
    PredictionClient,
    PredictionNetworkError,
)
from aspire.storage.base import StorageAdapter

logger = structlog.get_logger(__name__)

MILESTONE_LABELS = {"G": "Global", "M": "Motor", "C": "Cognitive"}

RISK_RECOMMENDATIONS: Dict[str, List[str]] = {
    "high": [
        "Refer for comprehensive multidisciplinary ASD diagnostic evaluation",
        "Start early intervention services without waiting for a formal diagnosis",
        "Schedule clinical follow-up within 4 weeks",
    ],
    "medium": [
        "Schedule structured developmental re-assessment within 3 months",
        "Consider referral to developmental pediatrics",
        "Provide caregivers with social-communication monitoring guidance",
    ],
    "low": [
        "Continue routine developmental surveillance",
        "Re-screen at the next scheduled well-child visit",
    ],
}


class CaseNotFoundError(Exception):
    """No case stored under the requested id"""

    def __init__(self, case_id: str):
        super().__init__(f"Case not found: {case_id}")
        self.case_id = case_id


def create_case_id(prefix: str, timestamp: datetime) -> str:
    return f"{prefix}-{timestamp:%Y%m%d}-{secrets.token_hex(2).upper()}"


def create_job_id(timestamp: datetime) -> str:
    return f"JOB-{int(timestamp.timestamp() * 1000)}-{secrets.token_hex(2).upper()}"


class CaseService:
    """Case submission, prediction and persistence pipeline"""

    def __init__(
        self,
        storage: StorageAdapter,
        prediction_client: PredictionClient,
        payload_archive: PayloadArchive,
        case_id_prefix: str = "R1",
    ):
        self.storage = storage
        self.prediction_client = prediction_client
        self.payload_archive = payload_archive
        self.case_id_prefix = case_id_prefix

        # In-process serialization of writes to the same case; an entry lives
        # only while some caller holds or awaits it
        self._case_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _case_lock(self, case_id: str) -> AsyncIterator[None]:
        lock = self._case_locks.setdefault(case_id, asyncio.Lock())
        self._lock_users[case_id] = self._lock_users.get(case_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[case_id] -= 1
            if not self._lock_users[case_id]:
                del self._lock_users[case_id]
                del self._case_locks[case_id]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def submit_case(self, submission: CaseSubmission) -> CaseRecord:
        """
        Record a new case and score it.

        The case is always persisted; a failed prediction leaves the pending
        inference in place and marks the job as failed.
        """
        timestamp = utcnow()
        case_id = create_case_id(self.case_id_prefix, timestamp)
        job_id = create_job_id(timestamp)
        log = logger.bind(case_id=case_id, job_id=job_id)

        log.info("Case submission received")

        async with self._case_lock(case_id):
            record = CaseRecord(
                **submission.model_dump(),
                id=case_id,
                submitted_at=timestamp,
                inference=InferenceResult.pending(),
                job_id=job_id,
            )

            archived = await self.payload_archive.archive(
                case_id,
                {
                    "caseId": case_id,
                    "submittedAt": timestamp.isoformat(),
                    "submission": submission.model_dump(by_alias=True, mode="json"),
                },
            )
            if archived is not None:
                record.artifacts = CaseArtifacts(payload_cid=archived.cid, payload_path=archived.path)

            job = InferenceJob(
                id=job_id,
                case_id=case_id,
                submitted_at=timestamp,
                edge_node=archived.edge_node if archived else None,
                payload_cid=archived.cid if archived else None,
            )
            job.transition(JobStatus.QUEUED, at=timestamp)

            await self.storage.set_case(case_id, record)
            await self.storage.set_job(job_id, job)

            job.transition(JobStatus.RUNNING)
            await self.storage.set_job(job_id, job)

            inference, error = await self._run_prediction(submission, case_id)

            completed_at = utcnow()
            job.completed_at = completed_at
            if inference is not None:
                record.inference = inference
                job.result = inference
                job.error = None
                job.transition(JobStatus.SUCCEEDED, at=completed_at)
            else:
                job.error = error
                job.transition(JobStatus.FAILED, message=error, at=completed_at)

            await self.storage.set_case(case_id, record)
            await self.storage.set_job(job_id, job)

        log.info("Case submission completed", job_status=job.status.value)
        return record

    async def retry_case(self, case_id: str) -> RetryOutcome:
        """Re-run the prediction for a stored case, reusing its job"""
        log = logger.bind(case_id=case_id)

        if await self.storage.get_case(case_id) is None:
            log.warning("Retry requested for unknown case")
            return RetryOutcome(success=False, error="Case not found", reason="not_found")

        async with self._case_lock(case_id):
            record = await self.storage.get_case(case_id)
            if record is None:
                return RetryOutcome(success=False, error="Case not found", reason="not_found")

            job = await self.storage.get_job(record.job_id) if record.job_id else None
            if job is None:
                log.warning("Case has no stored job; retrying without job tracking", job_id=record.job_id)
            else:
                job.transition(JobStatus.RUNNING, message="Retry initiated")
                await self.storage.set_job(job.id, job)

            log.info("Retrying prediction", job_id=record.job_id)
            inference, error = await self._run_prediction(record.to_submission(), case_id)

            completed_at = utcnow()
            if inference is None:
                if job is not None:
                    job.completed_at = completed_at
                    job.error = error
                    job.transition(JobStatus.FAILED, message=error, at=completed_at)
                    await self.storage.set_job(job.id, job)
                log.warning("Retry failed", error=error)
                return RetryOutcome(success=False, error=error or "Prediction failed", reason="prediction_failed")

            record.inference = inference
            await self.storage.set_case(case_id, record)

            if job is not None:
                job.completed_at = completed_at
                job.result = inference
                job.error = None
                job.transition(JobStatus.SUCCEEDED, message="Retry successful", at=completed_at)
                await self.storage.set_job(job.id, job)

        log.info("Retry succeeded", prediction=inference.prediction)
        return RetryOutcome(success=True, case_record=record)

    async def _run_prediction(
        self,
        submission: CaseSubmission,
        case_id: str,
    ) -> Tuple[Optional[InferenceResult], Optional[str]]:
        """Map, validate and score; prediction errors come back as a message"""
        request = map_to_request(submission, case_id)

        validation = validate_request(request)
        if not validation.is_valid:
            logger.error("Prediction payload validation failed", case_id=case_id, errors=validation.errors)
            return None, f"Validation failed: {', '.join(validation.errors)}"

        try:
            response = await self.prediction_client.predict(request)
        except PayloadValidationError as e:
            logger.error("Prediction failed", case_id=case_id, error_kind="validation", error=str(e))
            return None, f"Validation error: {e}"
        except PredictionApiError as e:
            logger.error(
                "Prediction failed",
                case_id=case_id,
                error_kind="api",
                error=str(e),
                error_code=e.error_code,
                error_type=e.error_type,
                request_id=e.request_id,
            )
            return None, f"API error: {e}"
        except PredictionNetworkError as e:
            logger.error(
                "Prediction failed",
                case_id=case_id,
                error_kind="network",
                error=str(e),
                cause=repr(e.cause) if e.cause else None,
            )
            return None, f"Network error: {e}"

        return self._build_inference(response, request, submission), None

    def _build_inference(
        self,
        response: PredictionResponse,
        request: PredictionRequest,
        submission: CaseSubmission,
    ) -> InferenceResult:
        risk_factors = self._identify_risk_factors(request)
        narrative = f"Contributing factors: {', '.join(risk_factors)}." if risk_factors else None

        return InferenceResult.from_prediction(
            prediction=response.prediction,
            probability=response.probability,
            confidence=response.confidence,
            risk_level=response.risk_level,
            request_id=response.request_id,
            mock=response.is_mock,
            recommended_actions=self._generate_recommendations(response.risk_level, request, submission),
            narrative=narrative,
        )

    @staticmethod
    def _identify_risk_factors(request: PredictionRequest) -> List[str]:
        data = request.struct_data
        factors = []

        if data.developmental_milestones in MILESTONE_LABELS:
            factors.append(f"{MILESTONE_LABELS[data.developmental_milestones].lower()} developmental delay")
        if data.intellectual_disability != "N":
            factors.append(f"intellectual disability ({data.intellectual_disability})")
        if data.language_development == "A":
            factors.append("absent language")
        elif data.language_development == "delay":
            factors.append("delayed language")
        if data.dysmorphism == "Y":
            factors.append("dysmorphic features")
        if data.behaviour_disorder == "Y":
            factors.append("behavioral concerns")
        if data.iq_dq < 70:
            factors.append("IQ/DQ below 70")
        elif data.iq_dq < 85:
            factors.append("IQ/DQ below 85")

        return factors

    @staticmethod
    def _generate_recommendations(
        risk_level: str,
        request: PredictionRequest,
        submission: CaseSubmission,
    ) -> List[str]:
        recommendations = list(RISK_RECOMMENDATIONS.get(risk_level, []))
        data = request.struct_data

        if data.language_disorder == "Y":
            recommendations.append("Speech and language therapy assessment")
        if data.intellectual_disability != "N":
            recommendations.append("Cognitive and adaptive functioning assessment")
        if data.dysmorphism == "Y":
            recommendations.append("Consider clinical genetics consultation")
        if submission.assessments.eeg_anomalies:
            recommendations.append("Neurology follow-up for EEG anomalies")
        if submission.development.regression_observed:
            recommendations.append("Evaluate the reported developmental regression")

        return recommendations

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        return await self.storage.get_case(case_id)

    async def get_visible_cases(self) -> List[CaseRecord]:
        """Non-hidden cases, newest first"""
        cases = await self.storage.get_all_cases()
        hidden_ids = await self.storage.get_hidden_case_ids()
        visible = [case for case in cases if case.id not in hidden_ids]
        return sorted(visible, key=lambda case: case.submitted_at, reverse=True)

    async def list_cases(
        self,
        page: int = 1,
        page_size: int = AppConstants.DEFAULT_PAGE_SIZE,
    ) -> CaseListResponse:
        page = max(page, 1)
        page_size = min(max(page_size, 1), AppConstants.MAX_PAGE_SIZE)

        cases = await self.get_visible_cases()
        start = (page - 1) * page_size
        return CaseListResponse(
            cases=cases[start:start + page_size],
            total=len(cases),
            page=page,
            page_size=page_size,
        )

    async def get_case_stats(self) -> CaseStats:
        cases = await self.get_visible_cases()
        stats = CaseStats(total=len(cases))
        category_totals: Dict[str, float] = defaultdict(float)

        for case in cases:
            inference = case.inference
            if inference.prediction == AppConstants.LABEL_ASD:
                stats.asd += 1
            elif inference.prediction == AppConstants.LABEL_HEALTHY:
                stats.healthy += 1
            else:
                stats.pending += 1

            if inference.risk_level is not None and inference.risk_level.value == "high":
                stats.high_risk += 1

            for category in inference.categories:
                category_totals[category.label] += category.probability

        count = len(cases) or 1
        stats.categories = sorted(
            (CategoryAverage(label=label, probability=total / count) for label, total in category_totals.items()),
            key=lambda category: category.probability,
            reverse=True,
        )
        return stats

    async def hide_case(self, case_id: str) -> None:
        """Soft-delete a case from list views; the record itself is kept"""
        if await self.storage.get_case(case_id) is None:
            raise CaseNotFoundError(case_id)
        async with self._case_lock(case_id):
            await self.storage.hide_case(case_id)

    async def get_job(self, job_id: str) -> Optional[InferenceJob]:
        return await self.storage.get_job(job_id)

    async def list_jobs(self) -> List[InferenceJob]:
        jobs = await self.storage.get_all_jobs()
        return sorted(jobs, key=lambda job: job.submitted_at, reverse=True)

    async def close(self) -> None:
        await self.prediction_client.aclose()
        await self.payload_archive.aclose()
        await self.storage.close()
