from aspire.schemas.case import (
    CaseRecord,
    CaseSubmission,
    InferenceJob,
    InferenceResult,
    JobStatus,
)
from aspire.schemas.prediction import (
    PredictionErrorResponse,
    PredictionRequest,
    PredictionResponse,
    ValidationResult,
)

__all__ = [
    "CaseRecord",
    "CaseSubmission",
    "InferenceJob",
    "InferenceResult",
    "JobStatus",
    "PredictionErrorResponse",
    "PredictionRequest",
    "PredictionResponse",
    "ValidationResult",
]
