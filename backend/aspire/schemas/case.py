from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


INFERENCE_SCHEMA_VERSION = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire and on disk"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(frozen=True)


class SexEnum(str, Enum):
    MALE = "Male"
    FEMALE = "Female"


class PrenatalFactor(str, Enum):
    NATURAL = "Natural"
    IVF = "IVF"
    TWIN = "Twin"
    COMPLICATION = "Complication"


class DevelopmentalDelay(str, Enum):
    NONE = "None"
    MOTOR = "Motor"
    LANGUAGE = "Language"
    COGNITIVE = "Cognitive"
    GLOBAL = "Global"


class IntellectualDisability(str, Enum):
    NONE = "N"
    MILD = "F70.0"
    MODERATE = "F71"
    SEVERE = "F72"


class BehaviorConcern(str, Enum):
    AGGRESSIVITY = "Aggressivity"
    SELF_INJURY = "Self-injury"
    AGITATION = "Agitation"
    STEREOTYPY = "Stereotypy"
    HYPERACTIVITY = "Hyperactivity"
    SLEEP = "Sleep"
    SENSORY = "Sensory"


class LanguageLevel(str, Enum):
    FUNCTIONAL = "Functional"
    DELAYED = "Delayed"
    ABSENT = "Absent"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Case submission
# ---------------------------------------------------------------------------

class ParentalAge(FrozenCamelModel):
    mother: int = Field(..., ge=16, le=55, description="Mother's age at birth (years)")
    father: int = Field(..., ge=16, le=70, description="Father's age at birth (years)")


class Demographics(FrozenCamelModel):
    case_label: str = Field(..., min_length=2, description="Clinician-facing case label")
    age_months: int = Field(..., ge=6, le=216, description="Current age in months")
    sex: SexEnum
    parental_age: ParentalAge
    diagnostic_age_months: int = Field(..., ge=6, le=216, description="Age at diagnostic assessment")
    prenatal_factors: List[PrenatalFactor] = Field(..., min_length=1)


class Development(FrozenCamelModel):
    delays: List[DevelopmentalDelay] = Field(..., min_length=1)
    dysmorphic_features: bool = False
    intellectual_disability: IntellectualDisability = IntellectualDisability.NONE
    comorbidities: List[str] = Field(default_factory=list)
    regression_observed: bool = False


class Assessments(FrozenCamelModel):
    ados_score: float = Field(..., ge=1, le=30, description="ADOS score")
    adir_score: float = Field(..., ge=1, le=40, description="ADI-R score")
    iq_dq: float = Field(..., ge=20, le=150, description="IQ / developmental quotient")
    eeg_anomalies: bool = False
    mri_findings: Optional[str] = None
    neurological_exam: str = Field(..., min_length=1)
    head_circumference: float = Field(..., ge=40, le=60, description="Head circumference (cm)")

    @field_validator("neurological_exam")
    @classmethod
    def neurological_exam_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("neurological exam cannot be blank")
        return v.strip()

    @field_validator("mri_findings")
    @classmethod
    def blank_mri_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class Behaviors(FrozenCamelModel):
    concerns: List[BehaviorConcern] = Field(default_factory=list)
    language_level: LanguageLevel
    sensory_notes: str = ""


class SubmissionFields(CamelModel):
    demographics: Demographics
    development: Development
    assessments: Assessments
    behaviors: Behaviors
    notes: str = ""


class CaseSubmission(SubmissionFields):
    """Structured clinical profile submitted by a clinician"""

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Inference result
# ---------------------------------------------------------------------------

class InferenceCategory(CamelModel):
    label: str
    probability: float = Field(..., ge=0.0, le=1.0)
    narrative: Optional[str] = None


def _raw_service_response(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for candidate in (data.get("topPrediction"), data.get("prediction"), data):
        if isinstance(candidate, dict) and "request_id" in candidate:
            return candidate
    return None


def is_legacy_inference(data: Any) -> bool:
    """True when stored inference data predates the versioned result shape"""
    if not isinstance(data, dict):
        return False
    version = data.get("schemaVersion", data.get("schema_version"))
    return version != INFERENCE_SCHEMA_VERSION


def normalize_legacy_inference(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a historical inference payload into the current shape.

    Older records stored either the mapped result without a version marker,
    or the raw prediction service response (at the top level, or nested
    under ``topPrediction``/``prediction``).
    """
    raw = _raw_service_response(data)
    if raw is not None:
        result = InferenceResult.from_prediction(
            prediction=raw.get("prediction"),
            probability=float(raw["probability"]) if raw.get("probability") is not None else 0.0,
            confidence=float(raw["confidence"]) if raw.get("confidence") is not None else None,
            risk_level=raw.get("risk_level"),
            request_id=raw.get("request_id"),
            mock=bool((raw.get("metadata") or {}).get("mock", False)),
        )
        return result.model_dump(by_alias=True, mode="json")

    normalized = dict(data)
    normalized.pop("schema_version", None)
    if "riskLevel" not in normalized and "risk_level" in normalized:
        normalized["riskLevel"] = normalized.pop("risk_level")
    if not isinstance(normalized.get("topPrediction"), str):
        normalized["topPrediction"] = normalized.get("prediction") or "Pending"
    if not isinstance(normalized.get("categories"), list):
        normalized["categories"] = []
    if not isinstance(normalized.get("explanation"), str):
        normalized["explanation"] = "Analysis pending."
    if not isinstance(normalized.get("recommendedActions"), list):
        normalized["recommendedActions"] = []
    normalized["schemaVersion"] = INFERENCE_SCHEMA_VERSION
    return normalized


class InferenceResult(CamelModel):
    """Current screening outcome attached to a case"""

    schema_version: int = INFERENCE_SCHEMA_VERSION
    top_prediction: str
    prediction: Optional[str] = None
    probability: Optional[float] = Field(None, ge=0.0, le=1.0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    risk_level: Optional[RiskLevel] = None
    categories: List[InferenceCategory] = Field(default_factory=list)
    explanation: str
    recommended_actions: List[str] = Field(default_factory=list)
    request_id: Optional[str] = None
    mock: bool = False

    @classmethod
    def from_stored(cls, data: Any) -> "InferenceResult":
        """Load a persisted inference, migrating legacy shapes first"""
        if isinstance(data, cls):
            return data
        if is_legacy_inference(data):
            data = normalize_legacy_inference(data)
        return cls.model_validate(data)

    @property
    def is_pending(self) -> bool:
        return self.prediction is None

    @classmethod
    def pending(cls) -> "InferenceResult":
        return cls(
            top_prediction="Pending inference",
            categories=[InferenceCategory(label="Awaiting prediction", probability=1.0)],
            explanation="Inference job has been queued and is awaiting execution.",
            recommended_actions=[
                "Monitor job queue for completion.",
                "Notify caregivers once results are available.",
            ],
        )

    @classmethod
    def from_prediction(
        cls,
        prediction: str,
        probability: float,
        confidence: Optional[float] = None,
        risk_level: Optional[str] = None,
        request_id: Optional[str] = None,
        mock: bool = False,
        recommended_actions: Optional[List[str]] = None,
        narrative: Optional[str] = None,
    ) -> "InferenceResult":
        complement = "Healthy" if prediction == "ASD" else "ASD"
        return cls(
            top_prediction=prediction,
            prediction=prediction,
            probability=probability,
            confidence=confidence,
            risk_level=risk_level,
            categories=[
                InferenceCategory(label=prediction, probability=probability, narrative=narrative),
                InferenceCategory(label=complement, probability=round(1.0 - probability, 6)),
            ],
            explanation=f"{prediction} with {probability * 100:.1f}% probability.",
            recommended_actions=recommended_actions or [],
            request_id=request_id,
            mock=mock,
        )


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class CaseArtifacts(CamelModel):
    payload_cid: Optional[str] = None
    payload_path: Optional[str] = None


class CaseRecord(SubmissionFields):
    """Submitted case plus its identifiers and current inference"""

    id: str
    submitted_at: datetime
    inference: InferenceResult = Field(default_factory=InferenceResult.pending)
    job_id: Optional[str] = None
    artifacts: CaseArtifacts = Field(default_factory=CaseArtifacts)

    @field_validator("inference", mode="before")
    @classmethod
    def load_stored_inference(cls, v: Any) -> Any:
        if v is None or (isinstance(v, dict) and not v):
            return InferenceResult.pending()
        if isinstance(v, dict):
            return InferenceResult.from_stored(v)
        return v

    def to_submission(self) -> CaseSubmission:
        return CaseSubmission(
            demographics=self.demographics,
            development=self.development,
            assessments=self.assessments,
            behaviors=self.behaviors,
            notes=self.notes,
        )


class StatusHistoryEntry(CamelModel):
    status: JobStatus
    timestamp: datetime
    message: Optional[str] = None


class InferenceJob(CamelModel):
    """Lifecycle of the prediction attempt-chain for one case"""

    id: str
    case_id: str
    status: JobStatus = JobStatus.QUEUED
    submitted_at: datetime
    completed_at: Optional[datetime] = None
    edge_node: Optional[str] = None
    payload_cid: Optional[str] = None
    result: Optional[InferenceResult] = None
    error: Optional[str] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    @field_validator("result", mode="before")
    @classmethod
    def load_stored_result(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return InferenceResult.from_stored(v) if v else None
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def transition(
        self,
        status: JobStatus,
        message: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> StatusHistoryEntry:
        """Move to ``status`` and append a history entry; timestamps never go backwards"""
        timestamp = at or utcnow()
        if self.status_history and timestamp < self.status_history[-1].timestamp:
            timestamp = self.status_history[-1].timestamp
        entry = StatusHistoryEntry(status=status, timestamp=timestamp, message=message)
        self.status_history.append(entry)
        self.status = status
        return entry


# ---------------------------------------------------------------------------
# Query and API responses
# ---------------------------------------------------------------------------

class CaseListResponse(CamelModel):
    cases: List[CaseRecord]
    total: int
    page: int
    page_size: int


class CategoryAverage(CamelModel):
    label: str
    probability: float


class CaseStats(CamelModel):
    total: int = 0
    asd: int = 0
    healthy: int = 0
    high_risk: int = 0
    pending: int = 0
    categories: List[CategoryAverage] = Field(default_factory=list)


class RetryOutcome(CamelModel):
    """Result of re-running the prediction for an existing case"""

    success: bool
    case_record: Optional[CaseRecord] = None
    error: Optional[str] = None
    reason: Optional[str] = None
