from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StructData(BaseModel):
    """Clinical feature vector expected by the prediction service"""

    # Fields are plain values so that out-of-table codes can be reported by
    # validate_request instead of failing at construction.
    developmental_milestones: str = Field(..., description="G (global), M (motor), C (cognitive) or N")
    iq_dq: float = Field(..., description="IQ / developmental quotient (20-150)")
    intellectual_disability: str = Field(..., description="N, F70.0, F71 or F72")
    language_disorder: str = Field(..., description="Y or N")
    language_development: str = Field(..., description="N, delay or A")
    dysmorphism: str = Field(..., description="Y or NO")
    behaviour_disorder: str = Field(..., description="Y or N")
    neurological_exam: str = Field(..., description="Neurological examination summary")

    model_config = {
        "json_schema_extra": {
            "example": {
                "developmental_milestones": "G",
                "iq_dq": 72,
                "intellectual_disability": "F70.0",
                "language_disorder": "Y",
                "language_development": "delay",
                "dysmorphism": "NO",
                "behaviour_disorder": "Y",
                "neurological_exam": "N",
            }
        }
    }


class RequestMetadata(BaseModel):
    patient_id: Optional[str] = None
    session_id: Optional[str] = None


class PredictionRequest(BaseModel):
    """Request body for POST {baseUrl}/predict"""

    struct_data: StructData
    metadata: Optional[RequestMetadata] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class PredictionResponse(BaseModel):
    """Successful prediction; identical shape for live and mock calls"""

    status: Literal["completed"] = "completed"
    request_id: str
    prediction: Literal["Healthy", "ASD"]
    probability: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    risk_level: Literal["low", "medium", "high"]
    input_summary: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None
    processor_version: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def is_mock(self) -> bool:
        return bool(self.metadata.get("mock", False))


class PredictionErrorResponse(BaseModel):
    """Error envelope returned by the prediction service"""

    status: Literal["error"] = "error"
    request_id: Optional[str] = None
    error: Optional[str] = None
    error_code: str = "UNKNOWN_ERROR"
    error_type: str = "processing"
    error_message: Optional[str] = None

    model_config = {"extra": "allow"}

    @field_validator("request_id", "error", "error_code", "error_type", "error_message", mode="before")
    @classmethod
    def coerce_to_text(cls, v: Any) -> Any:
        # Services differ: numeric codes, or {"message": ...} objects
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, dict) and isinstance(v.get("message"), str):
            return v["message"]
        return str(v)

    @property
    def message(self) -> str:
        return self.error_message or self.error or "Unknown API error"


class ValidationResult(BaseModel):
    """Outcome of pre-flight validation of a prediction request"""

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    request: Optional[PredictionRequest] = None
