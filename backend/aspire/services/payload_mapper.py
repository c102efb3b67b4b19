from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from aspire.schemas.case import (
    CaseSubmission,
    DevelopmentalDelay,
    LanguageLevel,
)
from aspire.schemas.prediction import (
    PredictionRequest,
    RequestMetadata,
    StructData,
    ValidationResult,
)

logger = structlog.get_logger(__name__)


# Highest priority first; only the first matching delay is encoded.
MILESTONE_PRIORITY: Tuple[Tuple[DevelopmentalDelay, str], ...] = (
    (DevelopmentalDelay.GLOBAL, "G"),
    (DevelopmentalDelay.MOTOR, "M"),
    (DevelopmentalDelay.COGNITIVE, "C"),
)
NO_MILESTONE_DELAY = "N"

LANGUAGE_DEVELOPMENT_CODES: Dict[str, str] = {
    LanguageLevel.FUNCTIONAL.value: "N",
    LanguageLevel.DELAYED.value: "delay",
    LanguageLevel.ABSENT.value: "A",
}
DEFAULT_LANGUAGE_DEVELOPMENT = "N"

ALLOWED_VALUES: Dict[str, Tuple[str, ...]] = {
    "developmental_milestones": ("N", "G", "M", "C"),
    "intellectual_disability": ("N", "F70.0", "F71", "F72"),
    "language_disorder": ("N", "Y"),
    "language_development": ("N", "delay", "A"),
    "dysmorphism": ("NO", "Y"),
    "behaviour_disorder": ("N", "Y"),
}

IQ_DQ_MIN = 20
IQ_DQ_MAX = 150


def _enum_value(value) -> str:
    return getattr(value, "value", value)


def milestone_code(delays: Sequence[DevelopmentalDelay]) -> str:
    present = {_enum_value(delay) for delay in delays}
    for delay, code in MILESTONE_PRIORITY:
        if delay.value in present:
            return code
    return NO_MILESTONE_DELAY


def language_development_code(language_level) -> str:
    return LANGUAGE_DEVELOPMENT_CODES.get(_enum_value(language_level), DEFAULT_LANGUAGE_DEVELOPMENT)


def map_to_request(submission: CaseSubmission, case_id: Optional[str] = None) -> PredictionRequest:
    """
    Derive the prediction service payload from a case submission.

    Pure and deterministic: the same submission always yields the same request.
    The language disorder flag is derived from the language level; the
    submission carries no explicit diagnosis field for it.
    """
    development = submission.development
    assessments = submission.assessments
    behaviors = submission.behaviors

    language_level = _enum_value(behaviors.language_level)

    struct_data = StructData(
        developmental_milestones=milestone_code(development.delays),
        iq_dq=assessments.iq_dq,
        intellectual_disability=_enum_value(development.intellectual_disability),
        language_disorder="Y" if language_level != LanguageLevel.FUNCTIONAL.value else "N",
        language_development=language_development_code(language_level),
        dysmorphism="Y" if development.dysmorphic_features else "NO",
        behaviour_disorder="Y" if len(behaviors.concerns) > 0 else "N",
        neurological_exam=assessments.neurological_exam,
    )

    metadata = RequestMetadata(patient_id=case_id) if case_id else None
    return PredictionRequest(struct_data=struct_data, metadata=metadata)


def validate_request(request: PredictionRequest) -> ValidationResult:
    """Check every derived field; all violations are reported together"""
    errors: List[str] = []
    data = request.struct_data

    for field_name, allowed in ALLOWED_VALUES.items():
        value = getattr(data, field_name)
        if value not in allowed:
            errors.append(
                f'Invalid {field_name}: "{value}". Must be {_join_choices(allowed)}.'
            )

    if isinstance(data.iq_dq, bool) or not (IQ_DQ_MIN <= data.iq_dq <= IQ_DQ_MAX):
        errors.append(
            f'Invalid iq_dq: "{data.iq_dq}". Must be a number between {IQ_DQ_MIN} and {IQ_DQ_MAX}.'
        )

    if not data.neurological_exam or not data.neurological_exam.strip():
        errors.append("neurological_exam is required and cannot be empty.")

    if errors:
        logger.debug("Prediction request failed validation", errors=errors)
        return ValidationResult(is_valid=False, errors=errors)

    return ValidationResult(is_valid=True, request=request)


def _join_choices(choices: Sequence[str]) -> str:
    if len(choices) <= 2:
        return " or ".join(choices)
    return f"{', '.join(choices[:-1])}, or {choices[-1]}"
