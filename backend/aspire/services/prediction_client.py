from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import random
import secrets
import time

import httpx
import structlog
from prometheus_client import Counter, Histogram
from pydantic import ValidationError

from aspire.core.config import AppConstants, PredictionSettings
from aspire.schemas.prediction import (
    PredictionErrorResponse,
    PredictionRequest,
    PredictionResponse,
)
from aspire.services.payload_mapper import validate_request

logger = structlog.get_logger(__name__)

PREDICTION_COUNT = Counter(
    "aspire_predictions_total",
    "Prediction attempts by mode and outcome",
    ["mode", "outcome"],
)
PREDICTION_DURATION = Histogram(
    "aspire_prediction_duration_seconds",
    "Prediction call duration in seconds",
    ["mode"],
)

# Additive contribution of each derived risk factor to the mock score.
MOCK_RISK_WEIGHTS: Dict[str, float] = {
    "developmental_milestones": 0.15,
    "intellectual_disability": 0.20,
    "language_disorder": 0.15,
    "language_development": 0.10,
    "dysmorphism": 0.10,
    "behaviour_disorder": 0.15,
    "iq_dq_below_70": 0.15,
    "iq_dq_below_85": 0.05,
}


class PredictionError(Exception):
    """Base exception for prediction failures"""
    pass


class PayloadValidationError(PredictionError):
    """Derived payload violates the prediction service schema"""

    def __init__(self, message: str, errors: Optional[List[str]] = None, field: Optional[str] = None):
        super().__init__(message)
        self.errors = errors or []
        self.field = field


class PredictionApiError(PredictionError):
    """Prediction service explicitly rejected the request"""

    def __init__(self, message: str, error_code: str, error_type: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.request_id = request_id


class PredictionNetworkError(PredictionError):
    """Transport failure or timeout while calling the prediction service"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def risk_level_for(probability: float) -> str:
    if probability >= AppConstants.HIGH_RISK_THRESHOLD:
        return "high"
    if probability >= AppConstants.MEDIUM_RISK_THRESHOLD:
        return "medium"
    return "low"


def mock_risk_score(request: PredictionRequest) -> float:
    """Deterministic part of the mock score, before jitter and clamping"""
    data = request.struct_data
    score = 0.0

    if data.developmental_milestones != "N":
        score += MOCK_RISK_WEIGHTS["developmental_milestones"]
    if data.intellectual_disability != "N":
        score += MOCK_RISK_WEIGHTS["intellectual_disability"]
    if data.language_disorder == "Y":
        score += MOCK_RISK_WEIGHTS["language_disorder"]
    if data.language_development != "N":
        score += MOCK_RISK_WEIGHTS["language_development"]
    if data.dysmorphism == "Y":
        score += MOCK_RISK_WEIGHTS["dysmorphism"]
    if data.behaviour_disorder == "Y":
        score += MOCK_RISK_WEIGHTS["behaviour_disorder"]

    if data.iq_dq < 70:
        score += MOCK_RISK_WEIGHTS["iq_dq_below_70"]
    elif data.iq_dq < 85:
        score += MOCK_RISK_WEIGHTS["iq_dq_below_85"]

    return score


def generate_mock_response(
    request: PredictionRequest,
    rng: Optional[random.Random] = None,
) -> PredictionResponse:
    """Synthesize a plausible prediction without calling the service"""
    rng = rng or random.Random()

    jitter = (rng.random() - 0.5) * AppConstants.MOCK_JITTER
    probability = min(
        AppConstants.MOCK_PROBABILITY_CEILING,
        max(AppConstants.MOCK_PROBABILITY_FLOOR, mock_risk_score(request) + jitter),
    )
    prediction = "ASD" if probability >= AppConstants.DECISION_THRESHOLD else "Healthy"
    confidence = 0.7 + rng.random() * 0.25

    return PredictionResponse(
        request_id=f"mock-{int(time.time() * 1000)}-{secrets.token_hex(3)}",
        prediction=prediction,
        probability=probability,
        confidence=confidence,
        risk_level=risk_level_for(probability),
        input_summary=request.struct_data.model_dump(mode="json"),
        processed_at=datetime.now(timezone.utc),
        processor_version=AppConstants.MOCK_PROCESSOR_VERSION,
        metadata={"mock": True},
    )


class PredictionClient:
    """Client for the external ASD screening prediction service"""

    def __init__(
        self,
        settings: PredictionSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None
        self._rng = rng

    @property
    def mode(self) -> str:
        return "mock" if self.settings.use_mock else "live"

    @property
    def predict_url(self) -> str:
        return f"{self.settings.API_URL}/predict"

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def predict(self, request: PredictionRequest) -> PredictionResponse:
        """
        Score a prediction request.

        Raises:
            PayloadValidationError: request does not satisfy the service schema
            PredictionApiError: service returned an explicit error
            PredictionNetworkError: transport failure or timeout
        """
        validation = validate_request(request)
        if not validation.is_valid:
            PREDICTION_COUNT.labels(mode=self.mode, outcome="invalid").inc()
            raise PayloadValidationError(
                f"Validation failed: {', '.join(validation.errors)}",
                errors=validation.errors,
            )

        start_time = time.perf_counter()
        try:
            if self.settings.use_mock:
                logger.info("Using mock prediction")
                response = generate_mock_response(request, self._rng)
            else:
                logger.info("Calling prediction service", url=self.predict_url)
                response = await self._call_api(request)
        except PredictionError as e:
            PREDICTION_COUNT.labels(mode=self.mode, outcome=type(e).__name__).inc()
            raise
        finally:
            PREDICTION_DURATION.labels(mode=self.mode).observe(time.perf_counter() - start_time)

        PREDICTION_COUNT.labels(mode=self.mode, outcome="completed").inc()
        logger.info(
            "Prediction completed",
            prediction=response.prediction,
            risk_level=response.risk_level,
            request_id=response.request_id,
            mode=self.mode,
        )
        return response

    async def _call_api(self, request: PredictionRequest) -> PredictionResponse:
        timeout = self.settings.TIMEOUT_SECONDS
        client = self._get_http_client()

        try:
            # wait_for cancels the in-flight request once the overall bound elapses
            http_response = await asyncio.wait_for(
                client.post(self.predict_url, json=request.to_payload(), timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise PredictionNetworkError(
                f"Request timed out after {int(timeout * 1000)}ms", cause=e
            ) from e
        except httpx.HTTPError as e:
            raise PredictionNetworkError(str(e) or type(e).__name__, cause=e) from e

        try:
            data = http_response.json()
        except ValueError as e:
            raise PredictionNetworkError(
                f"Invalid JSON from prediction service (HTTP {http_response.status_code})", cause=e
            ) from e

        result = self._unwrap(data)

        if http_response.is_error or result.get("status") == "error":
            envelope = {key: value for key, value in result.items() if value is not None}
            envelope["status"] = "error"
            if "error_code" not in envelope and http_response.is_error:
                envelope["error_code"] = f"HTTP_{http_response.status_code}"
            try:
                error = PredictionErrorResponse.model_validate(envelope)
            except ValidationError:
                error = PredictionErrorResponse(
                    error=str(envelope.get("error_message") or envelope.get("error") or "Unknown API error"),
                    error_code=f"HTTP_{http_response.status_code}",
                )
            logger.warning(
                "Prediction service returned an error",
                status_code=http_response.status_code,
                error_code=error.error_code,
                error_type=error.error_type,
                request_id=error.request_id,
            )
            raise PredictionApiError(
                error.message,
                error_code=error.error_code,
                error_type=error.error_type,
                request_id=error.request_id,
            )

        try:
            return PredictionResponse.model_validate(result)
        except ValidationError as e:
            raise PredictionApiError(
                "Malformed prediction response",
                error_code="INVALID_RESPONSE",
                error_type="processing",
                request_id=result.get("request_id"),
            ) from e

    @staticmethod
    def _unwrap(data: Any) -> Dict[str, Any]:
        """The service nests its payload under ``result``"""
        if not isinstance(data, dict):
            return {"status": "error", "error": "Unexpected response body"}
        result = data.get("result")
        if isinstance(result, dict):
            return result
        return data
