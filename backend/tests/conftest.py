import copy
import random
from typing import Any, Callable, Dict, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from aspire.core.config import PredictionSettings, SecuritySettings, Settings, StorageSettings
from aspire.main import create_application
from aspire.schemas.case import CaseSubmission
from aspire.services.case_service import CaseService
from aspire.services.file_store import LocalPayloadArchive
from aspire.services.prediction_client import PredictionClient
from aspire.storage.json_backend import JsonBackend

PREDICTOR_URL = "http://predictor.test"
TEST_JWT_SECRET = "test-secret-key-for-jwt-signing"

# Low-risk profile: every derived code is at its baseline value
LOW_RISK_SUBMISSION: Dict[str, Any] = {
    "demographics": {
        "caseLabel": "Case A",
        "ageMonths": 48,
        "sex": "Male",
        "parentalAge": {"mother": 32, "father": 35},
        "diagnosticAgeMonths": 40,
        "prenatalFactors": ["Natural"],
    },
    "development": {
        "delays": ["Language"],
        "dysmorphicFeatures": False,
        "intellectualDisability": "N",
        "comorbidities": [],
        "regressionObserved": False,
    },
    "assessments": {
        "adosScore": 6,
        "adirScore": 10,
        "iqDq": 95,
        "eegAnomalies": False,
        "mriFindings": "",
        "neurologicalExam": "Normal",
        "headCircumference": 50,
    },
    "behaviors": {
        "concerns": [],
        "languageLevel": "Functional",
        "sensoryNotes": "",
    },
    "notes": "",
}

# High-risk profile: every weighted factor is present
HIGH_RISK_CHANGES: Dict[str, Dict[str, Any]] = {
    "development": {
        "delays": ["Motor", "Global"],
        "dysmorphicFeatures": True,
        "intellectualDisability": "F72",
        "regressionObserved": True,
    },
    "assessments": {"iqDq": 40, "eegAnomalies": True, "adosScore": 24},
    "behaviors": {"concerns": ["Aggressivity", "Stereotypy"], "languageLevel": "Absent"},
}


def submission_data(**changes: Dict[str, Any]) -> Dict[str, Any]:
    """Low-risk submission JSON with per-section overrides merged in"""
    data = copy.deepcopy(LOW_RISK_SUBMISSION)
    for section, values in changes.items():
        if isinstance(values, dict):
            data[section].update(values)
        else:
            data[section] = values
    return data


def make_submission(**changes: Dict[str, Any]) -> CaseSubmission:
    return CaseSubmission.model_validate(submission_data(**changes))


def prediction_body(prediction: str = "ASD", probability: float = 0.82, **extra: Any) -> Dict[str, Any]:
    body = {
        "status": "completed",
        "request_id": "req-123",
        "prediction": prediction,
        "probability": probability,
        "confidence": 0.9,
        "risk_level": "high" if probability >= 0.7 else "medium" if probability >= 0.4 else "low",
        "input_summary": {},
        "processed_at": "2024-05-01T10:00:00Z",
        "processor_version": "1.4.2",
        "metadata": {},
    }
    body.update(extra)
    return body


def make_prediction_client(
    handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    timeout_seconds: float = 5,
) -> PredictionClient:
    """Live client backed by ``handler``, or the seeded mock client when no handler is given"""
    if handler is None:
        return PredictionClient(PredictionSettings(MOCK_MODE=True), rng=random.Random(7))
    return PredictionClient(
        PredictionSettings(API_URL=PREDICTOR_URL, TIMEOUT_SECONDS=timeout_seconds),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def make_case_service(data_dir, handler=None) -> CaseService:
    storage = JsonBackend(data_dir)
    return CaseService(
        storage=storage,
        prediction_client=make_prediction_client(handler),
        payload_archive=LocalPayloadArchive(storage),
        case_id_prefix="R1",
    )


def make_settings(data_dir, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "ENVIRONMENT": "development",
        "DEBUG": False,
        "PROMETHEUS_ENABLED": True,
        "prediction": PredictionSettings(MOCK_MODE=True),
        "storage": StorageSettings(BACKEND="local", DATA_DIR=data_dir),
        "security": SecuritySettings(JWT_SECRET_KEY=TEST_JWT_SECRET, ADMIN_USERNAMES=["admin"]),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sample_submission_data() -> Dict[str, Any]:
    """Provide a valid camelCase case submission body."""
    return submission_data()


@pytest.fixture
def high_risk_submission_data() -> Dict[str, Any]:
    return submission_data(**HIGH_RISK_CHANGES)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def app(settings):
    return create_application(settings)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI application."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(app) -> Dict[str, str]:
    token = app.state.jwt_manager.create_access_token("admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(app) -> Dict[str, str]:
    token = app.state.jwt_manager.create_access_token("clinician")
    return {"Authorization": f"Bearer {token}"}


class PredictionServiceStub:
    """Switchable stand-in for the prediction service HTTP endpoint"""

    def __init__(self, mode: str = "error"):
        self.mode = mode
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.mode == "error":
            return httpx.Response(
                200,
                json={
                    "status": "error",
                    "error_code": "MODEL_UNAVAILABLE",
                    "error_type": "processing",
                    "error_message": "model not loaded",
                },
            )
        if self.mode == "offline":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"result": prediction_body("ASD", 0.82)})
