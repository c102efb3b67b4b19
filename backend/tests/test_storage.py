import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from aspire.core.config import StorageSettings
from aspire.schemas.case import CaseRecord, InferenceJob, InferenceResult, JobStatus, utcnow
from aspire.storage import (
    HidingNotSupportedError,
    JsonBackend,
    RedisHashBackend,
    StorageError,
    create_storage_adapter,
)

from conftest import make_submission


def build_record(case_id: str = "R1-20240501-AB12", **fields) -> CaseRecord:
    return CaseRecord(**make_submission().model_dump(), id=case_id, submitted_at=utcnow(), **fields)


def stored_case_json(inference) -> dict:
    data = make_submission().model_dump(by_alias=True, mode="json")
    data.update({"id": "R1-20240501-0LD1", "submittedAt": "2024-05-01T09:30:00Z", "inference": inference})
    return data


RAW_SERVICE_RESPONSE = {
    "status": "completed",
    "request_id": "req-legacy",
    "prediction": "ASD",
    "probability": 0.8,
    "confidence": 0.9,
    "risk_level": "high",
    "metadata": {},
}


class TestJsonBackend:
    """Test suite for the local JSON file store."""

    async def test_case_round_trip(self, tmp_path):
        backend = JsonBackend(tmp_path)
        record = build_record(job_id="JOB-1714555800000-00AA")

        await backend.set_case(record.id, record)

        assert await backend.get_case(record.id) == record
        assert await backend.get_all_cases() == [record]
        assert await backend.get_case("R1-20240501-FFFF") is None

        on_disk = json.loads(backend.cases_path.read_text())
        assert on_disk[record.id]["jobId"] == "JOB-1714555800000-00AA"
        assert on_disk[record.id]["demographics"]["ageMonths"] == 48

    async def test_job_round_trip(self, tmp_path):
        backend = JsonBackend(tmp_path)
        job = InferenceJob(id="JOB-1", case_id="R1-20240501-AB12", submitted_at=utcnow())
        job.transition(JobStatus.QUEUED)
        job.transition(JobStatus.RUNNING)

        await backend.set_job(job.id, job)

        loaded = await backend.get_job(job.id)
        assert loaded == job
        assert loaded.status == JobStatus.RUNNING
        assert [job.id for job in await backend.get_all_jobs()] == ["JOB-1"]

    async def test_empty_store(self, tmp_path):
        backend = JsonBackend(tmp_path)

        assert await backend.get_all_cases() == []
        assert await backend.get_all_jobs() == []
        assert await backend.get_hidden_case_ids() == set()
        assert await backend.get_status() == {"status": "online", "mode": "local"}

    async def test_hide_is_idempotent(self, tmp_path):
        backend = JsonBackend(tmp_path)

        await backend.hide_case("R1-20240501-AB12")
        await backend.hide_case("R1-20240501-AB12")

        assert await backend.get_hidden_case_ids() == {"R1-20240501-AB12"}
        assert json.loads(backend.hidden_cases_path.read_text()) == {"hiddenIds": ["R1-20240501-AB12"]}

    async def test_corrupt_document_raises(self, tmp_path):
        backend = JsonBackend(tmp_path)
        backend.cases_path.write_text("{not json")

        with pytest.raises(StorageError):
            await backend.get_all_cases()

    async def test_malformed_record_is_skipped(self, tmp_path):
        backend = JsonBackend(tmp_path)
        record = build_record()
        await backend.set_case(record.id, record)

        store = json.loads(backend.cases_path.read_text())
        store["broken"] = {"id": "broken"}
        backend.cases_path.write_text(json.dumps(store))

        assert [case.id for case in await backend.get_all_cases()] == [record.id]

    def test_payload_files(self, tmp_path):
        backend = JsonBackend(tmp_path)

        path = backend.save_payload("R1-20240501-AB12", {"caseId": "R1-20240501-AB12"})

        assert path == tmp_path / "payloads" / "R1-20240501-AB12.json"
        assert backend.get_payload("R1-20240501-AB12") == {"caseId": "R1-20240501-AB12"}
        assert backend.get_payload("missing") is None


class TestLegacyInference:
    """Stored inference shapes from older releases are normalized on read."""

    def load(self, tmp_path, inference) -> CaseRecord:
        backend = JsonBackend(tmp_path)
        case = stored_case_json(inference)
        backend.cases_path.write_text(json.dumps({case["id"]: case}))
        return backend._read_one(backend.cases_path, CaseRecord, case["id"])

    def test_raw_response_at_top_level(self, tmp_path):
        inference = self.load(tmp_path, RAW_SERVICE_RESPONSE).inference

        assert inference.schema_version == 2
        assert inference.top_prediction == "ASD"
        assert inference.probability == 0.8
        assert inference.risk_level.value == "high"
        assert inference.request_id == "req-legacy"
        assert inference.explanation == "ASD with 80.0% probability."
        assert [c.label for c in inference.categories] == ["ASD", "Healthy"]

    @pytest.mark.parametrize("key", ["topPrediction", "prediction"])
    def test_raw_response_nested(self, tmp_path, key):
        legacy = {key: RAW_SERVICE_RESPONSE, "explanation": "old"}

        inference = self.load(tmp_path, legacy).inference

        assert inference.prediction == "ASD"
        assert inference.confidence == 0.9

    def test_unversioned_mapped_result(self, tmp_path):
        legacy = {
            "topPrediction": "Healthy",
            "prediction": "Healthy",
            "probability": 0.3,
            "risk_level": "low",
            "categories": [{"label": "Healthy", "probability": 0.3}],
            "explanation": "Healthy with 30.0% probability.",
        }

        inference = self.load(tmp_path, legacy).inference

        assert inference.schema_version == 2
        assert inference.risk_level.value == "low"
        assert inference.recommended_actions == []
        assert inference.explanation == "Healthy with 30.0% probability."

    async def test_raw_response_without_probability(self, tmp_path):
        backend = JsonBackend(tmp_path)
        case = stored_case_json({"request_id": "r", "prediction": "ASD", "probability": None})
        backend.cases_path.write_text(json.dumps({case["id"]: case}))

        cases = await backend.get_all_cases()

        assert len(cases) == 1
        assert cases[0].inference.prediction == "ASD"
        assert cases[0].inference.probability == 0.0

    async def test_unreadable_raw_response_is_skipped(self, tmp_path):
        backend = JsonBackend(tmp_path)
        broken = stored_case_json({"request_id": "r", "prediction": "ASD", "probability": "n/a"})
        intact = dict(stored_case_json(RAW_SERVICE_RESPONSE), id="R1-20240501-0LD2")
        backend.cases_path.write_text(json.dumps({broken["id"]: broken, intact["id"]: intact}))

        cases = await backend.get_all_cases()

        assert [case.id for case in cases] == ["R1-20240501-0LD2"]

    @pytest.mark.parametrize("inference", [None, {}])
    def test_missing_inference_is_pending(self, tmp_path, inference):
        assert self.load(tmp_path, inference).inference.is_pending

    def test_current_shape_untouched(self, tmp_path):
        current = InferenceResult.from_prediction("Healthy", 0.25, confidence=0.8, risk_level="low")

        loaded = self.load(tmp_path, current.model_dump(by_alias=True, mode="json")).inference

        assert loaded == current

    def test_job_result_is_normalized(self):
        job = InferenceJob.model_validate(
            {
                "id": "JOB-1",
                "caseId": "R1-20240501-0LD1",
                "status": "succeeded",
                "submittedAt": "2024-05-01T09:30:00Z",
                "result": RAW_SERVICE_RESPONSE,
            }
        )

        assert job.result.schema_version == 2
        assert job.result.prediction == "ASD"


class TestRedisHashBackend:
    """Test suite for the Redis hash store, using a mocked client."""

    def setup_method(self):
        self.client = AsyncMock()
        self.backend = RedisHashBackend(
            redis_url="redis://localhost:6379/0",
            cases_hkey="aspire:cases",
            jobs_hkey="aspire:jobs",
            client=self.client,
        )

    async def test_set_case_writes_hash_field(self):
        record = build_record()

        await self.backend.set_case(record.id, record)

        self.client.hset.assert_awaited_once()
        hkey, field, value = self.client.hset.await_args.args
        assert (hkey, field) == ("aspire:cases", record.id)
        assert json.loads(value)["id"] == record.id

    async def test_get_case(self):
        record = build_record()
        self.client.hget.return_value = record.model_dump_json(by_alias=True)

        assert await self.backend.get_case(record.id) == record
        self.client.hget.assert_awaited_once_with("aspire:cases", record.id)

    async def test_get_missing_case(self):
        self.client.hget.return_value = None

        assert await self.backend.get_case("R1-20240501-FFFF") is None

    async def test_get_all_jobs_skips_malformed(self):
        job = InferenceJob(id="JOB-1", case_id="R1-20240501-AB12", submitted_at=utcnow())
        self.client.hgetall.return_value = {
            "JOB-1": job.model_dump_json(by_alias=True),
            "JOB-2": "{broken",
        }

        jobs = await self.backend.get_all_jobs()

        assert [job.id for job in jobs] == ["JOB-1"]
        self.client.hgetall.assert_awaited_once_with("aspire:jobs")

    async def test_redis_failure_is_storage_error(self):
        self.client.hget.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StorageError):
            await self.backend.get_case("R1-20240501-AB12")

    async def test_status(self):
        self.client.info.return_value = {"redis_version": "7.2.4"}
        self.client.hlen.side_effect = [3, 5]

        status = await self.backend.get_status()

        assert status == {"status": "online", "mode": "redis", "redis_version": "7.2.4", "cases": 3, "jobs": 5}

    async def test_status_when_unreachable(self):
        self.client.ping.side_effect = RedisConnectionError("connection refused")

        status = await self.backend.get_status()

        assert status["status"] == "unhealthy"
        assert status["mode"] == "redis"

    async def test_hiding_not_supported(self):
        assert await self.backend.get_hidden_case_ids() == set()
        with pytest.raises(HidingNotSupportedError):
            await self.backend.hide_case("R1-20240501-AB12")

    async def test_close(self):
        await self.backend.close()

        self.client.aclose.assert_awaited_once()


class TestStorageFactory:

    def test_local(self, tmp_path):
        backend = create_storage_adapter(StorageSettings(BACKEND="local", DATA_DIR=tmp_path))

        assert isinstance(backend, JsonBackend)
        assert (tmp_path / "db").is_dir()

    def test_redis(self):
        backend = create_storage_adapter(
            StorageSettings(BACKEND="redis", REDIS_URL="redis://cache:6379/1", CASES_HKEY="c", JOBS_HKEY="j")
        )

        assert isinstance(backend, RedisHashBackend)
        assert backend.redis_url == "redis://cache:6379/1"
        assert (backend.cases_hkey, backend.jobs_hkey) == ("c", "j")
