from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Type, TypeVar
import asyncio
import json
import os

import structlog
from pydantic import BaseModel, ValidationError

from aspire.schemas.case import CaseRecord, InferenceJob
from aspire.storage.base import StorageAdapter, StorageError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class JsonBackend(StorageAdapter):
    """
    File-backed storage: whole-document JSON maps under ``<data_dir>/db``.

    Layout::

        db/cases.json         {caseId: CaseRecord}
        db/jobs.json          {jobId: InferenceJob}
        db/hidden-cases.json  {"hiddenIds": [...]}
        payloads/<caseId>.json
    """

    mode = "local"

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.db_dir = self.data_dir / "db"
        self.payloads_dir = self.data_dir / "payloads"
        self.cases_path = self.db_dir / "cases.json"
        self.jobs_path = self.db_dir / "jobs.json"
        self.hidden_cases_path = self.db_dir / "hidden-cases.json"

        self.db_dir.mkdir(parents=True, exist_ok=True)
        self.payloads_dir.mkdir(parents=True, exist_ok=True)

        # Serializes read-modify-write cycles within this process
        self._locks: Dict[Path, asyncio.Lock] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        if path not in self._locks:
            self._locks[path] = asyncio.Lock()
        return self._locks[path]

    def _read_document(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8") or "null") or default
        except json.JSONDecodeError as e:
            logger.error("Corrupt storage document", path=str(path), error=str(e))
            raise StorageError(f"Corrupt storage document: {path.name}") from e

    def _write_document(self, path: Path, document: Any) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _parse(self, model: Type[ModelT], key: str, value: Any) -> Optional[ModelT]:
        try:
            return model.model_validate(value)
        except ValidationError as e:
            logger.warning("Skipping malformed stored record", key=key, model=model.__name__, error=str(e))
            return None

    def _read_all(self, path: Path, model: Type[ModelT]) -> List[ModelT]:
        store = self._read_document(path, {})
        records = (self._parse(model, key, value) for key, value in store.items())
        return [record for record in records if record is not None]

    def _read_one(self, path: Path, model: Type[ModelT], key: str) -> Optional[ModelT]:
        value = self._read_document(path, {}).get(key)
        if value is None:
            return None
        return self._parse(model, key, value)

    async def _upsert(self, path: Path, key: str, record: BaseModel) -> None:
        async with self._lock_for(path):
            store = self._read_document(path, {})
            store[key] = record.model_dump(by_alias=True, mode="json")
            self._write_document(path, store)

    # Cases
    async def get_all_cases(self) -> List[CaseRecord]:
        return self._read_all(self.cases_path, CaseRecord)

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        return self._read_one(self.cases_path, CaseRecord, case_id)

    async def set_case(self, case_id: str, record: CaseRecord) -> None:
        await self._upsert(self.cases_path, case_id, record)
        logger.debug("Case stored", case_id=case_id, backend=self.mode)

    # Jobs
    async def get_all_jobs(self) -> List[InferenceJob]:
        return self._read_all(self.jobs_path, InferenceJob)

    async def get_job(self, job_id: str) -> Optional[InferenceJob]:
        return self._read_one(self.jobs_path, InferenceJob, job_id)

    async def set_job(self, job_id: str, job: InferenceJob) -> None:
        await self._upsert(self.jobs_path, job_id, job)
        logger.debug("Job stored", job_id=job_id, status=job.status.value, backend=self.mode)

    async def get_status(self) -> Dict[str, Any]:
        return {"status": "online", "mode": self.mode}

    # Hidden cases
    async def get_hidden_case_ids(self) -> Set[str]:
        return set(self._read_document(self.hidden_cases_path, {}).get("hiddenIds", []))

    async def hide_case(self, case_id: str) -> None:
        async with self._lock_for(self.hidden_cases_path):
            store = self._read_document(self.hidden_cases_path, {})
            hidden_ids = store.get("hiddenIds", [])
            if case_id not in hidden_ids:
                hidden_ids.append(case_id)
                self._write_document(self.hidden_cases_path, {"hiddenIds": hidden_ids})
        logger.info("Case hidden", case_id=case_id)

    # Submission payloads
    def payload_path(self, case_id: str) -> Path:
        return self.payloads_dir / f"{case_id}.json"

    def save_payload(self, case_id: str, payload: Dict[str, Any]) -> Path:
        path = self.payload_path(case_id)
        self._write_document(path, payload)
        return path

    def get_payload(self, case_id: str) -> Optional[Dict[str, Any]]:
        return self._read_document(self.payload_path(case_id), None)
