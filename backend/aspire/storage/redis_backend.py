from typing import Any, Dict, List, Optional, Type, TypeVar
import json

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, ValidationError

from aspire.schemas.case import CaseRecord, InferenceJob
from aspire.storage.base import StorageAdapter, StorageError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RedisHashBackend(StorageAdapter):
    """Distributed storage: one Redis hash per record type, field = record id"""

    mode = "redis"

    def __init__(
        self,
        redis_url: str,
        cases_hkey: str,
        jobs_hkey: str,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.cases_hkey = cases_hkey
        self.jobs_hkey = jobs_hkey
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    @staticmethod
    def _parse(model: Type[ModelT], key: str, value: Any) -> Optional[ModelT]:
        if not value:
            return None
        try:
            data = json.loads(value) if isinstance(value, (str, bytes)) else value
            return model.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Skipping malformed hash entry", key=key, model=model.__name__, error=str(e))
            return None

    async def _get_all(self, hkey: str, model: Type[ModelT]) -> List[ModelT]:
        try:
            entries = await self._get_client().hgetall(hkey)
        except redis.RedisError as e:
            raise StorageError(f"Failed to read hash {hkey}: {e}") from e
        records = (self._parse(model, key, value) for key, value in (entries or {}).items())
        return [record for record in records if record is not None]

    async def _get(self, hkey: str, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        try:
            value = await self._get_client().hget(hkey, key)
        except redis.RedisError as e:
            raise StorageError(f"Failed to read {hkey}[{key}]: {e}") from e
        return self._parse(model, key, value)

    async def _set(self, hkey: str, key: str, record: BaseModel) -> None:
        try:
            await self._get_client().hset(hkey, key, record.model_dump_json(by_alias=True))
        except redis.RedisError as e:
            raise StorageError(f"Failed to write {hkey}[{key}]: {e}") from e

    # Cases
    async def get_all_cases(self) -> List[CaseRecord]:
        return await self._get_all(self.cases_hkey, CaseRecord)

    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        return await self._get(self.cases_hkey, case_id, CaseRecord)

    async def set_case(self, case_id: str, record: CaseRecord) -> None:
        await self._set(self.cases_hkey, case_id, record)
        logger.debug("Case stored", case_id=case_id, backend=self.mode)

    # Jobs
    async def get_all_jobs(self) -> List[InferenceJob]:
        return await self._get_all(self.jobs_hkey, InferenceJob)

    async def get_job(self, job_id: str) -> Optional[InferenceJob]:
        return await self._get(self.jobs_hkey, job_id, InferenceJob)

    async def set_job(self, job_id: str, job: InferenceJob) -> None:
        await self._set(self.jobs_hkey, job_id, job)
        logger.debug("Job stored", job_id=job_id, status=job.status.value, backend=self.mode)

    async def get_status(self) -> Dict[str, Any]:
        client = self._get_client()
        try:
            await client.ping()
            info = await client.info("server")
            return {
                "status": "online",
                "mode": self.mode,
                "redis_version": info.get("redis_version", "unknown"),
                "cases": await client.hlen(self.cases_hkey),
                "jobs": await client.hlen(self.jobs_hkey),
            }
        except redis.RedisError as e:
            logger.error("Redis status check failed", error=str(e))
            return {"status": "unhealthy", "mode": self.mode, "error": str(e)}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
