from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from aspire.schemas.case import CaseRecord, InferenceJob


class StorageError(Exception):
    """Persistence layer failure"""
    pass


class HidingNotSupportedError(StorageError):
    """Backend keeps no hidden-case list"""
    pass


class StorageAdapter(ABC):
    """
    Persistence contract for case and inference-job records.

    Implementations are interchangeable behind the case pipeline; only the
    status payload differs between them.
    """

    mode: str = "unknown"

    # Cases
    @abstractmethod
    async def get_all_cases(self) -> List[CaseRecord]:
        ...

    @abstractmethod
    async def get_case(self, case_id: str) -> Optional[CaseRecord]:
        ...

    @abstractmethod
    async def set_case(self, case_id: str, record: CaseRecord) -> None:
        ...

    # Jobs
    @abstractmethod
    async def get_all_jobs(self) -> List[InferenceJob]:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[InferenceJob]:
        ...

    @abstractmethod
    async def set_job(self, job_id: str, job: InferenceJob) -> None:
        ...

    # Status
    @abstractmethod
    async def get_status(self) -> Dict[str, Any]:
        ...

    # Hidden cases, consulted by list views only
    async def get_hidden_case_ids(self) -> Set[str]:
        return set()

    async def hide_case(self, case_id: str) -> None:
        raise HidingNotSupportedError(f"{self.mode} storage does not support hiding cases")

    async def close(self) -> None:
        return None
