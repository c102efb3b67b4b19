from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import base64
import json

import httpx
import structlog
from pydantic import BaseModel

from aspire.core.config import FileStoreSettings
from aspire.storage.json_backend import JsonBackend

logger = structlog.get_logger(__name__)


class ArchiveResult(BaseModel):
    """Where an archived submission payload ended up"""

    cid: Optional[str] = None
    path: Optional[str] = None
    edge_node: Optional[str] = None


class PayloadArchive(ABC):
    """Best-effort archive for full submission payloads"""

    mode: str = "unknown"

    @abstractmethod
    async def archive(self, case_id: str, document: Dict[str, Any]) -> Optional[ArchiveResult]:
        """Store ``document``; returns None instead of raising when the store is unavailable"""

    @abstractmethod
    async def get_status(self) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        return None


class LocalPayloadArchive(PayloadArchive):
    """Writes one JSON file per case next to the local JSON store"""

    mode = "local"

    def __init__(self, backend: JsonBackend):
        self.backend = backend

    async def archive(self, case_id: str, document: Dict[str, Any]) -> Optional[ArchiveResult]:
        try:
            path = self.backend.save_payload(case_id, document)
        except OSError as e:
            logger.error("Failed to write payload file", case_id=case_id, error=str(e))
            return None
        return ArchiveResult(path=str(path))

    async def get_status(self) -> Dict[str, Any]:
        return {"status": "online", "mode": self.mode}


class ContentStoreClient(PayloadArchive):
    """Uploads payloads to the content-addressed file store of the edge node"""

    mode = "content_store"

    UPLOAD_PATH = "/add_file_base64"
    STATUS_PATH = "/get_status"

    def __init__(self, settings: FileStoreSettings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.TIMEOUT_SECONDS)
        return self._http_client

    async def archive(self, case_id: str, document: Dict[str, Any]) -> Optional[ArchiveResult]:
        encoded = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
        body = {"file_base64_str": encoded, "filename": f"{case_id}.json"}

        try:
            response = await self._get_http_client().post(
                f"{self.settings.API_URL}{self.UPLOAD_PATH}", json=body
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            # Archiving is optional; the submission continues without a content id
            logger.error("Failed to upload payload to content store", case_id=case_id, error=str(e))
            return None

        result = self._parse_upload_response(data)
        logger.info("Payload archived", case_id=case_id, cid=result.cid, edge_node=result.edge_node)
        return result

    @staticmethod
    def _parse_upload_response(data: Any) -> ArchiveResult:
        if isinstance(data, str):
            return ArchiveResult(cid=data)
        if not isinstance(data, dict):
            return ArchiveResult()

        result = data.get("result")
        cid = None
        if isinstance(result, dict):
            cid = result.get("cid")
        elif isinstance(result, str):
            cid = result
        cid = cid or data.get("cid")

        edge_node = data.get("ee_node_address")
        if edge_node is None and isinstance(result, dict):
            edge_node = result.get("ee_node_address")

        return ArchiveResult(
            cid=cid if isinstance(cid, str) else None,
            edge_node=edge_node if isinstance(edge_node, str) else None,
        )

    async def get_status(self) -> Dict[str, Any]:
        try:
            response = await self._get_http_client().get(f"{self.settings.API_URL}{self.STATUS_PATH}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Content store status check failed", error=str(e))
            return {"status": "unhealthy", "mode": self.mode, "error": str(e)}

        status = data.get("result", data) if isinstance(data, dict) else {"raw": data}
        if not isinstance(status, dict):
            status = {"raw": status}
        return {"status": "online", **status, "mode": self.mode}

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
