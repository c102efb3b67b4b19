import base64
import json

import httpx

from aspire.core.config import FileStoreSettings
from aspire.services.file_store import ContentStoreClient, LocalPayloadArchive
from aspire.storage.json_backend import JsonBackend

STORE_URL = "http://edge.test:31234"
DOCUMENT = {"caseId": "R1-20240501-AB12", "submittedAt": "2024-05-01T09:30:00+00:00", "submission": {}}


def make_client(handler) -> ContentStoreClient:
    return ContentStoreClient(
        FileStoreSettings(API_URL=STORE_URL),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestLocalPayloadArchive:

    async def test_archive_writes_payload_file(self, tmp_path):
        backend = JsonBackend(tmp_path)
        archive = LocalPayloadArchive(backend)

        result = await archive.archive("R1-20240501-AB12", DOCUMENT)

        assert result.path == str(tmp_path / "payloads" / "R1-20240501-AB12.json")
        assert result.cid is None
        assert backend.get_payload("R1-20240501-AB12") == DOCUMENT
        assert await archive.get_status() == {"status": "online", "mode": "local"}


class TestContentStoreClient:
    """Test suite for the content-addressed payload upload."""

    def setup_method(self):
        self.requests = []

    async def test_upload_returns_cid(self):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(
                200, json={"result": {"cid": "QmPayload123"}, "ee_node_address": "0xai_edge_node"}
            )

        result = await make_client(handler).archive("R1-20240501-AB12", DOCUMENT)

        assert result.cid == "QmPayload123"
        assert result.edge_node == "0xai_edge_node"

        sent = self.requests[0]
        assert str(sent.url) == f"{STORE_URL}/add_file_base64"
        body = json.loads(sent.content)
        assert body["filename"] == "R1-20240501-AB12.json"
        assert json.loads(base64.b64decode(body["file_base64_str"])) == DOCUMENT

    async def test_plain_cid_response(self):
        result = await make_client(lambda request: httpx.Response(200, json="QmPlain")).archive(
            "R1-20240501-AB12", DOCUMENT
        )

        assert result.cid == "QmPlain"

    async def test_upload_failure_returns_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert await make_client(handler).archive("R1-20240501-AB12", DOCUMENT) is None

    async def test_server_error_returns_none(self):
        client = make_client(lambda request: httpx.Response(500, json={"error": "disk full"}))

        assert await client.archive("R1-20240501-AB12", DOCUMENT) is None

    async def test_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/get_status"
            return httpx.Response(200, json={"result": {"server_alias": "edge-1", "mode": "remote"}})

        status = await make_client(handler).get_status()

        assert status["status"] == "online"
        assert status["server_alias"] == "edge-1"
        assert status["mode"] == "content_store"

    async def test_status_when_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        status = await make_client(handler).get_status()

        assert status["status"] == "unhealthy"
        assert status["mode"] == "content_store"
