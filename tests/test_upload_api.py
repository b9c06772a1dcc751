"""Tests for the HTTP client of the remote upload service."""

import asyncio
import json

import httpx
import pytest
from fakes import FakeUploadServer

from chunk_uploader.services.errors import (
    AuthenticationRequired,
    FinalizationFailed,
    InitializationFailed,
    RemoteRequestFailed,
    TransferFailed,
)
from chunk_uploader.services.file_handle import BytesFileHandle
from chunk_uploader.services.models import UploadSession
from chunk_uploader.services.upload_api import UploadApiClient

SERVER_URL = "http://testserver/api"


def client_for(handler: httpx.MockTransport) -> UploadApiClient:
    return UploadApiClient(SERVER_URL, auth_token="secret", transport=handler)


@pytest.fixture
def sample_file() -> BytesFileHandle:
    return BytesFileHandle("notes.txt", b"hello world")


class TestInitUpload:
    """Tests for opening sessions."""

    @pytest.mark.asyncio
    async def test_init_sends_form_and_auth(self, sample_file: BytesFileHandle) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {"uploadId": "abc", "chunkSize": 4, "totalChunks": 3, "targetPath": "/docs/notes.txt"},
                },
            )

        client = client_for(httpx.MockTransport(handler))
        session = await client.init_upload(sample_file, "docs", 4)
        await client.aclose()

        assert session == UploadSession("abc", 4, 3, "/docs/notes.txt")
        request = seen[0]
        assert request.url.path == "/api/upload/chunked/init"
        assert request.headers["Authorization"] == "Bearer secret"
        body = request.content.decode()
        assert "fileName=notes.txt" in body
        assert "fileSize=11" in body
        assert "relativePath=docs" in body
        assert "chunkSize=4" in body

    @pytest.mark.asyncio
    async def test_init_unauthorized(self, sample_file: BytesFileHandle) -> None:
        client = client_for(httpx.MockTransport(lambda r: httpx.Response(401, json={"success": False})))
        with pytest.raises(AuthenticationRequired) as exc_info:
            await client.init_upload(sample_file, "", 4)
        await client.aclose()
        assert exc_info.value.detail == "Authentication required. Please log in to upload files."

    @pytest.mark.asyncio
    async def test_init_rejected(self, sample_file: BytesFileHandle) -> None:
        client = client_for(
            httpx.MockTransport(lambda r: httpx.Response(200, json={"success": False, "message": "Quota exceeded"}))
        )
        with pytest.raises(InitializationFailed, match="Quota exceeded"):
            await client.init_upload(sample_file, "", 4)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_init_transport_error(self, sample_file: BytesFileHandle) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = client_for(httpx.MockTransport(handler))
        with pytest.raises(InitializationFailed):
            await client.init_upload(sample_file, "", 4)
        await client.aclose()


class TestUploadChunk:
    """Tests for chunk requests."""

    SESSION = UploadSession("abc", 4, 3)

    @pytest.mark.asyncio
    async def test_chunk_reports_progress(self) -> None:
        sent: list[int] = []
        client = client_for(
            httpx.MockTransport(lambda r: httpx.Response(200, json={"success": True, "completed": False}))
        )

        body = await client.upload_chunk(self.SESSION, 1, b"abcd", progress_callback=sent.append)
        await client.aclose()

        assert body["completed"] is False
        assert sent and sent[-1] == 4

    @pytest.mark.asyncio
    async def test_finalization_failure(self) -> None:
        client = client_for(
            httpx.MockTransport(
                lambda r: httpx.Response(500, json={"success": False, "message": "Finalization failed: disk full"})
            )
        )
        with pytest.raises(FinalizationFailed) as exc_info:
            await client.upload_chunk(self.SESSION, 2, b"ab")
        await client.aclose()
        assert exc_info.value.upload_id == "abc"

    @pytest.mark.asyncio
    async def test_chunk_rejected(self) -> None:
        client = client_for(
            httpx.MockTransport(lambda r: httpx.Response(400, json={"success": False, "message": "Bad chunk"}))
        )
        with pytest.raises(TransferFailed, match="Bad chunk"):
            await client.upload_chunk(self.SESSION, 0, b"ab")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_chunk_unauthorized(self) -> None:
        client = client_for(httpx.MockTransport(lambda r: httpx.Response(401)))
        with pytest.raises(AuthenticationRequired):
            await client.upload_chunk(self.SESSION, 0, b"ab")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_chunk_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = client_for(httpx.MockTransport(handler))
        with pytest.raises(TransferFailed):
            await client.upload_chunk(self.SESSION, 0, b"ab")
        await client.aclose()


class TestControlRequests:
    """Tests for pause, resume, cancel and status calls."""

    @pytest.mark.asyncio
    async def test_resume_returns_sorted_missing_chunks(self) -> None:
        client = client_for(
            httpx.MockTransport(lambda r: httpx.Response(200, json={"success": True, "missingChunks": [4, 3]}))
        )
        assert await client.resume_upload("abc") == [3, 4]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_control_failure(self) -> None:
        client = client_for(
            httpx.MockTransport(lambda r: httpx.Response(404, json={"success": False, "message": "Not found"}))
        )
        with pytest.raises(RemoteRequestFailed, match="Not found"):
            await client.pause_upload("abc")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_status_unknown_upload(self, api_client: UploadApiClient) -> None:
        assert await api_client.get_status("nope") is None

    @pytest.mark.asyncio
    async def test_cancel_and_cancel_all(self, api_client: UploadApiClient, fake_server: FakeUploadServer) -> None:
        session = await api_client.init_upload(BytesFileHandle("a.bin", b"1234"), "", 4)
        await api_client.cancel_upload(session.upload_id)
        await api_client.cancel_all()

        assert fake_server.count("DELETE", f"/cancel/{session.upload_id}") == 1
        assert fake_server.count("DELETE", "/active") == 1

    @pytest.mark.asyncio
    async def test_list_active_shares_one_request(self) -> None:
        calls = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            payload = {"success": True, "data": [{"uploadId": "abc", "fileName": "a.bin", "status": "uploading"}]}
            return httpx.Response(200, content=json.dumps(payload), headers={"Content-Type": "application/json"})

        client = client_for(httpx.MockTransport(handler))
        first, second = await asyncio.gather(client.list_active(), client.list_active())
        await client.aclose()

        assert calls == 1
        assert [u.upload_id for u in first] == ["abc"]
        assert first == second
