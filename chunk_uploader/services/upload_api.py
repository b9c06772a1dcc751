"""HTTP client for the remote chunked-upload service.

Wraps the fixed contract under ``/upload/chunked``:

    POST   /upload/chunked/init               open a session
    POST   /upload/chunked/chunk/{uploadId}   send one chunk (multipart)
    POST   /upload/chunked/pause/{uploadId}
    POST   /upload/chunked/resume/{uploadId}  -> missingChunks
    DELETE /upload/chunked/cancel/{uploadId}
    DELETE /upload/chunked/active             cancel everything
    GET    /upload/chunked/status/{uploadId}
    GET    /upload/chunked/active             list sessions

Every failure leaves this module as an ``UploadError`` subclass.
"""

import asyncio
import io
import logging
from collections.abc import Callable
from typing import Any

import httpx

from chunk_uploader.services.errors import (
    AuthenticationRequired,
    FinalizationFailed,
    InitializationFailed,
    RemoteRequestFailed,
    TransferFailed,
)
from chunk_uploader.services.file_handle import FileHandle
from chunk_uploader.services.models import ActiveUpload, UploadSession

logger = logging.getLogger(__name__)

API_PREFIX = "/upload/chunked"
FINALIZATION_MARKER = "Finalization failed"


class ProgressReader(io.BytesIO):
    """Chunk body that reports cumulative bytes handed to the transport."""

    def __init__(self, data: bytes, callback: Callable[[int], None] | None) -> None:
        super().__init__(data)
        self._callback = callback

    def read(self, size: int | None = -1) -> bytes:
        chunk = super().read(size)
        if chunk and self._callback is not None:
            self._callback(self.tell())
        return chunk


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: httpx.Response, body: dict[str, Any]) -> str:
    message = body.get("message") or body.get("error")
    if message:
        return str(message)
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


class UploadApiClient:
    """Async client for the remote upload service."""

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._list_active_future: asyncio.Future[list[ActiveUpload]] | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise RemoteRequestFailed(f"{method} {path} failed: {e}") from e

    async def _control(self, method: str, path: str, upload_id: str | None = None) -> dict[str, Any]:
        """Send a control request and return its JSON body, raising on rejection."""
        response = await self._request(method, path)
        body = _json_body(response)
        if response.status_code == 401:
            raise AuthenticationRequired(upload_id=upload_id)
        if response.is_error or body.get("success") is False:
            raise RemoteRequestFailed(_error_message(response, body), upload_id)
        return body

    async def init_upload(
        self,
        file: FileHandle,
        relative_path: str,
        chunk_size: int,
    ) -> UploadSession:
        """Open an upload session for one file.

        Raises:
            AuthenticationRequired: the service answered 401
            InitializationFailed: any other rejection or transport failure
        """
        form = {
            "fileName": file.name,
            "fileSize": str(file.size),
            "relativePath": relative_path,
            "chunkSize": str(chunk_size),
        }
        try:
            response = await self._client.post(f"{API_PREFIX}/init", data=form)
        except httpx.HTTPError as e:
            raise InitializationFailed(f"Upload initialization failed: {e}") from e

        body = _json_body(response)
        if response.status_code == 401:
            raise AuthenticationRequired()
        if response.is_error or not body.get("success") or not body.get("data"):
            reason = _error_message(response, body) if response.is_error else (
                body.get("message") or "Failed to initialize upload"
            )
            logger.error(
                "Upload initialization failed for %s: status=%s body=%s",
                file.name,
                response.status_code,
                body,
            )
            raise InitializationFailed(f"Upload initialization failed: {reason}")

        try:
            return UploadSession.from_api(body["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise InitializationFailed(f"Upload initialization failed: malformed session: {e}") from e

    async def upload_chunk(
        self,
        session: UploadSession,
        chunk_index: int,
        data: bytes,
        file_name: str = "chunk",
        progress_callback: Callable[[int], None] | None = None,
    ) -> dict[str, Any]:
        """Send one chunk and return the service's JSON body.

        Raises:
            AuthenticationRequired: the service answered 401
            FinalizationFailed: the last chunk was accepted but assembly failed
            TransferFailed: any other rejection or transport failure
        """
        upload_id = session.upload_id
        files = {"chunk": (file_name, ProgressReader(data, progress_callback), "application/octet-stream")}
        try:
            response = await self._client.post(
                f"{API_PREFIX}/chunk/{upload_id}",
                data={"chunkIndex": str(chunk_index)},
                files=files,
            )
        except httpx.HTTPError as e:
            raise TransferFailed(f"Chunk {chunk_index} failed: {e}", upload_id) from e

        body = _json_body(response)
        if response.status_code == 401:
            raise AuthenticationRequired(upload_id=upload_id)
        if not response.is_error and body.get("success"):
            return body

        message = _error_message(response, body)
        if FINALIZATION_MARKER in message:
            raise FinalizationFailed(message, upload_id)
        raise TransferFailed(message or "Chunk upload failed", upload_id)

    async def pause_upload(self, upload_id: str) -> None:
        await self._control("POST", f"/pause/{upload_id}", upload_id)

    async def resume_upload(self, upload_id: str) -> list[int]:
        """Tell the service the upload resumes; returns the chunk indexes it lacks."""
        body = await self._control("POST", f"/resume/{upload_id}", upload_id)
        return sorted(int(i) for i in body.get("missingChunks") or [])

    async def cancel_upload(self, upload_id: str) -> None:
        await self._control("DELETE", f"/cancel/{upload_id}", upload_id)

    async def cancel_all(self) -> None:
        await self._control("DELETE", "/active")

    async def get_status(self, upload_id: str) -> dict[str, Any] | None:
        """Return the service's progress payload, or None when it is unknown."""
        response = await self._request("GET", f"/status/{upload_id}")
        if response.status_code == 404:
            return None
        body = _json_body(response)
        if response.status_code == 401:
            raise AuthenticationRequired(upload_id=upload_id)
        if response.is_error or not body.get("success"):
            raise RemoteRequestFailed(_error_message(response, body), upload_id)
        data = body.get("data")
        return data if isinstance(data, dict) else None

    async def list_active(self) -> list[ActiveUpload]:
        """List the service's unfinished sessions. Concurrent callers share one request."""
        if self._list_active_future is not None:
            return await asyncio.shield(self._list_active_future)

        future: asyncio.Future[list[ActiveUpload]] = asyncio.get_running_loop().create_future()
        self._list_active_future = future
        try:
            body = await self._control("GET", "/active")
            uploads = [ActiveUpload.from_api(item) for item in body.get("data") or []]
            future.set_result(uploads)
            return uploads
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a lone caller doesn't trigger "never retrieved" warnings
            future.exception()
            raise
        finally:
            self._list_active_future = None
