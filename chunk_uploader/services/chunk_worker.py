"""Per-upload chunk transfer loop."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from chunk_uploader.services.cancellation import CancelToken
from chunk_uploader.services.errors import RemoteRequestFailed, TransferFailed, UploadCancelled
from chunk_uploader.services.events import EventEmitter
from chunk_uploader.services.models import UploadRecord, UploadStatus
from chunk_uploader.services.upload_api import UploadApiClient
from chunk_uploader.services.upload_store import UploadStore

logger = logging.getLogger(__name__)

# Schedules a Durable Store write without blocking the transfer loop
PersistCallback = Callable[[str, Awaitable[object]], None]


class ChunkTransferWorker:
    """Uploads one file's chunks strictly in ascending order, one request at a time.

    The worker only touches the record it was handed. Completion and failure
    are reported to the caller (the scheduler) through the return value and
    exceptions of `run()`.
    """

    def __init__(
        self,
        record: UploadRecord,
        api: UploadApiClient,
        store: UploadStore,
        events: EventEmitter,
        persist: PersistCallback,
        checkpoint_interval: int = 20,
        progress_interval: float = 0.1,
    ) -> None:
        self.record = record
        self.api = api
        self.store = store
        self.events = events
        self.persist = persist
        self.checkpoint_interval = checkpoint_interval
        self.progress_interval = progress_interval

    async def run(self) -> bool:
        """Transfer chunks until done, paused or cancelled.

        Returns:
            True when the server signalled completion, False when the loop
            stopped because the upload was paused

        Raises:
            UploadCancelled: the cancel token fired (pause or cancel)
            UploadError: any other transfer failure
        """
        record = self.record
        session = record.session
        now = time.monotonic()
        record.status = UploadStatus.UPLOADING
        record.start_time = now
        record.last_progress_time = now
        record.last_progress_bytes = record.uploaded_bytes

        self.events.emit_status(record.upload_id, UploadStatus.UPLOADING)
        self.events.emit_progress(record.progress(UploadStatus.UPLOADING))

        # A resumed upload gets a fresh token; this run stays bound to its own
        token = record.cancel_token

        while record.current_chunk < session.total_chunks and not record.paused:
            if token.cancelled:
                raise UploadCancelled(token.reason or "", record.upload_id)

            chunk_index = record.current_chunk
            start = chunk_index * session.chunk_size
            end = min(start + session.chunk_size, record.file.size)
            data = await asyncio.to_thread(record.file.read_range, start, end)

            body = await token.guard(
                self.api.upload_chunk(
                    session,
                    chunk_index,
                    data,
                    file_name=record.file.name,
                    progress_callback=lambda sent: self._on_progress(sent),
                )
            )
            if token.cancelled:
                raise UploadCancelled(token.reason or "", record.upload_id)

            record.current_chunk = chunk_index + 1
            record.uploaded_bytes += len(data)
            completed = bool(body.get("completed"))
            self._checkpoint(completed)

            if completed:
                return True

        if record.paused or token.cancelled:
            return False
        return await self._confirm_completion(token)

    def _checkpoint(self, completed: bool) -> None:
        record = self.record
        if not record.is_stored:
            # First successful chunk: store the bytes so the upload survives a restart
            record.is_stored = True
            record.last_persisted_chunk = record.current_chunk
            self.persist(
                record.upload_id,
                self.store.store_upload(
                    record.upload_id,
                    record.file,
                    record.relative_path,
                    record.session,
                    record.current_chunk,
                    record.uploaded_bytes,
                ),
            )
            return

        due = record.current_chunk - record.last_persisted_chunk >= self.checkpoint_interval
        # Records stored before their first chunk (pre-stored) still sit at chunk 0
        if due or completed or record.last_persisted_chunk < 1:
            record.last_persisted_chunk = record.current_chunk
            self.persist(
                record.upload_id,
                self.store.update_upload_progress(
                    record.upload_id, record.current_chunk, record.uploaded_bytes
                ),
            )

    async def _confirm_completion(self, token: CancelToken) -> bool:
        """All chunks are sent but the server never said completed; ask it."""
        record = self.record
        try:
            status = await token.guard(self.api.get_status(record.upload_id))
        except RemoteRequestFailed as e:
            raise TransferFailed(str(e), record.upload_id) from e
        if status and status.get("status") == UploadStatus.COMPLETED.value:
            return True
        raise TransferFailed("Server did not confirm completion of the upload", record.upload_id)

    def _on_progress(self, chunk_bytes_sent: int) -> None:
        """Sampled from the request body as it is streamed, at most once per interval."""
        record = self.record
        now = time.monotonic()
        interval = now - record.last_progress_time
        if interval < self.progress_interval:
            return

        total_size = record.file.size
        uploaded = min(record.uploaded_bytes + chunk_bytes_sent, total_size)
        delta = uploaded - record.last_progress_bytes
        speed = delta / interval if interval > 0 and delta > 0 else 0.0
        remaining = total_size - uploaded
        eta = remaining / speed if speed > 0 else 0.0

        self.events.emit_progress(
            record.progress(UploadStatus.UPLOADING, uploaded_size=uploaded, speed=speed, eta_seconds=eta)
        )
        record.last_progress_time = now
        record.last_progress_bytes = uploaded
