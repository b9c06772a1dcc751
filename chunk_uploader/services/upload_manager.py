"""Upload manager: scheduling, state transitions and restore for chunked uploads."""

import asyncio
import logging
import math
import sqlite3
import time
from collections import deque
from collections.abc import Awaitable
from typing import Any

import httpx

from chunk_uploader.config import DEFAULT_CHUNK_SIZE, Settings
from chunk_uploader.services.cancellation import CancelToken
from chunk_uploader.services.chunk_worker import ChunkTransferWorker
from chunk_uploader.services.errors import (
    AuthenticationRequired,
    FinalizationFailed,
    InitializationFailed,
    TransferFailed,
    UploadCancelled,
    UploadError,
)
from chunk_uploader.services.events import UPLOAD_AUTH_ERROR, UPLOAD_ERROR, EventEmitter
from chunk_uploader.services.file_handle import FileHandle
from chunk_uploader.services.log_service import LogService, get_log_service
from chunk_uploader.services.models import (
    ActiveUpload,
    PersistedUpload,
    UploadProgress,
    UploadRecord,
    UploadSession,
    UploadStatus,
)
from chunk_uploader.services.upload_api import UploadApiClient
from chunk_uploader.services.upload_store import UploadStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def join_base_path(base_path: str | None, relative_path: str) -> str:
    """Prefix a file's relative path with the folder it is uploaded into."""
    relative_path = relative_path or ""
    if base_path and base_path != "/":
        base = base_path.strip("/")
        if base:
            return f"{base}/{relative_path}" if relative_path else base
    return relative_path


class UploadManager:
    """Owns the queued/active/failed upload maps and drives their workers.

    All methods must run on the event loop that owns the manager. The
    scheduling pass is the only place queued uploads become active; at most
    one pass runs at a time.
    """

    def __init__(
        self,
        api: UploadApiClient,
        store: UploadStore,
        events: EventEmitter | None = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_concurrent: int = 3,
        checkpoint_interval: int = 20,
        progress_interval: float = 0.1,
        slot_poll_interval: float = 1.0,
        watchdog_interval: float = 30.0,
        watchdog_threshold: float = 30.0,
        retention_days: int = 7,
        log: LogService | None = None,
    ) -> None:
        self.api = api
        self.store = store
        self.events = events or EventEmitter()
        self.chunk_size = chunk_size
        self.max_concurrent = max(1, max_concurrent)
        self.checkpoint_interval = checkpoint_interval
        self.progress_interval = progress_interval
        self.slot_poll_interval = slot_poll_interval
        self.watchdog_interval = watchdog_interval
        self.watchdog_threshold = watchdog_threshold
        self.retention_days = retention_days
        self.log = log or get_log_service()

        self.active: dict[str, UploadRecord] = {}
        self.queued: dict[str, UploadRecord] = {}
        self.failed: dict[str, UploadRecord] = {}
        self.upload_queue: deque[str] = deque()
        self._resume_waiting: deque[str] = deque()

        self._pass_lock = asyncio.Lock()
        self._pass_task: asyncio.Task[None] | None = None
        self._last_pass_time = 0.0
        self._slot_freed = asyncio.Event()
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._store_tasks: dict[str, set[asyncio.Task[Any]]] = {}
        self._watchdog_task: asyncio.Task[None] | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        events: EventEmitter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "UploadManager":
        """Build a manager, its HTTP client and its store from application settings."""
        api = UploadApiClient(
            settings.server_url,
            auth_token=settings.auth_token,
            timeout=settings.request_timeout,
            transport=transport,
        )
        return cls(
            api,
            UploadStore(settings.store_path),
            events,
            chunk_size=settings.chunk_size,
            max_concurrent=settings.max_concurrent,
            checkpoint_interval=settings.checkpoint_interval,
            progress_interval=settings.progress_interval,
            slot_poll_interval=settings.slot_poll_interval,
            watchdog_interval=settings.watchdog_interval,
            watchdog_threshold=settings.watchdog_threshold,
            retention_days=settings.retention_days,
        )

    # ── startup / shutdown ────────────────────────────────────

    async def init(self) -> None:
        """Open the store, sweep stale records and start the watchdog. Idempotent."""
        async with self._init_lock:
            if self._initialized:
                return

            await self.store.init()
            removed: dict[str, int] = {}
            sweeps = {
                "expired": lambda: self.store.clear_old_uploads(self.retention_days * SECONDS_PER_DAY),
                "completed": self.store.cleanup_completed_uploads,
                "pre_stored": self.store.clear_pre_stored_uploads,
            }
            for name, sweep in sweeps.items():
                try:
                    removed[name] = await sweep()
                except sqlite3.Error:
                    logger.warning("Store cleanup '%s' failed", name, exc_info=True)

            if any(removed.values()):
                self.log.info(
                    "store",
                    "store_cleanup",
                    f"Removed {sum(removed.values())} stale uploads from the store",
                    removed,
                )

            self._start_watchdog()
            self._initialized = True

    async def shutdown(self) -> None:
        """Stop background work and close the HTTP client. Persisted uploads stay restorable."""
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
        if self._pass_task is not None:
            self._pass_task.cancel()

        tasks: list[asyncio.Task[Any]] = [
            t for t in (self._watchdog_task, self._pass_task) if t is not None
        ]
        for task in self._workers.values():
            task.cancel()
            tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)

        pending = [t for group in self._store_tasks.values() for t in group]
        await asyncio.gather(*pending, return_exceptions=True)

        self._workers.clear()
        self._watchdog_task = None
        self._pass_task = None
        await self.api.aclose()
        self.store.close()
        self._initialized = False

    # ── session initiation and enqueueing ─────────────────────

    async def initialize_upload(self, file: FileHandle, relative_path: str = "") -> UploadSession:
        """Negotiate a session with the remote service. Does not touch engine state."""
        return await self.api.init_upload(file, relative_path, self.chunk_size)

    async def start_upload(
        self,
        file: FileHandle,
        relative_path: str = "",
        base_path: str | None = None,
    ) -> str:
        """Open a session for `file` and queue it.

        Returns:
            The server-issued upload id

        Raises:
            AuthenticationRequired: the service rejected the session as unauthorized
            InitializationFailed: the service refused the session
        """
        await self.init()
        relative_path = join_base_path(base_path, relative_path)

        try:
            session = await self.initialize_upload(file, relative_path)
        except AuthenticationRequired as e:
            self.events.emit(UPLOAD_AUTH_ERROR, {"file_name": file.name, "error": e.detail})
            self.log.error(
                "upload",
                "upload_auth_error",
                f"Authentication required to upload {file.name}",
                {"file_name": file.name},
            )
            raise
        except InitializationFailed as e:
            self.log.error(
                "upload",
                "upload_init_failed",
                f"Failed to start upload for {file.name}: {e.detail}",
                {"file_name": file.name, "error": e.detail},
            )
            raise

        return self.enqueue(session, file, relative_path)

    def enqueue(
        self,
        session: UploadSession,
        file: FileHandle,
        relative_path: str = "",
        is_stored: bool = False,
    ) -> str:
        """Queue a negotiated upload and trigger a scheduling pass."""
        record = UploadRecord(session=session, file=file, relative_path=relative_path)
        record.is_stored = is_stored
        self._add_queued(record)

        self.events.emit_status(record.upload_id, UploadStatus.INITIALIZED)
        self.events.emit_progress(record.progress(UploadStatus.INITIALIZED))
        self.log.info(
            "upload",
            "upload_queued",
            f"Queued {file.name}",
            {
                "upload_id": record.upload_id,
                "file_name": file.name,
                "file_size": file.size,
                "total_chunks": session.total_chunks,
            },
        )

        self.trigger_pass()
        return record.upload_id

    def _add_queued(self, record: UploadRecord) -> None:
        upload_id = record.upload_id
        if self.has_active_upload(upload_id):
            raise ValueError(f"Upload {upload_id} is already queued or active")
        self.failed.pop(upload_id, None)
        self.queued[upload_id] = record
        self.upload_queue.append(upload_id)

    # ── eager persistence for pre-scanned batches ─────────────

    async def pre_store_file(self, temp_upload_id: str, file: FileHandle, relative_path: str = "") -> None:
        """Store a scanned file's bytes before its upload session exists."""
        await self.init()
        file_hash = await asyncio.to_thread(file.sha256)
        placeholder = UploadSession(
            upload_id=temp_upload_id,
            chunk_size=self.chunk_size,
            total_chunks=math.ceil(file.size / self.chunk_size),
        )
        await self.store.store_upload(
            temp_upload_id,
            file,
            relative_path,
            placeholder,
            is_pre_stored=True,
            file_hash=file_hash,
        )

    async def start_upload_with_pre_storage(
        self,
        file: FileHandle,
        relative_path: str = "",
        base_path: str | None = None,
    ) -> str:
        """Start an upload, reusing pre-stored bytes when the same content was scanned."""
        await self.init()
        try:
            file_hash = await asyncio.to_thread(file.sha256)
            pre_stored = await self.store.find_pre_stored_by_hash(file_hash)
        except (OSError, sqlite3.Error):
            logger.warning("Pre-stored lookup failed for %s", file.name, exc_info=True)
            pre_stored = None

        if pre_stored is None:
            return await self.start_upload(file, relative_path, base_path)

        relative_path = join_base_path(base_path, relative_path)
        session = await self.initialize_upload(file, relative_path)
        try:
            await self.store.remove_upload(pre_stored.upload_id)
            pre_stored.upload_id = session.upload_id
            pre_stored.session = session
            pre_stored.relative_path = relative_path
            pre_stored.is_pre_stored = False
            await self.store.update_upload_session(pre_stored)
        except sqlite3.Error:
            logger.warning("Could not re-key pre-stored upload for %s", file.name, exc_info=True)
            return self.enqueue(session, file, relative_path)

        return self.enqueue(session, file, relative_path, is_stored=True)

    # ── scheduling pass ───────────────────────────────────────

    def in_flight_count(self) -> int:
        """Active uploads currently holding a concurrency slot."""
        return sum(1 for record in self.active.values() if record.in_flight)

    def trigger_pass(self) -> asyncio.Task[None]:
        """Start a scheduling pass unless one is already running."""
        if self._pass_task is None or self._pass_task.done():
            self._pass_task = asyncio.get_running_loop().create_task(self._run_pass())
            self._pass_task.add_done_callback(self._on_pass_done)
        return self._pass_task

    async def process_queue(self) -> None:
        """Run (or join) a scheduling pass and wait for it to drain the queue."""
        await self.trigger_pass()

    async def _run_pass(self) -> None:
        async with self._pass_lock:
            self._last_pass_time = time.monotonic()
            while self.upload_queue or self._resume_waiting:
                self._last_pass_time = time.monotonic()

                if self.in_flight_count() >= self.max_concurrent:
                    await self._wait_for_slot()
                    continue

                if self._resume_waiting:
                    upload_id = self._resume_waiting.popleft()
                    record = self.active.get(upload_id)
                    if record is not None and record.paused:
                        record.paused = False
                        self._start_worker(record)
                    continue

                upload_id = self.upload_queue.popleft()
                record = self.queued.pop(upload_id, None)
                if record is None:
                    continue
                self._activate(record)

                # Let the new worker start before pulling the next upload
                await asyncio.sleep(0)

    async def _wait_for_slot(self) -> None:
        self._slot_freed.clear()
        try:
            await asyncio.wait_for(self._slot_freed.wait(), timeout=self.slot_poll_interval)
        except TimeoutError:
            pass

    def _free_slot(self) -> None:
        self._slot_freed.set()

    def _on_pass_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Scheduling pass failed", exc_info=error)
            self.log.error("queue", "queue_pass_failed", f"Scheduling pass failed: {error}")

    def _activate(self, record: UploadRecord) -> None:
        """Move a queued record into the active map and start its worker."""
        record.current_chunk = record.restored_chunk or 0
        record.uploaded_bytes = record.restored_bytes or 0
        record.restored_chunk = None
        record.restored_bytes = None
        record.paused = False
        record.last_persisted_chunk = record.current_chunk - 1
        record.is_stored = record.is_stored or record.current_chunk > 0
        if record.cancel_token.cancelled:
            record.cancel_token = CancelToken()

        self.active[record.upload_id] = record
        self._start_worker(record)

    def _start_worker(self, record: UploadRecord) -> None:
        task = asyncio.get_running_loop().create_task(self._run_worker(record))
        self._workers[record.upload_id] = task

    async def _run_worker(self, record: UploadRecord) -> None:
        upload_id = record.upload_id
        worker = ChunkTransferWorker(
            record,
            self.api,
            self.store,
            self.events,
            self._persist,
            checkpoint_interval=self.checkpoint_interval,
            progress_interval=self.progress_interval,
        )
        self.log.info(
            "upload",
            "upload_started",
            f"Uploading {record.file.name} from chunk {record.current_chunk}",
            {
                "upload_id": upload_id,
                "file_name": record.file.name,
                "current_chunk": record.current_chunk,
                "total_chunks": record.session.total_chunks,
            },
        )
        try:
            completed = await worker.run()
        except UploadCancelled:
            return
        except UploadError as e:
            self._handle_upload_error(record, e)
            return
        except Exception as e:
            logger.exception("Unexpected failure uploading %s", upload_id)
            self._handle_upload_error(record, TransferFailed(str(e), upload_id))
            return
        finally:
            if self._workers.get(upload_id) is asyncio.current_task():
                del self._workers[upload_id]

        if completed and self.active.get(upload_id) is record:
            await self._complete_upload(record)

    # ── watchdog ──────────────────────────────────────────────

    def _start_watchdog(self) -> None:
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.get_running_loop().create_task(self._watchdog())

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            self.check_stalled_queue()

    def check_stalled_queue(self) -> bool:
        """Restart the scheduling pass if work is waiting and no pass has run lately.

        Returns:
            True if a pass was (re)started
        """
        if not (self.upload_queue or self._resume_waiting):
            return False
        if time.monotonic() - self._last_pass_time <= self.watchdog_threshold:
            return False

        logger.warning("Queue processing seems stuck, restarting")
        self.log.warning(
            "queue",
            "queue_stalled",
            "Queue processing seems stuck, restarting",
            {"queued": len(self.upload_queue), "active": len(self.active)},
        )
        if self._pass_task is not None and not self._pass_task.done():
            self._pass_task.cancel()
        self._pass_task = None
        self.trigger_pass()
        return True

    # ── persistence helpers ───────────────────────────────────

    def _persist(self, upload_id: str, write: Awaitable[Any]) -> None:
        """Run a store write in the background, tracked per upload id."""
        task = asyncio.ensure_future(write)
        self._store_tasks.setdefault(upload_id, set()).add(task)
        task.add_done_callback(lambda t: self._on_store_done(upload_id, t))

    def _on_store_done(self, upload_id: str, task: asyncio.Task[Any]) -> None:
        tasks = self._store_tasks.get(upload_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._store_tasks[upload_id]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Failed to checkpoint upload %s", upload_id, exc_info=task.exception()
            )

    async def _remove_persisted(self, upload_id: str) -> None:
        pending = list(self._store_tasks.get(upload_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        try:
            await self.store.remove_upload(upload_id)
        except (sqlite3.Error, RuntimeError):
            logger.warning("Failed to remove upload %s from the store", upload_id, exc_info=True)

    # ── terminal transitions ──────────────────────────────────

    def _detach(self, upload_id: str) -> UploadRecord | None:
        """Remove an upload from every in-memory collection and free its slot."""
        record = self.active.pop(upload_id, None)
        queued = self.queued.pop(upload_id, None)
        failed = self.failed.pop(upload_id, None)
        if upload_id in self.upload_queue:
            self.upload_queue.remove(upload_id)
        if upload_id in self._resume_waiting:
            self._resume_waiting.remove(upload_id)
        self._free_slot()
        return record or queued or failed

    async def _complete_upload(self, record: UploadRecord) -> None:
        upload_id = record.upload_id
        record.current_chunk = record.session.total_chunks
        record.uploaded_bytes = record.file.size
        record.status = UploadStatus.COMPLETED
        self._detach(upload_id)

        self.events.emit_progress(record.progress(UploadStatus.COMPLETED))
        self.events.emit_status(upload_id, UploadStatus.COMPLETED)
        self.log.info(
            "upload",
            "upload_completed",
            f"Uploaded {record.file.name}",
            {
                "upload_id": upload_id,
                "file_name": record.file.name,
                "file_size": record.file.size,
                "duration_seconds": round(time.monotonic() - record.start_time, 3),
                "target_path": record.session.target_path,
            },
        )

        self.trigger_pass()
        await self._remove_persisted(upload_id)

    def _handle_upload_error(self, record: UploadRecord, error: UploadError) -> None:
        """Report a failed transfer and keep the record queryable as `error`.

        The store entry is kept so the upload can be retried from its checkpoint.
        """
        upload_id = record.upload_id
        if self._detach(upload_id) is None and record.status is UploadStatus.CANCELLED:
            return

        record.status = UploadStatus.ERROR
        record.error_kind = error.kind
        record.error_message = error.detail
        record.cancel_token.cancel("Upload failed")
        self.failed[upload_id] = record

        if isinstance(error, FinalizationFailed):
            message = f"Failed to finalize upload for {record.file.name}. Please try again."
        else:
            message = f"Upload failed for {record.file.name}: {error.detail}"

        self.events.emit_progress(record.progress(UploadStatus.ERROR))
        self.events.emit_status(upload_id, UploadStatus.ERROR)
        if isinstance(error, AuthenticationRequired):
            self.events.emit(UPLOAD_AUTH_ERROR, {"file_name": record.file.name, "error": error.detail})
        self.events.emit(
            UPLOAD_ERROR,
            {
                "upload_id": upload_id,
                "file_name": record.file.name,
                "kind": error.kind,
                "error": message,
            },
        )
        self.log.error(
            "upload",
            "upload_failed",
            message,
            {
                "upload_id": upload_id,
                "file_name": record.file.name,
                "kind": error.kind,
                "error": error.detail,
                "current_chunk": record.current_chunk,
            },
        )

        self.trigger_pass()

    # ── control surface ───────────────────────────────────────

    async def pause(self, upload_id: str) -> bool:
        """Pause an active upload. The last accepted chunk is the resume point."""
        record = self.active.get(upload_id)
        if record is None or record.paused:
            return False

        record.paused = True
        record.status = UploadStatus.PAUSED
        record.cancel_token.cancel("Upload paused by user")
        self._free_slot()

        try:
            await self.api.pause_upload(upload_id)
        except UploadError:
            logger.warning("Failed to pause upload %s on server", upload_id, exc_info=True)

        # Cancelled or resumed while the server call was pending
        if self.active.get(upload_id) is not record or not record.paused:
            return False

        self.events.emit_status(upload_id, UploadStatus.PAUSED)
        self.log.info(
            "upload",
            "upload_paused",
            f"Paused {record.file.name}",
            {"upload_id": upload_id, "current_chunk": record.current_chunk},
        )
        self.trigger_pass()
        return True

    async def resume(self, upload_id: str) -> bool:
        """Resume a paused upload from the lowest chunk the server is missing."""
        record = self.active.get(upload_id)
        if record is None:
            if upload_id in self.queued:
                self.trigger_pass()
                return True
            return False
        if not record.paused or upload_id in self._resume_waiting:
            return False

        try:
            missing_chunks = await self.api.resume_upload(upload_id)
        except UploadError as e:
            logger.error("Failed to resume upload %s", upload_id, exc_info=True)
            if not isinstance(e, AuthenticationRequired):
                e = TransferFailed(f"Failed to resume upload: {e.detail}", upload_id)
            self._handle_upload_error(record, e)
            return False

        if self.active.get(upload_id) is not record or not record.paused:
            return False

        if missing_chunks:
            record.current_chunk = missing_chunks[0]
            record.uploaded_bytes = min(record.current_chunk * record.session.chunk_size, record.file.size)
        record.cancel_token = CancelToken()
        record.last_progress_time = time.monotonic()
        self.log.info(
            "upload",
            "upload_resumed",
            f"Resumed {record.file.name} at chunk {record.current_chunk}",
            {"upload_id": upload_id, "current_chunk": record.current_chunk},
        )

        if self.in_flight_count() < self.max_concurrent:
            record.paused = False
            self._start_worker(record)
        else:
            self._resume_waiting.append(upload_id)
            self.trigger_pass()
        return True

    async def cancel(self, upload_id: str) -> bool:
        """Cancel an upload in any non-terminal state. Cancelling twice is a no-op."""
        record = self._detach(upload_id)
        if record is None:
            return False

        record.cancel_token.cancel("Upload cancelled by user")
        record.status = UploadStatus.CANCELLED
        self.events.emit_status(upload_id, UploadStatus.CANCELLED)
        self.log.warning(
            "upload",
            "upload_cancelled",
            f"Cancelled {record.file.name}",
            {"upload_id": upload_id, "current_chunk": record.current_chunk},
        )
        self.trigger_pass()

        try:
            await self.api.cancel_upload(upload_id)
        except UploadError:
            logger.warning("Failed to cancel upload %s on server", upload_id, exc_info=True)
        await self._remove_persisted(upload_id)
        return True

    async def cancel_all(self) -> int:
        """Cancel every active and queued upload, then cancel all sessions remotely.

        Raises:
            UploadError: the bulk cancel call failed
        """
        records = list(self.active.values()) + list(self.queued.values())
        self.active.clear()
        self.queued.clear()
        self.upload_queue.clear()
        self._resume_waiting.clear()
        self._free_slot()

        for record in records:
            record.cancel_token.cancel("Upload cancelled by user")
            record.status = UploadStatus.CANCELLED
            self.events.emit_status(record.upload_id, UploadStatus.CANCELLED)

        for record in records:
            await self._remove_persisted(record.upload_id)

        self.log.warning(
            "upload",
            "upload_cancelled_all",
            f"Cancelled {len(records)} uploads",
            {"upload_ids": [r.upload_id for r in records]},
        )
        await self.api.cancel_all()
        return len(records)

    async def retry_upload(self, upload_id: str) -> str | None:
        """Retry a failed upload.

        A transfer failure resumes the same session from its checkpoint. A
        finalization failure needs a brand-new session, so the file is
        uploaded again from chunk 0 under a new id.

        Returns:
            The id the upload continues under, or None if it is not a failed upload

        Raises:
            AuthenticationRequired, InitializationFailed: the new session could
                not be opened; the failed upload is left as it was
        """
        record = self.failed.get(upload_id)
        if record is None:
            return None

        if record.error_kind == FinalizationFailed.kind:
            # The failed record stays retryable until the new session exists
            new_id = await self.start_upload(record.file, record.relative_path)
            self.failed.pop(upload_id, None)
            await self._remove_persisted(upload_id)
            return new_id

        retry = UploadRecord(session=record.session, file=record.file, relative_path=record.relative_path)
        retry.is_stored = record.is_stored
        retry.restored_chunk = record.current_chunk
        retry.restored_bytes = record.uploaded_bytes
        retry.current_chunk = record.current_chunk
        retry.uploaded_bytes = record.uploaded_bytes
        self._add_queued(retry)

        self.events.emit_status(upload_id, UploadStatus.INITIALIZED)
        self.log.info(
            "upload",
            "upload_retried",
            f"Retrying {record.file.name} from chunk {record.current_chunk}",
            {"upload_id": upload_id, "current_chunk": record.current_chunk},
        )
        self.trigger_pass()
        return upload_id

    async def remove_upload(self, upload_id: str) -> bool:
        """Discard a failed upload and its stored checkpoint."""
        if upload_id not in self.failed:
            return False
        return await self.cancel(upload_id)

    # ── restore ───────────────────────────────────────────────

    async def restore_upload_from_storage(self, upload_id: str) -> bool:
        """Re-queue a persisted upload, paused at its checkpoint.

        Returns:
            True if the upload was queued
        """
        await self.init()
        if self.has_active_upload(upload_id):
            return False

        try:
            persisted = await self.store.get_upload(upload_id)
        except sqlite3.Error:
            logger.error("Failed to read upload %s from the store", upload_id, exc_info=True)
            return False

        if persisted is None or persisted.is_pre_stored:
            return False

        if persisted.current_chunk <= 0:
            # Never checkpointed, so there is nothing to resume from
            await self._remove_persisted(upload_id)
            self.log.warning(
                "upload",
                "upload_restore_dropped",
                f"Dropped {persisted.file_name}: no checkpoint to resume from",
                {"upload_id": upload_id},
            )
            return False

        record = UploadRecord(
            session=persisted.session,
            file=self.store.restore_file(persisted),
            relative_path=persisted.relative_path,
            status=UploadStatus.PAUSED,
            current_chunk=persisted.current_chunk,
            uploaded_bytes=persisted.uploaded_bytes,
            is_stored=True,
            restored_chunk=persisted.current_chunk,
            restored_bytes=persisted.uploaded_bytes,
        )
        self._add_queued(record)

        self.events.emit_status(upload_id, UploadStatus.PAUSED)
        self.events.emit_progress(record.progress(UploadStatus.PAUSED))
        self.log.info(
            "upload",
            "upload_restored",
            f"Restored {persisted.file_name} at chunk {persisted.current_chunk}",
            {
                "upload_id": upload_id,
                "current_chunk": persisted.current_chunk,
                "total_chunks": persisted.session.total_chunks,
            },
        )
        return True

    async def restore_and_start_all_uploads(self) -> list[str]:
        """Restore every persisted upload and start transferring them.

        Returns:
            Ids of the restored uploads
        """
        restored: list[str] = []
        for upload_id in await self.get_all_persisted_uploads():
            if await self.restore_upload_from_storage(upload_id):
                restored.append(upload_id)

        if restored:
            for upload_id in restored:
                record = self.queued.get(upload_id)
                if record is not None:
                    record.status = UploadStatus.UPLOADING
                    self.events.emit_status(upload_id, UploadStatus.UPLOADING)
            self.trigger_pass()
        return restored

    # ── queries ───────────────────────────────────────────────

    async def get_upload_status(self, upload_id: str) -> UploadProgress | None:
        """Ask the remote service for an upload's progress."""
        try:
            data = await self.api.get_status(upload_id)
        except UploadError:
            logger.error("Failed to get upload status for %s", upload_id, exc_info=True)
            return None
        return UploadProgress.from_api(data) if data else None

    async def list_active_uploads(self) -> list[ActiveUpload]:
        """List the remote service's unfinished sessions."""
        try:
            return await self.api.list_active()
        except UploadError:
            logger.error("Failed to list active uploads", exc_info=True)
            return []

    def get_upload(self, upload_id: str) -> UploadRecord | None:
        """Find an upload in the active, queued or failed collections."""
        return (
            self.active.get(upload_id)
            or self.queued.get(upload_id)
            or self.failed.get(upload_id)
        )

    def snapshot(self) -> list[dict[str, Any]]:
        """Local view of every known upload, for the UI."""
        entries: list[dict[str, Any]] = []
        for state, records in (("active", self.active), ("queued", self.queued), ("failed", self.failed)):
            for record in records.values():
                entries.append({**record.to_dict(), "state": state})
        return entries

    @property
    def active_count(self) -> int:
        return len(self.active)

    @property
    def queue_length(self) -> int:
        return len(self.queued)

    def has_active_upload(self, upload_id: str) -> bool:
        return upload_id in self.active or upload_id in self.queued

    async def get_all_persisted_uploads(self) -> list[str]:
        await self.init()
        try:
            uploads = await self.store.get_all_uploads()
        except sqlite3.Error:
            logger.error("Failed to list persisted uploads", exc_info=True)
            return []
        return [upload.upload_id for upload in uploads]

    async def get_persisted_upload(self, upload_id: str) -> PersistedUpload | None:
        await self.init()
        try:
            return await self.store.get_upload(upload_id)
        except sqlite3.Error:
            logger.error("Failed to get persisted upload %s", upload_id, exc_info=True)
            return None
