"""Data model shared by the upload engine, the worker and the store."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chunk_uploader.services.cancellation import CancelToken
from chunk_uploader.services.file_handle import FileHandle
from chunk_uploader.services.utils import clamp_percent, format_file_size, format_time


class UploadStatus(Enum):
    """Lifecycle state of one upload."""

    INITIALIZED = "initialized"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class UploadSession:
    """Server-issued transfer contract for one file."""

    upload_id: str
    chunk_size: int
    total_chunks: int
    target_path: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "UploadSession":
        """Build from the wire shape ({uploadId, chunkSize, totalChunks, targetPath})."""
        return cls(
            upload_id=str(data["uploadId"]),
            chunk_size=int(data["chunkSize"]),
            total_chunks=int(data["totalChunks"]),
            target_path=str(data.get("targetPath") or ""),
        )

    def to_api(self) -> dict[str, Any]:
        return {
            "uploadId": self.upload_id,
            "chunkSize": self.chunk_size,
            "totalChunks": self.total_chunks,
            "targetPath": self.target_path,
        }


@dataclass
class UploadRecord:
    """In-memory state of one upload while it is queued, active or failed."""

    session: UploadSession
    file: FileHandle
    relative_path: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    status: UploadStatus = UploadStatus.INITIALIZED
    current_chunk: int = 0
    uploaded_bytes: int = 0
    paused: bool = False
    start_time: float = 0.0
    last_progress_time: float = 0.0
    last_progress_bytes: int = 0
    last_persisted_chunk: int = -1
    is_stored: bool = False
    # Checkpoint carried over from the Durable Store until the record goes active
    restored_chunk: int | None = None
    restored_bytes: int | None = None
    error_kind: str | None = None
    error_message: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def upload_id(self) -> str:
        return self.session.upload_id

    @property
    def in_flight(self) -> bool:
        """True while the record holds a concurrency slot."""
        return self.current_chunk < self.session.total_chunks and not self.paused

    def progress(
        self,
        status: UploadStatus | None = None,
        uploaded_size: int | None = None,
        speed: float | None = None,
        eta_seconds: float = 0.0,
    ) -> "UploadProgress":
        """Build a progress payload from the record's counters."""
        total_size = self.file.size
        uploaded = self.uploaded_bytes if uploaded_size is None else uploaded_size
        uploaded = max(0, min(uploaded, total_size))
        if total_size > 0:
            percent = uploaded / total_size * 100
        elif self.session.total_chunks > 0:
            percent = self.current_chunk / self.session.total_chunks * 100
        else:
            percent = 100.0
        return UploadProgress(
            upload_id=self.upload_id,
            file_name=self.file.name,
            progress=clamp_percent(percent),
            uploaded_chunks=self.current_chunk,
            total_chunks=self.session.total_chunks,
            uploaded_size=uploaded,
            total_size=total_size,
            remaining_size=total_size - uploaded,
            estimated_time_remaining=eta_seconds,
            status=status or self.status,
            speed=speed,
            eta=format_time(eta_seconds),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "upload_id": self.upload_id,
            "file_name": self.file.name,
            "file_size": self.file.size,
            "file_size_formatted": format_file_size(self.file.size),
            "relative_path": self.relative_path,
            "target_path": self.session.target_path,
            "status": self.status.value,
            "current_chunk": self.current_chunk,
            "total_chunks": self.session.total_chunks,
            "uploaded_bytes": self.uploaded_bytes,
            "paused": self.paused,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
        }


@dataclass
class UploadProgress:
    """Payload of an upload-progress event."""

    upload_id: str
    file_name: str
    progress: float
    uploaded_chunks: int
    total_chunks: int
    uploaded_size: int
    total_size: int
    remaining_size: int
    estimated_time_remaining: float
    status: UploadStatus
    speed: float | None = None
    eta: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "UploadProgress":
        """Build from the status endpoint's camelCase payload."""
        remaining = float(data.get("estimatedTimeRemaining") or 0)
        try:
            status = UploadStatus(data.get("status", "uploading"))
        except ValueError:
            status = UploadStatus.UPLOADING
        return cls(
            upload_id=str(data.get("uploadId", "")),
            file_name=str(data.get("fileName", "")),
            progress=clamp_percent(float(data.get("progress") or 0)),
            uploaded_chunks=int(data.get("uploadedChunks") or 0),
            total_chunks=int(data.get("totalChunks") or 0),
            uploaded_size=int(data.get("uploadedSize") or 0),
            total_size=int(data.get("totalSize") or 0),
            remaining_size=int(data.get("remainingSize") or 0),
            estimated_time_remaining=remaining,
            status=status,
            eta=format_time(remaining),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "upload_id": self.upload_id,
            "file_name": self.file_name,
            "progress": round(self.progress, 2),
            "uploaded_chunks": self.uploaded_chunks,
            "total_chunks": self.total_chunks,
            "uploaded_size": self.uploaded_size,
            "total_size": self.total_size,
            "remaining_size": self.remaining_size,
            "estimated_time_remaining": self.estimated_time_remaining,
            "status": self.status.value,
            "speed": self.speed,
            "eta": self.eta,
        }


@dataclass
class PersistedUpload:
    """Durable counterpart of an UploadRecord, one row per upload id."""

    upload_id: str
    file_name: str
    file_size: int
    file_type: str
    relative_path: str
    file_bytes: bytes
    session: UploadSession
    current_chunk: int = 0
    uploaded_bytes: int = 0
    created_at: float = field(default_factory=time.time)
    is_pre_stored: bool = False
    file_hash: str = ""

    @property
    def is_complete(self) -> bool:
        return self.current_chunk >= self.session.total_chunks


@dataclass
class ActiveUpload:
    """An entry of the remote service's active-upload list."""

    upload_id: str
    file_name: str
    progress: float
    status: str
    file_size: int
    created_at: str
    last_activity: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ActiveUpload":
        return cls(
            upload_id=str(data.get("uploadId", "")),
            file_name=str(data.get("fileName", "")),
            progress=float(data.get("progress") or 0),
            status=str(data.get("status", "")),
            file_size=int(data.get("fileSize") or 0),
            created_at=str(data.get("createdAt") or ""),
            last_activity=str(data.get("lastActivity") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "file_name": self.file_name,
            "progress": self.progress,
            "status": self.status,
            "file_size": self.file_size,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
        }
