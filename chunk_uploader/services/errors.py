"""Error taxonomy for chunked uploads.

Every failure the engine reports is one of these. The engine turns them into
status events instead of raising them across the scheduler, so callers mostly
meet them from `start_upload()` (initialisation) and the control operations.
"""

from typing import Any


class UploadError(Exception):
    """Base class for upload failures."""

    kind = "upload_error"

    def __init__(self, detail: str = "", upload_id: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.upload_id = upload_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"kind": self.kind, "detail": self.detail, "upload_id": self.upload_id}


class AuthenticationRequired(UploadError):
    """The remote service rejected the request as unauthorized."""

    kind = "authentication_required"

    def __init__(
        self,
        detail: str = "Authentication required. Please log in to upload files.",
        upload_id: str | None = None,
    ) -> None:
        super().__init__(detail, upload_id)


class InitializationFailed(UploadError):
    """The remote service refused to open an upload session."""

    kind = "initialization_failed"


class TransferFailed(UploadError):
    """A chunk could not be transferred. Retrying resumes from the checkpoint."""

    kind = "transfer_failed"


class FinalizationFailed(UploadError):
    """The server received every chunk but could not assemble the file."""

    kind = "finalization_failed"


class UploadCancelled(UploadError):
    """The transfer was stopped on purpose (pause or cancel). Not reported."""

    kind = "cancelled"


class RemoteRequestFailed(UploadError):
    """A control call (pause, cancel, list, ...) to the remote service failed."""

    kind = "remote_request_failed"
