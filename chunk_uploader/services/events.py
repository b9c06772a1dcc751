"""Observer registry for upload progress and status notifications."""

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chunk_uploader.services.models import UploadProgress, UploadStatus

logger = logging.getLogger(__name__)

UPLOAD_PROGRESS = "upload-progress"
UPLOAD_STATUS_CHANGE = "upload-status-change"
UPLOAD_AUTH_ERROR = "upload-auth-error"
UPLOAD_ERROR = "upload-error"

EVENT_TYPES = (UPLOAD_PROGRESS, UPLOAD_STATUS_CHANGE, UPLOAD_AUTH_ERROR, UPLOAD_ERROR)

# Subscribers receive (event_type, payload)
Listener = Callable[[str, dict[str, Any]], None]


class EventEmitter:
    """Synchronous publish/subscribe hub owned by the upload engine.

    Subscribers only observe; a failing subscriber is logged and skipped so it
    cannot break the transfer that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: dict[str | None, list[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event_type: str | None, listener: Listener) -> Callable[[], None]:
        """Subscribe to one event type, or to every event with None.

        Returns:
            A callable that removes the subscription
        """
        if event_type is not None and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

        def unsubscribe() -> None:
            self.off(event_type, listener)

        return unsubscribe

    def off(self, event_type: str | None, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
            listeners += self._listeners.get(None, [])

        for listener in listeners:
            try:
                listener(event_type, payload)
            except Exception:
                logger.warning("Listener failed for %s", event_type, exc_info=True)

    def emit_progress(self, progress: "UploadProgress") -> None:
        self.emit(UPLOAD_PROGRESS, {"upload_id": progress.upload_id, "progress": progress.to_dict()})

    def emit_status(self, upload_id: str, status: "UploadStatus") -> None:
        self.emit(UPLOAD_STATUS_CHANGE, {"upload_id": upload_id, "status": status.value})
