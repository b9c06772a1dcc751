"""Upload API routes for chunk_uploader"""

import json
import threading
import time
import uuid
import weakref
from collections import deque
from collections.abc import Generator
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from chunk_uploader.services.engine_runner import EngineRunner
from chunk_uploader.services.errors import (
    AuthenticationRequired,
    InitializationFailed,
    UploadError,
)
from chunk_uploader.services.events import UPLOAD_STATUS_CHANGE, EventEmitter
from chunk_uploader.services.file_handle import LocalFileHandle
from chunk_uploader.services.upload_manager import UploadManager

upload_bp = Blueprint("upload", __name__)

TERMINAL_STATUSES = ("completed", "error", "cancelled")

# Connected SSE clients, each with its own queue and optional upload filter
_sse_queues: list[tuple[str | None, deque[dict[str, Any]]]] = []
_sse_lock = threading.Lock()
_registered_emitters: "weakref.WeakSet[EventEmitter]" = weakref.WeakSet()


def send_sse_event(event_type: str, payload: dict[str, Any]) -> None:
    """Fan an engine event out to every listening SSE client."""
    data = {"type": event_type, **payload}
    upload_id = payload.get("upload_id")
    with _sse_lock:
        for wanted, q in _sse_queues:
            if wanted is None or wanted == upload_id:
                q.append(data)


def register_event_stream(events: EventEmitter) -> None:
    """Forward every engine event to the SSE clients. Idempotent per emitter."""
    with _sse_lock:
        if events in _registered_emitters:
            return
        _registered_emitters.add(events)
    events.on(None, send_sse_event)


def _engine() -> EngineRunner:
    runner: EngineRunner = current_app.config["ENGINE"]
    return runner


def _manager() -> UploadManager:
    return _engine().manager


def _error_response(error: UploadError) -> tuple[Response, int]:
    """Map an upload failure to a JSON error response."""
    if isinstance(error, AuthenticationRequired):
        status = 401
    elif isinstance(error, InitializationFailed):
        status = 400
    else:
        status = 502
    return jsonify({"error": error.detail, "kind": error.kind}), status


def _json_body() -> dict[str, Any] | None:
    if not request.is_json:
        return None
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _file_entries(data: dict[str, Any]) -> list[tuple[str, str]]:
    """Normalize `file_paths` into (path, relative_path) pairs.

    Entries are either plain paths or objects with `path` and `relative_path`
    (the shape /scan-folder returns).
    """
    default_relative = str(data.get("relative_path") or "")
    entries: list[tuple[str, str]] = []
    for entry in data.get("file_paths") or []:
        if isinstance(entry, dict):
            entries.append((str(entry.get("path", "")), str(entry.get("relative_path") or default_relative)))
        else:
            entries.append((str(entry), default_relative))
    return entries


def _relative_dir(file_path: Path, root: Path) -> str:
    """Folder of `file_path` relative to the scanned root, empty at the root."""
    relative = file_path.parent.relative_to(root).as_posix()
    return "" if relative == "." else relative


@upload_bp.route("/start", methods=["POST"])
def start_uploads() -> tuple[Response, int]:
    """Open a session for each file and queue it.

    Request body:
        file_paths: List of paths, or objects with path and relative_path
        relative_path: Relative path used when an entry has none
        base_path: Folder prefix on the server
        use_pre_stored: Reuse bytes stored by /scan-folder (default: false)

    Returns:
        JSON with the started upload ids and per-file errors
    """
    data = _json_body()
    if data is None or not data.get("file_paths"):
        return jsonify({"error": "file_paths is required"}), 400

    runner = _engine()
    manager = runner.manager
    base_path = data.get("base_path")
    start = manager.start_upload_with_pre_storage if data.get("use_pre_stored") else manager.start_upload

    started: list[dict[str, str]] = []
    errors: list[dict[str, str]] = []
    for path, relative_path in _file_entries(data):
        if not Path(path).is_file():
            errors.append({"path": path, "error": "File not found"})
            continue
        try:
            upload_id = runner.call(start, LocalFileHandle(path), relative_path, base_path)
        except AuthenticationRequired as e:
            return _error_response(e)
        except UploadError as e:
            errors.append({"path": path, "error": e.detail, "kind": e.kind})
            continue
        started.append({"path": path, "upload_id": upload_id})

    status = 200 if started or not errors else 400
    return jsonify({"success": bool(started), "uploads": started, "errors": errors}), status


@upload_bp.route("/scan-folder", methods=["POST"])
def scan_folder() -> tuple[Response, int]:
    """Scan a folder for files to upload, optionally storing them eagerly.

    Request body:
        folder_path: Path to the folder to scan
        pre_store: Store each file in the Durable Store now (default: false)

    Returns:
        JSON response with list of files found
    """
    data = _json_body()
    if not data or "folder_path" not in data:
        return jsonify({"error": "folder_path is required"}), 400

    folder_path = Path(data["folder_path"])

    if not folder_path.exists():
        return jsonify({"error": f"Folder not found: {folder_path}"}), 404

    if not folder_path.is_dir():
        return jsonify({"error": f"Path is not a directory: {folder_path}"}), 400

    files: list[dict[str, Any]] = []
    total_size = 0
    try:
        for file_path in sorted(folder_path.rglob("*")):
            if file_path.is_file():
                stat = file_path.stat()
                total_size += stat.st_size
                files.append(
                    {
                        "path": str(file_path.absolute()),
                        "filename": file_path.name,
                        "size": stat.st_size,
                        "mtime": stat.st_mtime,
                        "relative_path": _relative_dir(file_path, folder_path),
                    }
                )
    except PermissionError as e:
        return jsonify({"error": f"Permission denied: {e}"}), 403

    if data.get("pre_store"):
        runner = _engine()
        for entry in files:
            temp_id = f"pre-{uuid.uuid4().hex}"
            runner.call(
                runner.manager.pre_store_file,
                temp_id,
                LocalFileHandle(entry["path"]),
                entry["relative_path"],
            )
            entry["pre_store_id"] = temp_id

    return jsonify(
        {
            "success": True,
            "folder_path": str(folder_path.absolute()),
            "files": files,
            "total_count": len(files),
            "total_size": total_size,
        }
    ), 200


@upload_bp.route("/pause/<upload_id>", methods=["POST"])
def pause_upload(upload_id: str) -> tuple[Response, int]:
    """Pause an active upload."""
    if not _engine().call(_manager().pause, upload_id):
        return jsonify({"error": "Upload not found or not running"}), 404
    return jsonify({"success": True, "upload_id": upload_id}), 200


@upload_bp.route("/resume/<upload_id>", methods=["POST"])
def resume_upload(upload_id: str) -> tuple[Response, int]:
    """Resume a paused upload."""
    if not _engine().call(_manager().resume, upload_id):
        return jsonify({"error": "Upload not found or not paused"}), 404
    return jsonify({"success": True, "upload_id": upload_id}), 200


@upload_bp.route("/retry/<upload_id>", methods=["POST"])
def retry_upload(upload_id: str) -> tuple[Response, int]:
    """Retry a failed upload. Returns the id the upload continues under."""
    try:
        new_id = _engine().call(_manager().retry_upload, upload_id)
    except UploadError as e:
        return _error_response(e)
    if new_id is None:
        return jsonify({"error": "Failed upload not found"}), 404
    return jsonify({"success": True, "upload_id": new_id}), 200


@upload_bp.route("/cancel/<upload_id>", methods=["DELETE"])
def cancel_upload(upload_id: str) -> tuple[Response, int]:
    """Cancel an upload."""
    if not _engine().call(_manager().cancel, upload_id):
        return jsonify({"error": "Upload not found"}), 404
    return jsonify({"success": True, "upload_id": upload_id}), 200


@upload_bp.route("/failed/<upload_id>", methods=["DELETE"])
def remove_failed_upload(upload_id: str) -> tuple[Response, int]:
    """Discard a failed upload and its stored checkpoint."""
    if not _engine().call(_manager().remove_upload, upload_id):
        return jsonify({"error": "Failed upload not found"}), 404
    return jsonify({"success": True, "upload_id": upload_id}), 200


@upload_bp.route("/active", methods=["DELETE"])
def cancel_all_uploads() -> tuple[Response, int]:
    """Cancel every active and queued upload."""
    try:
        cancelled = _engine().call(_manager().cancel_all)
    except UploadError as e:
        return _error_response(e)
    return jsonify({"success": True, "cancelled": cancelled}), 200


@upload_bp.route("/status/<upload_id>", methods=["GET"])
def get_status(upload_id: str) -> tuple[Response, int]:
    """Get the remote service's progress for an upload."""
    progress = _engine().call(_manager().get_upload_status, upload_id)
    if progress is None:
        return jsonify({"error": "Upload not found"}), 404
    return jsonify(progress.to_dict()), 200


@upload_bp.route("/active", methods=["GET"])
def list_active_uploads() -> tuple[Response, int]:
    """List the remote service's unfinished sessions."""
    uploads = _engine().call(_manager().list_active_uploads)
    return jsonify({"uploads": [u.to_dict() for u in uploads]}), 200


async def _local_state(manager: UploadManager) -> dict[str, Any]:
    return {
        "uploads": manager.snapshot(),
        "active_count": manager.active_count,
        "queue_length": manager.queue_length,
    }


@upload_bp.route("/uploads", methods=["GET"])
def list_local_uploads() -> tuple[Response, int]:
    """Local view of active, queued and failed uploads (for state restoration on page refresh)."""
    runner = _engine()
    return jsonify(runner.call(_local_state, runner.manager)), 200


@upload_bp.route("/restore", methods=["POST"])
def restore_uploads() -> tuple[Response, int]:
    """Restore persisted uploads and start them."""
    restored = _engine().call(_manager().restore_and_start_all_uploads)
    return jsonify({"success": True, "restored": restored}), 200


@upload_bp.route("/progress", methods=["GET"])
def stream_progress() -> Response:
    """Stream engine events via Server-Sent Events.

    Query params:
        upload_id: Only stream events for this upload; the stream ends when
            it reaches a terminal status

    Returns:
        SSE stream of upload-progress, upload-status-change and error events
    """
    upload_id = request.args.get("upload_id") or None

    def generate() -> Generator[str, None, None]:
        # Create a queue for this client
        queue: deque[dict[str, Any]] = deque()
        client = (upload_id, queue)
        with _sse_lock:
            _sse_queues.append(client)

        try:
            yield ": connected\n\n"

            while True:
                while queue:
                    data = queue.popleft()
                    yield f"event: {data['type']}\ndata: {json.dumps(data)}\n\n"

                    if (
                        upload_id is not None
                        and data["type"] == UPLOAD_STATUS_CHANGE
                        and data.get("status") in TERMINAL_STATUSES
                    ):
                        return

                # Small delay to prevent busy waiting
                time.sleep(0.1)

        finally:
            with _sse_lock:
                _sse_queues[:] = [c for c in _sse_queues if c is not client]

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
