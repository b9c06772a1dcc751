"""Tests for Flask route endpoints."""

import json
import threading
from collections.abc import Generator, Iterator
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeUploadServer
from flask import Flask
from flask.testing import FlaskClient

from chunk_uploader import create_app
from chunk_uploader.config import get_settings
from chunk_uploader.routes.upload import send_sse_event
from chunk_uploader.services.engine_runner import EngineRunner
from chunk_uploader.services.events import UPLOAD_STATUS_CHANGE


@pytest.fixture
def runner(fake_server: FakeUploadServer) -> Generator[EngineRunner, None, None]:
    """An engine on its own loop thread, talking to the fake server."""
    engine = EngineRunner(get_settings(), transport=fake_server.transport)
    yield engine
    engine.stop()


@pytest.fixture
def app(runner: EngineRunner) -> Flask:
    flask_app = create_app(runner)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    return app.test_client()


class CompletionWaiter:
    """Blocks the test thread until the engine reports a status for an upload."""

    def __init__(self, runner: EngineRunner, status: str = "completed") -> None:
        self.status = status
        self.seen: set[str] = set()
        self._cond = threading.Condition()
        runner.events.on(UPLOAD_STATUS_CHANGE, self._on_status)

    def _on_status(self, event_type: str, payload: dict[str, Any]) -> None:
        if payload["status"] == self.status:
            with self._cond:
                self.seen.add(payload["upload_id"])
                self._cond.notify_all()

    def wait_for(self, upload_ids: list[str], timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: set(upload_ids) <= self.seen, timeout=timeout)


def _text(chunk: bytes | str) -> str:
    return chunk.decode() if isinstance(chunk, bytes) else chunk


class TestUploadAPI:
    """Tests for starting and controlling uploads."""

    def test_start_requires_file_paths(self, client: FlaskClient) -> None:
        """Test error when no files are provided."""
        response = client.post("/api/upload/start", json={})
        assert response.status_code == 400
        assert json.loads(response.data)["error"] == "file_paths is required"

    def test_start_upload_not_found(self, client: FlaskClient) -> None:
        """Test that missing files are reported per path."""
        response = client.post("/api/upload/start", json={"file_paths": ["/nonexistent/file.bin"]})
        assert response.status_code == 400

        data = json.loads(response.data)
        assert data["success"] is False
        assert data["errors"] == [{"path": "/nonexistent/file.bin", "error": "File not found"}]

    def test_start_uploads_files(
        self, client: FlaskClient, runner: EngineRunner, fake_server: FakeUploadServer, tmp_path: Path
    ) -> None:
        """Test that started files are uploaded to completion."""
        first = tmp_path / "a.txt"
        second = tmp_path / "b.txt"
        first.write_text("hello world")
        second.write_text("second file")
        waiter = CompletionWaiter(runner)

        response = client.post(
            "/api/upload/start",
            json={"file_paths": [str(first), str(second)], "relative_path": "docs", "base_path": "team"},
        )
        assert response.status_code == 200

        data = json.loads(response.data)
        upload_ids = [u["upload_id"] for u in data["uploads"]]
        assert data["success"] is True
        assert len(upload_ids) == 2
        assert waiter.wait_for(upload_ids)
        assert {s["relative_path"] for s in fake_server.sessions.values()} == {"team/docs"}

    def test_start_unauthorized(self, client: FlaskClient, fake_server: FakeUploadServer, tmp_path: Path) -> None:
        """Test that a rejected login surfaces as 401."""
        path = tmp_path / "a.txt"
        path.write_text("hello")
        fake_server.init_status = 401

        response = client.post("/api/upload/start", json={"file_paths": [str(path)]})
        assert response.status_code == 401
        assert json.loads(response.data)["kind"] == "authentication_required"

    def test_start_initialization_rejected(
        self, client: FlaskClient, fake_server: FakeUploadServer, tmp_path: Path
    ) -> None:
        path = tmp_path / "a.txt"
        path.write_text("hello")
        fake_server.init_status = 507

        response = client.post("/api/upload/start", json={"file_paths": [str(path)]})
        assert response.status_code == 400
        assert json.loads(response.data)["errors"][0]["kind"] == "initialization_failed"

    def test_pause_unknown_upload(self, client: FlaskClient) -> None:
        response = client.post("/api/upload/pause/nonexistent-id")
        assert response.status_code == 404

    def test_resume_unknown_upload(self, client: FlaskClient) -> None:
        response = client.post("/api/upload/resume/nonexistent-id")
        assert response.status_code == 404

    def test_retry_unknown_upload(self, client: FlaskClient) -> None:
        response = client.post("/api/upload/retry/nonexistent-id")
        assert response.status_code == 404

    def test_cancel_upload_not_found(self, client: FlaskClient) -> None:
        """Test cancelling non-existent upload."""
        response = client.delete("/api/upload/cancel/nonexistent-id")
        assert response.status_code == 404

    def test_remove_failed_not_found(self, client: FlaskClient) -> None:
        response = client.delete("/api/upload/failed/nonexistent-id")
        assert response.status_code == 404

    def test_cancel_all(self, client: FlaskClient, fake_server: FakeUploadServer) -> None:
        response = client.delete("/api/upload/active")
        assert response.status_code == 200
        assert json.loads(response.data)["cancelled"] == 0
        assert fake_server.count("DELETE", "/active") == 1

    def test_get_status_not_found(self, client: FlaskClient) -> None:
        """Test getting status of non-existent upload."""
        response = client.get("/api/upload/status/nonexistent-id")
        assert response.status_code == 404

    def test_get_status_of_finished_upload(
        self, client: FlaskClient, runner: EngineRunner, tmp_path: Path
    ) -> None:
        path = tmp_path / "a.txt"
        path.write_text("hello world")
        waiter = CompletionWaiter(runner)
        upload_id = json.loads(client.post("/api/upload/start", json={"file_paths": [str(path)]}).data)[
            "uploads"
        ][0]["upload_id"]
        assert waiter.wait_for([upload_id])

        response = client.get(f"/api/upload/status/{upload_id}")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["status"] == "completed"
        assert data["progress"] == 100

    def test_list_local_uploads(self, client: FlaskClient) -> None:
        response = client.get("/api/upload/uploads")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data == {"uploads": [], "active_count": 0, "queue_length": 0}

    def test_list_remote_active(self, client: FlaskClient) -> None:
        response = client.get("/api/upload/active")
        assert response.status_code == 200
        assert json.loads(response.data) == {"uploads": []}

    def test_restore_with_empty_store(self, client: FlaskClient) -> None:
        response = client.post("/api/upload/restore")
        assert response.status_code == 200
        assert json.loads(response.data)["restored"] == []


class TestScanFolder:
    """Tests for folder scanning."""

    def test_scan_requires_folder(self, client: FlaskClient) -> None:
        response = client.post("/api/upload/scan-folder", json={})
        assert response.status_code == 400

    def test_scan_missing_folder(self, client: FlaskClient, tmp_path: Path) -> None:
        response = client.post("/api/upload/scan-folder", json={"folder_path": str(tmp_path / "missing")})
        assert response.status_code == 404

    def test_scan_lists_files_with_relative_paths(self, client: FlaskClient, tmp_path: Path) -> None:
        root = tmp_path / "data"
        (root / "nested").mkdir(parents=True)
        (root / "top.txt").write_text("top")
        (root / "nested" / "inner.txt").write_text("inner!")

        response = client.post("/api/upload/scan-folder", json={"folder_path": str(root)})
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data["total_count"] == 2
        assert data["total_size"] == 9
        relative = {f["filename"]: f["relative_path"] for f in data["files"]}
        assert relative == {"top.txt": "", "inner.txt": "nested"}

    def test_scan_pre_stores_files(self, client: FlaskClient, runner: EngineRunner, tmp_path: Path) -> None:
        root = tmp_path / "data"
        root.mkdir()
        path = root / "report.csv"
        path.write_text("a,b\n1,2\n")

        response = client.post("/api/upload/scan-folder", json={"folder_path": str(root), "pre_store": True})
        assert response.status_code == 200

        pre_store_id = json.loads(response.data)["files"][0]["pre_store_id"]
        stored = runner.call(runner.manager.get_persisted_upload, pre_store_id)
        assert stored is not None
        assert stored.is_pre_stored is True

        # Starting the same content reuses the stored bytes under the new id
        waiter = CompletionWaiter(runner)
        response = client.post(
            "/api/upload/start", json={"file_paths": [str(path)], "use_pre_stored": True}
        )
        upload_id = json.loads(response.data)["uploads"][0]["upload_id"]
        assert waiter.wait_for([upload_id])
        assert runner.call(runner.manager.get_persisted_upload, pre_store_id) is None


class TestLogsAPI:
    """Tests for logs API endpoints."""

    def test_get_entries(self, client: FlaskClient) -> None:
        """Test that startup is logged and readable."""
        response = client.get("/api/logs/entries")
        assert response.status_code == 200

        data = json.loads(response.data)
        assert "entries" in data
        assert "total" in data
        assert any(e["event"] == "app_started" for e in data["entries"])

    def test_get_entries_with_filters(self, client: FlaskClient) -> None:
        """Test querying entries with filters."""
        response = client.get("/api/logs/entries?level=ERROR&category=upload&offset=0&limit=10")
        assert response.status_code == 200
        assert json.loads(response.data)["total"] == 0

    def test_get_entries_bad_pagination(self, client: FlaskClient) -> None:
        response = client.get("/api/logs/entries?offset=abc")
        assert response.status_code == 200
        assert json.loads(response.data)["offset"] == 0


class TestProgressSSE:
    """Tests for the Server-Sent Events stream."""

    def test_stream_ends_on_terminal_status(self, client: FlaskClient) -> None:
        response = client.get("/api/upload/progress?upload_id=u1", buffered=False)
        assert response.mimetype == "text/event-stream"
        chunks: Iterator[bytes | str] = iter(response.response)

        assert _text(next(chunks)) == ": connected\n\n"

        send_sse_event(UPLOAD_STATUS_CHANGE, {"upload_id": "other", "status": "completed"})
        send_sse_event(UPLOAD_STATUS_CHANGE, {"upload_id": "u1", "status": "uploading"})
        send_sse_event(UPLOAD_STATUS_CHANGE, {"upload_id": "u1", "status": "completed"})

        body = "".join(_text(chunk) for chunk in chunks)
        response.close()

        assert body.count("event: upload-status-change") == 2
        assert '"upload_id": "other"' not in body
        assert '"status": "completed"' in body
