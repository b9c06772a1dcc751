"""Tests for the SQLite Durable Store."""

import asyncio
import time
from pathlib import Path

import pytest

from chunk_uploader.services.file_handle import BytesFileHandle
from chunk_uploader.services.models import UploadSession
from chunk_uploader.services.upload_store import UploadStore


def session_for(upload_id: str, total_chunks: int = 4) -> UploadSession:
    return UploadSession(upload_id, chunk_size=4, total_chunks=total_chunks, target_path=f"/uploads/{upload_id}")


@pytest.fixture
def sample_file() -> BytesFileHandle:
    return BytesFileHandle("report.csv", b"a,b,c\n1,2,3\n")


class TestUploadStoreBasics:
    """Tests for storing and reading records."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("u1", sample_file, "data", session_for("u1"), 1, 4)

        stored = await upload_store.get_upload("u1")
        assert stored is not None
        assert stored.file_name == "report.csv"
        assert stored.file_size == len(sample_file.data)
        assert stored.file_type == "text/csv"
        assert stored.relative_path == "data"
        assert stored.file_bytes == sample_file.data
        assert stored.session == session_for("u1")
        assert stored.current_chunk == 1
        assert stored.uploaded_bytes == 4
        assert stored.is_pre_stored is False

    @pytest.mark.asyncio
    async def test_get_missing(self, upload_store: UploadStore) -> None:
        assert await upload_store.get_upload("nope") is None

    @pytest.mark.asyncio
    async def test_requires_init(self, tmp_path: Path) -> None:
        store = UploadStore(tmp_path / "uninitialized.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await store.get_upload("u1")

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, store_path: Path, sample_file: BytesFileHandle) -> None:
        first = UploadStore(store_path)
        await first.init()
        await first.store_upload("u1", sample_file, "", session_for("u1"), 2, 8)
        first.close()

        second = UploadStore(store_path)
        await second.init()
        stored = await second.get_upload("u1")
        second.close()

        assert stored is not None
        assert stored.current_chunk == 2

    @pytest.mark.asyncio
    async def test_restore_file(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"))
        stored = await upload_store.get_upload("u1")

        handle = UploadStore.restore_file(stored)
        assert handle.name == "report.csv"
        assert handle.size == sample_file.size
        assert handle.read_range(0, 5) == b"a,b,c"


class TestUploadStoreProgress:
    """Tests for checkpoint updates and removal."""

    @pytest.mark.asyncio
    async def test_update_progress(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"), 1, 4)

        assert await upload_store.update_upload_progress("u1", 3, 12) is True
        stored = await upload_store.get_upload("u1")
        assert (stored.current_chunk, stored.uploaded_bytes) == (3, 12)

    @pytest.mark.asyncio
    async def test_update_never_moves_backwards(
        self, upload_store: UploadStore, sample_file: BytesFileHandle
    ) -> None:
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"), 3, 12)

        assert await upload_store.update_upload_progress("u1", 2, 8) is False
        stored = await upload_store.get_upload("u1")
        assert stored.current_chunk == 3

    @pytest.mark.asyncio
    async def test_update_missing_record(self, upload_store: UploadStore) -> None:
        assert await upload_store.update_upload_progress("ghost", 1, 4) is False

    @pytest.mark.asyncio
    async def test_remove(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"))

        assert await upload_store.remove_upload("u1") is True
        assert await upload_store.remove_upload("u1") is False
        assert await upload_store.get_upload("u1") is None

    @pytest.mark.asyncio
    async def test_write_locks_released(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        """Test that per-id write locks are dropped once no write holds them."""
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"))
        await asyncio.gather(*(upload_store.update_upload_progress("u1", i, i * 4) for i in range(1, 4)))
        assert upload_store._write_locks == {}

        await upload_store.remove_upload("u1")
        assert upload_store._write_locks == {}
        assert upload_store._lock_users == {}
        assert await upload_store.get_upload("u1") is None

    @pytest.mark.asyncio
    async def test_storage_usage(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("u1", sample_file, "", session_for("u1"))
        await upload_store.store_upload("u2", sample_file, "", session_for("u2"))

        usage = await upload_store.get_storage_usage()
        assert usage["records"] == 2
        assert usage["used"] == 2 * sample_file.size
        assert usage["database_size"] > 0


class TestUploadStoreCleanup:
    """Tests for the startup sweeps and pre-stored lookups."""

    @pytest.mark.asyncio
    async def test_clear_old_uploads(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("fresh", sample_file, "", session_for("fresh"), 1)
        await upload_store.store_upload("stale", sample_file, "", session_for("stale"), 1)
        stale = await upload_store.get_upload("stale")
        stale.created_at = time.time() - 8 * 24 * 60 * 60
        await upload_store.update_upload_session(stale)

        assert await upload_store.clear_old_uploads() == 1
        assert [u.upload_id for u in await upload_store.get_all_uploads()] == ["fresh"]

    @pytest.mark.asyncio
    async def test_cleanup_completed(self, upload_store: UploadStore, sample_file: BytesFileHandle) -> None:
        await upload_store.store_upload("done", sample_file, "", session_for("done", 2), 2)
        await upload_store.store_upload("partial", sample_file, "", session_for("partial", 2), 1)

        assert await upload_store.cleanup_completed_uploads() == 1
        assert await upload_store.get_upload("done") is None
        assert await upload_store.get_upload("partial") is not None

    @pytest.mark.asyncio
    async def test_pre_stored_lookup_and_clear(
        self, upload_store: UploadStore, sample_file: BytesFileHandle
    ) -> None:
        digest = sample_file.sha256()
        await upload_store.store_upload(
            "pre-1", sample_file, "", session_for("pre-1"), is_pre_stored=True, file_hash=digest
        )
        await upload_store.store_upload("real", sample_file, "", session_for("real"), 1, file_hash=digest)

        found = await upload_store.find_pre_stored_by_hash(digest)
        assert found is not None
        assert found.upload_id == "pre-1"
        assert await upload_store.find_pre_stored_by_hash("0" * 64) is None

        assert await upload_store.clear_pre_stored_uploads() == 1
        assert await upload_store.find_pre_stored_by_hash(digest) is None
        assert await upload_store.get_upload("real") is not None
