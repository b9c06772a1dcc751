"""SQLite Durable Store for resumable uploads.

One row per upload id holding the file bytes and the last checkpoint, so an
upload can be rebuilt after the client restarts. SQLite calls run in worker
threads; writes for the same upload id are serialized with a per-id lock.
"""

import asyncio
import sqlite3
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from chunk_uploader.services.file_handle import BytesFileHandle, FileHandle
from chunk_uploader.services.models import PersistedUpload, UploadSession

T = TypeVar("T")

DEFAULT_RETENTION_SECONDS = 7 * 24 * 60 * 60  # 7 days


class UploadStore:
    """Durable Store with thread-safe SQLite access, keyed by upload id."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        conn: sqlite3.Connection = self._local.connection
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS uploads (
                upload_id TEXT PRIMARY KEY,
                file_name TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                file_type TEXT DEFAULT '',
                relative_path TEXT DEFAULT '',
                file_bytes BLOB NOT NULL,
                chunk_size INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                target_path TEXT DEFAULT '',
                current_chunk INTEGER DEFAULT 0,
                uploaded_bytes INTEGER DEFAULT 0,
                created_at REAL NOT NULL,
                is_pre_stored BOOLEAN DEFAULT 0,
                file_hash TEXT DEFAULT ''
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_uploads_created_at ON uploads(created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_uploads_file_name ON uploads(file_name)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_uploads_file_hash ON uploads(file_hash)
        """)

        conn.commit()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    @asynccontextmanager
    async def _write_lock(self, upload_id: str) -> AsyncIterator[None]:
        """Serialize writes for one upload id.

        The lock is dropped once nobody holds or waits for it, so the map only
        holds ids with writes in progress.
        """
        lock = self._write_locks.get(upload_id)
        if lock is None:
            lock = self._write_locks[upload_id] = asyncio.Lock()
        self._lock_users[upload_id] = self._lock_users.get(upload_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[upload_id] -= 1
            if self._lock_users[upload_id] == 0:
                del self._lock_users[upload_id]
                del self._write_locks[upload_id]

    @staticmethod
    def _row_to_upload(row: sqlite3.Row) -> PersistedUpload:
        return PersistedUpload(
            upload_id=row["upload_id"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            file_type=row["file_type"] or "",
            relative_path=row["relative_path"] or "",
            file_bytes=bytes(row["file_bytes"]),
            session=UploadSession(
                upload_id=row["upload_id"],
                chunk_size=row["chunk_size"],
                total_chunks=row["total_chunks"],
                target_path=row["target_path"] or "",
            ),
            current_chunk=row["current_chunk"],
            uploaded_bytes=row["uploaded_bytes"],
            created_at=row["created_at"],
            is_pre_stored=bool(row["is_pre_stored"]),
            file_hash=row["file_hash"] or "",
        )

    # ── synchronous primitives (run in worker threads) ────────

    def _put(self, upload: PersistedUpload) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT OR REPLACE INTO uploads
                (upload_id, file_name, file_size, file_type, relative_path, file_bytes,
                 chunk_size, total_chunks, target_path, current_chunk, uploaded_bytes,
                 created_at, is_pre_stored, file_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                upload.upload_id,
                upload.file_name,
                upload.file_size,
                upload.file_type,
                upload.relative_path,
                sqlite3.Binary(upload.file_bytes),
                upload.session.chunk_size,
                upload.session.total_chunks,
                upload.session.target_path,
                upload.current_chunk,
                upload.uploaded_bytes,
                upload.created_at,
                upload.is_pre_stored,
                upload.file_hash,
            ),
        )
        conn.commit()

    def _get(self, upload_id: str) -> PersistedUpload | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM uploads WHERE upload_id = ?", (upload_id,)).fetchone()
        return self._row_to_upload(row) if row else None

    def _get_all(self) -> list[PersistedUpload]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM uploads ORDER BY created_at").fetchall()
        return [self._row_to_upload(row) for row in rows]

    def _list_ids(self, where: str, params: tuple[Any, ...] = ()) -> list[str]:
        conn = self._get_connection()
        rows = conn.execute(f"SELECT upload_id FROM uploads WHERE {where}", params).fetchall()
        return [row["upload_id"] for row in rows]

    def _update_progress(self, upload_id: str, current_chunk: int, uploaded_bytes: int) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE uploads SET current_chunk = ?, uploaded_bytes = ?
            WHERE upload_id = ? AND current_chunk <= ?
            """,
            (current_chunk, uploaded_bytes, upload_id, current_chunk),
        )
        conn.commit()
        return cursor.rowcount > 0

    def _delete(self, upload_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM uploads WHERE upload_id = ?", (upload_id,))
        conn.commit()
        return cursor.rowcount > 0

    def _usage(self) -> dict[str, int]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS records, COALESCE(SUM(LENGTH(file_bytes)), 0) AS used FROM uploads"
        ).fetchone()
        file_size = self._db_path.stat().st_size if self._db_path.exists() else 0
        return {"records": row["records"], "used": row["used"], "database_size": file_size}

    # ── async API ─────────────────────────────────────────────

    async def init(self) -> None:
        """Create the schema. Safe to call more than once."""
        if self._initialized:
            return
        await self._run(self._init_db)
        self._initialized = True

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("Upload store not initialized")

    async def store_upload(
        self,
        upload_id: str,
        file: FileHandle,
        relative_path: str,
        session: UploadSession,
        current_chunk: int = 0,
        uploaded_bytes: int = 0,
        is_pre_stored: bool = False,
        file_hash: str = "",
    ) -> None:
        """Persist a file's bytes together with its session and checkpoint."""
        self._require_init()
        # Hold the lock while reading so later checkpoints can't land before the insert
        async with self._write_lock(upload_id):
            file_bytes = await self._run(file.read_all)
            upload = PersistedUpload(
                upload_id=upload_id,
                file_name=file.name,
                file_size=file.size,
                file_type=file.content_type,
                relative_path=relative_path,
                file_bytes=file_bytes,
                session=session,
                current_chunk=current_chunk,
                uploaded_bytes=uploaded_bytes,
                created_at=time.time(),
                is_pre_stored=is_pre_stored,
                file_hash=file_hash,
            )
            await self._run(self._put, upload)

    async def get_upload(self, upload_id: str) -> PersistedUpload | None:
        self._require_init()
        return await self._run(self._get, upload_id)

    async def get_all_uploads(self) -> list[PersistedUpload]:
        self._require_init()
        return await self._run(self._get_all)

    async def update_upload_progress(
        self,
        upload_id: str,
        current_chunk: int,
        uploaded_bytes: int,
    ) -> bool:
        """Move the checkpoint forward. Never moves it backwards.

        Returns:
            True if a stored record was updated
        """
        self._require_init()
        async with self._write_lock(upload_id):
            return await self._run(self._update_progress, upload_id, current_chunk, uploaded_bytes)

    async def update_upload_session(self, upload: PersistedUpload) -> None:
        """Write a whole record, e.g. a pre-stored one re-keyed under its real session."""
        self._require_init()
        async with self._write_lock(upload.upload_id):
            await self._run(self._put, upload)

    async def remove_upload(self, upload_id: str) -> bool:
        self._require_init()
        async with self._write_lock(upload_id):
            return await self._run(self._delete, upload_id)

    async def _remove_many(self, upload_ids: list[str]) -> int:
        removed = 0
        for upload_id in upload_ids:
            if await self.remove_upload(upload_id):
                removed += 1
        return removed

    async def clear_old_uploads(self, max_age_seconds: float = DEFAULT_RETENTION_SECONDS) -> int:
        """Delete records created before the retention window (uses the created_at index)."""
        self._require_init()
        cutoff = time.time() - max_age_seconds
        ids = await self._run(self._list_ids, "created_at < ?", (cutoff,))
        return await self._remove_many(ids)

    async def cleanup_completed_uploads(self) -> int:
        """Delete records whose checkpoint already covers every chunk."""
        self._require_init()
        ids = await self._run(self._list_ids, "is_pre_stored = 0 AND current_chunk >= total_chunks")
        return await self._remove_many(ids)

    async def clear_pre_stored_uploads(self) -> int:
        """Delete eagerly stored records that never got a real session."""
        self._require_init()
        ids = await self._run(self._list_ids, "is_pre_stored = 1")
        return await self._remove_many(ids)

    async def find_pre_stored_by_hash(self, file_hash: str) -> PersistedUpload | None:
        self._require_init()
        ids = await self._run(
            self._list_ids, "is_pre_stored = 1 AND file_hash = ? ORDER BY created_at", (file_hash,)
        )
        if not ids:
            return None
        return await self.get_upload(ids[0])

    async def get_storage_usage(self) -> dict[str, int]:
        self._require_init()
        return await self._run(self._usage)

    @staticmethod
    def restore_file(upload: PersistedUpload) -> BytesFileHandle:
        """Rebuild an in-memory file handle from a stored record."""
        return BytesFileHandle(upload.file_name, upload.file_bytes, upload.file_type or None)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for connection in self._connections:
                connection.close()
            self._connections.clear()
        self._local = threading.local()
        self._initialized = False
