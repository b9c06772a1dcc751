"""File handles the engine slices chunks from."""

import hashlib
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path


def guess_content_type(name: str) -> str:
    """Guess a MIME type from a file name, defaulting to octet-stream."""
    content_type, _ = mimetypes.guess_type(name)
    return content_type or "application/octet-stream"


class FileHandle(ABC):
    """A named, sized, sliceable source of bytes."""

    name: str
    size: int
    content_type: str

    @abstractmethod
    def read_range(self, start: int, end: int) -> bytes:
        """Return bytes in [start, end)."""

    def read_all(self) -> bytes:
        return self.read_range(0, self.size)

    def sha256(self) -> str:
        """Content hash used to match pre-stored files."""
        digest = hashlib.sha256()
        step = 4 * 1024 * 1024
        for start in range(0, self.size, step):
            digest.update(self.read_range(start, min(start + step, self.size)))
        return digest.hexdigest()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, size={self.size})"


class LocalFileHandle(FileHandle):
    """A file on the local disk, read lazily one range at a time."""

    def __init__(self, path: str | Path, content_type: str | None = None) -> None:
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.content_type = content_type or guess_content_type(self.name)

    def read_range(self, start: int, end: int) -> bytes:
        end = min(end, self.size)
        if start >= end:
            return b""
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)


class BytesFileHandle(FileHandle):
    """An in-memory file, used when an upload is rebuilt from the Durable Store."""

    def __init__(
        self,
        name: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        self.name = name
        self.data = data
        self.size = len(data)
        self.content_type = content_type or guess_content_type(name)

    def read_range(self, start: int, end: int) -> bytes:
        return self.data[start:end]
