"""JSONL event log for the upload engine.

Each engine event (upload started, paused, failed, queue stalled, store
cleanup, ...) is appended as one JSON object to a daily, hive-partitioned
file:

    logs/json/year=2026/month=02/day=08/events.jsonl

DuckDB-compatible: SELECT * FROM read_json_auto('logs/json/**/events.jsonl', hive_partitioning=true)

Entries are also mirrored to the ``chunk_uploader.events`` stdlib logger so
they show up in the gunicorn output.
"""

import json
import logging
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from chunk_uploader.config import get_settings

CATEGORIES = ("upload", "queue", "store", "app")

_LEVELS = {"INFO": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR}

event_logger = logging.getLogger("chunk_uploader.events")


class LogService:
    """Thread-safe JSONL writer and reader for engine events."""

    def __init__(self, log_dir: Path | None = None) -> None:
        """Initialize the log service.

        Args:
            log_dir: Directory to write to; defaults to the configured log_directory
        """
        self._write_lock = threading.Lock()
        self._log_dir = log_dir

    def _get_log_dir(self) -> Path:
        log_dir = self._log_dir or get_settings().log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _partition(self, dt: datetime) -> Path:
        return Path(f"year={dt.year:04d}", f"month={dt.month:02d}", f"day={dt.day:02d}")

    def _get_hive_dir(self, subdir: str, dt: datetime) -> Path:
        """Build a hive-partitioned directory path and create it.

        Returns:
            Path like logs/json/year=2026/month=02/day=08/
        """
        hive_dir = self._get_log_dir() / subdir / self._partition(dt)
        hive_dir.mkdir(parents=True, exist_ok=True)
        return hive_dir

    def _get_current_log_file(self) -> Path:
        return self._get_hive_dir("json", datetime.now(UTC)) / "events.jsonl"

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an event to today's file.

        Args:
            level: INFO, WARNING or ERROR (case-insensitive)
            category: One of CATEGORIES
            event: Machine-readable event name (snake_case), e.g. upload_completed
            message: Human-readable message
            metadata: Optional extra fields; upload_id is used by the reader's filter
        """
        level = level.upper()
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": level,
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)
        with self._write_lock:
            with open(self._get_current_log_file(), "a", encoding="utf-8") as f:
                f.write(line + "\n")

        event_logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s: %s", category, event, message)

    def info(self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("INFO", category, event, message, metadata)

    def warning(self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("WARNING", category, event, message, metadata)

    def error(self, category: str, event: str, message: str, metadata: dict[str, Any] | None = None) -> None:
        self.log("ERROR", category, event, message, metadata)

    def _files_for(self, date: str | None) -> list[Path]:
        """Event files for one day (YYYY-MM-DD) or, with no date, every day newest first.

        Raises:
            ValueError: date is not YYYY-MM-DD
        """
        json_dir = self._get_log_dir() / "json"
        if date:
            day_file = json_dir / self._partition(datetime.strptime(date, "%Y-%m-%d")) / "events.jsonl"
            return [day_file] if day_file.exists() else []
        if not json_dir.exists():
            return []
        return sorted(json_dir.rglob("events.jsonl"), reverse=True)

    @staticmethod
    def _iter_entries(files: list[Path]) -> Iterator[dict[str, Any]]:
        """Yield parsed entries, skipping blank lines, corrupt lines and unreadable files."""
        for log_file in files:
            try:
                with open(log_file, encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            yield json.loads(line)
                        except json.JSONDecodeError:
                            continue
            except OSError:
                continue

    @staticmethod
    def _matches(
        entry: dict[str, Any],
        level: str | None,
        category: str | None,
        search: str | None,
        upload_id: str | None,
    ) -> bool:
        if level and entry.get("level", "").upper() != level.upper():
            return False
        if category and entry.get("category") != category:
            return False
        if upload_id and (entry.get("metadata") or {}).get("upload_id") != upload_id:
            return False
        if search:
            needle = search.lower()
            haystack = f"{entry.get('message', '')}\n{entry.get('event', '')}".lower()
            if needle not in haystack:
                return False
        return True

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
        upload_id: str | None = None,
    ) -> dict[str, Any]:
        """Read and filter entries, newest first, with pagination.

        Args:
            date: Only this day (YYYY-MM-DD); an invalid date matches nothing
            level: Filter by level
            category: Filter by category
            search: Case-insensitive substring of message or event name
            offset: Number of entries to skip
            limit: Maximum entries to return
            upload_id: Only events whose metadata names this upload

        Returns:
            Dict with entries, total count, offset, limit
        """
        try:
            files = self._files_for(date)
        except ValueError:
            files = []

        matched = [
            entry
            for entry in self._iter_entries(files)
            if self._matches(entry, level, category, search, upload_id)
        ]
        matched.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": matched[offset : offset + limit],
            "total": len(matched),
            "offset": offset,
            "limit": limit,
        }


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
