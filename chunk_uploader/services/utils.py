"""Shared utility functions for upload services."""

import math


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5 GB")
    """
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"


def format_time(seconds: float | None) -> str:
    """Format a remaining-time estimate in seconds to a short string.

    Args:
        seconds: Estimated seconds remaining

    Returns:
        "0s" for missing, zero, negative or non-finite input, otherwise
        "42s", "3m 5s" or "2h 10m"
    """
    if not seconds or not math.isfinite(seconds) or seconds <= 0:
        return "0s"
    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"


def clamp_percent(value: float) -> float:
    """Clamp a percentage into [0, 100]; non-finite values become 0."""
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, value))
