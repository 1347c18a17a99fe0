"""Process memory probing for the run-loop watchdog."""

from __future__ import annotations

import psutil


def current_memory_usage() -> int:
    """Current resident set size of this process in bytes."""

    return int(psutil.Process().memory_info().rss)


def human_readable(size: int) -> str:
    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "Bytes" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"
