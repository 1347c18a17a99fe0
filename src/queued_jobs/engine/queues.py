"""Mapping between queue selector arguments and queue-type identifiers."""

from __future__ import annotations

from enum import IntEnum


class QueueType(IntEnum):
    """Built-in queue partitions; any other positive int is a custom queue."""

    IMMEDIATE = 1
    DEFAULT = 2
    LARGE = 3


_QUEUE_ALIASES = {
    "immediate": QueueType.IMMEDIATE,
    "queued": QueueType.DEFAULT,
    "default": QueueType.DEFAULT,
    "large": QueueType.LARGE,
}


def resolve_queue(value: str | int | None) -> int:
    """Turn a queue name or number into a queue-type id.

    Unknown names select the default queue; numbers are taken as-is so that
    callers can schedule custom queues.
    """

    if value is None:
        return QueueType.DEFAULT
    if isinstance(value, int):
        return _validate_number(value)
    normalized = value.strip().lower()
    if not normalized:
        return QueueType.DEFAULT
    if normalized in _QUEUE_ALIASES:
        return _QUEUE_ALIASES[normalized]
    if normalized.isdigit():
        return _validate_number(int(normalized))
    return QueueType.DEFAULT


def queue_name(queue_type: int) -> str:
    try:
        return QueueType(queue_type).name.lower()
    except ValueError:
        return f"custom-{queue_type}"


def _validate_number(value: int) -> int:
    if value <= 0:
        raise ValueError(f"Queue number must be positive, got {value}.")
    try:
        return QueueType(value)
    except ValueError:
        return value
