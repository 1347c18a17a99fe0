"""Scoped fault boundary around a single ``process()`` call."""

from __future__ import annotations

import traceback
import warnings
from collections.abc import Iterator
from contextlib import contextmanager

from queued_jobs.engine.errors import JobProcessingError

_IGNORED_WARNINGS: tuple[type[Warning], ...] = (
    DeprecationWarning,
    PendingDeprecationWarning,
)


@contextmanager
def fault_trap() -> Iterator[None]:
    """Promote warnings to errors and wrap any failure in ``JobProcessingError``.

    Warning filters are restored on exit. ``KeyboardInterrupt`` and
    ``SystemExit`` are not trapped.
    """

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        for category in _IGNORED_WARNINGS:
            warnings.simplefilter("ignore", category)
        try:
            yield
        except JobProcessingError:
            raise
        except Exception as error:  # noqa: BLE001
            raise JobProcessingError(error, location=_fault_location(error)) from error


def _fault_location(error: BaseException) -> str | None:
    frames = traceback.extract_tb(error.__traceback__)
    if not frames:
        return None
    frame = frames[-1]
    return f"{frame.filename} at line {frame.lineno}"
