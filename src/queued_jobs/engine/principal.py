"""Run-as principal scope for job execution."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class Principal:
    """Identity a job executes under."""

    user_id: str
    display_name: str


_CURRENT_PRINCIPAL: ContextVar[Principal | None] = ContextVar(
    "queued_jobs_current_principal",
    default=None,
)


def current_principal() -> Principal | None:
    return _CURRENT_PRINCIPAL.get()


@contextmanager
def run_as(principal: Principal | None) -> Iterator[Principal | None]:
    """Make ``principal`` current for the block and restore the previous one.

    ``None`` keeps whatever principal is already active.
    """

    if principal is None:
        yield current_principal()
        return
    token = _CURRENT_PRINCIPAL.set(principal)
    try:
        yield principal
    finally:
        _CURRENT_PRINCIPAL.reset(token)
