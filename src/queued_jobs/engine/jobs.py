"""Job contract implemented by every queued job type.

A job performs its work in bounded steps. The runner restores the job from
its descriptor, calls ``setup()`` once (or ``prepare_for_restart()`` when some
steps were already processed), then calls ``process()`` until
``is_finished()`` returns true. Everything a job needs to survive a pause must
live in its payload, which is limited to the keys the job type declares.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar

from queued_jobs.engine.models import JobMessage, JobState, MessageSeverity
from queued_jobs.engine.principal import Principal
from queued_jobs.engine.queues import QueueType
from queued_jobs.storage.common import utc_now


class QueuedJob(ABC):
    """Base class for resumable jobs."""

    implementation: ClassVar[str]
    default_queue: ClassVar[int] = QueueType.DEFAULT
    payload_keys: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, payload: Mapping[str, Any] | None = None) -> None:
        self.total_steps = 0
        self.current_step = 0
        self.is_complete = False
        self.messages: list[JobMessage] = []
        self.run_as: Principal | None = None
        self._payload: dict[str, Any] = {}
        for key, value in (payload or {}).items():
            self.set_value(key, value)

    @property
    def title(self) -> str:
        return type(self).__name__

    @property
    def queue_type(self) -> int:
        return self.default_queue

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self._payload)

    def get_value(self, key: str, default: Any = None) -> Any:
        self._check_key(key)
        return self._payload.get(key, default)

    def set_value(self, key: str, value: Any) -> None:
        """Store ``value`` under a declared key.

        Values must come back unchanged from JSON, so tuples, non-string
        dict keys and arbitrary objects are rejected here rather than being
        altered or failing when the descriptor is saved.
        """

        self._check_key(key)
        self._payload[key] = _json_stable(key, value)

    def signature(self) -> str:
        """Fingerprint of job type and payload used to deduplicate enqueues."""

        canonical = json.dumps(self._payload, sort_keys=True)
        return hashlib.sha256(f"{self.implementation}:{canonical}".encode()).hexdigest()

    def random_signature(self) -> str:
        """Signature that never collides, for jobs that must always be enqueued."""

        return hashlib.sha256(
            f"{self.implementation}:{utc_now().isoformat()}:{secrets.token_hex(8)}".encode(),
        ).hexdigest()

    def setup(self) -> None:
        """Called once, before the first step is processed."""

    def prepare_for_restart(self) -> None:
        """Called on every resumption after at least one processed step."""

    @abstractmethod
    def process(self) -> None:
        """Perform one bounded unit of work."""

    def is_finished(self) -> bool:
        return self.is_complete

    def export_state(self) -> JobState:
        return JobState(
            total_steps=self.total_steps,
            current_step=self.current_step,
            is_complete=self.is_complete,
            payload=dict(self._payload),
            messages=list(self.messages),
        )

    def import_state(self, state: JobState) -> None:
        self.total_steps = state.total_steps
        self.current_step = state.current_step
        self.is_complete = state.is_complete
        self._payload = {}
        for key, value in state.payload.items():
            self.set_value(key, value)
        self.messages = list(state.messages)

    def add_message(
        self,
        text: str,
        severity: MessageSeverity | str = MessageSeverity.INFO,
    ) -> None:
        if not isinstance(severity, MessageSeverity):
            severity = MessageSeverity(severity.upper())
        self.messages.append(JobMessage(logged_at=utc_now(), severity=severity, text=text))

    def _check_key(self, key: str) -> None:
        if key not in self.payload_keys:
            raise KeyError(f"{type(self).__name__} does not declare payload key {key!r}")


def _json_stable(key: str, value: Any) -> Any:
    try:
        restored = json.loads(json.dumps(value))
    except (TypeError, ValueError) as error:
        raise TypeError(f"Payload value for {key!r} is not JSON serializable: {error}") from None
    if not _same_json(restored, value):
        raise TypeError(
            f"Payload value for {key!r} does not survive JSON storage "
            f"({type(value).__name__} would be restored as {type(restored).__name__}).",
        )
    return value


def _same_json(restored: Any, original: Any) -> bool:
    if isinstance(original, bool) or original is None:
        return restored is original
    if isinstance(original, dict):
        return (
            isinstance(restored, dict)
            and all(isinstance(key, str) for key in original)
            and restored.keys() == original.keys()
            and all(_same_json(restored[key], original[key]) for key in original)
        )
    if isinstance(original, list):
        return (
            isinstance(restored, list)
            and len(restored) == len(original)
            and all(_same_json(r, o) for r, o in zip(restored, original, strict=True))
        )
    return type(restored) is type(original) and restored == original
