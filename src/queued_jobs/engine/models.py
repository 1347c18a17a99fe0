"""Domain models for the job descriptor lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable descriptor lifecycle states."""

    NEW = "new"
    INIT = "init"
    RUN = "run"
    WAIT = "wait"
    PAUSED = "paused"
    BROKEN = "broken"
    COMPLETE = "complete"


ACTIVE_STATUSES = frozenset({JobStatus.INIT, JobStatus.RUN})
CLAIMABLE_STATUSES = frozenset({JobStatus.NEW, JobStatus.WAIT})


class MessageSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass(slots=True, frozen=True)
class JobMessage:
    """One timestamped, severity-tagged log line stored on a descriptor."""

    logged_at: datetime
    severity: MessageSeverity
    text: str

    def render(self) -> str:
        return f"[{self.logged_at:%Y-%m-%d %H:%M:%S}][{self.severity.value}] {self.text}"

    def to_json(self) -> dict[str, str]:
        return {
            "logged_at": self.logged_at.isoformat(),
            "severity": self.severity.value,
            "text": self.text,
        }

    @classmethod
    def from_json(cls, value: dict[str, Any]) -> JobMessage:
        return cls(
            logged_at=datetime.fromisoformat(str(value["logged_at"])),
            severity=MessageSeverity(str(value["severity"])),
            text=str(value["text"]),
        )


@dataclass(slots=True)
class JobState:
    """Snapshot exchanged between a job instance and its descriptor."""

    total_steps: int = 0
    current_step: int = 0
    is_complete: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    messages: list[JobMessage] = field(default_factory=list)


@dataclass(slots=True)
class JobDescriptorCreate:
    """Input payload for persisting a freshly enqueued job."""

    title: str
    signature: str
    implementation: str
    queue_type: int
    run_as: str | None
    state: JobState
    start_after: datetime | None = None


@dataclass(slots=True)
class JobDescriptor:
    """Persisted record of one job instance."""

    id: int
    title: str
    signature: str
    implementation: str
    queue_type: int
    status: JobStatus
    start_after: datetime | None
    total_steps: int
    steps_processed: int
    last_processed_count: int
    resume_count: int
    run_as: str | None
    job_started: datetime | None
    job_restarted: datetime | None
    job_finished: datetime | None
    payload: dict[str, Any]
    messages: list[JobMessage]
    created_at: datetime
    updated_at: datetime

    def to_state(self) -> JobState:
        return JobState(
            total_steps=self.total_steps,
            current_step=self.steps_processed,
            is_complete=self.status == JobStatus.COMPLETE,
            payload=dict(self.payload),
            messages=list(self.messages),
        )


class SelectionKind(str, Enum):
    """Outcome of picking the next job for one queue type."""

    RESUME = "resume"
    BUSY = "busy"
    NEW = "new"
    NONE = "none"


@dataclass(slots=True, frozen=True)
class JobSelection:
    """Three-way scheduling answer: a job to run, a busy queue, or nothing."""

    kind: SelectionKind
    descriptor: JobDescriptor | None = None

    @property
    def runnable(self) -> bool:
        return self.descriptor is not None


BUSY = JobSelection(kind=SelectionKind.BUSY)
NOTHING = JobSelection(kind=SelectionKind.NONE)


@dataclass(slots=True)
class HealthReport:
    """What one health check changed."""

    resumed: list[int] = field(default_factory=list)
    broken: list[int] = field(default_factory=list)
    baselined: int = 0
