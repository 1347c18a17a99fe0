"""Built-in job types."""

from __future__ import annotations

from queued_jobs.engine.jobs import QueuedJob
from queued_jobs.engine.queues import QueueType
from queued_jobs.engine.registry import JobRegistry


class CountdownJob(QueuedJob):
    """Counts down ``steps`` unit steps; used to exercise the queue end to end."""

    implementation = "countdown"
    payload_keys = frozenset({"steps", "label", "queue"})

    def __init__(
        self,
        steps: int = 0,
        *,
        label: str = "Countdown",
        queue: int = QueueType.DEFAULT,
    ) -> None:
        super().__init__({"steps": steps, "label": label, "queue": int(queue)})

    @property
    def title(self) -> str:
        return f"{self.get_value('label')} ({self.get_value('steps')} steps)"

    @property
    def queue_type(self) -> int:
        return int(self.get_value("queue", QueueType.DEFAULT))

    def setup(self) -> None:
        self.total_steps = int(self.get_value("steps", 0))
        self.add_message(f"Counting down {self.total_steps} steps")
        if self.total_steps == 0:
            self.is_complete = True

    def prepare_for_restart(self) -> None:
        self.add_message(f"Resuming at step {self.current_step}/{self.total_steps}")

    def process(self) -> None:
        self.current_step += 1
        if self.current_step >= self.total_steps:
            self.is_complete = True


def default_registry() -> JobRegistry:
    registry = JobRegistry()
    registry.register(CountdownJob)
    return registry
