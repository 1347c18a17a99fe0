"""Controllers for job queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from queued_jobs.config import Settings
from queued_jobs.engine.builtin import CountdownJob, default_registry
from queued_jobs.engine.models import JobStatus, SelectionKind
from queued_jobs.engine.notifications import LoggingNotifier, Notifier, SmtpNotifier
from queued_jobs.engine.queues import QueueType, queue_name, resolve_queue
from queued_jobs.engine.registry import JobRegistry
from queued_jobs.engine.repository import DescriptorRepository
from queued_jobs.engine.runner import JobRunner, shutdown_drain
from queued_jobs.storage.common import from_iso, utc_now


@dataclass(slots=True)
class ProcessQueueCommand:
    """CLI input for one cron-triggered queue invocation."""

    db_path: Path | None
    queue: str | None
    list_only: bool = False


@dataclass(slots=True)
class EnqueueDemoCommand:
    """CLI input for countdown job enqueue."""

    db_path: Path | None
    steps: int
    queue: str | None
    label: str
    start_after: str | None
    run_as: str | None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class MutateJobCommand:
    """CLI input for pause/resume operations."""

    db_path: Path | None
    job_id: int


class JobQueueCliController:
    """Coordinates queue processing and inspection CLI operations."""

    def __init__(self, registry: JobRegistry | None = None) -> None:
        self.registry = registry or default_registry()

    def process_queue(self, command: ProcessQueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        queue_type = resolve_queue(command.queue)
        lines = [_stamped(f"Processing queue {queue_type}")]

        with self._runner(settings) as runner:
            if command.list_only:
                for mode, count in runner.list_counts(tuple(QueueType)).items():
                    lines.append(_stamped(f"Found {count} jobs for mode {mode}"))
                return lines

            with shutdown_drain(runner) as drained:
                report = runner.check_health()
                for descriptor_id in report.resumed:
                    lines.append(_stamped(f"Job {descriptor_id} stalled; scheduled for restart"))
                for descriptor_id in report.broken:
                    lines.append(_stamped(f"Job {descriptor_id} stalled too often; marked broken"))

                selection = runner.select_next(queue_type)
                if selection.kind is SelectionKind.BUSY:
                    lines.append(_stamped("Job is still running"))
                elif selection.descriptor is None:
                    lines.append(_stamped("No new jobs"))
                else:
                    verb = "Resuming" if selection.kind is SelectionKind.RESUME else "Running"
                    lines.append(_stamped(f"{verb} {selection.descriptor.title}"))
                    status = runner.run_job(selection.descriptor.id)
                    lines.append(_stamped(_outcome_line(selection.descriptor.id, status)))

            for descriptor_id in drained:
                lines.append(_stamped(f"Drained immediate job {descriptor_id}"))
        return lines

    def enqueue_demo(self, command: EnqueueDemoCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        queue_type = resolve_queue(command.queue)
        start_after = from_iso(command.start_after) if command.start_after else None
        with self._runner(settings) as runner:
            principal = None
            if command.run_as is not None:
                principal = runner.repository.ensure_principal(command.run_as, command.run_as)
            job_id = runner.enqueue(
                CountdownJob(command.steps, label=command.label, queue=queue_type),
                start_after=start_after,
                principal=principal,
            )
            descriptor = runner.repository.get(job_id)

        return [
            f"Job enqueued: job_id={descriptor.id} queue={queue_name(descriptor.queue_type)} "
            f"status={descriptor.status.value}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            descriptors = repository.list_descriptors(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(descriptors)}"]
        for descriptor in descriptors:
            lines.append(
                f"  {descriptor.id} {descriptor.title} queue={queue_name(descriptor.queue_type)} "
                f"status={descriptor.status.value} "
                f"steps={descriptor.steps_processed}/{descriptor.total_steps}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            descriptor = repository.get(command.job_id)

        lines = [
            f"Job: {descriptor.id}",
            f"Title: {descriptor.title}",
            f"Implementation: {descriptor.implementation}",
            f"Queue: {queue_name(descriptor.queue_type)}",
            f"Status: {descriptor.status.value}",
            f"Steps: {descriptor.steps_processed}/{descriptor.total_steps}",
            f"Resume count: {descriptor.resume_count}",
            f"Run as: {descriptor.run_as or '-'}",
            f"Start after: {_iso(descriptor.start_after)}",
            f"Started: {_iso(descriptor.job_started)}",
            f"Restarted: {_iso(descriptor.job_restarted)}",
            f"Finished: {_iso(descriptor.job_finished)}",
            f"Messages: {len(descriptor.messages)}",
        ]
        lines.extend(f"  {message.render()}" for message in descriptor.messages)
        return lines

    def pause_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._runner(settings) as runner:
            runner.pause(command.job_id)
        return [f"Job paused: {command.job_id}"]

    def resume_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._runner(settings) as runner:
            runner.resume(command.job_id)
        return [f"Job resumed: {command.job_id}"]

    @contextmanager
    def _runner(self, settings: Settings) -> Iterator[JobRunner]:
        with _repository(settings) as repository:
            yield JobRunner(
                repository=repository,
                registry=self.registry,
                notifier=_notifier(settings),
                stall_threshold=settings.engine.stall_threshold,
                memory_limit_bytes=settings.engine.memory_limit_bytes,
                default_run_as=settings.user_context.user_id,
            )


def _stamped(text: str) -> str:
    return f"[{utc_now():%Y-%m-%d %H:%M:%S}] {text}"


def _outcome_line(descriptor_id: int, status: JobStatus | None) -> str:
    if status is None:
        return f"Job {descriptor_id} was not started"
    return f"Job {descriptor_id} finished with status {status.value}"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _notifier(settings: Settings) -> Notifier:
    notifications = settings.notifications
    if not notifications.email_enabled:
        return LoggingNotifier()
    return SmtpNotifier(
        host=notifications.smtp_host or "",
        recipient=notifications.admin_email or "",
        port=notifications.smtp_port,
        user=notifications.smtp_user,
        password=notifications.smtp_password,
        use_tls=notifications.smtp_use_tls,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[DescriptorRepository]:
    repository = DescriptorRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
