"""Job runner: descriptor lifecycle from enqueue to completion.

Lifecycle: ``new -> init -> run -> complete | broken | wait``. A descriptor in
``wait`` is picked up again by a later invocation and re-enters ``init``;
``broken`` descriptors only come back through the health monitor or an
operator ``resume``. Each invocation runs at most one job per queue type, and
a queue type with an ``init``/``run`` descriptor reports itself busy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from queued_jobs.engine.errors import (
    DescriptorNotFoundError,
    InvalidTransitionError,
    JobProcessingError,
    UnknownJobTypeError,
)
from queued_jobs.engine.fault_trap import fault_trap
from queued_jobs.engine.health import HealthMonitor
from queued_jobs.engine.jobs import QueuedJob
from queued_jobs.engine.models import (
    ACTIVE_STATUSES,
    BUSY,
    CLAIMABLE_STATUSES,
    NOTHING,
    HealthReport,
    JobDescriptor,
    JobDescriptorCreate,
    JobMessage,
    JobSelection,
    JobStatus,
    MessageSeverity,
    SelectionKind,
)
from queued_jobs.engine.notifications import Notifier
from queued_jobs.engine.principal import Principal, current_principal, run_as
from queued_jobs.engine.queues import QueueType
from queued_jobs.engine.registry import JobRegistry
from queued_jobs.engine.repository import DescriptorRepository
from queued_jobs.engine.resources import current_memory_usage, human_readable
from queued_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALL_THRESHOLD = 3
DEFAULT_MEMORY_LIMIT_BYTES = 134_217_728

PAUSABLE_STATUSES = frozenset(
    {JobStatus.NEW, JobStatus.INIT, JobStatus.RUN, JobStatus.WAIT},
)
RESUMABLE_STATUSES = frozenset({JobStatus.PAUSED, JobStatus.BROKEN})


class JobRunner:
    """Schedules and executes persisted jobs, one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: DescriptorRepository,
        registry: JobRegistry,
        notifier: Notifier | None = None,
        stall_threshold: int = DEFAULT_STALL_THRESHOLD,
        memory_limit_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES,
        memory_probe: Callable[[], int] = current_memory_usage,
        default_run_as: str | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.stall_threshold = stall_threshold
        self.memory_limit_bytes = memory_limit_bytes
        self.memory_probe = memory_probe
        self.default_run_as = default_run_as
        self.health = HealthMonitor(
            repository=repository,
            notifier=notifier,
            stall_threshold=stall_threshold,
        )
        registry.validate()

    def enqueue(
        self,
        job: QueuedJob,
        *,
        start_after: datetime | None = None,
        principal: Principal | None = None,
    ) -> int:
        """Persist ``job`` as a new descriptor and return its id.

        An identical job (same signature) that has not started yet is reused.
        """

        if not self.registry.is_registered(job):
            raise UnknownJobTypeError(job.implementation)

        signature = job.signature()
        try:
            existing = self.repository.find_new_by_signature(signature)
        except DescriptorNotFoundError:
            pass
        else:
            logger.info("Job %s already queued as %s", job.title, existing.id)
            return existing.id

        owner = principal or current_principal()
        descriptor = self.repository.create(
            JobDescriptorCreate(
                title=job.title,
                signature=signature,
                implementation=job.implementation,
                queue_type=int(job.queue_type),
                run_as=owner.user_id if owner is not None else self.default_run_as,
                state=job.export_state(),
                start_after=start_after,
            ),
        )
        logger.info("Queued job %s as %s (queue %s)", job.title, descriptor.id, job.queue_type)
        return descriptor.id

    def select_next(self, queue_type: int = QueueType.DEFAULT) -> JobSelection:
        """Pick what this invocation should run for ``queue_type``.

        Waiting jobs are resumed before anything else; an initialising or
        running job makes the queue busy; otherwise the oldest eligible new
        job is returned.
        """

        waiting = self.repository.find_waiting_by_type(queue_type)
        if waiting:
            return JobSelection(kind=SelectionKind.RESUME, descriptor=waiting[0])
        if self.repository.find_active_by_type(queue_type):
            return BUSY
        eligible = self.repository.find_eligible_new(queue_type, utc_now())
        if eligible:
            return JobSelection(kind=SelectionKind.NEW, descriptor=eligible[0])
        return NOTHING

    def check_health(self) -> HealthReport:
        return self.health.check()

    def list_counts(
        self,
        queue_types: Iterable[int] = tuple(QueueType),
        *,
        include_finished_within: timedelta | None = None,
    ) -> dict[int, int]:
        return self.repository.count_by_type(
            queue_types,
            include_finished_within=include_finished_within,
        )

    def run_job(self, descriptor_id: int) -> JobStatus | None:
        """Run one descriptor until it finishes or is interrupted.

        Returns the stored status afterwards, or ``None`` when there was
        nothing to run (unknown id, or another invocation claimed it first).
        No exception raised by the job escapes this method.
        """

        try:
            descriptor = self.repository.get(descriptor_id)
        except DescriptorNotFoundError:
            logger.error("Cannot run job %s: descriptor does not exist", descriptor_id)
            return None

        try:
            job_type = self.registry.resolve(descriptor.implementation)
        except UnknownJobTypeError as error:
            logger.error("Cannot run job %s: %s", descriptor_id, error)
            return self._mark_broken(
                descriptor_id,
                str(error),
                from_statuses=CLAIMABLE_STATUSES,
            )

        claimed = self.repository.transition(
            descriptor_id,
            from_statuses=CLAIMABLE_STATUSES,
            to_status=JobStatus.INIT,
        )
        if not claimed:
            logger.info(
                "Job %s not started: status %s is not claimable or it was claimed elsewhere",
                descriptor_id,
                descriptor.status.value,
            )
            return None

        principal = self._resolve_principal(descriptor.run_as)
        with run_as(principal):
            try:
                return self._execute(descriptor_id, job_type(), principal)
            except Exception as error:  # noqa: BLE001
                logger.exception("Job %s failed outside of process()", descriptor_id)
                return self._mark_broken(
                    descriptor_id,
                    f"Job failed: {error}",
                    from_statuses=ACTIVE_STATUSES,
                )

    def drain_immediate(self) -> list[int]:
        """Run pending immediate-queue jobs until none are left.

        A descriptor is run at most once per drain so a job that keeps
        suspending itself cannot hold the process open.
        """

        executed: list[int] = []
        while True:
            selection = self.select_next(QueueType.IMMEDIATE)
            if selection.descriptor is None or selection.descriptor.id in executed:
                return executed
            executed.append(selection.descriptor.id)
            self.run_job(selection.descriptor.id)

    def pause(self, descriptor_id: int) -> None:
        """Operator pause; a running job stops after its current step."""

        self._operator_transition(
            descriptor_id,
            from_statuses=PAUSABLE_STATUSES,
            to_status=JobStatus.PAUSED,
        )

    def resume(self, descriptor_id: int) -> None:
        """Operator resume of a paused or broken job; clears the stall history."""

        self._operator_transition(
            descriptor_id,
            from_statuses=RESUMABLE_STATUSES,
            to_status=JobStatus.WAIT,
            resume_count=0,
        )

    def _execute(
        self,
        descriptor_id: int,
        job: QueuedJob,
        principal: Principal | None,
    ) -> JobStatus:
        descriptor = self.repository.get(descriptor_id)
        job.run_as = principal
        job.import_state(descriptor.to_state())
        if descriptor.steps_processed == 0:
            job.setup()
        else:
            job.prepare_for_restart()
        _copy_job_to_descriptor(job, descriptor)

        now = utc_now()
        if descriptor.job_started is None:
            descriptor.job_started = now
        else:
            descriptor.job_restarted = now
        descriptor.status = JobStatus.RUN
        if not self.repository.save_progress(descriptor, expected_status=JobStatus.INIT):
            logger.info("Job %s changed status during init; not running it", descriptor_id)
            return self.repository.get(descriptor_id).status

        logger.info("Running job %s (%s)", descriptor_id, descriptor.title)
        self._run_loop(job, descriptor)
        return self.repository.get(descriptor_id).status

    def _run_loop(self, job: QueuedJob, descriptor: JobDescriptor) -> None:
        last_step = job.current_step
        stall_count = 0
        interrupted = False

        while not job.is_finished() and not interrupted:
            stored = self.repository.get(descriptor.id)
            if stored.status != JobStatus.RUN:
                job.add_message(f"Job paused at {utc_now():%Y-%m-%d %H:%M:%S}")
                _copy_job_to_descriptor(job, descriptor)
                descriptor.status = stored.status
                self.repository.save_progress(descriptor, expected_status=stored.status)
                logger.info("Job %s interrupted: status is %s", descriptor.id, stored.status.value)
                return

            next_status = JobStatus.RUN
            try:
                with fault_trap():
                    job.process()
            except JobProcessingError as error:
                job.add_message(f"Job caused exception {error}", MessageSeverity.ERROR)
                logger.error("Job %s raised in process(): %s", descriptor.id, error)
                next_status = JobStatus.BROKEN
            else:
                if job.current_step == last_step:
                    stall_count += 1
                else:
                    stall_count = 0
                    last_step = job.current_step

                if stall_count > self.stall_threshold:
                    job.add_message(
                        f"Job stalled after {stall_count} attempts - please check",
                        MessageSeverity.ERROR,
                    )
                    logger.warning("Job %s stalled at step %s", descriptor.id, last_step)
                    next_status = JobStatus.BROKEN
                elif not job.is_finished() and self._memory_too_high():
                    job.add_message(
                        "Job releasing memory and waiting "
                        f"({human_readable(self.memory_probe())} used)",
                    )
                    next_status = JobStatus.WAIT

            _copy_job_to_descriptor(job, descriptor)
            descriptor.status = next_status
            interrupted = next_status != JobStatus.RUN
            self.repository.save_progress(descriptor, expected_status=JobStatus.RUN)

        if not interrupted:
            descriptor.status = JobStatus.COMPLETE
            descriptor.job_finished = utc_now()
            self.repository.save_progress(descriptor, expected_status=JobStatus.RUN)
            logger.info("Job %s complete after %s steps", descriptor.id, descriptor.steps_processed)

    def _memory_too_high(self) -> bool:
        return self.memory_probe() > self.memory_limit_bytes

    def _resolve_principal(self, user_id: str | None) -> Principal | None:
        if user_id is None:
            return None
        principal = self.repository.get_principal(user_id)
        if principal is None:
            logger.warning("Run-as principal %s not found; running without it", user_id)
        return principal

    def _mark_broken(
        self,
        descriptor_id: int,
        reason: str,
        *,
        from_statuses: frozenset[JobStatus],
    ) -> JobStatus | None:
        """Move the descriptor to ``broken`` if it is still in ``from_statuses``.

        Returns the status the descriptor is left in.
        """

        message = JobMessage(logged_at=utc_now(), severity=MessageSeverity.ERROR, text=reason)
        try:
            if self.repository.transition(
                descriptor_id,
                from_statuses=from_statuses,
                to_status=JobStatus.BROKEN,
                message=message,
            ):
                return JobStatus.BROKEN
            status = self.repository.get(descriptor_id).status
        except (DescriptorNotFoundError, SQLAlchemyError):
            logger.exception("Could not mark job %s as broken", descriptor_id)
            return None
        logger.warning(
            "Job %s left as %s instead of broken: %s",
            descriptor_id,
            status.value,
            reason,
        )
        return status

    def _operator_transition(
        self,
        descriptor_id: int,
        *,
        from_statuses: frozenset[JobStatus],
        to_status: JobStatus,
        **values: object,
    ) -> None:
        descriptor = self.repository.get(descriptor_id)
        if descriptor.status not in from_statuses:
            raise InvalidTransitionError(
                f"Job {descriptor_id} cannot move from {descriptor.status.value} "
                f"to {to_status.value}.",
            )
        moved = self.repository.transition(
            descriptor_id,
            from_statuses=(descriptor.status,),
            to_status=to_status,
            **values,
        )
        if not moved:
            raise InvalidTransitionError(
                f"Job {descriptor_id} changed status concurrently; please retry.",
            )
        logger.info("Job %s: %s -> %s", descriptor_id, descriptor.status.value, to_status.value)


@contextmanager
def shutdown_drain(runner: JobRunner) -> Iterator[list[int]]:
    """Drain the immediate queue when the enclosed block exits.

    The yielded list is filled with the ids run by the drain.
    """

    drained: list[int] = []
    try:
        yield drained
    finally:
        drained.extend(runner.drain_immediate())


def _copy_job_to_descriptor(job: QueuedJob, descriptor: JobDescriptor) -> None:
    state = job.export_state()
    descriptor.total_steps = state.total_steps
    descriptor.steps_processed = state.current_step
    descriptor.payload = dict(state.payload)
    descriptor.messages = list(state.messages)
