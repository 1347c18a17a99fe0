"""Stall detection across invocations for running descriptors."""

from __future__ import annotations

import logging

from queued_jobs.engine.models import HealthReport, JobDescriptor, JobStatus
from queued_jobs.engine.notifications import LoggingNotifier, Notifier, deliver_safely
from queued_jobs.engine.repository import DescriptorRepository

logger = logging.getLogger(__name__)

STALLED_JOB_SUBJECT = "Stalled job"


class HealthMonitor:
    """Finds running jobs that made no progress since the previous check.

    A stalled job is sent back to the wait queue up to ``stall_threshold``
    times; after that it is marked broken and needs an operator.
    """

    def __init__(
        self,
        *,
        repository: DescriptorRepository,
        notifier: Notifier | None = None,
        stall_threshold: int = 3,
    ) -> None:
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()
        self.stall_threshold = stall_threshold

    def check(self) -> HealthReport:
        report = HealthReport()
        for descriptor in self.repository.find_by_status((JobStatus.RUN,)):
            if not _is_stalled(descriptor):
                continue
            resume_count = descriptor.resume_count + 1
            if resume_count <= self.stall_threshold:
                self._restart(descriptor, resume_count=resume_count, report=report)
            else:
                self._break(descriptor, resume_count=resume_count, report=report)

        report.baselined = self.repository.refresh_progress_baselines()
        return report

    def _restart(
        self,
        descriptor: JobDescriptor,
        *,
        resume_count: int,
        report: HealthReport,
    ) -> None:
        moved = self.repository.transition(
            descriptor.id,
            from_statuses=(JobStatus.RUN,),
            to_status=JobStatus.WAIT,
            resume_count=resume_count,
        )
        if not moved:
            return
        report.resumed.append(descriptor.id)
        logger.info(
            "Job %s stalled at step %s; restart %s/%s",
            descriptor.id,
            descriptor.steps_processed,
            resume_count,
            self.stall_threshold,
        )
        deliver_safely(
            self.notifier,
            STALLED_JOB_SUBJECT,
            f"A job named {descriptor.title} appears to have stalled. It will be stopped "
            "and restarted, please check that it has continued.",
        )

    def _break(
        self,
        descriptor: JobDescriptor,
        *,
        resume_count: int,
        report: HealthReport,
    ) -> None:
        moved = self.repository.transition(
            descriptor.id,
            from_statuses=(JobStatus.RUN,),
            to_status=JobStatus.BROKEN,
            resume_count=resume_count,
        )
        if not moved:
            return
        report.broken.append(descriptor.id)
        logger.warning(
            "Job %s stalled %s times and was marked broken",
            descriptor.id,
            resume_count,
        )
        deliver_safely(
            self.notifier,
            STALLED_JOB_SUBJECT,
            f"A job named {descriptor.title} appears to have stalled. It has been paused, "
            "please check it manually.",
        )


def _is_stalled(descriptor: JobDescriptor) -> bool:
    return (
        descriptor.steps_processed > 0
        and descriptor.steps_processed == descriptor.last_processed_count
    )
