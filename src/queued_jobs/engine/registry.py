"""Registry of job types keyed by their persisted implementation id."""

from __future__ import annotations

from collections.abc import Iterator

from queued_jobs.engine.errors import UnknownJobTypeError
from queued_jobs.engine.jobs import QueuedJob


class JobRegistry:
    """Explicit factory table used to rebuild jobs from stored descriptors."""

    def __init__(self) -> None:
        self._types: dict[str, type[QueuedJob]] = {}

    def register(self, job_type: type[QueuedJob]) -> type[QueuedJob]:
        """Add a job type; usable as a class decorator."""

        implementation = getattr(job_type, "implementation", None)
        if not implementation:
            raise ValueError(f"{job_type.__name__} must define an implementation id.")
        existing = self._types.get(implementation)
        if existing is not None and existing is not job_type:
            raise ValueError(
                f"Implementation id {implementation!r} already registered "
                f"by {existing.__name__}.",
            )
        self._types[implementation] = job_type
        return job_type

    def validate(self) -> None:
        """Fail fast on entries that cannot be instantiated by the runner."""

        for implementation, job_type in self._types.items():
            if not isinstance(job_type, type) or not issubclass(job_type, QueuedJob):
                raise TypeError(f"{implementation!r} is not a QueuedJob subclass.")
            if job_type.implementation != implementation:
                raise ValueError(
                    f"{job_type.__name__} implementation id changed after registration: "
                    f"{implementation!r} != {job_type.implementation!r}",
                )
            if getattr(job_type, "__abstractmethods__", None):
                raise TypeError(f"{job_type.__name__} is abstract and cannot be run.")

    def resolve(self, implementation: str) -> type[QueuedJob]:
        try:
            return self._types[implementation]
        except KeyError:
            raise UnknownJobTypeError(implementation) from None

    def create(self, implementation: str) -> QueuedJob:
        return self.resolve(implementation)()

    def is_registered(self, job: QueuedJob) -> bool:
        return self._types.get(job.implementation) is type(job)

    def __contains__(self, implementation: object) -> bool:
        return implementation in self._types

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._types))
