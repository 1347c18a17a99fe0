"""Engine error taxonomy."""

from __future__ import annotations


class QueuedJobsError(Exception):
    """Base class for job engine failures."""


class DescriptorNotFoundError(QueuedJobsError):
    def __init__(self, lookup: object) -> None:
        super().__init__(f"Job descriptor not found: {lookup}")
        self.lookup = lookup


class UnknownJobTypeError(QueuedJobsError):
    def __init__(self, implementation: str) -> None:
        super().__init__(f"Job implementation is not registered: {implementation}")
        self.implementation = implementation


class InvalidTransitionError(QueuedJobsError):
    """Raised when an operator action does not apply to the current status."""


class JobProcessingError(QueuedJobsError):
    """A fault raised while a job was processing one unit of work."""

    def __init__(self, cause: BaseException, *, location: str | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}"
        if location:
            detail = f"{detail} in {location}"
        super().__init__(detail)
        self.cause = cause
        self.location = location
