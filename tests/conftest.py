"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from job_types import TEST_JOB_TYPES

from queued_jobs.engine.registry import JobRegistry
from queued_jobs.engine.repository import DescriptorRepository
from queued_jobs.engine.runner import JobRunner


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def notify(self, subject: str, body: str) -> None:
        self.sent.append((subject, body))


@pytest.fixture()
def repository(tmp_path: Path):
    repo = DescriptorRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def registry() -> JobRegistry:
    registry = JobRegistry()
    for job_type in TEST_JOB_TYPES:
        registry.register(job_type)
    return registry


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def make_runner(repository, registry, notifier):
    def _make(**overrides) -> JobRunner:
        options = {
            "repository": repository,
            "registry": registry,
            "notifier": notifier,
            "stall_threshold": 3,
            "memory_probe": lambda: 0,
            "default_run_as": "default_user",
        }
        options.update(overrides)
        return JobRunner(**options)

    return _make
