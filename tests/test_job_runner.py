from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import allure
import pytest
from job_types import (
    BrokenSetupJob,
    CountingJob,
    CursorJob,
    DeprecatedApiJob,
    FailingJob,
    HookJob,
    ImmediateJob,
    PrincipalJob,
    StuckJob,
    WarningJob,
)

from queued_jobs.engine.errors import InvalidTransitionError, UnknownJobTypeError
from queued_jobs.engine.jobs import QueuedJob
from queued_jobs.engine.models import (
    JobDescriptorCreate,
    JobState,
    JobStatus,
    MessageSeverity,
    SelectionKind,
)
from queued_jobs.engine.principal import current_principal
from queued_jobs.engine.queues import QueueType
from queued_jobs.engine.runner import shutdown_drain

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Runner Lifecycle"),
]


def _errors(descriptor) -> list[str]:
    return [m.text for m in descriptor.messages if m.severity == MessageSeverity.ERROR]


def _texts(descriptor) -> list[str]:
    return [m.text for m in descriptor.messages]


def test_enqueue_is_idempotent_while_descriptor_is_new(make_runner, repository) -> None:
    runner = make_runner()

    first = runner.enqueue(CountingJob(3, name="report"))
    second = runner.enqueue(CountingJob(3, name="report"))

    assert first == second
    assert len(repository.list_descriptors()) == 1
    descriptor = repository.get(first)
    assert descriptor.status == JobStatus.NEW
    assert descriptor.title == "Counting report"
    assert descriptor.implementation == "test-counting"
    assert descriptor.queue_type == QueueType.DEFAULT
    assert descriptor.run_as == "default_user"
    assert descriptor.payload == {"steps": 3, "calls": 0, "name": "report"}


def test_enqueue_creates_new_descriptor_once_previous_one_started(make_runner) -> None:
    runner = make_runner()
    first = runner.enqueue(CountingJob(1, name="daily"))
    assert runner.run_job(first) == JobStatus.COMPLETE

    second = runner.enqueue(CountingJob(1, name="daily"))

    assert second != first


def test_enqueue_different_payload_creates_separate_descriptors(make_runner) -> None:
    runner = make_runner()

    assert runner.enqueue(CountingJob(1, name="a")) != runner.enqueue(CountingJob(1, name="b"))


def test_enqueue_rejects_unregistered_job_type(make_runner) -> None:
    class Unregistered(QueuedJob):
        implementation = "unregistered"

        def process(self) -> None:
            self.is_complete = True

    with pytest.raises(UnknownJobTypeError, match="unregistered"):
        make_runner().enqueue(Unregistered())


def test_enqueue_uses_explicit_principal(make_runner, repository) -> None:
    alice = repository.ensure_principal("alice", "Alice")
    job_id = make_runner().enqueue(CountingJob(1), principal=alice)

    assert repository.get(job_id).run_as == "alice"


def test_select_next_returns_none_for_empty_queue(make_runner) -> None:
    selection = make_runner().select_next(QueueType.DEFAULT)

    assert selection.kind is SelectionKind.NONE
    assert selection.descriptor is None
    assert not selection.runnable


def test_select_next_picks_lowest_eligible_id(make_runner) -> None:
    runner = make_runner()
    future = datetime.now(tz=UTC) + timedelta(hours=1)
    past = datetime.now(tz=UTC) - timedelta(minutes=5)
    later_job = runner.enqueue(CountingJob(1, name="later"), start_after=future)
    first = runner.enqueue(CountingJob(1, name="first"), start_after=past)
    runner.enqueue(CountingJob(1, name="second"))

    selection = runner.select_next(QueueType.DEFAULT)

    assert selection.kind is SelectionKind.NEW
    assert selection.descriptor is not None
    assert selection.descriptor.id == first
    assert selection.descriptor.id != later_job


def test_select_next_reports_busy_when_job_is_active(make_runner, repository) -> None:
    runner = make_runner()
    active = runner.enqueue(CountingJob(1, name="active"))
    runner.enqueue(CountingJob(1, name="pending"))
    assert repository.transition(active, from_statuses=(JobStatus.NEW,), to_status=JobStatus.RUN)

    selection = runner.select_next(QueueType.DEFAULT)

    assert selection.kind is SelectionKind.BUSY
    assert selection.descriptor is None


def test_select_next_resumes_waiting_job_before_busy_and_new(make_runner, repository) -> None:
    runner = make_runner()
    active = runner.enqueue(CountingJob(1, name="active"))
    waiting = runner.enqueue(CountingJob(1, name="waiting"))
    runner.enqueue(CountingJob(1, name="pending"))
    repository.transition(active, from_statuses=(JobStatus.NEW,), to_status=JobStatus.RUN)
    repository.transition(waiting, from_statuses=(JobStatus.NEW,), to_status=JobStatus.WAIT)

    selection = runner.select_next(QueueType.DEFAULT)

    assert selection.kind is SelectionKind.RESUME
    assert selection.descriptor is not None
    assert selection.descriptor.id == waiting


def test_select_next_is_independent_per_queue_type(make_runner, repository) -> None:
    runner = make_runner()
    busy = runner.enqueue(CountingJob(1, name="default"))
    immediate = runner.enqueue(ImmediateJob(1, name="urgent"))
    repository.transition(busy, from_statuses=(JobStatus.NEW,), to_status=JobStatus.RUN)

    assert runner.select_next(QueueType.DEFAULT).kind is SelectionKind.BUSY
    selection = runner.select_next(QueueType.IMMEDIATE)
    assert selection.kind is SelectionKind.NEW
    assert selection.descriptor is not None
    assert selection.descriptor.id == immediate
    assert runner.select_next(QueueType.LARGE).kind is SelectionKind.NONE


def test_job_completes_after_exactly_k_process_calls(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(CountingJob(5))

    assert runner.run_job(job_id) == JobStatus.COMPLETE

    descriptor = repository.get(job_id)
    assert descriptor.status == JobStatus.COMPLETE
    assert descriptor.steps_processed == 5
    assert descriptor.total_steps == 5
    assert descriptor.payload["calls"] == 5
    assert descriptor.job_started is not None
    assert descriptor.job_finished is not None
    assert descriptor.job_restarted is None
    assert _texts(descriptor) == ["setup"]


def test_non_advancing_job_is_broken_after_threshold_plus_one_iterations(
    make_runner,
    repository,
) -> None:
    runner = make_runner(stall_threshold=3)
    job_id = runner.enqueue(StuckJob(10))

    assert runner.run_job(job_id) == JobStatus.BROKEN

    descriptor = repository.get(job_id)
    assert descriptor.payload["calls"] == 4
    assert descriptor.steps_processed == 0
    errors = _errors(descriptor)
    assert len(errors) == 1
    assert "stalled after 4 attempts" in errors[0]


def test_memory_pressure_suspends_job_to_wait(make_runner, repository) -> None:
    runner = make_runner(memory_limit_bytes=1_000, memory_probe=lambda: 2_000)
    job_id = runner.enqueue(CountingJob(5))

    assert runner.run_job(job_id) == JobStatus.WAIT

    descriptor = repository.get(job_id)
    assert descriptor.payload["calls"] == 1
    assert descriptor.steps_processed == 1
    assert descriptor.job_finished is None
    assert _errors(descriptor) == []
    assert any("releasing memory" in text for text in _texts(descriptor))


def test_waiting_job_resumes_with_prepare_for_restart_only(make_runner, repository) -> None:
    job_id = make_runner(memory_limit_bytes=1_000, memory_probe=lambda: 2_000).enqueue(
        CountingJob(3),
    )
    pressured = make_runner(memory_limit_bytes=1_000, memory_probe=lambda: 2_000)
    assert pressured.run_job(job_id) == JobStatus.WAIT

    relaxed = make_runner()
    selection = relaxed.select_next(QueueType.DEFAULT)
    assert selection.kind is SelectionKind.RESUME
    assert relaxed.run_job(job_id) == JobStatus.COMPLETE

    descriptor = repository.get(job_id)
    texts = _texts(descriptor)
    assert texts.count("setup") == 1
    assert texts.count("restart") == 1
    assert texts.index("setup") < texts.index("restart")
    assert descriptor.payload["calls"] == 3
    assert descriptor.job_restarted is not None


def test_payload_survives_suspend_and_resume_unchanged(make_runner, repository) -> None:
    job_id = make_runner().enqueue(CursorJob(3, name="cursor"))
    pressured = make_runner(memory_limit_bytes=1_000, memory_probe=lambda: 2_000)
    assert pressured.run_job(job_id) == JobStatus.WAIT
    assert repository.get(job_id).payload["cursor"] == {
        "pages": [{"page": 1, "title": "Seite 1"}],
        "last": 1,
        "ratio": 0.25,
    }

    assert make_runner().run_job(job_id) == JobStatus.COMPLETE

    assert repository.get(job_id).payload["cursor"] == {
        "pages": [
            {"page": 1, "title": "Seite 1"},
            {"page": 2, "title": "Seite 2"},
            {"page": 3, "title": "Seite 3"},
        ],
        "last": 3,
        "ratio": 0.75,
    }


def test_waiting_job_without_progress_runs_setup_again(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(CountingJob(2))
    repository.transition(job_id, from_statuses=(JobStatus.NEW,), to_status=JobStatus.WAIT)

    assert runner.run_job(job_id) == JobStatus.COMPLETE

    texts = _texts(repository.get(job_id))
    assert "setup" in texts
    assert "restart" not in texts


def test_process_fault_marks_job_broken_with_single_error(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(FailingJob(5))

    assert runner.run_job(job_id) == JobStatus.BROKEN

    descriptor = repository.get(job_id)
    assert descriptor.payload["calls"] == 1
    errors = _errors(descriptor)
    assert len(errors) == 1
    assert "RuntimeError: boom" in errors[0]


def test_runtime_warning_inside_process_is_promoted_to_failure(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(WarningJob(3))

    assert runner.run_job(job_id) == JobStatus.BROKEN

    descriptor = repository.get(job_id)
    assert descriptor.payload["calls"] == 1
    assert "division result truncated" in _errors(descriptor)[0]


def test_deprecation_warning_does_not_break_job(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(DeprecatedApiJob(2))

    assert runner.run_job(job_id) == JobStatus.COMPLETE
    assert _errors(repository.get(job_id)) == []


def test_fault_in_setup_is_contained_and_marks_job_broken(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(BrokenSetupJob(2))

    assert runner.run_job(job_id) == JobStatus.BROKEN

    errors = _errors(repository.get(job_id))
    assert len(errors) == 1
    assert "missing input file" in errors[0]


def test_external_pause_interrupts_run_loop(make_runner, repository, monkeypatch) -> None:
    runner = make_runner()
    job_id = runner.enqueue(HookJob(10))

    def _pause_after_second_step(job: HookJob) -> None:
        if job.current_step != 2:
            return
        connection = sqlite3.connect(repository.db_path)
        try:
            connection.execute(
                "UPDATE job_descriptors SET status = 'paused' WHERE id = ?",
                (job_id,),
            )
            connection.commit()
        finally:
            connection.close()

    monkeypatch.setattr(HookJob, "hook", _pause_after_second_step)

    assert runner.run_job(job_id) == JobStatus.PAUSED

    descriptor = repository.get(job_id)
    assert descriptor.payload["calls"] == 2
    assert descriptor.steps_processed == 2
    assert any(text.startswith("Job paused at") for text in _texts(descriptor))
    assert _errors(descriptor) == []


def test_run_job_returns_none_for_missing_descriptor(make_runner) -> None:
    assert make_runner().run_job(9_999) is None


def test_run_job_marks_unknown_implementation_broken(make_runner, repository) -> None:
    descriptor = repository.create(
        JobDescriptorCreate(
            title="Ghost",
            signature="ghost-signature",
            implementation="ghost",
            queue_type=QueueType.DEFAULT,
            run_as=None,
            state=JobState(),
        ),
    )

    assert make_runner().run_job(descriptor.id) == JobStatus.BROKEN

    stored = repository.get(descriptor.id)
    assert stored.status == JobStatus.BROKEN
    assert "ghost" in _errors(stored)[0]


@pytest.mark.parametrize("status", [JobStatus.COMPLETE, JobStatus.RUN, JobStatus.PAUSED])
def test_unknown_implementation_leaves_unclaimable_descriptor_alone(
    make_runner,
    repository,
    status: JobStatus,
) -> None:
    descriptor = repository.create(
        JobDescriptorCreate(
            title="Retired",
            signature="retired-signature",
            implementation="retired",
            queue_type=QueueType.DEFAULT,
            run_as=None,
            state=JobState(),
        ),
    )
    repository.transition(descriptor.id, from_statuses=(JobStatus.NEW,), to_status=status)

    assert make_runner().run_job(descriptor.id) == status

    stored = repository.get(descriptor.id)
    assert stored.status == status
    assert _errors(stored) == []


def test_run_job_does_not_start_descriptor_claimed_elsewhere(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(CountingJob(2))
    repository.transition(job_id, from_statuses=(JobStatus.NEW,), to_status=JobStatus.INIT)

    assert runner.run_job(job_id) is None

    descriptor = repository.get(job_id)
    assert descriptor.status == JobStatus.INIT
    assert descriptor.payload["calls"] == 0


def test_job_runs_under_its_principal_and_scope_is_released(make_runner, repository) -> None:
    alice = repository.ensure_principal("alice", "Alice")
    runner = make_runner()
    job_id = runner.enqueue(PrincipalJob(1), principal=alice)

    assert runner.run_job(job_id) == JobStatus.COMPLETE

    payload = repository.get(job_id).payload
    assert payload["seen_user"] == "alice"
    assert payload["explicit_user"] == "alice"
    assert current_principal() is None


def test_unknown_principal_runs_without_impersonation(make_runner, repository) -> None:
    runner = make_runner(default_run_as="ghost-user")
    job_id = runner.enqueue(PrincipalJob(1))

    assert runner.run_job(job_id) == JobStatus.COMPLETE
    assert repository.get(job_id).payload["seen_user"] is None


def test_drain_immediate_runs_every_pending_immediate_job(make_runner, repository) -> None:
    runner = make_runner()
    first = runner.enqueue(ImmediateJob(1, name="one"))
    second = runner.enqueue(ImmediateJob(2, name="two"))
    regular = runner.enqueue(CountingJob(1))

    assert runner.drain_immediate() == [first, second]

    assert repository.get(first).status == JobStatus.COMPLETE
    assert repository.get(second).status == JobStatus.COMPLETE
    assert repository.get(regular).status == JobStatus.NEW


def test_drain_immediate_runs_suspended_job_only_once(make_runner, repository) -> None:
    runner = make_runner(memory_limit_bytes=1_000, memory_probe=lambda: 2_000)
    job_id = runner.enqueue(ImmediateJob(5))

    assert runner.drain_immediate() == [job_id]
    assert repository.get(job_id).status == JobStatus.WAIT


def test_shutdown_drain_runs_on_exit_of_block(make_runner, repository) -> None:
    runner = make_runner()

    with shutdown_drain(runner) as drained:
        job_id = runner.enqueue(ImmediateJob(1))
        assert drained == []

    assert drained == [job_id]
    assert repository.get(job_id).status == JobStatus.COMPLETE


def test_list_counts_ignores_completed_jobs(make_runner) -> None:
    runner = make_runner()
    done = runner.enqueue(CountingJob(1, name="done"))
    runner.enqueue(CountingJob(1, name="pending"))
    runner.enqueue(ImmediateJob(1))
    runner.run_job(done)

    assert runner.list_counts() == {1: 1, 2: 1, 3: 0}
    assert runner.list_counts(include_finished_within=timedelta(hours=1)) == {1: 1, 2: 2, 3: 0}


def test_operator_pause_and_resume(make_runner, repository) -> None:
    runner = make_runner()
    job_id = runner.enqueue(CountingJob(2))

    runner.pause(job_id)
    assert repository.get(job_id).status == JobStatus.PAUSED
    assert runner.select_next(QueueType.DEFAULT).kind is SelectionKind.NONE

    runner.resume(job_id)
    descriptor = repository.get(job_id)
    assert descriptor.status == JobStatus.WAIT
    assert descriptor.resume_count == 0
    assert runner.run_job(job_id) == JobStatus.COMPLETE


def test_resume_rejects_completed_job(make_runner) -> None:
    runner = make_runner()
    job_id = runner.enqueue(CountingJob(1))
    runner.run_job(job_id)

    with pytest.raises(InvalidTransitionError):
        runner.resume(job_id)
