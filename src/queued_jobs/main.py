"""CLI entrypoint for queued-jobs."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from queued_jobs import __version__
from queued_jobs.engine.controllers import (
    EnqueueDemoCommand,
    InspectJobCommand,
    JobQueueCliController,
    ListJobsCommand,
    MutateJobCommand,
    ProcessQueueCommand,
)
from queued_jobs.engine.errors import QueuedJobsError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobQueueCliController()


@click.group()
@click.version_option(version=__version__, prog_name="queued-jobs")
@click.option("--verbose", is_flag=True, default=False, help="Log engine activity at INFO level.")
def queued_jobs(verbose: bool) -> None:
    """Persistent background job queue, driven by cron."""

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@queued_jobs.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queue",
    default=None,
    help="Queue to process: `immediate`, `queued`, `large` or a queue number.",
)
@click.option(
    "--list",
    "list_only",
    is_flag=True,
    default=False,
    help="Only print how many unfinished jobs each queue holds.",
)
def process(db_path: Path | None, queue: str | None, list_only: bool) -> None:
    """Run one scheduling pass for a queue (meant to be called from cron)."""

    _run_guarded(
        lambda: CONTROLLER.process_queue(
            ProcessQueueCommand(db_path=db_path, queue=queue, list_only=list_only),
        ),
    )


@queued_jobs.command("enqueue-demo")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--steps",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Number of steps the countdown job processes.",
)
@click.option("--queue", default=None, help="Queue name or number.")
@click.option("--label", default="Countdown", show_default=True, help="Job title prefix.")
@click.option(
    "--start-after",
    default=None,
    help="ISO timestamp before which the job is not started.",
)
@click.option("--run-as", default=None, help="Principal id the job runs as.")
def enqueue_demo(  # noqa: PLR0913
    db_path: Path | None,
    steps: int,
    queue: str | None,
    label: str,
    start_after: str | None,
    run_as: str | None,
) -> None:
    """Enqueue a built-in countdown job."""

    _run_guarded(
        lambda: CONTROLLER.enqueue_demo(
            EnqueueDemoCommand(
                db_path=db_path,
                steps=steps,
                queue=queue,
                label=label,
                start_after=start_after,
                run_as=run_as,
            ),
        ),
    )


@queued_jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["new", "init", "run", "wait", "paused", "broken", "complete"]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def list_jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, status=status, limit=limit)),
    )


@queued_jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def inspect(db_path: Path | None, job_id: int) -> None:
    """Inspect one job with its message log."""

    _run_guarded(
        lambda: CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)),
    )


@queued_jobs.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def pause(db_path: Path | None, job_id: int) -> None:
    """Pause a queued or running job."""

    _run_guarded(lambda: CONTROLLER.pause_job(MutateJobCommand(db_path=db_path, job_id=job_id)))


@queued_jobs.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", type=int, required=True, help="Job id.")
def resume(db_path: Path | None, job_id: int) -> None:
    """Send a paused or broken job back to the wait queue."""

    _run_guarded(lambda: CONTROLLER.resume_job(MutateJobCommand(db_path=db_path, job_id=job_id)))


def _run_guarded(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (QueuedJobsError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queued_jobs()
