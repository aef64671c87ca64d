"""CLI entrypoint for ipa-check."""

import logging
import os
from pathlib import Path

import rich_click as click

from ipa_check import __version__
from ipa_check.matching.controllers import (
    MatchCliController,
    StatsCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    WorkerRunCommand,
)
from ipa_check.matching.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
MATCH_CONTROLLER = MatchCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="ipa-check")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Root log level; defaults to IPA_CHECK_LOG_LEVEL or INFO.",
)
def ipa_check(log_level: str | None) -> None:
    """IPA similarity task queue and worker."""

    level = (log_level or os.getenv("IPA_CHECK_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@ipa_check.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Drain the queue and exit, or keep polling until stopped.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop leasing after this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive idle poll cycles.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the match worker until stopped (SIGINT/SIGTERM)."""

    try:
        lines = MATCH_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        )
    except ValueError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    _emit_lines(lines)


@ipa_check.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--artifact-a",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="First artifact file.",
)
@click.option(
    "--artifact-b",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Second artifact file.",
)
@click.option("--task-id", default=None, help="Explicit task id (UUID generated if omitted).")
@click.option(
    "--no-hash",
    is_flag=True,
    default=False,
    help="Do not record SHA-256 digests; the worker then only checks presence.",
)
def tasks_create(
    db_path: Path | None,
    artifact_a: Path,
    artifact_b: Path,
    task_id: str | None,
    no_hash: bool,
) -> None:
    """Register a pending task for two local files."""

    _emit_lines(
        MATCH_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                artifact_a=artifact_a,
                artifact_b=artifact_b,
                task_id=task_id,
                with_hash=not no_hash,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to display.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Tasks to skip, newest first.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int, offset: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        MATCH_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event history."""

    result = MATCH_CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id))
    _emit_lines(result.lines)
    if not result.success:
        click.get_current_context().exit(1)


@tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_stats(db_path: Path | None) -> None:
    """Show task counts per status."""

    _emit_lines(MATCH_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Return a failed task to pending."""

    result = MATCH_CONTROLLER.retry_task(TaskMutateCommand(db_path=db_path, task_id=task_id))
    _emit_lines(result.lines)
    if not result.success:
        click.get_current_context().exit(1)


@tasks.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_reclaim(db_path: Path | None) -> None:
    """Return tasks with expired leases to pending."""

    _emit_lines(MATCH_CONTROLLER.reclaim(StatsCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ipa_check()
