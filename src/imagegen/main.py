"""CLI entrypoint for imagegen."""

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from imagegen import __version__
from imagegen.jobs.controllers import (
    CommandResult,
    DeadLettersCommand,
    ImageGenCliController,
    OrphansCommand,
    ToolCallCommand,
    WorkerCommand,
)
from imagegen.jobs.models import ImageModel, JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ImageGenCliController()
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
MODEL_CHOICES = [model.value for model in ImageModel]
STATUS_CHOICES = ["all", *(status.value for status in JobStatus)]

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="imagegen")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (defaults to IMAGEGEN_LOG_LEVEL or WARNING).",
)
def imagegen(log_level: str | None) -> None:
    """Asynchronous image generation jobs."""

    level = (log_level or os.getenv("IMAGEGEN_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=level if level in LOG_LEVELS else "WARNING",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@imagegen.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model", type=click.Choice(MODEL_CHOICES), default=None, help="Synthesis model.")
@click.option(
    "--count",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="How many images to generate from the prompt.",
)
@click.argument("prompt")
def create(db_path: Path | None, model: str | None, count: int, prompt: str) -> None:
    """Create pending generation job(s) and enqueue them."""

    _emit_result(_call(db_path, "create", _compact(prompt=prompt, model=model, count=count)))


@imagegen.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def status(db_path: Path | None, job_id: str) -> None:
    """Show one job."""

    _emit_result(_call(db_path, "getStatus", {"job_id": job_id}))


@imagegen.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(STATUS_CHOICES),
    default="all",
    show_default=True,
    help="Only list jobs in this status.",
)
@click.option("--limit", type=int, default=None, help="Page size (1..50, default 10).")
@click.option("--offset", type=int, default=0, show_default=True, help="Rows to skip.")
def jobs(db_path: Path | None, status_filter: str, limit: int | None, offset: int) -> None:
    """List jobs, most recent first."""

    _emit_result(
        _call(db_path, "list", _compact(status=status_filter, limit=limit, offset=offset)),
    )


@imagegen.command("generations")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--limit", type=int, default=None, help="Page size (1..50, default 10).")
@click.option("--offset", type=int, default=0, show_default=True, help="Rows to skip.")
def generations(db_path: Path | None, limit: int | None, offset: int) -> None:
    """List completed generations, most recent first."""

    _emit_result(_call(db_path, "list_generations", _compact(limit=limit, offset=offset)))


@imagegen.command("wait")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_ids", nargs=-1, required=True)
def wait(db_path: Path | None, job_ids: tuple[str, ...]) -> None:
    """Block until the given job(s) complete, fail or time out."""

    arguments: dict[str, Any] = (
        {"job_id": job_ids[0]} if len(job_ids) == 1 else {"job_ids": list(job_ids)}
    )
    _emit_result(_call(db_path, "wait", arguments))


@imagegen.command("create-and-wait")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model", type=click.Choice(MODEL_CHOICES), default=None, help="Synthesis model.")
@click.option(
    "--count",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="How many images to generate from the prompt.",
)
@click.argument("prompt")
def create_and_wait(db_path: Path | None, model: str | None, count: int, prompt: str) -> None:
    """Create job(s) and block until they finish.

    A worker must be draining the queue in another process.
    """

    _emit_result(
        _call(db_path, "createAndWait", _compact(prompt=prompt, model=model, count=count)),
    )


@imagegen.command("call")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--args",
    "raw_arguments",
    default="{}",
    show_default=True,
    help="Tool arguments as a JSON object.",
)
@click.argument("name")
def call(db_path: Path | None, raw_arguments: str, name: str) -> None:
    """Invoke a tool by name with JSON arguments."""

    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"Invalid JSON: {error}", param_hint="--args") from error
    if not isinstance(arguments, dict):
        raise click.BadParameter("Expected a JSON object.", param_hint="--args")
    _emit_result(_call(db_path, name, arguments))


@imagegen.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one batch or loop until idle.",
)
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed batches in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_batches: int | None,
    max_idle_polls: int,
) -> None:
    """Drain the work queue: synthesize, store and complete jobs."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_batches=max_batches,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@imagegen.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="How many dead-lettered units to print.",
)
def dead_letters(db_path: Path | None, limit: int) -> None:
    """List work units that exhausted their attempts."""

    _emit_lines(
        _run(lambda: CONTROLLER.dead_letters(DeadLettersCommand(db_path=db_path, limit=limit))),
    )


@imagegen.command("orphans")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--grace-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Minimum job age (defaults to IMAGEGEN_ORPHAN_GRACE_SECONDS).",
)
def orphans(db_path: Path | None, grace_seconds: int | None) -> None:
    """List pending jobs that have no work unit on the queue."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.orphans(
                OrphansCommand(db_path=db_path, grace_seconds=grace_seconds),
            ),
        ),
    )


def _call(db_path: Path | None, name: str, arguments: dict[str, Any]) -> CommandResult:
    return _run(
        lambda: CONTROLLER.call_tool(
            ToolCallCommand(db_path=db_path, name=name, arguments=arguments),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _compact(**values: Any) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise SystemExit(1)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    imagegen()
