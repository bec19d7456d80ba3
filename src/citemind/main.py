"""CLI entrypoint for citemind."""

import json
import logging
from pathlib import Path
from typing import Any

import rich_click as click

from citemind import __version__
from citemind.errors import ConfigurationError
from citemind.orchestrator.controllers import (
    EventEmitCommand,
    JobInspectCommand,
    JobListCommand,
    OrchestratorCliController,
    RunInspectCommand,
    RunStatsCommand,
    WorkerCommand,
)
from citemind.orchestrator.models import JobStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="citemind")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def citemind(log_level: str) -> None:
    """CiteMind agent execution engine CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@citemind.group()
def events() -> None:
    """Domain event intake."""


def _parse_payload(_: click.Context, __: click.Parameter, value: str) -> dict[str, Any]:
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"invalid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise click.BadParameter("payload must be a JSON object")
    return payload


@events.command("emit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--event-type", required=True, help="Event type, for example pr.submitted.")
@click.option("--tenant-id", default="default", show_default=True, help="Owning organization.")
@click.option("--user-id", default=None, help="Acting user id.")
@click.option("--entity-type", default=None, help="Type of the entity the event is about.")
@click.option("--entity-id", default=None, help="Id of the entity the event is about.")
@click.option(
    "--payload",
    default="{}",
    show_default=True,
    callback=_parse_payload,
    help="Event payload as a JSON object.",
)
def events_emit(  # noqa: PLR0913
    db_path: Path | None,
    event_type: str,
    tenant_id: str,
    user_id: str | None,
    entity_type: str | None,
    entity_id: str | None,
    payload: dict[str, Any],
) -> None:
    """Store an event and enqueue the jobs it implies."""

    _emit_lines(
        _run(
            ORCHESTRATOR_CONTROLLER.emit_event,
            EventEmitCommand(
                db_path=db_path,
                event_type=event_type,
                tenant_id=tenant_id,
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=payload,
            ),
        ),
    )


@citemind.group()
def jobs() -> None:
    """Job queue inspection."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            ORCHESTRATOR_CONTROLLER.list_jobs,
            JobListCommand(
                db_path=db_path,
                status=status.lower() if status is not None else None,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_inspect(job_id: str, db_path: Path | None) -> None:
    """Show one job with its runs."""

    _emit_lines(
        _run(
            ORCHESTRATOR_CONTROLLER.inspect_job,
            JobInspectCommand(db_path=db_path, job_id=job_id),
        ),
    )


@citemind.group()
def worker() -> None:
    """Job execution."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Claim ready jobs and execute them as agent runs."""

    _emit_lines(
        _run(
            ORCHESTRATOR_CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@citemind.group()
def runs() -> None:
    """Agent run inspection."""


@runs.command("inspect")
@click.argument("run_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def runs_inspect(run_id: str, db_path: Path | None) -> None:
    """Show one run with its steps and artifacts."""

    _emit_lines(
        _run(
            ORCHESTRATOR_CONTROLLER.inspect_run,
            RunInspectCommand(db_path=db_path, run_id=run_id),
        ),
    )


@runs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def runs_stats(db_path: Path | None, hours: int) -> None:
    """Show run status, cost and step metrics."""

    _emit_lines(
        _run(ORCHESTRATOR_CONTROLLER.stats, RunStatsCommand(db_path=db_path, hours=hours)),
    )


def _run(action: Any, command: Any) -> list[str]:
    try:
        return action(command)
    except ConfigurationError as error:
        raise click.ClickException(f"Configuration error: {error}") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    citemind()
