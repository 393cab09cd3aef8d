"""CLI entrypoint for dialectic-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from dialectic_orchestrator import __version__
from dialectic_orchestrator.config import Settings
from dialectic_orchestrator.orchestrator.controllers import (
    DispatchRunCommand,
    JobCreateCommand,
    JobInspectCommand,
    JobListCommand,
    JobSetStatusCommand,
    OrchestratorCliController,
    SessionCreateCommand,
    SessionShowCommand,
)
from dialectic_orchestrator.orchestrator.models import JobStatus
from dialectic_orchestrator.recipes.controllers import RecipeCliController, RecipeShowCommand

click.rich_click.USE_MARKDOWN = True
RECIPE_CONTROLLER = RecipeCliController()
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
JOB_STATUSES = [status.value for status in JobStatus]


@click.group()
@click.version_option(version=__version__, prog_name="dialectic")
def dialectic() -> None:
    """Dialectic recipe and job orchestration CLI."""

    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dialectic.group()
def recipe() -> None:
    """Recipe commands."""


@recipe.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--stage", "stage_slug", required=True, help="Stage slug, for example thesis.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the compiled DTO.")
def recipe_show(db_path: Path | None, stage_slug: str, as_json: bool) -> None:
    """Compile and print the active recipe of a stage."""

    result = RECIPE_CONTROLLER.show(
        RecipeShowCommand(db_path=db_path, stage_slug=stage_slug, as_json=as_json),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Recipe for stage {stage_slug!r} could not be compiled.")


@dialectic.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Owning session id.")
@click.option("--stage", "stage_slug", required=True, help="Stage slug.")
@click.option("--user-id", default="default_user", show_default=True, help="Owning user id.")
@click.option(
    "--job-type",
    type=click.Choice(["PLAN", "EXECUTE", "RENDER"]),
    default=None,
    help="Job type, mirrored into the payload.",
)
@click.option("--payload", "payload_json", default=None, help="Job payload as a JSON object.")
@click.option(
    "--iteration",
    "iteration_number",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Session iteration number.",
)
@click.option(
    "--status",
    type=click.Choice(JOB_STATUSES),
    default=JobStatus.PENDING.value,
    show_default=True,
    help="Initial status.",
)
@click.option("--parent-job-id", default=None, help="Parent job id for child jobs.")
@click.option("--prerequisite-job-id", default=None, help="Job this one waits on.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry ceiling (defaults to DIALECTIC_DEFAULT_MAX_RETRIES).",
)
@click.option("--test-job", "is_test_job", is_flag=True, default=False, help="Never dispatch.")
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    stage_slug: str,
    user_id: str,
    job_type: str | None,
    payload_json: str | None,
    iteration_number: int,
    status: str,
    parent_job_id: str | None,
    prerequisite_job_id: str | None,
    max_retries: int | None,
    is_test_job: bool,
) -> None:
    """Insert a generation job. Inserts never invoke the worker."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.create_job(
                JobCreateCommand(
                    db_path=db_path,
                    session_id=session_id,
                    stage_slug=stage_slug,
                    user_id=user_id,
                    job_type=job_type,
                    payload_json=payload_json,
                    iteration_number=iteration_number,
                    status=status,
                    parent_job_id=parent_job_id,
                    prerequisite_job_id=prerequisite_job_id,
                    max_retries=max_retries,
                    is_test_job=is_test_job,
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(JOB_STATUSES),
    default=None,
    help="Optional status filter.",
)
@click.option("--session-id", default=None, help="Optional session filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    session_id: str | None,
    limit: int,
) -> None:
    """List generation jobs."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status,
                session_id=session_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event and outbox history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_job(
            JobInspectCommand(
                db_path=db_path,
                job_id=job_id,
            ),
        ),
    )


@jobs.command("set-status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--status", type=click.Choice(JOB_STATUSES), required=True, help="New status.")
@click.option(
    "--expected",
    type=click.Choice(JOB_STATUSES),
    default=None,
    help="Only apply when the job currently has this status.",
)
@click.option(
    "--attempt-count",
    type=click.IntRange(min=0),
    default=None,
    help="Attempt counter to store with the new status.",
)
def jobs_set_status(
    db_path: Path | None,
    job_id: str,
    status: str,
    expected: str | None,
    attempt_count: int | None,
) -> None:
    """Apply a status write with parent, prerequisite and session follow-ups."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.set_status(
                JobSetStatusCommand(
                    db_path=db_path,
                    job_id=job_id,
                    status=status,
                    expected=expected,
                    attempt_count=attempt_count,
                ),
            ),
        ),
    )


@dialectic.group()
def sessions() -> None:
    """Dialectic session commands."""


@sessions.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Owning project id.")
@click.option("--stage", "stage_slug", default="thesis", show_default=True, help="First stage.")
@click.option("--session-id", default=None, help="Explicit session id.")
@click.option("--process-template-id", default=None, help="Stage transition template id.")
def sessions_create(
    db_path: Path | None,
    project_id: str,
    stage_slug: str,
    session_id: str | None,
    process_template_id: str | None,
) -> None:
    """Create a session waiting on its first stage."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.create_session(
            SessionCreateCommand(
                db_path=db_path,
                project_id=project_id,
                stage_slug=stage_slug,
                session_id=session_id,
                process_template_id=process_template_id,
            ),
        ),
    )


@sessions.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
def sessions_show(db_path: Path | None, session_id: str) -> None:
    """Show session status and current stage."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.show_session(
            SessionShowCommand(db_path=db_path, session_id=session_id),
        ),
    )


@dialectic.group()
def dispatch() -> None:
    """Worker dispatch commands."""


@dispatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Deliver one outbox batch or loop until idle.",
)
@click.option(
    "--max-batches",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for delivered batches in loop mode.",
)
def dispatch_run(db_path: Path | None, once: bool, max_batches: int | None) -> None:
    """Deliver pending outbox entries to the generation worker."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.run_dispatch(
                DispatchRunCommand(
                    db_path=db_path,
                    once=once,
                    max_batches=max_batches,
                ),
            ),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dialectic()
