from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from dialectic_orchestrator.main import dialectic
from dialectic_orchestrator.recipes.repository import RecipeRepository

from factories import recipe_step

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DIALECTIC_WORKER_URL", "DIALECTIC_LOG_LEVEL", "DIALECTIC_DEFAULT_MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)


def _invoke(*args: str):
    return CliRunner().invoke(dialectic, list(args))


def _job_id(output: str) -> str:
    match = re.search(r"job_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_recipe_show_prints_compiled_steps(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = RecipeRepository(db_path)
    repository.init_schema()
    stage_id = repository.add_stage(slug="thesis")
    template_id = repository.add_template(name="Thesis")
    repository.add_template_step(
        template_id=template_id,
        step=recipe_step("plan_header", job_type="PLAN", output_type="header_context"),
    )
    repository.add_template_step(
        template_id=template_id,
        step=recipe_step("write_case", execution_order=2),
    )
    repository.add_instance(stage_id=stage_id, template_id=template_id)
    repository.close()

    result = _invoke("recipe", "show", "--db-path", str(db_path), "--stage", "thesis")
    as_json = _invoke("recipe", "show", "--db-path", str(db_path), "--stage", "thesis", "--json")

    assert result.exit_code == 0, result.output
    assert "Steps: 2" in result.output
    assert "plan_header job_type=PLAN output_type=header_context" in result.output
    assert as_json.exit_code == 0, as_json.output
    assert '"status": 200' in as_json.output


def test_recipe_show_unknown_stage_fails(tmp_path: Path) -> None:
    result = _invoke("recipe", "show", "--db-path", str(tmp_path / "cli.db"), "--stage", "nope")

    assert result.exit_code != 0
    assert "Recipe error (404): Stage not found: nope" in result.output


def test_job_lifecycle_through_cli(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    created_session = _invoke(
        "sessions",
        "create",
        "--db-path",
        db_path,
        "--project-id",
        "project-1",
        "--session-id",
        "session-1",
    )
    assert created_session.exit_code == 0, created_session.output
    assert "status=pending_thesis" in created_session.output

    parent = _invoke(
        "jobs",
        "create",
        "--db-path",
        db_path,
        "--session-id",
        "session-1",
        "--stage",
        "thesis",
        "--job-type",
        "PLAN",
        "--status",
        "waiting_for_children",
        "--payload",
        '{"step_info": {"current_step": 1, "total_steps": 1}}',
    )
    assert parent.exit_code == 0, parent.output
    parent_id = _job_id(parent.output)
    child = _invoke(
        "jobs",
        "create",
        "--db-path",
        db_path,
        "--session-id",
        "session-1",
        "--stage",
        "thesis",
        "--job-type",
        "EXECUTE",
        "--parent-job-id",
        parent_id,
        "--status",
        "processing",
    )
    child_id = _job_id(child.output)

    update = _invoke(
        "jobs",
        "set-status",
        "--db-path",
        db_path,
        "--job-id",
        child_id,
        "--status",
        "completed",
    )
    assert update.exit_code == 0, update.output
    assert "changed=yes processing -> completed" in update.output

    inspect = _invoke("jobs", "inspect", "--db-path", db_path, "--job-id", parent_id)
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "Job type: PLAN" in inspect.output

    listed = _invoke("jobs", "list", "--db-path", db_path, "--status", "completed")
    assert "Jobs: 2" in listed.output


def test_set_status_conflict_is_reported(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    created = _invoke(
        "jobs",
        "create",
        "--db-path",
        db_path,
        "--session-id",
        "session-1",
        "--stage",
        "thesis",
    )
    job_id = _job_id(created.output)

    result = _invoke(
        "jobs",
        "set-status",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--status",
        "completed",
        "--expected",
        "processing",
    )

    assert result.exit_code == 0, result.output
    assert "changed=no" in result.output
    assert "reason=status_conflict" in result.output


def test_set_status_reports_status_after_retry_ceiling(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    created = _invoke(
        "jobs",
        "create",
        "--db-path",
        db_path,
        "--session-id",
        "session-1",
        "--stage",
        "thesis",
        "--status",
        "processing",
        "--max-retries",
        "1",
    )
    job_id = _job_id(created.output)

    result = _invoke(
        "jobs",
        "set-status",
        "--db-path",
        db_path,
        "--job-id",
        job_id,
        "--status",
        "retrying",
        "--attempt-count",
        "2",
    )

    assert result.exit_code == 0, result.output
    assert "processing -> retry_loop_failed" in result.output
    assert "reason=retry_limit_exceeded" in result.output
    assert result.output.count("Status update:") == 1


def test_set_status_unknown_job_fails(tmp_path: Path) -> None:
    result = _invoke(
        "jobs",
        "set-status",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--job-id",
        "missing",
        "--status",
        "completed",
    )

    assert result.exit_code != 0
    assert "Job not found: missing" in result.output


def test_create_job_rejects_non_object_payload(tmp_path: Path) -> None:
    result = _invoke(
        "jobs",
        "create",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--session-id",
        "session-1",
        "--stage",
        "thesis",
        "--payload",
        json.dumps([1, 2]),
    )

    assert result.exit_code != 0
    assert "Job payload must be a JSON object." in result.output


def test_dispatch_run_requires_worker_url(tmp_path: Path) -> None:
    result = _invoke("dispatch", "run", "--db-path", str(tmp_path / "cli.db"), "--once")

    assert result.exit_code != 0
    assert "DIALECTIC_WORKER_URL is required" in result.output


def test_dispatch_run_with_empty_outbox(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DIALECTIC_WORKER_URL", "http://127.0.0.1:9/run")

    result = _invoke("dispatch", "run", "--db-path", str(tmp_path / "cli.db"), "--once")

    assert result.exit_code == 0, result.output
    assert "Dispatch summary: batches=0 claimed=0 sent=0 failed=0 idle_polls=1" in result.output
