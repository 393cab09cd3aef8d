"""Controllers for job, session and dispatch CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dialectic_orchestrator.config import Settings
from dialectic_orchestrator.orchestrator.dispatch import DispatchWorker
from dialectic_orchestrator.orchestrator.models import (
    GenerationJobCreate,
    JobStatus,
    SessionCreate,
)
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.services import JobStatusService
from dialectic_orchestrator.orchestrator.worker import HttpWorkerClient


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for inserting a generation job."""

    db_path: Path | None
    session_id: str
    stage_slug: str
    user_id: str
    job_type: str | None
    payload_json: str | None
    iteration_number: int = 1
    status: str = JobStatus.PENDING.value
    parent_job_id: str | None = None
    prerequisite_job_id: str | None = None
    max_retries: int | None = None
    is_test_job: bool = False


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    session_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobSetStatusCommand:
    """CLI input for a manual status write."""

    db_path: Path | None
    job_id: str
    status: str
    expected: str | None = None
    attempt_count: int | None = None


@dataclass(slots=True)
class SessionCreateCommand:
    db_path: Path | None
    project_id: str
    stage_slug: str
    session_id: str | None = None
    process_template_id: str | None = None


@dataclass(slots=True)
class SessionShowCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for draining the dispatch outbox."""

    db_path: Path | None
    once: bool
    max_batches: int | None
    max_idle_polls: int = 1


class OrchestratorCliController:
    """Coordinates job store, status service and dispatch CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload_json)
        if command.job_type is not None:
            payload["job_type"] = command.job_type
        with _repository(settings) as repository:
            job = JobStatusService(repository=repository).create_job(
                GenerationJobCreate(
                    session_id=command.session_id,
                    stage_slug=command.stage_slug,
                    user_id=command.user_id,
                    payload=payload,
                    iteration_number=command.iteration_number,
                    status=JobStatus.parse(command.status),
                    parent_job_id=command.parent_job_id,
                    prerequisite_job_id=command.prerequisite_job_id,
                    max_retries=command.max_retries,
                    is_test_job=command.is_test_job,
                ),
            )
        return [
            f"Job created: job_id={job.job_id} stage={job.stage_slug} "
            f"status={job.status.value} job_type={job.job_type or '-'}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus.parse(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                session_id=command.session_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} stage={job.stage_slug} status={job.status.value} "
                f"job_type={job.job_type or '-'} parent={job.parent_job_id or '-'} "
                f"attempt={job.attempt_count}/{job.max_retries}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Session: {job.session_id}",
            f"Stage: {job.stage_slug} (iteration {job.iteration_number})",
            f"Status: {job.status.value}",
            f"Job type: {job.job_type or '-'}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Prerequisite: {job.prerequisite_job_id or '-'}",
            f"Attempt: {job.attempt_count}/{job.max_retries}",
            f"Test job: {'yes' if job.is_test_job else 'no'}",
            f"Error: {json.dumps(job.error_details) if job.error_details is not None else '-'}",
            f"Outbox entries: {len(details.outbox)}",
        ]
        for entry in details.outbox:
            lines.append(
                f"  outbox {entry.entry_id} status={entry.status.value} "
                f"trigger={entry.trigger_status.value} attempts={entry.attempts} "
                f"error={entry.last_error or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def set_status(self, command: JobSetStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcome = JobStatusService(repository=repository).update_status(
                command.job_id,
                command.status,
                expected=command.expected,
                attempt_count=command.attempt_count,
            )
        return [
            f"Status update: job_id={command.job_id} changed={'yes' if outcome.changed else 'no'} "
            f"{outcome.previous.value} -> {outcome.current.value} "
            f"dispatched={'yes' if outcome.dispatched else 'no'} reason={outcome.reason}",
        ]

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.create_session(
                SessionCreate(
                    project_id=command.project_id,
                    current_stage_slug=command.stage_slug,
                    session_id=command.session_id,
                    process_template_id=command.process_template_id,
                ),
            )
        return [
            f"Session created: session_id={session.session_id} status={session.status}",
        ]

    def show_session(self, command: SessionShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.get_session(command.session_id)
        if session is None:
            return [f"Session not found: {command.session_id}"]
        return [
            f"Session: {session.session_id}",
            f"Project: {session.project_id}",
            f"Status: {session.status}",
            f"Current stage: {session.current_stage_slug}",
            f"Iteration: {session.iteration_count}",
        ]

    def run_dispatch(self, command: DispatchRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_dispatch()
        client = HttpWorkerClient(
            url=settings.dispatch.worker_url or "",
            token=settings.dispatch.worker_token,
            timeout_seconds=settings.dispatch.worker_timeout_seconds,
            verify=settings.dispatch.verify_tls,
        )
        try:
            with _repository(settings) as repository:
                worker = DispatchWorker(
                    repository=repository,
                    client=client,
                    batch_size=settings.dispatch.batch_size,
                    poll_interval_seconds=settings.dispatch.poll_interval_seconds,
                    claim_timeout_seconds=settings.dispatch.claim_timeout_seconds,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run(
                        max_batches=command.max_batches,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            client.close()

        return [
            "Dispatch summary: "
            f"batches={summary.batches} claimed={summary.claimed} sent={summary.sent} "
            f"failed={summary.failed} idle_polls={summary.idle_polls}",
        ]


def _parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Job payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("Job payload must be a JSON object.")
    return payload


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        default_max_retries=settings.retry.default_max_retries,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
