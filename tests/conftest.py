"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from dialectic_orchestrator.orchestrator.models import GenerationJobCreate, JobStatus
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.services import JobStatusService
from dialectic_orchestrator.recipes.repository import RecipeRepository


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "dialectic.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def recipe_repository(db_path: Path) -> Iterator[RecipeRepository]:
    repository = RecipeRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def service(job_repository: JobRepository) -> JobStatusService:
    return JobStatusService(repository=job_repository)


@pytest.fixture()
def make_job(service: JobStatusService):
    """Create a job through the status service with sensible defaults."""

    def _make_job(
        status: JobStatus = JobStatus.PENDING,
        *,
        session_id: str = "session-1",
        stage_slug: str = "thesis",
        job_type: str | None = "EXECUTE",
        **overrides,
    ):
        payload = dict(overrides.pop("payload", {}))
        if job_type is not None:
            payload.setdefault("job_type", job_type)
        return service.create_job(
            GenerationJobCreate(
                session_id=session_id,
                stage_slug=stage_slug,
                user_id="user-1",
                payload=payload,
                status=status,
                **overrides,
            ),
        )

    return _make_job
