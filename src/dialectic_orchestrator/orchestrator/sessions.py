"""Session stage advancement driven by root job transitions."""

from __future__ import annotations

import logging

from dialectic_orchestrator.orchestrator.models import (
    GenerationJobView,
    JobStatus,
    SessionStatus,
)
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.recipes.models import JobType

logger = logging.getLogger(__name__)

# Jobs parked behind a prerequisite do not hold a stage open.
_SETTLED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.WAITING_FOR_PREREQUISITE})


class SessionAdvancer:
    """Moves a session through ``pending_<stage>``, ``running_<stage>`` and on."""

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def on_transition(self, job: GenerationJobView, previous: JobStatus) -> str | None:
        """Apply the session transition implied by ``job``; returns the new status."""

        if not job.is_root or previous is job.status:
            return None
        if job.status is JobStatus.PROCESSING and job.job_type == JobType.PLAN.value:
            return self._mark_running(job)
        if job.status is JobStatus.COMPLETED and job.job_type != JobType.RENDER.value:
            return self._advance_if_stage_done(job)
        return None

    def _mark_running(self, job: GenerationJobView) -> str | None:
        session = self.repository.get_session(job.session_id)
        if session is None or session.current_stage_slug != job.stage_slug:
            return None
        expected = SessionStatus.pending(job.stage_slug)
        status = SessionStatus.running(job.stage_slug)
        if not self.repository.transition_session(
            session_id=session.session_id,
            expected_status=expected,
            status=status,
        ):
            return None
        logger.info("Session %s: %s -> %s", session.session_id, expected, status)
        return status

    def _advance_if_stage_done(self, job: GenerationJobView) -> str | None:
        session = self.repository.get_session(job.session_id)
        if session is None or session.current_stage_slug != job.stage_slug:
            return None

        root_jobs = self.repository.list_stage_root_jobs(
            session_id=job.session_id,
            stage_slug=job.stage_slug,
            iteration_number=job.iteration_number,
        )
        open_jobs = [
            root.job_id
            for root in root_jobs
            if root.job_type != JobType.RENDER.value and root.status not in _SETTLED_STATUSES
        ]
        if open_jobs:
            logger.debug(
                "Session %s stage %s still has %d open root jobs",
                session.session_id,
                job.stage_slug,
                len(open_jobs),
            )
            return None

        next_stage = self.repository.next_stage_slug(
            process_template_id=session.process_template_id,
            stage_slug=job.stage_slug,
        )
        expected = SessionStatus.running(job.stage_slug)
        if next_stage is None:
            status = SessionStatus.ITERATION_COMPLETE_PENDING_REVIEW
            changed = self.repository.transition_session(
                session_id=session.session_id,
                expected_status=expected,
                status=status,
            )
        else:
            status = SessionStatus.pending(next_stage)
            changed = self.repository.transition_session(
                session_id=session.session_id,
                expected_status=expected,
                status=status,
                current_stage_slug=next_stage,
            )
        if not changed:
            return None
        logger.info("Session %s: %s -> %s", session.session_id, expected, status)
        return status
