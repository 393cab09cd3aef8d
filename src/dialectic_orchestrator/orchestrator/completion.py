"""Completion orchestration: what a job's terminal transition unblocks."""

from __future__ import annotations

import logging

from dialectic_orchestrator.orchestrator.models import GenerationJobView, JobStatus
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.transitions import (
    FollowUp,
    enforce_retry_ceiling,
    evaluate_parent,
    release_dependent,
)

logger = logging.getLogger(__name__)


class CompletionOrchestrator:
    """Reads the job graph around a transitioned job and plans follow-up writes.

    Planning is read-only and may be repeated freely; the follow-ups are
    compare-and-swap writes, so a stale plan simply loses the swap.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def parent_follow_up(self, job: GenerationJobView) -> FollowUp | None:
        """Re-evaluate the parent of a child that reached a terminal status."""

        if not job.status.is_terminal or job.parent_job_id is None:
            return None
        parent = self.repository.get_job(job.parent_job_id)
        if parent is None:
            logger.warning("Parent job %s of %s not found", job.parent_job_id, job.job_id)
            return None
        if parent.status is not JobStatus.WAITING_FOR_CHILDREN:
            logger.debug(
                "Parent %s is %s, not waiting for children; skipping",
                parent.job_id,
                parent.status.value,
            )
            return None
        children = self.repository.list_children(parent.job_id)
        return evaluate_parent(parent, children)

    def dependent_follow_ups(self, job: GenerationJobView) -> list[FollowUp]:
        """Release or fail every job waiting on ``job`` as its prerequisite."""

        if not job.status.is_terminal:
            return []
        dependents = self.repository.list_dependents(
            job.job_id,
            status=JobStatus.WAITING_FOR_PREREQUISITE,
        )
        follow_ups: list[FollowUp] = []
        for dependent in dependents:
            follow_up = release_dependent(job, dependent)
            if follow_up is not None:
                follow_ups.append(follow_up)
        return follow_ups

    def retry_follow_up(self, job: GenerationJobView) -> FollowUp | None:
        return enforce_retry_ceiling(job)
