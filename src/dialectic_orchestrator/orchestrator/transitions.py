"""Pure transition rules for the generation job state machine.

Nothing here touches storage: each rule looks at job snapshots and answers
with the follow-up write, if any, that the orchestrator should attempt.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from dialectic_orchestrator.orchestrator.models import (
    FAILED_STATUSES,
    GenerationJobView,
    JobEventType,
    JobStatus,
    StatusChange,
)


@dataclass(slots=True)
class FollowUp:
    """A compare-and-swap write triggered by another job's transition."""

    job_id: str
    expected: JobStatus
    change: StatusChange
    reason: str
    event_type: JobEventType = JobEventType.STATUS_CHANGED
    details: dict[str, Any] = field(default_factory=dict)


def status_change_for(new_status: JobStatus, **overrides: Any) -> StatusChange:
    """Default timestamp bookkeeping for entering ``new_status``."""

    return StatusChange(
        status=new_status,
        set_started_at=new_status is JobStatus.PROCESSING,
        set_completed_at=new_status.is_terminal,
        **overrides,
    )


def evaluate_parent(
    parent: GenerationJobView,
    children: Sequence[GenerationJobView],
) -> FollowUp | None:
    """Aggregate children outcomes into the parent's next status.

    Only a parent waiting for children is evaluated. Any failed child fails
    the parent; once every child completed the parent either completes (last
    step) or moves on to its next step.
    """

    if parent.status is not JobStatus.WAITING_FOR_CHILDREN or not children:
        return None

    failed = [child.job_id for child in children if child.status in FAILED_STATUSES]
    if failed:
        return FollowUp(
            job_id=parent.job_id,
            expected=JobStatus.WAITING_FOR_CHILDREN,
            change=status_change_for(
                JobStatus.FAILED,
                error_details={"reason": "child_failed", "failed_child_ids": failed},
            ),
            reason="child_failed",
            details={"failed_child_ids": failed},
        )

    if any(child.status is not JobStatus.COMPLETED for child in children):
        return None

    step_info = parent.step_info
    target = (
        JobStatus.COMPLETED
        if step_info is not None and step_info.is_final
        else JobStatus.PENDING_NEXT_STEP
    )
    return FollowUp(
        job_id=parent.job_id,
        expected=JobStatus.WAITING_FOR_CHILDREN,
        change=status_change_for(target, clear_started_at=True),
        reason="children_completed",
        details={"children": len(children)},
    )


def release_dependent(
    prerequisite: GenerationJobView,
    dependent: GenerationJobView,
) -> FollowUp | None:
    """Unblock or fail a job waiting on a prerequisite that just finished."""

    if dependent.status is not JobStatus.WAITING_FOR_PREREQUISITE:
        return None
    if prerequisite.status is JobStatus.COMPLETED:
        return FollowUp(
            job_id=dependent.job_id,
            expected=JobStatus.WAITING_FOR_PREREQUISITE,
            change=status_change_for(JobStatus.PENDING),
            reason="prerequisite_completed",
            details={"prerequisite_job_id": prerequisite.job_id},
        )
    if prerequisite.status in FAILED_STATUSES:
        return FollowUp(
            job_id=dependent.job_id,
            expected=JobStatus.WAITING_FOR_PREREQUISITE,
            change=status_change_for(
                JobStatus.FAILED,
                error_details={
                    "reason": "prerequisite_failed",
                    "prerequisite_job_id": prerequisite.job_id,
                    "prerequisite_status": prerequisite.status.value,
                },
            ),
            reason="prerequisite_failed",
            details={"prerequisite_job_id": prerequisite.job_id},
        )
    return None


def enforce_retry_ceiling(job: GenerationJobView) -> FollowUp | None:
    """A job re-entering ``retrying`` past its ceiling fails for good."""

    if job.status is not JobStatus.RETRYING or not job.retry_limit_exceeded:
        return None
    return FollowUp(
        job_id=job.job_id,
        expected=JobStatus.RETRYING,
        change=status_change_for(
            JobStatus.RETRY_LOOP_FAILED,
            error_details={
                "reason": "retry_limit_exceeded",
                "attempt_count": job.attempt_count,
                "max_retries": job.max_retries,
            },
        ),
        reason="retry_limit_exceeded",
        event_type=JobEventType.RETRY_LIMIT_EXCEEDED,
        details={"attempt_count": job.attempt_count, "max_retries": job.max_retries},
    )
