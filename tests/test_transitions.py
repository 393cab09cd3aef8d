from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import allure
import pytest

from dialectic_orchestrator.orchestrator.models import (
    GenerationJobView,
    JobEventType,
    JobStatus,
    StepInfo,
)
from dialectic_orchestrator.orchestrator.transitions import (
    enforce_retry_ceiling,
    evaluate_parent,
    release_dependent,
    status_change_for,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Transition Rules"),
]

_NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def _job(job_id: str, status: JobStatus, **overrides: Any) -> GenerationJobView:
    values: dict[str, Any] = {
        "job_id": job_id,
        "session_id": "session-1",
        "stage_slug": "thesis",
        "iteration_number": 1,
        "user_id": "user-1",
        "status": status,
        "job_type": "EXECUTE",
        "parent_job_id": None,
        "prerequisite_job_id": None,
        "attempt_count": 0,
        "max_retries": 3,
        "is_test_job": False,
        "payload": {},
        "error_details": None,
        "started_at": _NOW,
        "completed_at": None,
        "created_at": _NOW,
        "updated_at": _NOW,
    }
    values.update(overrides)
    return GenerationJobView(**values)


def _parent(step_info: Any = None, status: JobStatus = JobStatus.WAITING_FOR_CHILDREN):
    payload = {"job_type": "PLAN"}
    if step_info is not None:
        payload["step_info"] = step_info
    return _job("parent", status, job_type="PLAN", payload=payload)


def _children(*statuses: JobStatus) -> list[GenerationJobView]:
    return [
        _job(f"child-{index}", status, parent_job_id="parent")
        for index, status in enumerate(statuses)
    ]


def test_all_children_completed_on_final_step_completes_parent() -> None:
    follow_up = evaluate_parent(
        _parent({"current_step": 2, "total_steps": 2}),
        _children(JobStatus.COMPLETED, JobStatus.COMPLETED),
    )

    assert follow_up is not None
    assert follow_up.expected is JobStatus.WAITING_FOR_CHILDREN
    assert follow_up.change.status is JobStatus.COMPLETED
    assert follow_up.change.clear_started_at is True
    assert follow_up.change.set_completed_at is True


def test_all_children_completed_mid_plan_moves_to_next_step() -> None:
    follow_up = evaluate_parent(
        _parent({"current_step": 1, "total_steps": 3}),
        _children(JobStatus.COMPLETED, JobStatus.COMPLETED),
    )

    assert follow_up is not None
    assert follow_up.change.status is JobStatus.PENDING_NEXT_STEP
    assert follow_up.change.clear_started_at is True
    assert follow_up.change.set_completed_at is False


@pytest.mark.parametrize(
    "step_info",
    [
        None,
        "1/2",
        {"current_step": "1", "total_steps": 2},
        {"current_step": 1},
        {"total_steps": True},
    ],
)
def test_missing_or_invalid_step_info_moves_to_next_step(step_info: Any) -> None:
    follow_up = evaluate_parent(_parent(step_info), _children(JobStatus.COMPLETED))

    assert follow_up is not None
    assert follow_up.change.status is JobStatus.PENDING_NEXT_STEP


@pytest.mark.parametrize("failed_status", [JobStatus.FAILED, JobStatus.RETRY_LOOP_FAILED])
def test_any_failed_child_fails_parent(failed_status: JobStatus) -> None:
    follow_up = evaluate_parent(
        _parent({"current_step": 2, "total_steps": 2}),
        _children(JobStatus.COMPLETED, failed_status, JobStatus.PROCESSING),
    )

    assert follow_up is not None
    assert follow_up.change.status is JobStatus.FAILED
    assert follow_up.change.error_details == {
        "reason": "child_failed",
        "failed_child_ids": ["child-1"],
    }


def test_children_still_running_leave_parent_untouched() -> None:
    assert (
        evaluate_parent(_parent(), _children(JobStatus.COMPLETED, JobStatus.RETRYING)) is None
    )


@pytest.mark.parametrize(
    "parent_status",
    [JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.PENDING_NEXT_STEP, JobStatus.FAILED],
)
def test_parent_not_waiting_for_children_is_never_evaluated(parent_status: JobStatus) -> None:
    parent = _parent({"current_step": 1, "total_steps": 1}, status=parent_status)

    assert evaluate_parent(parent, _children(JobStatus.COMPLETED)) is None


def test_prerequisite_completion_releases_waiting_dependent() -> None:
    prerequisite = _job("pre", JobStatus.COMPLETED)
    dependent = _job("dep", JobStatus.WAITING_FOR_PREREQUISITE, prerequisite_job_id="pre")

    follow_up = release_dependent(prerequisite, dependent)

    assert follow_up is not None
    assert follow_up.expected is JobStatus.WAITING_FOR_PREREQUISITE
    assert follow_up.change.status is JobStatus.PENDING


@pytest.mark.parametrize("failed_status", [JobStatus.FAILED, JobStatus.RETRY_LOOP_FAILED])
def test_prerequisite_failure_fails_dependent(failed_status: JobStatus) -> None:
    prerequisite = _job("pre", failed_status)
    dependent = _job("dep", JobStatus.WAITING_FOR_PREREQUISITE, prerequisite_job_id="pre")

    follow_up = release_dependent(prerequisite, dependent)

    assert follow_up is not None
    assert follow_up.change.status is JobStatus.FAILED
    assert follow_up.change.error_details["prerequisite_job_id"] == "pre"


def test_dependent_not_waiting_is_left_alone() -> None:
    prerequisite = _job("pre", JobStatus.COMPLETED)
    dependent = _job("dep", JobStatus.PROCESSING, prerequisite_job_id="pre")

    assert release_dependent(prerequisite, dependent) is None


def test_retry_ceiling_is_inclusive_of_one_extra_attempt() -> None:
    within = _job("job", JobStatus.RETRYING, attempt_count=3, max_retries=3)
    exceeded = _job("job", JobStatus.RETRYING, attempt_count=4, max_retries=3)

    assert enforce_retry_ceiling(within) is None
    follow_up = enforce_retry_ceiling(exceeded)
    assert follow_up is not None
    assert follow_up.change.status is JobStatus.RETRY_LOOP_FAILED
    assert follow_up.event_type is JobEventType.RETRY_LIMIT_EXCEEDED


def test_retry_ceiling_only_applies_to_retrying_jobs() -> None:
    assert enforce_retry_ceiling(_job("job", JobStatus.PENDING, attempt_count=9)) is None


def test_status_change_bookkeeping() -> None:
    assert status_change_for(JobStatus.PROCESSING).set_started_at is True
    assert status_change_for(JobStatus.RETRY_LOOP_FAILED).set_completed_at is True
    assert status_change_for(JobStatus.PENDING).set_completed_at is False


def test_step_info_parses_only_integer_pairs() -> None:
    assert StepInfo.from_payload({"step_info": {"current_step": 2, "total_steps": 2}}) == StepInfo(
        current_step=2,
        total_steps=2,
    )
    assert StepInfo.from_payload({"step_info": {"current_step": 2.0, "total_steps": 2}}) is None
    assert StepInfo.from_payload({}) is None
