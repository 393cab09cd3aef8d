"""Domain models for generation jobs, sessions and dispatch outbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable generation job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    WAITING_FOR_CHILDREN = "waiting_for_children"
    WAITING_FOR_PREREQUISITE = "waiting_for_prerequisite"
    PENDING_NEXT_STEP = "pending_next_step"
    PENDING_CONTINUATION = "pending_continuation"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_LOOP_FAILED = "retry_loop_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: str) -> JobStatus:
        try:
            return cls(value)
        except ValueError as error:
            raise ValueError(
                f"Unsupported job status: {value!r}. "
                f"Expected one of: {', '.join(status.value for status in cls)}",
            ) from error


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRY_LOOP_FAILED},
)
FAILED_STATUSES = frozenset({JobStatus.FAILED, JobStatus.RETRY_LOOP_FAILED})


class JobEventType(str, Enum):
    """Audit log entry kinds."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    DISPATCH_ENQUEUED = "dispatch_enqueued"
    DISPATCH_SKIPPED = "dispatch_skipped"
    DISPATCH_INVOKED = "dispatch_invoked"
    DISPATCH_FAILED = "dispatch_failed"
    RETRY_LIMIT_EXCEEDED = "retry_limit_exceeded"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class SessionStatus:
    """Session status strings are derived from the stage slug."""

    ITERATION_COMPLETE_PENDING_REVIEW = "iteration_complete_pending_review"

    @staticmethod
    def pending(stage_slug: str) -> str:
        return f"pending_{stage_slug}"

    @staticmethod
    def running(stage_slug: str) -> str:
        return f"running_{stage_slug}"


@dataclass(slots=True, frozen=True)
class StepInfo:
    """Progress of a multi-step parent job."""

    current_step: int
    total_steps: int

    @property
    def is_final(self) -> bool:
        return self.current_step == self.total_steps

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StepInfo | None:
        """Read ``step_info`` from a job payload; None when absent or malformed."""

        raw = payload.get("step_info")
        if not isinstance(raw, dict):
            return None
        current = raw.get("current_step")
        total = raw.get("total_steps")
        if not _is_int(current) or not _is_int(total):
            return None
        return cls(current_step=current, total_steps=total)


@dataclass(slots=True)
class GenerationJobCreate:
    """Input payload for inserting a generation job."""

    session_id: str
    stage_slug: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    iteration_number: int = 1
    status: JobStatus = JobStatus.PENDING
    parent_job_id: str | None = None
    prerequisite_job_id: str | None = None
    max_retries: int | None = None
    attempt_count: int = 0
    is_test_job: bool = False


@dataclass(slots=True)
class GenerationJobView:
    """Readable job view for orchestration logic and CLI."""

    job_id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    user_id: str
    status: JobStatus
    job_type: str | None
    parent_job_id: str | None
    prerequisite_job_id: str | None
    attempt_count: int
    max_retries: int
    is_test_job: bool
    payload: dict[str, Any]
    error_details: Any
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_root(self) -> bool:
        return self.parent_job_id is None

    @property
    def step_info(self) -> StepInfo | None:
        return StepInfo.from_payload(self.payload)

    @property
    def retry_limit_exceeded(self) -> bool:
        return self.attempt_count >= self.max_retries + 1


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OutboxEntryView:
    """Pending or completed worker invocation."""

    entry_id: int
    job_id: str
    status: OutboxStatus
    trigger_status: JobStatus
    payload: dict[str, Any]
    attempts: int
    last_error: str | None
    dispatched_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream and outbox history."""

    job: GenerationJobView
    events: list[JobEventView]
    outbox: list[OutboxEntryView]


@dataclass(slots=True)
class SessionCreate:
    project_id: str
    current_stage_slug: str
    session_id: str | None = None
    status: str | None = None
    iteration_count: int = 1
    process_template_id: str | None = None


@dataclass(slots=True)
class SessionView:
    session_id: str
    project_id: str
    status: str
    current_stage_slug: str
    iteration_count: int
    process_template_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class DispatchDecision:
    """Whether a status change should invoke the worker, and why."""

    dispatch: bool
    reason: str


@dataclass(slots=True)
class StatusChange:
    """Field updates applied together with a status compare-and-swap."""

    status: JobStatus
    clear_started_at: bool = False
    set_started_at: bool = False
    set_completed_at: bool = False
    attempt_count: int | None = None
    error_details: Any = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
