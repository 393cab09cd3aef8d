"""Use-case services: the single write path for job status."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from dialectic_orchestrator.orchestrator.completion import CompletionOrchestrator
from dialectic_orchestrator.orchestrator.dispatch import decide_dispatch
from dialectic_orchestrator.orchestrator.models import (
    GenerationJobCreate,
    GenerationJobView,
    JobEventType,
    JobStatus,
)
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.sessions import SessionAdvancer
from dialectic_orchestrator.orchestrator.transitions import FollowUp, status_change_for

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    """Raised when a status write targets an unknown job."""


@dataclass(slots=True)
class TransitionOutcome:
    """Result of one requested status write."""

    changed: bool
    previous: JobStatus
    current: JobStatus
    dispatched: bool
    reason: str


class KeyedLock:
    """In-process reentrant lock per key, released entries are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.RLock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.RLock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class JobStatusService:
    """Creates jobs and applies status writes with all their consequences.

    A write is a compare-and-swap that also records the audit event and, when
    the dispatch decision says so, the outbox row. After it commits, the
    session, parent, dependents and retry ceiling are re-evaluated, and every
    follow-up goes through this same path.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        locks: KeyedLock | None = None,
    ) -> None:
        self.repository = repository
        self.completion = CompletionOrchestrator(repository)
        self.sessions = SessionAdvancer(repository)
        self._locks = locks or KeyedLock()

    def create_job(self, payload: GenerationJobCreate) -> GenerationJobView:
        """Insert a job. Inserts never invoke the worker."""

        job = self.repository.create_job(payload)
        decision = decide_dispatch(job, None, job.status, inserted=True)
        self.repository.add_event(
            job_id=job.job_id,
            event_type=JobEventType.DISPATCH_SKIPPED,
            status_to=job.status,
            details={"reason": decision.reason},
        )
        logger.info(
            "Created job %s (session=%s stage=%s status=%s parent=%s)",
            job.job_id,
            job.session_id,
            job.stage_slug,
            job.status.value,
            job.parent_job_id or "-",
        )
        return job

    def update_status(
        self,
        job_id: str,
        status: JobStatus | str,
        *,
        expected: JobStatus | str | None = None,
        attempt_count: int | None = None,
        error_details: Any = None,
    ) -> TransitionOutcome:
        """Move a job to ``status``, optionally only from ``expected``."""

        new_status = JobStatus.parse(status) if isinstance(status, str) else status
        expected_status = JobStatus.parse(expected) if isinstance(expected, str) else expected

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if expected_status is not None and job.status is not expected_status:
            return TransitionOutcome(
                changed=False,
                previous=job.status,
                current=job.status,
                dispatched=False,
                reason="status_conflict",
            )
        if job.status is new_status:
            return TransitionOutcome(
                changed=False,
                previous=job.status,
                current=job.status,
                dispatched=False,
                reason="status_unchanged",
            )

        follow_up = FollowUp(
            job_id=job_id,
            expected=job.status,
            change=status_change_for(
                new_status,
                attempt_count=attempt_count,
                error_details=error_details,
            ),
            reason="requested",
        )
        return self._apply(follow_up, job=job)

    def _apply(
        self,
        follow_up: FollowUp,
        *,
        job: GenerationJobView | None = None,
    ) -> TransitionOutcome:
        outcome, updated = self._write(follow_up, job=job)
        if updated is None:
            return outcome

        self._after_transition(updated, follow_up.expected)
        final = self.repository.get_job(updated.job_id)
        if final is not None:
            outcome.current = final.status
        return outcome

    def _write(
        self,
        follow_up: FollowUp,
        *,
        job: GenerationJobView | None = None,
    ) -> tuple[TransitionOutcome, GenerationJobView | None]:
        """Decide dispatch and compare-and-swap one status; no follow-ups."""

        previous = follow_up.expected
        new_status = follow_up.change.status
        if job is None:
            job = self.repository.get_job(follow_up.job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {follow_up.job_id}")

        projected = job
        if follow_up.change.attempt_count is not None:
            projected = dataclasses.replace(job, attempt_count=follow_up.change.attempt_count)
        decision = decide_dispatch(projected, previous, new_status)

        updated = self.repository.transition_status(
            job_id=follow_up.job_id,
            expected=previous,
            change=follow_up.change,
            decision=decision,
            event_type=follow_up.event_type,
            details={"reason": follow_up.reason, **follow_up.details},
        )
        if updated is None:
            current = self.repository.get_job(follow_up.job_id)
            logger.debug(
                "Lost status swap for job %s (%s -> %s)",
                follow_up.job_id,
                previous.value,
                new_status.value,
            )
            outcome = TransitionOutcome(
                changed=False,
                previous=previous,
                current=current.status if current is not None else previous,
                dispatched=False,
                reason="status_conflict",
            )
            return outcome, None

        logger.info(
            "Job %s: %s -> %s (%s, dispatch=%s)",
            updated.job_id,
            previous.value,
            updated.status.value,
            follow_up.reason,
            decision.reason,
        )
        outcome = TransitionOutcome(
            changed=True,
            previous=previous,
            current=updated.status,
            dispatched=decision.dispatch,
            reason=decision.reason,
        )
        return outcome, updated

    def _after_transition(self, job: GenerationJobView, previous: JobStatus) -> None:
        self.sessions.on_transition(job, previous)

        retry = self.completion.retry_follow_up(job)
        if retry is not None:
            self._apply(retry)
            return

        if not job.status.is_terminal:
            return

        if job.parent_job_id is not None:
            # Only the evaluation and its write run under the parent lock; the
            # parent's own cascade may need other parents' locks.
            parent_follow_up = None
            parent = None
            with self._locks.hold(job.parent_job_id):
                parent_follow_up = self.completion.parent_follow_up(job)
                if parent_follow_up is not None:
                    _, parent = self._write(parent_follow_up)
            if parent_follow_up is not None and parent is not None:
                self._after_transition(parent, parent_follow_up.expected)

        for dependent_follow_up in self.completion.dependent_follow_ups(job):
            self._apply(dependent_follow_up)
