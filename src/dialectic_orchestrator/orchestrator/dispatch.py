"""Worker dispatch: the invoke-or-skip decision and the outbox consumer."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from dialectic_orchestrator.orchestrator.models import (
    DispatchDecision,
    GenerationJobView,
    JobStatus,
    OutboxEntryView,
)
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.worker import WorkerClient, WorkerDispatchError

logger = logging.getLogger(__name__)

_RESUMABLE_STATUSES = frozenset({JobStatus.PENDING_NEXT_STEP, JobStatus.PENDING_CONTINUATION})


def decide_dispatch(
    job: GenerationJobView,
    previous_status: JobStatus | None,
    new_status: JobStatus,
    *,
    inserted: bool = False,
) -> DispatchDecision:
    """Whether entering ``new_status`` should invoke the worker for ``job``.

    ``job`` carries the counters as they will be after the write.
    """

    if job.is_test_job:
        return DispatchDecision(dispatch=False, reason="test_job")
    if not inserted and previous_status is new_status:
        return DispatchDecision(dispatch=False, reason="status_unchanged")
    if new_status is JobStatus.PENDING:
        if inserted:
            return DispatchDecision(dispatch=False, reason="initial_insert")
        return DispatchDecision(dispatch=True, reason="pending")
    if new_status in _RESUMABLE_STATUSES:
        return DispatchDecision(dispatch=True, reason=new_status.value)
    if new_status is JobStatus.RETRYING:
        if job.retry_limit_exceeded:
            return DispatchDecision(dispatch=False, reason="retry_limit_exceeded")
        return DispatchDecision(dispatch=True, reason="retrying")
    return DispatchDecision(dispatch=False, reason="status_not_dispatchable")


@dataclass(slots=True)
class DispatchRunSummary:
    """Aggregate outbox consumer counters for CLI reporting."""

    claimed: int = 0
    sent: int = 0
    failed: int = 0
    batches: int = 0
    idle_polls: int = 0


class DispatchWorker:
    """Drains the dispatch outbox and invokes the generation worker.

    A failed invocation is recorded on the outbox row and in the audit log; it
    never changes job status and is not retried here. A row left in
    ``sending`` for longer than ``claim_timeout_seconds`` is claimed again.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        client: WorkerClient,
        batch_size: int = 20,
        poll_interval_seconds: float = 2.0,
        claim_timeout_seconds: float | None = 300.0,
    ) -> None:
        self.repository = repository
        self.client = client
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.claim_timeout_seconds = claim_timeout_seconds

    def run_once(self) -> DispatchRunSummary:
        """Claim and deliver at most one batch."""

        summary = DispatchRunSummary()
        entries = self.repository.claim_outbox_batch(
            limit=self.batch_size,
            lease_seconds=self.claim_timeout_seconds,
        )
        if not entries:
            summary.idle_polls = 1
            return summary

        summary.batches = 1
        summary.claimed = len(entries)
        for entry in entries:
            if self._deliver(entry):
                summary.sent += 1
            else:
                summary.failed += 1
        return summary

    def run(
        self,
        *,
        max_batches: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatchRunSummary:
        """Run until the outbox stays empty for ``max_idle_polls`` polls.

        Args:
            max_batches: Stop after this many non-empty batches (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = DispatchRunSummary()
        consecutive_idle = 0
        while True:
            if max_batches is not None and aggregate.batches >= max_batches:
                return aggregate

            summary = self.run_once()
            aggregate.claimed += summary.claimed
            aggregate.sent += summary.sent
            aggregate.failed += summary.failed
            aggregate.batches += summary.batches
            aggregate.idle_polls += summary.idle_polls

            if summary.batches == 0:
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    return aggregate
                if self.poll_interval_seconds > 0:
                    time.sleep(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def _deliver(self, entry: OutboxEntryView) -> bool:
        if entry.attempts > 1:
            logger.info(
                "Re-delivering outbox %s for job %s (claim %d)",
                entry.entry_id,
                entry.job_id,
                entry.attempts,
            )
        try:
            self.client.invoke(entry.job_id, entry.payload)
        except WorkerDispatchError as error:
            logger.warning(
                "Worker dispatch failed for job %s (outbox %s): %s",
                entry.job_id,
                entry.entry_id,
                error,
            )
            self.repository.mark_outbox_failed(
                entry_id=entry.entry_id,
                error=str(error),
                attempts=entry.attempts,
            )
            return False
        if not self.repository.mark_outbox_sent(entry_id=entry.entry_id, attempts=entry.attempts):
            logger.warning(
                "Outbox %s for job %s was reclaimed before its delivery was recorded",
                entry.entry_id,
                entry.job_id,
            )
        logger.info(
            "Dispatched job %s to worker (trigger=%s)",
            entry.job_id,
            entry.trigger_status.value,
        )
        return True
