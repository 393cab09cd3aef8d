"""Generation job orchestration for the dialectic pipeline.

Jobs live in SQLite. Every status write is a compare-and-swap on the prior
status, so two processes racing on the same job can never both win. After a
write commits, the status service re-evaluates what the new status unblocks
(the parent, jobs waiting on it as a prerequisite, the session stage) and
applies those follow-ups through the same path.

Worker invocations are not made inline. A dispatchable transition writes an
outbox row in its own transaction, and ``DispatchWorker`` delivers those rows
later, so no database transaction is ever held open across a network call.
"""

from dialectic_orchestrator.orchestrator.dispatch import DispatchWorker, decide_dispatch
from dialectic_orchestrator.orchestrator.models import JobStatus
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.services import (
    JobNotFoundError,
    JobStatusService,
    TransitionOutcome,
)

__all__ = [
    "DispatchWorker",
    "JobNotFoundError",
    "JobRepository",
    "JobStatus",
    "JobStatusService",
    "TransitionOutcome",
    "decide_dispatch",
]
