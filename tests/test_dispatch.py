from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

import allure
import httpx
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session

from dialectic_orchestrator.orchestrator.dispatch import DispatchWorker, decide_dispatch
from dialectic_orchestrator.orchestrator.models import JobStatus, OutboxStatus
from dialectic_orchestrator.orchestrator.repository import JobRepository
from dialectic_orchestrator.orchestrator.services import JobStatusService
from dialectic_orchestrator.orchestrator.worker import HttpWorkerClient, WorkerDispatchError
from dialectic_orchestrator.storage.common import to_db_datetime, utc_now
from dialectic_orchestrator.storage.sqlmodel_models import DispatchOutbox

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Worker Dispatch"),
]


class RecordingWorkerClient:
    def __init__(self, *, fail_for: set[str] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_for = fail_for or set()

    def invoke(self, job_id: str, payload: dict[str, Any]) -> None:
        self.calls.append((job_id, payload))
        if job_id in self.fail_for:
            raise WorkerDispatchError(f"worker unavailable for {job_id}")


@pytest.mark.parametrize(
    ("previous", "new", "expected"),
    [
        (
            JobStatus.WAITING_FOR_CHILDREN,
            JobStatus.PENDING_NEXT_STEP,
            (True, "pending_next_step"),
        ),
        (JobStatus.PROCESSING, JobStatus.PENDING_CONTINUATION, (True, "pending_continuation")),
        (JobStatus.WAITING_FOR_PREREQUISITE, JobStatus.PENDING, (True, "pending")),
        (JobStatus.PROCESSING, JobStatus.RETRYING, (True, "retrying")),
        (JobStatus.PENDING, JobStatus.PROCESSING, (False, "status_not_dispatchable")),
        (JobStatus.PROCESSING, JobStatus.COMPLETED, (False, "status_not_dispatchable")),
        (
            JobStatus.PROCESSING,
            JobStatus.WAITING_FOR_CHILDREN,
            (False, "status_not_dispatchable"),
        ),
        (JobStatus.PENDING_NEXT_STEP, JobStatus.PENDING_NEXT_STEP, (False, "status_unchanged")),
    ],
)
def test_dispatch_decision_by_status(
    make_job,
    previous: JobStatus,
    new: JobStatus,
    expected: tuple[bool, str],
) -> None:
    job = make_job(previous, attempt_count=1)

    decision = decide_dispatch(job, previous, new)

    assert (decision.dispatch, decision.reason) == expected


def test_insert_as_pending_is_never_dispatched(make_job) -> None:
    job = make_job(JobStatus.PENDING)

    decision = decide_dispatch(job, None, JobStatus.PENDING, inserted=True)

    assert decision.dispatch is False
    assert decision.reason == "initial_insert"


@pytest.mark.parametrize("status", list(JobStatus))
def test_test_jobs_are_never_dispatched(make_job, status: JobStatus) -> None:
    job = make_job(JobStatus.PROCESSING, is_test_job=True)

    decision = decide_dispatch(job, JobStatus.PROCESSING, status)

    assert decision.dispatch is False
    assert decision.reason == "test_job"


def test_retrying_past_ceiling_is_not_dispatched(make_job) -> None:
    job = make_job(JobStatus.PROCESSING, attempt_count=4, max_retries=3)

    decision = decide_dispatch(job, JobStatus.PROCESSING, JobStatus.RETRYING)

    assert decision.dispatch is False
    assert decision.reason == "retry_limit_exceeded"


def test_retrying_within_ceiling_is_dispatched(make_job) -> None:
    job = make_job(JobStatus.PROCESSING, attempt_count=2, max_retries=3)

    assert decide_dispatch(job, JobStatus.PROCESSING, JobStatus.RETRYING).dispatch is True


def test_outbox_consumer_delivers_pending_entries(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.PROCESSING, payload={"model_id": "model-a"})
    service.update_status(job.job_id, JobStatus.PENDING_CONTINUATION)
    client = RecordingWorkerClient()

    summary = DispatchWorker(repository=job_repository, client=client).run_once()

    assert summary.claimed == 1
    assert summary.sent == 1
    assert client.calls == [(job.job_id, {"job_type": "EXECUTE", "model_id": "model-a"})]
    (entry,) = job_repository.list_outbox()
    assert entry.status is OutboxStatus.SENT
    assert entry.attempts == 1
    assert entry.dispatched_at is not None
    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    assert "dispatch_invoked" in [event.event_type for event in details.events]


def test_outbox_consumer_records_failure_without_touching_job_status(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
    caplog: pytest.LogCaptureFixture,
) -> None:
    job = make_job(JobStatus.PROCESSING)
    service.update_status(job.job_id, JobStatus.RETRYING, attempt_count=1)
    client = RecordingWorkerClient(fail_for={job.job_id})

    with caplog.at_level(logging.WARNING, logger="dialectic_orchestrator.orchestrator.dispatch"):
        summary = DispatchWorker(repository=job_repository, client=client).run_once()

    assert summary.failed == 1
    assert summary.sent == 0
    reloaded = job_repository.get_job(job.job_id)
    assert reloaded is not None
    assert reloaded.status is JobStatus.RETRYING
    (entry,) = job_repository.list_outbox()
    assert entry.status is OutboxStatus.FAILED
    assert entry.last_error == f"worker unavailable for {job.job_id}"
    details = job_repository.get_job_details(job.job_id)
    assert details is not None
    failed_events = [event for event in details.events if event.event_type == "dispatch_failed"]
    assert len(failed_events) == 1
    assert "worker unavailable" in failed_events[0].details["error"]
    assert any("Worker dispatch failed" in record.getMessage() for record in caplog.records)


def test_failed_entries_are_not_redelivered(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.WAITING_FOR_CHILDREN)
    service.update_status(job.job_id, JobStatus.PENDING_NEXT_STEP)
    client = RecordingWorkerClient(fail_for={job.job_id})
    worker = DispatchWorker(repository=job_repository, client=client, poll_interval_seconds=0)

    first = worker.run(max_idle_polls=1)
    second = worker.run(max_idle_polls=1)

    assert first.failed == 1
    assert second.claimed == 0
    assert second.idle_polls == 1
    assert len(client.calls) == 1


def test_run_respects_batch_size_and_max_batches(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    for _ in range(3):
        job = make_job(JobStatus.PROCESSING)
        service.update_status(job.job_id, JobStatus.PENDING_CONTINUATION)
    client = RecordingWorkerClient()
    worker = DispatchWorker(
        repository=job_repository,
        client=client,
        batch_size=2,
        poll_interval_seconds=0,
    )

    summary = worker.run(max_batches=1)

    assert summary.batches == 1
    assert summary.sent == 2
    assert len(job_repository.list_outbox(status=OutboxStatus.PENDING)) == 1


def test_claimed_entries_cannot_be_claimed_again(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.PROCESSING)
    service.update_status(job.job_id, JobStatus.PENDING_CONTINUATION)

    first = job_repository.claim_outbox_batch(limit=10)
    second = job_repository.claim_outbox_batch(limit=10)

    assert [entry.job_id for entry in first] == [job.job_id]
    assert first[0].status is OutboxStatus.SENDING
    assert second == []
    assert job_repository.mark_outbox_sent(entry_id=first[0].entry_id) is True
    assert job_repository.mark_outbox_sent(entry_id=first[0].entry_id) is False


def test_http_worker_client_posts_job_with_bearer_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, json={"accepted": True})

    client = HttpWorkerClient(
        url="https://worker.example.com/dialectic-worker",
        token="secret-token",
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )
    try:
        client.invoke("job-1", {"job_type": "EXECUTE", "step_info": {"current_step": 1}})
    finally:
        client.close()

    (request,) = captured
    assert request.method == "POST"
    assert str(request.url) == "https://worker.example.com/dialectic-worker"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {
        "job_id": "job-1",
        "payload": {"job_type": "EXECUTE", "step_info": {"current_step": 1}},
    }


def test_http_worker_client_raises_on_error_status() -> None:
    client = HttpWorkerClient(
        url="https://worker.example.com/run",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
    )

    with pytest.raises(WorkerDispatchError, match="HTTP 503"):
        client.invoke("job-2", {})
    client.close()


def test_http_worker_client_wraps_timeouts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = HttpWorkerClient(
        url="https://worker.example.com/run",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(WorkerDispatchError, match="Timeout"):
        client.invoke("job-3", {})
    client.close()


def test_http_worker_client_omits_authorization_without_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    client = HttpWorkerClient(
        url="http://localhost:8000/run",
        transport=httpx.MockTransport(handler),
    )
    client.invoke("job-4", {})
    client.close()

    assert "Authorization" not in captured[0].headers


def _age_outbox_rows(job_repository: JobRepository, *, seconds: int) -> None:
    stale = to_db_datetime(utc_now() - timedelta(seconds=seconds))
    with Session(job_repository.engine) as session:
        session.exec(sa_update(DispatchOutbox).values(updated_at=stale))
        session.commit()


def test_abandoned_claim_is_redelivered_after_lease(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.WAITING_FOR_CHILDREN)
    service.update_status(job.job_id, JobStatus.PENDING_NEXT_STEP)
    (abandoned,) = job_repository.claim_outbox_batch(limit=10)
    _age_outbox_rows(job_repository, seconds=600)
    client = RecordingWorkerClient()

    summary = DispatchWorker(
        repository=job_repository,
        client=client,
        claim_timeout_seconds=60,
    ).run_once()

    assert summary.claimed == 1
    assert summary.sent == 1
    assert [job_id for job_id, _ in client.calls] == [job.job_id]
    (entry,) = job_repository.list_outbox()
    assert entry.status is OutboxStatus.SENT
    assert entry.attempts == 2
    assert job_repository.mark_outbox_failed(
        entry_id=abandoned.entry_id,
        error="late",
        attempts=abandoned.attempts,
    ) is False


def test_claim_within_lease_is_not_redelivered(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.PROCESSING)
    service.update_status(job.job_id, JobStatus.PENDING_CONTINUATION)
    job_repository.claim_outbox_batch(limit=10)
    client = RecordingWorkerClient()

    summary = DispatchWorker(
        repository=job_repository,
        client=client,
        claim_timeout_seconds=300,
    ).run_once()

    assert summary.claimed == 0
    assert client.calls == []
    (entry,) = job_repository.list_outbox()
    assert entry.status is OutboxStatus.SENDING


def test_late_finish_from_superseded_claim_is_rejected(
    job_repository: JobRepository,
    service: JobStatusService,
    make_job,
) -> None:
    job = make_job(JobStatus.PROCESSING)
    service.update_status(job.job_id, JobStatus.PENDING_CONTINUATION)
    (first,) = job_repository.claim_outbox_batch(limit=10)
    _age_outbox_rows(job_repository, seconds=600)
    (second,) = job_repository.claim_outbox_batch(limit=10, lease_seconds=60)

    assert second.entry_id == first.entry_id
    assert (first.attempts, second.attempts) == (1, 2)
    assert job_repository.mark_outbox_sent(entry_id=first.entry_id, attempts=1) is False
    assert job_repository.mark_outbox_sent(entry_id=second.entry_id, attempts=2) is True
