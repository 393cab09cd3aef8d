"""Persistent job store for generation jobs, sessions and the dispatch outbox."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from dialectic_orchestrator.orchestrator.models import (
    DispatchDecision,
    GenerationJobCreate,
    GenerationJobView,
    JobDetails,
    JobEventType,
    JobEventView,
    JobStatus,
    OutboxEntryView,
    OutboxStatus,
    SessionCreate,
    SessionStatus,
    SessionView,
    StatusChange,
)
from dialectic_orchestrator.storage.alembic_runner import upgrade_head
from dialectic_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from dialectic_orchestrator.storage.sqlmodel_models import (
    DialecticSession,
    DispatchOutbox,
    GenerationJob,
    JobEvent,
    StageTransition,
)

DEFAULT_STAGE_ORDER = ("thesis", "antithesis", "synthesis", "parenthesis", "paralysis")


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every status write is a compare-and-swap on the expected prior status; the
    audit event and any outbox row are written in the same transaction.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        default_max_retries: int = 3,
    ) -> None:
        self.db_path = db_path
        self.default_max_retries = default_max_retries
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs --------------------------------------------------------------

    def create_job(self, payload: GenerationJobCreate) -> GenerationJobView:
        """Insert a job and its ``created`` audit event."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        max_retries = (
            payload.max_retries if payload.max_retries is not None else self.default_max_retries
        )
        job_type = payload.payload.get("job_type")
        with Session(self.engine) as session:
            row = GenerationJob(
                id=job_id,
                session_id=payload.session_id,
                stage_slug=payload.stage_slug,
                iteration_number=payload.iteration_number,
                user_id=payload.user_id,
                status=payload.status.value,
                job_type=job_type if isinstance(job_type, str) else None,
                parent_job_id=payload.parent_job_id,
                prerequisite_job_id=payload.prerequisite_job_id,
                attempt_count=payload.attempt_count,
                max_retries=max_retries,
                is_test_job=payload.is_test_job,
                payload_json=dump_json(payload.payload),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=JobEventType.CREATED,
                status_from=None,
                status_to=payload.status,
                details={
                    "parent_job_id": payload.parent_job_id,
                    "prerequisite_job_id": payload.prerequisite_job_id,
                    "is_test_job": payload.is_test_job,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> GenerationJobView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[GenerationJobView]:
        """List recent jobs, optionally filtered by status and session."""

        with Session(self.engine) as session:
            statement = select(GenerationJob).order_by(
                col(GenerationJob.created_at).desc(),
                col(GenerationJob.id).asc(),
            )
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            if session_id is not None:
                statement = statement.where(GenerationJob.session_id == session_id)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job_view(row) for row in rows]

    def list_children(self, parent_job_id: str) -> list[GenerationJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(col(GenerationJob.parent_job_id) == parent_job_id)
                .order_by(col(GenerationJob.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_dependents(
        self,
        prerequisite_job_id: str,
        *,
        status: JobStatus | None = None,
    ) -> list[GenerationJobView]:
        with Session(self.engine) as session:
            statement = (
                select(GenerationJob)
                .where(col(GenerationJob.prerequisite_job_id) == prerequisite_job_id)
                .order_by(col(GenerationJob.created_at).asc())
            )
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_stage_root_jobs(
        self,
        *,
        session_id: str,
        stage_slug: str,
        iteration_number: int,
    ) -> list[GenerationJobView]:
        """Root jobs (no parent) of one session stage iteration."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob).where(
                    GenerationJob.session_id == session_id,
                    GenerationJob.stage_slug == stage_slug,
                    GenerationJob.iteration_number == iteration_number,
                    col(GenerationJob.parent_job_id).is_(None),
                ),
            ).all()
        return [_to_job_view(row) for row in rows]

    def transition_status(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: JobStatus,
        change: StatusChange,
        decision: DispatchDecision,
        event_type: JobEventType = JobEventType.STATUS_CHANGED,
        details: dict[str, Any] | None = None,
    ) -> GenerationJobView | None:
        """Compare-and-swap a job status.

        Returns the updated job, or None when the stored status no longer
        matches ``expected``. A positive dispatch decision enqueues an outbox
        row in the same transaction.
        """

        now = utc_now()
        values: dict[str, Any] = {
            "status": change.status.value,
            "updated_at": to_db_datetime(now),
        }
        if change.set_started_at:
            values["started_at"] = to_db_datetime(now)
        if change.clear_started_at:
            values["started_at"] = None
        if change.set_completed_at:
            values["completed_at"] = to_db_datetime(now)
        if change.attempt_count is not None:
            values["attempt_count"] = change.attempt_count
        if change.error_details is not None:
            values["error_details"] = dump_json(change.error_details)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.id) == job_id,
                    col(GenerationJob.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            row = session.exec(select(GenerationJob).where(GenerationJob.id == job_id)).one()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=expected,
                status_to=change.status,
                details=details or {},
            )
            if decision.dispatch:
                outbox = DispatchOutbox(
                    job_id=job_id,
                    status=OutboxStatus.PENDING.value,
                    trigger_status=change.status.value,
                    payload_json=row.payload_json,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(outbox)
                session.flush()
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=JobEventType.DISPATCH_ENQUEUED,
                    status_from=expected,
                    status_to=change.status,
                    details={"outbox_id": outbox.id, "reason": decision.reason},
                )
            else:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=JobEventType.DISPATCH_SKIPPED,
                    status_from=expected,
                    status_to=change.status,
                    details={"reason": decision.reason},
                )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def add_event(
        self,
        *,
        job_id: str,
        event_type: JobEventType,
        status_from: JobStatus | None = None,
        status_to: JobStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit event outside a status transition."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream and outbox history."""

        with Session(self.engine) as session:
            job = session.get(GenerationJob, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            outbox_rows = session.exec(
                select(DispatchOutbox)
                .where(DispatchOutbox.job_id == job_id)
                .order_by(col(DispatchOutbox.id).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(job),
                events=[_to_event_view(row) for row in event_rows],
                outbox=[_to_outbox_view(row) for row in outbox_rows],
            )

    # -- outbox ------------------------------------------------------------

    def claim_outbox_batch(
        self,
        *,
        limit: int,
        lease_seconds: float | None = None,
    ) -> list[OutboxEntryView]:
        """Atomically move up to ``limit`` deliverable outbox rows to ``sending``.

        Deliverable means ``pending``, or ``sending`` for longer than
        ``lease_seconds`` (a consumer that claimed it and never finished).
        ``attempts`` is the fencing token: each claim bumps it, and a claim or
        finish only applies while it still holds the value that was read.
        """

        deliverable = col(DispatchOutbox.status) == OutboxStatus.PENDING.value
        if lease_seconds is not None:
            expired_before = to_db_datetime(utc_now() - timedelta(seconds=lease_seconds))
            deliverable = or_(
                deliverable,
                and_(
                    col(DispatchOutbox.status) == OutboxStatus.SENDING.value,
                    col(DispatchOutbox.updated_at) < expired_before,
                ),
            )
        with Session(self.engine) as session:
            candidates = session.exec(
                select(DispatchOutbox)
                .where(deliverable)
                .order_by(col(DispatchOutbox.id).asc())
                .limit(limit),
            ).all()
            observed = [
                (row.id, row.status, row.attempts) for row in candidates if row.id is not None
            ]

        claimed: list[OutboxEntryView] = []
        for entry_id, status, attempts in observed:
            now = utc_now()
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(DispatchOutbox)
                    .where(
                        col(DispatchOutbox.id) == entry_id,
                        col(DispatchOutbox.status) == status,
                        col(DispatchOutbox.attempts) == attempts,
                    )
                    .values(
                        status=OutboxStatus.SENDING.value,
                        attempts=attempts + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                row = session.exec(
                    select(DispatchOutbox).where(DispatchOutbox.id == entry_id),
                ).one()
                session.commit()
                claimed.append(_to_outbox_view(row))
        return claimed

    def mark_outbox_sent(self, *, entry_id: int, attempts: int | None = None) -> bool:
        return self._finish_outbox(
            entry_id=entry_id,
            attempts=attempts,
            status=OutboxStatus.SENT,
            event_type=JobEventType.DISPATCH_INVOKED,
            error=None,
        )

    def mark_outbox_failed(
        self,
        *,
        entry_id: int,
        error: str,
        attempts: int | None = None,
    ) -> bool:
        return self._finish_outbox(
            entry_id=entry_id,
            attempts=attempts,
            status=OutboxStatus.FAILED,
            event_type=JobEventType.DISPATCH_FAILED,
            error=error,
        )

    def list_outbox(
        self,
        *,
        status: OutboxStatus | None = None,
        limit: int = 50,
    ) -> list[OutboxEntryView]:
        with Session(self.engine) as session:
            statement = select(DispatchOutbox).order_by(col(DispatchOutbox.id).asc())
            if status is not None:
                statement = statement.where(DispatchOutbox.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_outbox_view(row) for row in rows]

    def _finish_outbox(
        self,
        *,
        entry_id: int,
        attempts: int | None,
        status: OutboxStatus,
        event_type: JobEventType,
        error: str | None,
    ) -> bool:
        now = utc_now()
        conditions = [
            col(DispatchOutbox.id) == entry_id,
            col(DispatchOutbox.status) == OutboxStatus.SENDING.value,
        ]
        if attempts is not None:
            conditions.append(col(DispatchOutbox.attempts) == attempts)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DispatchOutbox)
                .where(*conditions)
                .values(
                    status=status.value,
                    last_error=error,
                    dispatched_at=to_db_datetime(now) if status == OutboxStatus.SENT else None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = session.exec(select(DispatchOutbox).where(DispatchOutbox.id == entry_id)).one()
            details: dict[str, Any] = {"outbox_id": entry_id, "attempts": row.attempts}
            if error is not None:
                details["error"] = error
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()
            return True

    # -- sessions ----------------------------------------------------------

    def create_session(self, payload: SessionCreate) -> SessionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = DialecticSession(
                id=payload.session_id or str(uuid4()),
                project_id=payload.project_id,
                status=payload.status or SessionStatus.pending(payload.current_stage_slug),
                current_stage_slug=payload.current_stage_slug,
                iteration_count=payload.iteration_count,
                process_template_id=payload.process_template_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def get_session(self, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.get(DialecticSession, session_id)
            return _to_session_view(row) if row is not None else None

    def transition_session(
        self,
        *,
        session_id: str,
        expected_status: str,
        status: str,
        current_stage_slug: str | None = None,
    ) -> bool:
        """Compare-and-swap a session status (and optionally its current stage)."""

        values: dict[str, Any] = {"status": status, "updated_at": to_db_datetime(utc_now())}
        if current_stage_slug is not None:
            values["current_stage_slug"] = current_stage_slug
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DialecticSession)
                .where(
                    col(DialecticSession.id) == session_id,
                    col(DialecticSession.status) == expected_status,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def next_stage_slug(
        self,
        *,
        process_template_id: str | None,
        stage_slug: str,
    ) -> str | None:
        """Stage that follows ``stage_slug``; None for the last stage.

        Sessions without a process template follow the default dialectic order.
        """

        if process_template_id is None:
            return _default_next_stage(stage_slug)
        with Session(self.engine) as session:
            row = session.exec(
                select(StageTransition).where(
                    StageTransition.process_template_id == process_template_id,
                    StageTransition.source_stage_slug == stage_slug,
                ),
            ).one_or_none()
        return row.target_stage_slug if row is not None else None

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: JobEventType,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type.value,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _default_next_stage(stage_slug: str) -> str | None:
    if stage_slug not in DEFAULT_STAGE_ORDER:
        return None
    index = DEFAULT_STAGE_ORDER.index(stage_slug)
    if index + 1 >= len(DEFAULT_STAGE_ORDER):
        return None
    return DEFAULT_STAGE_ORDER[index + 1]


def _json_object(raw: str | None) -> dict[str, Any]:
    parsed = load_json(raw)
    return parsed if isinstance(parsed, dict) else {}


def _optional_status(value: str | None) -> JobStatus | None:
    return JobStatus(value) if value is not None else None


def _to_job_view(row: GenerationJob) -> GenerationJobView:
    return GenerationJobView(
        job_id=row.id,
        session_id=row.session_id,
        stage_slug=row.stage_slug,
        iteration_number=row.iteration_number,
        user_id=row.user_id,
        status=JobStatus(row.status),
        job_type=row.job_type,
        parent_job_id=row.parent_job_id,
        prerequisite_job_id=row.prerequisite_job_id,
        attempt_count=row.attempt_count,
        max_retries=row.max_retries,
        is_test_job=row.is_test_job,
        payload=_json_object(row.payload_json),
        error_details=load_json(row.error_details),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: JobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=_optional_status(row.status_from),
        status_to=_optional_status(row.status_to),
        created_at=to_utc_aware_datetime(row.created_at),
        details=_json_object(row.details_json),
    )


def _to_outbox_view(row: DispatchOutbox) -> OutboxEntryView:
    return OutboxEntryView(
        entry_id=row.id or 0,
        job_id=row.job_id,
        status=OutboxStatus(row.status),
        trigger_status=JobStatus(row.trigger_status),
        payload=_json_object(row.payload_json),
        attempts=row.attempts,
        last_error=row.last_error,
        dispatched_at=optional_utc(row.dispatched_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_view(row: DialecticSession) -> SessionView:
    return SessionView(
        session_id=row.id,
        project_id=row.project_id,
        status=row.status,
        current_stage_slug=row.current_stage_slug,
        iteration_count=row.iteration_count,
        process_template_id=row.process_template_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
