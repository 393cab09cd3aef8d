"""Sessions, generation jobs, job audit events and dispatch outbox."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dialectic_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_stage_slug", sa.String(), nullable=False),
        sa.Column("iteration_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("process_template_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dialectic_sessions_project_id",
        "dialectic_sessions",
        ["project_id"],
        unique=False,
    )
    op.create_index("ix_dialectic_sessions_status", "dialectic_sessions", ["status"], unique=False)

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("stage_slug", sa.String(), nullable=False),
        sa.Column("iteration_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=True),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("prerequisite_job_id", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("is_test_job", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["parent_job_id"], ["generation_jobs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["prerequisite_job_id"],
            ["generation_jobs.id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_session_id", "generation_jobs", ["session_id"])
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_job_type", "generation_jobs", ["job_type"])
    op.create_index(
        "idx_generation_jobs_parent_status",
        "generation_jobs",
        ["parent_job_id", "status"],
    )
    op.create_index(
        "idx_generation_jobs_prerequisite_status",
        "generation_jobs",
        ["prerequisite_job_id", "status"],
    )
    op.create_index(
        "idx_generation_jobs_session_stage",
        "generation_jobs",
        ["session_id", "stage_slug", "iteration_number"],
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"])
    op.create_index("ix_job_events_status_from", "job_events", ["status_from"])
    op.create_index("ix_job_events_status_to", "job_events", ["status_to"])
    op.create_index("idx_job_events_job_time", "job_events", ["job_id", "created_at"])

    op.create_table(
        "dispatch_outbox",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trigger_status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dispatch_outbox_job_id", "dispatch_outbox", ["job_id"])
    op.create_index("idx_dispatch_outbox_status_id", "dispatch_outbox", ["status", "id"])


def downgrade() -> None:
    op.drop_index("idx_dispatch_outbox_status_id", table_name="dispatch_outbox")
    op.drop_index("ix_dispatch_outbox_job_id", table_name="dispatch_outbox")
    op.drop_table("dispatch_outbox")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_status_to", table_name="job_events")
    op.drop_index("ix_job_events_status_from", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_generation_jobs_session_stage", table_name="generation_jobs")
    op.drop_index("idx_generation_jobs_prerequisite_status", table_name="generation_jobs")
    op.drop_index("idx_generation_jobs_parent_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_job_type", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_user_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_session_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
    op.drop_index("ix_dialectic_sessions_status", table_name="dialectic_sessions")
    op.drop_index("ix_dialectic_sessions_project_id", table_name="dialectic_sessions")
    op.drop_table("dialectic_sessions")
