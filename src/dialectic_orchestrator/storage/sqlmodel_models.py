"""SQLModel ORM tables for recipes, sessions, jobs and dispatch outbox."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Stage(SQLModel, table=True):
    __tablename__ = "stages"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    slug: str = Field(unique=True, index=True)
    display_name: str
    active_recipe_instance_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StageTransition(SQLModel, table=True):
    __tablename__ = "stage_transitions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "process_template_id",
            "source_stage_slug",
            name="uq_stage_transitions_template_source",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    process_template_id: str = Field(index=True)
    source_stage_slug: str
    target_stage_slug: str


class RecipeTemplate(SQLModel, table=True):
    __tablename__ = "recipe_templates"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RecipeStepColumns(SQLModel):
    """Columns shared by template steps and cloned instance steps.

    Every column is nullable: rows are validated by the recipe compiler, not by
    the schema.
    """

    id: str = Field(primary_key=True)
    step_key: str | None = None
    step_slug: str | None = None
    step_name: str | None = None
    execution_order: int | None = None
    parallel_group: int | None = None
    branch_key: str | None = None
    job_type: str | None = None
    prompt_type: str | None = None
    prompt_template_id: str | None = None
    output_type: str | None = None
    granularity_strategy: str | None = None
    inputs_required_json: str | None = None
    inputs_relevance_json: str | None = None
    outputs_required_json: str | None = None


class RecipeTemplateStep(RecipeStepColumns, table=True):
    __tablename__ = "recipe_template_steps"  # type: ignore[bad-override]

    template_id: str = Field(
        sa_column=Column(
            ForeignKey("recipe_templates.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )


class RecipeTemplateEdge(SQLModel, table=True):
    __tablename__ = "recipe_template_edges"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    template_id: str = Field(
        sa_column=Column(
            ForeignKey("recipe_templates.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_step_id: str | None = None
    to_step_id: str | None = None


class StageRecipeInstance(SQLModel, table=True):
    __tablename__ = "stage_recipe_instances"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    stage_id: str = Field(
        sa_column=Column(
            ForeignKey("stages.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    template_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("recipe_templates.id", ondelete="SET NULL"), nullable=True),
    )
    is_cloned: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StageRecipeStep(RecipeStepColumns, table=True):
    __tablename__ = "stage_recipe_steps"  # type: ignore[bad-override]

    instance_id: str = Field(
        sa_column=Column(
            ForeignKey("stage_recipe_instances.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )


class StageRecipeEdge(SQLModel, table=True):
    __tablename__ = "stage_recipe_edges"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    instance_id: str = Field(
        sa_column=Column(
            ForeignKey("stage_recipe_instances.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_step_id: str | None = None
    to_step_id: str | None = None


class DialecticSession(SQLModel, table=True):
    __tablename__ = "dialectic_sessions"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    status: str = Field(index=True)
    current_stage_slug: str
    iteration_count: int = Field(default=1)
    process_template_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_jobs_parent_status", "parent_job_id", "status"),
        Index("idx_generation_jobs_prerequisite_status", "prerequisite_job_id", "status"),
        Index("idx_generation_jobs_session_stage", "session_id", "stage_slug", "iteration_number"),
    )

    id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    stage_slug: str
    iteration_number: int = Field(default=1)
    user_id: str = Field(index=True)
    status: str = Field(index=True)
    job_type: str | None = Field(default=None, index=True)
    parent_job_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("generation_jobs.id", ondelete="SET NULL"), nullable=True),
    )
    prerequisite_job_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("generation_jobs.id", ondelete="SET NULL"), nullable=True),
    )
    attempt_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    is_test_job: bool = Field(default=False)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    error_details: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DispatchOutbox(SQLModel, table=True):
    __tablename__ = "dispatch_outbox"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_outbox_status_id", "status", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str
    trigger_status: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
