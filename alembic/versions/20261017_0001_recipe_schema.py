"""Stages, recipe templates and stage recipe instances."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _step_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("step_key", sa.String(), nullable=True),
        sa.Column("step_slug", sa.String(), nullable=True),
        sa.Column("step_name", sa.String(), nullable=True),
        sa.Column("execution_order", sa.Integer(), nullable=True),
        sa.Column("parallel_group", sa.Integer(), nullable=True),
        sa.Column("branch_key", sa.String(), nullable=True),
        sa.Column("job_type", sa.String(), nullable=True),
        sa.Column("prompt_type", sa.String(), nullable=True),
        sa.Column("prompt_template_id", sa.String(), nullable=True),
        sa.Column("output_type", sa.String(), nullable=True),
        sa.Column("granularity_strategy", sa.String(), nullable=True),
        sa.Column("inputs_required_json", sa.String(), nullable=True),
        sa.Column("inputs_relevance_json", sa.String(), nullable=True),
        sa.Column("outputs_required_json", sa.String(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "stages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("active_recipe_instance_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stages_slug", "stages", ["slug"], unique=True)
    op.create_index(
        "ix_stages_active_recipe_instance_id",
        "stages",
        ["active_recipe_instance_id"],
        unique=False,
    )

    op.create_table(
        "stage_transitions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("process_template_id", sa.String(), nullable=False),
        sa.Column("source_stage_slug", sa.String(), nullable=False),
        sa.Column("target_stage_slug", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "process_template_id",
            "source_stage_slug",
            name="uq_stage_transitions_template_source",
        ),
    )
    op.create_index(
        "ix_stage_transitions_process_template_id",
        "stage_transitions",
        ["process_template_id"],
        unique=False,
    )

    op.create_table(
        "recipe_templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "recipe_template_steps",
        *_step_columns(),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["recipe_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_recipe_template_steps_template_id",
        "recipe_template_steps",
        ["template_id"],
        unique=False,
    )

    op.create_table(
        "recipe_template_edges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("from_step_id", sa.String(), nullable=True),
        sa.Column("to_step_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["template_id"], ["recipe_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_recipe_template_edges_template_id",
        "recipe_template_edges",
        ["template_id"],
        unique=False,
    )

    op.create_table(
        "stage_recipe_instances",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("stage_id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=True),
        sa.Column("is_cloned", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["recipe_templates.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stage_recipe_instances_stage_id",
        "stage_recipe_instances",
        ["stage_id"],
        unique=False,
    )

    op.create_table(
        "stage_recipe_steps",
        *_step_columns(),
        sa.Column("instance_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["stage_recipe_instances.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stage_recipe_steps_instance_id",
        "stage_recipe_steps",
        ["instance_id"],
        unique=False,
    )

    op.create_table(
        "stage_recipe_edges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("instance_id", sa.String(), nullable=False),
        sa.Column("from_step_id", sa.String(), nullable=True),
        sa.Column("to_step_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["stage_recipe_instances.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stage_recipe_edges_instance_id",
        "stage_recipe_edges",
        ["instance_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_stage_recipe_edges_instance_id", table_name="stage_recipe_edges")
    op.drop_table("stage_recipe_edges")
    op.drop_index("ix_stage_recipe_steps_instance_id", table_name="stage_recipe_steps")
    op.drop_table("stage_recipe_steps")
    op.drop_index("ix_stage_recipe_instances_stage_id", table_name="stage_recipe_instances")
    op.drop_table("stage_recipe_instances")
    op.drop_index("ix_recipe_template_edges_template_id", table_name="recipe_template_edges")
    op.drop_table("recipe_template_edges")
    op.drop_index("ix_recipe_template_steps_template_id", table_name="recipe_template_steps")
    op.drop_table("recipe_template_steps")
    op.drop_table("recipe_templates")
    op.drop_index("ix_stage_transitions_process_template_id", table_name="stage_transitions")
    op.drop_table("stage_transitions")
    op.drop_index("ix_stages_active_recipe_instance_id", table_name="stages")
    op.drop_index("ix_stages_slug", table_name="stages")
    op.drop_table("stages")
