"""Recipe storage: stages, templates, recipe instances and their steps."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from dialectic_orchestrator.storage.alembic_runner import upgrade_head
from dialectic_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    utc_now,
)
from dialectic_orchestrator.storage.sqlmodel_models import (
    RecipeStepColumns,
    RecipeTemplate,
    RecipeTemplateEdge,
    RecipeTemplateStep,
    Stage,
    StageRecipeEdge,
    StageRecipeInstance,
    StageRecipeStep,
    StageTransition,
)

_PLAIN_STEP_COLUMNS = (
    "step_key",
    "step_slug",
    "step_name",
    "execution_order",
    "parallel_group",
    "branch_key",
    "job_type",
    "prompt_type",
    "prompt_template_id",
    "output_type",
    "granularity_strategy",
)
_JSON_STEP_COLUMNS = ("inputs_required", "inputs_relevance", "outputs_required")


class RecipeSource(Protocol):
    """Read side the recipe compiler depends on.

    Steps and edges come back as untyped records; validating them is the
    compiler's job.
    """

    def get_stage(self, stage_slug: str) -> Mapping[str, Any] | None: ...

    def load_instance_steps(self, instance_id: str) -> list[Any] | None: ...

    def load_instance_edges(self, instance_id: str) -> list[Any]: ...


class RecipeRepository:
    """SQLModel-backed recipe store."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # -- RecipeSource ------------------------------------------------------

    def get_stage(self, stage_slug: str) -> dict[str, Any] | None:
        with Session(self.engine) as session:
            row = session.exec(select(Stage).where(Stage.slug == stage_slug)).one_or_none()
        if row is None:
            return None
        return {
            "id": row.id,
            "slug": row.slug,
            "display_name": row.display_name,
            "active_recipe_instance_id": row.active_recipe_instance_id,
        }

    def load_instance_steps(self, instance_id: str) -> list[Any] | None:
        """Raw steps of an instance, or None when the instance does not exist.

        A cloned instance owns its steps; otherwise they are read from the
        template the instance points at.
        """

        with Session(self.engine) as session:
            instance = session.get(StageRecipeInstance, instance_id)
            if instance is None:
                return None
            rows: list[RecipeStepColumns]
            if instance.is_cloned:
                rows = list(
                    session.exec(
                        select(StageRecipeStep).where(StageRecipeStep.instance_id == instance_id),
                    ).all(),
                )
            elif instance.template_id is not None:
                rows = list(
                    session.exec(
                        select(RecipeTemplateStep).where(
                            RecipeTemplateStep.template_id == instance.template_id,
                        ),
                    ).all(),
                )
            else:
                rows = []
            return [_step_row_to_record(row) for row in rows]

    def load_instance_edges(self, instance_id: str) -> list[Any]:
        with Session(self.engine) as session:
            instance = session.get(StageRecipeInstance, instance_id)
            if instance is None:
                return []
            if instance.is_cloned:
                edges: list[StageRecipeEdge] | list[RecipeTemplateEdge] = list(
                    session.exec(
                        select(StageRecipeEdge)
                        .where(StageRecipeEdge.instance_id == instance_id)
                        .order_by(col(StageRecipeEdge.id).asc()),
                    ).all(),
                )
            elif instance.template_id is not None:
                edges = list(
                    session.exec(
                        select(RecipeTemplateEdge)
                        .where(RecipeTemplateEdge.template_id == instance.template_id)
                        .order_by(col(RecipeTemplateEdge.id).asc()),
                    ).all(),
                )
            else:
                edges = []
            return [
                {"from_step_id": edge.from_step_id, "to_step_id": edge.to_step_id}
                for edge in edges
            ]

    # -- authoring ---------------------------------------------------------

    def add_stage(
        self,
        *,
        slug: str,
        display_name: str | None = None,
        stage_id: str | None = None,
    ) -> str:
        stage_id = stage_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Stage(
                    id=stage_id,
                    slug=slug,
                    display_name=display_name or slug.title(),
                    active_recipe_instance_id=None,
                    created_at=utc_now(),
                ),
            )
            session.commit()
        return stage_id

    def add_template(self, *, name: str, template_id: str | None = None) -> str:
        template_id = template_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(RecipeTemplate(id=template_id, name=name, created_at=utc_now()))
            session.commit()
        return template_id

    def add_template_step(self, *, template_id: str, step: Mapping[str, Any]) -> str:
        step_id = str(step.get("id") or uuid4())
        with Session(self.engine) as session:
            session.add(RecipeTemplateStep(template_id=template_id, **_step_columns(step_id, step)))
            session.commit()
        return step_id

    def add_template_edge(
        self,
        *,
        template_id: str,
        from_step_id: str | None,
        to_step_id: str | None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                RecipeTemplateEdge(
                    template_id=template_id,
                    from_step_id=from_step_id,
                    to_step_id=to_step_id,
                ),
            )
            session.commit()

    def add_instance(
        self,
        *,
        stage_id: str,
        template_id: str | None,
        is_cloned: bool = False,
        instance_id: str | None = None,
        activate: bool = True,
    ) -> str:
        """Create a recipe instance for a stage, optionally making it active."""

        instance_id = instance_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                StageRecipeInstance(
                    id=instance_id,
                    stage_id=stage_id,
                    template_id=template_id,
                    is_cloned=is_cloned,
                    created_at=utc_now(),
                ),
            )
            if activate:
                session.exec(
                    sa_update(Stage)
                    .where(col(Stage.id) == stage_id)
                    .values(active_recipe_instance_id=instance_id),
                )
            session.commit()
        return instance_id

    def add_instance_step(self, *, instance_id: str, step: Mapping[str, Any]) -> str:
        step_id = str(step.get("id") or uuid4())
        with Session(self.engine) as session:
            session.add(StageRecipeStep(instance_id=instance_id, **_step_columns(step_id, step)))
            session.commit()
        return step_id

    def add_instance_edge(
        self,
        *,
        instance_id: str,
        from_step_id: str | None,
        to_step_id: str | None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                StageRecipeEdge(
                    instance_id=instance_id,
                    from_step_id=from_step_id,
                    to_step_id=to_step_id,
                ),
            )
            session.commit()

    def clone_instance(self, *, instance_id: str) -> int:
        """Copy template steps and edges into the instance and mark it cloned.

        Cloned steps get fresh ids; edges are remapped onto them. Returns the
        number of cloned steps.
        """

        with Session(self.engine) as session:
            instance = session.get(StageRecipeInstance, instance_id)
            if instance is None:
                raise RuntimeError(f"Recipe instance not found: {instance_id}")
            if instance.is_cloned:
                raise RuntimeError(f"Recipe instance already cloned: {instance_id}")
            if instance.template_id is None:
                raise RuntimeError(f"Recipe instance has no template to clone: {instance_id}")

            template_steps = session.exec(
                select(RecipeTemplateStep).where(
                    RecipeTemplateStep.template_id == instance.template_id,
                ),
            ).all()
            id_map: dict[str, str] = {}
            for template_step in template_steps:
                new_id = str(uuid4())
                id_map[template_step.id] = new_id
                values = template_step.model_dump(exclude={"id", "template_id"})
                session.add(StageRecipeStep(id=new_id, instance_id=instance_id, **values))

            template_edges = session.exec(
                select(RecipeTemplateEdge)
                .where(RecipeTemplateEdge.template_id == instance.template_id)
                .order_by(col(RecipeTemplateEdge.id).asc()),
            ).all()
            for edge in template_edges:
                session.add(
                    StageRecipeEdge(
                        instance_id=instance_id,
                        from_step_id=id_map.get(edge.from_step_id or "", edge.from_step_id),
                        to_step_id=id_map.get(edge.to_step_id or "", edge.to_step_id),
                    ),
                )

            instance.is_cloned = True
            session.add(instance)
            session.commit()
            return len(id_map)

    def set_active_instance(self, *, stage_slug: str, instance_id: str | None) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Stage)
                .where(col(Stage.slug) == stage_slug)
                .values(active_recipe_instance_id=instance_id),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Stage not found: {stage_slug}")
            session.commit()

    def add_stage_transition(
        self,
        *,
        process_template_id: str,
        source_stage_slug: str,
        target_stage_slug: str,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                StageTransition(
                    process_template_id=process_template_id,
                    source_stage_slug=source_stage_slug,
                    target_stage_slug=target_stage_slug,
                ),
            )
            session.commit()


def _step_columns(step_id: str, step: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {"id": step_id}
    for name in _PLAIN_STEP_COLUMNS:
        values[name] = step.get(name)
    for name in _JSON_STEP_COLUMNS:
        values[f"{name}_json"] = dump_json(step.get(name, []))
    return values


def _step_row_to_record(row: RecipeStepColumns) -> dict[str, Any]:
    record: dict[str, Any] = {"id": row.id}
    for name in _PLAIN_STEP_COLUMNS:
        record[name] = getattr(row, name)
    for name in _JSON_STEP_COLUMNS:
        record[name] = load_json(getattr(row, f"{name}_json"))
    return record
