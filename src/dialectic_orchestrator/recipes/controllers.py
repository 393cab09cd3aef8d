"""Controllers for recipe CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from dialectic_orchestrator.config import Settings
from dialectic_orchestrator.recipes.compiler import RecipeCompiler
from dialectic_orchestrator.recipes.repository import RecipeRepository


@dataclass(slots=True)
class RecipeShowCommand:
    """CLI input for printing a stage's compiled recipe."""

    db_path: Path | None
    stage_slug: str
    as_json: bool = False


@dataclass(slots=True)
class RecipeShowResult:
    lines: list[str]
    success: bool


class RecipeCliController:
    """Compiles recipes for operator inspection."""

    def show(self, command: RecipeShowCommand) -> RecipeShowResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = RecipeCompiler(repository).compile(command.stage_slug)

        if command.as_json:
            return RecipeShowResult(
                lines=[json.dumps(result.to_dict(), ensure_ascii=False, indent=2)],
                success=result.ok,
            )
        if not result.ok or result.data is None:
            message = result.error.message if result.error is not None else "unknown error"
            return RecipeShowResult(
                lines=[f"Recipe error ({result.status}): {message}"],
                success=False,
            )

        recipe = result.data
        lines = [
            f"Stage: {recipe.stage_slug}",
            f"Instance: {recipe.instance_id}",
            f"Steps: {len(recipe.steps)}",
        ]
        for step in recipe.steps:
            group = step.parallel_group if step.parallel_group is not None else "-"
            lines.append(
                f"  {step.execution_order} {step.step_key} job_type={step.job_type.value} "
                f"output_type={step.output_type.value} group={group} "
                f"granularity={step.granularity_strategy.value}",
            )
        lines.append(f"Edges: {len(recipe.edges)}")
        for edge in recipe.edges:
            lines.append(f"  {edge.from_step_id} -> {edge.to_step_id}")
        return RecipeShowResult(lines=lines, success=True)


@contextmanager
def _repository(settings: Settings) -> Iterator[RecipeRepository]:
    repository = RecipeRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
