"""Compile a stage's stored recipe instance into a typed, ordered graph."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from dialectic_orchestrator.recipes.models import (
    BranchKey,
    FileType,
    GranularityStrategy,
    InputRule,
    JobType,
    OutputRule,
    PromptType,
    RecipeEdge,
    RecipeResult,
    RecipeStep,
    RelevanceRule,
    StageRecipe,
    is_model_contribution_file_type,
    parse_file_type,
)
from dialectic_orchestrator.recipes.repository import RecipeSource
from dialectic_orchestrator.recipes.validator import (
    first_invalid_step_field,
    is_input_rule,
    is_output_rule,
    is_relevance_rule,
)

logger = logging.getLogger(__name__)

UNKNOWN_STEP_KEY = "<unknown>"


class RecipeDataError(ValueError):
    """Stored recipe data cannot be turned into a typed step."""


class RecipeCompiler:
    """Reads the active recipe instance of a stage and validates every step.

    The compiler never raises: missing stages, missing configuration, bad rows
    and storage failures all come back as a non-200 ``RecipeResult``.
    """

    def __init__(self, source: RecipeSource) -> None:
        self.source = source

    def compile(self, stage_slug: str) -> RecipeResult:
        try:
            return self._compile(stage_slug)
        except SQLAlchemyError as error:
            logger.exception("Recipe storage failure for stage %s", stage_slug)
            return RecipeResult.failure(
                500,
                f"Failed to load recipe for stage {stage_slug}: {error}",
            )

    def _compile(self, stage_slug: str) -> RecipeResult:
        stage = self.source.get_stage(stage_slug)
        if stage is None:
            return RecipeResult.failure(404, f"Stage not found: {stage_slug}")

        instance_id = stage.get("active_recipe_instance_id")
        if not isinstance(instance_id, str) or not instance_id:
            return RecipeResult.failure(400, f"Stage {stage_slug} has no active recipe instance")

        raw_steps = self.source.load_instance_steps(instance_id)
        if raw_steps is None:
            return RecipeResult.failure(404, f"Recipe instance not found: {instance_id}")

        steps: list[RecipeStep] = []
        for raw_step in raw_steps:
            try:
                step = build_recipe_step(raw_step)
            except RecipeDataError as error:
                logger.warning("Rejecting recipe for stage %s: %s", stage_slug, error)
                return RecipeResult.failure(500, str(error))
            if step is not None:
                steps.append(step)
        steps.sort(key=RecipeStep.sort_key)

        edges = filter_edges(self.source.load_instance_edges(instance_id))
        logger.debug(
            "Compiled recipe for stage %s: instance=%s steps=%d edges=%d",
            stage_slug,
            instance_id,
            len(steps),
            len(edges),
        )
        return RecipeResult.success(
            StageRecipe(
                stage_slug=stage_slug,
                instance_id=instance_id,
                steps=steps,
                edges=edges,
            ),
        )


def build_recipe_step(raw_step: Any) -> RecipeStep | None:
    """Turn one raw row into a ``RecipeStep``.

    Returns None for a step whose output is a backend-only file type; raises
    ``RecipeDataError`` for anything malformed.
    """

    if not isinstance(raw_step, Mapping):
        raise RecipeDataError(f"Recipe step {UNKNOWN_STEP_KEY} is not an object")

    step_key = _step_key_label(raw_step)
    bad_field = first_invalid_step_field(raw_step)
    if bad_field is not None:
        raise RecipeDataError(
            f"Recipe step {step_key} has an invalid or missing field: {bad_field}",
        )

    job_type = JobType(raw_step["job_type"])
    raw_output_type = raw_step["output_type"]
    output_type = parse_file_type(raw_output_type)
    if output_type is None:
        raise RecipeDataError(
            f"Recipe step {step_key} has an unknown output_type: {raw_output_type}",
        )
    if not is_model_contribution_file_type(raw_output_type):
        if job_type is JobType.EXECUTE and output_type is FileType.RENDERED_DOCUMENT:
            raise RecipeDataError(
                f"Recipe step {step_key} is an EXECUTE step with the placeholder "
                f"output_type {FileType.RENDERED_DOCUMENT.value}",
            )
        logger.debug(
            "Skipping recipe step %s: output_type %s is not a model contribution",
            step_key,
            raw_output_type,
        )
        return None

    branch_key = raw_step["branch_key"]
    return RecipeStep(
        id=raw_step["id"],
        step_key=raw_step["step_key"],
        step_slug=raw_step["step_slug"],
        step_name=raw_step["step_name"],
        execution_order=raw_step["execution_order"],
        parallel_group=raw_step["parallel_group"],
        branch_key=BranchKey(branch_key) if branch_key is not None else None,
        job_type=job_type,
        prompt_type=PromptType(raw_step["prompt_type"]),
        prompt_template_id=raw_step["prompt_template_id"],
        output_type=output_type,
        granularity_strategy=GranularityStrategy(raw_step["granularity_strategy"]),
        inputs_required=_build_rules(
            raw_step,
            "inputs_required",
            is_input_rule,
            _to_input_rule,
            step_key,
        ),
        inputs_relevance=_build_rules(
            raw_step,
            "inputs_relevance",
            is_relevance_rule,
            _to_relevance_rule,
            step_key,
        ),
        outputs_required=_build_rules(
            raw_step,
            "outputs_required",
            is_output_rule,
            _to_output_rule,
            step_key,
        ),
    )


def filter_edges(raw_edges: list[Any]) -> list[RecipeEdge]:
    """Keep only edges whose two endpoints are non-empty strings."""

    edges: list[RecipeEdge] = []
    for raw_edge in raw_edges:
        if not isinstance(raw_edge, Mapping):
            continue
        from_step_id = raw_edge.get("from_step_id")
        to_step_id = raw_edge.get("to_step_id")
        if _is_step_id(from_step_id) and _is_step_id(to_step_id):
            edges.append(RecipeEdge(from_step_id=from_step_id, to_step_id=to_step_id))
    return edges


def _build_rules(
    raw_step: Mapping[str, Any],
    array_name: str,
    check: Callable[[Any], bool],
    convert: Callable[[Mapping[str, Any]], Any],
    step_key: str,
) -> list[Any]:
    values = raw_step.get(array_name)
    if not isinstance(values, list):
        raise RecipeDataError(f"Recipe step {step_key}: {array_name} must be a list")
    rules = []
    for index, value in enumerate(values):
        if not check(value):
            raise RecipeDataError(
                f"Recipe step {step_key}: invalid {array_name}[{index}]",
            )
        rules.append(convert(value))
    return rules


def _to_input_rule(value: Mapping[str, Any]) -> InputRule:
    return InputRule(
        type=value["type"],
        stage_slug=value.get("stage_slug"),
        document_key=value.get("document_key"),
        required=value.get("required"),
        multiple=value.get("multiple"),
    )


def _to_relevance_rule(value: Mapping[str, Any]) -> RelevanceRule:
    stage_slug = value.get("stage_slug")
    return RelevanceRule(
        document_key=value["document_key"],
        type=value["type"],
        relevance=value["relevance"],
        stage_slug=stage_slug if isinstance(stage_slug, str) else None,
    )


def _to_output_rule(value: Mapping[str, Any]) -> OutputRule:
    details = {key: item for key, item in value.items() if key not in {"type", "document_key"}}
    return OutputRule(type=value["type"], document_key=value["document_key"], details=details)


def _is_step_id(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _step_key_label(raw_step: Mapping[str, Any]) -> str:
    step_key = raw_step.get("step_key")
    if isinstance(step_key, str) and step_key:
        return step_key
    return UNKNOWN_STEP_KEY
