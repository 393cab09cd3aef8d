"""Shape predicates for untyped recipe rows.

Every predicate accepts any value, never raises and answers with a bool. The
compiler uses them to decide whether a stored row can become a typed DTO.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from dialectic_orchestrator.recipes.models import (
    INPUT_RULE_TYPES,
    BranchKey,
    GranularityStrategy,
    JobType,
    PromptType,
)

FieldCheck = Callable[[Any], bool]


def is_input_rule(value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    if value.get("type") not in INPUT_RULE_TYPES:
        return False
    for key in ("stage_slug", "document_key"):
        if key in value and not isinstance(value[key], str):
            return False
    for key in ("required", "multiple"):
        if key in value and not isinstance(value[key], bool):
            return False
    return True


def is_relevance_rule(value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    return (
        isinstance(value.get("document_key"), str)
        and isinstance(value.get("type"), str)
        and _is_number(value.get("relevance"))
    )


def is_output_rule(value: Any) -> bool:
    if not isinstance(value, Mapping):
        return False
    return isinstance(value.get("type"), str) and isinstance(value.get("document_key"), str)


def is_recipe_step(value: Any) -> bool:
    """Whether a raw row carries every step field with the exact expected type.

    Rule lists are only checked to be lists; their elements are validated
    separately.
    """

    if not isinstance(value, Mapping) or not value:
        return False
    return first_invalid_step_field(value) is None


def first_invalid_step_field(value: Mapping[str, Any]) -> str | None:
    """Name of the first missing or mistyped step field, or None."""

    for name, check in STEP_FIELD_CHECKS:
        if name not in value or not check(value[name]):
            return name
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_optional_number(value: Any) -> bool:
    return value is None or _is_number(value)


def _enum_member(enum_type: type[Enum]) -> FieldCheck:
    allowed = {member.value for member in enum_type}

    def check(value: Any) -> bool:
        return isinstance(value, str) and value in allowed

    return check


def _optional(check: FieldCheck) -> FieldCheck:
    def optional_check(value: Any) -> bool:
        return value is None or check(value)

    return optional_check


def _is_list(value: Any) -> bool:
    return isinstance(value, list)


STEP_FIELD_CHECKS: tuple[tuple[str, FieldCheck], ...] = (
    ("id", _is_non_empty_str),
    ("step_key", _is_non_empty_str),
    ("step_slug", _is_non_empty_str),
    ("step_name", _is_non_empty_str),
    ("execution_order", _is_number),
    ("parallel_group", _is_optional_number),
    ("branch_key", _optional(_enum_member(BranchKey))),
    ("job_type", _enum_member(JobType)),
    ("prompt_type", _enum_member(PromptType)),
    ("prompt_template_id", _is_optional_str),
    ("output_type", lambda value: isinstance(value, str)),
    ("granularity_strategy", _enum_member(GranularityStrategy)),
    ("inputs_required", _is_list),
    ("inputs_relevance", _is_list),
    ("outputs_required", _is_list),
)
