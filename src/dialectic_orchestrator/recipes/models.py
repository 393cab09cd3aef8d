"""Typed recipe DTOs and the enumerations a recipe step may reference."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Kind of work a recipe step spawns."""

    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    RENDER = "RENDER"


class PromptType(str, Enum):
    """Prompt family used to build the model call for a step."""

    SEED = "Seed"
    PLANNER = "Planner"
    TURN = "Turn"
    CONTINUATION = "Continuation"


class GranularityStrategy(str, Enum):
    """How a planner fans inputs out into child jobs."""

    PER_SOURCE_DOCUMENT = "per_source_document"
    PAIRWISE_BY_ORIGIN = "pairwise_by_origin"
    PER_SOURCE_GROUP = "per_source_group"
    ALL_TO_ONE = "all_to_one"
    PER_SOURCE_DOCUMENT_BY_LINEAGE = "per_source_document_by_lineage"
    PER_MODEL = "per_model"


class BranchKey(str, Enum):
    """Document keys a step branch may produce."""

    BUSINESS_CASE = "business_case"
    FEATURE_SPEC = "feature_spec"
    TECHNICAL_APPROACH = "technical_approach"
    SUCCESS_METRICS = "success_metrics"
    BUSINESS_CASE_CRITIQUE = "business_case_critique"
    TECHNICAL_FEASIBILITY_ASSESSMENT = "technical_feasibility_assessment"
    RISK_REGISTER = "risk_register"
    NON_FUNCTIONAL_REQUIREMENTS = "non_functional_requirements"
    DEPENDENCY_MAP = "dependency_map"
    COMPARISON_VECTOR = "comparison_vector"
    SYNTHESIS_PAIRWISE_BUSINESS_CASE = "synthesis_pairwise_business_case"
    SYNTHESIS_PAIRWISE_FEATURE_SPEC = "synthesis_pairwise_feature_spec"
    SYNTHESIS_PAIRWISE_TECHNICAL_APPROACH = "synthesis_pairwise_technical_approach"
    SYNTHESIS_PAIRWISE_SUCCESS_METRICS = "synthesis_pairwise_success_metrics"
    SYNTHESIS_DOCUMENT_BUSINESS_CASE = "synthesis_document_business_case"
    SYNTHESIS_DOCUMENT_FEATURE_SPEC = "synthesis_document_feature_spec"
    SYNTHESIS_DOCUMENT_TECHNICAL_APPROACH = "synthesis_document_technical_approach"
    SYNTHESIS_DOCUMENT_SUCCESS_METRICS = "synthesis_document_success_metrics"
    PRODUCT_REQUIREMENTS = "product_requirements"
    SYSTEM_ARCHITECTURE = "system_architecture"
    TECH_STACK = "tech_stack"
    TECHNICAL_REQUIREMENTS = "technical_requirements"
    MASTER_PLAN = "master_plan"
    MILESTONE_SCHEMA = "milestone_schema"
    UPDATED_MASTER_PLAN = "updated_master_plan"
    ACTIONABLE_CHECKLIST = "actionable_checklist"
    ADVISOR_RECOMMENDATIONS = "advisor_recommendations"


class FileType(str, Enum):
    """Every file type the pipeline knows how to store."""

    # Project and session resources.
    PROJECT_README = "project_readme"
    PENDING_FILE = "pending_file"
    CURRENT_FILE = "current_file"
    COMPLETE_FILE = "complete_file"
    INITIAL_USER_PROMPT = "initial_user_prompt"
    USER_FEEDBACK = "user_feedback"
    PROJECT_SETTINGS_FILE = "project_settings_file"
    GENERAL_RESOURCE = "general_resource"
    PROJECT_EXPORT_ZIP = "project_export_zip"
    SEED_PROMPT = "seed_prompt"
    PLANNER_PROMPT = "planner_prompt"
    TURN_PROMPT = "turn_prompt"
    CONTINUATION_PROMPT = "continuation_prompt"
    ASSEMBLED_DOCUMENT_JSON = "assembled_document_json"
    RENDERED_DOCUMENT = "rendered_document"
    MODEL_CONTRIBUTION_RAW_JSON = "model_contribution_raw_json"
    RAG_CONTEXT_SUMMARY = "rag_context_summary"

    # Model contributions.
    MODEL_CONTRIBUTION_MAIN = "model_contribution_main"
    HEADER_CONTEXT = "header_context"
    SYNTHESIS_HEADER_CONTEXT = "synthesis_header_context"
    HEADER_CONTEXT_PAIRWISE = "header_context_pairwise"
    PAIRWISE_SYNTHESIS_CHUNK = "pairwise_synthesis_chunk"
    REDUCED_SYNTHESIS = "reduced_synthesis"
    SYNTHESIS = "synthesis"
    COMPARISON_VECTOR = "comparison_vector"
    BUSINESS_CASE = "business_case"
    FEATURE_SPEC = "feature_spec"
    TECHNICAL_APPROACH = "technical_approach"
    SUCCESS_METRICS = "success_metrics"
    BUSINESS_CASE_CRITIQUE = "business_case_critique"
    TECHNICAL_FEASIBILITY_ASSESSMENT = "technical_feasibility_assessment"
    RISK_REGISTER = "risk_register"
    NON_FUNCTIONAL_REQUIREMENTS = "non_functional_requirements"
    DEPENDENCY_MAP = "dependency_map"
    SYNTHESIS_PAIRWISE_BUSINESS_CASE = "synthesis_pairwise_business_case"
    SYNTHESIS_PAIRWISE_FEATURE_SPEC = "synthesis_pairwise_feature_spec"
    SYNTHESIS_PAIRWISE_TECHNICAL_APPROACH = "synthesis_pairwise_technical_approach"
    SYNTHESIS_PAIRWISE_SUCCESS_METRICS = "synthesis_pairwise_success_metrics"
    SYNTHESIS_DOCUMENT_BUSINESS_CASE = "synthesis_document_business_case"
    SYNTHESIS_DOCUMENT_FEATURE_SPEC = "synthesis_document_feature_spec"
    SYNTHESIS_DOCUMENT_TECHNICAL_APPROACH = "synthesis_document_technical_approach"
    SYNTHESIS_DOCUMENT_SUCCESS_METRICS = "synthesis_document_success_metrics"
    PRODUCT_REQUIREMENTS = "product_requirements"
    SYSTEM_ARCHITECTURE = "system_architecture"
    TECH_STACK = "tech_stack"
    TECHNICAL_REQUIREMENTS = "technical_requirements"
    MASTER_PLAN = "master_plan"
    MILESTONE_SCHEMA = "milestone_schema"
    UPDATED_MASTER_PLAN = "updated_master_plan"
    ACTIONABLE_CHECKLIST = "actionable_checklist"
    ADVISOR_RECOMMENDATIONS = "advisor_recommendations"


# Backend-only types never surface as a step output.
BACKEND_FILE_TYPES: frozenset[FileType] = frozenset(
    {
        FileType.PROJECT_README,
        FileType.PENDING_FILE,
        FileType.CURRENT_FILE,
        FileType.COMPLETE_FILE,
        FileType.INITIAL_USER_PROMPT,
        FileType.USER_FEEDBACK,
        FileType.PROJECT_SETTINGS_FILE,
        FileType.GENERAL_RESOURCE,
        FileType.PROJECT_EXPORT_ZIP,
        FileType.SEED_PROMPT,
        FileType.PLANNER_PROMPT,
        FileType.TURN_PROMPT,
        FileType.CONTINUATION_PROMPT,
        FileType.ASSEMBLED_DOCUMENT_JSON,
        FileType.RENDERED_DOCUMENT,
        FileType.MODEL_CONTRIBUTION_RAW_JSON,
        FileType.RAG_CONTEXT_SUMMARY,
    },
)

MODEL_CONTRIBUTION_FILE_TYPES: frozenset[FileType] = frozenset(
    member for member in FileType if member not in BACKEND_FILE_TYPES
)

INPUT_RULE_TYPES = frozenset({"document", "feedback", "header_context", "seed_prompt"})


def parse_file_type(value: str) -> FileType | None:
    try:
        return FileType(value)
    except ValueError:
        return None


def is_model_contribution_file_type(value: str) -> bool:
    """Whether a raw output type names a renderable, user-facing artifact."""

    file_type = parse_file_type(value)
    return file_type is not None and file_type in MODEL_CONTRIBUTION_FILE_TYPES


@dataclass(slots=True)
class InputRule:
    """One input a step needs before it can run."""

    type: str
    stage_slug: str | None = None
    document_key: str | None = None
    required: bool | None = None
    multiple: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for key in ("stage_slug", "document_key", "required", "multiple"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(slots=True)
class RelevanceRule:
    """Weight of one input document for the step prompt."""

    document_key: str
    type: str
    relevance: float
    stage_slug: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "document_key": self.document_key,
            "type": self.type,
            "relevance": self.relevance,
        }
        if self.stage_slug is not None:
            payload["stage_slug"] = self.stage_slug
        return payload


@dataclass(slots=True)
class OutputRule:
    """One artifact a step promises to produce.

    Keys beyond ``type`` and ``document_key`` (templates, content hints) are
    carried through untouched in ``details``.
    """

    type: str
    document_key: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.details, "type": self.type, "document_key": self.document_key}


@dataclass(slots=True)
class RecipeStep:
    """Validated, typed recipe step."""

    id: str
    step_key: str
    step_slug: str
    step_name: str
    execution_order: int | float
    parallel_group: int | float | None
    branch_key: BranchKey | None
    job_type: JobType
    prompt_type: PromptType
    prompt_template_id: str | None
    output_type: FileType
    granularity_strategy: GranularityStrategy
    inputs_required: list[InputRule] = field(default_factory=list)
    inputs_relevance: list[RelevanceRule] = field(default_factory=list)
    outputs_required: list[OutputRule] = field(default_factory=list)

    def sort_key(self) -> tuple[int | float, str]:
        return (self.execution_order, self.step_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_key": self.step_key,
            "step_slug": self.step_slug,
            "step_name": self.step_name,
            "execution_order": self.execution_order,
            "parallel_group": self.parallel_group,
            "branch_key": self.branch_key.value if self.branch_key is not None else None,
            "job_type": self.job_type.value,
            "prompt_type": self.prompt_type.value,
            "prompt_template_id": self.prompt_template_id,
            "output_type": self.output_type.value,
            "granularity_strategy": self.granularity_strategy.value,
            "inputs_required": [rule.to_dict() for rule in self.inputs_required],
            "inputs_relevance": [rule.to_dict() for rule in self.inputs_relevance],
            "outputs_required": [rule.to_dict() for rule in self.outputs_required],
        }


@dataclass(slots=True, frozen=True)
class RecipeEdge:
    """Directed dependency between two steps of one recipe instance."""

    from_step_id: str
    to_step_id: str

    def to_dict(self) -> dict[str, str]:
        return {"from_step_id": self.from_step_id, "to_step_id": self.to_step_id}


@dataclass(slots=True)
class StageRecipe:
    """Compiled execution graph of a stage's active recipe instance."""

    stage_slug: str
    instance_id: str
    steps: list[RecipeStep]
    edges: list[RecipeEdge]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stageSlug": self.stage_slug,
            "instanceId": self.instance_id,
            "steps": [step.to_dict() for step in self.steps],
            "edges": [edge.to_dict() for edge in self.edges],
        }


@dataclass(slots=True, frozen=True)
class RecipeError:
    message: str


@dataclass(slots=True)
class RecipeResult:
    """Outcome of a recipe compile: an HTTP-like status plus data or error."""

    status: int
    data: StageRecipe | None = None
    error: RecipeError | None = None

    @property
    def ok(self) -> bool:
        return self.status == 200 and self.data is not None

    @classmethod
    def success(cls, recipe: StageRecipe) -> RecipeResult:
        return cls(status=200, data=recipe)

    @classmethod
    def failure(cls, status: int, message: str) -> RecipeResult:
        return cls(status=status, error=RecipeError(message=message))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.data is not None:
            payload["data"] = self.data.to_dict()
        if self.error is not None:
            payload["error"] = {"message": self.error.message}
        return payload
