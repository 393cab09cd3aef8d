from __future__ import annotations

import allure
import pytest

from dialectic_orchestrator.recipes.compiler import RecipeCompiler
from dialectic_orchestrator.recipes.repository import RecipeRepository
from factories import recipe_step

pytestmark = [
    allure.epic("Recipes"),
    allure.feature("Recipe Storage"),
]


def _seed_template(repository: RecipeRepository) -> tuple[str, str]:
    stage_id = repository.add_stage(slug="thesis", display_name="Thesis")
    template_id = repository.add_template(name="thesis-v1")
    repository.add_template_step(
        template_id=template_id,
        step=recipe_step(
            "planner",
            id="tpl-planner",
            execution_order=1,
            job_type="PLAN",
            prompt_type="Planner",
            output_type="header_context",
            granularity_strategy="all_to_one",
        ),
    )
    repository.add_template_step(
        template_id=template_id,
        step=recipe_step("business_case", id="tpl-business", execution_order=2),
    )
    repository.add_template_step(
        template_id=template_id,
        step=recipe_step(
            "assemble",
            id="tpl-assemble",
            execution_order=3,
            output_type="assembled_document_json",
        ),
    )
    repository.add_template_edge(
        template_id=template_id,
        from_step_id="tpl-planner",
        to_step_id="tpl-business",
    )
    repository.add_template_edge(
        template_id=template_id,
        from_step_id=None,
        to_step_id="tpl-business",
    )
    return stage_id, template_id


def test_stage_lookup_reports_active_instance(recipe_repository: RecipeRepository) -> None:
    stage_id, template_id = _seed_template(recipe_repository)

    assert recipe_repository.get_stage("thesis")["active_recipe_instance_id"] is None
    instance_id = recipe_repository.add_instance(stage_id=stage_id, template_id=template_id)

    stage = recipe_repository.get_stage("thesis")
    assert stage is not None
    assert stage["id"] == stage_id
    assert stage["active_recipe_instance_id"] == instance_id
    assert recipe_repository.get_stage("antithesis") is None


def test_template_backed_instance_compiles_from_template_rows(
    recipe_repository: RecipeRepository,
) -> None:
    stage_id, template_id = _seed_template(recipe_repository)
    instance_id = recipe_repository.add_instance(stage_id=stage_id, template_id=template_id)

    result = RecipeCompiler(recipe_repository).compile("thesis")

    assert result.status == 200
    assert result.data is not None
    assert result.data.instance_id == instance_id
    assert [step.step_key for step in result.data.steps] == ["planner", "business_case"]
    assert [step.id for step in result.data.steps] == ["tpl-planner", "tpl-business"]
    assert [edge.to_dict() for edge in result.data.edges] == [
        {"from_step_id": "tpl-planner", "to_step_id": "tpl-business"},
    ]
    assert result.data.steps[1].inputs_required[0].type == "seed_prompt"


def test_cloned_instance_owns_remapped_steps_and_edges(
    recipe_repository: RecipeRepository,
) -> None:
    stage_id, template_id = _seed_template(recipe_repository)
    instance_id = recipe_repository.add_instance(stage_id=stage_id, template_id=template_id)

    cloned = recipe_repository.clone_instance(instance_id=instance_id)
    recipe_repository.add_instance_step(
        instance_id=instance_id,
        step=recipe_step("feature_spec", id="own-feature", execution_order=2),
    )
    recipe_repository.add_instance_edge(
        instance_id=instance_id,
        from_step_id="own-feature",
        to_step_id="",
    )

    assert cloned == 3
    result = RecipeCompiler(recipe_repository).compile("thesis")
    assert result.status == 200
    assert result.data is not None
    steps = result.data.steps
    assert [step.step_key for step in steps] == ["planner", "business_case", "feature_spec"]
    assert "tpl-planner" not in {step.id for step in steps}
    (edge,) = result.data.edges
    by_key = {step.step_key: step.id for step in steps}
    assert edge.from_step_id == by_key["planner"]
    assert edge.to_step_id == by_key["business_case"]


def test_cloning_twice_is_rejected(recipe_repository: RecipeRepository) -> None:
    stage_id, template_id = _seed_template(recipe_repository)
    instance_id = recipe_repository.add_instance(stage_id=stage_id, template_id=template_id)
    recipe_repository.clone_instance(instance_id=instance_id)

    with pytest.raises(RuntimeError, match="already cloned"):
        recipe_repository.clone_instance(instance_id=instance_id)


def test_clearing_active_instance_yields_configuration_error(
    recipe_repository: RecipeRepository,
) -> None:
    stage_id, template_id = _seed_template(recipe_repository)
    recipe_repository.add_instance(stage_id=stage_id, template_id=template_id)

    recipe_repository.set_active_instance(stage_slug="thesis", instance_id=None)

    assert RecipeCompiler(recipe_repository).compile("thesis").status == 400


def test_dangling_active_instance_is_not_found(recipe_repository: RecipeRepository) -> None:
    _seed_template(recipe_repository)
    recipe_repository.set_active_instance(stage_slug="thesis", instance_id="missing-instance")

    result = RecipeCompiler(recipe_repository).compile("thesis")

    assert result.status == 404


def test_set_active_instance_on_unknown_stage_raises(recipe_repository: RecipeRepository) -> None:
    with pytest.raises(RuntimeError, match="Stage not found"):
        recipe_repository.set_active_instance(stage_slug="ghost", instance_id=None)
