"""Recipe storage, validation and compilation."""

from dialectic_orchestrator.recipes.compiler import RecipeCompiler
from dialectic_orchestrator.recipes.models import RecipeResult, RecipeStep, StageRecipe

__all__ = ["RecipeCompiler", "RecipeResult", "RecipeStep", "StageRecipe"]
