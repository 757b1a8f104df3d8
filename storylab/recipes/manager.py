"""Recipe manager — recipe CRUD and persisted execution records."""

from __future__ import annotations

import logging

from storylab.errors import NotFoundError, ValidationError
from storylab.models import Recipe, RecipeRun, generate_id, utc_now
from storylab.recipes.graph import assert_valid
from storylab.store import DocumentStore

logger = logging.getLogger(__name__)

RECIPES = "recipes"
EXECUTIONS = "recipe_executions"


class RecipeManager:
    def __init__(self, db: DocumentStore):
        self.db = db

    # -- recipes -------------------------------------------------------------

    def create_recipe(self, data: dict, created_by: str = "system") -> Recipe:
        recipe = Recipe.from_dict(data)
        recipe.created_by = created_by
        if self.db.collection(RECIPES).doc(recipe.id).exists:
            raise ValidationError(f"Recipe {recipe.id} already exists")
        assert_valid(recipe)
        self.db.collection(RECIPES).doc(recipe.id).set(recipe.to_dict())
        logger.info(f"Created recipe {recipe.id} ({len(recipe.nodes)} nodes)")
        return recipe

    def get_recipe(self, recipe_id: str) -> Recipe:
        data = self.db.collection(RECIPES).doc(recipe_id).get()
        if not data:
            raise NotFoundError(f"Recipe {recipe_id} not found", recipe_id=recipe_id)
        return Recipe.from_dict(data)

    def list_recipes(self, stage_type: str | None = None, tag: str | None = None, active_only: bool = True) -> list[Recipe]:
        recipes = [Recipe.from_dict(d) for _, d in self.db.collection(RECIPES).stream()]
        if stage_type:
            recipes = [r for r in recipes if r.stage_type == stage_type]
        if tag:
            recipes = [r for r in recipes if tag in r.tags]
        if active_only:
            recipes = [r for r in recipes if r.is_active]
        return sorted(recipes, key=lambda r: r.updated_at, reverse=True)

    def search_recipes(self, query: str) -> list[Recipe]:
        q = query.lower()
        return [
            r for r in self.list_recipes(active_only=False)
            if q in r.name.lower() or q in r.description.lower() or any(q in t.lower() for t in r.tags)
        ]

    def update_recipe(self, recipe_id: str, updates: dict) -> Recipe:
        """Replace editable fields and bump the version. The result must still validate."""
        current = self.get_recipe(recipe_id).to_dict()
        if updates.get("id", recipe_id) != recipe_id:
            raise ValidationError("Cannot change a recipe's id")
        for key in ("name", "description", "stageType", "nodes", "edges"):
            if key in updates:
                current[key] = updates[key]
        if "metadata" in updates:
            current["metadata"] = {**current["metadata"], **updates["metadata"]}
        current["version"] = int(current.get("version", 1)) + 1
        current["metadata"]["updatedAt"] = utc_now()

        recipe = Recipe.from_dict(current)
        assert_valid(recipe)
        self.db.collection(RECIPES).doc(recipe_id).set(recipe.to_dict())
        logger.info(f"Updated recipe {recipe_id} to v{recipe.version}")
        return recipe

    def delete_recipe(self, recipe_id: str):
        self.get_recipe(recipe_id)
        self.db.collection(RECIPES).doc(recipe_id).delete()
        logger.info(f"Deleted recipe {recipe_id}")

    # -- executions ----------------------------------------------------------

    def start_execution(self, recipe: Recipe, external_input: dict | None, project_id: str | None = None) -> str:
        execution_id = generate_id("exec")
        self.db.collection(EXECUTIONS).doc(execution_id).set({
            "id": execution_id,
            "recipeId": recipe.id,
            "recipeVersion": recipe.version,
            "projectId": project_id,
            "status": "running",  # running | completed | failed | cancelled
            "externalInput": external_input or {},
            "results": [],
            "outputs": {},
            "startedAt": utc_now(),
            "completedAt": None,
        })
        return execution_id

    def finish_execution(self, execution_id: str, run: RecipeRun):
        self.db.collection(EXECUTIONS).doc(execution_id).update({
            "status": run.status,
            "results": [r.to_dict() for r in run.results],
            "outputs": run.outputs,
            "failedNodeId": run.failed_node_id,
            "completedAt": utc_now(),
        })

    def fail_execution(self, execution_id: str, message: str):
        self.db.collection(EXECUTIONS).doc(execution_id).update({
            "status": "failed",
            "error": message,
            "completedAt": utc_now(),
        })

    def get_execution(self, execution_id: str) -> dict:
        data = self.db.collection(EXECUTIONS).doc(execution_id).get()
        if not data:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
        return data

    def list_executions(self, recipe_id: str | None = None, project_id: str | None = None, limit: int = 50) -> list[dict]:
        executions = [d for _, d in self.db.collection(EXECUTIONS).stream()]
        if recipe_id:
            executions = [e for e in executions if e.get("recipeId") == recipe_id]
        if project_id:
            executions = [e for e in executions if e.get("projectId") == project_id]
        executions.sort(key=lambda e: e.get("startedAt", ""), reverse=True)
        return executions[:limit]

    def summarize(self, execution_id: str) -> dict:
        execution = self.get_execution(execution_id)
        results = execution.get("results", [])
        return {
            "executionId": execution_id,
            "recipeId": execution.get("recipeId"),
            "status": execution.get("status"),
            "totalNodes": len(results),
            "succeeded": sum(1 for r in results if r.get("success")),
            "failed": sum(1 for r in results if not r.get("success")),
            "totalDuration": round(sum(r.get("duration", 0) for r in results), 2),
            "failedNodeId": execution.get("failedNodeId"),
        }
