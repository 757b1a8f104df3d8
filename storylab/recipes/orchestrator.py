"""Recipe orchestrator — ties recipes, runs and execution records together."""

from __future__ import annotations

import logging

from storylab.errors import StoryLabError, ValidationError
from storylab.events import ProgressChannel
from storylab.models import RecipeRun
from storylab.recipes.executor import NodeExecutor
from storylab.recipes.manager import RecipeManager
from storylab.recipes.runner import CancellationToken, RecipeRunner
from storylab.resolver import AdaptorResolver

logger = logging.getLogger(__name__)


class RecipeOrchestrator:
    def __init__(self, manager: RecipeManager, resolver: AdaptorResolver, retry_attempts: int | None = None):
        self.manager = manager
        self.resolver = resolver
        self.retry_attempts = retry_attempts
        # execution id -> token, for runs in flight
        self._running: dict[str, CancellationToken] = {}

    def runner(self, project_id: str | None, stage_type: str | None, channel: ProgressChannel | None = None) -> RecipeRunner:
        executor = NodeExecutor(self.resolver, self.retry_attempts, project_id=project_id, stage_type=stage_type)
        return RecipeRunner(executor, channel)

    async def execute_recipe(
        self,
        recipe_id: str,
        external_input: dict | None,
        project_id: str | None = None,
        channel: ProgressChannel | None = None,
    ) -> tuple[str, RecipeRun]:
        """Run a stored recipe end to end and persist the execution record."""
        recipe = self.manager.get_recipe(recipe_id)
        execution_id = self.manager.start_execution(recipe, external_input, project_id)
        token = CancellationToken()
        self._running[execution_id] = token
        logger.info(f"Execution {execution_id} started for recipe {recipe_id}")

        try:
            run = await self.runner(project_id, recipe.stage_type, channel).run_full(recipe, external_input, token)
        except StoryLabError as e:
            self.manager.fail_execution(execution_id, e.message)
            raise
        finally:
            self._running.pop(execution_id, None)

        self.manager.finish_execution(execution_id, run)
        return execution_id, run

    async def test_node(
        self,
        recipe_id: str,
        node_id: str,
        external_input: dict | None,
        execute_dependencies: bool = True,
        mock_outputs: dict | None = None,
        project_id: str | None = None,
    ) -> dict:
        """Single-node run for the recipe editor. Nothing is persisted."""
        recipe = self.manager.get_recipe(recipe_id)
        outcome = await self.runner(project_id, recipe.stage_type).run_single_node(
            recipe, node_id, external_input, execute_dependencies, mock_outputs
        )
        return {
            "result": outcome["result"].to_dict(),
            "dependencyResults": [r.to_dict() for r in outcome["dependencyResults"]],
        }

    def cancel_execution(self, execution_id: str, reason: str = "cancelled by user"):
        token = self._running.get(execution_id)
        if token is None:
            execution = self.manager.get_execution(execution_id)
            raise ValidationError(f"Execution {execution_id} is not running (status: {execution.get('status')})")
        token.cancel(reason)
        logger.info(f"Cancellation requested for {execution_id}")

    async def retry_execution(self, execution_id: str) -> tuple[str, RecipeRun]:
        """Re-run a finished execution with its original input. Returns the new execution."""
        previous = self.manager.get_execution(execution_id)
        if previous.get("status") == "running":
            raise ValidationError(f"Execution {execution_id} is still running")
        return await self.execute_recipe(
            previous["recipeId"], previous.get("externalInput"), previous.get("projectId")
        )
