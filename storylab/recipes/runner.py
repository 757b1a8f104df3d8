"""Recipe runner — full runs and single-node test runs over a validated recipe."""

from __future__ import annotations

import logging
from typing import Any

from storylab.errors import NotFoundError
from storylab.events import ProgressChannel
from storylab.models import ExecutionResult, Recipe, RecipeNode, RecipeRun
from storylab.recipes.executor import NodeExecutor
from storylab.recipes.graph import ancestors, assert_valid

logger = logging.getLogger(__name__)


class CancellationToken:
    """Checked between nodes (and between generation items). In-flight calls are not interrupted."""

    def __init__(self):
        self.cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "cancelled"):
        self.cancelled = True
        self.reason = reason


class RecipeRunner:
    def __init__(self, executor: NodeExecutor, channel: ProgressChannel | None = None):
        self.executor = executor
        self.channel = channel

    async def run_full(
        self,
        recipe: Recipe,
        external_input: dict | None,
        cancel_token: CancellationToken | None = None,
    ) -> RecipeRun:
        """Execute every node in authored order, threading outputs by node id."""
        assert_valid(recipe)
        run = RecipeRun(status="completed")
        total = len(recipe.nodes)
        logger.info(f"Running recipe {recipe.id} ({total} nodes)")

        for index, node in enumerate(recipe.nodes):
            if cancel_token and cancel_token.cancelled:
                logger.info(f"Recipe {recipe.id} cancelled before node {node.id}: {cancel_token.reason}")
                run.status = "cancelled"
                break

            self._emit_progress(f"Running {node.name}", index, total)
            result = await self.executor.execute(node, external_input, run.outputs)
            run.results.append(result)
            self._emit_node(result, index, total)

            if self._record(node, result, run.outputs):
                continue
            run.status = "failed"
            run.failed_node_id = node.id
            logger.warning(f"Recipe {recipe.id} halted at node {node.id}: {(result.error or {}).get('message')}")
            break

        logger.info(f"Recipe {recipe.id} finished: {run.status} ({len(run.results)}/{total} nodes ran)")
        return run

    async def run_single_node(
        self,
        recipe: Recipe,
        node_id: str,
        external_input: dict | None,
        execute_dependencies: bool = True,
        mock_outputs: dict[str, Any] | None = None,
    ) -> dict:
        """Execute one node. Either run its ancestors for real or feed it ``mock_outputs``.

        ``mock_outputs`` is keyed by node id; keys it lacks resolve to None.
        Returns {"result": ExecutionResult, "dependencyResults": [ExecutionResult]}.
        """
        target = recipe.get_node(node_id)
        if not target:
            raise NotFoundError(f"Node {node_id} not found in recipe {recipe.id}", node_id=node_id)
        assert_valid(recipe)

        dependency_results: list[ExecutionResult] = []
        if not execute_dependencies:
            outputs = dict(mock_outputs or {})
            result = await self.executor.execute(target, external_input, outputs)
            return {"result": result, "dependencyResults": dependency_results}

        outputs: dict[str, Any] = {}
        for dep_id in ancestors(recipe, node_id):
            dep = recipe.get_node(dep_id)
            dep_result = await self.executor.execute(dep, external_input, outputs)
            dependency_results.append(dep_result)
            if not self._record(dep, dep_result, outputs):
                logger.warning(f"Dependency {dep_id} failed, not running {node_id}")
                blocked = ExecutionResult(
                    success=False,
                    node_id=target.id,
                    node_name=target.name,
                    node_type=target.type,
                    error={"message": f"Dependency {dep_id} failed", "code": "DEPENDENCY_FAILED"},
                )
                return {"result": blocked, "dependencyResults": dependency_results}

        result = await self.executor.execute(target, external_input, outputs)
        return {"result": result, "dependencyResults": dependency_results}

    @staticmethod
    def _record(node: RecipeNode, result: ExecutionResult, outputs: dict[str, Any]) -> bool:
        """Store a node's output. Returns False when the run must stop."""
        if result.success:
            outputs[node.id] = result.output
            return True
        if node.error_handling.on_error == "skip":
            if node.error_handling.default_output is not None:
                outputs[node.id] = node.error_handling.default_output
            logger.info(f"Node {node.id} failed, skipping")
            return True
        return False

    def _emit_progress(self, message: str, index: int, total: int):
        if self.channel:
            self.channel.progress(message, int(index / total * 100), nodeIndex=index)

    def _emit_node(self, result: ExecutionResult, index: int, total: int):
        if self.channel:
            self.channel.item(
                "node",
                index=index,
                total=total,
                nodeId=result.node_id,
                success=result.success,
                duration=result.duration,
                error=result.error,
            )
