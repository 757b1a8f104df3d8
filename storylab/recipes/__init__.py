"""Recipes — node graphs executed in authored order."""

from storylab.recipes.executor import NodeExecutor, resolve_inputs
from storylab.recipes.manager import RecipeManager
from storylab.recipes.orchestrator import RecipeOrchestrator
from storylab.recipes.runner import CancellationToken, RecipeRunner

__all__ = [
    "CancellationToken",
    "NodeExecutor",
    "RecipeManager",
    "RecipeOrchestrator",
    "RecipeRunner",
    "resolve_inputs",
]
