"""Command-line interface: run a recipe file locally or start the API server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from storylab import config
from storylab.errors import StoryLabError
from storylab.models import Recipe, RecipeRun
from storylab.recipes.graph import assert_valid
from storylab.services import Services

console = Console()


def load_json(path: str) -> dict:
    with open(Path(path), encoding="utf-8") as f:
        return json.load(f)


def print_recipe(recipe: Recipe):
    """Print the node list in execution order."""
    console.print(f"\n[bold cyan]{recipe.name}[/bold cyan] [dim]({recipe.id}, v{recipe.version})[/dim]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim")
    table.add_column("Node ID", style="cyan")
    table.add_column("Type", style="green")
    table.add_column("Model", style="yellow")
    table.add_column("On error", style="blue")

    for i, node in enumerate(recipe.nodes, 1):
        model = f"{node.ai_model.provider}/{node.ai_model.model_name}" if node.ai_model else "-"
        table.add_row(str(i), node.id, node.type, model, node.error_handling.on_error)

    console.print(table)


def print_run(run: RecipeRun):
    """Print one row per executed node."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Node ID", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", style="dim")
    table.add_column("Time", style="yellow")
    table.add_column("Output / Error")

    for result in run.results:
        status = "[green]ok[/green]" if result.success else "[red]failed[/red]"
        if result.success:
            detail = result.output if isinstance(result.output, str) else json.dumps(result.output, default=str)
        else:
            detail = (result.error or {}).get("message", "")
        if len(detail) > 60:
            detail = detail[:60] + "..."
        table.add_row(result.node_id, status, str(result.attempts), f"{result.duration / 1000:.2f}s", detail)

    console.print(table)
    style = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(run.status, "white")
    console.print(f"\n[bold {style}]Run {run.status}[/bold {style}]")
    if run.failed_node_id:
        console.print(f"[red]Stopped at node {run.failed_node_id}[/red]")


async def run_recipe(recipe_path: str, input_path: str | None, project_id: str | None, show_outputs: bool) -> int:
    recipe = Recipe.from_dict(load_json(recipe_path))
    external_input = load_json(input_path) if input_path else {}
    assert_valid(recipe)
    print_recipe(recipe)

    services = Services.create(seed=False)
    runner = services.orchestrator.runner(project_id, recipe.stage_type)

    with console.status("[bold]Running recipe...[/bold]"):
        run = await runner.run_full(recipe, external_input)

    print_run(run)
    if show_outputs:
        for key, value in run.outputs_by_key(recipe).items():
            text = value if isinstance(value, str) else json.dumps(value, indent=2, default=str)
            console.print(Panel(text, title=f"[bold]{key}[/bold]", border_style="green"))
    return 0 if run.status == "completed" else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="storylab", description="StoryLab recipe runner and API server")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run a recipe JSON file end to end")
    run.add_argument("recipe", help="Path to the recipe JSON")
    run.add_argument("--input", dest="input_path", help="Path to the external input JSON")
    run.add_argument("--project", dest="project_id", help="Project id for adaptor resolution")
    run.add_argument("--outputs", action="store_true", help="Print every node output")

    serve = commands.add_parser("serve", help="Start the API server")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Port")

    args = parser.parse_args(argv)

    if args.command == "serve":
        uvicorn.run(
            "storylab.server:app",
            host=args.host or config.SERVER_HOST,
            port=args.port or config.SERVER_PORT,
            log_level="info",
        )
        return 0

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    try:
        return asyncio.run(run_recipe(args.recipe, args.input_path, args.project_id, args.outputs))
    except StoryLabError as e:
        console.print(f"[red]ERROR: {e.message}[/red]")
        for problem in e.details.get("errors", []):
            console.print(f"  [red]- {problem}[/red]")
        return 2
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]ERROR: could not read input: {e}[/red]")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
