"""Recipe graph — structural validation, source parsing and ancestry queries.

Node outputs are keyed by node id everywhere. A mapping source names the
producing node and its outputKey, optionally followed by a path into the
output:

    external_input.brief.title
    node_generate_personas.personas.0.name
"""

from __future__ import annotations

from dataclasses import dataclass

from storylab.errors import ValidationError
from storylab.models import NODE_CAPABILITY, NODE_TYPES, ON_ERROR_POLICIES, Recipe

EXTERNAL_PREFIX = "external_input."
NODE_PREFIX = "node_"


@dataclass
class SourceRef:
    kind: str  # external | node | literal
    node_id: str = ""
    output_key: str = ""
    path: tuple[str, ...] = ()
    literal: str = ""


def parse_source(source: str) -> SourceRef:
    if source.startswith(EXTERNAL_PREFIX):
        field_path = source[len(EXTERNAL_PREFIX):]
        return SourceRef(kind="external", path=tuple(p for p in field_path.split(".") if p))
    if source.startswith(NODE_PREFIX) and "." in source:
        node_id, rest = source[len(NODE_PREFIX):].split(".", 1)
        parts = rest.split(".")
        return SourceRef(kind="node", node_id=node_id, output_key=parts[0], path=tuple(p for p in parts[1:] if p))
    return SourceRef(kind="literal", literal=source)


def get_path(value, path: tuple[str, ...] | list[str]):
    """Walk dict keys / list indices. Any miss yields None."""
    current = value
    for part in path:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


def dependency_map(recipe: Recipe) -> dict[str, set[str]]:
    """node id -> ids it depends on, from edges, declared dependencies and mapping sources."""
    ids = {n.id for n in recipe.nodes}
    deps: dict[str, set[str]] = {n.id: set() for n in recipe.nodes}
    for edge in recipe.edges:
        if edge.target in deps and edge.source in ids:
            deps[edge.target].add(edge.source)
    for node in recipe.nodes:
        deps[node.id].update(d for d in node.dependencies if d in ids)
        for spec in node.input_mapping.values():
            ref = parse_source(spec.source)
            if ref.kind == "node" and ref.node_id in ids:
                deps[node.id].add(ref.node_id)
    return deps


def ancestors(recipe: Recipe, node_id: str) -> list[str]:
    """Every node the given node transitively depends on, in authored order."""
    deps = dependency_map(recipe)
    seen: set[str] = set()
    stack = list(deps.get(node_id, ()))
    while stack:
        current = stack.pop()
        if current in seen or current == node_id:
            continue
        seen.add(current)
        stack.extend(deps.get(current, ()))
    return [n.id for n in recipe.nodes if n.id in seen]


def find_cycle(recipe: Recipe) -> list[str] | None:
    """Return one cycle as a list of node ids, or None if the graph is acyclic."""
    deps = dependency_map(recipe)
    state: dict[str, int] = {}  # 1 visiting, 2 done
    path: list[str] = []

    def visit(node_id: str) -> list[str] | None:
        state[node_id] = 1
        path.append(node_id)
        for parent in sorted(deps[node_id]):
            if state.get(parent) == 1:
                return path[path.index(parent):] + [parent]
            if parent not in state:
                cycle = visit(parent)
                if cycle:
                    return cycle
        path.pop()
        state[node_id] = 2
        return None

    for node in recipe.nodes:
        if node.id not in state:
            cycle = visit(node.id)
            if cycle:
                return cycle
    return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_recipe(recipe: Recipe) -> list[str]:
    """Collect every structural problem. An empty list means the recipe can run."""
    errors: list[str] = []
    if not recipe.name:
        errors.append("Recipe name is required")
    if not recipe.nodes:
        return errors + ["Recipe must contain at least one node"]

    ids = [n.id for n in recipe.nodes]
    by_id = {n.id: n for n in recipe.nodes}
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        errors.append(f"Duplicate node ids: {', '.join(duplicates)}")

    for node in recipe.nodes:
        label = node.id or "<unnamed>"
        if not node.id:
            errors.append("Every node needs an id")
        elif "." in node.id:
            errors.append(f"Node id '{node.id}' must not contain '.'")
        if not node.name:
            errors.append(f"Node {label}: name is required")
        if node.type not in NODE_TYPES:
            errors.append(f"Node {label}: invalid type '{node.type}'")
        if not node.output_key:
            errors.append(f"Node {label}: outputKey is required")
        if node.type in NODE_CAPABILITY and (
            not node.ai_model or not node.ai_model.provider or not node.ai_model.model_name
        ):
            errors.append(f"Node {label}: aiModel.provider and aiModel.modelName are required")
        if node.error_handling.on_error not in ON_ERROR_POLICIES:
            errors.append(f"Node {label}: invalid onError '{node.error_handling.on_error}'")

        for field_name, spec in node.input_mapping.items():
            ref = parse_source(spec.source)
            if ref.kind != "node":
                continue
            producer = by_id.get(ref.node_id)
            if not producer:
                errors.append(f"Node {label}: input '{field_name}' references unknown node '{ref.node_id}'")
            elif ref.output_key != producer.output_key:
                errors.append(
                    f"Node {label}: input '{field_name}' reads '{ref.output_key}' "
                    f"but node '{ref.node_id}' writes '{producer.output_key}'"
                )

    for edge in recipe.edges:
        if edge.source not in by_id or edge.target not in by_id:
            errors.append(f"Edge {edge.source} -> {edge.target} references a missing node")
        elif edge.source == edge.target:
            errors.append(f"Edge {edge.source} -> {edge.target} is a self-loop")

    edge_pairs = {(e.source, e.target) for e in recipe.edges}
    for node in recipe.nodes:
        for dep in node.dependencies:
            if dep not in by_id:
                errors.append(f"Node {node.id}: dependency '{dep}' does not exist")
            elif (dep, node.id) not in edge_pairs:
                errors.append(f"Node {node.id}: dependency '{dep}' has no matching edge")

    if errors:
        return errors

    cycle = find_cycle(recipe)
    if cycle:
        return [f"Recipe contains a cycle: {' -> '.join(cycle)}"]

    position = {node_id: i for i, node_id in enumerate(ids)}
    for child, parents in dependency_map(recipe).items():
        for parent in parents:
            if position[parent] > position[child]:
                errors.append(f"Node {child} runs before its dependency {parent}; reorder the nodes")
    return errors


def assert_valid(recipe: Recipe):
    errors = validate_recipe(recipe)
    if errors:
        raise ValidationError(f"Invalid recipe: {'; '.join(errors)}", errors=errors)
