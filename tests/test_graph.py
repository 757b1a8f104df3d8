"""Test recipe graph validation, source parsing and ancestry."""

import pytest

from storylab.errors import ValidationError
from storylab.models import Recipe
from storylab.recipes.graph import (
    ancestors,
    assert_valid,
    dependency_map,
    find_cycle,
    get_path,
    parse_source,
    validate_recipe,
)


def node(node_id, output_key=None, sources=None, type="text_generation", **extra):
    data = {
        "id": node_id,
        "name": node_id.title(),
        "type": type,
        "outputKey": output_key or f"{node_id}_out",
        "inputMapping": sources or {},
        **extra,
    }
    if type != "data_processing":
        data.setdefault("aiModel", {"provider": "stub", "modelName": "stub-text"})
    return data


def recipe(nodes, edges=()):
    return Recipe.from_dict({
        "id": "r1",
        "name": "Recipe",
        "nodes": nodes,
        "edges": [{"from": a, "to": b} for a, b in edges],
    })


def chain():
    return recipe(
        [
            node("a", "brief", {"topic": "external_input.topic"}),
            node("b", "outline", {"brief": "node_a.brief"}),
            node("c", "draft", {"outline": "node_b.outline.sections"}),
        ],
        edges=[("a", "b"), ("b", "c")],
    )


def test_parse_source_kinds():
    ext = parse_source("external_input.brief.title")
    assert (ext.kind, ext.path) == ("external", ("brief", "title"))

    ref = parse_source("node_generate_personas.personas.0.name")
    assert (ref.kind, ref.node_id, ref.output_key, ref.path) == ("node", "generate_personas", "personas", ("0", "name"))

    literal = parse_source("just text")
    assert (literal.kind, literal.literal) == ("literal", "just text")


def test_get_path():
    data = {"items": [{"name": "a"}, {"name": "b"}]}
    assert get_path(data, ("items", "1", "name")) == "b"
    assert get_path(data, ("items", "-1", "name")) == "b"
    assert get_path(data, ("items", "5", "name")) is None
    assert get_path(data, ("missing", "x")) is None
    assert get_path("text", ("x",)) is None
    assert get_path(data, ()) is data


def test_valid_chain():
    r = chain()
    assert validate_recipe(r) == []
    assert dependency_map(r) == {"a": set(), "b": {"a"}, "c": {"b"}}
    assert ancestors(r, "c") == ["a", "b"]
    assert find_cycle(r) is None


def test_mapping_source_implies_dependency():
    r = recipe([node("a", "x"), node("b", "y", {"v": "node_a.x"})])
    assert validate_recipe(r) == []
    assert ancestors(r, "b") == ["a"]


def test_empty_recipe_rejected():
    errors = validate_recipe(recipe([]))
    assert "Recipe must contain at least one node" in errors


def test_duplicate_ids_rejected():
    errors = validate_recipe(recipe([node("a"), node("a")]))
    assert any("Duplicate node ids" in e for e in errors)


def test_dotted_id_rejected():
    errors = validate_recipe(recipe([node("a.b")]))
    assert any("must not contain '.'" in e for e in errors)


def test_ai_node_requires_model():
    errors = validate_recipe(recipe([node("a", aiModel=None)]))
    assert any("aiModel" in e for e in errors)


def test_data_processing_needs_no_model():
    r = recipe([node("a", type="data_processing", parameters={"operation": "passthrough"})])
    assert validate_recipe(r) == []


def test_invalid_error_policy():
    errors = validate_recipe(recipe([node("a", errorHandling={"onError": "ignore"})]))
    assert any("invalid onError" in e for e in errors)


def test_output_key_mismatch():
    r = recipe([node("a", "brief"), node("b", "x", {"v": "node_a.summary"})], edges=[("a", "b")])
    errors = validate_recipe(r)
    assert any("reads 'summary'" in e for e in errors)


def test_unknown_source_node():
    errors = validate_recipe(recipe([node("b", "x", {"v": "node_ghost.out"})]))
    assert any("unknown node 'ghost'" in e for e in errors)


def test_edge_to_missing_node_and_self_loop():
    errors = validate_recipe(recipe([node("a")], edges=[("a", "zz"), ("a", "a")]))
    assert any("missing node" in e for e in errors)
    assert any("self-loop" in e for e in errors)


def test_dependency_without_edge():
    r = recipe([node("a"), node("b", dependencies=["a"])])
    errors = validate_recipe(r)
    assert any("no matching edge" in e for e in errors)


def test_cycle_detected():
    r = recipe([node("a", "x", {"v": "node_b.y"}), node("b", "y", {"v": "node_a.x"})])
    errors = validate_recipe(r)
    assert len(errors) == 1
    assert "cycle" in errors[0]


def test_authored_order_must_be_topological():
    r = recipe([node("b", "y", {"v": "node_a.x"}), node("a", "x")])
    errors = validate_recipe(r)
    assert any("runs before its dependency a" in e for e in errors)


def test_assert_valid_carries_errors():
    with pytest.raises(ValidationError) as exc:
        assert_valid(recipe([node("a"), node("a")]))
    assert exc.value.details["errors"]


def test_edge_missing_endpoint_is_validation_error():
    with pytest.raises(ValidationError, match="Edge 1 needs 'from' and 'to'"):
        Recipe.from_dict({
            "name": "Recipe",
            "nodes": [node("a"), node("b")],
            "edges": [{"from": "a", "to": "b"}, {"from": "a"}],
        })
