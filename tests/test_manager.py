"""Test recipe CRUD, execution records and the orchestrator."""

import asyncio

import pytest

from conftest import StubAdaptor
from storylab.errors import NotFoundError, ValidationError
from storylab.recipes.manager import RecipeManager
from storylab.store import InMemoryDocumentStore


def recipe_data(recipe_id="r1", **extra):
    return {
        "id": recipe_id,
        "name": "Narrative",
        "stageType": "stage_3_narratives",
        "nodes": [{
            "id": "write",
            "name": "Write",
            "type": "text_generation",
            "outputKey": "narrative",
            "inputMapping": {"persona": "external_input.persona"},
            "aiModel": {"provider": "stub", "modelName": "stub-text"},
            "prompt": "Write for {{persona}}",
        }],
        "metadata": {"tags": ["narrative"]},
        **extra,
    }


@pytest.fixture
def manager():
    return RecipeManager(InMemoryDocumentStore())


def test_create_and_get(manager):
    manager.create_recipe(recipe_data(), created_by="ann")
    recipe = manager.get_recipe("r1")
    assert recipe.created_by == "ann"
    assert recipe.nodes[0].output_key == "narrative"


def test_create_duplicate_rejected(manager):
    manager.create_recipe(recipe_data())
    with pytest.raises(ValidationError):
        manager.create_recipe(recipe_data())


def test_update_bumps_version_and_revalidates(manager):
    manager.create_recipe(recipe_data())
    recipe = manager.update_recipe("r1", {"name": "Narrative v2"})
    assert recipe.version == 2
    assert recipe.name == "Narrative v2"

    with pytest.raises(ValidationError):
        manager.update_recipe("r1", {"nodes": []})
    assert manager.get_recipe("r1").version == 2

    with pytest.raises(ValidationError):
        manager.update_recipe("r1", {"id": "other"})


def test_list_filters(manager):
    manager.create_recipe(recipe_data("r1"))
    manager.create_recipe(recipe_data("r2", stageType="stage_4_storyboard", metadata={"tags": ["board"], "isActive": False}))
    assert [r.id for r in manager.list_recipes("stage_3_narratives")] == ["r1"]
    assert [r.id for r in manager.list_recipes(tag="board", active_only=False)] == ["r2"]
    assert [r.id for r in manager.list_recipes()] == ["r1"]
    assert [r.id for r in manager.search_recipes("BOARD")] == ["r2"]


def test_delete_missing(manager):
    with pytest.raises(NotFoundError):
        manager.delete_recipe("ghost")


# -- orchestrator -----------------------------------------------------------


def test_execute_persists_record(services):
    services.recipes.create_recipe(recipe_data())
    execution_id, run = asyncio.run(services.orchestrator.execute_recipe("r1", {"persona": "Ann"}, "proj1"))
    assert run.status == "completed"

    record = services.recipes.get_execution(execution_id)
    assert record["status"] == "completed"
    assert record["projectId"] == "proj1"
    assert record["externalInput"] == {"persona": "Ann"}
    assert record["outputs"] == {"write": "echo: Write for Ann"}
    assert record["completedAt"]


def test_retry_uses_original_input(services):
    services.recipes.create_recipe(recipe_data())
    StubAdaptor.text_responses = [RuntimeError("down")]
    first_id, first = asyncio.run(services.orchestrator.execute_recipe("r1", {"persona": "Ann"}))
    assert first.status == "failed"

    second_id, second = asyncio.run(services.orchestrator.retry_execution(first_id))
    assert second_id != first_id
    assert second.status == "completed"
    assert services.recipes.get_execution(second_id)["externalInput"] == {"persona": "Ann"}

    summary = services.recipes.summarize(first_id)
    assert (summary["failed"], summary["failedNodeId"]) == (1, "write")


def test_cancel_requires_running_execution(services):
    services.recipes.create_recipe(recipe_data())
    execution_id, _ = asyncio.run(services.orchestrator.execute_recipe("r1", {}))
    with pytest.raises(ValidationError):
        services.orchestrator.cancel_execution(execution_id)
    with pytest.raises(NotFoundError):
        services.orchestrator.cancel_execution("exec_missing")


def test_test_node_persists_nothing(services):
    services.recipes.create_recipe(recipe_data())
    outcome = asyncio.run(services.orchestrator.test_node("r1", "write", {"persona": "Bo"}))
    assert outcome["result"]["output"] == "echo: Write for Bo"
    assert services.recipes.list_executions() == []
