"""Test adaptor registry and resolution precedence."""

import asyncio

import pytest

from conftest import StubAdaptor, make_registry, text_prompt
from storylab import config
from storylab.adaptors.registry import AdaptorRegistry
from storylab.cache import PromptCache
from storylab.errors import AdaptorUnavailableError
from storylab.prompts import PROJECT_AI_CONFIG, PromptTemplateStore
from storylab.resolver import AdaptorResolver
from storylab.store import InMemoryDocumentStore


@pytest.fixture
def db():
    return InMemoryDocumentStore()


@pytest.fixture
def prompts(db):
    return PromptTemplateStore(db, PromptCache())


@pytest.fixture
def resolver(db, prompts):
    return AdaptorResolver(make_registry(), prompts, db, check_health=True)


def resolve(resolver, *args):
    return asyncio.run(resolver.resolve_adaptor(*args))


def test_registry_rejects_duplicates():
    registry = AdaptorRegistry(api_keys={})
    registry.register("stub", StubAdaptor)
    with pytest.raises(ValueError):
        registry.register("stub", StubAdaptor)


def test_registry_unknown_adaptor():
    registry = AdaptorRegistry(api_keys={})
    with pytest.raises(AdaptorUnavailableError):
        registry.create("nope", "model")


def test_registry_create_requires_api_key():
    registry = AdaptorRegistry(api_keys={})
    registry.register("stub", StubAdaptor)
    with pytest.raises(AdaptorUnavailableError):
        registry.create("stub", "stub-text")


def test_explicit_config_wins(resolver, prompts):
    prompts.add_template("stage_2_themes", {
        "name": "Default",
        "isDefault": True,
        "prompts": {"text": text_prompt("x", modelConfig={"adaptorId": "gemini", "modelId": "prompt-model"})},
    })
    resolution = resolve(resolver, "proj1", "stage_2_themes", "text", {"adaptorId": "stub", "modelId": "stub-text"})
    assert (resolution.adaptor_id, resolution.model_id, resolution.source) == ("stub", "stub-text", "explicit")


def test_explicit_config_accepts_short_keys(resolver):
    resolution = resolve(resolver, None, None, "text", {"adaptor": "stub", "model": "stub-text"})
    assert resolution.source == "explicit"
    assert resolution.model_id == "stub-text"


def test_prompt_model_config_beats_project(resolver, prompts, db):
    prompts.add_template("stage_2_themes", {
        "name": "Default",
        "isDefault": True,
        "prompts": {"text": text_prompt("x", modelConfig={"adaptorId": "stub", "modelId": "prompt-model"})},
    })
    db.collection(PROJECT_AI_CONFIG).doc("proj1").set({"defaultAdaptor": "gemini", "defaultModel": "project-model"})

    resolution = resolve(resolver, "proj1", "stage_2_themes", "text")
    assert (resolution.model_id, resolution.source) == ("prompt-model", "prompt")


def test_project_stage_config(resolver, db):
    db.collection(PROJECT_AI_CONFIG).doc("proj1").set({
        "stageConfigs": {"stage_4_images": {"image": {"adaptorId": "stub", "modelId": "stub-image"}}},
    })
    resolution = resolve(resolver, "proj1", "stage_4_images", "image")
    assert (resolution.adaptor_id, resolution.model_id, resolution.source) == ("stub", "stub-image", "project")


def test_project_default_adaptor_for_text(resolver, db):
    db.collection(PROJECT_AI_CONFIG).doc("proj1").set({"defaultAdaptor": "stub", "defaultModel": "stub-text"})
    resolution = resolve(resolver, "proj1", "stage_2_themes", "text")
    assert (resolution.adaptor_id, resolution.model_id, resolution.source) == ("stub", "stub-text", "project")


def test_project_default_adaptor_picks_capable_model(resolver, db):
    db.collection(PROJECT_AI_CONFIG).doc("proj1").set({"defaultAdaptor": "stub"})
    resolution = resolve(resolver, "proj1", "stage_5_animation", "video")
    assert resolution.model_id == "stub-video"


def test_global_default(resolver):
    resolution = resolve(resolver, None, "stage_2_themes", "image")
    assert resolution.source == "global"
    assert resolution.adaptor_id == config.DEFAULT_ADAPTOR
    assert resolution.model_id == config.DEFAULT_IMAGE_MODEL


def test_unknown_adaptor_does_not_fall_through(resolver):
    with pytest.raises(AdaptorUnavailableError):
        resolve(resolver, None, None, "text", {"adaptorId": "missing", "modelId": "m"})


def test_unhealthy_adaptor_raises(resolver):
    with pytest.raises(AdaptorUnavailableError) as exc:
        resolve(resolver, None, None, "text", {"adaptorId": "broken", "modelId": "stub-text"})
    assert "unhealthy" in exc.value.message


def test_health_check_can_be_skipped(db, prompts):
    resolver = AdaptorResolver(make_registry(), prompts, db, check_health=False)
    resolution = resolve(resolver, None, None, "text", {"adaptorId": "broken", "modelId": "stub-text"})
    assert resolution.adaptor_id == "broken"


def test_adaptor_instances_are_reused(resolver):
    first = resolve(resolver, None, None, "text", {"adaptorId": "stub", "modelId": "stub-text"})
    second = resolve(resolver, None, None, "text", {"adaptorId": "stub", "modelId": "stub-text"})
    assert first.adaptor is second.adaptor


def test_list_available_adaptors(resolver):
    adaptors = asyncio.run(resolver.list_available_adaptors())
    by_id = {a["id"]: a for a in adaptors}
    assert set(by_id) == {"gemini", "stub", "broken"}
    assert by_id["stub"]["health"]["status"] == "ok"
    assert by_id["broken"]["health"]["status"] == "error"
    assert {m["id"] for m in by_id["stub"]["models"]} == {"stub-text", "stub-image", "stub-video"}
