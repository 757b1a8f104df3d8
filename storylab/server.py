"""FastAPI server — prompt, recipe, project and streaming generation endpoints."""

from __future__ import annotations

import logging
import re
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import AliasChoices, BaseModel, Field

from storylab import config
from storylab.errors import NotFoundError, StoryLabError, ValidationError
from storylab.events import ProgressChannel
from storylab.models import CAPABILITIES, PromptConfig
from storylab.prompts import build_full_prompt, resolve_prompt
from storylab.recipes.runner import CancellationToken
from storylab.services import Services
from storylab.sse import sse_response

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="StoryLab", version="1.0", description="Multi-stage AI generation service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

config.MEDIA_DIR.mkdir(parents=True, exist_ok=True)
app.mount(config.MEDIA_URL_PREFIX, StaticFiles(directory=str(config.MEDIA_DIR)), name="media")

# Process-wide collaborators. Tests swap this for one built on stub adaptors.
services = Services.create()

_HEADSHOT_VAR = re.compile(r"^player\d+Headshot$")


@app.exception_handler(StoryLabError)
async def storylab_error_handler(request: Request, exc: StoryLabError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} crashed: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": str(exc)})


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class CreateTemplateRequest(BaseModel):
    stageType: str
    template: dict[str, Any]
    createdBy: str = "system"


class UpdateTemplateRequest(BaseModel):
    updates: dict[str, Any]


class OverrideRequest(BaseModel):
    projectId: str
    stageType: str
    promptTemplate: dict[str, Any]


class ModelConfigRequest(BaseModel):
    stageType: str
    capability: str
    modelConfig: dict[str, Any] | None = None
    projectId: str | None = None


class PromptTestRequest(BaseModel):
    stageType: str
    projectId: str | None = None
    capability: str = "text"
    variables: dict[str, Any] = {}
    customPrompt: dict[str, Any] | None = None
    modelConfig: dict[str, Any] | None = None


class SaveVersionRequest(BaseModel):
    prompts: dict[str, Any] | None = None
    variables: list[dict[str, Any]] | None = None
    versionNote: str = ""
    createdBy: str = "system"


class ExecuteRecipeRequest(BaseModel):
    input: dict[str, Any] = {}
    projectId: str | None = None


class TestNodeRequest(BaseModel):
    nodeId: str | None = None
    externalInput: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("externalInput", "input")
    )
    executeDependencies: bool = True
    mockOutputs: dict[str, Any] | None = None
    projectId: str | None = None


class CreateProjectRequest(BaseModel):
    product: str = "storylab"
    name: str = ""
    payload: dict[str, Any] = {}
    createdBy: str = "system"


class UpdateProjectRequest(BaseModel):
    fields: dict[str, Any]


class StageStatusRequest(BaseModel):
    status: str
    data: Any = None
    error: str | None = None


class ThemeGenerationRequest(BaseModel):
    projectId: str
    sportType: str = "Hockey"
    homeTeam: Any = None
    awayTeam: Any = None
    contextPills: list[str] | str = []
    campaignGoal: str = "Social Hype"
    category: str = "home-team"
    categoryName: str = ""
    categoryModifier: str = ""
    numberOfThemes: int = 5
    mode: str = "replace"  # replace | append


class ImageGenerationRequest(BaseModel):
    projectId: str
    themePlayerMappings: dict[str, dict[str, Any]]
    contextBrief: dict[str, Any] = {}


class AnimationGenerationRequest(BaseModel):
    projectId: str
    images: list[dict[str, Any]]
    contextBrief: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Prompt Templates
# ---------------------------------------------------------------------------


@app.get("/prompts/templates")
async def list_templates(stageType: str | None = None, projectId: str | None = None) -> dict:
    """List templates, with the project's override applied when one exists."""
    templates = services.prompts.list_templates(stageType, projectId)
    return {"templates": [t.to_dict() for t in templates]}


@app.post("/prompts/templates")
async def create_template(req: CreateTemplateRequest) -> dict:
    template = services.prompts.add_template(req.stageType, req.template, req.createdBy)
    services.cache.clear()
    return {"templateId": template.id, "template": template.to_dict()}


@app.put("/prompts/templates/{stage_type}/{prompt_id}")
async def update_template(stage_type: str, prompt_id: str, req: UpdateTemplateRequest) -> dict:
    template = services.prompts.update_prompt(stage_type, prompt_id, req.updates)
    services.cache.clear()
    return {"template": template.to_dict()}


@app.delete("/prompts/templates/{stage_type}/{prompt_id}")
async def delete_template(stage_type: str, prompt_id: str) -> dict:
    _get_template(stage_type, prompt_id)
    services.prompts.delete_template(prompt_id)
    services.cache.clear()
    return {"status": "deleted", "id": prompt_id}


@app.post("/prompts/templates/{stage_type}/{prompt_id}/deactivate")
async def deactivate_template(stage_type: str, prompt_id: str) -> dict:
    _get_template(stage_type, prompt_id)
    template = services.prompts.deactivate_template(prompt_id)
    services.cache.clear()
    return {"template": template.to_dict()}


@app.post("/prompts/override")
async def save_override(req: OverrideRequest) -> dict:
    """Store a project's own prompts for a stage."""
    override = services.prompts.save_prompt_override(
        req.projectId,
        req.stageType,
        req.promptTemplate.get("prompts") or {},
        req.promptTemplate.get("variables"),
    )
    services.cache.clear()
    return {"override": override}


@app.delete("/prompts/override/{project_id}/{stage_type}")
async def remove_override(project_id: str, stage_type: str) -> dict:
    services.prompts.remove_prompt_override(project_id, stage_type)
    services.cache.clear()
    return {"status": "deleted", "projectId": project_id, "stageType": stage_type}


@app.put("/prompts/model-config")
async def update_model_config(req: ModelConfigRequest) -> dict:
    """Pin the adaptor+model one capability of a stage uses."""
    model_config = services.prompts.update_prompt_model_config(
        req.stageType, req.capability, req.modelConfig, req.projectId
    )
    services.cache.clear()
    return {"modelConfig": model_config.to_dict(), "scope": "project" if req.projectId else "default"}


@app.post("/prompts/test")
async def test_prompt(req: PromptTestRequest) -> dict:
    """Run one prompt against its resolved adaptor. Nothing is stored."""
    if req.capability not in CAPABILITIES:
        raise ValidationError(f"Unknown capability '{req.capability}'")
    if req.customPrompt:
        prompt = PromptConfig.from_dict(req.customPrompt)
    else:
        prompt = services.prompts.get_prompt_by_capability(req.stageType, req.capability, req.projectId)

    explicit = req.modelConfig or (req.customPrompt or {}).get("modelConfig")
    resolution = await services.resolver.resolve_adaptor(req.projectId, req.stageType, req.capability, explicit)
    full_prompt = build_full_prompt(resolve_prompt(prompt, req.variables))

    options: dict[str, Any] = {"responseFormat": prompt.output_format}
    if req.capability != "text":
        references = _reference_images(req.variables)
        if references:
            options["referenceImageUrl"] = references
    result = await resolution.adaptor.invoke(req.capability, full_prompt, options)

    return {
        "output": result.payload,
        "model": result.model or resolution.model_id,
        "adaptorId": resolution.adaptor_id,
        "usage": result.usage.to_dict() if result.usage else None,
    }


@app.get("/prompts/templates/{stage_type}/{prompt_id}/versions")
async def list_versions(stage_type: str, prompt_id: str) -> dict:
    _get_template(stage_type, prompt_id)
    return {"versions": services.prompts.get_version_history(prompt_id)}


@app.post("/prompts/templates/{stage_type}/{prompt_id}/versions")
async def save_version(stage_type: str, prompt_id: str, req: SaveVersionRequest) -> dict:
    _get_template(stage_type, prompt_id)
    version = services.prompts.save_as_new_version(
        prompt_id, req.prompts, req.variables, req.versionNote, req.createdBy
    )
    services.cache.clear()
    return {"templateId": prompt_id, "version": version}


@app.post("/prompts/templates/{stage_type}/{prompt_id}/versions/{version}/activate")
async def activate_version(stage_type: str, prompt_id: str, version: int) -> dict:
    _get_template(stage_type, prompt_id)
    template = services.prompts.activate_version(prompt_id, version)
    services.cache.clear()
    return {"template": template.to_dict()}


@app.delete("/prompts/templates/{stage_type}/{prompt_id}/versions/{version}")
async def delete_version(stage_type: str, prompt_id: str, version: int) -> dict:
    _get_template(stage_type, prompt_id)
    services.prompts.delete_version(prompt_id, version)
    return {"status": "deleted", "templateId": prompt_id, "version": version}


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------


@app.get("/recipes")
async def list_recipes(stageType: str | None = None, tag: str | None = None, q: str | None = None) -> dict:
    if q:
        recipes = services.recipes.search_recipes(q)
    else:
        recipes = services.recipes.list_recipes(stageType, tag)
    return {"recipes": [r.to_dict() for r in recipes]}


@app.post("/recipes")
async def create_recipe(data: dict[str, Any]) -> dict:
    recipe = services.recipes.create_recipe(data, data.get("createdBy", "system"))
    return {"recipeId": recipe.id, "recipe": recipe.to_dict()}


@app.get("/recipes/executions/{execution_id}")
async def get_execution(execution_id: str) -> dict:
    return services.recipes.get_execution(execution_id)


@app.get("/recipes/executions/{execution_id}/summary")
async def get_execution_summary(execution_id: str) -> dict:
    return services.recipes.summarize(execution_id)


@app.post("/recipes/executions/{execution_id}/retry")
async def retry_execution(execution_id: str) -> dict:
    new_id, run = await services.orchestrator.retry_execution(execution_id)
    return {"executionId": new_id, "retryOf": execution_id, **run.to_dict()}


@app.post("/recipes/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str) -> dict:
    services.orchestrator.cancel_execution(execution_id)
    return {"status": "cancelling", "executionId": execution_id}


@app.get("/recipes/{recipe_id}")
async def get_recipe(recipe_id: str) -> dict:
    return services.recipes.get_recipe(recipe_id).to_dict()


@app.put("/recipes/{recipe_id}")
async def update_recipe(recipe_id: str, updates: dict[str, Any]) -> dict:
    recipe = services.recipes.update_recipe(recipe_id, updates)
    return {"recipe": recipe.to_dict()}


@app.delete("/recipes/{recipe_id}")
async def delete_recipe(recipe_id: str) -> dict:
    services.recipes.delete_recipe(recipe_id)
    return {"status": "deleted", "id": recipe_id}


@app.post("/recipes/{recipe_id}/execute")
async def execute_recipe(recipe_id: str, req: ExecuteRecipeRequest) -> dict:
    """Run every node in order and persist the execution record."""
    recipe = services.recipes.get_recipe(recipe_id)
    execution_id, run = await services.orchestrator.execute_recipe(recipe_id, req.input, req.projectId)
    return {"executionId": execution_id, **run.to_dict(), "outputsByKey": run.outputs_by_key(recipe)}


@app.post("/recipes/{recipe_id}/test-node")
async def test_node(recipe_id: str, req: TestNodeRequest) -> dict:
    """Run one node, either after its ancestors or against mocked upstream outputs."""
    if not req.nodeId:
        raise ValidationError("nodeId is required")
    return await services.orchestrator.test_node(
        recipe_id, req.nodeId, req.externalInput, req.executeDependencies, req.mockOutputs, req.projectId
    )


@app.get("/recipes/{recipe_id}/executions")
async def list_executions(recipe_id: str, limit: int = 50) -> dict:
    services.recipes.get_recipe(recipe_id)
    return {"executions": services.recipes.list_executions(recipe_id=recipe_id, limit=limit)}


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@app.post("/projects")
async def create_project(req: CreateProjectRequest) -> dict:
    return services.projects.create_project(req.product, req.name, req.payload, req.createdBy)


@app.get("/projects")
async def list_projects(product: str | None = None) -> dict:
    return {"projects": services.projects.list_projects(product)}


@app.get("/projects/{project_id}")
async def get_project(project_id: str) -> dict:
    return services.projects.get_project(project_id)


@app.patch("/projects/{project_id}")
async def update_project(project_id: str, req: UpdateProjectRequest) -> dict:
    """Merge stage payload fields such as contextBrief. Dotted keys address nested fields."""
    return services.projects.update_payload(project_id, req.fields)


@app.delete("/projects/{project_id}")
async def delete_project(project_id: str) -> dict:
    services.projects.delete_project(project_id)
    return {"status": "deleted", "id": project_id}


@app.get("/projects/{project_id}/stages")
async def get_stage_status(project_id: str) -> dict:
    return services.projects.stage_status(project_id)


@app.post("/projects/{project_id}/stages/{stage_name}/start")
async def start_stage(project_id: str, stage_name: str) -> dict:
    return services.projects.start_stage(project_id, stage_name)


@app.put("/projects/{project_id}/stages/{stage_name}")
async def update_stage(project_id: str, stage_name: str, req: StageStatusRequest) -> dict:
    """Move one stage to a new status. Completing an earlier stage re-opens the later ones."""
    return services.projects.set_stage_status(project_id, stage_name, req.status, req.data, req.error)


# ---------------------------------------------------------------------------
# Adaptors
# ---------------------------------------------------------------------------


@app.get("/adaptors")
async def list_adaptors() -> dict:
    return {"adaptors": await services.resolver.list_available_adaptors()}


# ---------------------------------------------------------------------------
# Streaming generation (SSE)
# ---------------------------------------------------------------------------


@app.post("/generation/themes")
async def generate_themes(req: ThemeGenerationRequest, request: Request):
    if req.mode not in ("replace", "append"):
        raise ValidationError(f"Invalid mode '{req.mode}'. Use replace or append")
    if req.numberOfThemes < 1:
        raise ValidationError("numberOfThemes must be at least 1")
    services.projects.require_stage_completed(req.projectId, "context-brief")
    body = req.model_dump()

    async def produce(channel: ProgressChannel, token: CancellationToken):
        await services.themes.generate(req.projectId, body, channel, token)

    return sse_response(produce, request, f"themes:{req.projectId}")


@app.post("/generation/images")
async def generate_images(req: ImageGenerationRequest, request: Request):
    if not req.themePlayerMappings:
        raise ValidationError("themePlayerMappings must not be empty")
    services.projects.require_stage_completed(req.projectId, "casting-call")
    body = req.model_dump()

    async def produce(channel: ProgressChannel, token: CancellationToken):
        await services.images.generate(req.projectId, body, channel, token)

    return sse_response(produce, request, f"images:{req.projectId}")


@app.post("/generation/animations")
async def generate_animations(req: AnimationGenerationRequest, request: Request):
    if not req.images:
        raise ValidationError("images must not be empty")
    services.projects.require_stage_completed(req.projectId, "high-fidelity-capture")
    body = req.model_dump()

    async def produce(channel: ProgressChannel, token: CancellationToken):
        await services.animations.generate(req.projectId, body, channel, token)

    return sse_response(produce, request, f"animations:{req.projectId}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_template(stage_type: str, template_id: str):
    template = services.prompts.get_template(template_id)
    if template.stage_type != stage_type:
        raise NotFoundError(f"Template {template_id} belongs to stage '{template.stage_type}'")
    return template


def _reference_images(variables: dict[str, Any]) -> list[str]:
    """Theme image first, then headshots, as the image test UI supplies them."""
    urls = [variables.get("themeImageUrl"), variables.get("headshotUrl")]
    urls += [v for k, v in sorted(variables.items()) if _HEADSHOT_VAR.match(k)]
    return [u for u in urls if isinstance(u, str) and u]


def main():
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
