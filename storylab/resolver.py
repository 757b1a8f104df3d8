"""Adaptor resolver — picks the adaptor+model a generation call should use.

Precedence, highest first:

    explicit    modelConfig passed with the request
    prompt      modelConfig stored on the stage's prompt for the capability
    project     project_ai_config stageConfigs, then the project's defaultAdaptor
    global      configured default adaptor and the capability's default model

The highest tier that names a model wins. If that adaptor cannot be built or
reports unhealthy the call fails; lower tiers are not tried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storylab import config
from storylab.adaptors.base import CapabilityAdaptor
from storylab.adaptors.registry import AdaptorRegistry
from storylab.errors import AdaptorUnavailableError, NotFoundError
from storylab.prompts import PROJECT_AI_CONFIG, PromptTemplateStore
from storylab.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class AdaptorResolution:
    adaptor: CapabilityAdaptor
    adaptor_id: str
    model_id: str
    source: str  # explicit | prompt | project | global

    def to_dict(self) -> dict:
        return {"adaptorId": self.adaptor_id, "modelId": self.model_id, "source": self.source}


def _pair(data: dict | None) -> tuple[str, str] | None:
    """Read {adaptorId, modelId} (or the older {adaptor, model}) from a config dict."""
    if not data:
        return None
    adaptor_id = data.get("adaptorId") or data.get("adaptor")
    model_id = data.get("modelId") or data.get("model")
    if adaptor_id and model_id:
        return adaptor_id, model_id
    return None


class AdaptorResolver:
    def __init__(
        self,
        registry: AdaptorRegistry,
        prompts: PromptTemplateStore,
        db: DocumentStore,
        check_health: bool | None = None,
    ):
        self.registry = registry
        self.prompts = prompts
        self.db = db
        self.check_health = (not config.SKIP_HEALTH_CHECK) if check_health is None else check_health
        self._instances: dict[tuple[str, str], CapabilityAdaptor] = {}

    async def resolve_adaptor(
        self,
        project_id: str | None,
        stage_type: str | None,
        capability: str,
        explicit_model_config: dict | None = None,
    ) -> AdaptorResolution:
        adaptor_id, model_id, source = self._select(project_id, stage_type, capability, explicit_model_config)
        adaptor = self.get_adaptor(adaptor_id, model_id)

        if self.check_health:
            health = await adaptor.health_check()
            if health["status"] == "error":
                raise AdaptorUnavailableError(
                    f"Adaptor {adaptor_id}/{model_id} is unhealthy: {health.get('message', '')}",
                    adaptor_id,
                    model_id,
                )
            if health["status"] == "degraded":
                logger.warning(f"Adaptor {adaptor_id}/{model_id} degraded: {health.get('message', '')}")

        logger.info(f"Resolved {stage_type or '-'}/{capability} -> {adaptor_id}/{model_id} (source: {source})")
        return AdaptorResolution(adaptor=adaptor, adaptor_id=adaptor_id, model_id=model_id, source=source)

    def get_adaptor(self, adaptor_id: str, model_id: str) -> CapabilityAdaptor:
        """Build (or reuse) the adaptor instance for one adaptor/model pair."""
        key = (adaptor_id, model_id)
        if key not in self._instances:
            self._instances[key] = self.registry.create(adaptor_id, model_id)
        return self._instances[key]

    def _select(
        self,
        project_id: str | None,
        stage_type: str | None,
        capability: str,
        explicit_model_config: dict | None,
    ) -> tuple[str, str, str]:
        explicit = _pair(explicit_model_config)
        if explicit:
            return explicit[0], explicit[1], "explicit"

        if stage_type:
            try:
                prompt = self.prompts.get_prompt_by_capability(stage_type, capability, project_id)
            except NotFoundError:
                prompt = None
            if prompt and prompt.model_config:
                return prompt.model_config.adaptor_id, prompt.model_config.model_id, "prompt"

        if project_id:
            project_pick = self._project_tier(project_id, stage_type, capability)
            if project_pick:
                return project_pick[0], project_pick[1], "project"

        model_id = config.DEFAULT_CAPABILITY_MODELS.get(capability)
        if not model_id:
            raise AdaptorUnavailableError(f"No default model configured for capability '{capability}'")
        return config.DEFAULT_ADAPTOR, model_id, "global"

    def _project_tier(self, project_id: str, stage_type: str | None, capability: str) -> tuple[str, str] | None:
        ai_config = self.db.collection(PROJECT_AI_CONFIG).doc(project_id).get()
        if not ai_config:
            return None

        stage_pick = _pair(((ai_config.get("stageConfigs") or {}).get(stage_type) or {}).get(capability))
        if stage_pick:
            return stage_pick

        adaptor_id = ai_config.get("defaultAdaptor")
        if not adaptor_id:
            return None
        if capability == "text":
            model_id = ai_config.get("defaultModel") or config.ADAPTOR_DEFAULT_MODELS.get(adaptor_id)
            return (adaptor_id, model_id) if model_id else None
        # Non-text capabilities: first catalogue model of the project's adaptor that supports it
        if not self.registry.has(adaptor_id):
            return None
        for info in self.registry.get_class(adaptor_id).available_models():
            if capability in info.get("capabilities", []):
                return adaptor_id, info["id"]
        return None

    async def list_available_adaptors(self) -> list[dict]:
        """Every registered adaptor with its model catalogue and a health probe."""
        adaptors = []
        for adaptor_id in self.registry.ids():
            adaptor_cls = self.registry.get_class(adaptor_id)
            models = adaptor_cls.available_models()
            default_model = config.ADAPTOR_DEFAULT_MODELS.get(adaptor_id) or (models[0]["id"] if models else "")
            try:
                health = await self.get_adaptor(adaptor_id, default_model).health_check()
            except AdaptorUnavailableError as e:
                health = {"status": "error", "message": e.message}
            adaptors.append({
                "id": adaptor_id,
                "name": adaptor_cls.display_name or adaptor_id,
                "models": models,
                "health": health,
            })
        return adaptors
