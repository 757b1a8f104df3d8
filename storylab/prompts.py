"""Prompt template store — versioned, project-overridable prompts per stage.

Layout in the document store:

    prompt_templates/<templateId>                      template document
    prompt_templates/<templateId>/versions/<id>_v<n>   version snapshots
    project_ai_config/<projectId>.promptOverrides      {stageType: override}

Reads go through the injected ``PromptCache``. Writes never touch the cache;
the caller clears it once its writes have succeeded.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from storylab.cache import PromptCache
from storylab.errors import NotFoundError, ValidationError
from storylab.models import (
    CAPABILITIES,
    ModelConfig,
    PromptConfig,
    PromptTemplate,
    PromptVariable,
    generate_id,
    utc_now,
)
from storylab.store import DocumentStore

logger = logging.getLogger(__name__)

TEMPLATES = "prompt_templates"
PROJECT_AI_CONFIG = "project_ai_config"

_PLACEHOLDER = re.compile(r"\{\{([a-zA-Z_][a-zA-Z0-9_]*)\}\}")

# Fields a template update may never change
_IMMUTABLE_FIELDS = ("id", "stageType", "createdAt", "createdBy")


# ---------------------------------------------------------------------------
# Variable substitution
# ---------------------------------------------------------------------------


def stringify(value: Any) -> str:
    """String form used when a value is substituted into a prompt."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_variables(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` for every name in ``variables``; leave the rest verbatim."""
    if not template:
        return ""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return stringify(variables[name])
        return match.group(0)

    resolved = _PLACEHOLDER.sub(_sub, template)
    unresolved = unresolved_variables(resolved)
    if unresolved:
        logger.debug(f"Unresolved prompt variables: {unresolved}")
    return resolved


def unresolved_variables(text: str) -> list[str]:
    return sorted(set(_PLACEHOLDER.findall(text or "")))


def resolve_prompt(prompt: PromptConfig | dict, variables: dict[str, Any]) -> dict[str, str]:
    """Substitute variables into both halves of a prompt config."""
    if isinstance(prompt, dict):
        prompt = PromptConfig.from_dict(prompt)
    return {
        "systemPrompt": resolve_variables(prompt.system_prompt, variables),
        "userPromptTemplate": resolve_variables(prompt.user_prompt_template, variables),
    }


def build_full_prompt(resolved: dict[str, str]) -> str:
    """Join a resolved prompt into the single string the capability adaptors take."""
    system = resolved.get("systemPrompt", "")
    user = resolved.get("userPromptTemplate", "")
    return f"{system}\n\n{user}" if system else user


def validate_prompt_config(data: dict) -> list[str]:
    """Return a list of problems with a raw prompt config (empty when valid)."""
    errors = []
    if not isinstance(data, dict):
        return ["Prompt config must be an object"]
    if not (data.get("systemPrompt") or data.get("userPromptTemplate")):
        errors.append("At least one of systemPrompt or userPromptTemplate is required")
    if data.get("outputFormat", "text") not in ("text", "json"):
        errors.append(f"Invalid outputFormat: {data.get('outputFormat')}")
    model_config = data.get("modelConfig")
    if model_config is not None and (not model_config.get("adaptorId") or not model_config.get("modelId")):
        errors.append("modelConfig requires adaptorId and modelId")
    return errors


def _check_prompts(prompts: dict) -> None:
    if not isinstance(prompts, dict) or not prompts:
        raise ValidationError("prompts must map at least one capability to a prompt config")
    for capability, data in prompts.items():
        if capability not in CAPABILITIES:
            raise ValidationError(f"Unknown capability '{capability}'. Use one of {', '.join(CAPABILITIES)}")
        errors = validate_prompt_config(data)
        if errors:
            raise ValidationError(f"Invalid {capability} prompt: {'; '.join(errors)}")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PromptTemplateStore:
    """Reads and writes prompt templates, overrides and versions."""

    def __init__(self, db: DocumentStore, cache: PromptCache | None = None):
        self.db = db
        self.cache = cache or PromptCache()

    # -- reads ---------------------------------------------------------------

    def get_default_template(self, stage_type: str) -> PromptTemplate | None:
        key = f"template:{stage_type}"
        data = self.cache.get(key)
        if data is None:
            matches = [
                doc for _, doc in self.db.collection(TEMPLATES).where("stageType", stage_type)
                if doc.get("isDefault") and doc.get("isActive", True)
            ]
            if not matches:
                return None
            if len(matches) > 1:
                logger.warning(f"{len(matches)} active defaults for {stage_type}, using most recent")
            data = max(matches, key=lambda d: d.get("updatedAt", ""))
            self.cache.set(key, data)
        return PromptTemplate.from_dict(data)

    def get_project_override(self, project_id: str, stage_type: str) -> dict | None:
        key = f"override:{project_id}:{stage_type}"
        override = self.cache.get(key)
        if override is None:
            config = self.db.collection(PROJECT_AI_CONFIG).doc(project_id).get() or {}
            override = (config.get("promptOverrides") or {}).get(stage_type)
            if not override:
                return None
            self.cache.set(key, override)
        return override

    def get_prompt_template(self, stage_type: str, project_id: str | None = None) -> PromptTemplate:
        """The whole template for a stage, with the project override applied when present."""
        default = self.get_default_template(stage_type)
        override = self.get_project_override(project_id, stage_type) if project_id else None

        if override:
            prompts = dict(default.prompts) if default else {}
            prompts.update({cap: PromptConfig.from_dict(p) for cap, p in override.get("prompts", {}).items()})
            return PromptTemplate(
                id=default.id if default else stage_type,
                stage_type=stage_type,
                name=default.name if default else stage_type,
                prompts=prompts,
                variables=[PromptVariable.from_dict(v) for v in override.get("variables") or []]
                or (default.variables if default else []),
                is_default=False,
                current_version=int(override.get("version", 1)),
                latest_version=int(override.get("version", 1)),
                updated_at=override.get("updatedAt") or utc_now(),
                source="project_override",
            )
        if default:
            return default
        raise NotFoundError(f"No prompt template found for stage '{stage_type}'", stage_type=stage_type)

    def get_prompt_by_capability(
        self, stage_type: str, capability: str, project_id: str | None = None
    ) -> PromptConfig:
        """Project override for the capability if present, else the default template's."""
        if project_id:
            override = self.get_project_override(project_id, stage_type)
            if override and capability in (override.get("prompts") or {}):
                return PromptConfig.from_dict(override["prompts"][capability])

        default = self.get_default_template(stage_type)
        if default and capability in default.prompts:
            return default.prompts[capability]
        raise NotFoundError(
            f"No {capability} prompt for stage '{stage_type}'",
            stage_type=stage_type,
            capability=capability,
        )

    def list_templates(self, stage_type: str | None = None, project_id: str | None = None) -> list[PromptTemplate]:
        if stage_type and project_id and self.get_project_override(project_id, stage_type):
            return [self.get_prompt_template(stage_type, project_id)]
        docs = [doc for _, doc in self.db.collection(TEMPLATES).stream()]
        if stage_type:
            docs = [d for d in docs if d.get("stageType") == stage_type]
        docs.sort(key=lambda d: (d.get("stageType", ""), not d.get("isDefault"), d.get("name", "")))
        return [PromptTemplate.from_dict(d) for d in docs]

    def get_template(self, template_id: str) -> PromptTemplate:
        return PromptTemplate.from_dict(self._load(template_id))

    # -- template writes -----------------------------------------------------

    def add_template(self, stage_type: str, data: dict, created_by: str = "system") -> PromptTemplate:
        """Create a template. A new default demotes the stage's previous default."""
        if not stage_type:
            raise ValidationError("stageType is required")
        if not data.get("name"):
            raise ValidationError("Template name is required")
        _check_prompts(data.get("prompts"))

        template = PromptTemplate.from_dict({**data, "stageType": stage_type, "id": None})
        template.created_by = created_by
        if template.is_default:
            self._demote_defaults(stage_type, keep=None)

        self.db.collection(TEMPLATES).doc(template.id).set(template.to_dict())
        self._write_version(template, note="Initial version", created_by=created_by, chosen=True)
        logger.info(f"Added prompt template {template.id} for {stage_type}")
        return template

    def update_prompt(self, stage_type: str, template_id: str, updates: dict) -> PromptTemplate:
        """Patch a template in place. ``prompts`` entries merge per capability."""
        doc = self._load(template_id)
        if doc.get("stageType") != stage_type:
            raise NotFoundError(f"Template {template_id} does not belong to stage '{stage_type}'")
        blocked = [f for f in _IMMUTABLE_FIELDS if f in updates and updates[f] != doc.get(f)]
        if blocked:
            raise ValidationError(f"Cannot change {', '.join(blocked)}")

        if "prompts" in updates:
            merged = dict(doc.get("prompts") or {})
            for capability, patch in updates["prompts"].items():
                merged[capability] = {**merged.get(capability, {}), **patch}
            _check_prompts(merged)
            doc["prompts"] = merged
        for field_name in ("name", "variables", "isActive"):
            if field_name in updates:
                doc[field_name] = updates[field_name]
        if updates.get("isDefault") and not doc.get("isDefault"):
            self._demote_defaults(stage_type, keep=template_id)
            doc["isDefault"] = True
        doc["updatedAt"] = utc_now()

        self.db.collection(TEMPLATES).doc(template_id).set(doc)
        logger.info(f"Updated prompt template {template_id}")
        return PromptTemplate.from_dict(doc)

    def delete_template(self, template_id: str):
        doc = self._load(template_id)
        if doc.get("isDefault"):
            raise ValidationError("Cannot delete the default template")
        for version_id, _ in self.db.collection(self._versions_path(template_id)).stream():
            self.db.collection(self._versions_path(template_id)).doc(version_id).delete()
        self.db.collection(TEMPLATES).doc(template_id).delete()
        logger.info(f"Deleted prompt template {template_id}")

    def deactivate_template(self, template_id: str) -> PromptTemplate:
        doc = self._load(template_id)
        if doc.get("isDefault"):
            raise ValidationError("Cannot deactivate the default template")
        self.db.collection(TEMPLATES).doc(template_id).update({"isActive": False, "updatedAt": utc_now()})
        doc["isActive"] = False
        return PromptTemplate.from_dict(doc)

    # -- project overrides ---------------------------------------------------

    def save_prompt_override(
        self, project_id: str, stage_type: str, prompts: dict, variables: list[dict] | None = None
    ) -> dict:
        """Store a project's own prompts for a stage. Bumps the override version."""
        if not project_id or not stage_type:
            raise ValidationError("projectId and stageType are required")
        _check_prompts(prompts)

        ref = self.db.collection(PROJECT_AI_CONFIG).doc(project_id)
        existing = ((ref.get() or {}).get("promptOverrides") or {}).get(stage_type) or {}
        override = {
            "prompts": prompts,
            "version": int(existing.get("version", 0)) + 1,
            "updatedAt": utc_now(),
        }
        if variables is not None:
            override["variables"] = variables
        ref.set({"promptOverrides": {stage_type: override}}, merge=True)
        logger.info(f"Saved prompt override for {project_id}:{stage_type} (v{override['version']})")
        return override

    def remove_prompt_override(self, project_id: str, stage_type: str):
        ref = self.db.collection(PROJECT_AI_CONFIG).doc(project_id)
        config = ref.get()
        if not config or stage_type not in (config.get("promptOverrides") or {}):
            raise NotFoundError(f"No prompt override for {project_id}:{stage_type}")
        overrides = dict(config["promptOverrides"])
        overrides.pop(stage_type)
        ref.update({"promptOverrides": overrides})
        logger.info(f"Removed prompt override for {project_id}:{stage_type}")

    def update_prompt_model_config(
        self,
        stage_type: str,
        capability: str,
        model_config: dict | None,
        project_id: str | None = None,
    ) -> ModelConfig:
        """Pin an adaptor+model on one capability, project-scoped or on the shared default."""
        if not model_config or not model_config.get("adaptorId") or not model_config.get("modelId"):
            raise ValidationError("modelConfig.adaptorId and modelConfig.modelId are required")
        if capability not in CAPABILITIES:
            raise ValidationError(f"Unknown capability '{capability}'")
        config = ModelConfig(adaptor_id=model_config["adaptorId"], model_id=model_config["modelId"])

        if project_id:
            override = self._uncached_override(project_id, stage_type)
            if override:
                prompts = dict(override.get("prompts") or {})
                variables = override.get("variables")
            else:
                # First project-level change: start from the shared default
                default = self._uncached_default(stage_type)
                prompts = default.get("prompts", {}) if default else {}
                variables = default.get("variables") if default else None
            if capability not in prompts:
                raise NotFoundError(f"No {capability} prompt for stage '{stage_type}'")
            prompts[capability] = {**prompts[capability], "modelConfig": config.to_dict()}
            self.save_prompt_override(project_id, stage_type, prompts, variables)
        else:
            default = self._uncached_default(stage_type)
            if not default or capability not in (default.get("prompts") or {}):
                raise NotFoundError(f"No default {capability} prompt for stage '{stage_type}'")
            self.db.collection(TEMPLATES).doc(default["id"]).update({
                f"prompts.{capability}.modelConfig": config.to_dict(),
                "updatedAt": utc_now(),
            })

        scope = project_id or "default"
        logger.info(f"Model config for {stage_type}/{capability} [{scope}] -> {config.adaptor_id}/{config.model_id}")
        return config

    # -- versions ------------------------------------------------------------

    def save_as_new_version(
        self,
        template_id: str,
        prompts: dict | None = None,
        variables: list[dict] | None = None,
        note: str = "",
        created_by: str = "system",
    ) -> int:
        """Snapshot the template (optionally with new prompts) as the next version and make it current."""
        doc = self._load(template_id)
        if prompts is not None:
            _check_prompts(prompts)
            doc["prompts"] = prompts
        if variables is not None:
            doc["variables"] = variables

        version = int(doc.get("latestVersion", doc.get("currentVersion", 1))) + 1
        doc.update({"currentVersion": version, "latestVersion": version, "updatedAt": utc_now()})
        template = PromptTemplate.from_dict(doc)

        self._clear_chosen(template_id)
        self._write_version(template, note=note, created_by=created_by, chosen=True)
        self.db.collection(TEMPLATES).doc(template_id).set(template.to_dict())
        logger.info(f"Saved {template_id} as version {version}")
        return version

    def get_version_history(self, template_id: str) -> list[dict]:
        self._load(template_id)
        versions = [doc for _, doc in self.db.collection(self._versions_path(template_id)).stream()]
        return sorted(versions, key=lambda v: v.get("version", 0), reverse=True)

    def get_version(self, template_id: str, version: int) -> dict:
        doc = self.db.collection(self._versions_path(template_id)).doc(self._version_id(template_id, version)).get()
        if not doc:
            raise NotFoundError(f"Version {version} of {template_id} not found")
        return doc

    def activate_version(self, template_id: str, version: int) -> PromptTemplate:
        snapshot = self.get_version(template_id, version)
        doc = self._load(template_id)
        doc.update({
            "prompts": snapshot["prompts"],
            "variables": snapshot.get("variables", []),
            "currentVersion": version,
            "updatedAt": utc_now(),
        })
        self._clear_chosen(template_id)
        self.db.collection(self._versions_path(template_id)).doc(self._version_id(template_id, version)).update(
            {"isChosen": True}
        )
        self.db.collection(TEMPLATES).doc(template_id).set(doc)
        logger.info(f"Activated version {version} of {template_id}")
        return PromptTemplate.from_dict(doc)

    def delete_version(self, template_id: str, version: int):
        doc = self._load(template_id)
        if int(doc.get("currentVersion", 1)) == version:
            raise ValidationError("Cannot delete the active version")
        self.get_version(template_id, version)
        self.db.collection(self._versions_path(template_id)).doc(self._version_id(template_id, version)).delete()
        logger.info(f"Deleted version {version} of {template_id}")

    # -- internals -----------------------------------------------------------

    def _load(self, template_id: str) -> dict:
        doc = self.db.collection(TEMPLATES).doc(template_id).get()
        if not doc:
            raise NotFoundError(f"Prompt template {template_id} not found", template_id=template_id)
        return doc

    def _uncached_default(self, stage_type: str) -> dict | None:
        for _, doc in self.db.collection(TEMPLATES).where("stageType", stage_type):
            if doc.get("isDefault") and doc.get("isActive", True):
                return doc
        return None

    def _uncached_override(self, project_id: str, stage_type: str) -> dict | None:
        config = self.db.collection(PROJECT_AI_CONFIG).doc(project_id).get() or {}
        return (config.get("promptOverrides") or {}).get(stage_type)

    def _demote_defaults(self, stage_type: str, keep: str | None):
        for doc_id, doc in self.db.collection(TEMPLATES).where("stageType", stage_type):
            if doc_id != keep and doc.get("isDefault"):
                self.db.collection(TEMPLATES).doc(doc_id).update({"isDefault": False, "updatedAt": utc_now()})
                logger.info(f"Demoted previous default template {doc_id} for {stage_type}")

    @staticmethod
    def _versions_path(template_id: str) -> str:
        return f"{TEMPLATES}/{template_id}/versions"

    @staticmethod
    def _version_id(template_id: str, version: int) -> str:
        return f"{template_id}_v{version}"

    def _write_version(self, template: PromptTemplate, note: str, created_by: str, chosen: bool):
        snapshot = {
            "id": generate_id("ver"),
            "templateId": template.id,
            "version": template.current_version,
            "prompts": {cap: p.to_dict() for cap, p in template.prompts.items()},
            "variables": [v.to_dict() for v in template.variables],
            "versionNote": note,
            "isChosen": chosen,
            "createdAt": utc_now(),
            "createdBy": created_by,
        }
        self.db.collection(self._versions_path(template.id)).doc(
            self._version_id(template.id, template.current_version)
        ).set(snapshot)

    def _clear_chosen(self, template_id: str):
        versions = self.db.collection(self._versions_path(template_id))
        for version_id, doc in versions.stream():
            if doc.get("isChosen"):
                versions.doc(version_id).update({"isChosen": False})
