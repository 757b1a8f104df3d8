"""Core data structures for StoryLab.

Everything that crosses the HTTP boundary or lands in the document store has a
``to_dict()`` producing camelCase keys and a ``from_dict()`` accepting them.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from storylab.errors import ValidationError


def generate_id(prefix: str = "") -> str:
    short = uuid.uuid4().hex[:12]
    return f"{prefix}_{short}" if prefix else short


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


CAPABILITIES = ("text", "image", "video")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@dataclass
class ModelConfig:
    adaptor_id: str
    model_id: str

    def to_dict(self) -> dict:
        return {"adaptorId": self.adaptor_id, "modelId": self.model_id}

    @classmethod
    def from_dict(cls, data: dict | None) -> ModelConfig | None:
        if not data or not data.get("adaptorId") or not data.get("modelId"):
            return None
        return cls(adaptor_id=data["adaptorId"], model_id=data["modelId"])


@dataclass
class PromptConfig:
    """One capability's prompt inside a template."""

    system_prompt: str = ""
    user_prompt_template: str = ""
    output_format: str = "text"  # text | json
    model_config: ModelConfig | None = None
    name: str = ""
    description: str = ""

    def to_dict(self) -> dict:
        data = {
            "systemPrompt": self.system_prompt,
            "userPromptTemplate": self.user_prompt_template,
            "outputFormat": self.output_format,
        }
        if self.model_config:
            data["modelConfig"] = self.model_config.to_dict()
        if self.name:
            data["name"] = self.name
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PromptConfig:
        return cls(
            system_prompt=data.get("systemPrompt", ""),
            user_prompt_template=data.get("userPromptTemplate", ""),
            output_format=data.get("outputFormat", "text"),
            model_config=ModelConfig.from_dict(data.get("modelConfig")),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )


@dataclass
class PromptVariable:
    name: str
    description: str = ""
    placeholder: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "placeholder": self.placeholder}

    @classmethod
    def from_dict(cls, data: dict) -> PromptVariable:
        if not isinstance(data, dict) or not data.get("name"):
            raise ValidationError("Prompt variables need a name", variable=data)
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            placeholder=data.get("placeholder", ""),
        )


@dataclass
class PromptTemplate:
    """A stage's prompts keyed by capability, plus the variables they use."""

    stage_type: str
    name: str = ""
    prompts: dict[str, PromptConfig] = field(default_factory=dict)
    variables: list[PromptVariable] = field(default_factory=list)
    is_default: bool = False
    is_active: bool = True
    id: str = field(default_factory=lambda: generate_id("tmpl"))
    current_version: int = 1
    latest_version: int = 1
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    created_by: str = "system"
    source: str = "default"  # default | project_override

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stageType": self.stage_type,
            "name": self.name,
            "prompts": {cap: p.to_dict() for cap, p in self.prompts.items()},
            "variables": [v.to_dict() for v in self.variables],
            "isDefault": self.is_default,
            "isActive": self.is_active,
            "currentVersion": self.current_version,
            "latestVersion": self.latest_version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "createdBy": self.created_by,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PromptTemplate:
        return cls(
            id=data.get("id") or generate_id("tmpl"),
            stage_type=data["stageType"],
            name=data.get("name", ""),
            prompts={cap: PromptConfig.from_dict(p) for cap, p in (data.get("prompts") or {}).items()},
            variables=[PromptVariable.from_dict(v) for v in data.get("variables") or []],
            is_default=bool(data.get("isDefault", False)),
            is_active=bool(data.get("isActive", True)),
            current_version=int(data.get("currentVersion", 1)),
            latest_version=int(data.get("latestVersion", data.get("currentVersion", 1))),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
            created_by=data.get("createdBy", "system"),
            source=data.get("source", "default"),
        )


# ---------------------------------------------------------------------------
# Adaptor results
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass
class GenerationResult:
    """What every adaptor capability returns. Exactly one payload field is set."""

    model: str
    text: str | None = None
    image_url: str | None = None
    video_url: str | None = None
    usage: TokenUsage | None = None

    @property
    def payload(self) -> str | None:
        return self.text if self.text is not None else (self.image_url or self.video_url)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"model": self.model}
        if self.text is not None:
            data["text"] = self.text
        if self.image_url:
            data["imageUrl"] = self.image_url
        if self.video_url:
            data["videoUrl"] = self.video_url
        if self.usage:
            data["usage"] = self.usage.to_dict()
        return data


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

NODE_TYPES = ("text_generation", "image_generation", "video_generation", "data_processing")
ON_ERROR_POLICIES = ("fail", "skip", "retry")

# Node type → adaptor capability
NODE_CAPABILITY = {
    "text_generation": "text",
    "image_generation": "image",
    "video_generation": "video",
}


@dataclass
class InputSpec:
    source: str
    required: bool = False
    type: str = "string"
    description: str = ""
    sample_data: Any = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "required": self.required,
            "type": self.type,
            "description": self.description,
            "sampleData": self.sample_data,
        }

    @classmethod
    def from_value(cls, value: str | dict) -> InputSpec:
        # Older recipes store the bare source string
        if isinstance(value, str):
            return cls(source=value)
        return cls(
            source=value.get("source", ""),
            required=bool(value.get("required", False)),
            type=value.get("type", "string"),
            description=value.get("description", ""),
            sample_data=value.get("sampleData"),
        )


@dataclass
class AIModelConfig:
    provider: str
    model_name: str
    temperature: float | None = None
    max_tokens: int | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"provider": self.provider, "modelName": self.model_name}
        if self.temperature is not None:
            data["temperature"] = self.temperature
        if self.max_tokens is not None:
            data["maxTokens"] = self.max_tokens
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> AIModelConfig | None:
        if not data:
            return None
        return cls(
            provider=data.get("provider", ""),
            model_name=data.get("modelName", ""),
            temperature=data.get("temperature"),
            max_tokens=data.get("maxTokens"),
        )


@dataclass
class ErrorHandling:
    on_error: str = "fail"  # fail | skip | retry
    default_output: Any = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"onError": self.on_error}
        if self.default_output is not None:
            data["defaultOutput"] = self.default_output
        return data


@dataclass
class RecipeNode:
    id: str
    name: str
    type: str
    output_key: str
    input_mapping: dict[str, InputSpec] = field(default_factory=dict)
    ai_model: AIModelConfig | None = None
    prompt: str = ""
    output_format: str = "text"  # text | json
    error_handling: ErrorHandling = field(default_factory=ErrorHandling)
    dependencies: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def capability(self) -> str | None:
        return NODE_CAPABILITY.get(self.type)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "inputMapping": {k: v.to_dict() for k, v in self.input_mapping.items()},
            "outputKey": self.output_key,
            "prompt": self.prompt,
            "outputFormat": self.output_format,
            "errorHandling": self.error_handling.to_dict(),
            "dependencies": self.dependencies,
            "parameters": self.parameters,
        }
        if self.ai_model:
            data["aiModel"] = self.ai_model.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> RecipeNode:
        handling = data.get("errorHandling") or {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            type=data.get("type", ""),
            output_key=data.get("outputKey", ""),
            input_mapping={k: InputSpec.from_value(v) for k, v in (data.get("inputMapping") or {}).items()},
            ai_model=AIModelConfig.from_dict(data.get("aiModel")),
            prompt=data.get("prompt", ""),
            output_format=data.get("outputFormat", "text"),
            error_handling=ErrorHandling(
                on_error=handling.get("onError", "fail"),
                default_output=handling.get("defaultOutput"),
            ),
            dependencies=list(data.get("dependencies") or []),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class Edge:
    source: str
    target: str

    def to_dict(self) -> dict:
        return {"from": self.source, "to": self.target}

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> Edge:
        if not isinstance(data, dict) or not data.get("from") or not data.get("to"):
            raise ValidationError(f"Edge {index} needs 'from' and 'to'", edge=data)
        return cls(source=data["from"], target=data["to"])


@dataclass
class Recipe:
    name: str
    nodes: list[RecipeNode] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate_id("recipe"))
    description: str = ""
    stage_type: str = ""
    version: int = 1
    is_active: bool = True
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    created_by: str = "system"

    def get_node(self, node_id: str) -> RecipeNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "stageType": self.stage_type,
            "version": self.version,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "metadata": {
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "createdBy": self.created_by,
                "isActive": self.is_active,
                "tags": self.tags,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> Recipe:
        meta = data.get("metadata") or {}
        return cls(
            id=data.get("id") or generate_id("recipe"),
            name=data.get("name", ""),
            description=data.get("description", ""),
            stage_type=data.get("stageType", ""),
            version=int(data.get("version", 1)),
            nodes=[RecipeNode.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e, i) for i, e in enumerate(data.get("edges") or [])],
            is_active=bool(meta.get("isActive", True)),
            tags=list(meta.get("tags") or []),
            created_at=meta.get("createdAt") or utc_now(),
            updated_at=meta.get("updatedAt") or utc_now(),
            created_by=meta.get("createdBy", "system"),
        )


@dataclass
class ExecutionResult:
    """Immutable record of one node invocation."""

    success: bool
    node_id: str
    node_name: str
    node_type: str
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    duration: float = 0.0  # milliseconds
    started_at: str = field(default_factory=utc_now)
    completed_at: str = field(default_factory=utc_now)
    attempts: int = 1
    error: dict | None = None  # {message, code}

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "nodeType": self.node_type,
            "input": self.input,
            "output": self.output,
            "duration": self.duration,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "attempts": self.attempts,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionResult:
        return cls(
            success=bool(data.get("success")),
            node_id=data.get("nodeId", ""),
            node_name=data.get("nodeName", ""),
            node_type=data.get("nodeType", ""),
            input=data.get("input") or {},
            output=data.get("output"),
            duration=float(data.get("duration", 0.0)),
            started_at=data.get("startedAt") or utc_now(),
            completed_at=data.get("completedAt") or utc_now(),
            attempts=int(data.get("attempts", 1)),
            error=data.get("error"),
        )


@dataclass
class RecipeRun:
    """Outcome of a full recipe run. ``outputs`` is keyed by node id."""

    status: str  # completed | failed | cancelled
    results: list[ExecutionResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    failed_node_id: str | None = None

    def outputs_by_key(self, recipe: Recipe) -> dict[str, Any]:
        """Display view of the outputs keyed by each node's outputKey."""
        aliased = {}
        for node in recipe.nodes:
            if node.id in self.outputs:
                aliased[node.output_key] = self.outputs[node.id]
        return aliased

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "outputs": self.outputs,
            "failedNodeId": self.failed_node_id,
        }


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@dataclass
class StageExecution:
    stage_name: str
    status: str = "pending"  # pending | completed | failed
    started_at: str | None = None
    completed_at: str | None = None
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = {
            "stageName": self.stage_name,
            "status": self.status,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "data": self.data,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, stage_name: str, data: dict | None) -> StageExecution:
        data = data or {}
        return cls(
            stage_name=data.get("stageName", stage_name),
            status=data.get("status", "pending"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            data=data.get("data"),
            error=data.get("error"),
        )


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str  # start | progress | theme | image | animation | complete | error | node.*
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type == "complete" or (self.type == "error" and bool(self.data.get("fatal")))

    def to_dict(self) -> dict:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}
