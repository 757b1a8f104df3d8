"""Base capability adaptor — abstract interface for all AI backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from storylab.errors import AdaptorUnavailableError
from storylab.models import GenerationResult, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: str = "text"  # text | json
    reference_image_url: str | list[str] | None = None
    size: str | None = None  # e.g. 1024x1024
    aspect_ratio: str | None = None
    duration_seconds: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def reference_images(self) -> list[str]:
        if not self.reference_image_url:
            return []
        if isinstance(self.reference_image_url, str):
            return [self.reference_image_url]
        return [url for url in self.reference_image_url if url]

    @classmethod
    def coerce(cls, options: GenerationOptions | dict | None) -> GenerationOptions:
        """Accept either an options object or the camelCase dict the API layer sends."""
        if isinstance(options, GenerationOptions):
            return options
        options = dict(options or {})
        return cls(
            temperature=options.pop("temperature", None),
            max_tokens=options.pop("maxTokens", options.pop("max_tokens", None)),
            response_format=options.pop("responseFormat", options.pop("response_format", "text")) or "text",
            reference_image_url=options.pop("referenceImageUrl", options.pop("reference_image_url", None)),
            size=options.pop("size", None),
            aspect_ratio=options.pop("aspectRatio", None),
            duration_seconds=options.pop("durationSeconds", None),
            extra=options,
        )


class CapabilityAdaptor(ABC):
    """One AI backend bound to one model. Subclasses declare their model catalogue."""

    adaptor_id: str = ""
    display_name: str = ""
    # model_id -> {"name": ..., "capabilities": [...], "costPer1kTokens": ...}
    models: dict[str, dict] = {}

    def __init__(self, model_id: str, api_key: str = "", config: dict | None = None):
        self.model_id = model_id
        self.api_key = api_key
        self.config = config or {}
        self.usage = {"requests": 0, "inputTokens": 0, "outputTokens": 0, "errors": 0}

    # -- capabilities --------------------------------------------------------

    @abstractmethod
    async def generate_text(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        """Generate text (or a JSON string when response_format is json)."""

    async def generate_image(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        raise AdaptorUnavailableError(
            f"{self.adaptor_id} does not support image generation", self.adaptor_id, self.model_id
        )

    async def generate_video(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        raise AdaptorUnavailableError(
            f"{self.adaptor_id} does not support video generation", self.adaptor_id, self.model_id
        )

    async def invoke(self, capability: str, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        """Dispatch to the capability method by name."""
        if capability == "text":
            return await self.generate_text(prompt, options)
        if capability == "image":
            return await self.generate_image(prompt, options)
        if capability == "video":
            return await self.generate_video(prompt, options)
        raise ValueError(f"Unknown capability: {capability}")

    # -- lifecycle -----------------------------------------------------------

    def validate_config(self):
        """Raise AdaptorUnavailableError when the adaptor cannot be used as configured."""
        if not self.api_key:
            raise AdaptorUnavailableError(
                f"No API key configured for {self.adaptor_id}", self.adaptor_id, self.model_id
            )
        if not self.model_id:
            raise AdaptorUnavailableError(f"No model given for {self.adaptor_id}", self.adaptor_id)
        if self.models and self.model_id not in self.models:
            logger.warning(f"Model {self.model_id} is not in the {self.adaptor_id} catalogue, passing it through")

    async def health_check(self) -> dict:
        """Cheap readiness probe: {status: ok|error|degraded, message}."""
        try:
            self.validate_config()
        except AdaptorUnavailableError as e:
            return {"status": "error", "message": e.message}
        if self.usage["requests"] and self.usage["errors"] > self.usage["requests"] // 2:
            return {"status": "degraded", "message": f"{self.usage['errors']} of {self.usage['requests']} requests failed"}
        return {"status": "ok", "message": ""}

    def get_usage(self) -> dict:
        return dict(self.usage)

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        rate = self.models.get(self.model_id, {}).get("costPer1kTokens", 0.0)
        return round((input_tokens + output_tokens) / 1000 * rate, 6)

    def _record(self, usage: TokenUsage | None = None, failed: bool = False):
        self.usage["requests"] += 1
        if failed:
            self.usage["errors"] += 1
        if usage:
            self.usage["inputTokens"] += usage.input_tokens
            self.usage["outputTokens"] += usage.output_tokens

    # -- catalogue -----------------------------------------------------------

    @classmethod
    def available_models(cls) -> list[dict]:
        return [{"id": model_id, **info} for model_id, info in cls.models.items()]

    @classmethod
    def get_model_info(cls, model_id: str) -> dict | None:
        info = cls.models.get(model_id)
        return {"id": model_id, **info} if info else None

    @classmethod
    def supports(cls, model_id: str, capability: str) -> bool:
        info = cls.models.get(model_id)
        return bool(info) and capability in info.get("capabilities", [])
