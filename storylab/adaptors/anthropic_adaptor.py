"""Anthropic (Claude) adaptor. Text only; reference images are passed as vision input."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from storylab import config
from storylab.adaptors.base import CapabilityAdaptor, GenerationOptions
from storylab.errors import AdaptorUnavailableError
from storylab.models import GenerationResult, TokenUsage
from storylab.uploads import inline_local_media

logger = logging.getLogger(__name__)


def image_block(url: str) -> dict:
    """Vision block for one reference image. data: and local media URLs are sent inline."""
    url = inline_local_media(url)
    if url.startswith("data:"):
        header, encoded = url.split(",", 1)
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": header[5:].split(";")[0] or "image/png", "data": encoded},
        }
    return {"type": "image", "source": {"type": "url", "url": url}}


class AnthropicAdaptor(CapabilityAdaptor):
    adaptor_id = "anthropic"
    display_name = "Anthropic Claude"
    models = {
        "claude-3-opus-20240229": {"name": "Claude 3 Opus", "capabilities": ["text"], "costPer1kTokens": 0.015},
        "claude-sonnet-4-5": {"name": "Claude Sonnet 4.5", "capabilities": ["text"], "costPer1kTokens": 0.003},
        "claude-haiku-4-5": {"name": "Claude Haiku 4.5", "capabilities": ["text"], "costPer1kTokens": 0.001},
    }

    def __init__(self, model_id: str = "claude-3-opus-20240229", api_key: str = "", config: dict | None = None):
        super().__init__(model_id, api_key, config)
        self.client = anthropic.AsyncAnthropic(api_key=api_key) if api_key else None

    async def generate_text(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)

        content: list[dict] = [image_block(url) for url in opts.reference_images]
        text = prompt
        if opts.response_format == "json":
            text += "\n\nRespond with valid JSON only."
        content.append({"type": "text", "text": text})

        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": opts.max_tokens or config.DEFAULT_MAX_TOKENS,
        }
        if opts.temperature is not None:
            kwargs["temperature"] = opts.temperature

        try:
            raw = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            self._record(failed=True)
            logger.error(f"Anthropic API error: {e}")
            raise AdaptorUnavailableError(f"Anthropic call failed: {e}", self.adaptor_id, self.model_id) from e

        usage = TokenUsage(input_tokens=raw.usage.input_tokens, output_tokens=raw.usage.output_tokens)
        self._record(usage)
        text_out = "".join(block.text for block in raw.content if block.type == "text")
        return GenerationResult(model=self.model_id, text=text_out, usage=usage)

    def validate_config(self):
        super().validate_config()
        if self.client is None:
            raise AdaptorUnavailableError("Anthropic client not initialised", self.adaptor_id, self.model_id)
