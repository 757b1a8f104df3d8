"""OpenAI adaptor (GPT text, DALL-E images)."""

from __future__ import annotations

import logging
from typing import Any

import openai

from storylab.adaptors.base import CapabilityAdaptor, GenerationOptions
from storylab.errors import AdaptorUnavailableError
from storylab.models import GenerationResult, TokenUsage
from storylab.uploads import inline_local_media

logger = logging.getLogger(__name__)


class OpenAIAdaptor(CapabilityAdaptor):
    adaptor_id = "openai"
    display_name = "OpenAI"
    models = {
        "gpt-4-turbo": {"name": "GPT-4 Turbo", "capabilities": ["text"], "costPer1kTokens": 0.01},
        "gpt-4o": {"name": "GPT-4o", "capabilities": ["text"], "costPer1kTokens": 0.005},
        "gpt-4o-mini": {"name": "GPT-4o mini", "capabilities": ["text"], "costPer1kTokens": 0.00015},
        "dall-e-3": {"name": "DALL-E 3", "capabilities": ["image"]},
    }

    def __init__(self, model_id: str = "gpt-4-turbo", api_key: str = "", config: dict | None = None):
        super().__init__(model_id, api_key, config)
        self.client = openai.AsyncOpenAI(api_key=api_key) if api_key else None

    async def generate_text(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)

        content: Any = prompt
        if opts.reference_images:
            content = [{"type": "text", "text": prompt}] + [
                {"type": "image_url", "image_url": {"url": inline_local_media(url)}} for url in opts.reference_images
            ]
        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "messages": [{"role": "user", "content": content}],
        }
        if opts.temperature is not None:
            kwargs["temperature"] = opts.temperature
        if opts.max_tokens is not None:
            kwargs["max_tokens"] = opts.max_tokens
        if opts.response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}

        try:
            raw = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            self._record(failed=True)
            logger.error(f"OpenAI API error: {e}")
            raise AdaptorUnavailableError(f"OpenAI call failed: {e}", self.adaptor_id, self.model_id) from e

        usage = None
        if raw.usage:
            usage = TokenUsage(input_tokens=raw.usage.prompt_tokens, output_tokens=raw.usage.completion_tokens)
        self._record(usage)
        return GenerationResult(model=self.model_id, text=raw.choices[0].message.content or "", usage=usage)

    async def generate_image(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)
        try:
            raw = await self.client.images.generate(
                model=self.model_id,
                prompt=prompt,
                size=opts.size or "1024x1024",
                n=1,
            )
        except openai.APIError as e:
            self._record(failed=True)
            logger.error(f"OpenAI image error: {e}")
            raise AdaptorUnavailableError(f"OpenAI image call failed: {e}", self.adaptor_id, self.model_id) from e

        image = raw.data[0]
        url = image.url or f"data:image/png;base64,{image.b64_json}"
        self._record()
        return GenerationResult(model=self.model_id, image_url=url)

    def validate_config(self):
        super().validate_config()
        if self.client is None:
            raise AdaptorUnavailableError("OpenAI client not initialised", self.adaptor_id, self.model_id)
