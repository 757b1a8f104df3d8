"""Google Gemini adaptor (text, image and video)."""

from __future__ import annotations

import asyncio
import base64
import logging
import time

import httpx
from google import genai
from google.genai import types

from storylab.adaptors.base import CapabilityAdaptor, GenerationOptions
from storylab.errors import AdaptorUnavailableError
from storylab.models import GenerationResult, TokenUsage
from storylab.uploads import read_local_media

logger = logging.getLogger(__name__)

VIDEO_POLL_SECONDS = 10
VIDEO_TIMEOUT_SECONDS = 600


async def fetch_reference_image(url: str) -> tuple[bytes, str]:
    """Load a reference image from a data: URL, our own media dir or over HTTP. Returns (bytes, mime type)."""
    local = read_local_media(url)
    if local is not None:
        return local
    if url.startswith("data:"):
        header, encoded = url.split(",", 1)
        mime = header[5:].split(";")[0] or "image/png"
        return base64.b64decode(encoded), mime
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content, resp.headers.get("content-type", "image/png").split(";")[0]


class GeminiAdaptor(CapabilityAdaptor):
    adaptor_id = "gemini"
    display_name = "Google Gemini"
    models = {
        "gemini-2.0-flash": {"name": "Gemini 2.0 Flash", "capabilities": ["text"], "costPer1kTokens": 0.0001},
        "gemini-2.5-flash": {"name": "Gemini 2.5 Flash", "capabilities": ["text"], "costPer1kTokens": 0.0003},
        "gemini-2.5-pro": {"name": "Gemini 2.5 Pro", "capabilities": ["text"], "costPer1kTokens": 0.00125},
        "gemini-2.5-flash-image": {"name": "Gemini 2.5 Flash Image", "capabilities": ["image"]},
        "imagen-3.0-generate-001": {"name": "Imagen 3", "capabilities": ["image"]},
        "veo-3.1-generate-preview": {"name": "Veo 3.1", "capabilities": ["video"]},
    }

    def __init__(self, model_id: str = "gemini-2.0-flash", api_key: str = "", config: dict | None = None):
        super().__init__(model_id, api_key, config)
        self.client = genai.Client(api_key=api_key) if api_key else None

    async def generate_text(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)
        contents = await self._contents(prompt, opts)
        kwargs = {}
        if opts.temperature is not None:
            kwargs["temperature"] = opts.temperature
        if opts.max_tokens is not None:
            kwargs["max_output_tokens"] = opts.max_tokens
        if opts.response_format == "json":
            kwargs["response_mime_type"] = "application/json"

        response = await self._run(
            lambda: self.client.models.generate_content(
                model=self.model_id,
                contents=contents,
                config=types.GenerateContentConfig(**kwargs),
            )
        )
        usage = None
        meta = getattr(response, "usage_metadata", None)
        if meta:
            usage = TokenUsage(
                input_tokens=meta.prompt_token_count or 0,
                output_tokens=meta.candidates_token_count or 0,
            )
        self._record(usage)
        return GenerationResult(model=self.model_id, text=response.text or "", usage=usage)

    async def generate_image(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)
        if self.model_id.startswith("imagen-"):
            return await self._generate_imagen(prompt, opts)
        contents = await self._contents(prompt, opts)
        image_config = types.ImageConfig(aspect_ratio=opts.aspect_ratio) if opts.aspect_ratio else None

        response = await self._run(
            lambda: self.client.models.generate_content(
                model=self.model_id,
                contents=contents,
                config=types.GenerateContentConfig(response_modalities=["Image"], image_config=image_config),
            )
        )
        if response.candidates and response.candidates[0].content and response.candidates[0].content.parts:
            for part in response.candidates[0].content.parts:
                if part.inline_data is not None:
                    mime = part.inline_data.mime_type or "image/png"
                    encoded = base64.b64encode(part.inline_data.data).decode()
                    self._record()
                    return GenerationResult(model=self.model_id, image_url=f"data:{mime};base64,{encoded}")

        self._record(failed=True)
        raise AdaptorUnavailableError("No image generated, response contained no image parts", self.adaptor_id, self.model_id)

    async def _generate_imagen(self, prompt: str, opts: GenerationOptions) -> GenerationResult:
        # Imagen models only serve generate_images and take no reference images
        if opts.reference_images:
            logger.warning(f"{self.model_id} ignores {len(opts.reference_images)} reference image(s)")
        image_config = types.GenerateImagesConfig(number_of_images=1, aspect_ratio=opts.aspect_ratio)
        response = await self._run(
            lambda: self.client.models.generate_images(model=self.model_id, prompt=prompt, config=image_config)
        )
        images = response.generated_images or []
        if not images or images[0].image is None or not images[0].image.image_bytes:
            self._record(failed=True)
            raise AdaptorUnavailableError("Imagen returned no images", self.adaptor_id, self.model_id)
        image = images[0].image
        encoded = base64.b64encode(image.image_bytes).decode()
        self._record()
        return GenerationResult(model=self.model_id, image_url=f"data:{image.mime_type or 'image/png'};base64,{encoded}")

    async def generate_video(self, prompt: str, options: GenerationOptions | dict | None = None) -> GenerationResult:
        opts = GenerationOptions.coerce(options)
        image = None
        if opts.reference_images:
            data, mime = await fetch_reference_image(opts.reference_images[0])
            image = types.Image(image_bytes=data, mime_type=mime)
        video_config = types.GenerateVideosConfig(
            duration_seconds=opts.duration_seconds,
            aspect_ratio=opts.aspect_ratio,
        )

        operation = await self._run(
            lambda: self.client.models.generate_videos(
                model=self.model_id, prompt=prompt, image=image, config=video_config
            )
        )
        deadline = time.monotonic() + VIDEO_TIMEOUT_SECONDS
        while not operation.done:
            if time.monotonic() > deadline:
                self._record(failed=True)
                raise AdaptorUnavailableError("Video generation timed out", self.adaptor_id, self.model_id)
            await asyncio.sleep(VIDEO_POLL_SECONDS)
            operation = await self._run(lambda: self.client.operations.get(operation))

        videos = operation.response.generated_videos if operation.response else None
        if not videos:
            self._record(failed=True)
            raise AdaptorUnavailableError("Video generation returned no videos", self.adaptor_id, self.model_id)
        self._record()
        return GenerationResult(model=self.model_id, video_url=videos[0].video.uri)

    def validate_config(self):
        super().validate_config()
        if self.client is None:
            raise AdaptorUnavailableError("Gemini client not initialised", self.adaptor_id, self.model_id)

    async def _contents(self, prompt: str, opts: GenerationOptions) -> list:
        contents: list = []
        for url in opts.reference_images:
            data, mime = await fetch_reference_image(url)
            contents.append(types.Part.from_bytes(data=data, mime_type=mime))
        contents.append(prompt)
        return contents

    async def _run(self, fn):
        # google.genai is synchronous here, keep it off the event loop
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except Exception as e:
            self._record(failed=True)
            logger.error(f"Gemini API error ({self.model_id}): {e}")
            raise AdaptorUnavailableError(f"Gemini call failed: {e}", self.adaptor_id, self.model_id) from e
