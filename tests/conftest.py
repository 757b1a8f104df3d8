"""Shared fixtures: an in-memory store and a scripted stand-in for the AI backends."""

from __future__ import annotations

import pytest

from storylab.adaptors.base import CapabilityAdaptor, GenerationOptions
from storylab.adaptors.registry import AdaptorRegistry
from storylab.models import GenerationResult, TokenUsage
from storylab.services import Services
from storylab.store import InMemoryDocumentStore
from storylab.uploads import LocalBlobUploader


class StubAdaptor(CapabilityAdaptor):
    """Deterministic adaptor. Responses are scripted per class, calls are recorded per class."""

    adaptor_id = "stub"
    display_name = "Stub"
    models = {
        "stub-text": {"name": "Stub Text", "capabilities": ["text"]},
        "stub-image": {"name": "Stub Image", "capabilities": ["image"]},
        "stub-video": {"name": "Stub Video", "capabilities": ["video"]},
    }

    # Each entry is a str (returned) or an Exception (raised); popped in order
    text_responses: list = []
    image_responses: list = []
    video_responses: list = []
    calls: list = []

    @classmethod
    def reset(cls):
        cls.text_responses = []
        cls.image_responses = []
        cls.video_responses = []
        cls.calls = []

    def _next(self, queue: list, default: str) -> str:
        if not queue:
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_text(self, prompt, options=None):
        opts = GenerationOptions.coerce(options)
        type(self).calls.append(("text", self.model_id, prompt, opts))
        text = self._next(type(self).text_responses, f"echo: {prompt}")
        return GenerationResult(model=self.model_id, text=text, usage=TokenUsage(len(prompt), len(text)))

    async def generate_image(self, prompt, options=None):
        opts = GenerationOptions.coerce(options)
        type(self).calls.append(("image", self.model_id, prompt, opts))
        url = self._next(type(self).image_responses, f"https://img.test/{len(type(self).calls)}.png")
        return GenerationResult(model=self.model_id, image_url=url)

    async def generate_video(self, prompt, options=None):
        opts = GenerationOptions.coerce(options)
        type(self).calls.append(("video", self.model_id, prompt, opts))
        url = self._next(type(self).video_responses, f"https://vid.test/{len(type(self).calls)}.mp4")
        return GenerationResult(model=self.model_id, video_url=url)


class BrokenAdaptor(StubAdaptor):
    adaptor_id = "broken"

    async def health_check(self) -> dict:
        return {"status": "error", "message": "backend down"}


def make_registry() -> AdaptorRegistry:
    registry = AdaptorRegistry(api_keys={})
    # The global default adaptor id resolves to the stub as well
    registry.register("gemini", StubAdaptor, api_key="test-key")
    registry.register("stub", StubAdaptor, api_key="test-key")
    registry.register("broken", BrokenAdaptor, api_key="test-key")
    return registry


@pytest.fixture(autouse=True)
def reset_stub():
    StubAdaptor.reset()
    yield
    StubAdaptor.reset()


@pytest.fixture
def db():
    return InMemoryDocumentStore()


@pytest.fixture
def services(db, tmp_path):
    return Services.create(
        db=db,
        registry=make_registry(),
        uploader=LocalBlobUploader(tmp_path / "media", "/media"),
        check_health=True,
        retry_attempts=3,
        animation_delay=0,
        seed=False,
    )


def text_prompt(user: str, system: str = "", **extra) -> dict:
    return {"systemPrompt": system, "userPromptTemplate": user, "outputFormat": "text", **extra}

