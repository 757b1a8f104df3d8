"""Adaptor registry — maps adaptor ids to adaptor classes and builds instances."""

from __future__ import annotations

import logging

from storylab import config
from storylab.adaptors.base import CapabilityAdaptor
from storylab.errors import AdaptorUnavailableError

logger = logging.getLogger(__name__)


class AdaptorRegistry:
    """Registry of adaptor classes keyed by string id."""

    def __init__(self, api_keys: dict[str, str] | None = None):
        self._adaptors: dict[str, type[CapabilityAdaptor]] = {}
        self._api_keys = dict(api_keys if api_keys is not None else config.ADAPTOR_API_KEYS)

    def register(self, adaptor_id: str, adaptor_cls: type[CapabilityAdaptor], api_key: str | None = None):
        if adaptor_id in self._adaptors:
            raise ValueError(f"Adaptor '{adaptor_id}' is already registered")
        self._adaptors[adaptor_id] = adaptor_cls
        if api_key is not None:
            self._api_keys[adaptor_id] = api_key
        logger.debug(f"Registered adaptor {adaptor_id}")

    def unregister(self, adaptor_id: str):
        self._adaptors.pop(adaptor_id, None)

    def has(self, adaptor_id: str) -> bool:
        return adaptor_id in self._adaptors

    def ids(self) -> list[str]:
        return list(self._adaptors)

    def get_class(self, adaptor_id: str) -> type[CapabilityAdaptor]:
        adaptor_cls = self._adaptors.get(adaptor_id)
        if not adaptor_cls:
            raise AdaptorUnavailableError(
                f"Unknown adaptor '{adaptor_id}'. Registered: {', '.join(self._adaptors) or 'none'}",
                adaptor_id=adaptor_id,
            )
        return adaptor_cls

    def create(self, adaptor_id: str, model_id: str, adaptor_config: dict | None = None) -> CapabilityAdaptor:
        """Instantiate an adaptor for a model and validate its configuration."""
        adaptor_cls = self.get_class(adaptor_id)
        try:
            adaptor = adaptor_cls(model_id=model_id, api_key=self._api_keys.get(adaptor_id, ""), config=adaptor_config)
        except AdaptorUnavailableError:
            raise
        except Exception as e:
            raise AdaptorUnavailableError(
                f"Failed to initialise {adaptor_id}/{model_id}: {e}", adaptor_id, model_id
            ) from e
        adaptor.validate_config()
        return adaptor

    def available_models(self, adaptor_id: str | None = None) -> dict[str, list[dict]]:
        ids = [adaptor_id] if adaptor_id else self.ids()
        return {i: self.get_class(i).available_models() for i in ids}


def create_default_registry() -> AdaptorRegistry:
    """Registry with the built-in Gemini, OpenAI and Anthropic adaptors."""
    from storylab.adaptors.anthropic_adaptor import AnthropicAdaptor
    from storylab.adaptors.gemini_adaptor import GeminiAdaptor
    from storylab.adaptors.openai_adaptor import OpenAIAdaptor

    registry = AdaptorRegistry()
    registry.register("gemini", GeminiAdaptor)
    registry.register("openai", OpenAIAdaptor)
    registry.register("anthropic", AnthropicAdaptor)
    return registry
