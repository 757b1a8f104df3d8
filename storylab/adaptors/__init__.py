"""Capability adaptor layer — pluggable text, image and video backends."""

from storylab.adaptors.base import CapabilityAdaptor, GenerationOptions
from storylab.adaptors.registry import AdaptorRegistry, create_default_registry

__all__ = ["AdaptorRegistry", "CapabilityAdaptor", "GenerationOptions", "create_default_registry"]
