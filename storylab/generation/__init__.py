"""Streaming multi-item generators for the FlareLab stages."""

from storylab.generation.animations import AnimationGenerator
from storylab.generation.images import PlayerImageGenerator
from storylab.generation.themes import ThemeGenerator

__all__ = ["AnimationGenerator", "PlayerImageGenerator", "ThemeGenerator"]
