"""StoryLab — staged AI generation with versioned prompts and recipe pipelines."""

__version__ = "1.0.0"
