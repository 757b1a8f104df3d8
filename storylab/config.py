"""Configuration loading and defaults.

Reads from config.toml at the project root, with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from dotenv import load_dotenv

# Look for .env in the package's parent directory (project root)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")
load_dotenv()  # also check cwd

# ---------------------------------------------------------------------------
# Load config.toml
# ---------------------------------------------------------------------------

_toml_path = Path(os.getenv("STORYLAB_CONFIG", str(_project_root / "config.toml")))
_cfg: dict = {}
if _toml_path.exists():
    with open(_toml_path, "rb") as f:
        _cfg = tomllib.load(f)

_server = _cfg.get("server", {})
_ai = _cfg.get("ai", {})
_recipes = _cfg.get("recipes", {})
_storage = _cfg.get("storage", {})
_generation = _cfg.get("generation", {})


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Adaptor API keys (env-only, never in toml)
# ---------------------------------------------------------------------------

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

ADAPTOR_API_KEYS = {
    "gemini": GEMINI_API_KEY,
    "openai": OPENAI_API_KEY,
    "anthropic": ANTHROPIC_API_KEY,
}

# ---------------------------------------------------------------------------
# Adaptor defaults
# ---------------------------------------------------------------------------

DEFAULT_ADAPTOR = os.getenv("STORYLAB_DEFAULT_ADAPTOR", _ai.get("default_adaptor", "gemini"))
DEFAULT_TEXT_MODEL = os.getenv("STORYLAB_DEFAULT_MODEL", _ai.get("default_model", "gemini-2.0-flash"))
DEFAULT_IMAGE_MODEL = os.getenv("STORYLAB_DEFAULT_IMAGE_MODEL", _ai.get("default_image_model", "gemini-2.5-flash-image"))
DEFAULT_VIDEO_MODEL = os.getenv("STORYLAB_DEFAULT_VIDEO_MODEL", _ai.get("default_video_model", "veo-3.1-generate-preview"))

# Default model per capability for the global tier
DEFAULT_CAPABILITY_MODELS = {
    "text": DEFAULT_TEXT_MODEL,
    "image": DEFAULT_IMAGE_MODEL,
    "video": DEFAULT_VIDEO_MODEL,
}

# Default model per adaptor when a project names only the adaptor
ADAPTOR_DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash",
    "openai": "gpt-4-turbo",
    "anthropic": "claude-3-opus-20240229",
}

DEFAULT_MAX_TOKENS = int(os.getenv("STORYLAB_MAX_TOKENS", _ai.get("max_tokens", 4096)))

# Skip the adaptor health probe during resolution (useful offline)
SKIP_HEALTH_CHECK = _flag(os.getenv("STORYLAB_SKIP_HEALTH_CHECK", _ai.get("skip_health_check", False)))

# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

# Total attempts for nodes with onError=retry (1 initial + N-1 retries)
RETRY_ATTEMPTS = int(os.getenv("STORYLAB_RETRY_ATTEMPTS", _recipes.get("retry_attempts", 3)))
DEFAULT_NODE_TIMEOUT_MS = int(os.getenv("STORYLAB_NODE_TIMEOUT_MS", _recipes.get("timeout_ms", 120000)))

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

MEDIA_DIR = Path(os.getenv("STORYLAB_MEDIA_DIR", _storage.get("media_dir", str(Path.cwd() / "media"))))
MEDIA_URL_PREFIX = os.getenv("STORYLAB_MEDIA_URL", _storage.get("media_url", "/media"))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

SERVER_HOST = os.getenv("STORYLAB_HOST", _server.get("host", "0.0.0.0"))
SERVER_PORT = int(os.getenv("STORYLAB_PORT", _server.get("port", 8000)))
SSE_KEEPALIVE_SECONDS = float(os.getenv("STORYLAB_SSE_KEEPALIVE", _server.get("sse_keepalive", 15)))

# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

# Pause between animation items to stay under video rate limits
ANIMATION_ITEM_DELAY = float(os.getenv("STORYLAB_ANIMATION_DELAY", _generation.get("animation_delay", 2.0)))
ANIMATION_DURATION_SECONDS = int(os.getenv("STORYLAB_ANIMATION_SECONDS", _generation.get("animation_seconds", 4)))
