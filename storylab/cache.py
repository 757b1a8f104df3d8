"""Process-wide prompt cache, injected into the prompt store."""

from __future__ import annotations

import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


class PromptCache:
    """Read-through cache for templates and project overrides.

    The prompt store fills it on reads and never clears it on writes; write
    endpoints call ``clear()`` once after all their writes succeed.
    """

    def __init__(self):
        self._entries: dict[str, Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
            self.misses += 1
            return None

    def set(self, key: str, value: Any):
        with self._lock:
            self._entries[key] = value

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Prompt cache cleared ({count} entries)")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
