"""Pull JSON out of model output that may be fenced or wrapped in prose."""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any

from storylab.errors import ParseError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_ARRAY = re.compile(r"\[[\s\S]*\]")
_OBJECT = re.compile(r"\{[\s\S]*\}")


def _matches(value: Any, expect: str | None) -> bool:
    if expect == "array":
        return isinstance(value, list)
    if expect == "object":
        return isinstance(value, dict)
    return True


def extract_json(text: str, expect: str | None = None) -> Any:
    """Parse ``text`` directly, then from a ```json fence, then from the widest bracket span.

    ``expect`` is "array", "object" or None for either. Raises ParseError.
    """
    if not text or not text.strip():
        raise ParseError("Model returned an empty response")

    candidates = [text.strip()]
    fence = _FENCE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    patterns = {"array": [_ARRAY], "object": [_OBJECT]}.get(expect, [_OBJECT, _ARRAY])
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if _matches(value, expect):
            return value

    raise ParseError(f"Could not find a JSON {expect or 'value'} in model output", preview=text[:200])


def parse_or_fallback(text: str, fallback: Any, expect: str | None = None, label: str = "") -> tuple[Any, bool]:
    """Like extract_json, but returns (fallback copy, True) instead of raising."""
    try:
        return extract_json(text, expect), False
    except ParseError as e:
        logger.warning(f"Using fallback for {label or 'model output'}: {e.message}")
        return copy.deepcopy(fallback), True
