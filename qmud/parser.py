"""Recover page objects from free-form model output.

The model is asked for bare JSON but does not always comply. Strategies,
in priority order; the first that parses wins:

  1. the whole trimmed text
  2. the interior of a ``` fence (optionally tagged json)
  3. the interior of a [JSON] ... [/JSON] marker pair
  4. the span from the first "{" to the last "}"

Parse failures inside a strategy are never raised.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_MARKER_RE = re.compile(r"\[JSON\]\s*([\s\S]*?)\s*\[/JSON\]", re.IGNORECASE)


def _try_load(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def _candidates(text: str):
    yield text
    m = _FENCE_RE.search(text)
    if m:
        yield m.group(1)
    m = _MARKER_RE.search(text)
    if m:
        yield m.group(1)
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        yield text[start:end + 1]


def extract_json(text: str | None) -> Any | None:
    """Return the first JSON value recoverable from `text`, or None."""
    if not text:
        return None
    cleaned = text.strip()
    for candidate in _candidates(cleaned):
        data = _try_load(candidate)
        if data is not None:
            return data
    return None


def extract_page(text: str | None) -> dict | None:
    """Return a page-shaped dict, or None.

    Syntactically valid JSON still fails here unless it is an object with a
    non-empty `page_id` and `prose`.
    """
    data = extract_json(text)
    if not isinstance(data, dict):
        logger.warning("Page output is not a JSON object: %.80r", text)
        return None
    if not data.get("page_id") or not data.get("prose"):
        logger.warning("Page output lacks page_id or prose: keys=%s", sorted(data))
        return None
    return data
