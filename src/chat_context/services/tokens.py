"""Cheap token estimation used for context-budget checks."""

import json
import math
from typing import Any

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of `text` (roughly one token per four characters).

    Only meant for budget comparisons, never for billing.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_content_tokens(content: Any) -> int:
    """Estimate tokens for message content of any shape; image parts are not counted."""
    if isinstance(content, str):
        return estimate_tokens(content)
    if isinstance(content, list):
        total = 0
        for part in content:
            kind = part.get("type") if isinstance(part, dict) else getattr(part, "type", None)
            if kind == "text":
                text = part.get("text", "") if isinstance(part, dict) else part.text
                total += estimate_tokens(str(text))
        return total
    try:
        return estimate_tokens(json.dumps(content, default=str))
    except (TypeError, ValueError):
        return estimate_tokens(str(content))
