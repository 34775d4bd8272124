"""Reshape message content to what the target model accepts."""

import json
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel

from ..domain.models import Attachment, Message, ModelCapabilities

IMAGE_PLACEHOLDER = "[Image not supported by current model]"

PayloadMessage = Dict[str, Any]


def _part_as_dict(part: Any) -> Any:
    if isinstance(part, BaseModel):
        return part.model_dump(exclude_none=True)
    return part


def _stringify(content: Any) -> str:
    try:
        return json.dumps(content, default=str)
    except (TypeError, ValueError):
        return str(content)


def normalize_content(content: Any, capabilities: ModelCapabilities) -> Any:
    """Return the minimal content shape `capabilities` allows.

    Text is kept, images only for image-capable models, other part kinds are
    dropped. A lone remaining text part collapses to a bare string because
    strict providers reject one-element arrays for simple turns. Never raises.
    """
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        kept: List[Dict[str, Any]] = []
        for raw in content:
            part = _part_as_dict(raw)
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind == "text":
                kept.append({"type": "text", "text": str(part.get("text", ""))})
            elif kind == "image" and capabilities.image:
                kept.append(part)

        if not kept:
            kept = [{"type": "text", "text": IMAGE_PLACEHOLDER}]

        if len(kept) == 1 and kept[0]["type"] == "text":
            return kept[0]["text"]
        return kept

    return _stringify(content)


def normalize_message(message: Message, capabilities: ModelCapabilities) -> PayloadMessage:
    """Map a stored message to a completion payload entry."""
    return {
        "role": message.role.value,
        "content": normalize_content(message.content, capabilities),
    }


def normalize_history(
    history: Sequence[Message], capabilities: ModelCapabilities
) -> List[PayloadMessage]:
    return [normalize_message(m, capabilities) for m in history]


def build_turn_content(text: str, attachments: Sequence[Attachment]) -> Any:
    """Content of the current turn: bare text, or text followed by one image per attachment."""
    if not attachments:
        return text

    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for attachment in attachments:
        part: Dict[str, Any] = {
            "type": "image",
            "image": attachment.inline_data or attachment.path or "",
        }
        if attachment.mime_type:
            part["mime_type"] = attachment.mime_type
        parts.append(part)
    return parts
