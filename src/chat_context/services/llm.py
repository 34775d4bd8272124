"""Completion engine backed by Google's Gemini models."""

import base64
import binascii
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import CompletionEngineError
from ..domain.models import CustomModel, ModelDescriptor, Provider
from .completion import CancellationToken, CompletionEngine, ToolSpec

logger = structlog.get_logger()

DEFAULT_IMAGE_MIME = "image/png"


def _is_file(source: str) -> bool:
    try:
        return Path(source).is_file()
    except (OSError, ValueError):
        # inline base64 too long to be a file name
        return False


def _image_blob(part: Dict[str, Any]) -> Dict[str, Any]:
    """Inline-data blob for an image part holding base64 data or a file path."""
    source = str(part.get("image", ""))
    mime_type = part.get("mime_type") or DEFAULT_IMAGE_MIME
    if _is_file(source):
        data = Path(source).read_bytes()
    else:
        if source.startswith("data:") and "," in source:
            header, source = source.split(",", 1)
            mime_type = header[5:].split(";", 1)[0] or mime_type
        try:
            data = base64.b64decode(source, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CompletionEngineError(f"Unreadable image data: {e}", provider="google") from e
    return {"inline_data": {"mime_type": mime_type, "data": data}}


def to_gemini_contents(
    messages: List[Dict[str, Any]],
) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Split a payload into a system instruction and Gemini `contents`."""
    system_parts: List[str] = []
    contents: List[Dict[str, Any]] = []
    for message in messages:
        content = message["content"]
        if message["role"] == "system":
            system_parts.append(content if isinstance(content, str) else str(content))
            continue

        if isinstance(content, str):
            parts: List[Any] = [{"text": content}]
        else:
            parts = []
            for part in content:
                if part.get("type") == "text":
                    parts.append({"text": part["text"]})
                elif part.get("type") == "image":
                    parts.append(_image_blob(part))

        role = "model" if message["role"] == "assistant" else "user"
        contents.append({"role": role, "parts": parts})

    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return system_instruction, contents


class GeminiCompletionEngine(CompletionEngine):
    """Streams completions from Gemini through google-generativeai."""

    def __init__(self, default_api_key: Optional[str] = None) -> None:
        self.default_api_key = default_api_key
        logger.info("gemini_engine_init", has_default_key=bool(default_api_key))

    async def stream_completion(
        self,
        model: ModelDescriptor,
        messages: List[Dict[str, Any]],
        *,
        api_key: str,
        cancellation_token: Optional[CancellationToken] = None,
        tools: Optional[ToolSpec] = None,
        custom_model: Optional[CustomModel] = None,
    ) -> AsyncIterator[str]:
        if model.provider != Provider.GOOGLE:
            raise CompletionEngineError(
                f"Provider {model.provider.value} is not supported by the Gemini engine",
                provider=model.provider.value,
            )

        genai.configure(api_key=api_key or self.default_api_key)
        system_instruction, contents = to_gemini_contents(messages)
        generative_model = genai.GenerativeModel(
            model.id,
            system_instruction=system_instruction,
            tools=tools,
        )

        try:
            response = await generative_model.generate_content_async(contents, stream=True)
            async for chunk in response:
                if cancellation_token is not None and cancellation_token.cancelled:
                    logger.info("gemini_stream_stopped", model=model.id)
                    return
                try:
                    text = chunk.text
                except ValueError:
                    # chunk carried no text (safety block or tool call)
                    continue
                if text:
                    yield text
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", model=model.id)
            raise CompletionEngineError(f"Quota exhausted: {e}", provider="google") from e
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_request_failed", model=model.id, error=str(e))
            raise CompletionEngineError(str(e), provider="google") from e
