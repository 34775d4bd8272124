"""Completion engine interface, cancellable streams and provider tool registry."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from ..domain.errors import CancelledError
from ..domain.models import CustomModel, ModelDescriptor, Provider

logger = structlog.get_logger()

ToolSpec = Dict[str, Any]
ToolBuilder = Callable[[ModelDescriptor], ToolSpec]


class CancellationToken:
    """User-triggered stop signal shared between the caller and a stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class CompletionEngine(ABC):
    """External collaborator that turns a message payload into streamed text."""

    @abstractmethod
    def stream_completion(
        self,
        model: ModelDescriptor,
        messages: List[Dict[str, Any]],
        *,
        api_key: str,
        cancellation_token: Optional[CancellationToken] = None,
        tools: Optional[ToolSpec] = None,
        custom_model: Optional[CustomModel] = None,
    ) -> AsyncIterator[str]:
        """Yield text chunks; raise CompletionEngineError on provider failure."""


class StreamState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CompletionStream:
    """Live handle on one streamed completion.

    Iterate it for text chunks. `on_finish` receives the full text exactly once,
    and only when the engine ran to the end without being cancelled; a cancelled
    or failed stream never triggers it.
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        on_finish: Callable[[str], Awaitable[Any]],
        cancellation_token: Optional[CancellationToken] = None,
    ) -> None:
        self._chunks = chunks
        self._on_finish = on_finish
        self.cancellation_token = cancellation_token or CancellationToken()
        self.state = StreamState.ACTIVE
        self.result: Any = None
        self._parts: List[str] = []
        self._consumed = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def cancel(self) -> None:
        self.cancellation_token.cancel()

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("completion stream can only be consumed once")
        self._consumed = True
        return self._run()

    async def _run(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._chunks:
                if self.cancellation_token.cancelled:
                    break
                self._parts.append(chunk)
                yield chunk
        except asyncio.CancelledError:
            self.state = StreamState.CANCELLED
            raise
        except Exception as exc:
            self.state = StreamState.FAILED
            logger.error("completion_stream_failed", error=str(exc))
            raise

        if self.cancellation_token.cancelled:
            self.state = StreamState.CANCELLED
            await self._close_source()
            logger.info("completion_stream_cancelled", received_chars=len(self.text))
            return

        self.state = StreamState.COMPLETED
        self.result = await self._on_finish(self.text)

    async def _close_source(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    async def collect(self) -> str:
        """Drain the stream and return the full text.

        Raises:
            CancelledError: the stream was cancelled before completion.
        """
        async for _ in self:
            pass
        if self.state == StreamState.CANCELLED:
            raise CancelledError("generation was cancelled")
        return self.text


class ToolRegistry:
    """Maps provider ids to builders for provider-specific web-search tools."""

    def __init__(self) -> None:
        self._builders: Dict[str, ToolBuilder] = {}

    def register(self, provider: str, builder: ToolBuilder) -> None:
        self._builders[provider] = builder

    def supports(self, provider: str) -> bool:
        return provider in self._builders

    def build(self, model: ModelDescriptor) -> Optional[ToolSpec]:
        """Tool spec for `model`'s provider, or None when the provider has none."""
        builder = self._builders.get(model.provider.value)
        if builder is None:
            logger.info("web_search_unsupported", provider=model.provider.value, model=model.id)
            return None
        return builder(model)


def _google_search(model: ModelDescriptor) -> ToolSpec:
    return {"google_search_retrieval": {}}


def _openai_search(model: ModelDescriptor) -> ToolSpec:
    return {"web_search_preview": {"type": "web_search_preview"}}


def _anthropic_search(model: ModelDescriptor) -> ToolSpec:
    return {"web_search": {"type": "web_search_20250305", "name": "web_search", "max_uses": 5}}


def default_tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(Provider.GOOGLE.value, _google_search)
    registry.register(Provider.OPENAI.value, _openai_search)
    registry.register(Provider.ANTHROPIC.value, _anthropic_search)
    return registry
