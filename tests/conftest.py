"""Shared fixtures: an in-memory store and a scripted completion engine."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chat_context.api.app import app, get_chat_service
from chat_context.api.request_queue import get_request_queue, reset_request_queue
from chat_context.domain.models import (
    Conversation,
    Message,
    MessageMetadata,
    Role,
)
from chat_context.repositories.memory import InMemoryRepository
from chat_context.services.chat import ChatService
from chat_context.services.completion import CompletionEngine

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedEngine(CompletionEngine):
    """Completion engine that replays canned replies in small chunks."""

    def __init__(self) -> None:
        self.replies: List[str] = []
        self.default_reply = "Sure, here is my answer."
        self.error: Optional[Exception] = None
        self.chunk_size = 5
        self.delay = 0.0
        self.calls: List[Dict[str, Any]] = []

    async def stream_completion(
        self,
        model,
        messages,
        *,
        api_key,
        cancellation_token=None,
        tools=None,
        custom_model=None,
    ):
        self.calls.append(
            {"model": model, "messages": messages, "tools": tools, "custom_model": custom_model}
        )
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else self.default_reply
        for start in range(0, len(reply), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield reply[start : start + self.chunk_size]

    @property
    def last_payload(self) -> List[Dict[str, Any]]:
        return self.calls[-1]["messages"]


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def service(repository, engine) -> ChatService:
    return ChatService(repository, engine)


@pytest.fixture
def seed(repository):
    """Create a conversation pre-filled with `(role, content)` turns one second apart."""

    async def _seed(turns, model_id: str = "gpt-4o", provider_id: str = "openai", **metadata):
        conversation = await repository.create_conversation(
            Conversation(model_id=model_id, provider_id=provider_id)
        )
        stored = []
        for i, (role, content) in enumerate(turns):
            message = Message(
                conversation_id=conversation.id,
                role=Role(role),
                content=content,
                timestamp=T0 + timedelta(seconds=i),
                metadata=MessageMetadata(**metadata),
            )
            stored.append(await repository.insert_message(message))
        return conversation.id, stored

    return _seed


@pytest.fixture
def api_service():
    """Chat service wired into the FastAPI app for the duration of a test."""
    service = ChatService(InMemoryRepository(), ScriptedEngine())
    app.dependency_overrides[get_chat_service] = lambda: service
    reset_request_queue()
    yield service
    app.dependency_overrides.clear()
    reset_request_queue()



@pytest_asyncio.fixture
async def client(api_service):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await get_request_queue().cleanup()
