"""Tests for sending messages through the chat service."""

import pytest

from chat_context.domain.errors import (
    CapabilityMismatchError,
    CompletionEngineError,
    ConversationNotFoundError,
    ModelNotFoundError,
    TooManyAttachmentsError,
)
from chat_context.domain.models import (
    Attachment,
    CustomModel,
    ImagePart,
    Role,
    TextPart,
)
from chat_context.services.completion import CancellationToken, StreamState
from chat_context.services.compactor import ELISION_MARKER
from chat_context.services.normalizer import IMAGE_PLACEHOLDER

TEXT_ONLY_MODEL = "llama-3.3-70b-versatile"
VISION_MODEL = "gpt-4o"

PNG = Attachment(name="cat.png", mime_type="image/png", size_bytes=4, inline_data="AAA=")


@pytest.mark.asyncio
async def test_send_message_persists_user_and_assistant(service, repository, engine, seed):
    """A completed turn writes the user message and then the reply."""
    conversation_id, _ = await seed([])
    engine.replies = ["Hello there, friend!"]

    stream = await service.send_message(conversation_id, "hi", model_id=TEXT_ONLY_MODEL)
    chunks = [chunk async for chunk in stream]

    assert "".join(chunks) == "Hello there, friend!"
    assert stream.state == StreamState.COMPLETED
    messages = await repository.get_messages(conversation_id)
    assert [(m.role, m.text) for m in messages] == [
        (Role.USER, "hi"),
        (Role.ASSISTANT, "Hello there, friend!"),
    ]
    assert messages[0].metadata.token_count == 1
    assert messages[1].metadata.model == TEXT_ONLY_MODEL
    assert messages[1].timestamp > messages[0].timestamp
    assert stream.result == messages[1]


@pytest.mark.asyncio
async def test_user_message_is_written_before_the_stream_runs(service, repository, seed):
    conversation_id, _ = await seed([])

    await service.send_message(conversation_id, "hi", model_id=TEXT_ONLY_MODEL)

    messages = await repository.get_messages(conversation_id)
    assert [m.role for m in messages] == [Role.USER]


@pytest.mark.asyncio
async def test_attachment_on_text_only_model_is_rejected_before_persisting(
    service, repository, engine, seed
):
    conversation_id, _ = await seed([])

    with pytest.raises(CapabilityMismatchError):
        await service.send_message(
            conversation_id, "what is this?", model_id=TEXT_ONLY_MODEL, attachments=[PNG]
        )

    assert await repository.get_messages(conversation_id) == []
    assert engine.calls == []


@pytest.mark.asyncio
async def test_attachment_on_vision_model_sends_image_parts(service, engine, seed):
    conversation_id, _ = await seed([])

    stream = await service.send_message(
        conversation_id, "what is this?", model_id=VISION_MODEL, attachments=[PNG]
    )
    await stream.collect()

    assert engine.last_payload[-1] == {
        "role": "user",
        "content": [
            {"type": "text", "text": "what is this?"},
            {"type": "image", "image": "AAA=", "mime_type": "image/png"},
        ],
    }


@pytest.mark.asyncio
async def test_more_than_three_attachments_rejected(service, repository, seed):
    conversation_id, _ = await seed([])

    with pytest.raises(TooManyAttachmentsError):
        await service.send_message(
            conversation_id, "four pics", model_id=VISION_MODEL, attachments=[PNG] * 4
        )
    assert await repository.get_messages(conversation_id) == []


@pytest.mark.asyncio
async def test_unknown_model_rejected(service, repository, seed):
    conversation_id, _ = await seed([])

    with pytest.raises(ModelNotFoundError):
        await service.send_message(conversation_id, "hi", model_id="no-such-model")
    assert await repository.get_messages(conversation_id) == []


@pytest.mark.asyncio
async def test_unknown_conversation_rejected(service):
    from uuid import uuid4

    with pytest.raises(ConversationNotFoundError):
        await service.send_message(uuid4(), "hi", model_id=TEXT_ONLY_MODEL)


@pytest.mark.asyncio
async def test_custom_model_override_resolves(service, engine, repository, seed):
    conversation_id, _ = await seed([])
    custom = CustomModel(
        id="local-llama", name="Local Llama", base_url="http://localhost:1234/v1", model_id="llama3"
    )

    stream = await service.send_message(
        conversation_id, "hi", model_id="local-llama", custom_model=custom
    )
    await stream.collect()

    call = engine.calls[-1]
    assert call["model"].provider.value == "custom"
    assert call["model"].context_window_tokens == 128_000
    assert call["custom_model"] == custom
    messages = await repository.get_messages(conversation_id)
    assert messages[-1].metadata.model == "local-llama"


@pytest.mark.asyncio
async def test_cancelled_stream_persists_no_reply(service, repository, engine, seed):
    """Cancelling mid-stream leaves only the user message behind."""
    conversation_id, _ = await seed([])
    engine.replies = ["This is a long answer that will be cut short."]
    token = CancellationToken()

    stream = await service.send_message(
        conversation_id, "tell me a story", model_id=TEXT_ONLY_MODEL, cancellation_token=token
    )
    received = []
    async for chunk in stream:
        received.append(chunk)
        token.cancel()

    assert received == ["This "]
    assert stream.state == StreamState.CANCELLED
    assert stream.result is None
    messages = await repository.get_messages(conversation_id)
    assert [m.role for m in messages] == [Role.USER]


@pytest.mark.asyncio
async def test_engine_failure_keeps_user_message(service, repository, engine, seed):
    conversation_id, _ = await seed([])
    engine.error = CompletionEngineError("upstream 500", provider="groq")

    stream = await service.send_message(conversation_id, "hi", model_id=TEXT_ONLY_MODEL)
    with pytest.raises(CompletionEngineError):
        await stream.collect()

    assert stream.state == StreamState.FAILED
    messages = await repository.get_messages(conversation_id)
    assert [m.role for m in messages] == [Role.USER]


@pytest.mark.asyncio
async def test_history_is_normalized_for_the_current_model(service, engine, seed):
    """Images from an earlier vision model are stripped after switching to a text model."""
    conversation_id, _ = await seed(
        [
            ("user", [TextPart(text="describe"), ImagePart(image="AAA=")]),
            ("assistant", "A cat on a mat."),
            ("user", [ImagePart(image="BBB=")]),
            ("assistant", "Another cat."),
        ]
    )

    stream = await service.send_message(conversation_id, "thanks", model_id=TEXT_ONLY_MODEL)
    await stream.collect()

    assert engine.last_payload == [
        {"role": "user", "content": "describe"},
        {"role": "assistant", "content": "A cat on a mat."},
        {"role": "user", "content": IMAGE_PLACEHOLDER},
        {"role": "assistant", "content": "Another cat."},
        {"role": "user", "content": "thanks"},
    ]


@pytest.mark.asyncio
async def test_long_history_is_windowed_in_payload(service, engine, repository, seed):
    turns = [("user" if i % 2 == 0 else "assistant", f"turn {i}") for i in range(15)]
    # 15 * 8000 tokens against a 128k window
    conversation_id, stored = await seed(turns, token_count=8000)
    custom = CustomModel(id="local", name="Local", base_url="http://localhost", model_id="m")

    stream = await service.send_message(
        conversation_id, "next", model_id="local", custom_model=custom
    )
    await stream.collect()

    payload = engine.last_payload
    assert len(payload) == 12
    assert payload[0] == {"role": "assistant", "content": ELISION_MARKER}
    assert [p["content"] for p in payload[1:11]] == [m.text for m in stored[-10:]]
    assert payload[-1] == {"role": "user", "content": "next"}
    # storage untouched by the window
    assert len(await repository.get_messages(conversation_id)) == 17


@pytest.mark.asyncio
async def test_explicit_history_overrides_store(service, engine, seed):
    conversation_id, stored = await seed([("user", "one"), ("assistant", "two")])

    stream = await service.send_message(
        conversation_id, "three", model_id=TEXT_ONLY_MODEL, history=stored[1:]
    )
    await stream.collect()

    assert [p["content"] for p in engine.last_payload] == ["two", "three"]


@pytest.mark.asyncio
async def test_web_search_tools_requested_when_provider_supports_it(service, engine, seed):
    conversation_id, _ = await seed([])

    stream = await service.send_message(
        conversation_id, "news?", model_id="gemini-2.5-flash", web_search=True
    )
    await stream.collect()

    assert engine.calls[-1]["tools"] == {"google_search_retrieval": {}}


@pytest.mark.asyncio
async def test_web_search_silently_omitted_for_unsupported_provider(service, engine, seed):
    conversation_id, _ = await seed([])

    stream = await service.send_message(
        conversation_id, "news?", model_id=TEXT_ONLY_MODEL, web_search=True
    )
    assert await stream.collect() == engine.default_reply

    assert engine.calls[-1]["tools"] is None


@pytest.mark.asyncio
async def test_tools_not_requested_without_flag(service, engine, seed):
    conversation_id, _ = await seed([])

    stream = await service.send_message(conversation_id, "hi", model_id="gemini-2.5-flash")
    await stream.collect()

    assert engine.calls[-1]["tools"] is None


@pytest.mark.asyncio
async def test_stream_can_only_be_consumed_once(service, seed):
    conversation_id, _ = await seed([])
    stream = await service.send_message(conversation_id, "hi", model_id=TEXT_ONLY_MODEL)
    await stream.collect()

    with pytest.raises(RuntimeError):
        await stream.collect()


@pytest.mark.asyncio
async def test_empty_completion_is_not_persisted(service, repository, engine, seed):
    conversation_id, _ = await seed([])
    engine.replies = ["   "]

    stream = await service.send_message(conversation_id, "hi", model_id=TEXT_ONLY_MODEL)
    await stream.collect()

    assert stream.state == StreamState.COMPLETED
    assert stream.result is None
    assert [m.role for m in await repository.get_messages(conversation_id)] == [Role.USER]


@pytest.mark.asyncio
async def test_conversation_model_switch(service, seed):
    conversation_id, _ = await seed([])

    conversation = await service.update_conversation_model(conversation_id, TEXT_ONLY_MODEL)

    assert conversation.model_id == TEXT_ONLY_MODEL
    assert conversation.provider_id == "groq"


@pytest.mark.asyncio
async def test_delete_conversation_cascades(service, repository, seed):
    conversation_id, stored = await seed([("user", "one"), ("assistant", "two")])

    await service.delete_conversation(conversation_id)

    assert await repository.get_conversation(conversation_id) is None
    assert await repository.get_message(stored[0].id) is None


@pytest.mark.asyncio
async def test_deleting_folder_moves_conversations_to_root(service):
    folder = await service.create_folder("Work")
    conversation = await service.create_conversation(TEXT_ONLY_MODEL, folder_id=folder.id)

    await service.delete_folder(folder.id)

    assert (await service.get_conversation(conversation.id)).folder_id is None
    assert await service.list_folders() == []
