"""Chat service: turn execution, durable compaction and history editing."""

from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence
from uuid import UUID

import structlog

from ..domain.catalog import resolve_model
from ..domain.errors import (
    CapabilityMismatchError,
    CompletionEngineError,
    ConversationNotFoundError,
    MessageNotFoundError,
    TooManyAttachmentsError,
)
from ..domain.models import (
    Attachment,
    Conversation,
    CustomModel,
    Folder,
    Message,
    MessageMetadata,
    MessageStatus,
    ModelDescriptor,
    Role,
    utcnow,
)
from ..repositories.base import Repository
from .compactor import SUMMARY_PROMPT, compact_history, format_transcript, summary_content
from .completion import (
    CancellationToken,
    CompletionEngine,
    CompletionStream,
    ToolRegistry,
    default_tool_registry,
)
from .normalizer import PayloadMessage, build_turn_content, normalize_history
from .tokens import estimate_content_tokens, estimate_tokens

logger = structlog.get_logger()

MAX_ATTACHMENTS = 3
_TICK = timedelta(microseconds=1)


async def _discard(text: str) -> None:
    return None


class ChatService:
    """Owns a conversation's history and what of it reaches the model.

    The caller is expected to run at most one turn per conversation at a time;
    the service itself takes no per-conversation lock.
    """

    def __init__(
        self,
        repository: Repository,
        engine: CompletionEngine,
        tool_registry: Optional[ToolRegistry] = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.tools = tool_registry or default_tool_registry()

    # ---------- conversations & folders ----------

    async def create_conversation(
        self,
        model_id: str,
        provider_id: Optional[str] = None,
        title: str = "New Chat",
        folder_id: Optional[UUID] = None,
        custom_model: Optional[CustomModel] = None,
    ) -> Conversation:
        model = resolve_model(model_id, custom_model)
        conversation = Conversation(
            title=title,
            model_id=model.id,
            provider_id=provider_id or model.provider.value,
            folder_id=folder_id,
        )
        return await self.repository.create_conversation(conversation)

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        return await self.repository.list_conversations(limit=limit, offset=offset)

    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        return await self.repository.get_messages(conversation_id)

    async def rename_conversation(self, conversation_id: UUID, title: str) -> Conversation:
        return await self.repository.update_conversation(conversation_id, title=title)

    async def update_conversation_model(
        self,
        conversation_id: UUID,
        model_id: str,
        provider_id: Optional[str] = None,
        custom_model: Optional[CustomModel] = None,
    ) -> Conversation:
        """Switch the model used for future turns; stored history is left as is."""
        model = resolve_model(model_id, custom_model)
        return await self.repository.update_conversation(
            conversation_id,
            model_id=model.id,
            provider_id=provider_id or model.provider.value,
        )

    async def move_conversation_to_folder(
        self, conversation_id: UUID, folder_id: Optional[UUID]
    ) -> Conversation:
        return await self.repository.update_conversation(conversation_id, folder_id=folder_id)

    async def delete_conversation(self, conversation_id: UUID) -> None:
        await self.repository.delete_conversation(conversation_id)

    async def list_folders(self) -> List[Folder]:
        return await self.repository.list_folders()

    async def create_folder(self, name: str) -> Folder:
        return await self.repository.create_folder(Folder(name=name))

    async def rename_folder(self, folder_id: UUID, name: str) -> Folder:
        return await self.repository.rename_folder(folder_id, name)

    async def delete_folder(self, folder_id: UUID) -> None:
        await self.repository.delete_folder(folder_id)

    # ---------- turn execution ----------

    async def send_message(
        self,
        conversation_id: UUID,
        content: str,
        *,
        model_id: str,
        api_key: str = "",
        attachments: Sequence[Attachment] = (),
        history: Optional[Sequence[Message]] = None,
        cancellation_token: Optional[CancellationToken] = None,
        custom_model: Optional[CustomModel] = None,
        web_search: bool = False,
    ) -> CompletionStream:
        """Persist the user's message and start streaming the assistant reply.

        The user message is written before the model is called, so a crash or
        cancellation never loses the user's input. The assistant message is
        written only once the stream completes.

        Raises:
            ModelNotFoundError: unknown model and no custom override.
            CapabilityMismatchError: attachments for a model without image support.
            TooManyAttachmentsError: more than three attachments.
        """
        model = resolve_model(model_id, custom_model)
        self._check_attachments(model, attachments)
        await self.get_conversation(conversation_id)

        if history is None:
            history = await self.repository.get_messages(conversation_id)

        user_message = Message(
            conversation_id=conversation_id,
            role=Role.USER,
            content=content,
            attachments=list(attachments),
            timestamp=await self._next_timestamp(conversation_id),
            status=MessageStatus.COMPLETED,
            metadata=MessageMetadata(token_count=estimate_tokens(content)),
        )
        await self.repository.insert_message(user_message)
        logger.info(
            "user_message_persisted",
            conversation_id=str(conversation_id),
            message_id=str(user_message.id),
            attachments=len(attachments),
        )

        payload = self._build_payload(history, model, build_turn_content(content, attachments))
        return self._start_stream(
            conversation_id,
            model,
            payload,
            api_key=api_key,
            cancellation_token=cancellation_token,
            custom_model=custom_model,
            web_search=web_search,
        )

    def _check_attachments(self, model: ModelDescriptor, attachments: Sequence[Attachment]) -> None:
        if len(attachments) > MAX_ATTACHMENTS:
            raise TooManyAttachmentsError(len(attachments), MAX_ATTACHMENTS)
        if attachments and not model.capabilities.image:
            logger.warning("attachments_rejected", model=model.id, attachments=len(attachments))
            raise CapabilityMismatchError(model.name)

    def _build_payload(
        self, history: Sequence[Message], model: ModelDescriptor, turn_content: Any
    ) -> List[PayloadMessage]:
        window = compact_history(
            history,
            estimate_content_tokens(turn_content),
            model.context_window_tokens,
        )
        payload = normalize_history(window, model.capabilities)
        payload.append({"role": Role.USER.value, "content": turn_content})
        return payload

    def _start_stream(
        self,
        conversation_id: UUID,
        model: ModelDescriptor,
        payload: List[PayloadMessage],
        *,
        api_key: str,
        cancellation_token: Optional[CancellationToken],
        custom_model: Optional[CustomModel],
        web_search: bool,
    ) -> CompletionStream:
        tools = self.tools.build(model) if web_search else None
        token = cancellation_token or CancellationToken()
        chunks = self.engine.stream_completion(
            model,
            payload,
            api_key=api_key,
            cancellation_token=token,
            tools=tools,
            custom_model=custom_model,
        )

        async def on_finish(text: str) -> Optional[Message]:
            return await self._persist_reply(conversation_id, model, text)

        logger.info(
            "completion_started",
            conversation_id=str(conversation_id),
            model=model.id,
            payload_messages=len(payload),
            tools=bool(tools),
        )
        return CompletionStream(chunks, on_finish, token)

    async def _persist_reply(
        self, conversation_id: UUID, model: ModelDescriptor, text: str
    ) -> Optional[Message]:
        if not text.strip():
            logger.warning("empty_completion_discarded", conversation_id=str(conversation_id))
            return None
        reply = Message(
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=text,
            timestamp=await self._next_timestamp(conversation_id),
            status=MessageStatus.COMPLETED,
            metadata=MessageMetadata(model=model.id, token_count=estimate_tokens(text)),
        )
        stored = await self.repository.insert_message(reply)
        logger.info(
            "assistant_message_persisted",
            conversation_id=str(conversation_id),
            message_id=str(stored.id),
            model=model.id,
            response_length=len(text),
        )
        return stored

    async def _next_timestamp(self, conversation_id: UUID) -> datetime:
        messages = await self.repository.get_messages(conversation_id)
        now = utcnow()
        if messages and messages[-1].timestamp >= now:
            return messages[-1].timestamp + _TICK
        return now

    # ---------- durable compaction ----------

    async def compact_conversation(
        self,
        conversation_id: UUID,
        *,
        model_id: str,
        api_key: str = "",
        custom_model: Optional[CustomModel] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Optional[Message]:
        """Replace visible history with a persisted summary message.

        Returns the summary message, or None when fewer than two messages are
        left to summarize. If the model call fails nothing is flagged and no
        summary is stored.
        """
        model = resolve_model(model_id, custom_model)
        messages = await self.repository.get_messages(conversation_id)
        candidates = [
            m for m in messages if not m.metadata.is_summary and not m.metadata.is_compacted
        ]
        if len(candidates) < 2:
            logger.info(
                "compaction_skipped",
                conversation_id=str(conversation_id),
                candidates=len(candidates),
            )
            return None

        prompt = f"{SUMMARY_PROMPT}\n\n{format_transcript(candidates)}"
        stream = CompletionStream(
            self.engine.stream_completion(
                model,
                [{"role": Role.USER.value, "content": prompt}],
                api_key=api_key,
                cancellation_token=cancellation_token,
                custom_model=custom_model,
            ),
            _discard,
            cancellation_token,
        )
        summary = (await stream.collect()).strip()
        if not summary:
            raise CompletionEngineError("Model returned an empty summary", provider=model.provider.value)

        summary_message = Message(
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=summary_content(summary),
            timestamp=await self._next_timestamp(conversation_id),
            metadata=MessageMetadata(
                model=model.id,
                token_count=estimate_tokens(summary),
                is_summary=True,
            ),
        )
        stored = await self.repository.insert_message(summary_message)
        for message in candidates:
            await self.repository.update_message_metadata(message.id, is_compacted=True)

        logger.info(
            "conversation_compacted",
            conversation_id=str(conversation_id),
            summarized=len(candidates),
            summary_tokens=stored.metadata.token_count,
        )
        return stored

    # ---------- history editing ----------

    async def edit_message(
        self,
        message_id: UUID,
        new_content: str,
        *,
        model_id: str,
        api_key: str = "",
        cancellation_token: Optional[CancellationToken] = None,
        custom_model: Optional[CustomModel] = None,
        web_search: bool = False,
        recovery_message: Optional[Message] = None,
        conversation_id: Optional[UUID] = None,
    ) -> CompletionStream:
        """Rewrite a past message, drop everything after it and regenerate.

        `recovery_message` is the caller's in-memory copy of the message. It is
        inserted first when the store has no record of `message_id`, which
        happens when a message was shown before its write landed.

        When `conversation_id` is given, a message belonging to any other
        conversation is reported as missing.
        """
        if not new_content:
            raise ValueError("edited content must not be empty")
        model = resolve_model(model_id, custom_model)

        message = await self.repository.get_message(message_id)
        recovering = message is None
        if recovering:
            if recovery_message is None or recovery_message.id != message_id:
                raise MessageNotFoundError(message_id)
            message = recovery_message
        if conversation_id is not None and message.conversation_id != conversation_id:
            raise MessageNotFoundError(message_id)

        self._check_attachments(model, message.attachments)

        if recovering:
            message = await self.repository.insert_message(recovery_message)
            logger.warning(
                "message_recovered",
                conversation_id=str(message.conversation_id),
                message_id=str(message_id),
            )

        await self.repository.update_message_content(message_id, new_content)
        await self.repository.update_message_metadata(
            message_id, token_count=estimate_tokens(new_content)
        )
        await self._truncate_after(message)

        history = [
            m
            for m in await self.repository.get_messages(message.conversation_id)
            if m.timestamp < message.timestamp
        ]
        logger.info(
            "message_edited",
            conversation_id=str(message.conversation_id),
            message_id=str(message_id),
            history_messages=len(history),
        )
        payload = self._build_payload(
            history, model, build_turn_content(new_content, message.attachments)
        )
        return self._start_stream(
            message.conversation_id,
            model,
            payload,
            api_key=api_key,
            cancellation_token=cancellation_token,
            custom_model=custom_model,
            web_search=web_search,
        )

    async def rewind_conversation(self, conversation_id: UUID, message_id: UUID) -> int:
        """Delete every message after `message_id`; the anchor itself is kept."""
        message = await self.repository.get_message(message_id)
        if message is None or message.conversation_id != conversation_id:
            raise MessageNotFoundError(message_id)
        return await self._truncate_after(message)

    async def regenerate(
        self,
        conversation_id: UUID,
        *,
        model_id: str,
        api_key: str = "",
        cancellation_token: Optional[CancellationToken] = None,
        custom_model: Optional[CustomModel] = None,
        web_search: bool = False,
    ) -> CompletionStream:
        """Rewind to the last user message and request a fresh reply to it."""
        model = resolve_model(model_id, custom_model)
        messages = await self.repository.get_messages(conversation_id)
        anchor = next(
            (
                m
                for m in reversed(messages)
                if m.role == Role.USER and not m.metadata.is_compacted
            ),
            None,
        )
        if anchor is None:
            raise MessageNotFoundError(f"last user message of conversation {conversation_id}")
        self._check_attachments(model, anchor.attachments)

        await self._truncate_after(anchor)
        history = [m for m in messages if m.timestamp < anchor.timestamp]
        logger.info(
            "regenerating_reply",
            conversation_id=str(conversation_id),
            message_id=str(anchor.id),
        )
        payload = self._build_payload(
            history, model, build_turn_content(anchor.text, anchor.attachments)
        )
        return self._start_stream(
            conversation_id,
            model,
            payload,
            api_key=api_key,
            cancellation_token=cancellation_token,
            custom_model=custom_model,
            web_search=web_search,
        )

    async def _truncate_after(self, anchor: Message) -> int:
        removed = await self.repository.delete_messages_after(
            anchor.conversation_id, anchor.timestamp
        )
        if removed:
            await self._release_orphaned_messages(anchor.conversation_id)
        return removed

    async def _release_orphaned_messages(self, conversation_id: UUID) -> None:
        """Unhide compacted messages whose summary was truncated away."""
        messages = await self.repository.get_messages(conversation_id)
        summaries = [m.timestamp for m in messages if m.metadata.is_summary]
        covered_until = max(summaries) if summaries else None
        released = 0
        for message in messages:
            if message.metadata.is_compacted and (
                covered_until is None or message.timestamp > covered_until
            ):
                await self.repository.update_message_metadata(message.id, is_compacted=False)
                released += 1
        if released:
            logger.info(
                "compacted_messages_released",
                conversation_id=str(conversation_id),
                released=released,
            )
