"""In-memory repository implementation."""

import asyncio
import bisect
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import ConversationNotFoundError, MessageNotFoundError
from ..domain.models import Conversation, Folder, Message, MessageContent, utcnow
from .base import Repository

logger = structlog.get_logger()

_TICK = timedelta(microseconds=1)


class InMemoryRepository(Repository):
    """Async-safe in-memory record store.

    Messages are kept sorted by timestamp per conversation. Stored objects are
    copied on the way in and out so callers can never mutate storage directly.
    """

    def __init__(self) -> None:
        self._conversations: Dict[UUID, Conversation] = {}
        self._folders: Dict[UUID, Folder] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._message_index: Dict[UUID, UUID] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized")

    # ---------- conversations ----------

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return None
            return conversation.model_copy()

    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        async with self._lock:
            conversations = sorted(
                self._conversations.values(),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return [c.model_copy() for c in conversations[offset : offset + limit]]

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self._conversations[conversation.id] = conversation.model_copy()
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def update_conversation(self, conversation_id: UUID, **changes: Any) -> Conversation:
        async with self._lock:
            conversation = self._require_conversation(conversation_id)
            updated = conversation.model_copy(update={**changes, "updated_at": utcnow()})
            self._conversations[conversation_id] = updated
            logger.info(
                "conversation_updated",
                conversation_id=str(conversation_id),
                fields=sorted(changes),
            )
            return updated.model_copy()

    async def delete_conversation(self, conversation_id: UUID) -> None:
        async with self._lock:
            self._require_conversation(conversation_id)
            del self._conversations[conversation_id]
            for message in self._messages.pop(conversation_id, []):
                self._message_index.pop(message.id, None)
            logger.info("conversation_deleted", conversation_id=str(conversation_id))

    # ---------- folders ----------

    async def list_folders(self) -> List[Folder]:
        async with self._lock:
            return sorted(
                (f.model_copy() for f in self._folders.values()),
                key=lambda f: f.created_at,
            )

    async def create_folder(self, folder: Folder) -> Folder:
        async with self._lock:
            self._folders[folder.id] = folder.model_copy()
            logger.info("folder_created", folder_id=str(folder.id))
        return folder

    async def rename_folder(self, folder_id: UUID, name: str) -> Folder:
        async with self._lock:
            folder = self._folders.get(folder_id)
            if folder is None:
                raise KeyError(f"Folder {folder_id} not found")
            folder = folder.model_copy(update={"name": name})
            self._folders[folder_id] = folder
            return folder.model_copy()

    async def delete_folder(self, folder_id: UUID) -> None:
        async with self._lock:
            if self._folders.pop(folder_id, None) is None:
                raise KeyError(f"Folder {folder_id} not found")
            for conversation_id, conversation in list(self._conversations.items()):
                if conversation.folder_id == folder_id:
                    self._conversations[conversation_id] = conversation.model_copy(
                        update={"folder_id": None}
                    )
            logger.info("folder_deleted", folder_id=str(folder_id))

    # ---------- messages ----------

    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        async with self._lock:
            self._require_conversation(conversation_id)
            return [m.model_copy(deep=True) for m in self._messages[conversation_id]]

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._lock:
            message = self._find_message(message_id)
            return message.model_copy(deep=True) if message is not None else None

    async def insert_message(self, message: Message) -> Message:
        async with self._lock:
            conversation = self._require_conversation(message.conversation_id)
            if message.id in self._message_index:
                raise ValueError(f"Message {message.id} already exists")

            messages = self._messages[message.conversation_id]
            stored = message.model_copy(deep=True)
            # Timestamps double as the truncation cursor, so they must be unique.
            taken = {m.timestamp for m in messages}
            while stored.timestamp in taken:
                stored.timestamp = stored.timestamp + _TICK

            keys = [m.timestamp for m in messages]
            messages.insert(bisect.bisect_right(keys, stored.timestamp), stored)
            self._message_index[stored.id] = stored.conversation_id
            self._conversations[conversation.id] = conversation.model_copy(
                update={"updated_at": utcnow()}
            )

            logger.info(
                "message_added",
                conversation_id=str(stored.conversation_id),
                message_id=str(stored.id),
                message_role=stored.role.value,
            )
            return stored.model_copy(deep=True)

    async def update_message_content(self, message_id: UUID, content: MessageContent) -> Message:
        async with self._lock:
            message = self._require_message(message_id)
            message.content = content
            logger.info("message_content_updated", message_id=str(message_id))
            return message.model_copy(deep=True)

    async def delete_messages_after(self, conversation_id: UUID, timestamp: datetime) -> int:
        async with self._lock:
            self._require_conversation(conversation_id)
            messages = self._messages[conversation_id]
            kept = [m for m in messages if m.timestamp <= timestamp]
            removed = [m for m in messages if m.timestamp > timestamp]
            self._messages[conversation_id] = kept
            for message in removed:
                self._message_index.pop(message.id, None)
            logger.info(
                "messages_truncated",
                conversation_id=str(conversation_id),
                removed=len(removed),
                kept=len(kept),
            )
            return len(removed)

    async def update_message_metadata(self, message_id: UUID, **fields: Any) -> Message:
        async with self._lock:
            message = self._require_message(message_id)
            message.metadata = message.metadata.model_copy(update=fields)
            return message.model_copy(deep=True)

    # ---------- helpers (caller holds the lock) ----------

    def _require_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.error("conversation_not_found", conversation_id=str(conversation_id))
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _find_message(self, message_id: UUID) -> Optional[Message]:
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return None
        for message in self._messages.get(conversation_id, []):
            if message.id == message_id:
                return message
        return None

    def _require_message(self, message_id: UUID) -> Message:
        message = self._find_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message
