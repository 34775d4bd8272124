"""Base repository interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from ..domain.models import Conversation, Folder, Message, MessageContent


class Repository(ABC):
    """Abstract record store for conversations, folders and messages.

    Every write is atomic at the single-row level; callers never rely on
    multi-row transactions.
    """

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(self, limit: int = 100, offset: int = 0) -> List[Conversation]:
        """List conversations, most recently updated first."""
        pass

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Store a new conversation."""
        pass

    @abstractmethod
    async def update_conversation(self, conversation_id: UUID, **changes: Any) -> Conversation:
        """Apply field changes (title, model_id, provider_id, folder_id)."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation and every message it owns."""
        pass

    @abstractmethod
    async def list_folders(self) -> List[Folder]:
        pass

    @abstractmethod
    async def create_folder(self, folder: Folder) -> Folder:
        pass

    @abstractmethod
    async def rename_folder(self, folder_id: UUID, name: str) -> Folder:
        pass

    @abstractmethod
    async def delete_folder(self, folder_id: UUID) -> None:
        """Delete a folder; its conversations move back to the root."""
        pass

    @abstractmethod
    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        """Get messages for a conversation ordered by timestamp ascending."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        pass

    @abstractmethod
    async def insert_message(self, message: Message) -> Message:
        """Add a message to its conversation and return the stored copy."""
        pass

    @abstractmethod
    async def update_message_content(self, message_id: UUID, content: MessageContent) -> Message:
        pass

    @abstractmethod
    async def delete_messages_after(self, conversation_id: UUID, timestamp: datetime) -> int:
        """Delete messages strictly newer than `timestamp`; return how many were removed."""
        pass

    @abstractmethod
    async def update_message_metadata(self, message_id: UUID, **fields: Any) -> Message:
        """Merge `fields` into the message metadata."""
        pass
