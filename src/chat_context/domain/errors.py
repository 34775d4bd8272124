"""Error taxonomy raised by the chat service."""

from typing import Optional


class ChatContextError(Exception):
    """Base class for every error the chat service raises."""


class ModelNotFoundError(ChatContextError):
    def __init__(self, model_id: str) -> None:
        super().__init__(f"Model {model_id} not found")
        self.model_id = model_id


class CapabilityMismatchError(ChatContextError):
    """Attachments were sent to a model that cannot read images."""

    def __init__(self, model_name: str) -> None:
        super().__init__(f"The selected model ({model_name}) does not support images.")
        self.model_name = model_name


class TooManyAttachmentsError(ChatContextError):
    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"{count} attachments given, at most {limit} allowed")
        self.count = count
        self.limit = limit


class MessageNotFoundError(ChatContextError):
    def __init__(self, message_id: object) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class ConversationNotFoundError(ChatContextError):
    def __init__(self, conversation_id: object) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class CompletionEngineError(ChatContextError):
    """Network or provider failure reported by the completion engine."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class CancelledError(ChatContextError):
    """Generation was stopped by the user before it completed."""
