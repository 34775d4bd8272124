"""Domain models for conversations, messages and model metadata."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


class TextPart(BaseModel):
    """Plain text segment of a multi-part message."""

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Image segment; `image` holds base64 data or a local path."""

    type: Literal["image"] = "image"
    image: str
    mime_type: Optional[str] = None


# Unrecognized part kinds survive as raw dicts so the normalizer can drop them.
ContentPart = Annotated[
    Union[TextPart, ImagePart, Dict[str, Any]],
    Field(union_mode="left_to_right"),
]
MessageContent = Union[str, List[ContentPart]]


class Attachment(BaseModel):
    """File attached to a user message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    path: Optional[str] = None
    name: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    inline_data: Optional[str] = None


class MessageMetadata(BaseModel):
    """Mutable bookkeeping attached to a message."""

    model: Optional[str] = None
    token_count: Optional[int] = None
    is_summary: bool = False
    is_compacted: bool = False


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    role: Role = Role.USER
    content: MessageContent
    attachments: List[Attachment] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    status: MessageStatus = MessageStatus.COMPLETED
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @field_validator("content")
    @classmethod
    def _content_not_empty(cls, value: MessageContent) -> MessageContent:
        if isinstance(value, str) and not value:
            raise ValueError("message content must not be empty")
        if isinstance(value, list) and not value:
            raise ValueError("message content must contain at least one part")
        return value

    @property
    def text(self) -> str:
        """Textual view of the content, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        texts = []
        for part in self.content:
            if isinstance(part, TextPart):
                texts.append(part.text)
            elif isinstance(part, dict) and part.get("type") == "text":
                texts.append(str(part.get("text", "")))
        return "\n".join(texts)


class Folder(BaseModel):
    """Folder grouping conversations in the sidebar."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    model_config = ConfigDict(protected_namespaces=())

    id: UUID = Field(default_factory=uuid4)
    title: str = "New Chat"
    model_id: str
    provider_id: str
    folder_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"
    GROQ = "groq"
    CUSTOM = "custom"


class ModelCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: bool = False
    audio: bool = False
    tools: bool = False
    web_search: bool = False


class ModelDescriptor(BaseModel):
    """Static description of a model the user can select."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: Provider
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    context_window_tokens: int = 128_000


class CustomModel(BaseModel):
    """User-defined OpenAI-compatible endpoint (LM Studio, Ollama, ...)."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    base_url: str
    api_key: Optional[str] = None
    model_id: str
