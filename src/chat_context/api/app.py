"""
FastAPI Application Module

HTTP surface over the chat service. Every history-changing request for a
conversation (send, edit, regenerate, rewind, compact) goes through the
per-conversation request queue, so a conversation never has two turns in
flight at once.

Key Features:
- Send, edit, rewind, regenerate and compact operations
- Conversation and folder management
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from structlog import get_logger

from ..config import get_settings
from ..domain.catalog import MODELS
from ..domain.errors import (
    CapabilityMismatchError,
    ChatContextError,
    CompletionEngineError,
    ConversationNotFoundError,
    MessageNotFoundError,
    ModelNotFoundError,
    TooManyAttachmentsError,
)
from ..domain.models import Attachment, Conversation, CustomModel, Folder, Message, ModelDescriptor
from ..log import configure_logging
from ..repositories.memory import InMemoryRepository
from ..services.chat import ChatService
from ..services.completion import CompletionStream
from ..services.llm import GeminiCompletionEngine
from .request_queue import get_request_queue, process_queued_request

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

TURNS = Counter("chat_turns_total", "Completed turns by operation", ["operation"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("chat_errors_total", "Failed requests by error kind", ["kind"], registry=CUSTOM_REGISTRY)
COMPACTIONS = Counter("chat_compactions_total", "Durable compactions performed", registry=CUSTOM_REGISTRY)

logger = get_logger()

_STATUS_BY_ERROR = {
    ModelNotFoundError: 404,
    MessageNotFoundError: 404,
    ConversationNotFoundError: 404,
    CapabilityMismatchError: 422,
    TooManyAttachmentsError: 422,
    CompletionEngineError: 502,
}


class TurnOptions(BaseModel):
    """Model selection shared by every generating request."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None
    api_key: Optional[str] = None
    custom_model: Optional[CustomModel] = None
    web_search: bool = False


class MessageCreate(TurnOptions):
    content: str = Field(min_length=1)
    attachments: List[Attachment] = Field(default_factory=list)


class MessageEdit(TurnOptions):
    content: str = Field(min_length=1)
    recovery_message: Optional[Message] = None


class RewindRequest(BaseModel):
    message_id: UUID


class ConversationCreate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    title: str = "New Chat"
    model_id: Optional[str] = None
    provider_id: Optional[str] = None
    folder_id: Optional[UUID] = None
    custom_model: Optional[CustomModel] = None


class ConversationUpdate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    title: Optional[str] = None
    model_id: Optional[str] = None
    provider_id: Optional[str] = None
    folder_id: Optional[UUID] = None
    custom_model: Optional[CustomModel] = None


class FolderCreate(BaseModel):
    name: str = Field(min_length=1)


class TurnResponse(BaseModel):
    """Outcome of a generating request once the stream has completed."""

    text: str
    message: Optional[Message] = None


class RewindResponse(BaseModel):
    removed: int


class CompactResponse(BaseModel):
    summary: Optional[Message] = None


_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Returns the chat service bound to the configured store and engine"""
    global _chat_service
    if _chat_service is None:
        settings = get_settings()
        _chat_service = ChatService(
            InMemoryRepository(),
            GeminiCompletionEngine(default_api_key=settings.gemini_api_key),
        )
    return _chat_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    queue = get_request_queue()
    logger.info("application_startup_complete")

    yield

    await queue.cleanup()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Chat Context API",
    description="Conversation history management for LLM chat",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Logs every request"""
    logger.info("request_started", method=request.method, path=request.url.path)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


@app.exception_handler(ChatContextError)
async def chat_error_handler(request: Request, exc: ChatContextError) -> JSONResponse:
    status_code = _STATUS_BY_ERROR.get(type(exc), 400)
    ERRORS.labels(kind=type(exc).__name__).inc()
    logger.warning(
        "chat_error",
        path=request.url.path,
        kind=type(exc).__name__,
        status_code=status_code,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _run_turn(conversation_id: UUID, start) -> TurnResponse:
    """Run a generating operation in the conversation's queue slot and drain its stream."""

    async def turn() -> TurnResponse:
        stream: CompletionStream = await start()
        text = await stream.collect()
        return TurnResponse(text=text, message=stream.result)

    try:
        return await process_queued_request(conversation_id, turn)
    except TimeoutError:
        ERRORS.labels(kind="TimeoutError").inc()
        raise HTTPException(status_code=408, detail="Request timeout")


async def _model_for(service: ChatService, conversation_id: UUID, options: TurnOptions) -> str:
    if options.model_id:
        return options.model_id
    conversation = await service.get_conversation(conversation_id)
    return conversation.model_id


def _api_key(options: TurnOptions) -> str:
    return options.api_key or get_settings().gemini_api_key


@app.get("/models", response_model=List[ModelDescriptor])
async def list_models() -> List[ModelDescriptor]:
    """Lists the static model catalog"""
    return MODELS


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    limit: int = 100,
    offset: int = 0,
    service: ChatService = Depends(get_chat_service),
) -> List[Conversation]:
    """Gets paginated conversation list, most recently updated first"""
    return await service.list_conversations(limit=limit, offset=offset)


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    body: Optional[ConversationCreate] = None,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Starts a new conversation"""
    body = body or ConversationCreate()
    return await service.create_conversation(
        body.model_id or get_settings().default_model,
        provider_id=body.provider_id,
        title=body.title,
        folder_id=body.folder_id,
        custom_model=body.custom_model,
    )


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    return await service.get_conversation(conversation_id)


@app.patch("/conversations/{conversation_id}", response_model=Conversation)
async def update_conversation(
    conversation_id: UUID,
    body: ConversationUpdate,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Renames, refiles or switches the model of a conversation"""
    conversation = await service.get_conversation(conversation_id)
    if body.title is not None:
        conversation = await service.rename_conversation(conversation_id, body.title)
    if body.model_id is not None:
        conversation = await service.update_conversation_model(
            conversation_id, body.model_id, body.provider_id, body.custom_model
        )
    if "folder_id" in body.model_fields_set:
        conversation = await service.move_conversation_to_folder(conversation_id, body.folder_id)
    return conversation


@app.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: UUID,
    service: ChatService = Depends(get_chat_service),
) -> Response:
    """Deletes a conversation with its messages once its queued turns have run"""
    try:
        await process_queued_request(conversation_id, service.delete_conversation, conversation_id)
    finally:
        await get_request_queue().discard(conversation_id)
    return Response(status_code=204)


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def get_messages(
    conversation_id: UUID,
    service: ChatService = Depends(get_chat_service),
) -> List[Message]:
    """Gets the stored history of a conversation in timestamp order"""
    return await service.get_messages(conversation_id)


@app.post("/conversations/{conversation_id}/messages", response_model=TurnResponse)
async def send_message(
    conversation_id: UUID,
    body: MessageCreate,
    service: ChatService = Depends(get_chat_service),
) -> TurnResponse:
    """Persists a user message and returns the completed assistant reply"""

    async def start() -> CompletionStream:
        return await service.send_message(
            conversation_id,
            body.content,
            model_id=await _model_for(service, conversation_id, body),
            api_key=_api_key(body),
            attachments=body.attachments,
            custom_model=body.custom_model,
            web_search=body.web_search,
        )

    result = await _run_turn(conversation_id, start)
    TURNS.labels(operation="send").inc()
    return result


@app.put("/conversations/{conversation_id}/messages/{message_id}", response_model=TurnResponse)
async def edit_message(
    conversation_id: UUID,
    message_id: UUID,
    body: MessageEdit,
    service: ChatService = Depends(get_chat_service),
) -> TurnResponse:
    """Rewrites a message, truncates what follows and regenerates the reply"""

    async def start() -> CompletionStream:
        return await service.edit_message(
            message_id,
            body.content,
            model_id=await _model_for(service, conversation_id, body),
            api_key=_api_key(body),
            custom_model=body.custom_model,
            web_search=body.web_search,
            recovery_message=body.recovery_message,
            conversation_id=conversation_id,
        )

    result = await _run_turn(conversation_id, start)
    TURNS.labels(operation="edit").inc()
    return result


@app.post("/conversations/{conversation_id}/regenerate", response_model=TurnResponse)
async def regenerate(
    conversation_id: UUID,
    body: Optional[TurnOptions] = None,
    service: ChatService = Depends(get_chat_service),
) -> TurnResponse:
    """Discards the reply to the last user message and asks for a new one"""
    options = body or TurnOptions()

    async def start() -> CompletionStream:
        return await service.regenerate(
            conversation_id,
            model_id=await _model_for(service, conversation_id, options),
            api_key=_api_key(options),
            custom_model=options.custom_model,
            web_search=options.web_search,
        )

    result = await _run_turn(conversation_id, start)
    TURNS.labels(operation="regenerate").inc()
    return result


@app.post("/conversations/{conversation_id}/rewind", response_model=RewindResponse)
async def rewind(
    conversation_id: UUID,
    body: RewindRequest,
    service: ChatService = Depends(get_chat_service),
) -> RewindResponse:
    """Deletes every message after the given one"""
    removed = await process_queued_request(
        conversation_id, service.rewind_conversation, conversation_id, body.message_id
    )
    return RewindResponse(removed=removed)


@app.post("/conversations/{conversation_id}/compact", response_model=CompactResponse)
async def compact(
    conversation_id: UUID,
    body: Optional[TurnOptions] = None,
    service: ChatService = Depends(get_chat_service),
) -> CompactResponse:
    """Summarizes the visible history into one persisted summary message"""
    options = body or TurnOptions()

    async def run() -> Optional[Message]:
        return await service.compact_conversation(
            conversation_id,
            model_id=await _model_for(service, conversation_id, options),
            api_key=_api_key(options),
            custom_model=options.custom_model,
        )

    try:
        summary = await process_queued_request(conversation_id, run)
    except TimeoutError:
        raise HTTPException(status_code=408, detail="Request timeout")
    if summary is not None:
        COMPACTIONS.inc()
    return CompactResponse(summary=summary)


@app.get("/folders", response_model=List[Folder])
async def list_folders(service: ChatService = Depends(get_chat_service)) -> List[Folder]:
    return await service.list_folders()


@app.post("/folders", response_model=Folder)
async def create_folder(
    body: FolderCreate,
    service: ChatService = Depends(get_chat_service),
) -> Folder:
    return await service.create_folder(body.name)


@app.patch("/folders/{folder_id}", response_model=Folder)
async def rename_folder(
    folder_id: UUID,
    body: FolderCreate,
    service: ChatService = Depends(get_chat_service),
) -> Folder:
    try:
        return await service.rename_folder(folder_id, body.name)
    except KeyError:
        raise HTTPException(status_code=404, detail="Folder not found")


@app.delete("/folders/{folder_id}", status_code=204)
async def delete_folder(
    folder_id: UUID,
    service: ChatService = Depends(get_chat_service),
) -> Response:
    try:
        await service.delete_folder(folder_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Folder not found")
    return Response(status_code=204)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
