"""Static model catalog and model resolution."""

from typing import Dict, List, Optional

from .errors import ModelNotFoundError
from .models import CustomModel, ModelCapabilities, ModelDescriptor, Provider

DEFAULT_CONTEXT_WINDOW = 128_000

_VISION = ModelCapabilities(image=True, audio=False, tools=True)
_VISION_AUDIO = ModelCapabilities(image=True, audio=True, tools=True)
_VISION_AUDIO_SEARCH = ModelCapabilities(image=True, audio=True, tools=True, web_search=True)
_TEXT_ONLY = ModelCapabilities(image=False, audio=False, tools=True)


def _model(
    id: str,
    name: str,
    provider: Provider,
    capabilities: ModelCapabilities,
    context_window: int = DEFAULT_CONTEXT_WINDOW,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=id,
        name=name,
        provider=provider,
        capabilities=capabilities,
        context_window_tokens=context_window,
    )


MODELS: List[ModelDescriptor] = [
    # OpenAI
    _model("gpt-5.2", "GPT-5.2", Provider.OPENAI, _VISION_AUDIO, 400_000),
    _model("gpt-5-mini", "GPT-5 Mini", Provider.OPENAI, _VISION_AUDIO, 400_000),
    _model("gpt-4o", "GPT-4o", Provider.OPENAI, _VISION_AUDIO),
    _model("gpt-4o-mini", "GPT-4o Mini", Provider.OPENAI, _VISION_AUDIO),
    # Anthropic
    _model("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", Provider.ANTHROPIC, _VISION, 200_000),
    _model("claude-haiku-4-5-20251001", "Claude Haiku 4.5", Provider.ANTHROPIC, _TEXT_ONLY, 200_000),
    _model("claude-opus-4-1", "Claude Opus 4.1", Provider.ANTHROPIC, _VISION, 200_000),
    # Google
    _model("gemini-2.5-pro", "Gemini 2.5 Pro", Provider.GOOGLE, _VISION_AUDIO_SEARCH, 1_048_576),
    _model("gemini-2.5-flash", "Gemini 2.5 Flash", Provider.GOOGLE, _VISION_AUDIO_SEARCH, 1_048_576),
    _model("gemini-1.5-flash", "Gemini 1.5 Flash", Provider.GOOGLE, _VISION_AUDIO_SEARCH, 1_048_576),
    # Groq
    _model("llama-3.3-70b-versatile", "Llama 3.3 70B", Provider.GROQ, _TEXT_ONLY),
    _model("llama-3.1-8b-instant", "Llama 3.1 8B", Provider.GROQ, _TEXT_ONLY),
    _model("qwen/qwen3-32b", "Qwen 3 32B", Provider.GROQ, _TEXT_ONLY, 32_768),
    # Mistral
    _model("mistral-large-latest", "Mistral Large 3", Provider.MISTRAL, _VISION),
    _model("mistral-small-latest", "Mistral Small 3.2", Provider.MISTRAL, _TEXT_ONLY),
    _model("pixtral-large-latest", "Pixtral Large", Provider.MISTRAL, _VISION),
]

_BY_ID: Dict[str, ModelDescriptor] = {m.id: m for m in MODELS}


def get_model(model_id: str) -> Optional[ModelDescriptor]:
    """Look up a model in the static catalog."""
    return _BY_ID.get(model_id)


def descriptor_for_custom(custom: CustomModel) -> ModelDescriptor:
    """Synthesize a descriptor for a user-defined endpoint.

    Custom endpoints advertise no capabilities, so image attachments and tools are
    never sent to them.
    """
    return ModelDescriptor(
        id=custom.id,
        name=custom.name,
        provider=Provider.CUSTOM,
        capabilities=ModelCapabilities(),
        context_window_tokens=DEFAULT_CONTEXT_WINDOW,
    )


def resolve_model(model_id: str, custom_model: Optional[CustomModel] = None) -> ModelDescriptor:
    """Resolve a model id, preferring the static catalog over a custom override.

    Raises:
        ModelNotFoundError: unknown id and no custom override supplied.
    """
    model = get_model(model_id)
    if model is not None:
        return model
    if custom_model is not None:
        return descriptor_for_custom(custom_model)
    raise ModelNotFoundError(model_id)
