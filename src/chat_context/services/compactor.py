"""Per-turn history reduction and helpers for durable summaries."""

from typing import List, Sequence

import structlog

from ..domain.models import Message, MessageMetadata, Role
from .tokens import estimate_content_tokens

logger = structlog.get_logger()

COMPACTION_THRESHOLD = 0.85
SLIDING_WINDOW_SIZE = 10
ELISION_MARKER = "[... earlier messages omitted automatically to preserve context window ...]"

SUMMARY_MARKER = "[Conversation summary]"
SUMMARY_PROMPT = (
    "Summarize the conversation transcript below into a dense summary that another "
    "assistant can continue from. Preserve names, numbers, decisions, open questions "
    "and any instructions the user gave. Do not add new information. "
    "Reply with the summary only."
)


def message_tokens(message: Message) -> int:
    """Stored token count, or a live estimate when none was recorded."""
    if message.metadata.token_count is not None:
        return message.metadata.token_count
    return estimate_content_tokens(message.content)


def compact_history(
    history: Sequence[Message],
    current_turn_tokens: int,
    context_window_tokens: int,
) -> List[Message]:
    """Select the messages to send for one call without touching storage.

    Messages flagged `is_compacted` are invisible to the model. When the
    remaining history plus the new turn exceeds 85% of the context window and
    there are more than ten candidates, keep every system message, the last ten
    messages, and an assistant-role elision marker between them.
    """
    candidates = [m for m in history if not m.metadata.is_compacted]
    if not candidates:
        return []

    total = sum(message_tokens(m) for m in candidates) + current_turn_tokens
    budget = context_window_tokens * COMPACTION_THRESHOLD
    if total <= budget or len(candidates) <= SLIDING_WINDOW_SIZE:
        return candidates

    tail = candidates[-SLIDING_WINDOW_SIZE:]
    head_system = [m for m in candidates[:-SLIDING_WINDOW_SIZE] if m.role == Role.SYSTEM]
    if len(head_system) + len(tail) == len(candidates):
        # nothing in the middle to discard
        return candidates

    marker = Message(
        conversation_id=candidates[0].conversation_id,
        role=Role.ASSISTANT,
        content=ELISION_MARKER,
        timestamp=tail[0].timestamp,
        metadata=MessageMetadata(token_count=0),
    )
    logger.info(
        "history_window_applied",
        conversation_id=str(candidates[0].conversation_id),
        total_tokens=total,
        budget=int(budget),
        dropped=len(candidates) - len(head_system) - len(tail),
    )
    return head_system + [marker] + tail


def format_transcript(messages: Sequence[Message]) -> str:
    """Render messages as `ROLE: content` lines."""
    return "\n".join(f"{m.role.value.upper()}: {m.text}" for m in messages)


def summary_content(summary: str) -> str:
    return f"{SUMMARY_MARKER}\n{summary.strip()}"


def is_summary_text(text: str) -> bool:
    return text.startswith(SUMMARY_MARKER)
