"""Tests for capability-based content normalization."""

from uuid import uuid4

from chat_context.domain.models import (
    Attachment,
    ImagePart,
    Message,
    ModelCapabilities,
    Role,
    TextPart,
)
from chat_context.services.normalizer import (
    IMAGE_PLACEHOLDER,
    build_turn_content,
    normalize_content,
    normalize_message,
)

TEXT_ONLY = ModelCapabilities(image=False)
VISION = ModelCapabilities(image=True)


def test_plain_text_passes_through():
    assert normalize_content("hello", TEXT_ONLY) == "hello"


def test_image_dropped_for_text_only_model():
    content = [TextPart(text="what is this?"), ImagePart(image="aGVsbG8=")]
    assert normalize_content(content, TEXT_ONLY) == "what is this?"


def test_lone_image_becomes_placeholder():
    content = [ImagePart(image="aGVsbG8=")]
    assert normalize_content(content, TEXT_ONLY) == IMAGE_PLACEHOLDER


def test_images_kept_for_vision_model():
    content = [TextPart(text="compare"), ImagePart(image="AAA="), ImagePart(image="BBB=")]
    result = normalize_content(content, VISION)
    assert result == [
        {"type": "text", "text": "compare"},
        {"type": "image", "image": "AAA="},
        {"type": "image", "image": "BBB="},
    ]


def test_single_text_part_collapses_to_string():
    assert normalize_content([{"type": "text", "text": "just text"}], VISION) == "just text"


def test_unknown_part_kinds_are_dropped():
    content = [{"type": "text", "text": "listen"}, {"type": "audio", "data": "..."}]
    assert normalize_content(content, VISION) == "listen"


def test_several_text_parts_stay_a_list():
    content = [TextPart(text="one"), TextPart(text="two")]
    assert normalize_content(content, TEXT_ONLY) == [
        {"type": "text", "text": "one"},
        {"type": "text", "text": "two"},
    ]


def test_unrecognized_shape_is_stringified():
    assert normalize_content({"weird": True}, VISION) == '{"weird": true}'
    assert normalize_content(42, VISION) == "42"


def test_normalize_message_keeps_role():
    message = Message(
        conversation_id=uuid4(),
        role=Role.ASSISTANT,
        content=[TextPart(text="see image"), ImagePart(image="AAA=")],
    )
    assert normalize_message(message, TEXT_ONLY) == {"role": "assistant", "content": "see image"}


def test_turn_without_attachments_is_plain_text():
    assert build_turn_content("hi", []) == "hi"


def test_turn_with_attachments_prefers_inline_data():
    attachments = [
        Attachment(name="a.png", mime_type="image/png", inline_data="AAA=", path="/tmp/a.png"),
        Attachment(name="b.jpg", mime_type="image/jpeg", path="/tmp/b.jpg"),
    ]
    assert build_turn_content("look", attachments) == [
        {"type": "text", "text": "look"},
        {"type": "image", "image": "AAA=", "mime_type": "image/png"},
        {"type": "image", "image": "/tmp/b.jpg", "mime_type": "image/jpeg"},
    ]
