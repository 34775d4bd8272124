"""Tests for token estimation."""

from chat_context.domain.models import ImagePart, TextPart
from chat_context.services.tokens import estimate_content_tokens, estimate_tokens


def test_empty_text_is_zero():
    assert estimate_tokens("") == 0


def test_rounds_up_partial_tokens():
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_longer_text_never_estimates_lower():
    text = "The quick brown fox jumps over the lazy dog. " * 20
    estimates = [estimate_tokens(text[:n]) for n in range(len(text) + 1)]
    assert estimates == sorted(estimates)


def test_multipart_content_counts_text_only():
    content = [TextPart(text="a" * 40), ImagePart(image="Zm9v" * 1000)]
    assert estimate_content_tokens(content) == 10


def test_raw_dict_parts_are_counted():
    content = [{"type": "text", "text": "a" * 8}, {"type": "audio", "data": "x" * 400}]
    assert estimate_content_tokens(content) == 2
