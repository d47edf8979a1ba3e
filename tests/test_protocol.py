"""Tests for message flattening and OpenAI-style response shapes."""
import json

import pytest

from data_models import AnswerResult, Citation, CompletionStatus
from protocol import (
    MAX_MESSAGE_LENGTH, MAX_MESSAGES_COUNT, InvalidRequestError, MessageValidator,
    SSEFormatter, build_completion_response, flatten_messages, format_sources,
)


def events(payload: str):
    out = []
    for block in payload.strip().split("\n\n"):
        assert block.startswith("data: ")
        body = block[len("data: "):]
        out.append(body if body == "[DONE]" else json.loads(body))
    return out


class TestMessages:

    def test_flatten_roles(self):
        messages = MessageValidator.validate([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "What is X?"},
            {"role": "assistant", "content": "A letter."},
            {"role": "user", "content": "And Y?"},
        ])

        assert flatten_messages(messages) == (
            "[System: Be brief.]\n\nWhat is X?\n\n[Previous answer: A letter.]\n\nAnd Y?"
        )

    def test_unknown_role_treated_as_user(self):
        messages = MessageValidator.validate([{"role": "tool", "content": "hi"}])
        assert messages == [{"role": "user", "content": "hi"}]

    def test_content_parts_are_joined(self):
        messages = MessageValidator.validate([{"role": "user", "content": [
            {"type": "text", "text": "first"},
            {"type": "image_url", "image_url": {"url": "https://x.example/a.png"}},
            {"type": "text", "text": "second"},
        ]}])
        assert messages[0]["content"] == "first\nsecond"

    @pytest.mark.parametrize("messages", [None, [], "hello", [1, 2]])
    def test_invalid_messages(self, messages):
        with pytest.raises(InvalidRequestError) as exc:
            MessageValidator.validate(messages)
        assert exc.value.code == "invalid_messages"

    def test_limits(self):
        with pytest.raises(InvalidRequestError):
            MessageValidator.validate([{"role": "user", "content": "x"}] * (MAX_MESSAGES_COUNT + 1))
        with pytest.raises(InvalidRequestError):
            MessageValidator.validate([{"role": "user", "content": "x" * (MAX_MESSAGE_LENGTH + 1)}])

    def test_blank_conversation_is_empty_content(self):
        with pytest.raises(InvalidRequestError) as exc:
            flatten_messages(MessageValidator.validate([{"role": "user", "content": "  "}]))
        assert exc.value.code == "empty_content"


class TestBatchResponse:

    def test_sources_trailer(self):
        trailer = format_sources([
            Citation("Paris - Wikipedia", "https://en.wikipedia.org/wiki/Paris"),
            Citation("Britannica", "https://www.britannica.com/place/Paris"),
        ])

        assert trailer == (
            "\n\n---\n**Sources:**\n"
            "1. [Paris - Wikipedia](https://en.wikipedia.org/wiki/Paris)\n"
            "2. [Britannica](https://www.britannica.com/place/Paris)\n"
        )
        assert format_sources(()) == ""

    def test_converged_answer(self):
        result = AnswerResult(
            answer_text="Paris.",
            citations=(Citation("W", "https://w.example"),),
        )

        body = build_completion_response(result, "perplexity")

        assert body["object"] == "chat.completion"
        assert body["model"] == "perplexity"
        choice = body["choices"][0]
        assert choice["message"]["role"] == "assistant"
        assert choice["message"]["content"].startswith("Paris.\n\n---\n**Sources:**")
        assert choice["finish_reason"] == "stop"

    def test_timed_out_answer_reports_length(self):
        result = AnswerResult(answer_text="Par", completion=CompletionStatus.TIMED_OUT)

        body = build_completion_response(result, "gemini")

        assert body["choices"][0]["finish_reason"] == "length"
        assert body["choices"][0]["message"]["content"] == "Par"


class TestSSE:

    def test_stream_sequence(self):
        payload = (
            SSEFormatter.pack_role("gemini")
            + SSEFormatter.pack_chunk("Hel", "gemini")
            + SSEFormatter.pack_chunk("lo", "gemini")
            + SSEFormatter.pack_finish("gemini")
        )

        parsed = events(payload)

        assert parsed[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        assert [e["choices"][0]["delta"]["content"] for e in parsed[1:3]] == ["Hel", "lo"]
        assert parsed[3]["choices"][0]["finish_reason"] == "stop"
        assert parsed[3]["choices"][0]["delta"] == {}
        assert parsed[4] == "[DONE]"
        assert all(e["object"] == "chat.completion.chunk" for e in parsed[:4])

    def test_error_ends_stream(self):
        parsed = events(SSEFormatter.pack_error("no usable input", "perplexity"))

        assert parsed[0]["choices"][0]["delta"]["content"] == "\n\n[Error: no usable input]"
        assert parsed[1]["choices"][0]["finish_reason"] == "stop"
        assert parsed[2] == "[DONE]"

    def test_chunk_ids_are_unique(self):
        first = events(SSEFormatter.pack_chunk("a", "m"))[0]
        second = events(SSEFormatter.pack_chunk("b", "m"))[0]
        assert first["id"] != second["id"]
