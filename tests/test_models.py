"""Unified contract tests: parsing, flattening and usage merging."""

from __future__ import annotations

import json

import pydantic
import pytest

from switchboard.models import (
    AudioContent,
    EmbeddingsRequest,
    ImageContent,
    InstructRequest,
    InstructResponse,
    Message,
    PartsContent,
    StreamResponse,
    TextContent,
    ToolCallChunk,
    Usage,
    as_list,
    flatten_content,
    with_model,
)

pytestmark = pytest.mark.unit


# =============================================================================
# OneOrMany
# =============================================================================


def test_input_accepts_single_message_or_list() -> None:
    single = InstructRequest(model="p::m", input={"role": "user", "content": {"type": "text", "text": "hi"}})
    many = InstructRequest(
        model="p::m",
        input=[
            {"role": "system", "content": {"type": "text", "text": "be brief"}},
            {"role": "user", "content": [{"type": "text", "text": "hi"}]},
        ],
    )

    assert isinstance(single.input, Message)
    assert len(as_list(single.input)) == 1
    assert [m.role for m in as_list(many.input)] == ["system", "user"]


def test_as_list_handles_none_single_and_list() -> None:
    assert as_list(None) == []
    assert as_list("a") == ["a"]
    assert as_list(["a", "b"]) == ["a", "b"]


def test_embeddings_input_is_one_or_many_strings() -> None:
    assert EmbeddingsRequest(model="p::m", input="one").input == "one"
    assert EmbeddingsRequest(model="p::m", input=["a", "b"]).input == ["a", "b"]


# =============================================================================
# Content
# =============================================================================


def test_content_is_discriminated_on_type() -> None:
    message = Message.model_validate(
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image", "data": b"\x01\x02", "format": "png"},
                {"type": "audio", "data": b"\x03"},
            ],
        }
    )
    kinds = [type(c) for c in as_list(message.content)]
    assert kinds == [TextContent, ImageContent, AudioContent]


def test_unknown_content_type_is_rejected() -> None:
    with pytest.raises(pydantic.ValidationError):
        Message.model_validate({"role": "user", "content": {"type": "video", "data": b""}})


def test_flatten_expands_arbitrarily_nested_parts() -> None:
    content = PartsContent(
        parts=[
            TextContent(text="a"),
            PartsContent(parts=[TextContent(text="b"), PartsContent(parts=[TextContent(text="c")])]),
            ImageContent(data=b"img"),
        ]
    )

    leaves = flatten_content(content)

    assert [getattr(leaf, "text", "<img>") for leaf in leaves] == ["a", "b", "c", "<img>"]


def test_message_text_joins_flattened_text_leaves() -> None:
    message = Message(
        role="user",
        content=[
            TextContent(text="Hello "),
            PartsContent(parts=[ImageContent(data=b"x"), TextContent(text="world")]),
        ],
    )
    assert message.text == "Hello world"


def test_binary_payloads_serialize_to_base64_json() -> None:
    message = Message(role="user", content=ImageContent(data=bytes([1, 2, 3])))

    dumped = json.loads(message.model_dump_json(exclude_none=True))

    assert dumped["content"]["data"] == "AQID"
    assert Message.model_validate_json(message.model_dump_json()).content.data == bytes([1, 2, 3])


def test_models_are_frozen() -> None:
    message = Message.user("hi")
    with pytest.raises(pydantic.ValidationError):
        message.role = "assistant"


# =============================================================================
# Usage and responses
# =============================================================================


def test_usage_merge_sums_per_key() -> None:
    left = Usage(input={"prompt": 10}, output={"completion": 1})
    right = Usage(input={"prompt": 5, "cached": 2}, output=None)

    merged = left.merge(right)

    assert merged.input == {"prompt": 15, "cached": 2}
    assert merged.output == {"completion": 1}
    assert Usage().merge(Usage()) == Usage()


def test_response_text_reads_first_message() -> None:
    response = InstructResponse(output=[Message.assistant("first"), Message.assistant("second")])
    assert response.text == "first"
    assert len(response.messages) == 2


def test_stream_chunk_round_trips_through_json_tag() -> None:
    item = StreamResponse(chunk=ToolCallChunk(index=1, name="f"), external_id="x")
    restored = StreamResponse.model_validate_json(item.model_dump_json())
    assert restored == item


def test_with_model_copies_and_leaves_original_untouched() -> None:
    request = InstructRequest(model="openai::gpt-4o", correlation_id="c", input=Message.user("hi"))

    copy = with_model(request, "gpt-4o")

    assert copy.model == "gpt-4o"
    assert copy.correlation_id == "c"
    assert copy.input == request.input
    assert request.model == "openai::gpt-4o"

    embed = with_model(EmbeddingsRequest(model="ollama::nomic", input="x"), "nomic")
    assert isinstance(embed, EmbeddingsRequest)
    assert embed.model == "nomic"
