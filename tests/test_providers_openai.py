"""OpenAI adapter contract tests (HTTP mocked with respx)."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from switchboard.errors import UpstreamDecodeError, UpstreamHTTPError
from switchboard.models import (
    AudioContent,
    EmbeddingsRequest,
    FileContent,
    GenerationConfig,
    ImageContent,
    InstructRequest,
    Message,
    TextContent,
    Tool,
    ToolConfig,
    ToolParameter,
    UsageChunk,
)
from switchboard.providers.openai import OpenAIProvider, map_stream_frame, to_chat_payload
from switchboard.streaming import StreamAccumulator

pytestmark = pytest.mark.contract

BASE = "https://openai.test/v1"


def _sse(*frames) -> bytes:
    out = []
    for frame in frames:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode()


def _provider() -> OpenAIProvider:
    return OpenAIProvider("sk-test", BASE)


# =============================================================================
# Request mapping
# =============================================================================


def test_payload_maps_generation_config_and_tools() -> None:
    request = InstructRequest(
        model="gpt-4o",
        input=[Message.system("sys"), Message.user("hi")],
        generation_config=GenerationConfig(
            temperature=0.5, max_tokens=100, cache_key="k1", thinking_effort="low", top_k=3
        ),
        tools=[
            Tool(
                name="lookup",
                description="Look things up",
                parameters=ToolParameter(properties={"q": ToolParameter()}, required=["q"]),
            )
        ],
        tool_config=ToolConfig(mode="required"),
    )

    payload = to_chat_payload(request, stream=True)

    assert payload["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["temperature"] == 0.5
    assert payload["max_tokens"] == 100
    assert payload["prompt_cache_key"] == "k1"
    assert payload["reasoning_effort"] == "low"
    assert "top_k" not in payload
    assert payload["tool_choice"] == "required"
    assert payload["tools"][0]["function"]["parameters"] == {
        "type": "object",
        "properties": {"q": {"type": "string"}},
        "required": ["q"],
    }


def test_multimodal_content_becomes_parts() -> None:
    message = Message(
        role="user",
        content=[
            TextContent(text="look"),
            ImageContent(data=b"\x01\x02\x03", format="png"),
            AudioContent(data=b"\x01\x02\x03", format="wav"),
            FileContent(data=b"\x01\x02\x03", name="doc.pdf"),
        ],
    )

    parts = to_chat_payload(InstructRequest(model="m", input=message), stream=False)["messages"][0]["content"]

    assert parts[0] == {"type": "text", "text": "look"}
    assert parts[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AQID"}}
    assert parts[2] == {"type": "input_audio", "input_audio": {"data": "AQID", "format": "wav"}}
    assert parts[3]["file"] == {"filename": "doc.pdf", "file_data": "data:application/pdf;base64,AQID"}


def test_tool_result_message_carries_call_id() -> None:
    payload = to_chat_payload(
        InstructRequest(model="m", input=Message.tool("call_1", '{"temp": 20}')), stream=False
    )
    assert payload["messages"][0] == {
        "role": "tool",
        "content": '{"temp": 20}',
        "tool_call_id": "call_1",
    }


# =============================================================================
# instruct
# =============================================================================


@pytest.mark.asyncio
@respx.mock
async def test_instruct_sends_bearer_and_maps_response() -> None:
    route = respx.post(f"{BASE}/chat/completions").mock(
        return_value=httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "choices": [
                    {
                        "index": 0,
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "lookup", "arguments": '{"q":"x"}'},
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11},
            },
        )
    )

    response = await _provider().instruct(InstructRequest(model="gpt-4o", input=Message.user("hi")))

    assert route.calls.last.request.headers["Authorization"] == "Bearer sk-test"
    assert response.external_id == "chatcmpl-1"
    assert response.output.tool_calls[0].id == "call_1"
    assert response.output.tool_calls[0].function.arguments == '{"q":"x"}'
    assert response.output.content is None
    assert response.usage.input == {"prompt_tokens": 9}
    assert response.usage.output == {"completion_tokens": 2}


@pytest.mark.asyncio
@respx.mock
async def test_multiple_choices_give_message_list() -> None:
    respx.post(f"{BASE}/chat/completions").mock(
        return_value=httpx.Response(
            200,
            json={
                "id": "x",
                "choices": [
                    {"message": {"role": "assistant", "content": "a"}},
                    {"message": {"role": "assistant", "content": "b"}},
                ],
            },
        )
    )

    response = await _provider().instruct(InstructRequest(model="m", input=Message.user("hi")))

    assert [m.text for m in response.messages] == ["a", "b"]
    assert response.usage is None


@pytest.mark.asyncio
@respx.mock
async def test_unauthorized_maps_to_upstream_error_with_hint() -> None:
    respx.post(f"{BASE}/chat/completions").mock(
        return_value=httpx.Response(401, json={"error": {"message": "bad key"}})
    )

    with pytest.raises(UpstreamHTTPError) as info:
        await _provider().instruct(InstructRequest(model="m", input=Message.user("hi")))

    assert info.value.status_code == 401
    assert "bad key" in info.value.body
    assert info.value.hint is not None


@pytest.mark.asyncio
@respx.mock
async def test_response_without_choices_is_decode_error() -> None:
    respx.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, json={"id": "x"}))

    with pytest.raises(UpstreamDecodeError):
        await _provider().instruct(InstructRequest(model="m", input=Message.user("hi")))


def test_repr_hides_api_key() -> None:
    assert "sk-test" not in repr(_provider())


# =============================================================================
# instruct_stream
# =============================================================================


def test_stream_frame_with_tool_call_fragments() -> None:
    items = map_stream_frame(
        {
            "id": "chatcmpl-9",
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 1, "id": "call_b", "function": {"name": "second", "arguments": ""}}
                        ]
                    }
                }
            ],
        }
    )

    assert len(items) == 1
    assert items[0].external_id == "chatcmpl-9"
    assert items[0].chunk.index == 1
    assert items[0].chunk.name == "second"


@pytest.mark.asyncio
@respx.mock
async def test_stream_assembles_text_tools_and_usage() -> None:
    body = _sse(
        {"id": "c1", "choices": [{"delta": {"role": "assistant", "content": "Let me "}}]},
        {"id": "c1", "choices": [{"delta": {"content": "check."}}]},
        {"id": "c1", "choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "get_weather", "arguments": "{\"loc"}}]}}]},
        {"id": "c1", "choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "ation\": \"London\"}"}}]}}]},
        {"id": "c1", "choices": [], "usage": {"prompt_tokens": 20, "completion_tokens": 8}},
        "[DONE]",
    )
    route = respx.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, content=body))

    stream = await _provider().instruct_stream(InstructRequest(model="m", input=Message.user("hi")))
    acc = StreamAccumulator()
    async for item in stream:
        acc.push(item)
    response = acc.response()

    assert json.loads(route.calls.last.request.content)["stream"] is True
    assert response.external_id == "c1"
    assert response.text == "Let me check."
    call = response.output.tool_calls[0]
    assert call.id == "call_1"
    assert call.function.arguments == '{"location": "London"}'
    assert response.usage.output == {"completion_tokens": 8}


@pytest.mark.asyncio
@respx.mock
async def test_stream_stops_at_done_sentinel() -> None:
    body = _sse({"choices": [{"delta": {"content": "a"}}]}, "[DONE]", {"choices": [{"delta": {"content": "late"}}]})
    respx.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, content=body))

    stream = await _provider().instruct_stream(InstructRequest(model="m", input=Message.user("hi")))
    texts = [item.chunk.text async for item in stream]

    assert texts == ["a"]


@pytest.mark.asyncio
@respx.mock
async def test_stream_error_frame_becomes_error_item() -> None:
    body = _sse({"choices": [{"delta": {"content": "a"}}]}, {"error": {"message": "overloaded"}}, "{bad")
    respx.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, content=body))

    stream = await _provider().instruct_stream(InstructRequest(model="m", input=Message.user("hi")))
    items = [item async for item in stream]

    assert items[0].chunk.text == "a"
    assert isinstance(items[1], UpstreamHTTPError)
    assert isinstance(items[2], UpstreamDecodeError)


@pytest.mark.asyncio
@respx.mock
async def test_usage_only_frame_yields_usage_chunk() -> None:
    body = _sse({"id": "u", "choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1}})
    respx.post(f"{BASE}/chat/completions").mock(return_value=httpx.Response(200, content=body))

    stream = await _provider().instruct_stream(InstructRequest(model="m", input=Message.user("hi")))
    items = [item async for item in stream]

    assert len(items) == 1
    assert isinstance(items[0].chunk, UsageChunk)


# =============================================================================
# embeddings
# =============================================================================


@pytest.mark.asyncio
@respx.mock
async def test_embeddings_are_ordered_by_index() -> None:
    route = respx.post(f"{BASE}/embeddings").mock(
        return_value=httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.2]},
                    {"index": 0, "embedding": [0.1]},
                ],
                "usage": {"prompt_tokens": 4, "total_tokens": 4},
            },
        )
    )

    response = await _provider().embeddings(
        EmbeddingsRequest(model="text-embedding-3-small", input=["a", "b"])
    )

    assert json.loads(route.calls.last.request.content)["input"] == ["a", "b"]
    assert response.output == [[0.1], [0.2]]
    assert response.usage.input == {"prompt_tokens": 4}
