"""Vertex AI adapter contract tests (HTTP mocked with respx)."""

from __future__ import annotations

import json
import time

import httpx
import pytest
import respx

from switchboard.auth import GOOGLE_TOKEN_URL, AccessToken, TokenManager
from switchboard.errors import UpstreamHTTPError
from switchboard.models import (
    AudioContent,
    EmbeddingsRequest,
    FunctionCall,
    GenerationConfig,
    InstructRequest,
    Message,
    TextChunk,
    TextContent,
    Tool,
    ToolCall,
    ToolCallChunk,
    ToolConfig,
    Usage,
    UsageChunk,
)
from switchboard.providers.vertexai import (
    VertexAIProvider,
    _StreamState,
    to_generate_payload,
)
from switchboard.streaming import StreamAccumulator

pytestmark = pytest.mark.contract

API_URL = "https://vertex.test/v1/models/{{MODEL}}"
GENERATE_URL = "https://vertex.test/v1/models/gemini-2.0-flash:generateContent"
STREAM_URL = "https://vertex.test/v1/models/gemini-2.0-flash:streamGenerateContent?alt=sse"


@pytest.fixture
def provider(service_account) -> VertexAIProvider:
    token = AccessToken(access_token="ya29.test", token_type="Bearer", expires_at=time.time() + 3600)
    return VertexAIProvider(
        API_URL, service_account, token_manager=TokenManager(service_account, token=token)
    )


def _sse(*frames: dict) -> bytes:
    return "".join(f"data: {json.dumps(f)}\r\n\r\n" for f in frames).encode()


# =============================================================================
# Request mapping
# =============================================================================


def test_payload_maps_system_generation_and_tools() -> None:
    payload = to_generate_payload(
        InstructRequest(
            model="gemini",
            input=[Message.system("sys"), Message.user("hi"), Message.assistant("hello")],
            generation_config=GenerationConfig(temperature=0.3, max_tokens=99, top_k=4, thinking_tokens=0),
            tools=[Tool(name="lookup")],
            tool_config=ToolConfig(mode="any"),
        )
    )

    assert payload["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert payload["contents"] == [
        {"role": "user", "parts": [{"text": "hi"}]},
        {"role": "model", "parts": [{"text": "hello"}]},
    ]
    assert payload["generationConfig"] == {
        "temperature": 0.3,
        "maxOutputTokens": 99,
        "topK": 4,
        "thinkingConfig": {"thinkingBudget": 0},
    }
    assert payload["tools"][0]["functionDeclarations"][0]["name"] == "lookup"
    assert payload["toolConfig"] == {"functionCallingConfig": {"mode": "ANY"}}


def test_tool_config_without_mode_defaults_to_auto() -> None:
    payload = to_generate_payload(
        InstructRequest(model="g", input=Message.user("hi"), tool_config=ToolConfig())
    )
    assert payload["toolConfig"] == {"functionCallingConfig": {"mode": "AUTO"}}


def test_function_calls_and_results_use_names() -> None:
    payload = to_generate_payload(
        InstructRequest(
            model="g",
            input=[
                Message(
                    role="assistant",
                    tool_calls=[ToolCall(id="get_time", function=FunctionCall(name="get_time", arguments="{}"))],
                ),
                Message.tool("get_time", '{"time": "noon"}'),
                Message.tool("get_time", "plain text"),
            ],
        )
    )

    call, result, text_result = payload["contents"]
    assert call == {"role": "model", "parts": [{"functionCall": {"name": "get_time", "args": {}}}]}
    assert result == {
        "role": "user",
        "parts": [{"functionResponse": {"name": "get_time", "response": {"time": "noon"}}}],
    }
    assert text_result["parts"][0]["functionResponse"]["response"] == {"content": "plain text"}


def test_media_becomes_inline_data() -> None:
    payload = to_generate_payload(
        InstructRequest(
            model="g",
            input=Message(role="user", content=[TextContent(text="hear"), AudioContent(data=b"\x01\x02\x03", format="wav")]),
        )
    )
    assert payload["contents"][0]["parts"][1] == {"inlineData": {"mimeType": "audio/wav", "data": "AQID"}}


# =============================================================================
# instruct
# =============================================================================


@pytest.mark.asyncio
@respx.mock
async def test_instruct_uses_bearer_token_and_maps_candidates(provider) -> None:
    route = respx.post(GENERATE_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "responseId": "resp-1",
                "candidates": [
                    {
                        "content": {
                            "role": "model",
                            "parts": [
                                {"text": "thinking...", "thought": True},
                                {"text": "It is "},
                                {"text": "noon."},
                                {"functionCall": {"name": "get_time", "args": {"tz": "UTC"}}},
                            ],
                        },
                        "finishReason": "STOP",
                    }
                ],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 3, "totalTokenCount": 8},
            },
        )
    )

    response = await provider.instruct(InstructRequest(model="gemini-2.0-flash", input=Message.user("time?")))

    assert route.calls.last.request.headers["Authorization"] == "Bearer ya29.test"
    assert response.external_id == "resp-1"
    assert response.output.role == "assistant"
    assert response.text == "It is noon."
    call = response.output.tool_calls[0]
    assert call.id == "get_time"
    assert call.function.arguments == '{"tz":"UTC"}'
    assert response.usage == Usage(
        input={"prompt_tokens": 5},
        output={"candidates_tokens": 3, "total_tokens": 8},
    )


@pytest.mark.asyncio
@respx.mock
async def test_token_is_fetched_when_missing(service_account) -> None:
    token_route = respx.post(GOOGLE_TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "ya29.minted", "expires_in": 3600})
    )
    respx.post(GENERATE_URL).mock(
        return_value=httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})
    )
    provider = VertexAIProvider(API_URL, service_account)

    await provider.instruct(InstructRequest(model="gemini-2.0-flash", input=Message.user("x")))
    await provider.instruct(InstructRequest(model="gemini-2.0-flash", input=Message.user("y")))

    assert token_route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_permission_denied_is_reported(provider) -> None:
    respx.post(GENERATE_URL).mock(
        return_value=httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}})
    )

    with pytest.raises(UpstreamHTTPError) as info:
        await provider.instruct(InstructRequest(model="gemini-2.0-flash", input=Message.user("x")))

    assert info.value.status_code == 403
    assert "PERMISSION_DENIED" in info.value.body


# =============================================================================
# instruct_stream
# =============================================================================


def test_usage_is_reported_once_at_finish() -> None:
    frames = [
        {
            "responseId": "r",
            "candidates": [{"content": {"parts": [{"text": "Hel"}]}}],
            "usageMetadata": {"promptTokenCount": 4},
        },
        {
            "responseId": "r",
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "lo"},
                            {"functionCall": {"name": "a", "args": {}}},
                            {"functionCall": {"name": "b", "args": {"x": 1}}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 6},
        },
    ]

    state = _StreamState()
    chunks = [item.chunk for frame in frames for item in state.map_frame(frame)]

    assert chunks == [
        TextChunk(text="Hel"),
        TextChunk(text="lo"),
        ToolCallChunk(index=0, id="a", name="a", arguments="{}"),
        ToolCallChunk(index=1, id="b", name="b", arguments='{"x":1}'),
        UsageChunk(usage=Usage(input={"prompt_tokens": 4}, output={"candidates_tokens": 6})),
    ]


@pytest.mark.asyncio
@respx.mock
async def test_stream_reads_sse_frames(provider) -> None:
    route = respx.post(STREAM_URL).mock(
        return_value=httpx.Response(
            200,
            content=_sse(
                {"responseId": "r1", "candidates": [{"content": {"role": "model", "parts": [{"text": "Hi "}]}}]},
                {
                    "responseId": "r1",
                    "candidates": [{"content": {"role": "model", "parts": [{"text": "there"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 2, "totalTokenCount": 4},
                },
            ),
        )
    )

    stream = await provider.instruct_stream(InstructRequest(model="gemini-2.0-flash", input=Message.user("x")))
    response = await StreamAccumulator().collect_response(stream)

    assert route.called
    assert response.external_id == "r1"
    assert response.text == "Hi there"
    assert response.usage.output == {"candidates_tokens": 2, "total_tokens": 4}


# =============================================================================
# embeddings
# =============================================================================


@pytest.mark.asyncio
@respx.mock
async def test_embeddings_use_predict(provider) -> None:
    route = respx.post("https://vertex.test/v1/models/text-embedding-005:predict").mock(
        return_value=httpx.Response(
            200,
            json={
                "predictions": [
                    {"embeddings": {"values": [0.1, 0.2], "statistics": {"token_count": 2}}},
                    {"embeddings": {"values": [0.3, 0.4], "statistics": {"token_count": 3}}},
                ]
            },
        )
    )

    response = await provider.embeddings(EmbeddingsRequest(model="text-embedding-005", input=["a", "b"]))

    assert json.loads(route.calls.last.request.content)["instances"] == [{"content": "a"}, {"content": "b"}]
    assert response.output == [[0.1, 0.2], [0.3, 0.4]]
    assert response.usage.input == {"token_count": 5}
