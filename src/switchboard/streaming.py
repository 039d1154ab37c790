"""Lazy chunk streams and the delta accumulator.

``ChunkStream`` is the single-pass sequence returned by ``instruct_stream``.
Each item is either a ``StreamResponse`` or a ``SwitchboardError``; a failure
after the stream has started is delivered as an item rather than raised, so
callers decide whether to stop or keep pulling.

``StreamAccumulator`` folds those deltas back into one ``Message``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from switchboard.errors import SwitchboardError
from switchboard.models import (
    FunctionCall,
    InstructResponse,
    Message,
    StreamResponse,
    TextChunk,
    TextContent,
    ToolCall,
    ToolCallChunk,
    Usage,
    UsageChunk,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

    from switchboard.models import StreamChunk

StreamItem = Union[StreamResponse, SwitchboardError]


class ChunkStream:
    """Single-pass async iterator over stream items.

    ``aclose()`` (or leaving ``async with``) releases the transport through
    *on_close*, whether or not iteration has started. Once closed or
    exhausted the stream yields nothing further.
    """

    def __init__(
        self,
        items: AsyncIterator[StreamItem],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._items = items
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> StreamItem:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._items.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._items, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass
class _ToolCallBuilder:
    id: str = ""
    type: str = "function"
    name: str = ""
    arguments: str = ""


class StreamAccumulator:
    """Fold streamed deltas into a single assistant message.

    Tool-call fragments are concatenated onto the builder at their index, so
    an id, name or argument string may arrive split across several chunks.
    Each fragment is expected exactly once; a provider that repeats a
    complete fragment would produce a duplicated value.
    """

    def __init__(self, role: str = "assistant") -> None:
        self.role = role
        self.usage: Usage | None = None
        self.external_id: str | None = None
        self._text: list[str] = []
        self._tool_calls: dict[int, _ToolCallBuilder] = {}

    @property
    def text(self) -> str:
        return "".join(self._text)

    def push(self, item: StreamResponse | StreamChunk) -> None:
        """Apply one stream item (or bare chunk) to the running state."""
        if isinstance(item, StreamResponse):
            if item.external_id and not self.external_id:
                self.external_id = item.external_id
            chunk = item.chunk
        else:
            chunk = item

        if isinstance(chunk, TextChunk):
            self._text.append(chunk.text)
        elif isinstance(chunk, ToolCallChunk):
            builder = self._tool_calls.setdefault(chunk.index, _ToolCallBuilder())
            if chunk.id:
                builder.id += chunk.id
            if chunk.name:
                builder.name += chunk.name
            if chunk.arguments:
                builder.arguments += chunk.arguments
        elif isinstance(chunk, UsageChunk):
            self.usage = (
                chunk.usage if self.usage is None else self.usage.merge(chunk.usage)
            )

    def finish(self) -> Message:
        text = self.text
        tool_calls = [
            ToolCall(
                id=builder.id,
                type=builder.type,
                function=FunctionCall(
                    name=builder.name, arguments=builder.arguments or None
                ),
            )
            for _, builder in sorted(self._tool_calls.items())
        ]
        return Message(
            role=self.role,
            content=TextContent(text=text) if text else None,
            tool_calls=tool_calls or None,
        )

    def response(self) -> InstructResponse:
        """Return the accumulated message with usage and external id."""
        return InstructResponse(
            output=self.finish(), external_id=self.external_id, usage=self.usage
        )

    async def drain(self, stream: AsyncIterable[StreamItem]) -> None:
        """Push every item of *stream*, raising the first error item."""
        try:
            async for item in stream:
                if isinstance(item, SwitchboardError):
                    raise item
                self.push(item)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def collect(self, stream: AsyncIterable[StreamItem]) -> Message:
        await self.drain(stream)
        return self.finish()

    async def collect_response(
        self, stream: AsyncIterable[StreamItem]
    ) -> InstructResponse:
        await self.drain(stream)
        return self.response()
