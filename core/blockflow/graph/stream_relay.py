"""
Stream Relay - Drains streaming block output without blocking the graph.

When a handler returns an async iterator, the executor hands it to the
relay. The relay consumes it in a background task, forwards every chunk to
the caller's callback as a StreamChunk, and accumulates the decoded text.
Once the stream ends the executor completes the block with
``{"content": <accumulated text>}`` and its dependents become ready.

A failing consumer callback stops forwarding for that stream only; the
stream keeps draining so the block still completes.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamChunk:
    """One decoded piece of a block's streamed output."""

    block_id: str
    data: str


@dataclass
class StreamOutcome:
    """Final state of a drained stream."""

    block_id: str
    content: str = ""
    error: str | None = None
    chunks: int = 0


ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


@dataclass
class StreamOptions:
    """
    Caller preferences for streamed output.

    Attributes:
        enabled: Relay streams in the background while the graph continues
        selected_outputs: Block IDs or names whose chunks are forwarded (empty: all)
        on_chunk: Callback receiving each StreamChunk (sync or async)
    """

    enabled: bool = False
    selected_outputs: list[str] = field(default_factory=list)
    on_chunk: ChunkCallback | None = None


def decode_chunk(chunk: Any) -> str:
    if isinstance(chunk, bytes | bytearray):
        return bytes(chunk).decode("utf-8", errors="replace")
    if isinstance(chunk, str):
        return chunk
    return str(chunk)


class StreamRelay:
    """
    Background consumer for block output streams.

    Example:
        relay = StreamRelay(on_chunk=lambda chunk: print(chunk.data, end=""))
        relay.start("writer", handler_stream)
        outcomes = await relay.wait_next()
    """

    def __init__(self, on_chunk: ChunkCallback | None = None):
        self._on_chunk = on_chunk
        self._tasks: dict[str, asyncio.Task[StreamOutcome]] = {}

    @property
    def active_ids(self) -> set[str]:
        return set(self._tasks)

    @property
    def has_active(self) -> bool:
        return bool(self._tasks)

    def start(self, block_id: str, stream: AsyncIterator[Any], forward: bool = True) -> None:
        """Begin draining a stream in the background."""
        self._tasks[block_id] = asyncio.create_task(
            self._consume(block_id, stream, forward), name=f"stream:{block_id}"
        )
        logger.debug(f"Relaying stream for {block_id}")

    async def drain(
        self, block_id: str, stream: AsyncIterator[Any], forward: bool = False
    ) -> StreamOutcome:
        """Drain a stream inline, e.g. in debug steps or non-streaming runs."""
        return await self._consume(block_id, stream, forward)

    def pop_finished(self) -> list[StreamOutcome]:
        """Outcomes of streams that already ended, without waiting."""
        outcomes = []
        for block_id, task in list(self._tasks.items()):
            if task.done() and not task.cancelled():
                del self._tasks[block_id]
                outcomes.append(task.result())
        return outcomes

    async def wait_next(self) -> list[StreamOutcome]:
        """Wait until at least one stream ends; return every ended stream."""
        if not self._tasks:
            return []
        await asyncio.wait(list(self._tasks.values()), return_when=asyncio.FIRST_COMPLETED)
        return self.pop_finished()

    async def drain_all(self) -> list[StreamOutcome]:
        """Wait for every in-flight stream to end."""
        outcomes = []
        while self._tasks:
            outcomes.extend(await self.wait_next())
        return outcomes

    async def aclose(self) -> None:
        """Cancel streams still in flight (run ended or was cancelled)."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _consume(
        self, block_id: str, stream: AsyncIterator[Any], forward: bool
    ) -> StreamOutcome:
        parts: list[str] = []
        error = None
        try:
            async for chunk in stream:
                text = decode_chunk(chunk)
                parts.append(text)
                if forward and self._on_chunk is not None:
                    forward = await self._forward(StreamChunk(block_id=block_id, data=text))
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"✗ Stream for {block_id} failed after {len(parts)} chunk(s): {error}")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return StreamOutcome(
            block_id=block_id, content="".join(parts), error=error, chunks=len(parts)
        )

    async def _forward(self, chunk: StreamChunk) -> bool:
        """Deliver a chunk; returns False to stop forwarding for this stream."""
        try:
            result = self._on_chunk(chunk)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception:
            logger.exception(
                f"Stream consumer failed for {chunk.block_id}; "
                "forwarding stopped, draining continues"
            )
            return False
