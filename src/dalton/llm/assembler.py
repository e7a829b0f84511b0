"""Assemble canonical chunks into one :class:`AssembledResponse`.

Content fragments are concatenated in arrival order and optionally echoed
to a live callback.  Tool calls arrive as fragments keyed by an integer
index: the fragment introducing an index carries the id and function
name, later ones only carry pieces of the arguments text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable

from dalton.types import AssembledResponse, Chunk, ContentCallback, ToolCall

_logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    id: str | None = None
    function_name: str | None = None
    arguments: str = ""


class ChunkAssembler:
    """Accumulate streamed chunks for a single call.

    Parameters
    ----------
    on_content:
        Called synchronously with each content fragment, in arrival order,
        before the next chunk is processed.  Exceptions propagate.
    """

    def __init__(self, on_content: ContentCallback | None = None) -> None:
        self._on_content = on_content
        self._content: list[str] = []
        # dicts keep insertion order; finalize() re-sorts by index
        self._pending: dict[int, _PendingCall] = {}
        self._metadata: dict[str, object] = {}
        self.chunks_seen = 0
        self.delivered = False

    def feed(self, chunk: Chunk) -> None:
        """Process one chunk."""
        self.chunks_seen += 1

        for fragment in chunk.tool_calls:
            self.delivered = True
            call = self._pending.get(fragment.index)
            if call is None:
                call = self._pending[fragment.index] = _PendingCall()
            if fragment.id:
                call.id = fragment.id
            if fragment.function_name:
                call.function_name = fragment.function_name
            call.arguments += fragment.arguments_fragment or ""

        if chunk.model:
            self._metadata["model"] = chunk.model
        if chunk.finish_reason:
            self._metadata["finish_reason"] = chunk.finish_reason
        if chunk.usage:
            self._metadata["usage"] = dict(chunk.usage)

        if chunk.content:
            self.delivered = True
            self._content.append(chunk.content)
            if self._on_content is not None:
                self._on_content(chunk.content)

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def tool_call_count(self) -> int:
        return len(self._pending)

    def snapshot(self) -> AssembledResponse:
        """Return the state accumulated so far without finalizing it.

        Arguments of tool calls may still be incomplete.
        """
        return AssembledResponse(
            content=self.content,
            tool_calls=self._build_calls(),
            metadata=dict(self._metadata),
        )

    def finalize(self) -> AssembledResponse:
        """Convert the working state into the final response, ordered by index."""
        for index, call in sorted(self._pending.items()):
            if not call.id or not call.function_name:
                _logger.warning(
                    "Tool call at index %d finished without %s",
                    index, "an id" if not call.id else "a function name",
                )
        response = self.snapshot()
        self._pending.clear()
        return response

    def _build_calls(self) -> list[ToolCall]:
        return [
            ToolCall(
                id=call.id or "",
                function_name=call.function_name or "",
                arguments=call.arguments,
            )
            for _, call in sorted(self._pending.items())
        ]


async def assemble_stream(
    chunks: AsyncIterable[Chunk],
    on_content: ContentCallback | None = None,
    *,
    assembler: ChunkAssembler | None = None,
) -> AssembledResponse:
    """Drain *chunks* and return the assembled response.

    Pass an explicit *assembler* to keep access to partial state when the
    iteration fails part-way.
    """
    assembler = assembler or ChunkAssembler(on_content)
    async for chunk in chunks:
        assembler.feed(chunk)
    return assembler.finalize()
