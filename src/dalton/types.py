"""Shared data types for dalton."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Union

# "auto" | "none" | {"type": "function", "function": {"name": ...}}
ToolChoice = Union[str, dict[str, Any]]

ContentCallback = Callable[[str], Any]


# ---------------------------------------------------------------------------
# Streaming types
# ---------------------------------------------------------------------------

@dataclass
class ToolCallFragment:
    """A partial tool call delivered within one chunk.

    ``id`` and ``function_name`` only appear on the fragment(s) that
    introduce an index; ``arguments_fragment`` is appended in arrival order.
    """

    index: int
    id: str | None = None
    function_name: str | None = None
    arguments_fragment: str = ""


@dataclass
class Chunk:
    """One canonical step of a streamed completion."""

    content: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    model: str | None = None

    @property
    def has_fragments(self) -> bool:
        return bool(self.content) or bool(self.tool_calls)


# ---------------------------------------------------------------------------
# Assembled types
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A tool call reconstructed from every fragment sharing one index."""

    id: str
    function_name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; raises ``json.JSONDecodeError`` if incomplete."""
        if not self.arguments:
            return {}
        return json.loads(self.arguments)

    def to_message(self) -> dict[str, Any]:
        """Render in the OpenAI ``tool_calls`` message shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.arguments},
        }


@dataclass
class AssembledResponse:
    """Unified response of one chat call, or the partial state of a failed one."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

@dataclass
class ChatOptions:
    """Per-call options for ``ChatOrchestrator.send_chat``."""

    model: str
    tools: list[dict[str, Any]] | None = None
    tool_choice: ToolChoice | None = None
    timeout_ms: float | None = None
    on_content: ContentCallback | None = None
