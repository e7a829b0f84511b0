"""dalton: streaming chat core for a multi-provider CLI assistant."""

__version__ = "0.3.0"

from dalton.config import DaltonConfig, load_config
from dalton.llm.orchestrator import ChatOrchestrator, get_orchestrator
from dalton.types import AssembledResponse, ChatOptions, Chunk, ToolCall, ToolCallFragment

__all__ = [
    "AssembledResponse",
    "ChatOptions",
    "ChatOrchestrator",
    "Chunk",
    "DaltonConfig",
    "ToolCall",
    "ToolCallFragment",
    "get_orchestrator",
    "load_config",
]
