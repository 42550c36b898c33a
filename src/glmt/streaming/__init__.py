"""Streaming primitives: upstream SSE framing and per-request block state."""

from .accumulator import (
    BlockState,
    BlockType,
    ContentBlock,
    DeltaAccumulator,
    ToolCallRecord,
)
from .sse_parser import SSEEvent, SSEParser

__all__ = [
    # Parser
    "SSEEvent",
    "SSEParser",
    # Accumulator
    "BlockState",
    "BlockType",
    "ContentBlock",
    "DeltaAccumulator",
    "ToolCallRecord",
]
