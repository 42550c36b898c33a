"""Per-request state for translating one upstream stream into content blocks.

The accumulator is the explicit block-lifecycle state machine behind the
streaming transform. It never emits events itself; the transformer asks it
what is open, mutates it, and turns the transitions into downstream SSE.

Invariants:
- block indices are 0, 1, 2, ... with no gaps or repeats
- at most one block is OPEN at any time
- finalization happens once and is never undone
- loop detection is sticky once it fires
"""

from __future__ import annotations

import json
import logging
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from glmt.errors import BlockBufferOverflowError, BlockLimitError, BlockStateError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCKS = 100
DEFAULT_MAX_BUFFER_SIZE = 10 * 1024 * 1024  # 10MB
DEFAULT_LOOP_DETECTION_THRESHOLD = 3


class BlockType(str, Enum):
    """Downstream content block types produced while streaming."""

    THINKING = "thinking"
    TEXT = "text"
    TOOL_USE = "tool_use"


class BlockState(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ContentBlock:
    """One downstream content block being assembled."""

    index: int
    type: BlockType
    state: BlockState = BlockState.OPEN
    tool_call_index: int | None = None  # upstream tool-call index for tool_use blocks
    _parts: list[str] = field(default_factory=list, repr=False)
    length: int = 0

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def is_open(self) -> bool:
        return self.state is BlockState.OPEN


@dataclass
class ToolCallRecord:
    """A tool call assembled from indexed upstream fragments.

    ``arguments`` is the raw concatenation of every fragment; ``input`` is
    only populated once the owning block closes.
    """

    index: int
    id: str = ""
    type: str = "function"
    name: str = ""
    arguments: str = ""
    input: dict[str, Any] | None = None
    emitted: bool = False  # tool_use block already sent downstream

    def parse_arguments(self) -> dict[str, Any]:
        """Parse the assembled arguments, substituting an error marker on failure."""
        try:
            parsed = json.loads(self.arguments or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in tool arguments for %r: %s", self.name, e)
            parsed = {"_error": "Invalid JSON", "_raw": self.arguments}
        if not isinstance(parsed, dict):
            parsed = {"_error": "Invalid JSON", "_raw": self.arguments}
        self.input = parsed
        return parsed


def generate_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"msg_{int(time.time() * 1000)}_{suffix}"


@dataclass
class DeltaAccumulator:
    """Mutable state for one in-flight streaming request.

    Example:
        >>> acc = DeltaAccumulator()
        >>> block = acc.start_block(BlockType.THINKING)
        >>> acc.add_delta("step one")
        >>> acc.stop_current_block()
        >>> block.content
        'step one'
    """

    max_blocks: int = DEFAULT_MAX_BLOCKS
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    loop_detection_threshold: int = DEFAULT_LOOP_DETECTION_THRESHOLD

    message_id: str = field(default_factory=generate_message_id)
    model: str | None = None
    role: str = "assistant"

    input_tokens: int = 0
    output_tokens: int = 0

    _blocks: list[ContentBlock] = field(default_factory=list, init=False, repr=False)
    _tool_calls: dict[int, ToolCallRecord] = field(default_factory=dict, init=False, repr=False)
    _finish_reason: str | None = field(default=None, init=False)
    _usage_received: bool = field(default=False, init=False)
    _message_started: bool = field(default=False, init=False)
    _finalized: bool = field(default=False, init=False)
    _loop_detected: bool = field(default=False, init=False)

    # -- blocks ------------------------------------------------------------

    @property
    def blocks(self) -> list[ContentBlock]:
        return list(self._blocks)

    @property
    def current_block(self) -> ContentBlock | None:
        """The most recently started block, open or closed."""
        return self._blocks[-1] if self._blocks else None

    @property
    def current_index(self) -> int:
        return len(self._blocks) - 1

    @property
    def open_block(self) -> ContentBlock | None:
        block = self.current_block
        return block if block is not None and block.is_open else None

    def start_block(self, block_type: BlockType, tool_call_index: int | None = None) -> ContentBlock:
        """Open a new block at the next index.

        Raises:
            BlockLimitError: If max_blocks blocks already exist.
            BlockStateError: If another block is still open.
        """
        if len(self._blocks) >= self.max_blocks:
            raise BlockLimitError(
                f"Maximum {self.max_blocks} content blocks exceeded (DoS protection)"
            )
        if self.open_block is not None:
            raise BlockStateError(
                f"Cannot start {block_type.value} block while block "
                f"{self.open_block.index} ({self.open_block.type.value}) is open"
            )

        block = ContentBlock(
            index=len(self._blocks),
            type=block_type,
            tool_call_index=tool_call_index,
        )
        self._blocks.append(block)
        return block

    def add_delta(self, text: str) -> ContentBlock:
        """Append text to the open thinking or text block.

        Raises:
            BlockStateError: If no block is open or the open block is tool_use.
            BlockBufferOverflowError: If the block would exceed max_buffer_size.
        """
        block = self.open_block
        if block is None:
            raise BlockStateError("add_delta called with no open block")
        if block.type is BlockType.TOOL_USE:
            raise BlockStateError(
                f"Block {block.index} is tool_use; arguments go through add_tool_call_delta"
            )
        if block.length + len(text) > self.max_buffer_size:
            raise BlockBufferOverflowError(
                f"{block.type.value.capitalize()} buffer exceeded "
                f"{self.max_buffer_size} bytes (DoS protection)"
            )

        block._parts.append(text)
        block.length += len(text)
        return block

    def stop_current_block(self) -> ContentBlock | None:
        """Close the open block, if any.

        Closing a tool_use block is the point at which its tool call is
        considered complete, so its arguments are parsed here.
        """
        block = self.open_block
        if block is None:
            return None

        block.state = BlockState.CLOSED
        if block.type is BlockType.TOOL_USE and block.tool_call_index is not None:
            record = self._tool_calls.get(block.tool_call_index)
            if record is not None:
                record.parse_arguments()
        logger.debug("Stopped %s block %d: %d chars", block.type.value, block.index, block.length)
        return block

    # -- tool calls --------------------------------------------------------

    @property
    def tool_calls(self) -> list[ToolCallRecord]:
        return list(self._tool_calls.values())

    def has_tool_call(self, index: int | None = None) -> bool:
        if index is None:
            return bool(self._tool_calls)
        return index in self._tool_calls

    def get_tool_call(self, index: int) -> ToolCallRecord | None:
        return self._tool_calls.get(index)

    def add_tool_call_delta(
        self,
        index: int,
        *,
        id: str | None = None,
        type: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> ToolCallRecord:
        """Merge one upstream tool-call fragment into the record for ``index``.

        The first fragment creates the record. Later fragments overwrite
        ``id``/``type`` when present and concatenate ``name``/``arguments``.

        Raises:
            BlockBufferOverflowError: If the assembled arguments exceed max_buffer_size.
            BlockStateError: If a name or arguments fragment arrives for a call
                whose tool_use block was already emitted.
        """
        record = self._tool_calls.get(index)
        if record is None:
            record = ToolCallRecord(index=index)
            self._tool_calls[index] = record
        elif record.emitted and (name or arguments):
            raise BlockStateError(
                f"Tool call {index} received a fragment after its tool_use block was emitted"
            )

        if id:
            record.id = id
        if type:
            record.type = type
        if name:
            record.name += name
        if arguments:
            if len(record.arguments) + len(arguments) > self.max_buffer_size:
                raise BlockBufferOverflowError(
                    f"Tool call {index} arguments exceeded "
                    f"{self.max_buffer_size} bytes (DoS protection)"
                )
            record.arguments += arguments
            block = self.open_block
            if block is not None and block.tool_call_index == index:
                block._parts.append(arguments)
                block.length += len(arguments)
        return record

    def pending_tool_calls(self) -> list[ToolCallRecord]:
        """Recorded tool calls without a tool_use block yet, in index order."""
        return sorted(
            (r for r in self._tool_calls.values() if not r.emitted), key=lambda r: r.index
        )

    def start_tool_block(self, index: int) -> ContentBlock:
        """Open the tool_use block for an assembled tool call.

        The block is seeded with the arguments gathered so far and the call
        is marked emitted, so later fragments for ``index`` are rejected.

        Raises:
            KeyError: If no tool call was recorded for ``index``.
            BlockLimitError: If max_blocks blocks already exist.
            BlockStateError: If another block is still open.
        """
        record = self._tool_calls[index]
        block = self.start_block(BlockType.TOOL_USE, tool_call_index=index)
        if record.arguments:
            block._parts.append(record.arguments)
            block.length += len(record.arguments)
        record.emitted = True
        return block

    # -- usage and finish reason ------------------------------------------

    def update_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self._usage_received = True

    def has_usage_received(self) -> bool:
        return self._usage_received

    def set_finish_reason(self, reason: str) -> None:
        self._finish_reason = reason

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    # -- lifecycle flags ---------------------------------------------------

    @property
    def message_started(self) -> bool:
        return self._message_started

    def mark_message_started(self) -> None:
        self._message_started = True

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def mark_finalized(self) -> bool:
        """Flip the finalized flag. Returns False if it was already set."""
        if self._finalized:
            return False
        self._finalized = True
        return True

    @property
    def loop_detected(self) -> bool:
        return self._loop_detected

    def check_for_loop(self) -> bool:
        """Detect the model thinking indefinitely without acting.

        Fires when the last ``loop_detection_threshold`` blocks are all
        thinking blocks and no tool call has been recorded for the request.
        """
        if self._loop_detected:
            return True

        threshold = self.loop_detection_threshold
        if threshold <= 0 or len(self._blocks) < threshold:
            return False

        recent = self._blocks[-threshold:]
        if all(b.type is BlockType.THINKING for b in recent) and not self._tool_calls:
            self._loop_detected = True
        return self._loop_detected

    def summary(self) -> dict[str, Any]:
        """Compact state snapshot for debug logs."""
        return {
            "message_id": self.message_id,
            "model": self.model,
            "role": self.role,
            "block_count": len(self._blocks),
            "current_index": self.current_index,
            "tool_call_count": len(self._tool_calls),
            "message_started": self._message_started,
            "finalized": self._finalized,
            "loop_detected": self._loop_detected,
            "usage": {
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
            },
        }
