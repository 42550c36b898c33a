"""Format transformer between the Messages API and upstream chat completions.

Request (downstream -> upstream):
- resolve the thinking directive, pin the upstream model and output cap
- inject the locale and reasoning instructions into the system message
- flatten content blocks into the upstream's flat message list
- convert tools to function-calling schema with tool_choice "auto"

Response (upstream -> downstream):
- buffered: one chat completion -> one message with thinking/text/tool_use blocks
- streaming: one upstream SSE event -> zero or more downstream SSE events,
  driving the block lifecycle through a DeltaAccumulator

Downstream streaming events:
    message_start, content_block_start, content_block_delta
    (thinking_delta | text_delta | thinking_signature_delta | input_json_delta),
    content_block_stop, message_delta, message_stop
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from pydantic import ValidationError

from glmt.errors import UpstreamError
from glmt.streaming.accumulator import (
    BlockType,
    ContentBlock,
    DeltaAccumulator,
    ToolCallRecord,
)
from glmt.streaming.sse_parser import SSEEvent

from .directives import resolve_directive
from .enforcers import LocaleEnforcer, ReasoningEnforcer
from .types import DownstreamEvent, ThinkingDirective, ThinkingSignature
from .upstream import ChatCompletion, ChatMessage, ToolCallPayload

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_MODEL = "GLM-4.6"

MODEL_MAX_TOKENS = {
    "GLM-4.6": 128000,
    "GLM-4.5": 96000,
    "GLM-4.5-air": 16000,
}
DEFAULT_MAX_TOKENS = 128000

STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "stop_sequence",
}
DEFAULT_STOP_REASON = "end_turn"


def map_stop_reason(reason: str | None) -> str:
    """Map an upstream finish_reason to a downstream stop_reason. Total."""
    if reason is None:
        return DEFAULT_STOP_REASON
    return STOP_REASON_MAP.get(reason, DEFAULT_STOP_REASON)


def _flatten_tool_result(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content)


def _system_text(system: Any) -> str | None:
    if isinstance(system, str):
        return system or None
    if isinstance(system, list):
        text = "\n".join(
            block.get("text", "")
            for block in system
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return text or None
    return None


class GlmtTransformer:
    """Stateless translator; all per-request streaming state lives in the accumulator."""

    def __init__(
        self,
        upstream_model: str = DEFAULT_UPSTREAM_MODEL,
        default_thinking: bool = True,
        explicit_reasoning: bool = False,
        verbose: bool = False,
        locale_enforcer: LocaleEnforcer | None = None,
        reasoning_enforcer: ReasoningEnforcer | None = None,
    ):
        self.upstream_model = upstream_model
        self.default_thinking = default_thinking
        self.verbose = verbose
        self.locale_enforcer = locale_enforcer or LocaleEnforcer()
        self.reasoning_enforcer = reasoning_enforcer or ReasoningEnforcer(
            enabled=explicit_reasoning
        )

    # =========================================================================
    # Request
    # =========================================================================

    def transform_request(
        self, body: dict[str, Any]
    ) -> tuple[dict[str, Any], ThinkingDirective]:
        """Convert a Messages API request body into an upstream request.

        Args:
            body: Downstream request body (already validated)

        Returns:
            (upstream request dict, resolved thinking directive)
        """
        directive = resolve_directive(body, default_thinking=self.default_thinking)
        model = self.map_model(body.get("model"))

        messages: list[dict[str, Any]] = []
        system = _system_text(body.get("system"))
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend(body.get("messages") or [])

        messages = self.locale_enforcer.inject(messages)
        messages = self.reasoning_enforcer.inject(messages, directive)

        upstream: dict[str, Any] = {
            "model": model,
            "messages": self.flatten_messages(messages),
            "max_tokens": self.max_tokens_for(model, body.get("max_tokens")),
            "stream": body.get("stream") is not False,
        }

        tools = body.get("tools")
        if tools:
            upstream["tools"] = self.transform_tools(tools)
            # Upstream only supports "auto"
            upstream["tool_choice"] = "auto"

        for key in ("temperature", "top_p"):
            if body.get(key) is not None:
                upstream[key] = body[key]

        self._inject_reasoning_params(upstream, directive)
        return upstream, directive

    def map_model(self, requested: str | None) -> str:
        """Requested model names are not forwarded; the upstream model is fixed."""
        if requested and requested != self.upstream_model:
            logger.debug("Mapping requested model %s -> %s", requested, self.upstream_model)
        return self.upstream_model

    def max_tokens_for(self, model: str, requested: Any = None) -> int:
        cap = MODEL_MAX_TOKENS.get(model, DEFAULT_MAX_TOKENS)
        if isinstance(requested, int) and not isinstance(requested, bool) and requested > 0:
            return min(requested, cap)
        return cap

    def transform_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "parameters": tool.get("input_schema") or {},
                },
            }
            for tool in tools
        ]

    def flatten_messages(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Flatten block content into upstream messages.

        Tool results for a turn become "tool" messages emitted before that
        turn's text. A turn with nothing translatable becomes an empty-content
        message rather than being dropped. Thinking blocks are not replayed.
        """
        result: list[dict[str, Any]] = []

        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content")

            if not isinstance(content, list):
                result.append({"role": role, "content": content or ""})
                continue

            text_parts: list[str] = []
            tool_calls: list[dict[str, Any]] = []

            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")

                if block_type == "tool_result":
                    result.append(
                        {
                            "role": "tool",
                            "tool_call_id": block.get("tool_use_id", ""),
                            "content": _flatten_tool_result(block.get("content")),
                        }
                    )
                elif block_type == "text":
                    text_parts.append(block.get("text") or "")
                elif block_type == "tool_use":
                    tool_calls.append(
                        {
                            "id": block.get("id", ""),
                            "type": "function",
                            "function": {
                                "name": block.get("name", ""),
                                "arguments": json.dumps(block.get("input") or {}),
                            },
                        }
                    )

            if text_parts or tool_calls:
                out: dict[str, Any] = {"role": role, "content": "\n".join(text_parts)}
                if tool_calls:
                    out["tool_calls"] = tool_calls
                result.append(out)
            elif not any(
                isinstance(b, dict) and b.get("type") == "tool_result" for b in content
            ):
                result.append({"role": role, "content": ""})

        return result

    def _inject_reasoning_params(
        self, upstream: dict[str, Any], directive: ThinkingDirective
    ) -> None:
        # Sampling must be on for temperature/top_p to take effect
        upstream["do_sample"] = True

        if directive.enabled:
            upstream["reasoning"] = True
            upstream["reasoning_effort"] = directive.effort.value
            upstream["thinking"] = {"type": "enabled"}
        else:
            upstream["thinking"] = {"type": "disabled"}

    # =========================================================================
    # Buffered response
    # =========================================================================

    def transform_response(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert one complete upstream response into a downstream message.

        Raises:
            UpstreamError: If the response is malformed or has no choices.
        """
        try:
            completion = ChatCompletion.model_validate(data)
        except ValidationError as e:
            raise UpstreamError(f"Malformed upstream response: {e}", 502) from e

        choice = completion.first_choice
        if choice is None:
            raise UpstreamError("No choices in upstream response", 502)

        message = choice.message or ChatMessage()
        content: list[dict[str, Any]] = []

        if message.reasoning_content:
            content.append(
                {
                    "type": "thinking",
                    "thinking": message.reasoning_content,
                    "signature": ThinkingSignature.for_text(message.reasoning_content).to_dict(),
                }
            )
            logger.debug(
                "Reasoning content: %d chars, %d lines",
                len(message.reasoning_content),
                message.reasoning_content.count("\n") + 1,
            )

        if message.content:
            content.append({"type": "text", "text": message.content})

        for i, call in enumerate(message.tool_calls or []):
            fn = call.function
            record = ToolCallRecord(
                index=call.index,
                id=call.id or f"tool_{i}",
                name=(fn.name if fn else None) or "",
                arguments=(fn.arguments if fn else None) or "",
            )
            content.append(
                {
                    "type": "tool_use",
                    "id": record.id,
                    "name": record.name,
                    "input": record.parse_arguments(),
                }
            )

        usage = completion.usage
        response = {
            "id": completion.id or f"msg_{int(time.time() * 1000)}",
            "type": "message",
            "role": "assistant",
            "content": content,
            "model": completion.model or self.upstream_model,
            "stop_reason": map_stop_reason(choice.finish_reason),
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.input_count if usage else 0,
                "output_tokens": usage.output_count if usage else 0,
            },
        }

        if self.verbose:
            checks = self.check_response(response)
            logger.debug(
                "Transformation validation: %d/%d checks passed %s",
                sum(checks.values()),
                len(checks),
                checks,
            )
        return response

    @staticmethod
    def check_response(response: dict[str, Any]) -> dict[str, bool]:
        content = response.get("content") or []
        return {
            "has_content": bool(content),
            "has_thinking": any(b.get("type") == "thinking" for b in content),
            "has_text": any(b.get("type") == "text" for b in content),
            "valid_structure": response.get("type") == "message"
            and response.get("role") == "assistant",
            "has_usage": bool(response.get("usage")),
        }

    # =========================================================================
    # Streaming
    # =========================================================================

    def transform_delta(
        self, event: SSEEvent, acc: DeltaAccumulator
    ) -> list[DownstreamEvent]:
        """Translate one upstream SSE event, mutating ``acc``.

        Finalization fires on the first of: the done sentinel, loop
        detection, or finish_reason and usage both being known.
        """
        if acc.is_finalized:
            return []
        if event.is_done:
            return self.finalize_delta(acc)
        if not isinstance(event.data, dict):
            logger.debug("Skipping non-object SSE payload #%d", event.index)
            return []

        try:
            chunk = ChatCompletion.model_validate(event.data)
        except ValidationError as e:
            logger.warning("Skipping invalid upstream chunk #%d: %s", event.index, e)
            return []

        events: list[DownstreamEvent] = []

        if not acc.message_started:
            acc.model = chunk.model or acc.model
            events.append(self._message_start(acc))

        choice = chunk.first_choice
        delta = choice.delta if choice else None

        if delta is not None:
            if delta.role:
                acc.role = delta.role

            if delta.reasoning_content:
                events.extend(self._append_text(acc, BlockType.THINKING, delta.reasoning_content))

            if delta.content:
                events.extend(self._append_text(acc, BlockType.TEXT, delta.content))

            for call in delta.tool_calls or []:
                events.extend(self._append_tool_call(acc, call))

        if choice is not None and choice.finish_reason:
            acc.set_finish_reason(choice.finish_reason)
        if chunk.usage is not None:
            acc.update_usage(chunk.usage.input_count, chunk.usage.output_count)

        if acc.check_for_loop():
            logger.warning(
                "Loop detected: %d consecutive thinking blocks with no tool calls, "
                "forcing finalization",
                acc.loop_detection_threshold,
            )
            events.extend(self.finalize_delta(acc))
            return events

        if acc.finish_reason and acc.has_usage_received():
            events.extend(self.finalize_delta(acc))

        return events

    def finalize_delta(self, acc: DeltaAccumulator) -> list[DownstreamEvent]:
        """Close any open block, emit held tool_use blocks, then message_delta + message_stop once."""
        if acc.is_finalized:
            return []

        events: list[DownstreamEvent] = []
        if not acc.message_started:
            events.append(self._message_start(acc))

        events.extend(self._close_open_block(acc))
        events.extend(self._flush_tool_calls(acc))
        events.append(
            DownstreamEvent(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {
                        "stop_reason": map_stop_reason(acc.finish_reason),
                        "stop_sequence": None,
                    },
                    "usage": {
                        "input_tokens": acc.input_tokens,
                        "output_tokens": acc.output_tokens,
                    },
                },
            )
        )
        events.append(DownstreamEvent("message_stop", {"type": "message_stop"}))
        acc.mark_finalized()
        return events

    def _message_start(self, acc: DeltaAccumulator) -> DownstreamEvent:
        acc.mark_message_started()
        return DownstreamEvent(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": acc.message_id,
                    "type": "message",
                    "role": acc.role,
                    "content": [],
                    "model": acc.model or self.upstream_model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": acc.input_tokens, "output_tokens": 0},
                },
            },
        )

    def _append_text(
        self, acc: DeltaAccumulator, block_type: BlockType, text: str
    ) -> list[DownstreamEvent]:
        events = self._flush_tool_calls(acc)

        block = acc.open_block
        if block is None or block.type is not block_type:
            events.extend(self._close_open_block(acc))
            block = acc.start_block(block_type)
            events.append(
                DownstreamEvent(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": block.index,
                        "content_block": {"type": block_type.value, block_type.value: ""},
                    },
                )
            )

        acc.add_delta(text)
        if block_type is BlockType.THINKING:
            delta = {"type": "thinking_delta", "thinking": text}
        else:
            delta = {"type": "text_delta", "text": text}
        events.append(self._block_delta(block, delta))
        return events

    def _append_tool_call(
        self, acc: DeltaAccumulator, call: ToolCallPayload
    ) -> list[DownstreamEvent]:
        # Upstream may interleave fragments of several indices, so tool_use
        # blocks are only emitted once other content or the end of the
        # message shows the calls are complete.
        events = self._close_open_block(acc)
        fn = call.function
        acc.add_tool_call_delta(
            call.index,
            id=call.id,
            type=call.type,
            name=fn.name if fn else None,
            arguments=fn.arguments if fn else None,
        )
        return events

    def _flush_tool_calls(self, acc: DeltaAccumulator) -> list[DownstreamEvent]:
        events: list[DownstreamEvent] = []
        for record in acc.pending_tool_calls():
            events.extend(self._close_open_block(acc))
            block = acc.start_tool_block(record.index)
            events.append(
                DownstreamEvent(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": block.index,
                        "content_block": {
                            "type": "tool_use",
                            "id": record.id or f"tool_{record.index}",
                            "name": record.name,
                            "input": {},
                        },
                    },
                )
            )
            if record.arguments:
                events.append(
                    self._block_delta(
                        block, {"type": "input_json_delta", "partial_json": record.arguments}
                    )
                )
            events.extend(self._close_open_block(acc))
        return events

    def _close_open_block(self, acc: DeltaAccumulator) -> list[DownstreamEvent]:
        block = acc.open_block
        if block is None:
            return []

        events: list[DownstreamEvent] = []
        if block.type is BlockType.THINKING:
            signature = self._signature_event(block)
            if signature is not None:
                events.append(signature)

        events.append(
            DownstreamEvent(
                "content_block_stop",
                {"type": "content_block_stop", "index": block.index},
            )
        )
        acc.stop_current_block()
        return events

    def _signature_event(self, block: ContentBlock) -> DownstreamEvent | None:
        # An empty thinking block means the block closed before any content
        # arrived; a signature over "" would be meaningless.
        if block.length == 0:
            logger.debug("Skipping signature for empty thinking block %d", block.index)
            return None

        signature = ThinkingSignature.for_text(block.content)
        return self._block_delta(
            block,
            {"type": "thinking_signature_delta", "signature": signature.to_dict()},
        )

    @staticmethod
    def _block_delta(block: ContentBlock, delta: dict[str, Any]) -> DownstreamEvent:
        return DownstreamEvent(
            "content_block_delta",
            {"type": "content_block_delta", "index": block.index, "delta": delta},
        )
