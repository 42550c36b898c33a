"""Tests for GlmtTransformer request, response and delta translation."""

import hashlib

import pytest

from glmt.errors import BlockStateError, UpstreamError
from glmt.streaming.accumulator import BlockType, DeltaAccumulator
from glmt.streaming.sse_parser import SSEEvent, SSEParser
from glmt.transforms.enforcers import DEFAULT_LOCALE_INSTRUCTION, DEFAULT_REASONING_PROMPTS
from glmt.transforms.transformer import (
    DEFAULT_STOP_REASON,
    STOP_REASON_MAP,
    GlmtTransformer,
    map_stop_reason,
)
from glmt.transforms.types import DownstreamEvent, EffortLevel


@pytest.fixture
def transformer():
    return GlmtTransformer()


def _chunk(delta=None, finish_reason=None, usage=None, model="GLM-4.6"):
    data = {"id": "chatcmpl-1", "model": model, "choices": []}
    if delta is not None or finish_reason is not None:
        data["choices"] = [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}]
    if usage is not None:
        data["usage"] = usage
    return data


def _feed(transformer, acc, chunks):
    events = []
    for i, data in enumerate(chunks, start=1):
        event = SSEEvent(event="message", data=data, index=i)
        events.extend(transformer.transform_delta(event, acc))
    return events


def _shape(events):
    """Reduce events to (name, block type or delta type) pairs."""
    shape = []
    for e in events:
        if e.event == "content_block_start":
            shape.append((e.event, e.data["content_block"]["type"]))
        elif e.event == "content_block_delta":
            shape.append((e.event, e.data["delta"]["type"]))
        else:
            shape.append((e.event, None))
    return shape


class TestTransformRequest:
    """Tests for transform_request()."""

    def test_pins_model_and_caps_max_tokens(self, transformer):
        """Requested model names are replaced and max_tokens is capped."""
        body = {
            "model": "claude-sonnet-4",
            "max_tokens": 500000,
            "messages": [{"role": "user", "content": "hi"}],
        }

        upstream, _ = transformer.transform_request(body)

        assert upstream["model"] == "GLM-4.6"
        assert upstream["max_tokens"] == 128000

    def test_keeps_smaller_max_tokens(self, transformer):
        """A requested max_tokens below the cap is kept."""
        body = {"max_tokens": 1024, "messages": [{"role": "user", "content": "hi"}]}

        upstream, _ = transformer.transform_request(body)

        assert upstream["max_tokens"] == 1024

    def test_per_model_cap(self):
        """Each upstream model has its own output cap."""
        transformer = GlmtTransformer(upstream_model="GLM-4.5-air")

        upstream, _ = transformer.transform_request(
            {"messages": [{"role": "user", "content": "hi"}]}
        )

        assert upstream["max_tokens"] == 16000

    def test_stream_defaults_on(self, transformer):
        """Streaming is requested unless the client explicitly disables it."""
        upstream, _ = transformer.transform_request(
            {"messages": [{"role": "user", "content": "hi"}]}
        )
        buffered, _ = transformer.transform_request(
            {"stream": False, "messages": [{"role": "user", "content": "hi"}]}
        )

        assert upstream["stream"] is True
        assert buffered["stream"] is False

    def test_locale_instruction_always_injected(self, transformer):
        """The locale instruction is added even with thinking disabled."""
        body = {
            "system": "Be helpful.",
            "thinking": {"type": "disabled"},
            "messages": [{"role": "user", "content": "hi"}],
        }

        upstream, directive = transformer.transform_request(body)

        assert directive.enabled is False
        assert upstream["messages"][0] == {
            "role": "system",
            "content": f"{DEFAULT_LOCALE_INSTRUCTION}\n\nBe helpful.",
        }
        assert upstream["thinking"] == {"type": "disabled"}
        assert "reasoning" not in upstream

    def test_reasoning_prompt_and_params_when_enabled(self, transformer):
        """An enabled directive injects the prompt and the upstream reasoning params."""
        body = {"messages": [{"role": "user", "content": "ultrathink: why is the sky blue?"}]}

        upstream, directive = transformer.transform_request(body)

        assert directive.effort is EffortLevel.MAX
        system = upstream["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith(DEFAULT_REASONING_PROMPTS[EffortLevel.MAX])
        assert DEFAULT_LOCALE_INSTRUCTION in system["content"]
        assert upstream["reasoning"] is True
        assert upstream["reasoning_effort"] == "max"
        assert upstream["thinking"] == {"type": "enabled"}
        assert upstream["do_sample"] is True

    def test_system_blocks_are_joined(self, transformer):
        """A block-form system prompt becomes one string."""
        body = {
            "system": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}],
            "thinking": {"type": "disabled"},
            "messages": [{"role": "user", "content": "hi"}],
        }

        upstream, _ = transformer.transform_request(body)

        assert upstream["messages"][0]["content"].endswith("one\ntwo")

    def test_tools_use_auto_choice(self, transformer):
        """Tools become function definitions and tool_choice is always auto."""
        body = {
            "messages": [{"role": "user", "content": "weather?"}],
            "tools": [
                {
                    "name": "get_weather",
                    "description": "Look up weather",
                    "input_schema": {"type": "object", "properties": {"city": {"type": "string"}}},
                }
            ],
            "tool_choice": {"type": "tool", "name": "get_weather"},
        }

        upstream, _ = transformer.transform_request(body)

        assert upstream["tools"] == [
            {
                "type": "function",
                "function": {
                    "name": "get_weather",
                    "description": "Look up weather",
                    "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
                },
            }
        ]
        assert upstream["tool_choice"] == "auto"

    def test_sampling_params_forwarded(self, transformer):
        """temperature and top_p pass through when given."""
        body = {
            "temperature": 0.2,
            "top_p": 0.9,
            "messages": [{"role": "user", "content": "hi"}],
        }

        upstream, _ = transformer.transform_request(body)

        assert upstream["temperature"] == 0.2
        assert upstream["top_p"] == 0.9


class TestFlattenMessages:
    """Tests for flatten_messages()."""

    def test_tool_round_trip_conversation(self, transformer):
        """tool_use becomes tool_calls and tool_result becomes a tool message first."""
        messages = [
            {"role": "user", "content": "read it"},
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "I should read", "signature": "x"},
                    {"type": "text", "text": "Reading."},
                    {"type": "tool_use", "id": "call_1", "name": "read", "input": {"p": "/a"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "call_1", "content": "file body"},
                    {"type": "text", "text": "thanks"},
                ],
            },
        ]

        result = transformer.flatten_messages(messages)

        assert result == [
            {"role": "user", "content": "read it"},
            {
                "role": "assistant",
                "content": "Reading.",
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "read", "arguments": '{"p": "/a"}'},
                    }
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "file body"},
            {"role": "user", "content": "thanks"},
        ]

    def test_tool_result_blocks_are_flattened(self, transformer):
        """Block-form tool results are joined to text."""
        messages = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "t1",
                        "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
                    }
                ],
            }
        ]

        assert transformer.flatten_messages(messages) == [
            {"role": "tool", "tool_call_id": "t1", "content": "a\nb"}
        ]

    def test_untranslatable_turn_becomes_empty_message(self, transformer):
        """A turn with only thinking blocks is kept as an empty message."""
        messages = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": [{"type": "thinking", "thinking": "hmm"}]},
        ]

        result = transformer.flatten_messages(messages)

        assert result[1] == {"role": "assistant", "content": ""}


class TestStopReasons:
    """Tests for map_stop_reason()."""

    @pytest.mark.parametrize("reason,expected", sorted(STOP_REASON_MAP.items()))
    def test_known_reasons(self, reason, expected):
        assert map_stop_reason(reason) == expected

    @pytest.mark.parametrize("reason", [None, "", "network_error", "sensitive"])
    def test_unknown_reasons_default(self, reason):
        """Every input maps to something."""
        assert map_stop_reason(reason) == DEFAULT_STOP_REASON == "end_turn"


class TestTransformResponse:
    """Tests for buffered transform_response()."""

    def _response(self):
        return {
            "id": "chatcmpl-42",
            "model": "GLM-4.6",
            "choices": [
                {
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "reasoning_content": "because X",
                        "content": "Answer: Y",
                    },
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 11, "completion_tokens": 7},
        }

    def test_thinking_then_text(self, transformer):
        """Reasoning becomes a signed thinking block ahead of the text."""
        message = transformer.transform_response(self._response())

        assert [b["type"] for b in message["content"]] == ["thinking", "text"]
        assert message["content"][0]["thinking"] == "because X"
        assert message["content"][1]["text"] == "Answer: Y"
        assert message["stop_reason"] == "end_turn"
        assert message["stop_sequence"] is None
        assert message["usage"] == {"input_tokens": 11, "output_tokens": 7}
        assert message["role"] == "assistant"
        assert message["type"] == "message"

    def test_signature_hash_is_stable(self, transformer):
        """The same thinking text always yields the same hash and length."""
        first = transformer.transform_response(self._response())["content"][0]["signature"]
        second = transformer.transform_response(self._response())["content"][0]["signature"]

        expected = hashlib.sha256(b"because X").hexdigest()[:16]
        assert first["hash"] == second["hash"] == expected
        assert first["length"] == len("because X")
        assert first["type"] == "thinking_signature"

    def test_tool_calls(self, transformer):
        """Tool calls become tool_use blocks with parsed input."""
        data = {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {"name": "ls", "arguments": '{"dir": "/"}'},
                            },
                            {"function": {"name": "bad", "arguments": "{oops"}},
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }

        message = transformer.transform_response(data)

        assert message["content"] == [
            {"type": "tool_use", "id": "call_9", "name": "ls", "input": {"dir": "/"}},
            {
                "type": "tool_use",
                "id": "tool_1",
                "name": "bad",
                "input": {"_error": "Invalid JSON", "_raw": "{oops"},
            },
        ]
        assert message["stop_reason"] == "tool_use"
        assert message["usage"] == {"input_tokens": 0, "output_tokens": 0}

    def test_no_choices_raises(self, transformer):
        """A response without choices is an upstream error."""
        with pytest.raises(UpstreamError) as exc_info:
            transformer.transform_response({"id": "x", "choices": []})

        assert exc_info.value.status_code == 502

    def test_malformed_response_raises(self, transformer):
        """Wrongly-typed fields are rejected."""
        with pytest.raises(UpstreamError):
            transformer.transform_response({"choices": "nope"})


class TestTransformDelta:
    """Tests for streaming transform_delta()."""

    def test_reasoning_then_text_sequence(self, transformer):
        """The canonical thinking -> text stream produces the exact event sequence."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"role": "assistant", "reasoning_content": "a"}),
            _chunk({"reasoning_content": "b"}),
            _chunk({"content": "c"}),
            _chunk({}, finish_reason="stop", usage={"prompt_tokens": 5, "completion_tokens": 3}),
        ]

        events = _feed(transformer, acc, chunks)

        assert _shape(events) == [
            ("message_start", None),
            ("content_block_start", "thinking"),
            ("content_block_delta", "thinking_delta"),
            ("content_block_delta", "thinking_delta"),
            ("content_block_delta", "thinking_signature_delta"),
            ("content_block_stop", None),
            ("content_block_start", "text"),
            ("content_block_delta", "text_delta"),
            ("content_block_stop", None),
            ("message_delta", None),
            ("message_stop", None),
        ]
        assert [e.data.get("index") for e in events[1:9]] == [0, 0, 0, 0, 0, 1, 1, 1]
        assert events[7].data["delta"]["text"] == "c"
        signature = events[4].data["delta"]["signature"]
        assert signature["hash"] == hashlib.sha256(b"ab").hexdigest()[:16]
        assert signature["length"] == 2
        assert events[9].data["delta"] == {"stop_reason": "end_turn", "stop_sequence": None}
        assert events[9].data["usage"] == {"input_tokens": 5, "output_tokens": 3}
        assert acc.is_finalized

    def test_usage_before_finish_reason(self, transformer):
        """Finalization waits until both usage and finish_reason are known."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"content": "hi"}),
            _chunk(usage={"prompt_tokens": 1, "completion_tokens": 1}),
        ]

        events = _feed(transformer, acc, chunks)
        assert not acc.is_finalized
        assert "message_stop" not in [e.event for e in events]

        events = _feed(transformer, acc, [_chunk({}, finish_reason="length")])

        assert acc.is_finalized
        assert events[-2].data["delta"]["stop_reason"] == "max_tokens"

    def test_done_sentinel_finalizes(self, transformer):
        """[DONE] finalizes a stream that never reported usage."""
        acc = DeltaAccumulator()
        _feed(transformer, acc, [_chunk({"content": "hi"})])

        events = transformer.transform_delta(SSEEvent(event="done", data=None, index=2), acc)

        assert [e.event for e in events] == ["content_block_stop", "message_delta", "message_stop"]

    def test_events_after_finalization_are_ignored(self, transformer):
        """Nothing is emitted after message_stop."""
        acc = DeltaAccumulator()
        _feed(
            transformer,
            acc,
            [_chunk({"content": "x"}, finish_reason="stop", usage={"prompt_tokens": 1})],
        )

        late = _feed(transformer, acc, [_chunk({"content": "late"})])
        done = transformer.transform_delta(SSEEvent(event="done", data=None), acc)

        assert late == []
        assert done == []

    def test_finalize_twice(self, transformer):
        """finalize_delta emits message_stop exactly once."""
        acc = DeltaAccumulator()

        first = transformer.finalize_delta(acc)
        second = transformer.finalize_delta(acc)

        assert [e.event for e in first] == ["message_start", "message_delta", "message_stop"]
        assert second == []

    def test_empty_thinking_block_has_no_signature(self, transformer):
        """A thinking block closed with no content gets no signature event."""
        acc = DeltaAccumulator()
        acc.mark_message_started()
        acc.start_block(BlockType.THINKING)

        events = transformer.finalize_delta(acc)

        assert [e.event for e in events] == ["content_block_stop", "message_delta", "message_stop"]

    def test_tool_call_stream(self, transformer):
        """Tool call fragments stream as input_json_delta and parse at close."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"content": "Let me check."}),
            _chunk(
                {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "get_weather", "arguments": ""},
                        }
                    ]
                }
            ),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"city": '}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"Paris"}'}}]}),
            _chunk(
                {},
                finish_reason="tool_calls",
                usage={"prompt_tokens": 20, "completion_tokens": 9},
            ),
        ]

        events = _feed(transformer, acc, chunks)

        assert _shape(events) == [
            ("message_start", None),
            ("content_block_start", "text"),
            ("content_block_delta", "text_delta"),
            ("content_block_stop", None),
            ("content_block_start", "tool_use"),
            ("content_block_delta", "input_json_delta"),
            ("content_block_stop", None),
            ("message_delta", None),
            ("message_stop", None),
        ]
        start = events[4].data["content_block"]
        assert start == {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {}}
        assert events[5].data["delta"]["partial_json"] == '{"city": "Paris"}'
        assert acc.get_tool_call(0).input == {"city": "Paris"}
        assert events[7].data["delta"]["stop_reason"] == "tool_use"

    def test_interleaved_tool_calls_keep_their_arguments(self, transformer):
        """Fragments of two calls arriving interleaved each land in their own block."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "f"}}]}),
            _chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "g"}}]}),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"x": 1}'}}]}),
            _chunk({"tool_calls": [{"index": 1, "function": {"arguments": '{"y": 2}'}}]}),
            _chunk(
                {},
                finish_reason="tool_calls",
                usage={"prompt_tokens": 5, "completion_tokens": 5},
            ),
        ]

        events = _feed(transformer, acc, chunks)

        assert _shape(events) == [
            ("message_start", None),
            ("content_block_start", "tool_use"),
            ("content_block_delta", "input_json_delta"),
            ("content_block_stop", None),
            ("content_block_start", "tool_use"),
            ("content_block_delta", "input_json_delta"),
            ("content_block_stop", None),
            ("message_delta", None),
            ("message_stop", None),
        ]
        arguments = {
            e.data["index"]: e.data["delta"]["partial_json"]
            for e in events
            if e.event == "content_block_delta"
        }
        assert arguments == {0: '{"x": 1}', 1: '{"y": 2}'}
        assert events[1].data["content_block"]["id"] == "call_a"
        assert events[4].data["content_block"]["id"] == "call_b"
        assert acc.get_tool_call(0).input == {"x": 1}
        assert acc.get_tool_call(1).input == {"y": 2}

    def test_tool_blocks_are_emitted_before_following_text(self, transformer):
        """Text after tool fragments closes out the pending tool_use blocks first."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "f"}}]}),
            _chunk({"content": "done"}),
        ]

        events = _feed(transformer, acc, chunks)

        assert _shape(events) == [
            ("message_start", None),
            ("content_block_start", "tool_use"),
            ("content_block_stop", None),
            ("content_block_start", "text"),
            ("content_block_delta", "text_delta"),
        ]
        assert acc.get_tool_call(0).input == {}

    def test_fragment_after_tool_block_emitted_raises(self, transformer):
        """Arguments for an already emitted tool call fail the stream instead of vanishing."""
        acc = DeltaAccumulator()
        chunks = [
            _chunk({"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "f"}}]}),
            _chunk({"content": "done"}),
        ]
        _feed(transformer, acc, chunks)

        with pytest.raises(BlockStateError):
            _feed(
                transformer,
                acc,
                [_chunk({"tool_calls": [{"index": 0, "function": {"arguments": "{}"}}]})],
            )

    def test_loop_detection_forces_finalization(self, transformer):
        """A run of thinking blocks with no tool calls ends the message early."""
        acc = DeltaAccumulator(loop_detection_threshold=3)
        acc.mark_message_started()
        for text in ("one", "two"):
            acc.start_block(BlockType.THINKING)
            acc.add_delta(text)
            acc.stop_current_block()

        events = _feed(transformer, acc, [_chunk({"reasoning_content": "three"})])

        assert _shape(events) == [
            ("content_block_start", "thinking"),
            ("content_block_delta", "thinking_delta"),
            ("content_block_delta", "thinking_signature_delta"),
            ("content_block_stop", None),
            ("message_delta", None),
            ("message_stop", None),
        ]
        assert acc.loop_detected
        assert acc.is_finalized

    def test_loop_finalization_keeps_finish_reason_and_usage(self, transformer):
        """A chunk that trips loop detection still contributes its finish reason and usage."""
        acc = DeltaAccumulator(loop_detection_threshold=3)
        acc.mark_message_started()
        for text in ("one", "two"):
            acc.start_block(BlockType.THINKING)
            acc.add_delta(text)
            acc.stop_current_block()

        events = _feed(
            transformer,
            acc,
            [
                _chunk(
                    {"reasoning_content": "three"},
                    finish_reason="length",
                    usage={"prompt_tokens": 7, "completion_tokens": 30},
                )
            ],
        )

        message_delta = next(e for e in events if e.event == "message_delta")
        assert acc.loop_detected
        assert message_delta.data["delta"]["stop_reason"] == "max_tokens"
        assert message_delta.data["usage"] == {"input_tokens": 7, "output_tokens": 30}

    def test_invalid_chunk_is_skipped(self, transformer):
        """A chunk that fails validation produces no events."""
        acc = DeltaAccumulator()

        events = transformer.transform_delta(
            SSEEvent(event="message", data={"choices": "bad"}, index=1), acc
        )

        assert events == []
        assert not acc.message_started

    def test_chunk_boundaries_do_not_change_output(self, transformer):
        """Parsing the same bytes at any split gives the same downstream events."""
        raw = (
            b'data: {"choices":[{"delta":{"reasoning_content":"r\xc3\xa9"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"ok"}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}],'
            b'"usage":{"prompt_tokens":2,"completion_tokens":2}}\n\n'
            b"data: [DONE]\n\n"
        )

        def run(size):
            parser, acc, out = SSEParser(), DeltaAccumulator(), []
            for i in range(0, len(raw), size):
                for event in parser.parse(raw[i : i + size]):
                    out.extend(transformer.transform_delta(event, acc))
            return [(e.event, e.data.get("delta")) for e in out if e.event != "message_start"]

        whole = run(len(raw))
        for size in (1, 3, 11):
            split = run(size)
            # Signature timestamps can differ between runs
            for a, b in zip(whole, split):
                if isinstance(a[1], dict) and "signature" in a[1]:
                    assert a[1]["signature"]["hash"] == b[1]["signature"]["hash"]
                else:
                    assert a == b
            assert len(whole) == len(split)


def test_downstream_event_sse_frame():
    """Events serialize as compact event/data frames."""
    event = DownstreamEvent("message_stop", {"type": "message_stop"})

    assert event.to_sse() == b'event: message_stop\ndata: {"type":"message_stop"}\n\n'
