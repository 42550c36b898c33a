"""Pydantic models for upstream chat-completion payloads.

Every field the upstream may or may not send is an explicit optional, so
the transformer checks presence instead of probing loose dicts. The same
``ChatCompletion`` model validates buffered responses (``message``) and
streaming chunks (``delta``). Unknown fields are ignored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class FunctionFragment(BaseModel):
    """Function name/arguments. In a stream, each is a substring to concatenate."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    arguments: str | None = None


class ToolCallPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    id: str | None = None
    type: str | None = None
    function: FunctionFragment | None = None


class ChatMessage(BaseModel):
    """A complete message (buffered) or an incremental delta (streaming)."""

    model_config = ConfigDict(extra="ignore")

    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallPayload] | None = None


class Choice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: ChatMessage | None = None
    delta: ChatMessage | None = None
    finish_reason: str | None = None


class Usage(BaseModel):
    """Token usage. Accepts OpenAI and Anthropic field names."""

    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def input_count(self) -> int:
        return self.prompt_tokens or self.input_tokens or 0

    @property
    def output_count(self) -> int:
        return self.completion_tokens or self.output_tokens or 0


class ChatCompletion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    model: str | None = None
    choices: list[Choice] | None = None
    usage: Usage | None = None

    @property
    def first_choice(self) -> Choice | None:
        return self.choices[0] if self.choices else None
