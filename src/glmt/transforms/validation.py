"""Pydantic models for validating inbound Messages requests.

These models check the request shape before it is transformed for the
upstream. All models allow extra fields so newer client parameters pass
through untouched.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


class ContentBlock(BaseModel):
    """Content block within a message.

    Can be text, tool_use, tool_result, image, thinking, or redacted_thinking type.
    The extra="allow" config ensures unknown types pass through.
    """

    model_config = ConfigDict(extra="allow")

    type: Literal["text", "tool_use", "tool_result", "image", "thinking", "redacted_thinking"] | str

    # For text blocks
    text: str | None = None

    # For tool_use blocks
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None

    # For tool_result blocks
    tool_use_id: str | None = None
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None


class Message(BaseModel):
    """A message in the conversation."""

    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    @field_validator("content", mode="before")
    @classmethod
    def validate_content(cls, v: Any) -> Any:
        """Empty content arrays are allowed and flattened to an empty message later."""
        if isinstance(v, list) and len(v) == 0:
            return ""
        return v


class ToolDefinition(BaseModel):
    """Definition of an available tool."""

    model_config = ConfigDict(extra="allow")

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("tool name cannot be empty")
        return v


class ThinkingParam(BaseModel):
    """Structured thinking control. Unknown types are tolerated and ignored later."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    budget_tokens: int | None = None


class SystemContentBlock(BaseModel):
    """Content block for system message (can be text with cache control)."""

    model_config = ConfigDict(extra="allow")

    type: Literal["text"] = "text"
    text: str
    cache_control: dict[str, str] | None = None


class MessagesRequest(BaseModel):
    """Messages API request body."""

    model_config = ConfigDict(extra="allow")

    messages: list[Message]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: list[ToolDefinition] | None = None
    stream: bool | None = None
    system: str | list[SystemContentBlock] | None = None
    thinking: ThinkingParam | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[Message]) -> list[Message]:
        if not v:
            raise ValueError("messages list cannot be empty")
        return v

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v


def validate_request(body: dict[str, Any]) -> list[str]:
    """Validate a Messages API request body.

    Args:
        body: The request body dict to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    try:
        MessagesRequest.model_validate(body)
    except ValidationError as e:
        errors: list[str] = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{loc}: {err.get('msg', 'invalid value')}" if loc else err["msg"])
        return errors
    return []
