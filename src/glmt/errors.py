"""Shared error definitions for the GLMT proxy.

Error type mapping from upstream status to Anthropic error type, plus the
exception hierarchy raised by the parser, accumulator, client and server.
"""

from __future__ import annotations

# Error type mapping from upstream status to Anthropic error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "api_error",
    504: "api_error",
}


class GlmtError(Exception):
    """Base class for all proxy errors."""


class ResourceLimitError(GlmtError):
    """A configured resource bound was exceeded.

    Always fatal for the request that triggered it. Truncating instead
    would silently corrupt the translated block stream.
    """


class SSEBufferOverflowError(ResourceLimitError):
    """Upstream sent more unterminated SSE data than the parser will hold."""


class BlockLimitError(ResourceLimitError):
    """Too many content blocks were opened for a single message."""


class BlockBufferOverflowError(ResourceLimitError):
    """A single content block (or tool call) grew past its size cap."""


class RequestTooLargeError(ResourceLimitError):
    """Inbound request body exceeded the configured cap."""


class BlockStateError(GlmtError):
    """Illegal content-block lifecycle transition."""


class UpstreamError(GlmtError):
    """Raised when the upstream API fails or returns an error."""

    def __init__(self, message: str, status_code: int, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def error_type(self) -> str:
        return ERROR_TYPE_MAP.get(self.status_code, "api_error")


class UpstreamTimeoutError(UpstreamError):
    """Upstream did not answer within the configured timeout."""

    def __init__(self, message: str):
        super().__init__(message, 504)
