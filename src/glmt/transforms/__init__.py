"""Format conversion between the Messages API and upstream chat completions.

This package resolves thinking directives, injects steering prompts,
validates inbound requests and translates requests, buffered responses
and streaming deltas.
"""

from .directives import resolve_directive
from .enforcers import LocaleEnforcer, ReasoningEnforcer
from .transformer import STOP_REASON_MAP, GlmtTransformer, map_stop_reason
from .types import DownstreamEvent, EffortLevel, ThinkingDirective, ThinkingSignature
from .upstream import ChatCompletion, Usage
from .validation import MessagesRequest, validate_request

__all__ = [
    # Transformer
    "GlmtTransformer",
    "STOP_REASON_MAP",
    "map_stop_reason",
    # Directives and enforcers
    "resolve_directive",
    "LocaleEnforcer",
    "ReasoningEnforcer",
    # Types
    "DownstreamEvent",
    "EffortLevel",
    "ThinkingDirective",
    "ThinkingSignature",
    # Upstream payloads
    "ChatCompletion",
    "Usage",
    # Validation
    "MessagesRequest",
    "validate_request",
]
