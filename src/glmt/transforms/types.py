"""Types shared by the transformer, the accumulator and the proxy.

These are the translation-side value objects: the resolved thinking
directive, thinking signatures and the downstream SSE events the
proxy writes back to the client. Block types live with the accumulator
in glmt.streaming.accumulator.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal


class EffortLevel(str, Enum):
    """How elaborate the injected reasoning instruction is."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAX = "max"


DirectiveSource = Literal["structured", "inline", "keyword", "default"]


@dataclass(frozen=True)
class ThinkingDirective:
    """Resolved thinking control for one request."""

    enabled: bool
    effort: EffortLevel = EffortLevel.MEDIUM
    source: DirectiveSource = "default"


@dataclass(frozen=True)
class ThinkingSignature:
    """Fingerprint of a thinking block's final text.

    The hash and length depend only on the text; the timestamp records
    when the block closed.
    """

    hash: str
    length: int
    timestamp: int

    @classmethod
    def for_text(cls, thinking: str) -> ThinkingSignature:
        digest = hashlib.sha256(thinking.encode("utf-8")).hexdigest()[:16]
        return cls(hash=digest, length=len(thinking), timestamp=int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "thinking_signature",
            "hash": self.hash,
            "length": self.length,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class DownstreamEvent:
    """A single Anthropic-format SSE event."""

    event: str
    data: dict[str, Any]

    def to_sse(self) -> bytes:
        """Format as an SSE frame ready to write to the client."""
        json_data = json.dumps(self.data, separators=(",", ":"))
        return f"event: {self.event}\ndata: {json_data}\n\n".encode()
