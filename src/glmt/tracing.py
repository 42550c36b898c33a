"""Request tracing and on-disk debug payloads.

Trace IDs are human-readable so a request can be found in the logs and in
the debug directory at a glance.

Debug files are saved to: {debug_dir}/logs/{session}/{trace_id}/

    1_anthropic_request.json     inbound request body
    2_upstream_request.json      transformed upstream request
    3_upstream_response.json     buffered upstream response
    3_upstream_chunks.json       streaming: every upstream SSE payload
    4_anthropic_response.json    buffered: translated response
    4_anthropic_events.json      streaming: every downstream event

These files hold full chat content and sit next to the credential in the
process environment; they are only written when debug logging is enabled.
"""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


def _context_words(body: dict[str, Any]) -> str:
    """First few words of the last user turn that carries text."""
    for msg in reversed(body.get("messages") or []):
        if not isinstance(msg, dict) or msg.get("role") != "user":
            continue
        content = msg.get("content")
        text = ""
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            # Skip turns that only carry tool results
            texts = [
                b.get("text") or ""
                for b in content
                if isinstance(b, dict) and b.get("type") == "text"
            ]
            text = next((t for t in texts if t.strip()), "")
        words = [w[:8] for w in text.split() if not w.startswith("<")][:3]
        if words:
            return _UNSAFE_CHARS.sub("", "_".join(words))[:20] or "request"
    return "request"


class RequestTracer:
    """Generates trace IDs and writes debug payloads for one proxy process.

    Example:
        tracer = RequestTracer(debug_dir="~/.glmt/logs")
        trace_id = tracer.generate_trace_id(body)
        tracer.save_debug(trace_id, "1_anthropic_request.json", body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self._request_counter = 0
        self._session_id: str | None = None
        self._debug_dir_config = Path(debug_dir).expanduser() if debug_dir else None

    @property
    def enabled(self) -> bool:
        return self._debug_dir_config is not None

    @property
    def debug_dir(self) -> Path | None:
        """Session directory, named on first access."""
        if self._debug_dir_config is None:
            return None
        if self._session_id is None:
            self._session_id = time.strftime("%Y-%m-%d_%H-%M-%S")
        return self._debug_dir_config / "logs" / self._session_id

    def generate_trace_id(self, body: dict[str, Any]) -> str:
        """Generate a trace ID with sequence number and context.

        Format: {counter}_{hhmmss}_{num_messages}msgs_{context}
        Example: 00001_031333_1msgs_Please_write_a
        """
        self._request_counter += 1
        msg_count = len(body.get("messages") or [])
        return (
            f"{self._request_counter:05d}_{time.strftime('%H%M%S')}_"
            f"{msg_count}msgs_{_context_words(body)}"
        )

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Write ``data`` as pretty JSON. Failures are logged, never raised."""
        debug_dir = self.debug_dir
        if debug_dir is None:
            return

        try:
            trace_path = debug_dir / trace_id
            trace_path.mkdir(parents=True, exist_ok=True)
            filepath = trace_path / filename
            filepath.write_text(json.dumps(data, indent=2, default=str) + "\n")
            logger.debug("[%s] Saved debug file: %s", trace_id, filepath)
        except OSError as e:
            logger.warning("[%s] Failed to save debug file %s: %s", trace_id, filename, e)

    def log_request(
        self,
        trace_id: str,
        method: str,
        path: str,
        body_size: int,
        msg_count: int = 0,
    ) -> None:
        logger.info(
            "[%s] request_start: method=%s, path=%s, body_size=%d, msg_count=%d",
            trace_id,
            method,
            path,
            body_size,
            msg_count,
        )

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        mode: str = "buffered",
        tokens_in: int = 0,
        tokens_out: int = 0,
        error: str | None = None,
    ) -> None:
        """Log a request's outcome.

        Args:
            trace_id: Trace ID for this request.
            status_code: HTTP status code sent downstream.
            duration_s: Request duration in seconds.
            mode: "streaming" or "buffered" (after any fallback).
            tokens_in: Input tokens reported by the upstream.
            tokens_out: Output tokens reported by the upstream.
            error: Error message if the request failed.
        """
        if error:
            logger.warning(
                "[%s] request_failed: status=%d, mode=%s, error=%s (%.2fs)",
                trace_id,
                status_code,
                mode,
                error[:200],
                duration_s,
            )
        else:
            logger.info(
                "[%s] request_complete: status=%d, mode=%s, tokens_in=%d, tokens_out=%d (%.2fs)",
                trace_id,
                status_code,
                mode,
                tokens_in,
                tokens_out,
                duration_s,
            )
