"""Proxy configuration.

The host process supplies the upstream endpoint and credential through the
environment. Values resolve with priority: explicit override > environment
(after an optional dotenv file) > default.

Environment Variables:
    ANTHROPIC_BASE_URL: Upstream base URL or full /chat/completions endpoint
    ANTHROPIC_AUTH_TOKEN: Upstream bearer credential
    GLMT_MODEL: Upstream model identifier (default GLM-4.6)
    GLMT_TIMEOUT: Upstream timeout in seconds (default 120)
    GLMT_DEBUG / GLMT_DEBUG_LOG: "1" writes full payloads to GLMT_DEBUG_LOG_DIR
    GLMT_DEBUG_LOG_DIR: Debug payload directory (default ~/.glmt/logs)
    GLMT_EXPLICIT_REASONING: "1" always injects the reasoning instruction
    GLMT_DEFAULT_THINKING: "0" disables thinking unless a request asks for it
"""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

DEFAULT_UPSTREAM_URL = "https://api.z.ai/api/coding/paas/v4/chat/completions"
CHAT_COMPLETIONS_PATH = "/chat/completions"
DEFAULT_DEBUG_LOG_DIR = str(Path("~") / ".glmt" / "logs")

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def build_upstream_url(base: str) -> str:
    """Accept a base URL or a full chat-completions endpoint."""
    url = base.strip().rstrip("/")
    if not url:
        return DEFAULT_UPSTREAM_URL
    if url.endswith(CHAT_COMPLETIONS_PATH):
        return url
    return url + CHAT_COMPLETIONS_PATH


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in _TRUE_VALUES


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass
class GlmtProxyConfig:
    """Configuration for the GLMT proxy server."""

    host: str = "127.0.0.1"
    port: int = 0  # OS-assigned

    # Upstream
    upstream_url: str = DEFAULT_UPSTREAM_URL
    auth_token: str = field(default="", repr=False)
    upstream_model: str = "GLM-4.6"
    timeout: float = 120.0

    # Resource limits
    max_body_size: int = 10 * 1024 * 1024  # 10MB
    max_sse_buffer: int = 1024 * 1024  # 1MB
    max_blocks: int = 100
    max_block_buffer: int = 10 * 1024 * 1024  # 10MB
    loop_detection_threshold: int = 3

    # Thinking
    default_thinking: bool = True
    explicit_reasoning: bool = False

    # Diagnostics
    verbose: bool = False
    debug_log: bool = False
    debug_log_dir: str = DEFAULT_DEBUG_LOG_DIR

    def __post_init__(self) -> None:
        if not _is_loopback(self.host):
            raise ValueError(f"host must be a loopback address, got {self.host!r}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in 0-65535, got {self.port}")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        for name in ("max_body_size", "max_sse_buffer", "max_blocks", "max_block_buffer"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.loop_detection_threshold < 1:
            raise ValueError("loop_detection_threshold must be at least 1")
        self.upstream_url = build_upstream_url(self.upstream_url)

    @property
    def debug_dir(self) -> str | None:
        """Debug payload directory, or None when on-disk logging is off."""
        return self.debug_log_dir if self.debug_log else None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None, **overrides: Any) -> GlmtProxyConfig:
        """Build a config from the process environment.

        Args:
            env_file: Optional dotenv file loaded first (never overrides set variables).
            **overrides: Field values that win over the environment; None is ignored.
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        values: dict[str, Any] = {}

        base_url = os.environ.get("ANTHROPIC_BASE_URL")
        if base_url:
            values["upstream_url"] = base_url
        token = os.environ.get("ANTHROPIC_AUTH_TOKEN")
        if token:
            values["auth_token"] = token
        model = os.environ.get("GLMT_MODEL")
        if model:
            values["upstream_model"] = model
        timeout = os.environ.get("GLMT_TIMEOUT")
        if timeout:
            try:
                values["timeout"] = float(timeout)
            except ValueError as e:
                raise ValueError(f"GLMT_TIMEOUT must be a number, got {timeout!r}") from e

        debug = _env_flag("GLMT_DEBUG_LOG")
        if debug is None:
            debug = _env_flag("GLMT_DEBUG")
        if debug is not None:
            values["debug_log"] = debug
        debug_dir = os.environ.get("GLMT_DEBUG_LOG_DIR")
        if debug_dir:
            values["debug_log_dir"] = debug_dir

        explicit = _env_flag("GLMT_EXPLICIT_REASONING")
        if explicit is not None:
            values["explicit_reasoning"] = explicit
        default_thinking = _env_flag("GLMT_DEFAULT_THINKING")
        if default_thinking is not None:
            values["default_thinking"] = default_thinking

        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise TypeError(f"Unknown config field: {key}")
            if value is not None:
                values[key] = value

        return cls(**values)
