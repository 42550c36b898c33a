"""Thinking directive resolution.

Three signals can ask for (or against) reasoning on a request. They are
checked in strict precedence order and the first one present decides:

1. the structured ``thinking`` parameter (``{"type": "enabled"|"disabled"}``)
2. inline control tags in user text: ``<Thinking:On|Off>`` and
   ``<Effort:Low|Medium|High|Max>``
3. "think" keywords in user text: ultrathink > think harder > think hard > think

When none is present the configured default applies.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .types import EffortLevel, ThinkingDirective

logger = logging.getLogger(__name__)

THINKING_TAG = re.compile(r"<Thinking:(On|Off)>", re.IGNORECASE)
EFFORT_TAG = re.compile(r"<Effort:(Low|Medium|High|Max)>", re.IGNORECASE)

# Checked in order; first match wins
THINK_KEYWORDS: list[tuple[re.Pattern[str], EffortLevel]] = [
    (re.compile(r"\bultrathink\b", re.IGNORECASE), EffortLevel.MAX),
    (re.compile(r"\bthink\s+harder\b", re.IGNORECASE), EffortLevel.HIGH),
    (re.compile(r"\bthink\s+hard\b", re.IGNORECASE), EffortLevel.MEDIUM),
    (re.compile(r"\bthink\b", re.IGNORECASE), EffortLevel.LOW),
]


def user_texts(messages: list[dict[str, Any]]) -> list[str]:
    """Collect the text of every user turn (string content and text blocks)."""
    texts: list[str] = []
    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            texts.append(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    texts.append(block.get("text") or "")
    return texts


def _from_structured(thinking: Any) -> ThinkingDirective | None:
    if not isinstance(thinking, dict):
        return None

    kind = thinking.get("type")
    if kind == "enabled":
        return ThinkingDirective(enabled=True, source="structured")
    if kind == "disabled":
        return ThinkingDirective(enabled=False, source="structured")
    if kind is None:
        return None

    logger.warning("Unknown thinking type %r, ignoring structured parameter", kind)
    return None


def _from_tags(texts: list[str], default_thinking: bool) -> ThinkingDirective | None:
    enabled: bool | None = None
    effort: EffortLevel | None = None

    # Later turns override earlier ones
    for text in texts:
        for match in THINKING_TAG.finditer(text):
            enabled = match.group(1).lower() == "on"
        for match in EFFORT_TAG.finditer(text):
            effort = EffortLevel(match.group(1).lower())

    if enabled is None and effort is None:
        return None

    return ThinkingDirective(
        enabled=default_thinking if enabled is None else enabled,
        effort=effort or EffortLevel.MEDIUM,
        source="inline",
    )


def _from_keywords(texts: list[str]) -> ThinkingDirective | None:
    joined = " ".join(texts)
    for pattern, effort in THINK_KEYWORDS:
        if pattern.search(joined):
            return ThinkingDirective(enabled=True, effort=effort, source="keyword")
    return None


def resolve_directive(
    body: dict[str, Any],
    default_thinking: bool = True,
) -> ThinkingDirective:
    """Resolve the thinking directive for one downstream request body."""
    texts = user_texts(body.get("messages") or [])

    directive = (
        _from_structured(body.get("thinking"))
        or _from_tags(texts, default_thinking)
        or _from_keywords(texts)
        or ThinkingDirective(enabled=default_thinking)
    )
    logger.debug(
        "Thinking directive: enabled=%s effort=%s source=%s",
        directive.enabled,
        directive.effort.value,
        directive.source,
    )
    return directive
