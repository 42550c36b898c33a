"""Prompt enforcers that steer the upstream model.

Both enforcers are pure: they deep-copy the message list and return the
rewritten copy. Instructions are prepended to the system message (string
content gets ``"{instruction}\\n\\n{content}"``, block content gets a new
leading text block).
"""

from __future__ import annotations

import copy
from typing import Any

from .types import EffortLevel, ThinkingDirective

DEFAULT_LOCALE_INSTRUCTION = (
    "CRITICAL: You MUST respond in English only, regardless of the input "
    "language or context. This is a strict requirement."
)

DEFAULT_REASONING_PROMPTS: dict[EffortLevel, str] = {
    EffortLevel.LOW: """You are an expert reasoning model using GLM-4.6 architecture.

CRITICAL: Before answering, write 2-3 sentences of reasoning in <reasoning_content> tags.

OUTPUT FORMAT:
<reasoning_content>
(Brief analysis: what is the problem? what's the approach?)
</reasoning_content>

(Write your final answer here)""",
    EffortLevel.MEDIUM: """You are an expert reasoning model using GLM-4.6 architecture.

CRITICAL REQUIREMENTS:
1. Always think step-by-step before answering
2. Write your reasoning process explicitly in <reasoning_content> tags
3. Never skip your chain of thought, even for simple problems

OUTPUT FORMAT:
<reasoning_content>
(Write your detailed thinking here: analyze the problem, explore approaches,
evaluate trade-offs, and arrive at a conclusion)
</reasoning_content>

(Write your final answer here based on your reasoning above)""",
    EffortLevel.HIGH: """You are an expert reasoning model using GLM-4.6 architecture.

CRITICAL REQUIREMENTS:
1. Think deeply and systematically before answering
2. Write comprehensive reasoning in <reasoning_content> tags
3. Explore multiple approaches and evaluate trade-offs
4. Show all steps in your problem-solving process

OUTPUT FORMAT:
<reasoning_content>
(Write exhaustive analysis here:
 - Problem decomposition
 - Multiple approach exploration
 - Trade-off analysis for each approach
 - Edge case consideration
 - Final conclusion with justification)
</reasoning_content>

(Write your final answer here based on your systematic reasoning above)""",
    EffortLevel.MAX: """You are an expert reasoning model using GLM-4.6 architecture.

CRITICAL REQUIREMENTS:
1. Think exhaustively from first principles
2. Write extremely detailed reasoning in <reasoning_content> tags
3. Analyze ALL possible angles, approaches, and edge cases
4. Challenge your own assumptions and explore alternatives
5. Provide rigorous justification for every claim

OUTPUT FORMAT:
<reasoning_content>
(Write comprehensive analysis here:
 - First principles breakdown
 - Exhaustive approach enumeration
 - Comparative analysis of all approaches
 - Edge case and failure mode analysis
 - Assumption validation
 - Counter-argument consideration
 - Final conclusion with rigorous justification)
</reasoning_content>

(Write your final answer here based on your exhaustive reasoning above)""",
}


def prepend_to_system(
    messages: list[dict[str, Any]],
    instruction: str,
    create: bool = True,
) -> list[dict[str, Any]]:
    """Return a copy of ``messages`` with ``instruction`` leading the system message.

    With ``create=False`` and no system message, the instruction goes to the
    first user message instead.
    """
    result = copy.deepcopy(messages)

    target = next((m for m in result if m.get("role") == "system"), None)
    if target is None and create:
        result.insert(0, {"role": "system", "content": instruction})
        return result
    if target is None:
        target = next((m for m in result if m.get("role") == "user"), None)
    if target is None:
        return result

    content = target.get("content")
    if isinstance(content, list):
        content.insert(0, {"type": "text", "text": instruction})
    elif content:
        target["content"] = f"{instruction}\n\n{content}"
    else:
        target["content"] = instruction
    return result


class LocaleEnforcer:
    """Always instruct the model to answer in English."""

    def __init__(self, instruction: str = DEFAULT_LOCALE_INSTRUCTION):
        self.instruction = instruction

    def inject(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return prepend_to_system(messages, self.instruction)


class ReasoningEnforcer:
    """Ask the model to write its reasoning inside ``<reasoning_content>`` tags.

    The upstream reasoning parameter alone is not reliably honored, so an
    effort-calibrated instruction is injected whenever the enforcer is
    forced on or the request's directive enables thinking.
    """

    def __init__(
        self,
        enabled: bool = False,
        prompts: dict[EffortLevel, str] | None = None,
    ):
        self.enabled = enabled
        self.prompts = prompts or DEFAULT_REASONING_PROMPTS

    def select_prompt(self, effort: EffortLevel) -> str:
        return self.prompts.get(effort) or self.prompts[EffortLevel.MEDIUM]

    def inject(
        self,
        messages: list[dict[str, Any]],
        directive: ThinkingDirective,
    ) -> list[dict[str, Any]]:
        if not (self.enabled or directive.enabled):
            return copy.deepcopy(messages)
        return prepend_to_system(messages, self.select_prompt(directive.effort))
