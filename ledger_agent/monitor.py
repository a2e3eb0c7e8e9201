"""Token and cost bookkeeping for agent rounds.

Counts are estimates: by default a character heuristic, optionally
``litellm.token_counter`` for the model's own tokenizer. The monitor never
raises into the agent loop. Any failure is logged and counted as zero.
"""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Sequence

logger = logging.getLogger(__name__)

# USD per token: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.6e-6, 2.4e-6),
    "gpt-4o": (5e-6, 20e-6),
    "deepseek-ai/DeepSeek-R1-Distill-Llama-70B": (0.1e-6, 0.4e-6),
    "deepseek-ai/DeepSeek-V3": (0.38e-6, 0.89e-6),
}
DEFAULT_COST_MODEL = "gpt-4o"

_PUNCT_RE = re.compile(r"[.,!?;:]")
_SPACE_RE = re.compile(r"\s")


def count_tokens(text: str | None) -> int:
    """Character-based token estimate, at least 1 for non-empty input."""
    if not text:
        return 0
    whitespace = len(_SPACE_RE.findall(text))
    punctuation = len(_PUNCT_RE.findall(text))
    return max(1, math.floor((len(text) - 0.5 * whitespace - 0.3 * punctuation) / 4))


def model_costs(model: str) -> tuple[float, float]:
    return MODEL_COSTS.get(model, MODEL_COSTS[DEFAULT_COST_MODEL])


@dataclass
class UsageStats:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    tools_input_tokens: int = 0
    tool_call_output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "UsageStats") -> None:
        self.calls += other.calls
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.tools_input_tokens += other.tools_input_tokens
        self.tool_call_output_tokens += other.tool_call_output_tokens
        self.cost += other.cost

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["total_tokens"] = self.total_tokens
        d["cost"] = round(self.cost, 6)
        return d


class UsageMonitor:
    """Accumulates per-round usage globally and per declared intent.

    Args:
        exact: Count with ``litellm.token_counter`` instead of the heuristic.
            Falls back to the heuristic when the tokenizer is unavailable.
    """

    def __init__(self, *, exact: bool = False) -> None:
        self.exact = exact
        self._total = UsageStats()
        self._by_intent: dict[str, UsageStats] = {}
        self._by_model: dict[str, UsageStats] = {}
        self._lock = threading.Lock()

    # -- Counting ---------------------------------------------------------

    def _count(self, text: str | None, model: str) -> int:
        if not text:
            return 0
        if self.exact:
            try:
                import litellm

                return int(litellm.token_counter(model=model, text=text))
            except Exception:
                logger.debug("Exact token count failed for %s; using estimate", model, exc_info=True)
        return count_tokens(text)

    def input_tokens(self, messages: Sequence[Mapping[str, Any]], model: str = DEFAULT_COST_MODEL) -> int:
        """Tokens sent for one call. The last message must not be the assistant's."""
        try:
            if messages and messages[-1].get("role") == "assistant":
                raise ValueError("Last message is from the assistant; nothing to answer")
            return sum(self._count(_message_text(m), model) for m in messages)
        except Exception:
            logger.warning("Input token count failed; recording 0", exc_info=True)
            return 0

    def tools_tokens(self, tools: Sequence[Mapping[str, Any]], model: str = DEFAULT_COST_MODEL) -> int:
        try:
            return self._count(json.dumps(list(tools), default=str), model) if tools else 0
        except Exception:
            logger.warning("Tool schema token count failed; recording 0", exc_info=True)
            return 0

    # -- Recording --------------------------------------------------------

    def record_round(
        self,
        *,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        output_text: str | None,
        tools: Sequence[Mapping[str, Any]] = (),
        tool_calls: Sequence[Mapping[str, Any]] = (),
        intent: str = "default",
    ) -> UsageStats:
        """Record one model call. Never raises."""
        try:
            tools_in = self.tools_tokens(tools, model)
            input_tokens = self.input_tokens(messages, model) + tools_in
            tool_call_out = self._count(json.dumps(list(tool_calls), default=str), model) if tool_calls else 0
            output_tokens = self._count(output_text, model) + tool_call_out
            in_cost, out_cost = model_costs(model)
            stats = UsageStats(
                calls=1,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                tools_input_tokens=tools_in,
                tool_call_output_tokens=tool_call_out,
                cost=round(input_tokens * in_cost + output_tokens * out_cost, 6),
            )
        except Exception:
            logger.warning("Usage recording failed; recording 0", exc_info=True)
            stats = UsageStats(calls=1)

        with self._lock:
            self._total.add(stats)
            self._by_intent.setdefault(intent, UsageStats()).add(stats)
            self._by_model.setdefault(model, UsageStats()).add(stats)
        logger.debug(
            "Usage model=%s intent=%s in=%d out=%d cost=$%.6f",
            model, intent, stats.input_tokens, stats.output_tokens, stats.cost,
        )
        return stats

    # -- Reporting --------------------------------------------------------

    def usage_statistics(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._total.to_dict(),
                "by_model": {m: s.to_dict() for m, s in self._by_model.items()},
            }

    def intent_usage(self, intent: str | None = None) -> dict[str, Any]:
        with self._lock:
            if intent is not None:
                return self._by_intent.get(intent, UsageStats()).to_dict()
            return {k: s.to_dict() for k, s in self._by_intent.items()}

    def summary_line(self) -> str:
        s = self.usage_statistics()
        return (
            f"{s['calls']} calls, {s['input_tokens']} in / {s['output_tokens']} out tokens, "
            f"${s['cost']:.6f}"
        )

    def reset(self) -> None:
        with self._lock:
            self._total = UsageStats()
            self._by_intent.clear()
            self._by_model.clear()


def _message_text(message: Mapping[str, Any]) -> str:
    content = message.get("content")
    text = content if isinstance(content, str) else json.dumps(content, default=str) if content else ""
    if message.get("tool_calls"):
        text += json.dumps(message["tool_calls"], default=str)
    return text
