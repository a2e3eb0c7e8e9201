"""Model calls and model output parsing.

``ModelIO`` drives one round for a thread: send the transcript to the
provider, parse what comes back, run any tool calls through the runner and
append the round to the transcript. ``ModelOutputParser`` decides whether
another round is needed:

- provider error: loop, with the error text noted in the transcript
- tool calls: run them, loop
- text only: deliver it, stop
- nothing at all: loop (likely a parsing failure upstream)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import litellm

from ledger_agent.config import AgentConfig
from ledger_agent.conversation import Conversation
from ledger_agent.errors import ProviderError
from ledger_agent.monitor import UsageMonitor
from ledger_agent.results import ToolCallRequest, ToolCallResult
from ledger_agent.runner import ToolCallRunner, unique_call_ids

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^\s*```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?\s*```\s*$")


def strip_json_fence(text: str) -> str:
    """Drop a leading ```json fence and a trailing ``` from model text."""
    if not text.lstrip().startswith("```"):
        return text
    return _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text, count=1), count=1)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


@dataclass
class ProviderResponse:
    content: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str | None = None


class ModelProvider(Protocol):
    model: str

    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> ProviderResponse: ...


class LiteLLMProvider:
    """Chat completions through ``litellm.acompletion``."""

    def __init__(self, config: AgentConfig | None = None, **extra: Any) -> None:
        self.config = config or AgentConfig()
        self.model = self.config.model
        self.extra = extra

    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> ProviderResponse:
        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            **self.extra,
        }
        if tools:
            call_kwargs["tools"] = tools
        try:
            response = await litellm.acompletion(**call_kwargs)
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}", original=e) from e

        if not getattr(response, "choices", None):
            raise ProviderError(f"Model {self.model} returned no choices")
        choice = response.choices[0]
        message = choice.message
        usage_raw = getattr(response, "usage", None)
        usage = {
            "prompt_tokens": getattr(usage_raw, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage_raw, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage_raw, "total_tokens", 0) or 0,
        }
        return ProviderResponse(
            content=message.content,
            tool_calls=[ToolCallRequest.from_provider(tc) for tc in (message.tool_calls or [])],
            model=getattr(response, "model", None) or self.model,
            usage=usage,
            finish_reason=choice.finish_reason,
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass
class ModelOutput:
    """What one round produced and whether the loop should go on."""

    response_content: str | None
    should_loop_model: bool
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_results: dict[str, ToolCallResult] = field(default_factory=dict)
    error: str | None = None

    @property
    def message(self) -> dict[str, Any]:
        """Assistant message for the transcript."""
        msg: dict[str, Any] = {"role": "assistant", "content": self.response_content or ""}
        if self.tool_calls:
            msg["tool_calls"] = [c.to_message() for c in self.tool_calls]
        return msg


class ModelOutputParser:
    def __init__(self, runner: ToolCallRunner) -> None:
        self.runner = runner

    async def parse(self, response: ProviderResponse | BaseException) -> ModelOutput:
        if isinstance(response, BaseException):
            text = str(response) or type(response).__name__
            return ModelOutput(response_content=None, should_loop_model=True, error=text)

        content = strip_json_fence(response.content or "").strip() or None
        if response.tool_calls:
            calls = unique_call_ids(response.tool_calls)
            results = await self.runner.run_tools(calls)
            return ModelOutput(
                response_content=content,
                should_loop_model=True,
                tool_calls=calls,
                tool_call_results=results,
            )
        return ModelOutput(response_content=content, should_loop_model=content is None)


# ---------------------------------------------------------------------------
# One round
# ---------------------------------------------------------------------------


class ModelIO:
    """Transcript, runner and intent for one conversation thread."""

    def __init__(
        self,
        conversation: Conversation,
        runner: ToolCallRunner,
        *,
        intent: str = "default",
        monitor: UsageMonitor | None = None,
    ) -> None:
        self.conversation = conversation
        self.runner = runner
        self.intent = intent
        self.monitor = monitor
        self.parser = ModelOutputParser(runner)

    async def run_model_once(self, provider: ModelProvider) -> ModelOutput:
        """Call the provider once, run tools, append the round to the transcript."""
        messages = self.conversation.messages()
        tools = await self.runner.openai_tools()
        try:
            response: ProviderResponse | BaseException = await provider.complete(messages, tools)
        except ProviderError as e:
            logger.warning("Model call failed (thread=%s): %s", self.runner.thread_id, e)
            response = e

        if self.monitor is not None and isinstance(response, ProviderResponse):
            self.monitor.record_round(
                model=response.model or provider.model,
                messages=messages,
                output_text=response.content,
                tools=tools,
                tool_calls=[c.to_message() for c in response.tool_calls],
                intent=self.intent,
            )

        output = await self.parser.parse(response)
        if output.error is not None:
            self.conversation.add_error_note(f"The previous model call failed: {output.error}")
            return output
        if output.should_loop_model and not output.tool_calls:
            logger.info("Empty model response (thread=%s); asking again", self.runner.thread_id)
            return output
        self.conversation.add_assistant_message(output.response_content, output.tool_calls)
        if output.tool_call_results:
            self.conversation.add_tool_outputs(output.tool_call_results)
        return output
