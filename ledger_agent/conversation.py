"""Append-only conversation transcript for one thread."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from ledger_agent.results import ToolCallRequest, ToolCallResult

logger = logging.getLogger(__name__)


class Conversation:
    """System prompt plus user, assistant and tool messages, in order.

    Messages are only ever appended. ``messages()`` returns copies so
    callers cannot rewrite history. When ``transcript_path`` is set, each
    appended message is also written as one JSONL line (best-effort).
    """

    def __init__(self, system_prompt: str, *, transcript_path: str | Path | None = None) -> None:
        self.system_prompt = system_prompt
        self.transcript_path = Path(transcript_path) if transcript_path else None
        self._messages: list[dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._messages)

    def _append(self, message: dict[str, Any]) -> None:
        self._messages.append(message)
        if self.transcript_path is None:
            return
        try:
            self.transcript_path.parent.mkdir(parents=True, exist_ok=True)
            with self.transcript_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(message, default=str) + "\n")
        except OSError:
            logger.warning("Could not write transcript %s", self.transcript_path, exc_info=True)

    def add_user_turn(self, text: str) -> None:
        self._append({"role": "user", "content": text})

    def add_assistant_message(
        self, content: str | None, tool_calls: list[ToolCallRequest] | None = None
    ) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": content or ""}
        if tool_calls:
            message["tool_calls"] = [c.to_message() for c in tool_calls]
        self._append(message)

    def add_tool_outputs(self, results: Mapping[str, ToolCallResult]) -> None:
        """One tool message per call, in the order the calls were made."""
        for call_id, result in results.items():
            self._append({
                "role": "tool",
                "tool_call_id": call_id,
                "content": json.dumps(result.as_model_content(), default=str),
            })

    def add_error_note(self, text: str) -> None:
        """Tell the model its previous round failed so it can react."""
        self._append({"role": "user", "content": f"[system notice] {text}"})

    def messages(self) -> list[dict[str, Any]]:
        return [{"role": "system", "content": self.system_prompt}] + [dict(m) for m in self._messages]

    def json_after_system_prompt(self) -> str:
        return json.dumps(self._messages, default=str)

    def pretty(self) -> str:
        lines = []
        for m in self.messages():
            content = m.get("content") or ""
            if m.get("tool_calls"):
                names = ", ".join(c["function"]["name"] for c in m["tool_calls"])
                content = f"{content} [tool calls: {names}]".strip()
            lines.append(f"{m['role']}: {content}")
        return "\n".join(lines)
