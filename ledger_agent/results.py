"""Tool call results and tool descriptors.

``ToolCallResult`` is the one value every tool invocation settles into,
whether it ran locally, through the internal tool endpoint, or in the
background. It has three shapes:

    ToolCallResult.success(tool_name, tool_call_id, thread_id, content={...})
    ToolCallResult.error(tool_name, tool_call_id, thread_id, error_type=..., error_message=...)
    ToolCallResult.scheduled(tool_name, tool_call_id, thread_id, handle=..., task_id=...)

Wire form (``to_dict`` / ``to_json``) renders 64-bit identifiers as decimal
strings; ``from_dict`` accepts either strings or ints.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ledger_agent.errors import error_message_of, error_type_name, status_code_of

ToolCallStatus = Literal["success", "error", "scheduled"]

_STATUSES = ("success", "error", "scheduled")
_ID_FIELDS = ("thread_id", "scheduled_task_id")


def parse_id(value: Any) -> int | None:
    """Accept a 64-bit id as int or decimal string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid identifier: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"Invalid identifier: {value!r}")


# ---------------------------------------------------------------------------
# ToolCallResult
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallResult:
    status: ToolCallStatus
    tool_name: str
    tool_call_id: str
    thread_id: int
    content: dict[str, Any] | None = None
    error_type: str | None = None
    error_message: str | None = None
    status_code: int | None = None
    model_handle_name: str | None = None
    scheduled_task_id: int | None = None

    def __post_init__(self) -> None:
        if self.status not in _STATUSES:
            raise ValueError(f"Unknown tool call status: {self.status!r}")
        has_error = self.error_type is not None or self.error_message is not None or self.status_code is not None
        has_schedule = self.model_handle_name is not None or self.scheduled_task_id is not None
        if self.status == "success":
            if has_error or has_schedule:
                raise ValueError("success result cannot carry error or schedule fields")
            if self.content is None:
                object.__setattr__(self, "content", {})
        elif self.status == "error":
            if not self.error_type or not self.error_message:
                raise ValueError("error result requires error_type and error_message")
            if self.content is not None or has_schedule:
                raise ValueError("error result cannot carry content or schedule fields")
        else:
            if not self.model_handle_name or self.scheduled_task_id is None:
                raise ValueError("scheduled result requires model_handle_name and scheduled_task_id")
            if self.content is not None or has_error:
                raise ValueError("scheduled result cannot carry content or error fields")

    # -- Constructors -----------------------------------------------------

    @classmethod
    def success(
        cls,
        tool_name: str,
        tool_call_id: str,
        thread_id: int,
        content: dict[str, Any] | None = None,
    ) -> "ToolCallResult":
        return cls("success", tool_name, tool_call_id, thread_id, content=dict(content or {}))

    @classmethod
    def error(
        cls,
        tool_name: str,
        tool_call_id: str,
        thread_id: int,
        *,
        error_type: str,
        error_message: str,
        status_code: int | None = None,
    ) -> "ToolCallResult":
        return cls(
            "error",
            tool_name,
            tool_call_id,
            thread_id,
            error_type=error_type,
            error_message=error_message or error_type,
            status_code=status_code,
        )

    @classmethod
    def from_exception(
        cls,
        tool_name: str,
        tool_call_id: str,
        thread_id: int,
        exc: Any,
        *,
        default_type: str | None = None,
    ) -> "ToolCallResult":
        """Error result named after the failing exception class.

        Non-exception values map to ``default_type`` (``UnknownError`` when
        not given). The status code is filled from HTTP transport failures.
        """
        kind = error_type_name(exc)
        if not isinstance(exc, BaseException) and default_type:
            kind = default_type
        return cls.error(
            tool_name,
            tool_call_id,
            thread_id,
            error_type=kind,
            error_message=error_message_of(exc),
            status_code=status_code_of(exc),
        )

    @classmethod
    def scheduled(
        cls,
        tool_name: str,
        tool_call_id: str,
        thread_id: int,
        *,
        handle: str,
        task_id: int,
    ) -> "ToolCallResult":
        return cls(
            "scheduled",
            tool_name,
            tool_call_id,
            thread_id,
            model_handle_name=handle,
            scheduled_task_id=task_id,
        )

    @property
    def ok(self) -> bool:
        return self.status != "error"

    # -- Serialization ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Compact wire form. None fields are dropped, ids become strings."""
        out: dict[str, Any] = {
            "status": self.status,
            "tool_name": self.tool_name,
            "tool_call_id": self.tool_call_id,
            "thread_id": str(self.thread_id),
        }
        if self.status == "success":
            out["content"] = self.content
        elif self.status == "error":
            out["error_type"] = self.error_type
            out["error_message"] = self.error_message
            if self.status_code is not None:
                out["status_code"] = self.status_code
        else:
            out["model_handle_name"] = self.model_handle_name
            out["scheduled_task_id"] = str(self.scheduled_task_id)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallResult":
        if not isinstance(data, dict):
            raise ValueError(f"ToolCallResult payload must be a mapping, got {type(data).__name__}")
        status = data.get("status")
        thread_id = parse_id(data.get("thread_id"))
        return cls(
            status=status,  # type: ignore[arg-type]
            tool_name=str(data.get("tool_name") or ""),
            tool_call_id=str(data.get("tool_call_id") or ""),
            thread_id=thread_id if thread_id is not None else 0,
            content=data.get("content") if status == "success" else None,
            error_type=data.get("error_type"),
            error_message=data.get("error_message"),
            status_code=data.get("status_code"),
            model_handle_name=data.get("model_handle_name"),
            scheduled_task_id=parse_id(data.get("scheduled_task_id")),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)

    @classmethod
    def from_json(cls, text: str) -> "ToolCallResult":
        return cls.from_dict(json.loads(text))

    # -- Model-facing and log views --------------------------------------

    def as_model_content(self) -> dict[str, Any]:
        """What the model sees in the tool message for this call."""
        if self.status == "success":
            return {**(self.content or {}), "status": "success"}
        if self.status == "error":
            return {
                "status": "error",
                "error_type": self.error_type,
                "error_message": self.error_message,
                "status_code": self.status_code,
            }
        return {"status": "scheduled", "handle": self.model_handle_name}

    def log_message(self) -> str:
        if self.status == "error":
            detail = f"{self.error_type}: {self.error_message}"
        elif self.status == "scheduled":
            detail = f"handle={self.model_handle_name} task={self.scheduled_task_id}"
        else:
            detail = f"{len(self.content or {})} content keys"
        return (
            f"[{self.status}] {self.tool_name} call={self.tool_call_id} "
            f"thread={self.thread_id} {detail}"
        )


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


# ---------------------------------------------------------------------------
# ToolDescriptor
# ---------------------------------------------------------------------------


class ToolDescriptor(BaseModel):
    """Self-description a tool publishes so the model can select it."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_openai(cls, data: dict[str, Any]) -> "ToolDescriptor":
        """Accept either the ``{"type": "function", "function": {...}}`` form or a bare one."""
        inner = data.get("function") if isinstance(data.get("function"), dict) else data
        return cls.model_validate(inner)


@dataclass
class ToolCallRequest:
    """One tool call the model asked for."""

    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, raw: Any) -> "ToolCallRequest":
        """Normalize a provider tool call (dict or SDK object)."""
        if isinstance(raw, dict):
            fn = raw.get("function") or {}
            return cls(
                id=str(raw.get("id") or ""),
                name=str(fn.get("name") or ""),
                arguments=_arguments_text(fn.get("arguments")),
                type=str(raw.get("type") or "function"),
            )
        fn = getattr(raw, "function", None)
        return cls(
            id=str(getattr(raw, "id", "") or ""),
            name=str(getattr(fn, "name", "") or ""),
            arguments=_arguments_text(getattr(fn, "arguments", None)),
            type=str(getattr(raw, "type", None) or "function"),
        )

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


def _arguments_text(raw: Any) -> str:
    if raw is None:
        return "{}"
    if isinstance(raw, str):
        return raw
    return json.dumps(raw)
