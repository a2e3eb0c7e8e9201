"""Local code execution tool.

``python_function_runner`` lets the model post-process data it already
retrieved. The model sends Python source that defines::

    def analyze(user_data):
        bills = user_data["call_1_user_data_retriever"]["pages"]
        ...
        return {"total": total}

``user_data`` maps each retrieval's model handle to its result content.
The function runs in a worker thread under a timeout; ``print`` output is
captured and returned alongside the value. This is not a security sandbox.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import functools
import io
import json
import logging
from typing import Any

from ledger_agent.errors import ToolValidationError
from ledger_agent.registry import ToolCategory, ToolContext, ToolSpec
from ledger_agent.results import ToolCallResult, ToolDescriptor

logger = logging.getLogger(__name__)

ENTRY_POINT = "analyze"
MAX_STDOUT_CHARS = 20_000


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _run_code(code: str, user_data: dict[str, Any]) -> tuple[Any, str]:
    buffer = io.StringIO()
    namespace: dict[str, Any] = {
        "__builtins__": builtins,
        "__name__": "ledger_agent_analysis",
        "print": functools.partial(print, file=buffer),
    }
    exec(compile(code, "<analyze>", "exec"), namespace)
    output = namespace[ENTRY_POINT](user_data)
    return output, buffer.getvalue()


class PythonFunctionRunner:
    name = "python_function_runner"

    def __init__(self, args: dict[str, Any], context: ToolContext) -> None:
        self.code = args.get("code")
        self.context = context

    def validate(self) -> None:
        if not isinstance(self.code, str) or not self.code.strip():
            raise ToolValidationError("Code is required")
        try:
            tree = ast.parse(self.code, "<analyze>")
        except SyntaxError as e:
            raise ToolValidationError(f"Code does not compile: {e.msg} (line {e.lineno})") from e
        defined = {n.name for n in tree.body if isinstance(n, ast.FunctionDef)}
        if ENTRY_POINT not in defined:
            raise ToolValidationError(f"Code must define a function {ENTRY_POINT}(user_data)")

    async def call_tool(self) -> ToolCallResult:
        self.validate()
        timeout = self.context.config.executor_timeout_s
        logger.info(
            "Running analysis code (thread=%s call=%s, %d data handles)",
            self.context.thread_id, self.context.tool_call_id, len(self.context.user_data),
        )
        output, stdout = await asyncio.wait_for(
            asyncio.to_thread(_run_code, self.code, self.context.user_data), timeout=timeout
        )
        return ToolCallResult.success(
            self.name,
            self.context.tool_call_id,
            self.context.thread_id,
            {
                "output": _json_safe(output),
                "stdout": stdout[:MAX_STDOUT_CHARS],
                "executed_code": self.code,
            },
        )


PYTHON_FUNCTION_RUNNER = ToolSpec(
    descriptor=ToolDescriptor(
        name=PythonFunctionRunner.name,
        description=(
            "Run Python code over data already retrieved in this conversation. "
            "The code must define analyze(user_data) and return a JSON-serializable value. "
            "user_data maps each retrieval handle to its result."
        ),
        parameters={
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Python source defining analyze(user_data)",
                },
            },
            "required": ["code"],
        },
    ),
    category=ToolCategory.LOCAL,
    factory=PythonFunctionRunner,
)
