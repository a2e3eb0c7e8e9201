"""Shared fakes for ledger_agent tests. No live network anywhere."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Callable

import httpx
import pytest

from ledger_agent.config import AgentConfig
from ledger_agent.errors import ToolValidationError
from ledger_agent.registry import ToolCategory, ToolContext, ToolRegistry, ToolSpec
from ledger_agent.results import ToolCallResult, ToolDescriptor


class FakeConnection:
    """HTTPConnection with a fixed token (None = unusable credentials)."""

    def __init__(self, token: str | None = "tok", base_url: str = "https://qbo.test/v3/company/99") -> None:
        self.token = token
        self._base_url = base_url
        self.auth_calls = 0

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def scope_id(self) -> str:
        return "7"

    async def authenticate(self) -> str | None:
        self.auth_calls += 1
        return self.token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}


def qbo_page(table: str, count: int, start: int = 1) -> dict[str, Any]:
    rows = [{"Id": str(start + i)} for i in range(count)]
    body: dict[str, Any] = {"startPosition": start, "maxResults": count}
    if rows:
        body[table] = rows
    return {"QueryResponse": body, "time": "2025-01-01T00:00:00Z"}


def qbo_handler(total_rows: int, table: str = "Bill", calls: list[httpx.Request] | None = None) -> Callable:
    """MockTransport handler serving ``total_rows`` rows in STARTPOSITION/MAXRESULTS pages."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        query = request.url.params.get("query", "")
        if "COUNT(*)" in query.upper():
            return httpx.Response(200, json={"QueryResponse": {"totalCount": total_rows}})
        m = re.search(r"STARTPOSITION (\d+) MAXRESULTS (\d+)", query)
        if m is None:
            return httpx.Response(200, json=qbo_page(table, min(1, total_rows)))
        start, size = int(m.group(1)), int(m.group(2))
        count = max(0, min(size, total_rows - (start - 1)))
        return httpx.Response(200, json=qbo_page(table, count, start))

    return handler


@pytest.fixture()
def config() -> AgentConfig:
    return AgentConfig(
        internal_api_url="http://tools.test",
        page_size=10,
        max_pages=20,
        dependency_poll_s=0.01,
        dependency_timeout_s=2.0,
        executor_timeout_s=5.0,
    )


@pytest.fixture()
def connection() -> FakeConnection:
    return FakeConnection()


def make_context(config: AgentConfig, connection: Any = None, *, client: httpx.AsyncClient | None = None,
                 cache: Any = None, tool_call_id: str = "call_1") -> ToolContext:
    return ToolContext(
        cbid=7,
        thread_id=9007199254740993,
        tool_call_id=tool_call_id,
        config=config,
        connection=connection,
        cache=cache,
        http_client=client,
    )


class FakeTool:
    """Tool whose behavior is driven by its arguments.

    ``invalid`` makes validate() fail, ``fail`` makes call_tool() return an
    error result, ``raise`` makes call_tool() raise, ``delay`` sleeps first.
    """

    def __init__(self, name: str, args: dict[str, Any], context: ToolContext) -> None:
        self.name = name
        self.args = args
        self.context = context

    def validate(self) -> None:
        if self.args.get("invalid"):
            raise ToolValidationError(str(self.args["invalid"]))

    async def call_tool(self) -> ToolCallResult:
        if self.args.get("delay"):
            await asyncio.sleep(float(self.args["delay"]))
        if self.args.get("raise"):
            raise RuntimeError(str(self.args["raise"]))
        if self.args.get("fail"):
            return ToolCallResult.error(
                self.name, self.context.tool_call_id, self.context.thread_id,
                error_type="NoData", error_message=str(self.args["fail"]),
            )
        return ToolCallResult.success(
            self.name, self.context.tool_call_id, self.context.thread_id, {"echo": self.args}
        )


def fake_spec(name: str, category: ToolCategory) -> ToolSpec:
    return ToolSpec(
        descriptor=ToolDescriptor(name=name, description=f"fake {name}"),
        category=category,
        factory=lambda args, context: FakeTool(name, args, context),
    )


def fake_registry() -> ToolRegistry:
    return ToolRegistry([
        fake_spec("lookup", ToolCategory.METADATA),
        fake_spec("bulk", ToolCategory.BULK),
    ])


def service_transport(service: Any, calls: list[httpx.Request] | None = None,
                      on_request: Callable[[httpx.Request, dict], None] | None = None) -> httpx.MockTransport:
    """MockTransport that serves the tool endpoint from an in-process ToolService."""

    async def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.method == "GET" and request.url.path == "/tools":
            return httpx.Response(200, json=service.describe())
        body = json.loads(request.content or b"{}")
        if on_request is not None:
            on_request(request, body)
        status, payload = await service.handle(request.url.path.strip("/"), body)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)
