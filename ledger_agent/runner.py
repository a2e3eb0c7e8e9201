"""Runs one round of model tool calls.

``ToolCallRunner.run_tools`` fans a round's tool calls out concurrently and
returns ``{tool_call_id: ToolCallResult}`` once every call has settled.
Dispatch depends on the tool's category:

- METADATA: one ``POST /<tool>`` with ``validate=false``.
- BULK: validate-then-retrieve. ``POST`` with ``validate=true``; on success a
  Task is created (depending on every Task this runner created before it)
  and the tool is called again with ``validate=false``. A failed validation
  is returned as is and the retrieval is never sent.
- LOCAL: run in this process after this runner's retrievals have settled.

One bad call never fails the batch: unsupported call types, unparseable
arguments, unknown tools and transport failures all become error results in
that call's slot.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, Sequence

import httpx

from ledger_agent.config import AgentConfig
from ledger_agent.errors import (
    InvalidToolTypeError,
    RegistryFetchError,
    ToolArgumentError,
    TransportError,
)
from ledger_agent.registry import ToolCategory, ToolContext, ToolRegistry
from ledger_agent.results import ToolCallRequest, ToolCallResult, ToolDescriptor
from ledger_agent.retriever import open_client
from ledger_agent.store import NewTask, Task, TaskStatus, TaskStore
from ledger_agent.wrapper import model_handle

logger = logging.getLogger(__name__)

INTERNAL_SERVICE_HEADERS = {
    "Content-Type": "application/json",
    "X-Internal-Service": "ledger_agent",
}
UNKNOWN_TOOL = "unknown_tool"
_RESERVED_KEYS = ("cbid", "thread_id", "tool_call_id", "validate", "query_type", "request_model_event_id")


class ToolCallRunner:
    """Tool execution for one conversation thread.

    Args:
        cbid: Account the tools act on.
        thread_id: Conversation the calls belong to.
        registry: Local tool registry (categories and local factories).
        store: Where staged Tasks are recorded.
        config: Endpoint URL and timeouts.
        http_client: Shared client for the internal tool endpoint.
    """

    def __init__(
        self,
        *,
        cbid: int,
        thread_id: int,
        registry: ToolRegistry,
        store: TaskStore,
        config: AgentConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cbid = cbid
        self.thread_id = thread_id
        self.registry = registry
        self.store = store
        self.config = config or AgentConfig()
        self.http_client = http_client
        self.request_model_event_id: int | None = None
        self.created_task_ids: list[int] = []
        self.settled_task_ids: set[int] = set()
        self.data_by_handle: dict[str, Any] = {}
        self._descriptors: list[ToolDescriptor] | None = None
        self._task_lock = asyncio.Lock()
        self._staging: dict[str, asyncio.Future[None]] = {}

    # -- Registry ---------------------------------------------------------

    async def get_tool_descriptors(self) -> list[ToolDescriptor]:
        """Published tools plus local ones. Fetched once per runner.

        Raises ``RegistryFetchError`` when the endpoint fails or lists no
        tools, and ``RegistryMismatchError`` when it disagrees with the
        local registry.
        """
        if self._descriptors is not None:
            return self._descriptors

        url = f"{self.config.internal_api_url}/tools"
        try:
            async with open_client(self.http_client, self.config.registry_timeout_s) as client:
                response = await client.get(
                    url,
                    params={"cbid": str(self.cbid)},
                    headers=INTERNAL_SERVICE_HEADERS,
                    timeout=self.config.registry_timeout_s,
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RegistryFetchError(f"Failed to fetch tools from {url}: {e}", original=e) from e

        if not isinstance(body, dict) or not body.get("success") or not body.get("tools"):
            raise RegistryFetchError(f"Failed to fetch tools from {url}: no tools returned")
        try:
            published = [ToolDescriptor.from_openai(t) for t in body["tools"]]
        except (TypeError, ValueError) as e:
            raise RegistryFetchError(f"Failed to fetch tools from {url}: malformed descriptor", original=e) from e

        self.registry.validate_against(published)
        names = {d.name for d in published}
        local = [d for d in self.registry.descriptors(ToolCategory.LOCAL) if d.name not in names]
        self._descriptors = published + local
        logger.info(
            "Loaded %d tools for thread=%s: %s",
            len(self._descriptors), self.thread_id, ", ".join(d.name for d in self._descriptors),
        )
        return self._descriptors

    async def openai_tools(self) -> list[dict[str, Any]]:
        return [d.to_openai() for d in await self.get_tool_descriptors()]

    # -- Fan-out ----------------------------------------------------------

    async def run_tools(self, tool_calls: Sequence[ToolCallRequest]) -> dict[str, ToolCallResult]:
        """Run every call concurrently; results keyed by tool call id.

        Callers that record the calls should pass them through
        ``unique_call_ids`` first so the keys match what they recorded.
        """
        tool_calls = unique_call_ids(tool_calls)
        loop = asyncio.get_running_loop()
        for call in tool_calls:
            if call.type == "function" and call.name in self.registry \
                    and self.registry.category_of(call.name) == ToolCategory.BULK:
                self._staging.setdefault(call.id, loop.create_future())

        results = await asyncio.gather(*(self._dispatch(call) for call in tool_calls))
        out = {call.id: result for call, result in zip(tool_calls, results)}
        logger.info(
            "Round finished thread=%s: %d calls, %d errors",
            self.thread_id, len(out), sum(1 for r in out.values() if r.status == "error"),
        )
        return out

    async def _dispatch(self, call: ToolCallRequest) -> ToolCallResult:
        if call.type != "function":
            return ToolCallResult.from_exception(
                UNKNOWN_TOOL,
                call.id,
                self.thread_id,
                InvalidToolTypeError(f"Tool call type {call.type} is not supported"),
            )
        return await self.run_tool(call)

    async def run_tool(self, call: ToolCallRequest) -> ToolCallResult:
        """Run one function call. Never raises."""
        try:
            args = _parse_arguments(call)
            category = self.registry.category_of(call.name)
            if category == ToolCategory.METADATA:
                return await self.call_tool_api(call.name, args, call.id, validate=False)
            if category == ToolCategory.BULK:
                return await self.validate_then_retrieve(call.name, args, call.id)
            return await self.run_local(call.name, args, call.id)
        except Exception as e:
            logger.warning(
                "Tool %s failed (thread=%s call=%s): %s", call.name, self.thread_id, call.id, e
            )
            return ToolCallResult.from_exception(
                call.name or UNKNOWN_TOOL, call.id, self.thread_id, e, default_type="ToolCallError"
            )
        finally:
            self._finish_staging(call.id)

    # -- Remote tools -----------------------------------------------------

    async def call_tool_api(
        self, tool_name: str, args: dict[str, Any], tool_call_id: str, *, validate: bool
    ) -> ToolCallResult:
        """``POST /<tool_name>``. Transport and HTTP failures become error results."""
        url = f"{self.config.internal_api_url}/{tool_name}"
        body: dict[str, Any] = {k: v for k, v in args.items() if k not in _RESERVED_KEYS}
        body.update(
            cbid=str(self.cbid),
            thread_id=str(self.thread_id),
            tool_call_id=tool_call_id,
            validate=validate,
        )
        if self.request_model_event_id is not None:
            body["request_model_event_id"] = str(self.request_model_event_id)

        logger.info(
            "POST %s validate=%s thread=%s call=%s", url, validate, self.thread_id, tool_call_id
        )
        try:
            async with open_client(self.http_client, self.config.tool_call_timeout_s) as client:
                response = await client.post(
                    url, json=body, headers=INTERNAL_SERVICE_HEADERS, timeout=self.config.tool_call_timeout_s
                )
        except httpx.HTTPError as e:
            return ToolCallResult.from_exception(
                tool_name, tool_call_id, self.thread_id,
                TransportError(f"POST {url} failed: {e!r}", original=e),
            )

        result = _result_from_response(response)
        if result is not None and (response.is_success or result.status == "error"):
            return result
        return ToolCallResult.from_exception(
            tool_name,
            tool_call_id,
            self.thread_id,
            TransportError(
                f"POST {url} failed ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            ),
        )

    async def validate_then_retrieve(
        self, tool_name: str, args: dict[str, Any], tool_call_id: str
    ) -> ToolCallResult:
        """Validate remotely, record a Task, then retrieve."""
        try:
            validation = await self.call_tool_api(tool_name, args, tool_call_id, validate=True)
            if validation.status == "error":
                return validation

            task = await self._create_task(tool_name, args, tool_call_id)
            try:
                result = await self.call_tool_api(tool_name, args, tool_call_id, validate=False)
            except Exception as e:
                result = ToolCallResult.from_exception(
                    tool_name, tool_call_id, self.thread_id, e, default_type="ToolCallError"
                )
            if task is not None:
                await self._settle_task(task, result)
            if result.status == "success":
                self.data_by_handle[model_handle(tool_call_id, tool_name)] = result.content
            return result
        finally:
            self._finish_staging(tool_call_id)

    async def _create_task(self, tool_name: str, args: dict[str, Any], tool_call_id: str) -> Task | None:
        async with self._task_lock:
            try:
                task = await self.store.create_task(
                    NewTask(
                        cbid=self.cbid,
                        thread_id=self.thread_id,
                        tool_call_id=tool_call_id,
                        tool_name=tool_name,
                        tool_args=args,
                        handle=model_handle(tool_call_id, tool_name),
                        depends_on=list(self.created_task_ids),
                        request_model_event_id=self.request_model_event_id,
                    )
                )
            except Exception:
                logger.error(
                    "Could not record task for %s (thread=%s call=%s)",
                    tool_name, self.thread_id, tool_call_id, exc_info=True,
                )
                return None
            self.created_task_ids.append(task.id)
            return task

    async def _settle_task(self, task: Task, result: ToolCallResult) -> None:
        status = TaskStatus.FAILED if result.status == "error" else TaskStatus.COMPLETED
        try:
            await self.store.update_task_status(task.id, status, result.to_dict())
        except Exception:
            logger.error("Could not record %s for task %d", status.value, task.id, exc_info=True)
        finally:
            # The retrieval is over whether or not the store took the write.
            self.settled_task_ids.add(task.id)

    def _finish_staging(self, tool_call_id: str) -> None:
        fut = self._staging.pop(tool_call_id, None)
        if fut is not None and not fut.done():
            fut.set_result(None)

    # -- Local tools ------------------------------------------------------

    async def wait_for_dependencies(self) -> None:
        """Wait for in-flight retrievals and this runner's Tasks to settle."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.dependency_timeout_s
        pending = [f for f in self._staging.values() if not f.done()]
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=self.config.dependency_timeout_s)
            if not_done:
                raise TimeoutError(f"Timed out waiting for {len(not_done)} retrievals")

        while True:
            unsettled = [t for t in self.created_task_ids if t not in self.settled_task_ids]
            if not unsettled:
                return
            if loop.time() >= deadline:
                raise TimeoutError(f"Timed out waiting for tasks {unsettled}")
            await asyncio.sleep(self.config.dependency_poll_s)

    async def run_local(self, tool_name: str, args: dict[str, Any], tool_call_id: str) -> ToolCallResult:
        await self.wait_for_dependencies()
        context = ToolContext(
            cbid=self.cbid,
            thread_id=self.thread_id,
            tool_call_id=tool_call_id,
            config=self.config,
            user_data=dict(self.data_by_handle),
        )
        return await self.registry.create(tool_name, args, context).call_tool()


def unique_call_ids(calls: Sequence[ToolCallRequest]) -> list[ToolCallRequest]:
    """Give every call its own id so each one gets its own result and tool message.

    Blank ids become ``call_<index>``; a repeated id gets a ``_<n>`` suffix.
    """
    seen: set[str] = set()
    out = []
    for index, call in enumerate(calls):
        call_id = call.id or f"call_{index}"
        if call_id in seen:
            n = 2
            while f"{call_id}_{n}" in seen:
                n += 1
            logger.warning("Duplicate tool call id %s for %s; using %s_%d", call_id, call.name, call_id, n)
            call_id = f"{call_id}_{n}"
        seen.add(call_id)
        out.append(call if call_id == call.id else dataclasses.replace(call, id=call_id))
    return out


def _parse_arguments(call: ToolCallRequest) -> dict[str, Any]:
    try:
        args = json.loads(call.arguments or "{}")
    except json.JSONDecodeError as e:
        raise ToolArgumentError(f"Invalid JSON arguments for {call.name}: {e.msg}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Arguments for {call.name} must be a JSON object")
    return args


def _result_from_response(response: httpx.Response) -> ToolCallResult | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict) or "status" not in payload:
        return None
    try:
        return ToolCallResult.from_dict(payload)
    except (TypeError, ValueError):
        logger.warning("Malformed tool result from %s", response.request.url)
        return None
