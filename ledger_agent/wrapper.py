"""Three-phase execution of a single named tool.

``ToolCallWrapper.wrap`` runs one tool under the phase the caller picks:

- VALIDATE: build the tool, run its checks, return success with ``{}``.
- SCHEDULE: validate, create a PENDING Task (depending on earlier Tasks this
  wrapper created for the same thread), hand the real execution to the
  ``TaskWorker`` and return a ``scheduled`` result at once.
- RETRIEVE: run the tool's ``call_tool()`` and return its result.

Nothing escapes ``wrap``: every failure, including an unknown tool name,
comes back as an error ``ToolCallResult``.

``ToolService`` is the request handler behind the internal tool endpoint
(``GET /tools`` and ``POST /<tool_name>``), without any HTTP routing.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

import httpx

from ledger_agent.cache import AsyncCachePolicy, CachePolicy, FilePageCache
from ledger_agent.config import AgentConfig
from ledger_agent.errors import ToolNotFoundError
from ledger_agent.registry import ToolCategory, ToolContext, ToolRegistry, default_registry
from ledger_agent.results import ToolCallResult, parse_id
from ledger_agent.retriever import HTTPConnection
from ledger_agent.store import NewTask, SQLiteStore, TaskStore
from ledger_agent.worker import TaskWorker

logger = logging.getLogger(__name__)

ConnectionProvider = Callable[[int], HTTPConnection]


class QueryType(str, Enum):
    VALIDATE = "validate"
    SCHEDULE = "schedule"
    RETRIEVE = "retrieve"


def model_handle(tool_call_id: str, tool_name: str) -> str:
    """Name later model turns use to refer to a task's output."""
    return f"{tool_call_id}_{tool_name}"


class ToolCallWrapper:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        store: TaskStore,
        worker: TaskWorker,
        connections: ConnectionProvider | None = None,
        cache: CachePolicy | AsyncCachePolicy | None = None,
        config: AgentConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.worker = worker
        self.connections = connections
        self.cache = cache
        self.config = config or AgentConfig()
        self.http_client = http_client
        self._scheduled: dict[int, list[int]] = {}

    def _context(self, cbid: int, thread_id: int, tool_call_id: str) -> ToolContext:
        return ToolContext(
            cbid=cbid,
            thread_id=thread_id,
            tool_call_id=tool_call_id,
            config=self.config,
            connection=self.connections(cbid) if self.connections is not None else None,
            cache=self.cache,
            http_client=self.http_client,
        )

    async def wrap(
        self,
        query_type: QueryType,
        tool_name: str,
        args: dict[str, Any],
        *,
        cbid: int,
        thread_id: int,
        tool_call_id: str,
        request_model_event_id: int | None = None,
    ) -> ToolCallResult:
        logger.info(
            "Tool %s phase=%s thread=%s call=%s", tool_name, query_type.value, thread_id, tool_call_id
        )
        try:
            tool = self.registry.create(tool_name, args, self._context(cbid, thread_id, tool_call_id))
            if query_type == QueryType.VALIDATE:
                tool.validate()
                return ToolCallResult.success(tool_name, tool_call_id, thread_id, {})
            if query_type == QueryType.SCHEDULE:
                tool.validate()
                task = await self.store.create_task(
                    NewTask(
                        cbid=cbid,
                        thread_id=thread_id,
                        tool_call_id=tool_call_id,
                        tool_name=tool_name,
                        tool_args=args,
                        handle=model_handle(tool_call_id, tool_name),
                        depends_on=list(self._scheduled.get(thread_id, [])),
                        request_model_event_id=request_model_event_id,
                    )
                )
                self._scheduled.setdefault(thread_id, []).append(task.id)
                await self.worker.submit(task.id, tool.call_tool)
                return ToolCallResult.scheduled(
                    tool_name, tool_call_id, thread_id, handle=task.handle, task_id=task.id
                )
            return await tool.call_tool()
        except Exception as e:
            logger.warning(
                "Tool %s phase=%s failed (thread=%s call=%s): %s",
                tool_name, query_type.value, thread_id, tool_call_id, e,
            )
            return ToolCallResult.from_exception(tool_name, tool_call_id, thread_id, e)


# ---------------------------------------------------------------------------
# Request handling behind the tool endpoint
# ---------------------------------------------------------------------------


class ToolService:
    """Maps tool endpoint requests onto a ``ToolCallWrapper``."""

    def __init__(self, wrapper: ToolCallWrapper) -> None:
        self.wrapper = wrapper

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        connections: ConnectionProvider,
        *,
        registry: ToolRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ToolService":
        """Service backed by the SQLite store and the on-disk page cache."""
        store = SQLiteStore(config.db_path)
        return cls(
            ToolCallWrapper(
                registry or default_registry(),
                store=store,
                worker=TaskWorker(store, concurrency=config.scheduled_workers),
                connections=connections,
                cache=FilePageCache(config.cache_dir) if config.cache_enabled else None,
                config=config,
                http_client=http_client,
            )
        )

    async def aclose(self) -> None:
        """Drain scheduled work and release the store."""
        await self.wrapper.worker.stop()
        close = getattr(self.wrapper.store, "close", None)
        if close is not None:
            close()

    @property
    def registry(self) -> ToolRegistry:
        return self.wrapper.registry

    def describe(self) -> dict[str, Any]:
        """Body for ``GET /tools``: the remotely executed tools."""
        descriptors = self.registry.descriptors(ToolCategory.METADATA, ToolCategory.BULK)
        return {"success": True, "tools": [d.to_openai() for d in descriptors]}

    async def handle(self, tool_name: str, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        """Handle ``POST /<tool_name>``. Returns (http status, result dict)."""
        tool_call_id = str(body.get("tool_call_id") or "")
        try:
            cbid = parse_id(body.get("cbid"))
            thread_id = parse_id(body.get("thread_id"))
        except ValueError as e:
            return 400, ToolCallResult.error(
                tool_name, tool_call_id, 0, error_type="InvalidParameter", error_message=str(e), status_code=400,
            ).to_dict()

        if cbid is None or thread_id is None or not tool_call_id:
            return 400, ToolCallResult.error(
                tool_name,
                tool_call_id,
                thread_id or 0,
                error_type="MissingRequiredParameter",
                error_message="cbid, thread_id and tool_call_id are required",
                status_code=400,
            ).to_dict()

        # Local tools run inside the runner's process and are never served here.
        if tool_name not in self.registry or self.registry.category_of(tool_name) == ToolCategory.LOCAL:
            err = ToolNotFoundError(f"Tool {tool_name} not found")
            return 404, ToolCallResult.error(
                tool_name, tool_call_id, thread_id,
                error_type="ToolNotFound", error_message=str(err), status_code=404,
            ).to_dict()

        query_type = _query_type(body)
        args = {
            k: v for k, v in body.items()
            if k not in {"cbid", "thread_id", "tool_call_id", "validate", "query_type", "request_model_event_id"}
        }
        try:
            request_event_id = parse_id(body.get("request_model_event_id"))
        except ValueError:
            request_event_id = None
        result = await self.wrapper.wrap(
            query_type,
            tool_name,
            args,
            cbid=cbid,
            thread_id=thread_id,
            tool_call_id=tool_call_id,
            request_model_event_id=request_event_id,
        )
        status = 500 if result.status == "error" else 200
        return status, result.to_dict()


def _query_type(body: dict[str, Any]) -> QueryType:
    raw = body.get("query_type")
    if isinstance(raw, str) and raw.lower() in {q.value for q in QueryType}:
        return QueryType(raw.lower())
    validate = body.get("validate")
    if validate is True or (isinstance(validate, str) and validate.lower() == "true"):
        return QueryType.VALIDATE
    return QueryType.RETRIEVE
