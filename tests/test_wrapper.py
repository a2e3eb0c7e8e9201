"""Tests for ledger_agent.wrapper: phased execution and the tool endpoint handler."""

from __future__ import annotations

import httpx
import pytest

from conftest import FakeConnection, fake_registry, qbo_handler
from ledger_agent.config import AgentConfig
from ledger_agent.registry import default_registry
from ledger_agent.store import InMemoryStore, TaskStatus
from ledger_agent.worker import TaskWorker
from ledger_agent.wrapper import QueryType, ToolCallWrapper, ToolService, model_handle

BIG_ID = 9007199254740993


def _wrapper(store: InMemoryStore | None = None, **kwargs) -> ToolCallWrapper:
    store = store or InMemoryStore()
    return ToolCallWrapper(fake_registry(), store=store, worker=TaskWorker(store), **kwargs)


async def _wrap(wrapper: ToolCallWrapper, query_type: QueryType, name: str, args: dict, call_id: str = "c1"):
    return await wrapper.wrap(query_type, name, args, cbid=7, thread_id=BIG_ID, tool_call_id=call_id)


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class TestPhases:
    @pytest.mark.asyncio
    async def test_validate_returns_empty_success(self) -> None:
        result = await _wrap(_wrapper(), QueryType.VALIDATE, "bulk", {"q": 1})
        assert result.status == "success"
        assert result.content == {}
        assert result.thread_id == BIG_ID

    @pytest.mark.asyncio
    async def test_validate_failure_is_error_result(self) -> None:
        result = await _wrap(_wrapper(), QueryType.VALIDATE, "bulk", {"invalid": "ORDER BY clause is missing"})
        assert result.status == "error"
        assert result.error_type == "ToolValidationError"
        assert result.error_message == "ORDER BY clause is missing"

    @pytest.mark.asyncio
    async def test_retrieve_runs_tool(self) -> None:
        result = await _wrap(_wrapper(), QueryType.RETRIEVE, "lookup", {"q": 1})
        assert result.content == {"echo": {"q": 1}}

    @pytest.mark.asyncio
    async def test_retrieve_exception_becomes_error(self) -> None:
        result = await _wrap(_wrapper(), QueryType.RETRIEVE, "lookup", {"raise": "kaput"})
        assert result.status == "error"
        assert result.error_type == "RuntimeError"
        assert result.error_message == "kaput"

    @pytest.mark.asyncio
    async def test_unknown_tool(self) -> None:
        result = await _wrap(_wrapper(), QueryType.RETRIEVE, "nope", {})
        assert result.status == "error"
        assert result.error_type == "ToolNotFoundError"
        assert result.error_message == "Tool nope not found"


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_returns_handle_and_completes(self) -> None:
        store = InMemoryStore()
        wrapper = _wrapper(store)
        result = await _wrap(wrapper, QueryType.SCHEDULE, "bulk", {"q": 1})
        assert result.status == "scheduled"
        assert result.model_handle_name == model_handle("c1", "bulk") == "c1_bulk"
        await wrapper.worker.stop()
        task = store.tasks[result.scheduled_task_id]
        assert task.status == TaskStatus.COMPLETED
        assert task.result["content"] == {"echo": {"q": 1}}

    @pytest.mark.asyncio
    async def test_schedule_chains_dependencies_per_thread(self) -> None:
        store = InMemoryStore()
        wrapper = _wrapper(store)
        first = await _wrap(wrapper, QueryType.SCHEDULE, "bulk", {"q": 1}, "c1")
        second = await _wrap(wrapper, QueryType.SCHEDULE, "bulk", {"q": 2}, "c2")
        other = await wrapper.wrap(QueryType.SCHEDULE, "bulk", {}, cbid=7, thread_id=1, tool_call_id="c3")
        await wrapper.worker.stop()
        assert store.tasks[first.scheduled_task_id].depends_on == []
        assert store.tasks[second.scheduled_task_id].depends_on == [first.scheduled_task_id]
        assert store.tasks[other.scheduled_task_id].depends_on == []

    @pytest.mark.asyncio
    async def test_schedule_validation_failure_creates_no_task(self) -> None:
        store = InMemoryStore()
        result = await _wrap(_wrapper(store), QueryType.SCHEDULE, "bulk", {"invalid": "bad"})
        assert result.status == "error"
        assert store.tasks == {}

    @pytest.mark.asyncio
    async def test_failed_job_marks_task_failed(self) -> None:
        store = InMemoryStore()
        wrapper = _wrapper(store)
        result = await _wrap(wrapper, QueryType.SCHEDULE, "bulk", {"fail": "No data found"})
        await wrapper.worker.stop()
        assert store.tasks[result.scheduled_task_id].status == TaskStatus.FAILED


class TestWithQuickBooks:
    @pytest.mark.asyncio
    async def test_retrieve_size(self) -> None:
        connection = FakeConnection()
        store = InMemoryStore()
        async with httpx.AsyncClient(transport=httpx.MockTransport(qbo_handler(8))) as client:
            wrapper = ToolCallWrapper(
                default_registry(),
                store=store,
                worker=TaskWorker(store),
                connections=lambda cbid: connection,
                config=AgentConfig(page_size=10),
                http_client=client,
            )
            result = await wrapper.wrap(
                QueryType.RETRIEVE, "size_retriever", {"query": "SELECT COUNT(*) FROM Bill"},
                cbid=7, thread_id=BIG_ID, tool_call_id="c1",
            )
        assert result.content == {"QueryResponse": {"totalCount": 8}}

    @pytest.mark.asyncio
    async def test_missing_connection_is_error(self) -> None:
        store = InMemoryStore()
        wrapper = ToolCallWrapper(default_registry(), store=store, worker=TaskWorker(store))
        result = await wrapper.wrap(
            QueryType.VALIDATE, "schema_retriever", {"table_name": "Bill"},
            cbid=7, thread_id=BIG_ID, tool_call_id="c1",
        )
        assert result.status == "error"
        assert result.error_type == "RuntimeError"


# ---------------------------------------------------------------------------
# Endpoint handler
# ---------------------------------------------------------------------------


class TestToolService:
    def test_describe_lists_remote_tools_only(self) -> None:
        store = InMemoryStore()
        service = ToolService(ToolCallWrapper(default_registry(), store=store, worker=TaskWorker(store)))
        body = service.describe()
        assert body["success"] is True
        names = [t["function"]["name"] for t in body["tools"]]
        assert names == ["schema_retriever", "size_retriever", "user_data_retriever"]

    @pytest.mark.asyncio
    async def test_validate_flag(self) -> None:
        service = ToolService(_wrapper())
        status, body = await service.handle(
            "bulk", {"cbid": "7", "thread_id": str(BIG_ID), "tool_call_id": "c1", "validate": "true", "q": 1}
        )
        assert status == 200
        assert body["status"] == "success"
        assert body["content"] == {}
        assert body["thread_id"] == str(BIG_ID)

    @pytest.mark.asyncio
    async def test_retrieve_passes_only_tool_args(self) -> None:
        service = ToolService(_wrapper())
        status, body = await service.handle(
            "lookup", {"cbid": 7, "thread_id": "5", "tool_call_id": "c1", "validate": False, "q": 1}
        )
        assert status == 200
        assert body["content"] == {"echo": {"q": 1}}

    @pytest.mark.asyncio
    async def test_schedule_query_type(self) -> None:
        wrapper = _wrapper()
        status, body = await ToolService(wrapper).handle(
            "bulk", {"cbid": "7", "thread_id": "5", "tool_call_id": "c1", "query_type": "schedule"}
        )
        await wrapper.worker.stop()
        assert status == 200
        assert body["status"] == "scheduled"
        assert body["model_handle_name"] == "c1_bulk"

    @pytest.mark.asyncio
    async def test_tool_error_is_500(self) -> None:
        status, body = await ToolService(_wrapper()).handle(
            "lookup", {"cbid": "7", "thread_id": "5", "tool_call_id": "c1", "invalid": "x", "validate": True}
        )
        assert status == 500
        assert body["error_type"] == "ToolValidationError"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_404(self) -> None:
        status, body = await ToolService(_wrapper()).handle(
            "nope", {"cbid": "7", "thread_id": "5", "tool_call_id": "c1"}
        )
        assert status == 404
        assert body["error_message"] == "Tool nope not found"

    @pytest.mark.asyncio
    async def test_local_tool_is_not_served(self) -> None:
        store = InMemoryStore()
        service = ToolService(ToolCallWrapper(default_registry(), store=store, worker=TaskWorker(store)))
        status, body = await service.handle(
            "python_function_runner",
            {
                "cbid": "7", "thread_id": "5", "tool_call_id": "c1",
                "code": "def analyze(user_data):\n    return {'ran': True}\n",
            },
        )
        assert status == 404
        assert body["status"] == "error"
        assert body["error_message"] == "Tool python_function_runner not found"
        assert "content" not in body

    @pytest.mark.parametrize(
        "body, error_type",
        [
            ({"thread_id": "5", "tool_call_id": "c1"}, "MissingRequiredParameter"),
            ({"cbid": "7", "thread_id": "5"}, "MissingRequiredParameter"),
            ({"cbid": "abc", "thread_id": "5", "tool_call_id": "c1"}, "InvalidParameter"),
        ],
    )
    @pytest.mark.asyncio
    async def test_bad_ids_are_400(self, body: dict, error_type: str) -> None:
        status, result = await ToolService(_wrapper()).handle("lookup", body)
        assert status == 400
        assert result["error_type"] == error_type
        assert result["status_code"] == 400


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_uses_sqlite_store_and_file_cache(self, tmp_path) -> None:
        connection = FakeConnection()
        config = AgentConfig(db_path=tmp_path / "agent.db", cache_dir=tmp_path / "cache", page_size=10)
        async with httpx.AsyncClient(transport=httpx.MockTransport(qbo_handler(4))) as client:
            service = ToolService.from_config(config, lambda cbid: connection, http_client=client)
            status, body = await service.handle(
                "size_retriever",
                {"cbid": "7", "thread_id": "5", "tool_call_id": "c1", "query": "SELECT COUNT(*) FROM Bill"},
            )
            await service.aclose()
        assert status == 200
        assert body["content"] == {"QueryResponse": {"totalCount": 4}}
        assert list((tmp_path / "cache").glob("size_retriever_7_Bill_*.json"))
        assert service.wrapper.worker.concurrency == config.scheduled_workers
