"""QuickBooks Online retrieval tools.

Three tools built on ``PaginatedRetriever``, all reading the QBO query
endpoint (``GET /v3/company/<realm>/query?query=...``):

- ``schema_retriever``: one row of a table, so the model can learn its columns.
- ``size_retriever``: ``SELECT COUNT(*)`` for a query the model plans to run.
- ``user_data_retriever``: the full paginated result set of a ``SELECT *`` query.

The OAuth token exchange is out of scope here: ``QBOProfile`` takes a
token provider coroutine and treats a falsy token as unusable credentials.
"""

from __future__ import annotations

import logging
import re
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ledger_agent.cache import Pages, cache_key
from ledger_agent.errors import ToolValidationError
from ledger_agent.registry import ToolCategory, ToolContext, ToolSpec
from ledger_agent.results import ToolCallResult, ToolDescriptor
from ledger_agent.retriever import HTTPConnection, PageRequest, PaginatedRetriever

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://quickbooks.api.intuit.com/v3/company"
SANDBOX_BASE_URL = "https://sandbox-quickbooks.api.intuit.com/v3/company"
MAX_EXPECTED_ROWS = 1000

_FROM_RE = re.compile(r"\bFROM\s+([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)

TokenProvider = Callable[[], Awaitable[str | None]]


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


@dataclass
class QBOProfile:
    """One connected QuickBooks company."""

    cbid: int
    realm_id: str
    token_provider: TokenProvider
    is_sandbox: bool = False

    @property
    def base_url(self) -> str:
        root = SANDBOX_BASE_URL if self.is_sandbox else PRODUCTION_BASE_URL
        return f"{root}/{self.realm_id}"


class QBOConnection:
    """``HTTPConnection`` over a ``QBOProfile``."""

    def __init__(self, profile: QBOProfile) -> None:
        self.profile = profile
        self._token: str | None = None

    @property
    def base_url(self) -> str:
        return self.profile.base_url

    @property
    def scope_id(self) -> str:
        return str(self.profile.cbid)

    async def authenticate(self) -> str | None:
        self._token = await self.profile.token_provider()
        return self._token

    def headers(self) -> dict[str, str]:
        if not self._token:
            raise RuntimeError(f"No valid access token for account {self.profile.cbid}; call authenticate() first")
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }


def query_table(query: str) -> str:
    """Table named after FROM, which is also the key under QueryResponse."""
    match = _FROM_RE.search(query or "")
    return match.group(1) if match else "Unknown"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class QBOQueryTool(PaginatedRetriever):
    """Shared plumbing for tools that read the QBO query endpoint."""

    name = ""
    endpoint = "query"

    def __init__(self, context: ToolContext, connection: HTTPConnection) -> None:
        super().__init__(
            connection,
            cache=context.cache if context.config.cache_enabled else None,
            page_size=context.config.page_size,
            max_pages=context.config.max_pages,
            timeout=context.config.external_api_timeout_s,
            caller_id=context.tool_call_id,
            client=context.http_client,
        )
        self.context = context

    @property
    @abstractmethod
    def query(self) -> str:
        """The QBO query text, without paging clauses."""

    @abstractmethod
    def validate(self) -> None:
        """Raise ``ToolValidationError`` when the arguments cannot be run."""

    def response_key(self) -> str:
        return query_table(self.query)

    def count_items(self, payload: dict[str, Any]) -> int:
        items = (payload.get("QueryResponse") or {}).get(self.response_key()) or []
        return len(items) if isinstance(items, list) else 0

    def build_request(self, start_position: int, page_size: int) -> PageRequest:
        return PageRequest(path=self.endpoint, params={"query": self.query})

    def content_from(self, pages: Pages) -> dict[str, Any]:
        return dict(pages[0])

    async def call_tool(self) -> ToolCallResult:
        self.validate()
        pages = await self.retrieve()
        if not pages or not (pages[0].get("QueryResponse") or {}):
            return ToolCallResult.error(
                self.name,
                self.context.tool_call_id,
                self.context.thread_id,
                error_type="NoData",
                error_message="No data found",
            )
        return ToolCallResult.success(
            self.name, self.context.tool_call_id, self.context.thread_id, self.content_from(pages)
        )


class SchemaRetriever(QBOQueryTool):
    name = "schema_retriever"
    single_page = True

    def __init__(self, args: dict[str, Any], context: ToolContext, connection: HTTPConnection) -> None:
        super().__init__(context, connection)
        self.table_name = str(args.get("table_name") or "").strip()

    @property
    def query(self) -> str:
        return f"SELECT * FROM {self.table_name} MAXRESULTS 1"

    def validate(self) -> None:
        if not self.table_name:
            raise ToolValidationError("table_name is required")
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", self.table_name):
            raise ToolValidationError(f"Invalid table name: {self.table_name}")

    def response_key(self) -> str:
        return self.table_name

    def cache_key(self) -> str:
        return cache_key(self.name, self.context.cbid, self.table_name)


class SizeRetriever(QBOQueryTool):
    name = "size_retriever"
    single_page = True

    def __init__(self, args: dict[str, Any], context: ToolContext, connection: HTTPConnection) -> None:
        super().__init__(context, connection)
        self._query = str(args.get("query") or "")

    @property
    def query(self) -> str:
        return self._query

    def validate(self) -> None:
        if "COUNT(*)" not in self._query.upper():
            raise ToolValidationError(
                "Query is invalid, should be like SELECT COUNT(*) FROM Bill WHERE TxnDate = '2025-01-01'"
            )
        if "BETWEEN" in self._query.upper():
            raise ToolValidationError("BETWEEN clause is not supported")

    def cache_key(self) -> str:
        return cache_key(self.name, self.context.cbid, self.response_key(), params={"query": self._query})


class UserDataRetriever(QBOQueryTool):
    name = "user_data_retriever"

    def __init__(self, args: dict[str, Any], context: ToolContext, connection: HTTPConnection) -> None:
        super().__init__(context, connection)
        self.endpoint = str(args.get("endpoint") or "query").strip("/") or "query"
        parameters = args.get("parameters")
        self.parameters: dict[str, Any] = dict(parameters) if isinstance(parameters, dict) else {}
        self.expected_row_count = args.get("expected_row_count")

    @property
    def query(self) -> str:
        return str(self.parameters.get("query") or "")

    def validate(self) -> None:
        query = self.query.upper()
        if "SELECT *" not in query:
            raise ToolValidationError("Please select all columns by doing SELECT *")
        if "ORDER BY" not in query:
            raise ToolValidationError("ORDER BY clause is missing")
        expected = self.expected_row_count
        if isinstance(expected, bool) or not isinstance(expected, int) or expected < 0:
            raise ToolValidationError("Expected row count must be provided and greater than or equal to 0")
        if expected > MAX_EXPECTED_ROWS:
            raise ToolValidationError("Expected row count must be less than 1000")

    def build_request(self, start_position: int, page_size: int) -> PageRequest:
        params = dict(self.parameters)
        params["query"] = f"{self.query} STARTPOSITION {start_position} MAXRESULTS {page_size}"
        return PageRequest(path=self.endpoint, params=params)

    def content_from(self, pages: Pages) -> dict[str, Any]:
        rows = sum(self.count_items(p) for p in pages)
        return {"pages": pages, "row_count": rows}

    def cache_key(self) -> str:
        return cache_key(
            self.name,
            self.context.cbid,
            self.response_key(),
            params={"endpoint": self.endpoint, "parameters": self.parameters},
        )


def _with_connection(cls: type[QBOQueryTool]) -> Callable[[dict[str, Any], ToolContext], QBOQueryTool]:
    def factory(args: dict[str, Any], context: ToolContext) -> QBOQueryTool:
        if context.connection is None:
            raise RuntimeError(f"{cls.name} needs a company connection")
        return cls(args, context, context.connection)  # type: ignore[call-arg]

    return factory


# ---------------------------------------------------------------------------
# Registry entries
# ---------------------------------------------------------------------------

SCHEMA_RETRIEVER = ToolSpec(
    descriptor=ToolDescriptor(
        name=SchemaRetriever.name,
        description="Retrieve data schema from Quickbooks using Quickbooks HTTP platform API",
        parameters={
            "type": "object",
            "properties": {
                "table_name": {
                    "type": "string",
                    "description": "The name of the table to retrieve data schema for",
                },
            },
            "required": ["table_name"],
        },
    ),
    category=ToolCategory.METADATA,
    factory=_with_connection(SchemaRetriever),
)

SIZE_RETRIEVER = ToolSpec(
    descriptor=ToolDescriptor(
        name=SizeRetriever.name,
        description="Retrieve number of rows in a query from Quickbooks using Quickbooks HTTP platform API",
        parameters={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The query to retrieve number of rows from Quickbooks",
                },
            },
            "required": ["query"],
        },
    ),
    category=ToolCategory.METADATA,
    factory=_with_connection(SizeRetriever),
)

USER_DATA_RETRIEVER = ToolSpec(
    descriptor=ToolDescriptor(
        name=UserDataRetriever.name,
        description="Retrieve user's data from Quickbooks using Quickbooks HTTP platform API",
        parameters={
            "type": "object",
            "properties": {
                "endpoint": {"type": "string", "description": "The endpoint to query"},
                "parameters": {
                    "type": "object",
                    "description": "HTTP parameters for querying the endpoint",
                },
                "expected_row_count": {
                    "type": "integer",
                    "description": "The expected number of rows to be returned from the query",
                },
            },
            "required": ["endpoint", "parameters", "expected_row_count"],
        },
    ),
    category=ToolCategory.BULK,
    factory=_with_connection(UserDataRetriever),
)
