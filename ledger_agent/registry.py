"""Explicit tool registry: tool name -> descriptor, category and factory.

A registry is constructed and passed to the service, wrapper and runner. No
module-level registry exists. The published descriptor set and the factory
set live on the same ``ToolSpec``, so they cannot drift apart; a runner
additionally checks its registry against the descriptors the tool endpoint
publishes before the first round.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Protocol

import httpx

from ledger_agent.cache import AsyncCachePolicy, CachePolicy
from ledger_agent.config import AgentConfig
from ledger_agent.errors import RegistryMismatchError, ToolNotFoundError
from ledger_agent.results import ToolCallResult, ToolDescriptor

if TYPE_CHECKING:
    from ledger_agent.retriever import HTTPConnection

logger = logging.getLogger(__name__)


class ToolCategory(str, Enum):
    """How the runner dispatches a tool."""

    METADATA = "metadata"
    """Cheap lookups, called directly through the tool endpoint."""
    BULK = "bulk"
    """Bulk retrievals, staged as validate-then-retrieve."""
    LOCAL = "local"
    """Executed in the runner's own process."""


@dataclass
class ToolContext:
    """Everything a tool instance needs besides its own arguments."""

    cbid: int
    thread_id: int
    tool_call_id: str
    config: AgentConfig = field(default_factory=AgentConfig)
    connection: HTTPConnection | None = None
    cache: CachePolicy | AsyncCachePolicy | None = None
    http_client: httpx.AsyncClient | None = None
    user_data: dict[str, Any] = field(default_factory=dict)


class Tool(Protocol):
    name: str

    def validate(self) -> None:
        """Raise ``ToolValidationError`` when arguments are unusable."""
        ...

    async def call_tool(self) -> ToolCallResult: ...


ToolFactory = Callable[[dict[str, Any], ToolContext], Tool]


@dataclass(frozen=True)
class ToolSpec:
    descriptor: ToolDescriptor
    category: ToolCategory
    factory: ToolFactory

    @property
    def name(self) -> str:
        return self.descriptor.name


class ToolRegistry:
    """Mapping from tool name to ``ToolSpec``."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool {spec.name!r} is already registered")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ToolNotFoundError(f"Tool {name} not found") from None

    def create(self, name: str, args: dict[str, Any], context: ToolContext) -> Tool:
        return self.get(name).factory(args, context)

    def category_of(self, name: str) -> ToolCategory:
        return self.get(name).category

    def names(self, category: ToolCategory | None = None) -> list[str]:
        return [s.name for s in self._specs.values() if category is None or s.category == category]

    def descriptors(self, *categories: ToolCategory) -> list[ToolDescriptor]:
        return [s.descriptor for s in self._specs.values() if not categories or s.category in categories]

    def validate_against(
        self,
        published: Iterable[ToolDescriptor],
        *,
        categories: tuple[ToolCategory, ...] = (ToolCategory.METADATA, ToolCategory.BULK),
    ) -> None:
        """Raise ``RegistryMismatchError`` if ``published`` and the local specs disagree."""
        published_names = {d.name for d in published}
        local_names = {s.name for s in self._specs.values() if s.category in categories}
        missing = sorted(local_names - published_names)
        unknown = sorted(published_names - set(self._specs))
        if missing or unknown:
            raise RegistryMismatchError(
                f"Tool registry mismatch: not published={missing}, no local factory={unknown}"
            )
        logger.debug("Tool registry matches %d published descriptors", len(published_names))

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


def default_registry() -> ToolRegistry:
    """Registry with the accounting retrievers and the local code runner."""
    from ledger_agent.executor import PYTHON_FUNCTION_RUNNER
    from ledger_agent.qbo import SCHEMA_RETRIEVER, SIZE_RETRIEVER, USER_DATA_RETRIEVER

    return ToolRegistry([SCHEMA_RETRIEVER, SIZE_RETRIEVER, USER_DATA_RETRIEVER, PYTHON_FUNCTION_RUNNER])
