"""Tool-calling agent for accounting data.

The agent drives a chat model through rounds of "call tools, read results,
decide whether to continue". Tools run under a three-phase protocol
(validate, schedule, retrieve) on top of a paginated, cache-through HTTP
retriever.

Usage:
    from ledger_agent import (
        AgentConfig, AgentSession, Conversation, InMemoryStore, LiteLLMProvider,
        ModelIO, QueueSink, ToolCallRunner, default_registry, system_prompt,
    )

    config = AgentConfig.from_env()
    store = InMemoryStore()
    runner = ToolCallRunner(cbid=7, thread_id=42, registry=default_registry(), store=store, config=config)
    conversation = Conversation(system_prompt(await runner.get_tool_descriptors()))
    session = AgentSession(ModelIO(conversation, runner), LiteLLMProvider(config), QueueSink(),
                           user_id=3, event_store=store)
    turn = await session.handle_user_message("How many unpaid bills do we have?")
"""

from ledger_agent.agent import AgentSession, TurnResult
from ledger_agent.cache import FilePageCache, LRUPageCache, cache_key
from ledger_agent.config import AgentConfig
from ledger_agent.conversation import Conversation
from ledger_agent.delivery import CallbackSink, ChatMessage, QueueSink
from ledger_agent.errors import (
    CredentialError,
    LedgerAgentError,
    ProviderError,
    RegistryFetchError,
    RegistryMismatchError,
    ToolValidationError,
    TransportError,
)
from ledger_agent.modelio import LiteLLMProvider, ModelIO, ModelOutput, ModelOutputParser
from ledger_agent.monitor import UsageMonitor, count_tokens
from ledger_agent.prompts import PromptTemplate, load_template, system_prompt
from ledger_agent.registry import ToolCategory, ToolContext, ToolRegistry, ToolSpec, default_registry
from ledger_agent.results import ToolCallRequest, ToolCallResult, ToolDescriptor
from ledger_agent.retriever import PaginatedRetriever
from ledger_agent.runner import ToolCallRunner
from ledger_agent.store import InMemoryStore, ModelEvent, SQLiteStore, Task, TaskStatus
from ledger_agent.worker import TaskWorker
from ledger_agent.wrapper import QueryType, ToolCallWrapper, ToolService

__all__ = [
    "AgentConfig",
    "AgentSession",
    "CallbackSink",
    "ChatMessage",
    "Conversation",
    "CredentialError",
    "FilePageCache",
    "InMemoryStore",
    "LRUPageCache",
    "LedgerAgentError",
    "LiteLLMProvider",
    "ModelEvent",
    "ModelIO",
    "ModelOutput",
    "ModelOutputParser",
    "PaginatedRetriever",
    "PromptTemplate",
    "ProviderError",
    "QueryType",
    "QueueSink",
    "RegistryFetchError",
    "RegistryMismatchError",
    "SQLiteStore",
    "Task",
    "TaskStatus",
    "TaskWorker",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallRunner",
    "ToolCallWrapper",
    "ToolCategory",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolService",
    "ToolSpec",
    "ToolValidationError",
    "TransportError",
    "TurnResult",
    "UsageMonitor",
    "cache_key",
    "count_tokens",
    "default_registry",
    "load_template",
    "system_prompt",
]
