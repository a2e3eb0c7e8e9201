"""Command line entry points for ledger_agent.

Usage:
    python -m ledger_agent tools                       # tools published by the tool endpoint
    python -m ledger_agent tools --format json

    python -m ledger_agent chat --cbid 7 --thread-id 42 --user-id 3
    python -m ledger_agent chat --cbid 7 --thread-id 42 --user-id 3 --message "How many bills in May?"

    python -m ledger_agent events --thread-id 42       # audited rounds for a thread
    python -m ledger_agent events --thread-id 42 --limit 5 --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ledger_agent.agent import AgentSession
from ledger_agent.config import AgentConfig
from ledger_agent.conversation import Conversation
from ledger_agent.delivery import CallbackSink
from ledger_agent.errors import RegistryFetchError, RegistryMismatchError
from ledger_agent.modelio import LiteLLMProvider, ModelIO
from ledger_agent.monitor import UsageMonitor
from ledger_agent.prompts import system_prompt
from ledger_agent.registry import default_registry
from ledger_agent.runner import ToolCallRunner
from ledger_agent.store import InMemoryStore, SQLiteStore


def _print_message(payload: dict[str, Any]) -> None:
    print(f"\nassistant> {payload['message']}\n")


async def _tools(args: argparse.Namespace, config: AgentConfig) -> int:
    runner = ToolCallRunner(
        cbid=args.cbid, thread_id=0, registry=default_registry(), store=InMemoryStore(), config=config
    )
    try:
        descriptors = await runner.get_tool_descriptors()
    except (RegistryFetchError, RegistryMismatchError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps([d.to_openai() for d in descriptors], indent=2))
        return 0
    width = max(len(d.name) for d in descriptors)
    for d in descriptors:
        category = runner.registry.category_of(d.name).value if d.name in runner.registry else "-"
        print(f"{d.name:<{width}}  {category:<8}  {d.description}")
    return 0


async def _chat(args: argparse.Namespace, config: AgentConfig) -> int:
    store = SQLiteStore(config.db_path)
    runner = ToolCallRunner(
        cbid=args.cbid, thread_id=args.thread_id, registry=default_registry(), store=store, config=config
    )
    monitor = UsageMonitor(exact=args.exact_tokens)
    try:
        descriptors = await runner.get_tool_descriptors()
    except (RegistryFetchError, RegistryMismatchError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    transcript = config.db_path.parent / "transcripts" / f"{args.thread_id}.jsonl" if args.transcript else None
    conversation = Conversation(system_prompt(descriptors), transcript_path=transcript)
    session = AgentSession(
        ModelIO(conversation, runner, intent=args.intent, monitor=monitor),
        LiteLLMProvider(config),
        CallbackSink(_print_message),
        user_id=args.user_id,
        event_store=store,
        config=config,
        sender_id=args.user_id,
    )

    messages = [args.message] if args.message else None
    try:
        while True:
            if messages is not None:
                if not messages:
                    break
                text = messages.pop(0)
            else:
                try:
                    text = input("you> ").strip()
                except EOFError:
                    break
                if not text or text in {"exit", "quit"}:
                    break
            turn = await session.handle_user_message(text)
            if turn.exhausted:
                print(f"(stopped after {turn.rounds} rounds)", file=sys.stderr)
    finally:
        print(f"usage: {monitor.summary_line()}", file=sys.stderr)
        store.close()
    return 0


async def _events(args: argparse.Namespace, config: AgentConfig) -> int:
    store = SQLiteStore(config.db_path)
    try:
        events = await store.list_model_events(args.thread_id, limit=args.limit)
    finally:
        store.close()

    if args.format == "json":
        print(json.dumps([e.model_dump() for e in events], indent=2, default=str))
        return 0
    if not events:
        print("No model events found.")
        return 0
    for e in events:
        tools = ", ".join(c.get("function", {}).get("name", "?") for c in e.tool_calls) or "-"
        response = (e.response_content or "").replace("\n", " ")
        if len(response) > 80:
            response = response[:77] + "..."
        print(f"{e.id:>6}  {e.created_at[:19]}  {e.model_id:<14}  tools={tools}  {response}")
    return 0


def cmd_tools(args: argparse.Namespace) -> int:
    return asyncio.run(_tools(args, AgentConfig.from_env()))


def cmd_chat(args: argparse.Namespace) -> int:
    return asyncio.run(_chat(args, AgentConfig.from_env()))


def cmd_events(args: argparse.Namespace) -> int:
    return asyncio.run(_events(args, AgentConfig.from_env()))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ledger_agent",
        description="Tool-calling accounting assistant",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # tools
    tools_p = sub.add_parser("tools", help="List tools published by the tool endpoint")
    tools_p.add_argument("--cbid", type=int, default=0, help="Account id sent with the registry request")
    tools_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    # chat
    chat_p = sub.add_parser("chat", help="Talk to the agent")
    chat_p.add_argument("--cbid", type=int, required=True, help="Account the tools act on")
    chat_p.add_argument("--thread-id", type=int, required=True, help="Conversation thread id")
    chat_p.add_argument("--user-id", type=int, required=True, help="User receiving the replies")
    chat_p.add_argument("--message", help="Send one message and exit (REPL when omitted)")
    chat_p.add_argument("--intent", default="default", help="Intent label for usage accounting")
    chat_p.add_argument("--exact-tokens", action="store_true", help="Count tokens with the model tokenizer")
    chat_p.add_argument("--transcript", action="store_true", help="Append the transcript to a JSONL file")

    # events
    events_p = sub.add_parser("events", help="Show audited model rounds for a thread")
    events_p.add_argument("--thread-id", type=int, required=True, help="Conversation thread id")
    events_p.add_argument("--limit", type=int, default=20, help="Max events to show")
    events_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "tools":
        return cmd_tools(args)
    if args.command == "chat":
        return cmd_chat(args)
    return cmd_events(args)


if __name__ == "__main__":
    sys.exit(main())
