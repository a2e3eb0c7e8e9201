"""Agent controller: run rounds until the model gives a final answer.

Usage::

    runner = ToolCallRunner(cbid=cbid, thread_id=thread_id, registry=default_registry(), store=store)
    conversation = Conversation(system_prompt(await runner.get_tool_descriptors()))
    session = AgentSession(
        ModelIO(conversation, runner),
        LiteLLMProvider(config),
        QueueSink(),
        user_id=user_id,
        event_store=store,
    )
    turn = await session.handle_user_message("What did we spend on rent in March?")

Each round delivers any assistant text to the user right away, then
appends an audit ``ModelEvent`` (best-effort). The loop is bounded by
``AgentConfig.max_rounds``; when the bound is hit the user gets a neutral
fallback message and ``TurnResult.exhausted`` is set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ledger_agent.config import AgentConfig
from ledger_agent.delivery import ChatMessage, DeliverySink
from ledger_agent.modelio import ModelIO, ModelOutput, ModelProvider
from ledger_agent.store import ModelEvent, ModelEventStore

logger = logging.getLogger(__name__)

EXHAUSTED_MESSAGE = (
    "Sorry, I wasn't able to finish working on that request. "
    "Could you rephrase it or narrow it down?"
)


@dataclass
class TurnResult:
    final_answer: str | None
    rounds: int
    exhausted: bool = False
    outputs: list[ModelOutput] = field(default_factory=list)


class AgentSession:
    """Drives one conversation thread through user turns."""

    def __init__(
        self,
        model_io: ModelIO,
        provider: ModelProvider,
        sink: DeliverySink,
        *,
        user_id: int,
        event_store: ModelEventStore | None = None,
        config: AgentConfig | None = None,
        sender_id: int | None = None,
    ) -> None:
        self.model_io = model_io
        self.provider = provider
        self.sink = sink
        self.user_id = user_id
        self.event_store = event_store
        self.config = config or model_io.runner.config
        self.sender_id = sender_id

    @property
    def thread_id(self) -> int:
        return self.model_io.runner.thread_id

    async def handle_user_message(self, text: str, user_message_id: int | None = None) -> TurnResult:
        """Append the user's message and loop until a final answer or the round bound."""
        self.model_io.conversation.add_user_turn(text)
        outputs: list[ModelOutput] = []

        for round_no in range(1, self.config.max_rounds + 1):
            prior_transcript = self.model_io.conversation.json_after_system_prompt()
            output = await self.model_io.run_model_once(self.provider)
            outputs.append(output)
            if output.response_content:
                await self._deliver(output.response_content)
            await self._audit(output, prior_transcript, user_message_id)
            if not output.should_loop_model:
                logger.info("Thread %s answered after %d rounds", self.thread_id, round_no)
                return TurnResult(output.response_content, round_no, outputs=outputs)

        logger.warning(
            "Thread %s hit max_rounds=%d without a final answer", self.thread_id, self.config.max_rounds
        )
        await self._deliver(EXHAUSTED_MESSAGE)
        return TurnResult(None, self.config.max_rounds, exhausted=True, outputs=outputs)

    async def _deliver(self, text: str) -> None:
        try:
            await self.sink.send(ChatMessage(user_id=self.user_id, thread_id=self.thread_id, message=text))
        except Exception:
            logger.error("Delivery to user %s failed (thread=%s)", self.user_id, self.thread_id, exc_info=True)

    async def _audit(self, output: ModelOutput, prior_transcript: str, user_message_id: int | None) -> None:
        """Append the round's ModelEvent. Never raises."""
        if self.event_store is None:
            return
        conversation = self.model_io.conversation
        try:
            event = await self.event_store.append_model_event(
                ModelEvent(
                    thread_id=self.thread_id,
                    sender_id=self.sender_id,
                    model_id=self.provider.model,
                    system_prompt=conversation.system_prompt,
                    input_prompt=prior_transcript,
                    tool_calls=[c.to_message() for c in output.tool_calls],
                    response_content=output.response_content if output.error is None else output.error,
                    assistant_message_id=user_message_id,
                    cb_profile_id=self.model_io.runner.cbid,
                )
            )
            self.model_io.runner.request_model_event_id = event.id
        except Exception:
            logger.error("Could not record model event (thread=%s)", self.thread_id, exc_info=True)
