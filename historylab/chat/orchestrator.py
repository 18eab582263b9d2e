"""
Turn Orchestrator
=================

Runs one chat turn end to end.

States
------
``received -> reconciling -> generating -> streaming -> completed | failed``

``reconciling -> completed`` is taken when the turn brings nothing for the
model to react to (no user text and no tool call resolved), and
``generating -> completed`` when the provider produced no event at all.

Steps
-----
1. Decode the conversation identity and make sure its analytics log exists.
2. Load the history, append the user message, reconcile pending tool calls
   against the conversation's decisions and persist the result. A message id
   already in the history is never appended again; it is answered only while
   it is still the last message.
3. Stream the provider's events into the merge channel while building the
   assistant message from the same events.
4. Persist the assistant message and record the turn in the analytics log.

A failure after the first persisted write keeps what was stored; the partial
assistant message is stored too, and the client receives an ``error`` event
followed by ``finish``. Analytics and persistence failures are logged and do
not interrupt the stream.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

from historylab.chat.conversation_log import ConversationLogAggregator
from historylab.chat.errors import InvalidTurnTransition, MessageStoreError
from historylab.chat.identity import ConversationIdentity, decode_conversation_id
from historylab.chat.messages import (
    Approval,
    Message,
    ReasoningPart,
    TextPart,
    ToolInvocationPart,
    user_message,
)
from historylab.chat.provider import ModelProvider
from historylab.chat.reconciliation import ToolReconciliationEngine
from historylab.chat.streaming import (
    ErrorEvent,
    FinishEvent,
    MergeChannel,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallEvent,
    ToolResultEvent,
)
from historylab.chat.tools import (
    FeedbackReportSink,
    ObjectStore,
    SearchBackend,
    ToolCapabilities,
    ToolCatalog,
    default_catalog,
)
from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

FINISH_NOTHING_TO_DO = "no-op"
FINISH_ERROR = "error"
TURN_FAILED_MESSAGE = "The assistant could not complete this response. Please try again."


class TurnState(str, Enum):
    RECEIVED = "received"
    RECONCILING = "reconciling"
    GENERATING = "generating"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    TurnState.RECEIVED: {TurnState.RECONCILING, TurnState.FAILED},
    TurnState.RECONCILING: {TurnState.GENERATING, TurnState.COMPLETED, TurnState.FAILED},
    TurnState.GENERATING: {TurnState.STREAMING, TurnState.COMPLETED, TurnState.FAILED},
    TurnState.STREAMING: {TurnState.COMPLETED, TurnState.FAILED},
    TurnState.COMPLETED: set(),
    TurnState.FAILED: set(),
}


class TurnStateMachine:
    def __init__(self):
        self.state = TurnState.RECEIVED
        self.history: List[TurnState] = [TurnState.RECEIVED]

    def advance(self, target: TurnState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTurnTransition(f"{self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    @property
    def finished(self) -> bool:
        return self.state in (TurnState.COMPLETED, TurnState.FAILED)


@dataclass
class TurnRequest:
    """
    One client turn.

    Attributes
    ----------
    conversation_id : str
        Opaque conversation id.
    text : str, optional
        New user message.
    message_id : str, optional
        Client-chosen id of the new user message.
    approvals : dict[str, Approval]
        Decisions on pending confirmation-required calls.
    metadata : dict
        Uninterpreted metadata bag handed to the model layer.
    """

    conversation_id: str
    text: Optional[str] = None
    message_id: Optional[str] = None
    approvals: Dict[str, Approval] = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)


@dataclass
class TurnOutcome:
    state: TurnState
    finish_reason: str
    messages: List[Message] = field(default_factory=list)
    assistant_message: Optional[Message] = None
    states: List[TurnState] = field(default_factory=list)


class AssistantMessageBuilder:
    """Accumulates stream events into one assistant message."""

    def __init__(self):
        self.message = Message(role="assistant")
        self._parts: list = []

    def apply(self, event) -> None:
        if isinstance(event, TextDelta):
            last = self._parts[-1] if self._parts else None
            if isinstance(last, TextPart):
                last.text += event.text_delta
            else:
                self._parts.append(TextPart(text=event.text_delta))
        elif isinstance(event, ReasoningDelta):
            last = self._parts[-1] if self._parts else None
            if isinstance(last, ReasoningPart):
                last.reasoning += event.reasoning_delta
            else:
                self._parts.append(ReasoningPart(reasoning=event.reasoning_delta))
        elif isinstance(event, ToolCallEvent):
            self._parts.append(ToolInvocationPart.model_validate({
                "toolInvocation": {
                    "toolCallId": event.tool_call_id,
                    "toolName": event.tool_name,
                    "args": event.args,
                }
            }))
        elif isinstance(event, ToolResultEvent):
            for index, part in enumerate(self._parts):
                if isinstance(part, ToolInvocationPart) and part.tool_invocation.tool_call_id == event.tool_call_id:
                    self._parts[index] = ToolInvocationPart(tool_invocation=part.tool_invocation.resolve(event.result))
                    break

    def build(self) -> Optional[Message]:
        if not self._parts:
            return None
        return self.message.model_copy(update={"parts": list(self._parts)})


class TurnOrchestrator:
    """
    Parameters
    ----------
    provider : ModelProvider
        Language model step loop.
    message_store
        Object with ``load(conversation_id)`` and ``save(conversation_id, messages)``.
    log_aggregator : ConversationLogAggregator
        Analytics log writer.
    catalog : ToolCatalog, optional
        Tools offered to the model; defaults to :func:`default_catalog`.
    search, objects, feedback_reports
        Collaborators placed in every :class:`ToolCapabilities`.
    max_steps : int, optional
        Step budget per turn; defaults to ``settings.MAX_STEPS``.
    """

    def __init__(self, provider: ModelProvider, message_store, log_aggregator: ConversationLogAggregator,
                 catalog: Optional[ToolCatalog] = None, search: Optional[SearchBackend] = None,
                 objects: Optional[ObjectStore] = None, feedback_reports: Optional[FeedbackReportSink] = None,
                 max_steps: Optional[int] = None):
        self.provider = provider
        self.message_store = message_store
        self.log_aggregator = log_aggregator
        self.catalog = catalog if catalog is not None else default_catalog()
        self.engine = ToolReconciliationEngine(self.catalog)
        self.search = search
        self.objects = objects
        self.feedback_reports = feedback_reports
        self.max_steps = max_steps or settings.MAX_STEPS

    def _capabilities(self, identity: ConversationIdentity, messages: List[Message], metadata: dict) -> ToolCapabilities:
        return ToolCapabilities(
            identity=identity,
            search=self.search,
            objects=self.objects,
            feedback_reports=self.feedback_reports,
            messages=list(messages),
            metadata=dict(metadata),
        )

    def _save(self, conversation_id: str, messages: List[Message]) -> None:
        try:
            self.message_store.save(conversation_id, messages)
        except MessageStoreError:
            logger.exception("Could not persist messages of %s", conversation_id)

    def _record_turn(self, identity: ConversationIdentity, steps: List[StepFinish], messages: List[Message],
                     user: Optional[Message], assistant: Optional[Message]) -> None:
        try:
            self.log_aggregator.record_turn(identity, steps, messages, user_message=user, assistant_message=assistant)
        except Exception:
            logger.exception("Could not record turn in conversation log %s", identity.log_key)

    async def run_turn(self, request: TurnRequest, decisions: Mapping[str, Approval],
                       channel: MergeChannel) -> TurnOutcome:
        """
        Run one turn, writing its events to `channel` and closing it at the end.

        Parameters
        ----------
        request : TurnRequest
            The client turn.
        decisions : Mapping[str, Approval]
            Every decision known for the conversation, this turn's included.
        channel : MergeChannel
            Destination of the turn's events.

        Returns
        -------
        TurnOutcome
            Final state, finish reason and resulting history.
        """
        machine = TurnStateMachine()
        messages: List[Message] = []
        builder = AssistantMessageBuilder()
        try:
            identity = decode_conversation_id(request.conversation_id)
            try:
                self.log_aggregator.init_log(identity)
            except Exception:
                logger.exception("Could not initialize conversation log %s", identity.log_key)

            messages = self.message_store.load(request.conversation_id)
            channel.announce(
                invocation.tool_call_id for message in messages for invocation in message.tool_invocations()
            )

            user = None
            known = {message.id: index for index, message in enumerate(messages)}
            if request.text and request.message_id in known:
                # Retry of a message already stored: answer it again only if it is still unanswered.
                if known[request.message_id] == len(messages) - 1:
                    user = messages[-1]
                logger.info("Turn on %s retries message %s", request.conversation_id, request.message_id)
            elif request.text:
                user = user_message(request.text, request.message_id)
                messages.append(user)

            machine.advance(TurnState.RECONCILING)
            capabilities = self._capabilities(identity, messages, request.metadata)
            reconciled = await self.engine.reconcile(messages, decisions, capabilities)
            messages = reconciled.messages
            for invocation in reconciled.resolved:
                channel.write(ToolResultEvent(
                    tool_call_id=invocation.tool_call_id,
                    tool_name=invocation.tool_name,
                    result=invocation.result,
                ))
            self._save(request.conversation_id, messages)

            if user is None and not reconciled.changed:
                logger.info("Turn on %s carries nothing new, skipping generation", request.conversation_id)
                machine.advance(TurnState.COMPLETED)
                channel.write(FinishEvent(finish_reason=FINISH_NOTHING_TO_DO))
                return TurnOutcome(machine.state, FINISH_NOTHING_TO_DO, messages, None, machine.history)

            machine.advance(TurnState.GENERATING)
            capabilities.messages = list(messages)
            steps: List[StepFinish] = []
            finish_reason = FINISH_NOTHING_TO_DO
            async for event in self.provider.stream(messages, self.catalog, self.max_steps,
                                                    capabilities, request.metadata):
                if machine.state is TurnState.GENERATING:
                    machine.advance(TurnState.STREAMING)
                if isinstance(event, FinishEvent):
                    finish_reason = event.finish_reason
                    continue
                if isinstance(event, StepFinish):
                    steps.append(event)
                builder.apply(event)
                channel.write(event)

            assistant = builder.build()
            if assistant is not None:
                messages.append(assistant)
            self._save(request.conversation_id, messages)
            self._record_turn(identity, steps, messages, user, assistant)

            machine.advance(TurnState.COMPLETED)
            channel.write(FinishEvent(
                finish_reason=finish_reason,
                message_id=assistant.id if assistant is not None else None,
            ))
            return TurnOutcome(machine.state, finish_reason, messages, assistant, machine.history)

        except Exception:
            logger.exception("Turn on %s failed in state %s", request.conversation_id, machine.state.value)
            if not machine.finished:
                machine.advance(TurnState.FAILED)
            partial = builder.build()
            if partial is not None:
                messages.append(partial)
                self._save(request.conversation_id, messages)
            if not channel.closed:
                channel.write(ErrorEvent(error=TURN_FAILED_MESSAGE))
                channel.write(FinishEvent(finish_reason=FINISH_ERROR))
            return TurnOutcome(machine.state, FINISH_ERROR, messages, partial, machine.history)
        finally:
            channel.close()
