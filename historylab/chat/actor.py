"""
Conversation actors.

One :class:`ConversationActor` owns each conversation. It keeps the user's
confirmation decisions and runs turns one at a time under an ``asyncio.Lock``.
Each turn runs as its own task, so a client disconnecting from the stream does
not cancel tool executions already under way.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Set

from historylab.chat.messages import Approval
from historylab.chat.orchestrator import TurnOrchestrator, TurnOutcome, TurnRequest
from historylab.chat.streaming import MergeChannel

logger = logging.getLogger(__name__)


@dataclass
class TurnHandle:
    task: "asyncio.Task[TurnOutcome]"
    channel: MergeChannel


class ConversationActor:
    """
    Serializes the turns of one conversation.

    Attributes
    ----------
    decisions : dict[str, Approval]
        Every decision received for this conversation, keyed by tool call id.
        Decisions whose call is not resolved yet stay here with no expiry.
    """

    def __init__(self, conversation_id: str, orchestrator: TurnOrchestrator):
        self.conversation_id = conversation_id
        self.orchestrator = orchestrator
        self.decisions: Dict[str, Approval] = {}
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, request: TurnRequest) -> TurnHandle:
        """
        Queue a turn and return immediately.

        Returns
        -------
        TurnHandle
            The running turn task and the channel carrying its events.
        """
        channel = MergeChannel()
        task = asyncio.create_task(self._run(request, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return TurnHandle(task=task, channel=channel)

    async def _run(self, request: TurnRequest, channel: MergeChannel) -> TurnOutcome:
        async with self._lock:
            self.decisions.update(request.approvals)
            outcome = await self.orchestrator.run_turn(request, dict(self.decisions), channel)
            resolved = {
                invocation.tool_call_id
                for message in outcome.messages
                for invocation in message.tool_invocations()
                if invocation.is_resolved
            }
            for call_id in resolved & set(self.decisions):
                del self.decisions[call_id]
            logger.info("Turn on %s finished: %s (%s)", self.conversation_id,
                        outcome.state.value, outcome.finish_reason)
            return outcome


class ConversationRegistry:
    """Keeps exactly one actor per conversation id."""

    def __init__(self, orchestrator: TurnOrchestrator):
        self.orchestrator = orchestrator
        self._actors: Dict[str, ConversationActor] = {}

    def actor(self, conversation_id: str) -> ConversationActor:
        actor = self._actors.get(conversation_id)
        if actor is None:
            actor = ConversationActor(conversation_id, self.orchestrator)
            self._actors[conversation_id] = actor
        return actor

    def __len__(self) -> int:
        return len(self._actors)
