"""
Streaming Merge Channel
=======================

Single-producer / single-consumer channel carrying one turn's events from the
orchestrator to the transport (SSE or WebSocket).

Event types
-----------
``text-delta``, ``reasoning-delta``, ``tool-call``, ``tool-result``,
``step-finish``, ``error``, ``finish``.

Ordering
--------
Events are delivered in write order, with one exception: a ``tool-result``
whose ``tool-call`` has not been delivered yet is held back and released right
after that call. Calls already present in the conversation history count as
delivered, so results of calls resolved by reconciliation flow immediately.
"""

import asyncio
import json
import logging
from typing import Annotated, Any, AsyncIterator, Dict, Iterable, List, Literal, Optional, Union

from pydantic import Field

from historylab.chat.messages import ChatModel

logger = logging.getLogger(__name__)


class TextDelta(ChatModel):
    type: Literal["text-delta"] = "text-delta"
    text_delta: str


class ReasoningDelta(ChatModel):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    reasoning_delta: str


class ToolCallEvent(ChatModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict = Field(default_factory=dict)
    requires_confirmation: bool = False


class ToolResultEvent(ChatModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: Any = None


class StepFinish(ChatModel):
    """
    End of one model step.

    ``tool_calls`` lists ``{"toolCallId", "toolName", "args"}`` for every call
    the model requested in the step, confirmed or not.
    """

    type: Literal["step-finish"] = "step-finish"
    step: int
    finish_reason: str
    tool_calls: List[dict] = Field(default_factory=list)


class ErrorEvent(ChatModel):
    type: Literal["error"] = "error"
    error: str


class FinishEvent(ChatModel):
    type: Literal["finish"] = "finish"
    finish_reason: str
    message_id: Optional[str] = None


StreamEvent = Annotated[
    Union[TextDelta, ReasoningDelta, ToolCallEvent, ToolResultEvent, StepFinish, ErrorEvent, FinishEvent],
    Field(discriminator="type"),
]

_CLOSED = object()


class ChannelClosed(RuntimeError):
    """Raised when writing to a closed channel."""


class MergeChannel:
    """
    Ordered event channel for one turn.

    Parameters
    ----------
    announced_call_ids : Iterable[str]
        Tool call ids whose ``tool-call`` the client has already seen.
    """

    def __init__(self, announced_call_ids: Iterable[str] = ()):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._announced = set(announced_call_ids)
        self._held: Dict[str, List[ToolResultEvent]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def announce(self, call_ids: Iterable[str]) -> None:
        """Mark calls the client has already seen, e.g. from earlier turns."""
        self._announced.update(call_ids)

    def write(self, event) -> None:
        if self._closed:
            raise ChannelClosed("write after close")
        if isinstance(event, ToolResultEvent) and event.tool_call_id not in self._announced:
            self._held.setdefault(event.tool_call_id, []).append(event)
            return
        self._queue.put_nowait(event)
        if isinstance(event, ToolCallEvent):
            self._announced.add(event.tool_call_id)
            for held in self._held.pop(event.tool_call_id, []):
                self._queue.put_nowait(held)

    def close(self) -> None:
        """Close the channel. Results still waiting for their call are dropped."""
        if self._closed:
            return
        for call_id, events in self._held.items():
            logger.warning("Dropping %d tool result(s) for unannounced call %s", len(events), call_id)
        self._held.clear()
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator:
        """Yield events until the channel is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


def sse_frame(event) -> str:
    """Encode an event as a Server-Sent Events frame."""
    return f"data: {json.dumps(event.to_wire())}\n\n"
