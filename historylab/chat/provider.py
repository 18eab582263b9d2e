"""
Model Provider
==============

Contract between the turn orchestrator and the language model, plus the
default LangChain/OpenAI implementation.

A provider receives the reconciled history, the tool catalog, a step budget,
the tool capability bundle and the turn's metadata bag, and yields stream
events:

- ``text-delta`` / ``reasoning-delta`` while the model writes,
- ``tool-call`` for every call the model requests,
- ``tool-result`` for automatic tools it executed,
- ``step-finish`` after each model step,
- exactly one final ``finish`` whose reason is ``stop``,
  ``awaiting-confirmation`` or ``max-steps``.

Automatic tools run inside the step loop, concurrently within a step.
A confirmation-required call ends the turn after the current step; it is
resolved by reconciliation once the user decides.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional, Protocol, assert_never
from uuid import uuid4

from json_repair import repair_json
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from historylab.chat.messages import Message, ReasoningPart, TextPart, ToolInvocation, ToolInvocationPart
from historylab.chat.prompts import SYSTEM_PROMPT
from historylab.chat.reconciliation import run_executor
from historylab.chat.streaming import (
    FinishEvent,
    ReasoningDelta,
    StepFinish,
    TextDelta,
    ToolCallEvent,
    ToolResultEvent,
)
from historylab.chat.tools import ToolCapabilities, ToolCatalog
from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

FINISH_STOP = "stop"
FINISH_AWAITING_CONFIRMATION = "awaiting-confirmation"
FINISH_MAX_STEPS = "max-steps"
FINISH_TOOL_CALLS = "tool-calls"


class ModelProvider(Protocol):
    def stream(self, messages: List[Message], catalog: ToolCatalog, max_steps: int,
               capabilities: ToolCapabilities, metadata: dict) -> AsyncIterator: ...


def lc_text_from_content(content) -> str:
    """Normalize LangChain message content (str or list of parts) to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return str(content)


def _tool_content(result) -> str:
    return result if isinstance(result, str) else json.dumps(result, default=str)


def to_langchain_messages(messages: List[Message], system_prompt: str = SYSTEM_PROMPT) -> List[BaseMessage]:
    """
    Convert the history into LangChain messages.

    Assistant messages are split at every point where text follows tool calls,
    so each tool round-trip keeps its position. Unresolved calls are left out
    because the model API requires a tool response for every call it sees.
    """
    converted: List[BaseMessage] = [SystemMessage(content=system_prompt)]
    for message in messages:
        if message.role == "user":
            converted.append(HumanMessage(content=message.text(), id=message.id))
            continue

        text: List[str] = []
        calls: List[ToolInvocation] = []

        def flush():
            if not text and not calls:
                return
            converted.append(AIMessage(
                content="".join(text),
                tool_calls=[
                    {"name": call.tool_name, "args": dict(call.args), "id": call.tool_call_id}
                    for call in calls
                ],
            ))
            for call in calls:
                converted.append(ToolMessage(content=_tool_content(call.result), tool_call_id=call.tool_call_id))
            text.clear()
            calls.clear()

        for part in message.parts:
            if isinstance(part, TextPart):
                if calls:
                    flush()
                text.append(part.text)
            elif isinstance(part, ToolInvocationPart):
                if part.tool_invocation.is_resolved:
                    calls.append(part.tool_invocation)
            elif isinstance(part, ReasoningPart):
                continue
            else:
                assert_never(part)
        flush()
    return converted


def parse_tool_calls(message) -> List[dict]:
    """
    Tool calls of an aggregated ``AIMessageChunk``.

    Calls whose arguments failed to parse are repaired with ``json_repair``.
    """
    calls = [
        {"id": call.get("id") or f"call_{uuid4().hex}", "name": call["name"], "args": call.get("args") or {}}
        for call in getattr(message, "tool_calls", None) or []
    ]
    for invalid in getattr(message, "invalid_tool_calls", None) or []:
        if not invalid.get("name"):
            continue
        try:
            args = json.loads(repair_json(invalid.get("args") or "{}"))
        except ValueError:
            args = {}
        if not isinstance(args, dict):
            args = {}
        logger.warning("Repaired malformed arguments of tool call %s (%s)", invalid.get("id"), invalid["name"])
        calls.append({"id": invalid.get("id") or f"call_{uuid4().hex}", "name": invalid["name"], "args": args})
    return calls


class LangChainModelProvider:
    """
    Step loop over a LangChain chat model with bound tools.

    Parameters
    ----------
    model : BaseChatModel, optional
        Chat model; defaults to ``ChatOpenAI`` configured from settings.
    system_prompt : str
        System prompt prepended to every request.
    """

    def __init__(self, model: Optional[BaseChatModel] = None, system_prompt: str = SYSTEM_PROMPT):
        self.model = model or ChatOpenAI(model=settings.OPEN_AI_MODEL, api_key=settings.API_KEY, temperature=0.2)
        self.system_prompt = system_prompt

    async def stream(self, messages: List[Message], catalog: ToolCatalog, max_steps: int,
                     capabilities: ToolCapabilities, metadata: dict) -> AsyncIterator:
        history = to_langchain_messages(messages, self.system_prompt)
        bound = self.model.bind_tools([spec.as_openai_tool() for spec in catalog])
        config = {"metadata": dict(metadata), "tags": ["historylab-chat"]}

        for step in range(1, max_steps + 1):
            aggregate = None
            async for chunk in bound.astream(history, config=config):
                text = lc_text_from_content(chunk.content)
                if text:
                    yield TextDelta(text_delta=text)
                reasoning = (chunk.additional_kwargs or {}).get("reasoning_content")
                if reasoning:
                    yield ReasoningDelta(reasoning_delta=reasoning)
                aggregate = chunk if aggregate is None else aggregate + chunk

            if aggregate is None:
                yield StepFinish(step=step, finish_reason=FINISH_STOP)
                yield FinishEvent(finish_reason=FINISH_STOP)
                return

            calls = parse_tool_calls(aggregate)
            step_calls = [{"toolCallId": c["id"], "toolName": c["name"], "args": c["args"]} for c in calls]
            if not calls:
                yield StepFinish(step=step, finish_reason=FINISH_STOP)
                yield FinishEvent(finish_reason=FINISH_STOP)
                return

            history.append(AIMessage(
                content=lc_text_from_content(aggregate.content),
                tool_calls=[{"name": c["name"], "args": c["args"], "id": c["id"]} for c in calls],
            ))

            awaiting_confirmation = False
            runnable = []
            for call in calls:
                spec = catalog.get(call["name"])
                yield ToolCallEvent(
                    tool_call_id=call["id"],
                    tool_name=call["name"],
                    args=call["args"],
                    requires_confirmation=catalog.requires_confirmation(call["name"]),
                )
                if spec is None:
                    result = {"error": f"Unknown tool: {call['name']}"}
                    history.append(ToolMessage(content=_tool_content(result), tool_call_id=call["id"]))
                    yield ToolResultEvent(tool_call_id=call["id"], tool_name=call["name"], result=result)
                elif spec.requires_confirmation:
                    awaiting_confirmation = True
                else:
                    runnable.append((spec, call))

            tasks = [asyncio.ensure_future(self._execute(spec, call, capabilities)) for spec, call in runnable]
            for finished in asyncio.as_completed(tasks):
                call, result = await finished
                history.append(ToolMessage(content=_tool_content(result), tool_call_id=call["id"]))
                yield ToolResultEvent(tool_call_id=call["id"], tool_name=call["name"], result=result)

            if awaiting_confirmation:
                yield StepFinish(step=step, finish_reason=FINISH_AWAITING_CONFIRMATION, tool_calls=step_calls)
                yield FinishEvent(finish_reason=FINISH_AWAITING_CONFIRMATION)
                return
            yield StepFinish(step=step, finish_reason=FINISH_TOOL_CALLS, tool_calls=step_calls)

        logger.info("Step budget of %d exhausted", max_steps)
        yield FinishEvent(finish_reason=FINISH_MAX_STEPS)

    @staticmethod
    async def _execute(spec, call: dict, capabilities: ToolCapabilities):
        invocation = ToolInvocation(tool_call_id=call["id"], tool_name=call["name"], args=call["args"])
        return call, await run_executor(spec, invocation, capabilities)
