"""
Tool Reconciliation Engine
==========================

Resolves tool invocations left in ``call`` state before the model is invoked
again.

Rules
-----
- Automatic tool: run the executor; any exception becomes ``{"error": ...}``.
  The invocation moves to ``result`` either way.
- Confirmation-required tool:
    * no decision yet: left untouched,
    * ``rejected``: resolved with the rejection marker, executor not called,
    * ``approved``: executor runs exactly as for an automatic tool.
- Unknown tool name: resolved with an error result.
- Invocations already in ``result`` state are never touched, which makes
  reconciliation idempotent.

Executions within one pass run concurrently. Only ``state`` and ``result`` of
invocations change; message ids, order and other parts are preserved.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple, assert_never

from historylab.chat.messages import (
    Approval,
    Message,
    ReasoningPart,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
)
from historylab.chat.tools import ToolCapabilities, ToolCatalog, ToolSpec

logger = logging.getLogger(__name__)

REJECTION_MESSAGE = "User denied access to tool execution."


def rejection_result(tool_name: str) -> dict:
    """Result stored for a confirmation the user turned down."""
    return {
        "status": "rejected_by_user",
        "toolName": tool_name,
        "message": REJECTION_MESSAGE,
    }


def is_rejection(result: Any) -> bool:
    return isinstance(result, dict) and result.get("status") == "rejected_by_user"


async def run_executor(spec: ToolSpec, invocation: ToolInvocation, capabilities: ToolCapabilities) -> Any:
    """Run a tool executor, turning any failure into an error payload."""
    try:
        return await spec.executor(dict(invocation.args), capabilities)
    except Exception as e:
        logger.exception("Tool %s (%s) failed", spec.name, invocation.tool_call_id)
        return {"error": f"{type(e).__name__}: {e}"}


@dataclass
class ReconciliationResult:
    """
    Outcome of one reconciliation pass.

    Attributes
    ----------
    messages : list[Message]
        The reconciled history.
    resolved : list[ToolInvocation]
        Invocations resolved in this pass, in history order.
    """

    messages: List[Message]
    resolved: List[ToolInvocation] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.resolved)


class ToolReconciliationEngine:
    """
    Parameters
    ----------
    catalog : ToolCatalog
        Tools known to the conversation.
    """

    def __init__(self, catalog: ToolCatalog):
        self.catalog = catalog

    async def _resolve(self, invocation: ToolInvocation, decisions: Mapping[str, Approval],
                       capabilities: ToolCapabilities) -> Optional[ToolInvocation]:
        spec = self.catalog.get(invocation.tool_name)
        if spec is None:
            logger.warning("Unknown tool %s in call %s", invocation.tool_name, invocation.tool_call_id)
            return invocation.resolve({"error": f"Unknown tool: {invocation.tool_name}"})

        if not spec.requires_confirmation:
            return invocation.resolve(await run_executor(spec, invocation, capabilities))

        decision = decisions.get(invocation.tool_call_id)
        if decision is None:
            return None
        if decision is Approval.REJECTED:
            logger.info("Tool call %s (%s) rejected by user", invocation.tool_call_id, spec.name)
            return invocation.resolve(rejection_result(spec.name))
        if decision is Approval.APPROVED:
            logger.info("Tool call %s (%s) approved by user", invocation.tool_call_id, spec.name)
            return invocation.resolve(await run_executor(spec, invocation, capabilities))
        assert_never(decision)

    async def reconcile(self, messages: List[Message], decisions: Mapping[str, Approval],
                        capabilities: ToolCapabilities) -> ReconciliationResult:
        """
        Resolve every pending invocation that can be resolved.

        Parameters
        ----------
        messages : list[Message]
            Full conversation history, in order.
        decisions : Mapping[str, Approval]
            User decisions keyed by tool call id.
        capabilities : ToolCapabilities
            Handles handed to executors.

        Returns
        -------
        ReconciliationResult
            New message list plus the invocations resolved in this pass.
        """
        pending: List[Tuple[int, int, ToolInvocation]] = []
        for message_index, message in enumerate(messages):
            for part_index, part in enumerate(message.parts):
                if isinstance(part, (TextPart, ReasoningPart)):
                    continue
                elif isinstance(part, ToolInvocationPart):
                    if not part.tool_invocation.is_resolved:
                        pending.append((message_index, part_index, part.tool_invocation))
                else:
                    assert_never(part)

        if not pending:
            return ReconciliationResult(messages=list(messages))

        outcomes = await asyncio.gather(
            *(self._resolve(invocation, decisions, capabilities) for _, _, invocation in pending)
        )

        reconciled = list(messages)
        resolved: List[ToolInvocation] = []
        for (message_index, part_index, _), outcome in zip(pending, outcomes):
            if outcome is None:
                continue
            message = reconciled[message_index]
            parts = list(message.parts)
            parts[part_index] = ToolInvocationPart(tool_invocation=outcome)
            reconciled[message_index] = message.model_copy(update={"parts": parts})
            resolved.append(outcome)

        return ReconciliationResult(messages=reconciled, resolved=resolved)
