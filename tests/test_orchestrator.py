"""Tests for TurnOrchestrator using a scripted provider and in-memory stores."""

from __future__ import annotations

import asyncio

import pytest

from historylab.chat.conversation_log import ConversationLogAggregator
from historylab.chat.errors import InvalidTurnTransition
from historylab.chat.messages import Approval, ToolState
from historylab.chat.orchestrator import (
    FINISH_ERROR,
    FINISH_NOTHING_TO_DO,
    TURN_FAILED_MESSAGE,
    TurnOrchestrator,
    TurnRequest,
    TurnState,
    TurnStateMachine,
)
from historylab.chat.reconciliation import REJECTION_MESSAGE
from historylab.chat.streaming import (
    ErrorEvent,
    FinishEvent,
    MergeChannel,
    StepFinish,
    TextDelta,
    ToolCallEvent,
    ToolResultEvent,
)
from historylab.database.core.stores import SqlMessageStore

from tests.helpers import (
    InMemoryLogStore,
    InMemoryMessageStore,
    ScriptedProvider,
    StubReportSink,
    search_turn_script,
)


def _orchestrator(provider, message_store=None, log_store=None, **kwargs) -> TurnOrchestrator:
    return TurnOrchestrator(
        provider=provider,
        message_store=message_store or InMemoryMessageStore(),
        log_aggregator=ConversationLogAggregator(log_store or InMemoryLogStore()),
        **kwargs,
    )


def _run(orchestrator: TurnOrchestrator, request: TurnRequest, decisions=None):
    async def scenario():
        channel = MergeChannel()
        outcome = await orchestrator.run_turn(request, decisions or request.approvals, channel)
        events = [event async for event in channel.events()]
        return outcome, events

    return asyncio.run(scenario())


def _feedback_call_script(call_id: str = "call_fb") -> list:
    args = {"description": "Search returned nothing for 1956"}
    return [
        TextDelta(text_delta="I can file a report."),
        ToolCallEvent(tool_call_id=call_id, tool_name="submitFeedback", args=args, requires_confirmation=True),
        StepFinish(step=1, finish_reason="awaiting-confirmation", tool_calls=[
            {"toolCallId": call_id, "toolName": "submitFeedback", "args": args},
        ]),
        FinishEvent(finish_reason="awaiting-confirmation"),
    ]


def test_state_machine_rejects_illegal_transitions() -> None:
    machine = TurnStateMachine()
    machine.advance(TurnState.RECONCILING)

    with pytest.raises(InvalidTurnTransition):
        machine.advance(TurnState.STREAMING)

    machine.advance(TurnState.COMPLETED)
    assert machine.finished
    with pytest.raises(InvalidTurnTransition):
        machine.advance(TurnState.FAILED)


def test_search_turn_streams_persists_and_logs(conversation_id, identity) -> None:
    store = InMemoryMessageStore()
    logs = InMemoryLogStore()
    provider = ScriptedProvider([search_turn_script()])
    orchestrator = _orchestrator(provider, store, logs)

    outcome, events = _run(orchestrator, TurnRequest(conversation_id, text="Cuban missile crisis?", message_id="u1",
                                                     metadata={"bearerToken": "t"}))

    assert outcome.state is TurnState.COMPLETED
    assert outcome.finish_reason == "stop"
    assert outcome.states == [TurnState.RECEIVED, TurnState.RECONCILING, TurnState.GENERATING,
                              TurnState.STREAMING, TurnState.COMPLETED]
    assert [type(e).__name__ for e in events] == [
        "ToolCallEvent", "ToolResultEvent", "StepFinish", "TextDelta", "TextDelta", "StepFinish", "FinishEvent",
    ]
    assert events[-1].message_id == outcome.assistant_message.id
    assert provider.calls[0]["metadata"] == {"bearerToken": "t"}

    saved = store.load(conversation_id)
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[0].id == "u1"
    invocation = saved[1].tool_invocations()[0]
    assert invocation.state is ToolState.RESULT
    assert saved[1].text() == "See {{cite:docs/a.txt}}."

    log = logs.data[identity.log_key]
    assert log["messageCount"] == 2
    assert log["toolCalls"]["byType"] == {"queryCollection": 1}
    assert log["queries"]["details"][0]["documentResults"][0]["storageKey"] == "docs/a.txt"


def test_confirmation_then_approval(conversation_id, identity) -> None:
    store = InMemoryMessageStore()
    sink = StubReportSink()
    provider = ScriptedProvider([
        _feedback_call_script(),
        [TextDelta(text_delta="Thanks, filed."), FinishEvent(finish_reason="stop")],
    ])
    orchestrator = _orchestrator(provider, store, feedback_reports=sink)

    first, first_events = _run(orchestrator, TurnRequest(conversation_id, text="Please report empty results"))

    assert first.finish_reason == "awaiting-confirmation"
    pending = store.load(conversation_id)[1].tool_invocations()[0]
    assert pending.state is ToolState.CALL
    assert sink.reports == []

    approvals = {"call_fb": Approval.APPROVED}
    second, second_events = _run(orchestrator, TurnRequest(conversation_id, approvals=approvals))

    assert second.state is TurnState.COMPLETED
    result_event = second_events[0]
    assert isinstance(result_event, ToolResultEvent) and result_event.tool_call_id == "call_fb"
    assert result_event.result["success"] is True
    assert len(sink.reports) == 1
    saved = store.load(conversation_id)
    assert [m.role for m in saved] == ["user", "assistant", "assistant"]
    assert saved[1].tool_invocations()[0].result["reportId"] == sink.reports[0]["reportId"]
    # the model saw the resolved call on the second turn
    seen = provider.calls[1]["messages"][1].tool_invocations()[0]
    assert seen.is_resolved


def test_rejection_stores_marker(conversation_id) -> None:
    store = InMemoryMessageStore()
    sink = StubReportSink()
    provider = ScriptedProvider([_feedback_call_script(), [FinishEvent(finish_reason="stop")]])
    orchestrator = _orchestrator(provider, store, feedback_reports=sink)
    _run(orchestrator, TurnRequest(conversation_id, text="report it"))

    _run(orchestrator, TurnRequest(conversation_id, approvals={"call_fb": Approval.REJECTED}))

    result = store.load(conversation_id)[1].tool_invocations()[0].result
    assert result["message"] == REJECTION_MESSAGE
    assert sink.reports == []


def test_turn_with_nothing_new_skips_generation(conversation_id) -> None:
    provider = ScriptedProvider([_feedback_call_script()])
    orchestrator = _orchestrator(provider)
    _run(orchestrator, TurnRequest(conversation_id, text="report it"))

    outcome, events = _run(orchestrator, TurnRequest(conversation_id, approvals={"unknown-call": Approval.APPROVED}))

    assert outcome.finish_reason == FINISH_NOTHING_TO_DO
    assert outcome.states[-1] is TurnState.COMPLETED
    assert events == [FinishEvent(finish_reason=FINISH_NOTHING_TO_DO)]
    assert len(provider.calls) == 1


def test_provider_failure_keeps_partial_message(conversation_id) -> None:
    store = InMemoryMessageStore()
    provider = ScriptedProvider([[TextDelta(text_delta="Partial ans")]], error=RuntimeError("stream reset"))
    orchestrator = _orchestrator(provider, store)

    outcome, events = _run(orchestrator, TurnRequest(conversation_id, text="question"))

    assert outcome.state is TurnState.FAILED
    assert outcome.finish_reason == FINISH_ERROR
    assert events[-2] == ErrorEvent(error=TURN_FAILED_MESSAGE)
    assert events[-1] == FinishEvent(finish_reason=FINISH_ERROR)
    saved = store.load(conversation_id)
    assert [m.role for m in saved] == ["user", "assistant"]
    assert saved[1].text() == "Partial ans"


def test_log_store_outage_does_not_break_the_stream(conversation_id) -> None:
    store = InMemoryMessageStore()
    provider = ScriptedProvider([[TextDelta(text_delta="Hi"), FinishEvent(finish_reason="stop")]])
    orchestrator = _orchestrator(provider, store, InMemoryLogStore(fail=True))

    outcome, events = _run(orchestrator, TurnRequest(conversation_id, text="hello"))

    assert outcome.state is TurnState.COMPLETED
    assert events[-1].finish_reason == "stop"
    assert len(store.load(conversation_id)) == 2


def test_undecodable_conversation_id_still_runs(identity) -> None:
    logs = InMemoryLogStore()
    provider = ScriptedProvider([[TextDelta(text_delta="Hi"), FinishEvent(finish_reason="stop")]])
    orchestrator = _orchestrator(provider, log_store=logs)

    outcome, _ = _run(orchestrator, TurnRequest("%%%", text="hello"))

    assert outcome.state is TurnState.COMPLETED
    assert all(key.startswith("unknown-") for key in logs.data)


@pytest.mark.usefixtures("clean_db")
def test_retried_message_id_keeps_history_order(conversation_id) -> None:
    store = SqlMessageStore()
    provider = ScriptedProvider([[TextDelta(text_delta="A1"), FinishEvent(finish_reason="stop")]])
    orchestrator = _orchestrator(provider, store)

    _run(orchestrator, TurnRequest(conversation_id, text="q1", message_id="u1"))
    outcome, events = _run(orchestrator, TurnRequest(conversation_id, text="q1", message_id="u1"))

    assert outcome.finish_reason == FINISH_NOTHING_TO_DO
    assert events == [FinishEvent(finish_reason=FINISH_NOTHING_TO_DO)]
    assert len(provider.calls) == 1
    saved = store.load(conversation_id)
    assert [(m.role, m.text()) for m in saved] == [("user", "q1"), ("assistant", "A1")]
    assert saved[0].id == "u1"


@pytest.mark.usefixtures("clean_db")
def test_retry_of_unanswered_message_answers_it_once(conversation_id) -> None:
    store = SqlMessageStore()
    failing = _orchestrator(ScriptedProvider([[]], error=RuntimeError("timeout")), store)
    _run(failing, TurnRequest(conversation_id, text="q1", message_id="u1"))

    provider = ScriptedProvider([[TextDelta(text_delta="A1"), FinishEvent(finish_reason="stop")]])
    outcome, _ = _run(_orchestrator(provider, store), TurnRequest(conversation_id, text="q1", message_id="u1"))

    assert outcome.state is TurnState.COMPLETED
    assert [m.id for m in provider.calls[0]["messages"]] == ["u1"]
    assert [(m.role, m.text()) for m in store.load(conversation_id)] == [("user", "q1"), ("assistant", "A1")]
