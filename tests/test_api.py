"""Tests for the HTTP and WebSocket surface, with in-memory collaborators."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from historylab.api.utils import create_access_token
from historylab.chat.actor import ConversationRegistry
from historylab.chat.conversation_log import ConversationLogAggregator
from historylab.chat.orchestrator import TurnOrchestrator, TurnRequest, TurnState
from historylab.chat.streaming import FinishEvent, TextDelta
from historylab.main import create_app, forward_events

from tests.helpers import InMemoryLogStore, InMemoryMessageStore, ScriptedProvider, StubReportSink, search_turn_script


def _frames(body: str) -> list[dict]:
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider([search_turn_script()])


@pytest.fixture
def log_store() -> InMemoryLogStore:
    return InMemoryLogStore()


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def client(provider, log_store, message_store):
    app = create_app(provider=provider, message_store=message_store, log_store=log_store,
                     feedback_reports=StubReportSink())
    with TestClient(app) as test_client:
        yield test_client


def test_ping(client) -> None:
    response = client.get("/ping")

    assert response.status_code == 200
    assert response.text == "pong"


def test_chat_streams_sse_frames(client, conversation_id, message_store) -> None:
    response = client.post(f"/chat/{conversation_id}", json={"message": "Cuban missile crisis?", "messageId": "u1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _frames(response.text)
    assert [frame["type"] for frame in frames] == [
        "tool-call", "tool-result", "step-finish", "text-delta", "text-delta", "step-finish", "finish",
    ]
    assert frames[0]["toolCallId"] == "call_1"
    assert frames[-1]["finishReason"] == "stop"
    assert [m.id for m in message_store.load(conversation_id)][0] == "u1"


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"message": "   "},
        {"approvals": [{"toolCallId": "c1", "result": "maybe"}]},
        {"approvals": [{"result": "approved"}]},
    ],
)
def test_malformed_turns_are_rejected_with_400(client, conversation_id, body) -> None:
    assert client.post(f"/chat/{conversation_id}", json=body).status_code == 400


def test_metadata_bag_carries_bearer_token_and_profile(client, conversation_id, provider) -> None:
    token = create_access_token({"sub": "alice", "email": "alice@example.org"})
    client.cookies.set("token", token)

    client.post(
        f"/chat/{conversation_id}",
        json={"message": "hi", "metadata": {"locale": "en"}},
        headers={"Authorization": "Bearer abc123"},
    )

    metadata = provider.calls[0]["metadata"]
    assert metadata["locale"] == "en"
    assert metadata["bearerToken"] == "abc123"
    assert metadata["profile"] == {"sub": "alice", "email": "alice@example.org"}


def test_invalid_token_cookie_is_ignored(client, conversation_id, provider) -> None:
    client.cookies.set("token", "garbage")

    client.post(f"/chat/{conversation_id}", json={"message": "hi"})

    assert "profile" not in provider.calls[0]["metadata"]


def test_feedback_after_chat_updates_snapshot(client, conversation_id, identity, log_store) -> None:
    frames = _frames(client.post(f"/chat/{conversation_id}", json={"message": "q"}).text)
    message_id = frames[-1]["messageId"]

    response = client.post("/feedback", json={
        "conversationId": conversation_id, "messageId": message_id, "feedback": "like",
    })

    assert response.status_code == 200
    assert response.json() == {"success": True, "updated": True}
    snapshots = log_store.data[identity.log_key]["messageObjects"]
    assert snapshots[-1]["feedback"] == "like"


def test_feedback_on_missing_log_is_not_an_error(client, conversation_id) -> None:
    response = client.post("/feedback", json={"conversationId": conversation_id, "messageIndex": 0, "feedback": None})

    assert response.status_code == 200
    assert response.json() == {"success": True, "updated": False}


@pytest.mark.parametrize(
    "body",
    [
        {"conversationId": "x", "feedback": "like"},
        {"conversationId": "x", "messageId": "m"},
        {"conversationId": "x", "messageId": "m", "feedback": "love"},
        {"conversationId": "x", "messageIndex": -1, "feedback": "like"},
        {"messageId": "m", "feedback": "like"},
    ],
)
def test_malformed_feedback_is_rejected_with_400(client, body) -> None:
    assert client.post("/feedback", json=body).status_code == 400


def test_document_click(client, conversation_id, identity, log_store) -> None:
    response = client.post("/document-click", json={"conversationId": conversation_id, "sourceKey": "docs/a.txt"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert log_store.data[identity.log_key]["documentClicks"][0]["sourceKey"] == "docs/a.txt"
    assert client.post("/document-click", json={"conversationId": conversation_id}).status_code == 400


def test_storage_outage_is_500(provider, message_store, conversation_id) -> None:
    app = create_app(provider=provider, message_store=message_store, log_store=InMemoryLogStore(fail=True))
    with TestClient(app) as client:
        click = client.post("/document-click", json={"conversationId": conversation_id, "sourceKey": "k"})
        feedback = client.post("/feedback", json={"conversationId": conversation_id, "messageIndex": 0,
                                                  "feedback": "like"})

    assert click.status_code == 500
    assert feedback.status_code == 500


def test_rendered_messages_and_export(client, conversation_id) -> None:
    client.post(f"/chat/{conversation_id}", json={"message": "Cuban missile crisis?"})

    rendered = client.get(f"/conversations/{conversation_id}/messages").json()
    exported = client.get(f"/conversations/{conversation_id}/export")

    assert rendered["citations"][0]["sourceKey"] == "docs/a.txt"
    assert rendered["citations"][0]["id"] == 1
    assert rendered["messages"][1]["parts"][-1]["text"].startswith("See [1](")
    assert exported.status_code == 200
    assert exported.text.startswith("# HistoryLab AI Conversation")
    assert "### Document #1: Title of docs/a.txt" in exported.text


def test_websocket_turn(conversation_id) -> None:
    provider = ScriptedProvider([[TextDelta(text_delta="Hello"), FinishEvent(finish_reason="stop")]])
    app = create_app(provider=provider, message_store=InMemoryMessageStore(), log_store=InMemoryLogStore())
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/{conversation_id}") as websocket:
            websocket.send_text(json.dumps({}))
            error = websocket.receive_json()

            websocket.send_text(json.dumps({"message": "hi"}))
            events = [websocket.receive_json()]
            while events[-1]["type"] != "finish":
                events.append(websocket.receive_json())

    assert error["type"] == "error"
    assert [event["type"] for event in events] == ["text-delta", "finish"]
    assert events[0]["textDelta"] == "Hello"


class ClosingSocket:
    """WebSocket stub that accepts one frame and then behaves as closed."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_json(self, data) -> None:
        if self.sent:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(data)


def test_forwarding_stops_when_the_socket_is_gone(conversation_id) -> None:
    store = InMemoryMessageStore()
    provider = ScriptedProvider([[TextDelta(text_delta="Hel"), TextDelta(text_delta="lo"),
                                  FinishEvent(finish_reason="stop")]])
    registry = ConversationRegistry(TurnOrchestrator(
        provider=provider,
        message_store=store,
        log_aggregator=ConversationLogAggregator(InMemoryLogStore()),
    ))
    socket = ClosingSocket()

    async def scenario():
        handle = registry.actor(conversation_id).submit(TurnRequest(conversation_id, text="hi"))
        forwarded = await forward_events(socket, handle.channel, conversation_id)
        return forwarded, await handle.task

    forwarded, outcome = asyncio.run(scenario())

    assert forwarded is False
    assert socket.sent == [{"type": "text-delta", "textDelta": "Hel"}]
    assert outcome.state is TurnState.COMPLETED
    assert store.load(conversation_id)[1].text() == "Hello"
