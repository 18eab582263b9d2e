"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessageChunk

from historylab.chat.errors import LogStoreError
from historylab.chat.messages import Message, TextPart, ToolInvocation, ToolInvocationPart, ToolState
from historylab.chat.streaming import FinishEvent, StepFinish, TextDelta, ToolCallEvent, ToolResultEvent


class InMemoryMessageStore:
    """Message store keeping serialized copies, like the SQL store does."""

    def __init__(self) -> None:
        self.data: dict[str, list[dict]] = {}
        self.saves = 0

    def load(self, conversation_id: str) -> list[Message]:
        return [Message.model_validate(item) for item in self.data.get(conversation_id, [])]

    def save(self, conversation_id: str, messages: list[Message]) -> None:
        self.saves += 1
        self.data[conversation_id] = [message.to_wire() for message in messages]


class InMemoryLogStore:
    def __init__(self, fail: bool = False) -> None:
        self.data: dict[str, dict] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise LogStoreError("log store unavailable")

    def get(self, log_key: str) -> dict | None:
        self._check()
        return self.data.get(log_key)

    def create_if_missing(self, log_key: str, payload: dict) -> dict:
        self._check()
        return self.data.setdefault(log_key, payload)

    def put(self, log_key: str, payload: dict) -> None:
        self._check()
        self.data[log_key] = payload


class StubSearch:
    def __init__(self, result: dict | None = None, error: Exception | None = None) -> None:
        self.result = result if result is not None else search_result(["docs/a.txt"])
        self.error = error
        self.calls: list[tuple] = []

    async def search(self, query_text, collection_id, top_k, filters=None):
        self.calls.append((query_text, collection_id, top_k, filters))
        if self.error:
            raise self.error
        return self.result


class StubObjects:
    def __init__(self, texts: dict[str, Any] | None = None) -> None:
        self.texts = texts or {}
        self.calls: list[str] = []

    async def get_object_text(self, storage_key: str):
        self.calls.append(storage_key)
        return self.texts.get(storage_key, {"error": "File not found"})


class StubReportSink:
    def __init__(self) -> None:
        self.reports: list[dict] = []

    def save_report(self, report: dict) -> str:
        self.reports.append(report)
        return report["reportId"]


class ScriptedProvider:
    """Model provider replaying one scripted list of events per call."""

    def __init__(self, scripts: list[list] | None = None, error: Exception | None = None) -> None:
        self.scripts = list(scripts or [])
        self.error = error
        self.calls: list[dict] = []

    async def stream(self, messages, catalog, max_steps, capabilities, metadata):
        self.calls.append({
            "messages": list(messages),
            "max_steps": max_steps,
            "metadata": dict(metadata),
            "capabilities": capabilities,
        })
        script = self.scripts.pop(0) if self.scripts else [FinishEvent(finish_reason="stop")]
        for event in script:
            yield event
        if self.error:
            raise self.error


class ScriptedChatModel:
    """Chat model stub: each `astream` call replays the next list of chunks."""

    def __init__(self, steps: list[list[AIMessageChunk]]) -> None:
        self.steps = list(steps)
        self.requests: list[list] = []
        self.bound_tools: list = []

    def bind_tools(self, tools):
        self.bound_tools = list(tools)
        return self

    async def astream(self, messages, config=None):
        self.requests.append(list(messages))
        for chunk in self.steps.pop(0) if self.steps else []:
            yield chunk


def tool_chunk(call_id: str, name: str, args: str) -> AIMessageChunk:
    return AIMessageChunk(content="", tool_call_chunks=[{"name": name, "args": args, "id": call_id, "index": 0}])


def document(source_key: str, title: str | None = None, doc_id: str | None = None, **metadata: Any) -> dict:
    meta = {"doc_id": doc_id or source_key.rsplit("/", 1)[-1], **metadata}
    if title:
        meta["title"] = title
    return {
        "document_id": meta["doc_id"],
        "best_score": 0.9,
        "chunks": [{"chunk_id": f"{meta['doc_id']}-c1", "score": 0.9, "text": "chunk"}],
        "file_info": {"id": f"file-{meta['doc_id']}", "source_key": source_key, "metadata": meta},
    }


def search_result(source_keys: list[str], status: str = "success") -> dict:
    documents = [document(key, title=f"Title of {key}") for key in source_keys]
    return {"status": status, "documents": documents, "matches": len(documents)}


def invocation_part(call_id: str, tool_name: str, args: dict | None = None,
                    result: Any = None, resolved: bool = False) -> ToolInvocationPart:
    return ToolInvocationPart(tool_invocation=ToolInvocation(
        tool_call_id=call_id,
        tool_name=tool_name,
        args=args or {},
        state=ToolState.RESULT if resolved else ToolState.CALL,
        result=result,
    ))


def assistant(*parts, message_id: str | None = None) -> Message:
    kwargs = {"id": message_id} if message_id else {}
    return Message(role="assistant", parts=list(parts), **kwargs)


def text(value: str) -> TextPart:
    return TextPart(text=value)


def search_turn_script(call_id: str = "call_1", source_key: str = "docs/a.txt") -> list:
    """One search step followed by a cited answer."""
    result = search_result([source_key])
    return [
        ToolCallEvent(tool_call_id=call_id, tool_name="queryCollection", args={"query": "cuban missile crisis"}),
        ToolResultEvent(tool_call_id=call_id, tool_name="queryCollection", result=result),
        StepFinish(step=1, finish_reason="tool-calls", tool_calls=[
            {"toolCallId": call_id, "toolName": "queryCollection", "args": {"query": "cuban missile crisis"}},
        ]),
        TextDelta(text_delta="See "),
        TextDelta(text_delta=f"{{{{cite:{source_key}}}}}."),
        StepFinish(step=2, finish_reason="stop"),
        FinishEvent(finish_reason="stop"),
    ]
