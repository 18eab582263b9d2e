"""
Conversation Log Aggregator
===========================

Maintains one analytics record per conversation: running counters, truncated
message snapshots, search query details and document clicks.

Every write is a read-modify-write of the whole record. No locking is needed
because one conversation actor serializes every turn of its conversation.

Counters are merged additively and never reset; ``messageCount`` follows the
history length and only grows.

Store failures surface as :class:`LogStoreError`. The orchestrator logs and
ignores them so that analytics never interrupt a chat stream; the HTTP handlers
report them as 500.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from historylab.chat.citations import search_documents
from historylab.chat.identity import ConversationIdentity
from historylab.chat.messages import ChatModel, Message
from historylab.chat.streaming import StepFinish
from historylab.chat.tools import QUERY_COLLECTION

logger = logging.getLogger(__name__)

USER_SNAPSHOT_LIMIT = 1000
ASSISTANT_SNAPSHOT_LIMIT = 4000

Feedback = Optional[Literal["like", "dislike"]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class ToolCallCounts(ChatModel):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)


class DateFilters(BaseModel):
    authored_start_year_month: Optional[str] = None
    authored_end_year_month: Optional[str] = None
    authored_start_year_month_day: Optional[str] = None
    authored_end_year_month_day: Optional[str] = None


class DocumentResultMetadata(ChatModel):
    title: Optional[str] = None
    authored_date: Optional[str] = None
    classification: Optional[str] = None


class DocumentResult(ChatModel):
    doc_id: Optional[str] = None
    best_score: Optional[float] = None
    chunk_ids: List[str] = Field(default_factory=list)
    file_id: Optional[str] = None
    storage_key: Optional[str] = None
    metadata: DocumentResultMetadata = Field(default_factory=DocumentResultMetadata)


class QueryDetail(ChatModel):
    tool_call_id: str
    timestamp: str
    query: str
    user_message_index: int
    user_message_id: str
    date_filters: DateFilters
    document_results: List[DocumentResult] = Field(default_factory=list)


class QueryStats(ChatModel):
    total: int = 0
    with_tool_calls: int = 0
    without_tool_calls: int = 0
    details: List[QueryDetail] = Field(default_factory=list)


class CharacterCounts(ChatModel):
    input: int = 0
    output: int = 0


class MessageSnapshot(ChatModel):
    index: int
    role: Literal["user", "assistant"]
    id: str
    content: str
    timestamp: str
    feedback: Feedback = None


class DocumentClick(ChatModel):
    source_key: str
    timestamp: str


class ConversationLog(ChatModel):
    """Analytics aggregate of one conversation (camelCase at rest)."""

    id: str
    created_at: str
    updated_at: str
    user_id: str
    collection_id: str
    convo_id: str
    message_count: int = 0
    tool_calls: ToolCallCounts = Field(default_factory=ToolCallCounts)
    queries: QueryStats = Field(default_factory=QueryStats)
    characters: CharacterCounts = Field(default_factory=CharacterCounts)
    message_objects: List[MessageSnapshot] = Field(default_factory=list)
    document_clicks: List[DocumentClick] = Field(default_factory=list)

    @classmethod
    def new(cls, identity: ConversationIdentity) -> "ConversationLog":
        now = _now_iso()
        return cls(
            id=identity.log_key,
            created_at=now,
            updated_at=now,
            user_id=identity.user_id,
            collection_id=identity.collection_id,
            convo_id=identity.convo_id,
        )


class ConversationLogStore(Protocol):
    """Key/value persistence of serialized logs."""

    def get(self, log_key: str) -> Optional[dict]: ...

    def create_if_missing(self, log_key: str, payload: dict) -> dict: ...

    def put(self, log_key: str, payload: dict) -> None: ...


def extract_document_results(documents: List[dict]) -> List[DocumentResult]:
    results = []
    for document in documents:
        file_info = document.get("file_info") or {}
        metadata = file_info.get("metadata") or {}
        results.append(DocumentResult(
            doc_id=metadata.get("doc_id"),
            best_score=document.get("best_score"),
            chunk_ids=[
                str(chunk.get("chunk_id"))
                for chunk in document.get("chunks") or []
                if isinstance(chunk, dict) and chunk.get("chunk_id") is not None
            ],
            file_id=file_info.get("id"),
            storage_key=file_info.get("source_key"),
            metadata=DocumentResultMetadata(
                title=metadata.get("title"),
                authored_date=metadata.get("authored") or metadata.get("date"),
                classification=metadata.get("classification"),
            ),
        ))
    return results


def extract_query_details(assistant: Message, user_index: int, user_id: str) -> List[QueryDetail]:
    """One detail record per completed ``queryCollection`` call of `assistant`."""
    details = []
    for invocation in assistant.tool_invocations():
        if invocation.tool_name != QUERY_COLLECTION or not invocation.is_resolved:
            continue
        args = invocation.args or {}
        details.append(QueryDetail(
            tool_call_id=invocation.tool_call_id,
            timestamp=_now_iso(),
            query=args.get("query", ""),
            user_message_index=user_index,
            user_message_id=user_id,
            date_filters=DateFilters.model_validate(
                {key: args.get(key) for key in DateFilters.model_fields}
            ),
            document_results=extract_document_results(search_documents(invocation)),
        ))
    return details


class ConversationLogAggregator:
    """
    Parameters
    ----------
    store : ConversationLogStore
        Persistence of serialized logs.
    """

    def __init__(self, store: ConversationLogStore):
        self.store = store

    def init_log(self, identity: ConversationIdentity) -> ConversationLog:
        """Fetch the conversation's log, creating it when missing."""
        payload = self.store.create_if_missing(identity.log_key, ConversationLog.new(identity).to_wire())
        return ConversationLog.model_validate(payload)

    def get_log(self, identity: ConversationIdentity) -> Optional[ConversationLog]:
        payload = self.store.get(identity.log_key)
        return ConversationLog.model_validate(payload) if payload is not None else None

    def _save(self, log: ConversationLog) -> None:
        log.updated_at = _now_iso()
        self.store.put(log.id, log.to_wire())

    def record_turn(self, identity: ConversationIdentity, steps: List[StepFinish], messages: List[Message],
                    user_message: Optional[Message] = None,
                    assistant_message: Optional[Message] = None) -> ConversationLog:
        """
        Merge one completed turn into the log.

        Parameters
        ----------
        identity : ConversationIdentity
            Conversation the turn belongs to.
        steps : list[StepFinish]
            Step events of the turn; tool calls are counted from them.
        messages : list[Message]
            Full history after the turn.
        user_message : Message, optional
            Message that triggered the turn; None for approval-only turns,
            which then do not count as a query.
        assistant_message : Message, optional
            Message produced by the turn.

        Returns
        -------
        ConversationLog
            The updated log.
        """
        log = self.get_log(identity) or self.init_log(identity)

        by_type: Dict[str, int] = {}
        for step in steps:
            for call in step.tool_calls:
                name = call.get("toolName", "unknown")
                by_type[name] = by_type.get(name, 0) + 1
        turn_calls = sum(by_type.values())

        positions = {message.id: index for index, message in enumerate(messages)}
        user_index = positions.get(user_message.id, -1) if user_message else -1
        snapshots: List[MessageSnapshot] = []
        if user_message is not None:
            content = user_message.text()
            snapshots.append(MessageSnapshot(
                index=user_index,
                role="user",
                id=user_message.id or f"msg-{user_index}",
                content=truncate(content, USER_SNAPSHOT_LIMIT),
                timestamp=user_message.created_at.isoformat(),
            ))
            log.characters.input += len(content)

        details: List[QueryDetail] = []
        if assistant_message is not None:
            assistant_index = positions.get(assistant_message.id, len(messages) - 1)
            content = assistant_message.text()
            snapshots.append(MessageSnapshot(
                index=assistant_index,
                role="assistant",
                id=assistant_message.id or f"msg-{assistant_index}",
                content=truncate(content, ASSISTANT_SNAPSHOT_LIMIT),
                timestamp=assistant_message.created_at.isoformat(),
                feedback=None,
            ))
            log.characters.output += len(content)
            details = extract_query_details(
                assistant_message, user_index, user_message.id if user_message else ""
            )

        log.message_count = max(log.message_count, len(messages))
        log.tool_calls.total += turn_calls
        for name, count in by_type.items():
            log.tool_calls.by_type[name] = log.tool_calls.by_type.get(name, 0) + count
        if user_message is not None:
            log.queries.total += 1
            if turn_calls:
                log.queries.with_tool_calls += 1
            else:
                log.queries.without_tool_calls += 1
        log.queries.details.extend(details)
        log.message_objects.extend(snapshots)

        self._save(log)
        logger.info("Recorded turn for %s: %d tool calls, %d query details",
                    identity.log_key, turn_calls, len(details))
        return log

    def record_feedback(self, identity: ConversationIdentity, feedback: Feedback,
                        message_id: Optional[str] = None, message_index: Optional[int] = None) -> bool:
        """
        Set the feedback of one assistant snapshot.

        The snapshot is looked up by `message_id`; when the id matches no
        snapshot or several, `message_index` is used as a position among the
        assistant snapshots only.

        Returns
        -------
        bool
            True if a snapshot was updated. A missing log or snapshot is
            logged and reported as False, never raised.
        """
        log = self.get_log(identity)
        if log is None:
            logger.warning("Feedback for unknown conversation log %s", identity.log_key)
            return False

        assistant_snapshots = [snapshot for snapshot in log.message_objects if snapshot.role == "assistant"]
        target = None
        if message_id:
            matches = [snapshot for snapshot in assistant_snapshots if snapshot.id == message_id]
            if len(matches) == 1:
                target = matches[0]
        if target is None and message_index is not None and 0 <= message_index < len(assistant_snapshots):
            target = assistant_snapshots[message_index]

        if target is None:
            logger.warning("No assistant snapshot for feedback in %s (id=%s, index=%s)",
                           identity.log_key, message_id, message_index)
            return False

        target.feedback = feedback
        self._save(log)
        return True

    def record_document_click(self, identity: ConversationIdentity, source_key: str) -> ConversationLog:
        """Append a document-click event, creating the log if needed."""
        log = self.get_log(identity) or self.init_log(identity)
        log.document_clicks.append(DocumentClick(source_key=source_key, timestamp=_now_iso()))
        self._save(log)
        return log
