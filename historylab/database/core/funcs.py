"""
Service-layer operations for conversation logs, chat messages and feedback reports.

All functions are wrapped with the `@transactional` decorator, which manages
SQLAlchemy sessions and transactions automatically. Each function receives an
injected `session: Session` and returns plain dictionaries/lists so that no
ORM instance escapes its session.
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from historylab.database.helpers.transactionManagement import transactional
from historylab.database.daos.conversation_log_dao import ConversationLogDao
from historylab.database.daos.chat_message_dao import ChatMessageDao
from historylab.database.daos.feedback_report_dao import FeedbackReportDao
from historylab.database.entities.conversation_log import ConversationLogRecord
from historylab.database.entities.chat_message import ChatMessageRecord
from historylab.database.entities.feedback_report import FeedbackReport


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone-aware columns.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@transactional
def get_conversation_log(session: Session, log_key: str) -> Optional[dict]:
    """
    Fetch a conversation log payload.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session (injected by @transactional).
    log_key : str
        ``{userId}-{collectionId}-{convoId}``.

    Returns
    -------
    dict | None
        The stored payload, or None when no log exists.
    """
    record = ConversationLogDao().fetchLog(session, log_key)
    if record is None:
        return None
    return dict(record.payload)


@transactional
def create_conversation_log(session: Session, log_key: str, payload: dict) -> dict:
    """
    Create a conversation log unless one already exists.

    Returns
    -------
    dict
        The payload now stored under `log_key`; an existing payload is
        returned untouched.
    """
    dao = ConversationLogDao()
    record = dao.fetchLog(session, log_key)
    if record is not None:
        return dict(record.payload)
    dao.createLog(session, ConversationLogRecord(log_key=log_key, payload=dict(payload)))
    return dict(payload)


@transactional
def save_conversation_log(session: Session, log_key: str, payload: dict) -> None:
    """
    Write a whole conversation log payload, creating the row if needed.
    """
    dao = ConversationLogDao()
    if dao.fetchLog(session, log_key) is None:
        dao.createLog(session, ConversationLogRecord(log_key=log_key, payload=dict(payload)))
    else:
        dao.updatePayload(session, log_key, payload)


@transactional
def get_chat_messages(session: Session, conversation_id: str) -> List[dict]:
    """
    Return the stored messages of a conversation in order.

    Returns
    -------
    list[dict]
        ``{"id", "role", "createdAt", "parts"}`` dictionaries.
    """
    rows = ChatMessageDao().fetchMessagesByConversationId(session, conversation_id)
    return [
        {
            "id": row.id,
            "role": row.role,
            "createdAt": _as_utc(row.created_at).isoformat(),
            "parts": list(row.parts),
        }
        for row in rows
    ]


@transactional
def save_chat_messages(session: Session, conversation_id: str, messages: List[dict]) -> int:
    """
    Persist the full, ordered message list of a conversation.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session (injected by @transactional).
    conversation_id : str
        Opaque conversation identifier.
    messages : list[dict]
        Serialized messages (camelCase keys) in conversation order.

    Returns
    -------
    int
        Number of messages that were not stored before.
    """
    rows = [
        ChatMessageRecord(
            conversation_id=conversation_id,
            message_id=message["id"],
            position=position,
            role=message["role"],
            created_at=message["createdAt"],
            parts=message["parts"],
        )
        for position, message in enumerate(messages)
    ]
    return ChatMessageDao().upsertMessages(session, conversation_id, rows)


@transactional
def create_feedback_report(session: Session, report: dict) -> str:
    """
    Store a feedback report.

    Parameters
    ----------
    report : dict
        ``{reportId, timestamp, userId, collectionId, convoId, description, conversation}``.

    Returns
    -------
    str
        The report id.
    """
    FeedbackReportDao().createReport(
        session,
        FeedbackReport(
            report_id=report["reportId"],
            user_id=report["userId"],
            collection_id=report["collectionId"],
            convo_id=report["convoId"],
            description=report["description"],
            conversation=report["conversation"],
            created_at=report.get("timestamp") or datetime.now(timezone.utc),
        ),
    )
    return report["reportId"]
