"""
SQL-backed stores used by the chat core.

Each store adapts the transactional service functions in
``historylab.database.core.funcs`` to the small protocols the chat layer
depends on, and turns SQLAlchemy failures into the chat layer's own errors.
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from historylab.chat.errors import LogStoreError, MessageStoreError
from historylab.chat.messages import Message, messages_from_wire, messages_to_wire
from historylab.database.core.funcs import (
    create_conversation_log,
    create_feedback_report,
    get_chat_messages,
    get_conversation_log,
    save_chat_messages,
    save_conversation_log,
)

logger = logging.getLogger(__name__)


class SqlConversationLogStore:
    """Conversation logs in the ``conversation_log`` table."""

    def get(self, log_key: str) -> Optional[dict]:
        try:
            return get_conversation_log(log_key=log_key)
        except SQLAlchemyError as e:
            raise LogStoreError(f"Could not read conversation log {log_key}") from e

    def create_if_missing(self, log_key: str, payload: dict) -> dict:
        try:
            return create_conversation_log(log_key=log_key, payload=payload)
        except SQLAlchemyError as e:
            raise LogStoreError(f"Could not create conversation log {log_key}") from e

    def put(self, log_key: str, payload: dict) -> None:
        try:
            save_conversation_log(log_key=log_key, payload=payload)
        except SQLAlchemyError as e:
            raise LogStoreError(f"Could not write conversation log {log_key}") from e


class SqlMessageStore:
    """Conversation histories in the ``chat_message`` table."""

    def load(self, conversation_id: str) -> List[Message]:
        try:
            return messages_from_wire(get_chat_messages(conversation_id=conversation_id))
        except SQLAlchemyError as e:
            raise MessageStoreError(f"Could not load messages of {conversation_id}") from e

    def save(self, conversation_id: str, messages: List[Message]) -> None:
        try:
            inserted = save_chat_messages(conversation_id=conversation_id, messages=messages_to_wire(messages))
            logger.debug("Saved %d messages of %s (%d new)", len(messages), conversation_id, inserted)
        except SQLAlchemyError as e:
            raise MessageStoreError(f"Could not save messages of {conversation_id}") from e


class SqlFeedbackReportSink:
    """Feedback reports in the ``feedback_report`` table."""

    def save_report(self, report: dict) -> str:
        return create_feedback_report(report=report)
