"""
Chat Message DAO

Purpose
-------
Data-access layer for the `ChatMessageRecord` entity:
- Fetch a conversation's messages in order
- Upsert a conversation's messages (insert new ids, rewrite existing rows)

Notes
-----
- A message id appears once per conversation; a repeated id in one write keeps
  its first row.
- Messages are never deleted: reconciliation only changes the state/result of
  tool invocations, so existing rows are rewritten in place.
- Requires an active SQLAlchemy `Session`; methods log and re-raise.
"""

import logging
from typing import List

from sqlalchemy import asc, select
from sqlalchemy.orm import Session
from historylab.database.entities.chat_message import ChatMessageRecord

logger = logging.getLogger(__name__)


class ChatMessageDao:
    """
    Data Access Object for persisted chat messages.
    """

    def fetchMessagesByConversationId(self, session: Session, conversation_id: str) -> List[ChatMessageRecord]:
        """
        Fetch all messages of a conversation ordered by position.

        Parameters
        ----------
        session : Session
            Active SQLAlchemy session.
        conversation_id : str
            Opaque conversation identifier.

        Returns
        -------
        list[ChatMessageRecord]
            Possibly empty list of rows.
        """
        try:
            stmt = (
                select(ChatMessageRecord)
                .where(ChatMessageRecord.conversation_id == conversation_id)
                .order_by(asc(ChatMessageRecord.position))
            )
            return list(session.scalars(stmt).all())
        except Exception:
            logger.exception("Error in ChatMessageDao.fetchMessagesByConversationId (conversation=%s)", conversation_id)
            raise

    def upsertMessages(self, session: Session, conversation_id: str, rows: List[ChatMessageRecord]) -> int:
        """
        Insert rows that do not exist yet and rewrite the ones that do.

        Returns
        -------
        int
            Number of newly inserted rows.
        """
        try:
            existing = {
                row.id: row
                for row in self.fetchMessagesByConversationId(session, conversation_id)
            }
            inserted = 0
            seen = set()
            for row in rows:
                if row.id in seen:
                    logger.warning("Duplicate message id %s in conversation %s, keeping the first", row.id,
                                   conversation_id)
                    continue
                seen.add(row.id)
                current = existing.get(row.id)
                if current is None:
                    session.add(row)
                    inserted += 1
                else:
                    current.position = row.position
                    current.role = row.role
                    current.parts = list(row.parts)
            return inserted
        except Exception:
            logger.exception("Error in ChatMessageDao.upsertMessages (conversation=%s)", conversation_id)
            raise
