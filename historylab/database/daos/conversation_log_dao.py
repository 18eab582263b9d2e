"""
Conversation Log DAO

Purpose
-------
Thin data-access layer for the `ConversationLogRecord` entity:
- Fetch a log by key
- Create a log row
- Replace a log's payload

Design
------
- Requires an active SQLAlchemy `Session` supplied by the caller; transaction
  boundaries live in the service layer (`historylab.database.core.funcs`).
- Methods log the failing operation and re-raise.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session
from historylab.database.entities.conversation_log import ConversationLogRecord

logger = logging.getLogger(__name__)


class ConversationLogDao:
    """
    Data Access Object for conversation analytics logs.
    """

    def fetchLog(self, session: Session, log_key: str) -> Optional[ConversationLogRecord]:
        """
        Return the log stored under `log_key`, or None.

        Parameters
        ----------
        session : Session
            Active SQLAlchemy session.
        log_key : str
            ``{userId}-{collectionId}-{convoId}``.
        """
        try:
            return session.get(ConversationLogRecord, log_key)
        except Exception:
            logger.exception("Error in ConversationLogDao.fetchLog (key=%s)", log_key)
            raise

    def createLog(self, session: Session, record: ConversationLogRecord) -> ConversationLogRecord:
        """Stage a new log row."""
        try:
            session.add(record)
            return record
        except Exception:
            logger.exception("Error in ConversationLogDao.createLog (key=%s)", record.log_key)
            raise

    def updatePayload(self, session: Session, log_key: str, payload: dict) -> ConversationLogRecord:
        """
        Replace the payload of an existing log.

        Raises
        ------
        LookupError
            If no log exists under `log_key`.
        """
        try:
            record = session.get(ConversationLogRecord, log_key)
            if record is None:
                raise LookupError(f"No conversation log stored under {log_key}")
            # JSON columns are not mutation-tracked, assign a fresh object
            record.payload = dict(payload)
            record.updated_at = datetime.now(timezone.utc)
            return record
        except Exception:
            logger.exception("Error in ConversationLogDao.updatePayload (key=%s)", log_key)
            raise
