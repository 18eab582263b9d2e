"""
ConversationLogRecord ORM Model
===============================

Stores one analytics aggregate per conversation in the ``conversation_log``
table. The aggregate itself is a JSON document (camelCase keys) and is always
rewritten as a whole; the row is keyed by ``{userId}-{collectionId}-{convoId}``.

Key features
~~~~~~~~~~~~
- Text primary key (``log_key``)
- JSON payload holding counters, message snapshots, query details and clicks
- Timezone-aware ``created_at`` / ``updated_at`` timestamps (UTC)
"""

from historylab.database.config.connection_engine import declarativeBase
from sqlalchemy import DateTime, JSON, TEXT
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone


class ConversationLogRecord(declarativeBase):
    """
    ORM model for the `conversation_log` table.

    Attributes
    ----------
    log_key : str
        Primary key, ``{userId}-{collectionId}-{convoId}``.
    payload : dict
        The serialized conversation log.
    created_at : datetime
        Creation timestamp (UTC).
    updated_at : datetime
        Timestamp of the last write (UTC).
    """

    __tablename__ = 'conversation_log'

    log_key: Mapped[str] = mapped_column(TEXT, primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __init__(self, log_key: str, payload: dict):
        self.log_key = log_key
        self.payload = payload
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at

    def __str__(self) -> str:
        return f"ConversationLog: key:{self.log_key}, updated: {self.updated_at}"
