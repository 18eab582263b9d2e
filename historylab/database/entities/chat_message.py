"""
ChatMessageRecord ORM Model
===========================

One row per chat message in the ``chat_message`` table. The ordered list of
parts (text, reasoning, tool invocations) is stored as JSON exactly as the
message model serializes it, and ``position`` fixes the message order inside
the conversation.

Key features
~~~~~~~~~~~~
- Composite primary key (``conversation_id``, ``id``)
- ``position`` column giving the order of messages in a conversation
- Timezone-aware ``created_at`` timestamp (UTC)
"""

from historylab.database.config.connection_engine import declarativeBase
from sqlalchemy import DateTime, Integer, JSON, TEXT
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime


class ChatMessageRecord(declarativeBase):
    """
    ORM model for the `chat_message` table.

    Attributes
    ----------
    conversation_id : str
        Opaque conversation identifier as sent by the client.
    id : str
        Message identifier, unique within the conversation.
    position : int
        Zero-based position of the message in the conversation.
    role : str
        ``"user"`` or ``"assistant"``.
    created_at : datetime
        Message creation time.
    parts : list[dict]
        Serialized message parts.
    """

    __tablename__ = 'chat_message'

    conversation_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    role: Mapped[str] = mapped_column(TEXT, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    parts: Mapped[list] = mapped_column(JSON, nullable=False)

    def __init__(self, conversation_id: str, message_id: str, position: int, role: str, created_at, parts: list):
        """
        Initialize a new ChatMessageRecord.

        Parameters
        ----------
        conversation_id : str
            Conversation the message belongs to.
        message_id : str
            Message identifier.
        position : int
            Position of the message in the conversation.
        role : str
            Sender role.
        created_at : datetime | str
            Creation time. Accepts datetime or ISO8601 string.
        parts : list[dict]
            Serialized parts.
        """
        self.conversation_id = conversation_id
        self.id = message_id
        self.position = position
        self.role = role
        self.parts = parts
        if isinstance(created_at, str):
            self.created_at = datetime.fromisoformat(created_at)
        else:
            self.created_at = created_at

    def __str__(self) -> str:
        return (
            f"Conversation: id:{self.conversation_id}, "
            f"message: {self.id}, "
            f"role: {self.role}, "
            f"position: {self.position}"
        )
