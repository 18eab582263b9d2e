"""
FeedbackReport ORM Model
========================

Problem reports filed through the confirmation-gated ``submitFeedback`` tool.
Each report carries the reporter's conversation identity, their description
and a truncated copy of the conversation at the time of filing.
"""

from historylab.database.config.connection_engine import declarativeBase
from sqlalchemy import DateTime, JSON, TEXT
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime


class FeedbackReport(declarativeBase):
    """
    ORM model for the `feedback_report` table.

    Attributes
    ----------
    id : str
        Report id, ``feedback-{userId}-{convoId}-{epoch ms}``.
    user_id, collection_id, convo_id : str
        Identity of the conversation the report was filed from.
    description : str
        Free-text description written by the assistant on the user's behalf.
    conversation : list[dict]
        Conversation messages with long strings truncated.
    created_at : datetime
        Filing time (UTC).
    """

    __tablename__ = 'feedback_report'

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    collection_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    convo_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    description: Mapped[str] = mapped_column(TEXT, nullable=False)
    conversation: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __init__(self, report_id: str, user_id: str, collection_id: str, convo_id: str,
                 description: str, conversation: list, created_at):
        self.id = report_id
        self.user_id = user_id
        self.collection_id = collection_id
        self.convo_id = convo_id
        self.description = description
        self.conversation = conversation
        if isinstance(created_at, str):
            self.created_at = datetime.fromisoformat(created_at)
        else:
            self.created_at = created_at

    def __str__(self) -> str:
        return f"FeedbackReport: id:{self.id}, user: {self.user_id}, created: {self.created_at}"
