"""
Pydantic models used for request/response validation and API data contracts.

Request bodies use camelCase keys on the wire (``conversationId``,
``toolCallId``); snake_case field names are accepted too.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from historylab.chat.messages import Approval


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApprovalDecision(ApiModel):
    """
    A user's decision on a confirmation-required tool call.
    """
    tool_call_id: str = Field(..., min_length=1, description="Id of the pending tool call.", examples=["call_abc123"])
    result: Approval = Field(..., description="`approved` or `rejected`.")


class ChatTurnRequest(ApiModel):
    """
    One chat turn: a new user message, decisions on pending confirmations, or both.
    """
    message: Optional[str] = Field(None, description="New user message text.")
    message_id: Optional[str] = Field(None, description="Client-chosen id for the new user message.")
    approvals: List[ApprovalDecision] = Field(default_factory=list, description="Decisions on pending tool calls.")
    metadata: dict = Field(default_factory=dict, description="Opaque annotations passed through to the model layer.")

    @model_validator(mode="after")
    def _message_or_approvals(self):
        if not (self.message and self.message.strip()) and not self.approvals:
            raise ValueError("a turn needs a message or at least one approval")
        return self


class FeedbackRequest(ApiModel):
    """
    Like/dislike on an assistant message. `null` clears a previous reaction.
    """
    conversation_id: str = Field(..., min_length=1)
    message_id: Optional[str] = None
    message_index: Optional[int] = Field(None, ge=0)
    feedback: Optional[Literal["like", "dislike"]]

    @model_validator(mode="after")
    def _message_reference(self):
        if not self.message_id and self.message_index is None:
            raise ValueError("messageId or messageIndex is required")
        return self


class DocumentClickRequest(ApiModel):
    """A click on a cited document."""
    conversation_id: str = Field(..., min_length=1)
    source_key: str = Field(..., min_length=1)


class SuccessResponse(BaseModel):
    success: bool
    updated: Optional[bool] = None
