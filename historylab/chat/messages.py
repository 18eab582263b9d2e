"""
Chat Message Model
==================

Pydantic models for the conversation history exchanged with the client and
persisted per conversation.

A ``Message`` holds an ordered list of parts. ``Part`` is a closed union of
``TextPart``, ``ReasoningPart`` and ``ToolInvocationPart`` discriminated on
``type``; code that branches on a part ends with ``assert_never`` so that a new
variant is caught by the type checker.

A ``ToolInvocation`` is immutable and moves through ``ToolState`` once:
``call -> result`` via :meth:`ToolInvocation.resolve`.

All models serialize with camelCase keys (``toolCallId``, ``createdAt``) and
accept either camelCase or snake_case on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from historylab.chat.errors import InvalidToolTransition


class ChatModel(BaseModel):
    """Base model: camelCase aliases, populate by field name too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Serialize with camelCase keys, JSON-compatible values."""
        return self.model_dump(by_alias=True, mode="json")


class ToolState(str, Enum):
    CALL = "call"
    RESULT = "result"


class Approval(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ToolInvocation(ChatModel):
    """
    One tool call requested by the model.

    Attributes
    ----------
    tool_call_id : str
        Unique id of the call.
    tool_name : str
        Name of the tool in the catalog.
    args : dict
        Arguments the model supplied.
    state : ToolState
        ``CALL`` until resolved, then ``RESULT``.
    result : Any
        Tool output once resolved.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    tool_call_id: str
    tool_name: str
    args: dict = Field(default_factory=dict)
    state: ToolState = ToolState.CALL
    result: Any = None

    @property
    def is_resolved(self) -> bool:
        return self.state is ToolState.RESULT

    def resolve(self, result: Any) -> "ToolInvocation":
        """
        Return a copy of this invocation in ``RESULT`` state.

        Raises
        ------
        InvalidToolTransition
            If the invocation is already resolved.
        """
        if self.state is not ToolState.CALL:
            raise InvalidToolTransition(
                f"Tool call {self.tool_call_id} is already in state {self.state.value}"
            )
        return self.model_copy(update={"state": ToolState.RESULT, "result": result})


class TextPart(ChatModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(ChatModel):
    type: Literal["reasoning"] = "reasoning"
    reasoning: str


class ToolInvocationPart(ChatModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation


Part = Annotated[Union[TextPart, ReasoningPart, ToolInvocationPart], Field(discriminator="type")]

Role = Literal["user", "assistant"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid4().hex


class Message(ChatModel):
    """
    A chat message.

    Attributes
    ----------
    id : str
        Message id, unique within the conversation.
    role : {"user", "assistant"}
        Sender role.
    created_at : datetime
        Creation time (UTC).
    parts : list[Part]
        Ordered content parts.
    """

    id: str = Field(default_factory=new_message_id)
    role: Role
    created_at: datetime = Field(default_factory=_now)
    parts: List[Part] = Field(default_factory=list)

    def text(self) -> str:
        """Concatenate the text parts, separated by blank lines."""
        return "\n\n".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_invocations(self) -> List[ToolInvocation]:
        return [part.tool_invocation for part in self.parts if isinstance(part, ToolInvocationPart)]


def user_message(text: str, message_id: Optional[str] = None) -> Message:
    """Build a user message holding one text part."""
    return Message(id=message_id or new_message_id(), role="user", parts=[TextPart(text=text)])


def messages_from_wire(payload: List[dict]) -> List[Message]:
    return [Message.model_validate(item) for item in payload]


def messages_to_wire(messages: List[Message]) -> List[dict]:
    return [message.to_wire() for message in messages]
