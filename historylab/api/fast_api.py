"""
FastAPI Router — Chat • Feedback • Document Clicks • Transcripts
================================================================

Purpose
-------
Defines the HTTP API for:
- Chat turns streamed back as Server-Sent Events
- Like/dislike feedback on assistant messages
- Document-click analytics
- Rendered conversation history and markdown export

Key Notes
---------
- Input validation via Pydantic models in `historylab.api.models`; malformed
  bodies are answered with 400 by the handler installed in `historylab.main`.
- Auth cookie: `token` (JWT). When valid, its profile claims are added to the
  turn's metadata bag; chat itself does not require it.
- Collaborators (actor registry, log aggregator, message store) live on
  ``app.state`` and are built in the application lifespan.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from historylab.api.models import ChatTurnRequest, DocumentClickRequest, FeedbackRequest, SuccessResponse
from historylab.api.utils import profile_from_token
from historylab.chat.actor import ConversationRegistry
from historylab.chat.citations import citation_list, render_messages
from historylab.chat.conversation_log import ConversationLogAggregator
from historylab.chat.errors import LogStoreError, MessageStoreError
from historylab.chat.export import export_conversation
from historylab.chat.identity import decode_conversation_id
from historylab.chat.messages import messages_to_wire
from historylab.chat.orchestrator import TurnRequest
from historylab.chat.streaming import sse_frame

logger = logging.getLogger(__name__)

router = APIRouter()
"""Creates the FastAPI router in which we define its routes"""


def get_registry(request: Request) -> ConversationRegistry:
    return request.app.state.registry


def get_aggregator(request: Request) -> ConversationLogAggregator:
    return request.app.state.log_aggregator


def get_message_store(request: Request):
    return request.app.state.message_store


def build_metadata(metadata: dict, authorization: Optional[str], token: Optional[str]) -> dict:
    """
    Client metadata plus what the server knows about the caller.

    ``bearerToken`` comes from an ``Authorization: Bearer ...`` header and
    ``profile`` from a valid ``token`` cookie. Neither is interpreted here.
    """
    bag = dict(metadata or {})
    if authorization and authorization.lower().startswith("bearer "):
        bag["bearerToken"] = authorization[len("bearer "):].strip()
    profile = profile_from_token(token)
    if profile:
        bag["profile"] = profile
    return bag


def to_turn_request(conversation_id: str, data: ChatTurnRequest, metadata: dict) -> TurnRequest:
    return TurnRequest(
        conversation_id=conversation_id,
        text=data.message.strip() if data.message and data.message.strip() else None,
        message_id=data.message_id,
        approvals={approval.tool_call_id: approval.result for approval in data.approvals},
        metadata=metadata,
    )


@router.get('/ping')
async def ping():
    """Liveness probe."""
    return PlainTextResponse('pong')


@router.post('/chat/{conversation_id:path}')
async def chat(conversation_id: str, data: ChatTurnRequest,
               registry: ConversationRegistry = Depends(get_registry),
               authorization: Optional[str] = Header(None),
               token: Optional[str] = Cookie(None)):
    """Submit one chat turn and stream its events.

    Request body:
        ChatTurnRequest {message?, messageId?, approvals?: [{toolCallId, result}], metadata?}

    Behavior:
        - The turn is queued on the conversation's actor and runs as its own task,
          so a dropped connection stops the stream but not the turn.
        - Each event is sent as one ``data: {json}\\n\\n`` frame; the last one is ``finish``.
    """
    turn = to_turn_request(conversation_id, data, build_metadata(data.metadata, authorization, token))
    handle = registry.actor(conversation_id).submit(turn)

    async def event_stream():
        async for event in handle.channel.events():
            yield sse_frame(event)

    return StreamingResponse(
        event_stream(),
        media_type='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


@router.post('/feedback', response_model=SuccessResponse)
async def feedback(data: FeedbackRequest, aggregator: ConversationLogAggregator = Depends(get_aggregator)):
    """Set (or clear, with ``null``) the like/dislike of an assistant message.

    Returns:
        {'success': True, 'updated': bool}. A message or log that cannot be
        found is logged and reported as ``updated: false``; storage failures are 500.
    """
    identity = decode_conversation_id(data.conversation_id)
    try:
        updated = aggregator.record_feedback(
            identity, data.feedback, message_id=data.message_id, message_index=data.message_index
        )
    except LogStoreError:
        logger.exception("Feedback could not be stored for %s", identity.log_key)
        raise HTTPException(status_code=500, detail='Failed to store feedback')
    return SuccessResponse(success=True, updated=updated)


@router.post('/document-click', response_model=SuccessResponse)
async def document_click(data: DocumentClickRequest,
                         aggregator: ConversationLogAggregator = Depends(get_aggregator)):
    """Record that a cited document was opened."""
    identity = decode_conversation_id(data.conversation_id)
    try:
        aggregator.record_document_click(identity, data.source_key)
    except LogStoreError:
        logger.exception("Document click could not be stored for %s", identity.log_key)
        raise HTTPException(status_code=500, detail='Failed to store document click')
    return SuccessResponse(success=True)


@router.get('/conversations/{conversation_id:path}/messages')
async def conversation_messages(conversation_id: str, message_store=Depends(get_message_store)):
    """Return the history with citation markers rendered as links, plus the cited documents."""
    try:
        messages = message_store.load(conversation_id)
    except MessageStoreError:
        logger.exception("Messages of %s could not be loaded", conversation_id)
        raise HTTPException(status_code=500, detail='Failed to load messages')
    rendered, registry = render_messages(messages)
    return {'messages': messages_to_wire(rendered), 'citations': citation_list(registry)}


@router.get('/conversations/{conversation_id:path}/export')
async def conversation_export(conversation_id: str, message_store=Depends(get_message_store)):
    """Return the conversation as a markdown transcript."""
    try:
        messages = message_store.load(conversation_id)
    except MessageStoreError:
        logger.exception("Messages of %s could not be loaded", conversation_id)
        raise HTTPException(status_code=500, detail='Failed to load messages')
    return PlainTextResponse(export_conversation(messages), media_type='text/markdown')
