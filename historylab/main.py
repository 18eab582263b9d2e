"""
FastAPI application bootstrap with: \n
- Lifespan-managed construction of the chat collaborators (model provider, search, object storage, stores) \n
- CORS configured for the frontend \n
- 400 responses for malformed request bodies \n
- WebSocket chat endpoint mirroring the SSE route \n

Environment contract (from `settings`): \n
- INIT_MODE: if 'runtime', build the OpenAI model provider, the vector index search and the S3 store at startup. \n
- FRONTEND_URL: allowed CORS origin. \n
- LOG_LEVEL: root logging level. \n
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Cookie, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from historylab.api.fast_api import build_metadata, router, to_turn_request
from historylab.api.models import ChatTurnRequest
from historylab.chat.actor import ConversationRegistry
from historylab.chat.conversation_log import ConversationLogAggregator
from historylab.chat.orchestrator import TurnOrchestrator
from historylab.chat.streaming import ErrorEvent
from historylab.database.config.config import settings
from historylab.database.config.connection_engine import create_tables
from historylab.database.core.stores import SqlConversationLogStore, SqlFeedbackReportSink, SqlMessageStore

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

logger = logging.getLogger("uvicorn")
"""Logger instance for capturing and emitting Uvicorn server logs."""


async def forward_events(websocket: WebSocket, channel, conversation_id: str) -> bool:
    """
    Send every event of a turn to the socket.

    Returns False when the socket can no longer be written to. The turn keeps
    running in its own task; only the forwarding stops.
    """
    try:
        async for event in channel.events():
            await websocket.send_json(event.to_wire())
    except (RuntimeError, OSError) as e:
        logger.info("Stopped forwarding turn events for %s: %s", conversation_id, e)
        return False
    return True


def _runtime_collaborators() -> dict:
    # Imported here so non-runtime modes never touch OpenAI, LlamaIndex or AWS.
    from historylab.api.aws_bucket_funcs.funcs import S3ObjectStore
    from historylab.api.retrieval import LlamaIndexSearchBackend
    from historylab.chat.provider import LangChainModelProvider

    return {
        'provider': LangChainModelProvider(),
        'search': LlamaIndexSearchBackend(),
        'objects': S3ObjectStore(),
    }


def create_app(provider=None, search=None, objects=None, message_store=None, log_store=None,
               feedback_reports=None, catalog=None) -> FastAPI:
    """
    Build the application.

    Any collaborator passed in is used as is; the rest are built in the
    lifespan (SQL stores always, OpenAI/LlamaIndex/S3 only in runtime mode).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        App lifespan manager.

        Notes
        ------------
        - On startup (before yielding):
            * Create missing tables.
            * If INIT_MODE == 'runtime', build the model provider, search and object store.
            * Wire the orchestrator and the conversation registry onto `app.state`.
        - On shutdown (after yielding):
            * Wait for nothing; running turns are abandoned with the event loop.
        """
        create_tables()
        collaborators = {'provider': provider, 'search': search, 'objects': objects}
        if settings.INIT_MODE == "runtime":
            logger.info("Building runtime collaborators...")
            built = _runtime_collaborators()
            collaborators = {name: value or built[name] for name, value in collaborators.items()}
        else:
            logger.info("Skipping runtime init (INIT_MODE=%s).", settings.INIT_MODE)

        app.state.message_store = message_store or SqlMessageStore()
        app.state.log_aggregator = ConversationLogAggregator(log_store or SqlConversationLogStore())
        orchestrator = TurnOrchestrator(
            provider=collaborators['provider'],
            message_store=app.state.message_store,
            log_aggregator=app.state.log_aggregator,
            catalog=catalog,
            search=collaborators['search'],
            objects=collaborators['objects'],
            feedback_reports=feedback_reports or SqlFeedbackReportSink(),
        )
        app.state.orchestrator = orchestrator
        app.state.registry = ConversationRegistry(orchestrator)
        logger.info("Chat backend ready.")
        try:
            yield
        finally:
            logger.info("App shutting down (%d conversations seen).", len(app.state.registry))

    app = FastAPI(lifespan=lifespan)

    # -----------------------
    # CORS configuration
    # -----------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],      # Frontend origin
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed payloads are client errors: 400 instead of FastAPI's 422."""
        return JSONResponse(status_code=400, content={'detail': jsonable_encoder(exc.errors())})

    # -----------------------
    # API routes
    # -----------------------
    app.include_router(router)

    @app.websocket("/ws/{conversation_id:path}")
    async def websocket_endpoint(websocket: WebSocket, conversation_id: str, token: str = Cookie(None)):
        """
        WebSocket chat endpoint.

        Protocol
        --------
        - Each text frame is one JSON turn with the same body as ``POST /chat/{conversationId}``.
        - Every event of the turn is sent back as one JSON message, ending with ``finish``.
        - A malformed turn is answered with an ``error`` event and the socket stays open.
        - The `token` cookie is optional; when valid its profile joins the metadata bag.
        """
        await websocket.accept()
        registry: ConversationRegistry = websocket.app.state.registry
        authorization = websocket.headers.get('authorization')
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = ChatTurnRequest.model_validate_json(raw)
                except ValidationError as e:
                    await websocket.send_json(ErrorEvent(error=f"Invalid turn: {e.error_count()} error(s)").to_wire())
                    continue
                turn = to_turn_request(conversation_id, data, build_metadata(data.metadata, authorization, token))
                handle = registry.actor(conversation_id).submit(turn)
                if not await forward_events(websocket, handle.channel, conversation_id):
                    return
        except WebSocketDisconnect:
            logger.info("WebSocket for %s disconnected", conversation_id)

    return app


# Instantiate the FastAPI app
app = create_app()
"""Application object served by uvicorn (``uvicorn historylab.main:app``)."""
