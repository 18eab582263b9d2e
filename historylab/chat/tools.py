"""
Tool Catalog
============

The fixed set of tools offered to the model, and the capability bundle their
executors receive.

Tools
-----
- ``queryCollection`` (automatic)
    Semantic search over the document archive with optional ``doc_id`` scope and
    authored-date range. Soft errors (``status != success`` or ``error``) are
    returned to the model as data.
- ``getDocumentText`` (automatic)
    Full text of one archived document, looked up by its storage key.
- ``submitFeedback`` (requires confirmation)
    Files a problem report with a truncated copy of the conversation.

Executors never reach back into the owning conversation implicitly: every
handle they need (search, object storage, report sink, identity, current
history) arrives in a :class:`ToolCapabilities` instance.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Protocol, Type, Union

from pydantic import BaseModel, Field

from historylab.chat.identity import ConversationIdentity
from historylab.chat.messages import Message, messages_to_wire
from historylab.chat.search_filters import QueryCollectionArgs, build_filters
from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

QUERY_COLLECTION = "queryCollection"
GET_DOCUMENT_TEXT = "getDocumentText"
SUBMIT_FEEDBACK = "submitFeedback"

FEEDBACK_CHAR_LIMIT = 1000


class SearchBackend(Protocol):
    async def search(self, query_text: str, collection_id: str, top_k: int,
                     filters: Optional[dict] = None) -> dict: ...


class ObjectStore(Protocol):
    async def get_object_text(self, storage_key: str) -> Union[str, dict]: ...


class FeedbackReportSink(Protocol):
    def save_report(self, report: dict) -> str: ...


@dataclass
class ToolCapabilities:
    """
    Handles passed to every tool executor.

    Attributes
    ----------
    identity : ConversationIdentity
        Decoded identity of the conversation running the tool.
    search : SearchBackend | None
        Archive search collaborator.
    objects : ObjectStore | None
        Document text storage collaborator.
    feedback_reports : FeedbackReportSink | None
        Destination of ``submitFeedback`` reports.
    messages : list[Message]
        Conversation history at the time of the call.
    metadata : dict
        Uninterpreted metadata bag of the current turn.
    """

    identity: ConversationIdentity
    search: Optional[SearchBackend] = None
    objects: Optional[ObjectStore] = None
    feedback_reports: Optional[FeedbackReportSink] = None
    messages: List[Message] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


Executor = Callable[[dict, ToolCapabilities], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    """A tool as offered to the model."""

    name: str
    description: str
    args_model: Type[BaseModel]
    executor: Executor
    requires_confirmation: bool = False

    def parameters_schema(self) -> dict:
        return self.args_model.model_json_schema()

    def as_openai_tool(self) -> dict:
        """Function-calling schema understood by ``ChatOpenAI.bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


class ToolCatalog:
    """Ordered, name-indexed collection of :class:`ToolSpec`."""

    def __init__(self, specs: List[ToolSpec]):
        self._specs: Dict[str, ToolSpec] = {spec.name: spec for spec in specs}

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def requires_confirmation(self, name: str) -> bool:
        spec = self._specs.get(name)
        return bool(spec and spec.requires_confirmation)

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


# ---------------------------------------------------------------------------
# queryCollection
# ---------------------------------------------------------------------------

async def query_collection(args: dict, capabilities: ToolCapabilities) -> dict:
    """
    Search the archive.

    Returns
    -------
    dict
        The search collaborator's response, or ``{"error": "Failed to query collection"}``.
    """
    try:
        params = QueryCollectionArgs.model_validate(args)
        filters = build_filters(params)
        logger.info("Querying collection %s with query %r, filters %s",
                    capabilities.identity.collection_id, params.query, filters)
        if capabilities.search is None:
            raise RuntimeError("no search backend configured")
        results = await capabilities.search.search(
            params.query,
            capabilities.identity.collection_id,
            settings.SEARCH_TOP_K,
            filters,
        )
        if isinstance(results, dict) and results.get("error"):
            logger.error("Error querying collection: %s (query=%r)", results["error"], params.query)
        else:
            logger.info("Search returned %d documents", len(results.get("documents") or []))
        return results
    except Exception as e:
        logger.error("Error querying collection: %s (args=%s)", e, args)
        return {"error": "Failed to query collection"}


# ---------------------------------------------------------------------------
# getDocumentText
# ---------------------------------------------------------------------------

class GetDocumentTextArgs(BaseModel):
    source_key: str = Field(..., description="Storage key of the document, as found in file_info.source_key of a search result")


async def get_document_text(args: dict, capabilities: ToolCapabilities) -> Union[str, dict]:
    """Return the document text, or an ``{"error": ...}`` payload."""
    try:
        params = GetDocumentTextArgs.model_validate(args)
        logger.info("Getting document text for %s", params.source_key)
        if capabilities.objects is None:
            raise RuntimeError("no object store configured")
        return await capabilities.objects.get_object_text(params.source_key)
    except Exception as e:
        logger.error("Error getting document text: %s (args=%s)", e, args)
        return {"error": "Failed to get document text"}


# ---------------------------------------------------------------------------
# submitFeedback
# ---------------------------------------------------------------------------

class SubmitFeedbackArgs(BaseModel):
    description: str = Field(
        ...,
        description=(
            "A detailed description that includes the specific technical issue or user feedback, "
            "relevant context from the conversation, and how it relates to the user's research."
        ),
    )


def truncate_large_strings(data: Any, max_length: int) -> Any:
    """Recursively cut every string longer than `max_length`, appending ``...``."""
    if isinstance(data, str):
        return data[:max_length] + "..." if len(data) > max_length else data
    if isinstance(data, list):
        return [truncate_large_strings(item, max_length) for item in data]
    if isinstance(data, dict):
        return {key: truncate_large_strings(value, max_length) for key, value in data.items()}
    return data


def conversation_for_feedback(messages: List[Message]) -> List[dict]:
    """
    Serialize the conversation for a feedback report, truncating tool results
    and assistant text to a fixed length.
    """
    filtered = []
    for message in messages_to_wire(messages):
        if message["role"] == "assistant":
            parts = []
            for part in message["parts"]:
                if part["type"] == "tool-invocation":
                    invocation = dict(part["toolInvocation"])
                    invocation["result"] = truncate_large_strings(invocation.get("result"), FEEDBACK_CHAR_LIMIT)
                    part = {**part, "toolInvocation": invocation}
                elif part["type"] == "text":
                    part = {**part, "text": truncate_large_strings(part["text"], FEEDBACK_CHAR_LIMIT)}
                parts.append(part)
            message = {**message, "parts": parts}
        filtered.append(message)
    return filtered


async def submit_feedback(args: dict, capabilities: ToolCapabilities) -> dict:
    """
    File a feedback report.

    Returns
    -------
    dict
        ``{"success": True, "reportId", "message"}`` or
        ``{"success": False, "error"}``.
    """
    identity = capabilities.identity
    try:
        params = SubmitFeedbackArgs.model_validate(args)
        if capabilities.feedback_reports is None:
            raise RuntimeError("no feedback report sink configured")
        report_id = f"feedback-{identity.user_id}-{identity.convo_id}-{int(time.time() * 1000)}"
        report = {
            "reportId": report_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "userId": identity.user_id,
            "collectionId": identity.collection_id,
            "convoId": identity.convo_id,
            "description": params.description,
            "conversation": conversation_for_feedback(capabilities.messages),
        }
        capabilities.feedback_reports.save_report(report)
        logger.info("Feedback report %s submitted", report_id)
        return {
            "success": True,
            "reportId": report_id,
            "message": "Thank you for your feedback. A report has been submitted.",
        }
    except Exception as e:
        logger.error("Error submitting feedback: %s", e)
        return {"success": False, "error": "Failed to submit feedback due to an internal error."}


def default_catalog() -> ToolCatalog:
    """The tool catalog offered on every turn."""
    return ToolCatalog([
        ToolSpec(
            name=QUERY_COLLECTION,
            description=(
                "Perform semantic searches through historical document collections. For complex topics, "
                "make MULTIPLE separate tool calls with focused queries. Use narrow date ranges "
                "(e.g., ~5 years) when possible, as wider ranges increase error likelihood."
            ),
            args_model=QueryCollectionArgs,
            executor=query_collection,
        ),
        ToolSpec(
            name=GET_DOCUMENT_TEXT,
            description="Get the full text of a given document using its storage key.",
            args_model=GetDocumentTextArgs,
            executor=get_document_text,
        ),
        ToolSpec(
            name=SUBMIT_FEEDBACK,
            description=(
                "Submits feedback. Use this tool for filing reports about technical issues (e.g., tool failures, "
                "unexpected empty results) or when the user expresses any feedback about the service. "
                "Requires user confirmation."
            ),
            args_model=SubmitFeedbackArgs,
            executor=submit_feedback,
            requires_confirmation=True,
        ),
    ])
