"""
Document Citation Registry
==========================

Assigns short sequence numbers to archive documents so that answers can cite
them as ``[1]``, ``[2]`` and so on.

The model cites a document inline with ``{{cite:<sourceKey>}}``. The registry
is rebuilt for every render by replaying the history in order:

1. documents in completed ``queryCollection`` results are registered with their
   title and metadata,
2. citation tokens in text parts are registered at first encounter.

The counter starts at 1 and never reuses a number, so numbering is stable
across reloads as long as the history is unchanged.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, assert_never

from historylab.chat.messages import (
    Message,
    ReasoningPart,
    TextPart,
    ToolInvocation,
    ToolInvocationPart,
)
from historylab.chat.tools import QUERY_COLLECTION
from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

CITATION_PATTERN = re.compile(r"\{\{cite:([^}]+)\}\}")
"""Inline citation token: ``{{cite:<sourceKey>}}``."""

SEARCH_OK_STATUSES = ("success", "partial_success")


@dataclass
class RegisteredDocument:
    sequence_id: int
    source_key: str
    title: str
    metadata: dict = field(default_factory=dict)


class DocumentRegistry:
    """Per-render map ``sourceKey -> (sequence id, title)``."""

    def __init__(self):
        self._documents: Dict[str, RegisteredDocument] = {}
        self._counter = 0

    def register(self, source_key: str, title: Optional[str] = None, metadata: Optional[dict] = None) -> int:
        """
        Return the id of `source_key`, assigning the next one if it is new.

        Parameters
        ----------
        source_key : str
            Storage key of the document.
        title : str, optional
            Display title; defaults to ``"Document <id>"``.
        metadata : dict, optional
            Document metadata kept for export.
        """
        existing = self._documents.get(source_key)
        if existing is not None:
            if metadata and not existing.metadata:
                existing.metadata = dict(metadata)
            return existing.sequence_id
        self._counter += 1
        self._documents[source_key] = RegisteredDocument(
            sequence_id=self._counter,
            source_key=source_key,
            title=title or f"Document {self._counter}",
            metadata=dict(metadata or {}),
        )
        return self._counter

    def lookup(self, source_key: str) -> Optional[int]:
        document = self._documents.get(source_key)
        return document.sequence_id if document else None

    def title(self, source_key: str) -> str:
        document = self._documents.get(source_key)
        return document.title if document else "Document"

    def get(self, source_key: str) -> Optional[RegisteredDocument]:
        return self._documents.get(source_key)

    def documents(self) -> List[RegisteredDocument]:
        """Registered documents ordered by sequence id."""
        return sorted(self._documents.values(), key=lambda document: document.sequence_id)

    def __len__(self) -> int:
        return len(self._documents)

    def __iter__(self) -> Iterator[RegisteredDocument]:
        return iter(self.documents())


def document_url(source_key: str) -> str:
    return f"{settings.DOC_VIEWER_URL.rstrip('/')}/{source_key}"


def search_documents(invocation: ToolInvocation) -> List[dict]:
    """Documents of a completed, successful ``queryCollection`` invocation."""
    if invocation.tool_name != QUERY_COLLECTION or not invocation.is_resolved:
        return []
    result = invocation.result
    if not isinstance(result, dict) or result.get("status") not in SEARCH_OK_STATUSES:
        return []
    documents = result.get("documents")
    if not isinstance(documents, list):
        return []
    return [document for document in documents if isinstance(document, dict)]


def document_source_key(document: dict) -> Optional[str]:
    file_info = document.get("file_info") or {}
    return file_info.get("source_key")


def document_metadata(document: dict) -> dict:
    file_info = document.get("file_info") or {}
    return file_info.get("metadata") or {}


def document_title(document: dict) -> str:
    return document_metadata(document).get("title") or document.get("document_id") or "Document"


def build_registry(messages: List[Message]) -> DocumentRegistry:
    """Replay the history in order and register every document it mentions."""
    registry = DocumentRegistry()
    for message in messages:
        for part in message.parts:
            if isinstance(part, TextPart):
                for source_key in CITATION_PATTERN.findall(part.text):
                    registry.register(source_key)
            elif isinstance(part, ReasoningPart):
                continue
            elif isinstance(part, ToolInvocationPart):
                for document in search_documents(part.tool_invocation):
                    source_key = document_source_key(document)
                    if source_key:
                        registry.register(source_key, document_title(document), document_metadata(document))
            else:
                assert_never(part)
    return registry


def render_text(text: str, registry: DocumentRegistry) -> str:
    """Rewrite citation tokens to ``[<id>](<viewer url>)`` links."""
    def replace(match: re.Match) -> str:
        source_key = match.group(1)
        return f"[{registry.register(source_key)}]({document_url(source_key)})"

    return CITATION_PATTERN.sub(replace, text)


def render_messages(messages: List[Message]) -> tuple[List[Message], DocumentRegistry]:
    """
    Render citation tokens in every text part.

    Returns
    -------
    tuple[list[Message], DocumentRegistry]
        Rendered messages and the registry used. If rendering fails the raw
        messages are returned with an empty registry.
    """
    try:
        registry = build_registry(messages)
        rendered = []
        for message in messages:
            parts = [
                part.model_copy(update={"text": render_text(part.text, registry)})
                if isinstance(part, TextPart) else part
                for part in message.parts
            ]
            rendered.append(message.model_copy(update={"parts": parts}))
        return rendered, registry
    except Exception:
        logger.exception("Citation rendering failed, returning raw messages")
        return list(messages), DocumentRegistry()


def citation_list(registry: DocumentRegistry) -> List[dict]:
    return [
        {
            "id": document.sequence_id,
            "sourceKey": document.source_key,
            "title": document.title,
            "url": document_url(document.source_key),
        }
        for document in registry.documents()
    ]
