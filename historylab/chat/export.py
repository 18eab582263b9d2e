"""
Markdown transcript export.

Produces a readable record of a conversation: user and assistant sections,
citation tokens turned into ``[Document #n](url)`` links, a "Documents Found"
list after each successful search, a note for each tool call the user declined,
and one "Document References" entry per distinct source, ordered by sequence id.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from historylab.chat.citations import (
    CITATION_PATTERN,
    DocumentRegistry,
    build_registry,
    document_metadata,
    document_source_key,
    document_title,
    document_url,
    search_documents,
)
from historylab.chat.messages import Message
from historylab.chat.reconciliation import is_rejection

logger = logging.getLogger(__name__)


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def _metadata_date(metadata: dict) -> Optional[str]:
    if metadata.get("date"):
        return str(metadata["date"])
    if metadata.get("authored"):
        return str(metadata["authored"])[:10]
    return None


def _metadata_fields(metadata: dict) -> List[tuple]:
    fields = []
    date = _metadata_date(metadata)
    if date:
        fields.append(("Date", date))
    if metadata.get("classification"):
        fields.append(("Classification", metadata["classification"]))
    if metadata.get("corpus"):
        fields.append(("Corpus", metadata["corpus"]))
    if metadata.get("doc_id"):
        fields.append(("Document ID", metadata["doc_id"]))
    if metadata.get("source"):
        fields.append(("Source", f"[{metadata['source']}]({metadata['source']})"))
    return fields


def _cite(text: str, registry: DocumentRegistry) -> str:
    def replace(match) -> str:
        source_key = match.group(1)
        return f"[Document #{registry.register(source_key)}]({document_url(source_key)})"

    return CITATION_PATTERN.sub(replace, text)


def export_conversation(messages: List[Message], exported_at: Optional[datetime] = None) -> str:
    """
    Render a conversation as markdown.

    Parameters
    ----------
    messages : list[Message]
        Conversation history.
    exported_at : datetime, optional
        Export timestamp shown in the header; defaults to now.

    Returns
    -------
    str
        The markdown transcript.
    """
    exported_at = exported_at or datetime.now(timezone.utc)
    try:
        registry = build_registry(messages)
    except Exception:
        logger.exception("Could not build the citation registry for export")
        registry = DocumentRegistry()

    lines = ["# HistoryLab AI Conversation", "", f"*Exported on {_format_time(exported_at)}*", ""]

    for message in messages:
        if message.role == "user":
            lines += [f"## User ({_format_time(message.created_at)})", "", message.text(), ""]
            continue

        lines += [f"## HistoryLab AI ({_format_time(message.created_at)})", ""]
        try:
            lines += [_cite(message.text(), registry), ""]
        except Exception:
            logger.exception("Citation rewrite failed for message %s", message.id)
            lines += [message.text(), ""]

        for invocation in message.tool_invocations():
            if is_rejection(invocation.result):
                lines += [f"*Declined by the user: `{invocation.tool_name}`*", ""]
                continue
            documents = search_documents(invocation)
            if not documents:
                continue
            lines += [f"### Documents Found ({len(documents)})", ""]
            for position, document in enumerate(documents, start=1):
                source_key = document_source_key(document)
                sequence_id = registry.lookup(source_key) if source_key else None
                link = f"[Document #{sequence_id or '?'}]({document_url(source_key) if source_key else ''})"
                entry = f"{position}. **{document_title(document)}** - {link}"
                fields = _metadata_fields(document_metadata(document))
                if fields:
                    entry += "  \n   *" + " | ".join(f"{name}: {value}" for name, value in fields) + "*"
                lines.append(entry)
            lines.append("")

    references = registry.documents()
    if references:
        lines += ["", "## Document References", ""]
        for document in references:
            lines.append(f"### Document #{document.sequence_id}: {document.title}")
            lines.append(f"- **Link**: [View Document]({document_url(document.source_key)})")
            for name, value in _metadata_fields(document.metadata):
                lines.append(f"- **{name}**: {value}")
            lines.append(f"- **Source Key**: `{document.source_key}`")
            lines.append("")

    return "\n".join(lines)
