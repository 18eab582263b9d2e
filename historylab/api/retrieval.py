"""
Archive Search (LlamaIndex)
===========================

Default search collaborator for the ``queryCollection`` tool.

- load_vector_index : Open a persisted LlamaIndex from disk.
- to_metadata_filters : Translate ``{"doc_id": ..., "authored_year_month": {"$gte": ...}}``
  into LlamaIndex ``MetadataFilters``.
- group_documents : Fold retrieved chunks into per-document results.
- LlamaIndexSearchBackend : The collaborator itself.

Node metadata
-------------
Indexed chunks are expected to carry ``collection_id``, ``doc_id``,
``file_id``, ``source_key``, ``title``, ``authored`` (ISO date),
``classification``, ``corpus`` and the numeric ``authored_year_month`` /
``authored_year_month_day`` keys used by the date filters.

Result shape
------------
``{"status": "success", "documents": [...], "matches": int}`` or
``{"status": "error", "error": str}``. Each document is
``{document_id, best_score, chunks: [{chunk_id, score, text}], file_info: {id, source_key, metadata}}``.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from llama_index.core import StorageContext, load_index_from_storage
from llama_index.core.vector_stores import FilterCondition, FilterOperator, MetadataFilter, MetadataFilters
from llama_index.embeddings.openai import OpenAIEmbedding

from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

_OPERATORS = {
    "$eq": FilterOperator.EQ,
    "$gte": FilterOperator.GTE,
    "$lte": FilterOperator.LTE,
}

METADATA_FIELDS = ("title", "authored", "classification", "corpus", "doc_id")


def load_vector_index(persist_dir: str, embedding):
    """
    Open a persisted LlamaIndex from disk.

    Args:
        persist_dir (str): Directory containing the persisted index.
        embedding: Embedding model used by LlamaIndex for query encoding.

    Returns:
        VectorStoreIndex: The loaded index.
    """
    storage_context = StorageContext.from_defaults(persist_dir=persist_dir)
    return load_index_from_storage(storage_context=storage_context, embed_model=embedding)


def to_metadata_filters(collection_id: str, filters: Optional[dict] = None) -> MetadataFilters:
    """Collection scope plus the tool's optional doc id and date range, all ANDed."""
    conditions = [MetadataFilter(key="collection_id", value=collection_id, operator=FilterOperator.EQ)]
    for key, value in (filters or {}).items():
        if isinstance(value, dict):
            for op, bound in value.items():
                if op not in _OPERATORS:
                    raise ValueError(f"Unsupported filter operator {op!r} on {key!r}")
                conditions.append(MetadataFilter(key=key, value=bound, operator=_OPERATORS[op]))
        else:
            conditions.append(MetadataFilter(key=key, value=value, operator=FilterOperator.EQ))
    return MetadataFilters(filters=conditions, condition=FilterCondition.AND)


def group_documents(nodes) -> List[dict]:
    """
    Group retrieved chunks by document, best scoring document first.

    Args:
        nodes (list[NodeWithScore]): Retriever output.

    Returns:
        list[dict]: One entry per document.
    """
    documents: Dict[str, dict] = {}
    for scored in nodes:
        node = scored.node
        metadata = node.metadata or {}
        document_id = str(metadata.get("doc_id") or node.ref_doc_id or node.node_id)
        score = float(scored.score) if scored.score is not None else None
        document = documents.get(document_id)
        if document is None:
            document = {
                "document_id": document_id,
                "best_score": score,
                "chunks": [],
                "file_info": {
                    "id": metadata.get("file_id"),
                    "source_key": metadata.get("source_key"),
                    "metadata": {k: metadata[k] for k in METADATA_FIELDS if k in metadata},
                },
            }
            documents[document_id] = document
        elif score is not None and (document["best_score"] is None or score > document["best_score"]):
            document["best_score"] = score
        document["chunks"].append({"chunk_id": node.node_id, "score": score, "text": node.get_content()})

    return sorted(documents.values(), key=lambda d: d["best_score"] or 0.0, reverse=True)


class LlamaIndexSearchBackend:
    """
    Search collaborator over a persisted LlamaIndex vector index.

    Parameters
    ----------
    index : optional
        Preloaded index; loaded lazily from ``settings.VECTOR_INDEX_DIR`` otherwise.
    persist_dir : str, optional
        Index directory override.
    """

    def __init__(self, index=None, persist_dir: Optional[str] = None):
        self._index = index
        self.persist_dir = persist_dir or settings.VECTOR_INDEX_DIR

    @property
    def index(self):
        if self._index is None:
            logger.info("Loading vector index from %s", self.persist_dir)
            self._index = load_vector_index(self.persist_dir, OpenAIEmbedding(api_key=settings.API_KEY))
        return self._index

    def _retrieve(self, query_text: str, collection_id: str, top_k: int, filters: Optional[dict]):
        retriever = self.index.as_retriever(
            similarity_top_k=top_k,
            filters=to_metadata_filters(collection_id, filters),
        )
        return retriever.retrieve(query_text)

    async def search(self, query_text: str, collection_id: str, top_k: int,
                     filters: Optional[dict] = None) -> dict:
        try:
            nodes = await asyncio.to_thread(self._retrieve, query_text, collection_id, top_k, filters)
        except Exception as e:
            logger.exception("Vector search failed for collection %s", collection_id)
            return {"status": "error", "error": str(e)}
        documents = group_documents(nodes)
        return {"status": "success", "documents": documents, "matches": len(nodes)}
