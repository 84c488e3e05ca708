"""
Retriever module for document retrieval at query time.

Embeds the user query, asks the DocumentStore for the top-K most similar
documents and formats them into a bounded context block ready to be
folded into the prompt.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .. import config
from ..gemini_gateway import GeminiGateway
from .document_store import DocumentStore, ScoredDocument

logger = logging.getLogger(__name__)


@dataclass
class RetrievalResult:
    """Documents retrieved for a query.

    Attributes:
        context: Formatted text to inject into the prompt ("" when nothing matched).
        documents: Every scored document returned by the store.
        used_sources: "ref_type:ref_id" of the documents actually folded into context.
        embedded: False when the query could not be embedded at all.
    """
    context: str = ""
    documents: List[ScoredDocument] = field(default_factory=list)
    used_sources: List[str] = field(default_factory=list)
    embedded: bool = True


def clamp_top_k(top_k: Optional[int]) -> int:
    if top_k is None:
        return config.RAG_TOP_K
    return max(1, min(int(top_k), config.RAG_MAX_TOP_K))


class Retriever:
    """Query-time retrieval over the DocumentStore.

    Args:
        gateway: Used to embed the query.
        store: Document store to search.
        max_context_chars: Upper bound on the formatted context.
        max_document_chars: Each document is trimmed to this many characters.
        min_similarity: Documents scoring below this are dropped.
    """

    def __init__(
        self,
        gateway: GeminiGateway,
        store: DocumentStore,
        max_context_chars: Optional[int] = None,
        max_document_chars: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.max_context_chars = max_context_chars or config.RAG_MAX_CONTEXT_CHARS
        self.max_document_chars = max_document_chars or config.RAG_MAX_DOCUMENT_CHARS
        self.min_similarity = config.RAG_MIN_SIMILARITY if min_similarity is None else min_similarity

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        ref_types: Optional[Iterable[str]] = None,
    ) -> RetrievalResult:
        k = clamp_top_k(top_k)
        query_embedding = await self.gateway.embed(query)
        if not query_embedding:
            logger.warning("[RETRIEVER] Query could not be embedded, no context available")
            return RetrievalResult(embedded=False)

        documents = await asyncio.to_thread(
            self.store.top_k, query_embedding, k, ref_types=ref_types, min_similarity=self.min_similarity
        )
        if not documents:
            logger.warning("[RETRIEVER] No documents retrieved for query")
            return RetrievalResult(documents=[])

        context, used_sources = self.format_context(documents)
        logger.info(
            f"[RETRIEVER] Retrieved {len(documents)} documents, {len(used_sources)} in context "
            f"({len(context):,} chars) for query: {query[:80]}..."
        )
        return RetrievalResult(context=context, documents=documents, used_sources=used_sources)

    def format_context(self, documents: List[ScoredDocument]):
        """Format scored documents into a prompt block.

        Each document is trimmed to max_document_chars; documents stop being
        added once the next one would push the block past max_context_chars.

        Returns:
            (context, used_sources)
        """
        parts = []
        used_sources = []
        total_chars = 0

        for index, scored in enumerate(documents, start=1):
            document = scored.document
            content = document.content
            if len(content) > self.max_document_chars:
                content = content[: self.max_document_chars].rstrip() + "..."

            block = (
                f"[{index}] {document.source_label} (score: {scored.score:.2f})\n"
                f"{content}"
            )
            separator = 2 if parts else 0
            # Respect character limit
            if total_chars + separator + len(block) > self.max_context_chars:
                logger.info(
                    f"[RETRIEVER] Reached char limit ({self.max_context_chars}), "
                    f"stopping at {len(parts)} documents"
                )
                break

            parts.append(block)
            used_sources.append(document.source_label)
            total_chars += separator + len(block)

        return "\n\n".join(parts), used_sources
