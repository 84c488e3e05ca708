"""
Indexer - keeps the document store in sync with business data.

Full pass (`reindex_all`):
    1. Enumerate books / orders / invoices through the BusinessDataReader
    2. Build canonical text per entity
    3. Embed through the GeminiGateway (bounded, on top of the gateway gate)
    4. Upsert into the DocumentStore
    5. Delete rows whose entity no longer exists

A failed entity is recorded in the summary and skipped; it never aborts
the batch and never causes its existing row to be dropped.

Incremental hooks (`reindex_entity`, `remove_entity`) are meant to be
called by the CRUD layer after it mutates a single entity.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .. import config
from ..business_data import BusinessDataReader
from ..gemini_gateway import GeminiGateway
from .canonical_text import (
    REF_BOOK,
    REF_INVOICE,
    REF_ORDER,
    SUPPORTED_REF_TYPES,
    canonical_text,
    ref_id_for,
)
from chromadb.errors import ChromaError

from .document_store import DocumentKey, DocumentStore

logger = logging.getLogger(__name__)


class IndexingError(Exception):
    """A single entity could not be embedded or stored."""

    def __init__(self, ref_type: str, ref_id: str, reason: str):
        super().__init__(f"{ref_type}:{ref_id}: {reason}")
        self.ref_type = ref_type
        self.ref_id = ref_id
        self.reason = reason


@dataclass
class ReindexSummary:
    processed: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)
    ref_types: List[str] = field(default_factory=list)
    deleted: int = 0
    indexed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "failures": list(self.failures),
            "refTypes": list(self.ref_types),
            "deleted": self.deleted,
            "indexedAt": self.indexed_at.isoformat() if self.indexed_at else None,
        }


def normalize_ref_types(ref_types: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, dedupe and validate ref types; None or empty means all."""
    if not ref_types:
        return list(SUPPORTED_REF_TYPES)
    normalized = []
    for ref_type in ref_types:
        value = str(ref_type).strip().lower()
        if not value:
            continue
        if value not in SUPPORTED_REF_TYPES:
            raise ValueError(f"Unsupported ref type: {ref_type}")
        if value not in normalized:
            normalized.append(value)
    return normalized or list(SUPPORTED_REF_TYPES)


class Indexer:
    """Rebuilds the DocumentStore from a BusinessDataReader."""

    def __init__(
        self,
        gateway: GeminiGateway,
        store: DocumentStore,
        reader: BusinessDataReader,
        concurrency: Optional[int] = None,
        max_books: Optional[int] = None,
        max_orders: Optional[int] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.reader = reader
        self.concurrency = concurrency or config.INDEX_CONCURRENCY
        self.max_books = max_books or config.INDEX_MAX_BOOKS
        self.max_orders = max_orders or config.INDEX_MAX_ORDERS

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def _enumerate(self, ref_type: str) -> List[Dict[str, Any]]:
        if ref_type == REF_BOOK:
            return self.reader.list_sellable_items(limit=self.max_books)
        if ref_type == REF_ORDER:
            return self.reader.list_recent_orders(limit=self.max_orders)
        if ref_type == REF_INVOICE:
            return self.reader.list_invoices(limit=self.max_orders)
        raise ValueError(f"Unsupported ref type: {ref_type}")

    def _load(self, ref_type: str, ref_id: str) -> Optional[Dict[str, Any]]:
        if ref_type == REF_BOOK:
            return self.reader.get_item(ref_id)
        if ref_type == REF_ORDER:
            return self.reader.get_order(int(ref_id))
        if ref_type == REF_INVOICE:
            return self.reader.get_invoice(int(ref_id))
        raise ValueError(f"Unsupported ref type: {ref_type}")

    # ------------------------------------------------------------------
    # Single entity
    # ------------------------------------------------------------------

    async def _index_one(self, ref_type: str, ref_id: str, content: str) -> None:
        """Embed and upsert one entity. Raises IndexingError on failure."""
        vector = await self.gateway.embed(content)
        if not vector:
            raise IndexingError(ref_type, ref_id, "no embedding available")
        try:
            await asyncio.to_thread(self.store.upsert, ref_type, ref_id, content, vector)
        except (ValueError, ChromaError) as e:
            raise IndexingError(ref_type, ref_id, str(e)) from e

    async def reindex_entity(self, ref_type: str, ref_id: str) -> bool:
        """Re-derive one entity; removes its row when the entity is gone.

        Returns True when the store reflects the entity afterwards.
        """
        ref_type = normalize_ref_types([ref_type])[0]
        ref_id = str(ref_id)
        entity = await asyncio.to_thread(self._load, ref_type, ref_id)
        if entity is None:
            await asyncio.to_thread(self.store.delete, ref_type, ref_id)
            logger.info(f"[INDEXER] {ref_type}:{ref_id} no longer exists, removed from index")
            return True
        try:
            await self._index_one(ref_type, ref_id, canonical_text(ref_type, entity))
        except IndexingError as e:
            logger.warning(f"[INDEXER] Incremental update failed: {e}")
            return False
        logger.info(f"[INDEXER] Re-indexed {ref_type}:{ref_id}")
        return True

    async def remove_entity(self, ref_type: str, ref_id: str) -> bool:
        return await asyncio.to_thread(self.store.delete, ref_type, str(ref_id))

    # ------------------------------------------------------------------
    # Full pass
    # ------------------------------------------------------------------

    async def reindex_all(
        self, ref_types: Optional[Iterable[str]] = None, truncate: bool = False
    ) -> ReindexSummary:
        types = normalize_ref_types(ref_types)
        summary = ReindexSummary(ref_types=types)
        logger.info(f"[INDEXER] Starting reindex for {types} (truncate={truncate})")

        work: List[Tuple[str, str, str]] = []
        valid_keys: Set[DocumentKey] = set()
        enumerated_types: List[str] = []
        for ref_type in types:
            try:
                entities = await asyncio.to_thread(self._enumerate, ref_type)
            except Exception as e:
                # without a listing we cannot tell orphans apart, so this type is left untouched
                logger.error(f"[INDEXER] Could not enumerate {ref_type}: {e}")
                summary.failed += 1
                summary.failures.append(f"{ref_type}:*")
                continue
            enumerated_types.append(ref_type)
            for entity in entities:
                try:
                    ref_id = ref_id_for(ref_type, entity)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"[INDEXER] Skipping {ref_type} record without an id: {e}")
                    summary.failed += 1
                    summary.failures.append(f"{ref_type}:?")
                    continue
                # a known key keeps its existing row even when its text cannot be rebuilt
                valid_keys.add((ref_type, ref_id))
                try:
                    content = canonical_text(ref_type, entity)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"[INDEXER] Skipping malformed {ref_type}:{ref_id}: {e}")
                    summary.failed += 1
                    summary.failures.append(f"{ref_type}:{ref_id}")
                    continue
                work.append((ref_type, ref_id, content))
            logger.info(f"[INDEXER] Enumerated {len(entities)} {ref_type} records")

        if truncate and enumerated_types:
            cleared = await asyncio.to_thread(self.store.clear, enumerated_types)
            logger.info(f"[INDEXER] Truncated {cleared} documents for {enumerated_types}")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(ref_type: str, ref_id: str, content: str) -> Optional[IndexingError]:
            async with semaphore:
                try:
                    await self._index_one(ref_type, ref_id, content)
                except IndexingError as e:
                    return e
            return None

        results = await asyncio.gather(*(_bounded(*item) for item in work))
        for (ref_type, ref_id, _), error in zip(work, results):
            if error is None:
                summary.processed += 1
            else:
                logger.warning(f"[INDEXER] {error}")
                summary.failed += 1
                summary.failures.append(f"{ref_type}:{ref_id}")

        if enumerated_types:
            summary.deleted = await asyncio.to_thread(
                self.store.delete_orphans, valid_keys, ref_types=enumerated_types
            )

        summary.indexed_at = datetime.now(timezone.utc)
        logger.info(
            f"[INDEXER] Reindex done: processed={summary.processed} failed={summary.failed} "
            f"orphans_deleted={summary.deleted}"
        )
        return summary
