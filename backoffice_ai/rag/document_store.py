"""
Persistent embedding store for AI documents.

ChromaDB collection with one record per business entity, keyed by
(ref_type, ref_id), holding the canonical text that was embedded and its
vector. Provides upsert, cosine top-K search and orphan cleanup after a
full reindex.

All vectors in the store share one dimensionality; writes that would
mix dimensionalities are refused.
"""

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import chromadb
from chromadb.errors import ChromaError

from .. import config

logger = logging.getLogger(__name__)

DocumentKey = Tuple[str, str]

# Extra neighbours fetched past k so equal scores can be re-ordered by recency
TIE_MARGIN = 10


class DimensionMismatchError(ValueError):
    """Raised when a vector's length differs from the store's dimensionality."""
    pass


@dataclass(frozen=True)
class Document:
    ref_type: str
    ref_id: str
    content: str
    embedding: Tuple[float, ...]
    updated_at: datetime

    @property
    def key(self) -> DocumentKey:
        return (self.ref_type, self.ref_id)

    @property
    def source_label(self) -> str:
        return f"{self.ref_type}:{self.ref_id}"


@dataclass(frozen=True)
class ScoredDocument:
    document: Document
    score: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def document_id(ref_type: str, ref_id: str) -> str:
    return f"{ref_type}:{ref_id}"


def _where(types: Optional[List[str]]) -> Optional[Dict[str, Any]]:
    if types is None:
        return None
    if len(types) == 1:
        return {"ref_type": types[0]}
    return {"ref_type": {"$in": types}}


class DocumentStore:
    """ChromaDB-backed store of AI documents.

    Args:
        persist_dir: Chroma persistence directory. Defaults to config.CHROMA_PERSIST_DIR.
        clock: Callable returning the timestamp written on upsert.
        collection_name: Defaults to config.AI_COLLECTION_NAME.
    """

    def __init__(
        self,
        persist_dir: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
        collection_name: Optional[str] = None,
    ):
        self.persist_dir = persist_dir or config.CHROMA_PERSIST_DIR
        self.collection_name = collection_name or config.AI_COLLECTION_NAME
        self._clock = clock
        self._write_lock = threading.Lock()
        os.makedirs(self.persist_dir, exist_ok=True)
        self._client = chromadb.PersistentClient(path=self.persist_dir)
        self._collection = self._open_collection()

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def _rebuild_collection(self) -> None:
        """Drop and recreate the collection so its dimensionality is unpinned."""
        try:
            self._client.delete_collection(self.collection_name)
        except (ValueError, ChromaError):
            logger.debug(f"[DOC_STORE] Collection '{self.collection_name}' did not exist")
        self._collection = self._open_collection()
        logger.info(f"[DOC_STORE] Created fresh collection '{self.collection_name}'")

    def _dimension(self) -> Optional[int]:
        peek = self._collection.get(limit=1, include=["embeddings"])
        embeddings = peek.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return len(embeddings[0])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, ref_type: str, ref_id: str, content: str, embedding: Sequence[float]) -> Document:
        """Insert or replace the record for (ref_type, ref_id) and stamp updated_at."""
        if embedding is None or len(embedding) == 0:
            raise DimensionMismatchError(f"Refusing to store {ref_type}:{ref_id} without an embedding")
        vector = [float(v) for v in embedding]
        doc_id = document_id(ref_type, ref_id)

        with self._write_lock:
            dimension = self._dimension()
            if dimension is None:
                # an emptied collection still remembers the dimensionality it was created with
                self._rebuild_collection()
            elif dimension != len(vector):
                existing = self._collection.get(include=[])["ids"]
                if list(existing) != [doc_id]:
                    raise DimensionMismatchError(
                        f"{ref_type}:{ref_id} has {len(vector)} dimensions, store holds {dimension}"
                    )
                self._rebuild_collection()

            updated_at = self._clock()
            self._collection.upsert(
                ids=[doc_id],
                embeddings=[vector],
                documents=[content],
                metadatas=[{
                    "ref_type": ref_type,
                    "ref_id": ref_id,
                    "updated_at": updated_at.isoformat(),
                    "updated_ts": updated_at.timestamp(),
                }],
            )

        logger.debug(f"[DOC_STORE] Upserted {doc_id} ({len(vector)}d)")
        return Document(ref_type, ref_id, content, tuple(vector), updated_at)

    def delete(self, ref_type: str, ref_id: str) -> bool:
        doc_id = document_id(ref_type, ref_id)
        with self._write_lock:
            if not self._collection.get(ids=[doc_id], include=[])["ids"]:
                return False
            self._collection.delete(ids=[doc_id])
        return True

    def delete_orphans(self, valid_keys: Iterable[DocumentKey], ref_types: Optional[Iterable[str]] = None) -> int:
        """Delete records whose key is not in valid_keys.

        When ref_types is given, only records of those types are candidates.
        Returns the number of records deleted.
        """
        valid: Set[DocumentKey] = {(str(t), str(i)) for t, i in valid_keys}
        types = list(ref_types) if ref_types is not None else None
        if types is not None and not types:
            return 0

        with self._write_lock:
            result = self._collection.get(where=_where(types), include=["metadatas"])
            orphans = [
                doc_id for doc_id, meta in zip(result["ids"], result["metadatas"])
                if (meta["ref_type"], meta["ref_id"]) not in valid
            ]
            if orphans:
                self._collection.delete(ids=orphans)

        if orphans:
            logger.info(f"[DOC_STORE] Deleted {len(orphans)} orphaned documents")
        return len(orphans)

    def clear(self, ref_types: Optional[Iterable[str]] = None) -> int:
        with self._write_lock:
            if ref_types is None:
                removed = self._collection.count()
                self._rebuild_collection()
                return removed
            types = list(ref_types)
            if not types:
                return 0
            ids = self._collection.get(where=_where(types), include=[])["ids"]
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _to_document(content: Optional[str], meta: Dict[str, Any], embedding) -> Document:
        return Document(
            ref_type=meta["ref_type"],
            ref_id=meta["ref_id"],
            content=content or "",
            embedding=tuple(float(v) for v in embedding) if embedding is not None else (),
            updated_at=datetime.fromisoformat(meta["updated_at"]),
        )

    def get(self, ref_type: str, ref_id: str) -> Optional[Document]:
        result = self._collection.get(
            ids=[document_id(ref_type, ref_id)],
            include=["documents", "metadatas", "embeddings"],
        )
        if not result["ids"]:
            return None
        return self._to_document(result["documents"][0], result["metadatas"][0], result["embeddings"][0])

    def count(self, ref_types: Optional[Iterable[str]] = None) -> int:
        if ref_types is None:
            return self._collection.count()
        types = list(ref_types)
        if not types:
            return 0
        return len(self._collection.get(where=_where(types), include=[])["ids"])

    def keys(self) -> Set[DocumentKey]:
        result = self._collection.get(include=["metadatas"])
        return {(m["ref_type"], m["ref_id"]) for m in result["metadatas"]}

    def top_k(
        self,
        query_embedding: Sequence[float],
        k: int,
        ref_types: Optional[Iterable[str]] = None,
        min_similarity: Optional[float] = None,
    ) -> List[ScoredDocument]:
        """Return the k documents most similar to query_embedding.

        Ordered by score (1 - cosine distance) descending, ties broken by
        most recently updated. A query whose dimensionality differs from
        the store's matches nothing.
        """
        if k <= 0 or query_embedding is None or len(query_embedding) == 0:
            return []
        types = list(ref_types) if ref_types is not None else None
        available = self.count(types)
        if available == 0:
            return []
        dimension = self._dimension()
        if dimension is not None and dimension != len(query_embedding):
            logger.warning(
                f"[DOC_STORE] Query has {len(query_embedding)} dimensions, store holds {dimension}; no results"
            )
            return []

        result = self._collection.query(
            query_embeddings=[[float(v) for v in query_embedding]],
            n_results=min(available, k + TIE_MARGIN),
            where=_where(types),
            include=["documents", "metadatas", "distances", "embeddings"],
        )

        scored: List[ScoredDocument] = []
        rows = zip(result["documents"][0], result["metadatas"][0], result["distances"][0], result["embeddings"][0])
        for content, meta, distance, embedding in rows:
            score = 1.0 - float(distance)
            if min_similarity is not None and score < min_similarity:
                continue
            scored.append(ScoredDocument(self._to_document(content, meta, embedding), score))

        # float32 distances jitter in the last digits; compare scores at a fixed precision
        scored.sort(key=lambda s: (-round(s.score, 6), -s.document.updated_at.timestamp()))
        logger.debug(f"[DOC_STORE] top_k fetched {len(result['ids'][0])} neighbours, {len(scored)} candidates, k={k}")
        return scored[:k]

    def info(self) -> Dict[str, object]:
        result = self._collection.get(include=["metadatas"])
        by_ref_type: Dict[str, int] = {}
        for meta in result["metadatas"]:
            by_ref_type[meta["ref_type"]] = by_ref_type.get(meta["ref_type"], 0) + 1
        dimension = self._dimension()
        return {
            "path": self.persist_dir,
            "collection": self.collection_name,
            "count": len(result["ids"]),
            "by_ref_type": by_ref_type,
            "last_updated": max((m["updated_at"] for m in result["metadatas"]), default=None),
            "dimensions": [dimension] if dimension is not None else [],
        }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    info = DocumentStore().info()
    print(f"Collection: {info['collection']} at {info['path']}")
    print(f"Documents stored: {info['count']} {info['by_ref_type']}")
    print(f"Dimensions: {info['dimensions']}")
