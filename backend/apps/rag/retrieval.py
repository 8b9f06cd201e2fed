"""
Retrieval service for RAG queries.

Embeds the question, asks the vector index for nearest chunks, converts
cosine distances to similarities and drops everything under the
similarity threshold. Retrieval is best-effort: any failure yields an
empty result so the pipeline can still answer from its instructions.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from django.conf import settings

from apps.indexing.chunker import Chunk
from apps.indexing.embedder import BaseEmbeddingProvider
from apps.indexing.retry import deadline_after, remaining_time
from apps.rag.embeddings import normalize_query
from apps.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

# Default number of chunks to retrieve
DEFAULT_TOP_K = 5

# Minimum similarity for a chunk to be used as context
DEFAULT_THRESHOLD = 0.5


@dataclass
class RetrievedChunk:
    """A chunk paired with its similarity to the query."""
    chunk: Chunk
    similarity: float  # 1 - cosine distance, clamped to [0, 1]

    def to_dict(self) -> dict:
        return {
            "chunkId": self.chunk.id,
            "documentId": self.chunk.document_id,
            "similarity": round(self.similarity, 4),
        }


@dataclass
class RetrievalResult:
    """Ranked retrieval output, highest similarity first."""
    query: str
    items: List[RetrievedChunk] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def chunks(self) -> List[Chunk]:
        return [item.chunk for item in self.items]

    @property
    def scores(self) -> List[float]:
        return [item.similarity for item in self.items]

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "query": self.query,
            "items": [item.to_dict() for item in self.items],
        }


def distance_to_similarity(distance: float) -> float:
    """Convert a cosine distance to a similarity in [0, 1]."""
    return max(0.0, min(1.0, 1.0 - distance))


class Retriever:
    """Similarity search with threshold filtering."""

    def __init__(
        self,
        embedder: BaseEmbeddingProvider,
        index: VectorIndex,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self.embedder = embedder
        self.index = index
        self.top_k = top_k
        self.threshold = threshold

    @classmethod
    def from_settings(cls, embedder: BaseEmbeddingProvider, index: VectorIndex) -> "Retriever":
        return cls(
            embedder=embedder,
            index=index,
            top_k=getattr(settings, 'RAG_RETRIEVAL_TOP_K', DEFAULT_TOP_K),
            threshold=getattr(settings, 'RAG_SIMILARITY_THRESHOLD', DEFAULT_THRESHOLD),
        )

    def retrieve(
        self,
        query: str,
        scope: Optional[str] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> RetrievalResult:
        """
        Fetch chunks relevant to a query.

        Args:
            query: The user's question
            scope: Tenant partition to search, or None for global chunks
            top_k: Maximum number of chunks to request from the index
            threshold: Minimum similarity for a chunk to be kept
            timeout: Deadline in seconds shared by the embedding call and the index query

        Returns:
            RetrievalResult in index rank order; empty if anything failed
        """
        top_k = self.top_k if top_k is None else top_k
        threshold = self.threshold if threshold is None else threshold
        start = time.monotonic()

        logger.info(
            f"Retrieving context for '{query[:50]}' "
            f"(top_k={top_k}, threshold={threshold}, scope={scope})"
        )

        try:
            deadline = deadline_after(timeout)
            query_embedding = self.embedder.embed(normalize_query(query), timeout=timeout)
            neighbors = self.index.query(
                query_embedding, top_k, scope=scope, timeout=remaining_time(deadline),
            )
        except Exception as e:
            logger.warning(f"Retrieval failed, proceeding without context: {e}")
            return RetrievalResult(query=query)

        items = []
        for chunk, distance in neighbors[:top_k]:
            similarity = distance_to_similarity(distance)
            if similarity >= threshold:
                items.append(RetrievedChunk(chunk=chunk, similarity=similarity))

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            f"Retrieved {len(neighbors)} chunks, kept {len(items)} "
            f"above threshold in {elapsed_ms:.0f}ms"
        )
        return RetrievalResult(query=query, items=items)
