"""
Vector index backends.

The pipeline talks to the index through VectorIndex only. Two backends
are provided:
- InMemoryVectorIndex: numpy brute-force search, for tests and small corpora
- PgVectorIndex: PostgreSQL + pgvector via the Django connection

Distances are cosine distances (1 - cosine similarity), nearest first.
A query with a scope only sees chunks of that tenant partition; a query
without a scope only sees chunks that have no partition.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np
from django.db import connection, transaction

from apps.indexing.chunker import Chunk, ChunkMetadata
from apps.indexing.models import EMBEDDING_DIMENSIONS, IndexedChunk

logger = logging.getLogger(__name__)


class VectorIndexError(Exception):
    """Raised when the vector index cannot serve a request."""
    pass


class VectorIndex(ABC):
    """Stores chunk vectors and answers nearest-neighbor queries."""

    @abstractmethod
    def query(
        self,
        vector: List[float],
        top_k: int,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[Tuple[Chunk, float]]:
        """
        Return up to top_k (chunk, cosine distance) pairs, nearest first.

        Backends that can bound a query in time honor timeout (seconds).
        """
        pass

    @abstractmethod
    def upsert(self, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        pass

    @abstractmethod
    def delete_document(self, document_id: str) -> int:
        """Delete every chunk of a document. Returns the number removed."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def replace_document(self, document_id: str, chunks: List[Chunk], vectors: List[List[float]]) -> int:
        """
        Swap a document's stored chunks for a new set.

        Returns:
            Number of chunks removed
        """
        removed = self.delete_document(document_id)
        self.upsert(chunks, vectors)
        return removed


def _check_upsert_args(chunks: List[Chunk], vectors: List[List[float]]) -> None:
    if len(chunks) != len(vectors):
        raise VectorIndexError(
            f"Got {len(chunks)} chunks but {len(vectors)} vectors"
        )


def _check_dimensions(vectors: List[List[float]], dimensions: int) -> None:
    for i, vector in enumerate(vectors):
        if len(vector) != dimensions:
            raise VectorIndexError(
                f"Vector {i} has {len(vector)} dimensions, the index stores {dimensions}"
            )


class InMemoryVectorIndex(VectorIndex):
    """Brute-force cosine search over vectors held in memory."""

    def __init__(self):
        self._chunks: Dict[str, Chunk] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = threading.RLock()

    def query(
        self,
        vector: List[float],
        top_k: int,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[Tuple[Chunk, float]]:
        if top_k <= 0:
            return []

        query_vec = np.asarray(vector, dtype=float)
        query_norm = np.linalg.norm(query_vec)

        with self._lock:
            candidates = [
                chunk for chunk in self._chunks.values()
                if chunk.metadata.org_scope == scope
            ]
            if not candidates:
                return []
            matrix = np.vstack([self._vectors[c.id] for c in candidates])

        if matrix.shape[1] != query_vec.shape[0]:
            raise VectorIndexError(
                f"Vector dimension mismatch: {matrix.shape[1]} vs {query_vec.shape[0]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * query_norm
        dots = matrix @ query_vec
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        distances = 1.0 - similarities

        # Stable sort keeps insertion order among equal distances
        order = np.argsort(distances, kind="stable")[:top_k]
        return [(candidates[i], float(distances[i])) for i in order]

    def upsert(self, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        _check_upsert_args(chunks, vectors)
        with self._lock:
            for chunk, vector in zip(chunks, vectors):
                self._chunks[chunk.id] = chunk
                self._vectors[chunk.id] = np.asarray(vector, dtype=float)
        logger.info(f"Upserted {len(chunks)} chunks into in-memory index")

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            ids = [cid for cid, c in self._chunks.items() if c.document_id == document_id]
            for cid in ids:
                del self._chunks[cid]
                del self._vectors[cid]
        return len(ids)

    def replace_document(self, document_id: str, chunks: List[Chunk], vectors: List[List[float]]) -> int:
        _check_upsert_args(chunks, vectors)
        with self._lock:
            removed = self.delete_document(document_id)
            self.upsert(chunks, vectors)
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._chunks)


class PgVectorIndex(VectorIndex):
    """
    Chunk vectors in PostgreSQL, searched with pgvector's <=> operator.

    Uses the default Django database connection.
    """

    QUERY_SQL = """
        SELECT
            c.id,
            c.document_id,
            c.chunk_index,
            c.text,
            c.start_offset,
            c.end_offset,
            c.heading,
            c.url,
            c.category,
            c.org_scope,
            c.embedding <=> %s::vector AS distance
        FROM rag_chunks c
        WHERE {scope_clause}
          AND c.embedding IS NOT NULL
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
    """

    def query(
        self,
        vector: List[float],
        top_k: int,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[Tuple[Chunk, float]]:
        # Convert embedding to PostgreSQL array literal
        embedding_str = '[' + ','.join(str(x) for x in vector) + ']'

        if scope is None:
            sql = self.QUERY_SQL.format(scope_clause="c.org_scope IS NULL")
            params = [embedding_str, embedding_str, top_k]
        else:
            sql = self.QUERY_SQL.format(scope_clause="c.org_scope = %s")
            params = [embedding_str, scope, embedding_str, top_k]

        if timeout is None:
            rows = self._fetch(sql, params)
        else:
            # statement_timeout set with is_local only lasts for the transaction
            with transaction.atomic():
                rows = self._fetch(sql, params, timeout_ms=max(1, int(timeout * 1000)))

        results = []
        for row in rows:
            (chunk_id, document_id, chunk_index, text, start_offset, end_offset,
             heading, url, category, org_scope, distance) = row
            chunk = Chunk(
                id=chunk_id,
                document_id=document_id,
                text=text,
                index=chunk_index,
                start_offset=start_offset,
                end_offset=end_offset,
                metadata=ChunkMetadata(
                    heading=heading,
                    url=url,
                    category=category,
                    org_scope=org_scope,
                ),
            )
            results.append((chunk, float(distance)))

        logger.debug(f"pgvector returned {len(results)} rows (top_k={top_k}, scope={scope})")
        return results

    def _fetch(self, sql: str, params: list, timeout_ms: Optional[int] = None) -> list:
        with connection.cursor() as cursor:
            if timeout_ms is not None:
                cursor.execute("SELECT set_config('statement_timeout', %s, true)", [str(timeout_ms)])
            cursor.execute(sql, params)
            return cursor.fetchall()

    def upsert(self, chunks: List[Chunk], vectors: List[List[float]]) -> None:
        _check_upsert_args(chunks, vectors)
        _check_dimensions(vectors, EMBEDDING_DIMENSIONS)
        rows = [
            IndexedChunk(
                id=chunk.id,
                document_id=chunk.document_id,
                chunk_index=chunk.index,
                text=chunk.text,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                heading=chunk.metadata.heading,
                url=chunk.metadata.url,
                category=chunk.metadata.category,
                org_scope=chunk.metadata.org_scope,
                embedding=vector,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        with transaction.atomic():
            IndexedChunk.objects.filter(id__in=[c.id for c in chunks]).delete()
            IndexedChunk.objects.bulk_create(rows)

        logger.info(f"Stored {len(rows)} chunks in pgvector")

    def delete_document(self, document_id: str) -> int:
        deleted, _ = IndexedChunk.objects.filter(document_id=document_id).delete()
        return deleted

    def replace_document(self, document_id: str, chunks: List[Chunk], vectors: List[List[float]]) -> int:
        _check_upsert_args(chunks, vectors)
        _check_dimensions(vectors, EMBEDDING_DIMENSIONS)
        with transaction.atomic():
            removed = self.delete_document(document_id)
            self.upsert(chunks, vectors)
        return removed

    def count(self) -> int:
        return IndexedChunk.objects.count()
