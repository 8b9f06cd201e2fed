"""
Document indexing: chunk -> embed -> store.

Indexing is an administrative path, so provider and index errors are
logged and re-raised rather than swallowed.
"""
import logging
import time
from typing import List, Optional

from apps.indexing.chunker import Chunk, ChunkConfig, Document, chunk_document

logger = logging.getLogger(__name__)


class DocumentIndexer:
    """Indexes documents into a vector index."""

    def __init__(
        self,
        embedder,
        index,
        default_config: Optional[ChunkConfig] = None,
        max_workers: int = 1,
    ):
        self.embedder = embedder
        self.index = index
        self.default_config = default_config or ChunkConfig()
        self.max_workers = max_workers

    def index_document(self, document: Document, chunk_config: Optional[ChunkConfig] = None) -> List[Chunk]:
        """
        Chunk a document, embed every chunk and replace its chunks in the index.

        Args:
            document: The document to index
            chunk_config: Chunking parameters (indexer default if None)

        Returns:
            The chunks that were stored

        Raises:
            ProviderError: If embedding fails
        """
        config = chunk_config or self.default_config
        start = time.monotonic()

        chunks = chunk_document(document, config)
        logger.info(f"Indexing document {document.id} ({document.title!r}): {len(chunks)} chunks")

        if not chunks:
            self.index.delete_document(document.id)
            return []

        try:
            vectors = self.embedder.embed_batch(
                [c.text for c in chunks],
                max_workers=self.max_workers,
                on_progress=lambda done, total: logger.debug(f"Embedded {done}/{total} chunks"),
            )
            removed = self.index.replace_document(document.id, chunks, vectors)
        except Exception as e:
            logger.error(f"Error indexing document {document.id}: {e}")
            raise

        elapsed = time.monotonic() - start
        logger.info(
            f"Document {document.id} indexed: {len(chunks)} chunks stored, "
            f"{removed} replaced, {elapsed:.1f}s"
        )
        return chunks
