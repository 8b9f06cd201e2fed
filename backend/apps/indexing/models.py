"""
Chunk model for the pgvector-backed vector index.
"""
from django.db import models
from pgvector.django import VectorField

# all-MiniLM-L6-v2 produces 384 dimensions
EMBEDDING_DIMENSIONS = 384


class IndexedChunk(models.Model):
    """
    A document chunk stored with its embedding vector.

    Rows are written in bulk per document and only ever deleted in bulk
    by document_id; a chunk row is never updated in place.
    """
    # "{document_id}_chunk_{index}"
    id = models.CharField(primary_key=True, max_length=300, editable=False)

    document_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="ID of the parent document"
    )

    chunk_index = models.PositiveIntegerField(
        help_text="Index of this chunk within the document (0-based)"
    )

    text = models.TextField(
        help_text="The text content of this chunk"
    )

    start_offset = models.PositiveIntegerField()
    end_offset = models.PositiveIntegerField()

    # Document-level metadata copied onto each chunk
    heading = models.CharField(max_length=500, null=True, blank=True)
    url = models.URLField(max_length=1000, null=True, blank=True)
    category = models.CharField(max_length=100, null=True, blank=True)
    org_scope = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Tenant partition; NULL for globally visible chunks"
    )

    embedding = VectorField(
        dimensions=EMBEDDING_DIMENSIONS,
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'rag_chunks'
        ordering = ['document_id', 'chunk_index']
        constraints = [
            models.UniqueConstraint(
                fields=['document_id', 'chunk_index'],
                name='unique_document_chunk'
            )
        ]
        indexes = [
            models.Index(fields=['document_id', 'chunk_index']),
        ]

    def __str__(self):
        preview = self.text[:50] + '...' if len(self.text) > 50 else self.text
        return f"Chunk {self.chunk_index} of {self.document_id}: {preview}"
