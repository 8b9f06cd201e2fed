"""
Indexing app.

Provides:
- Sentence-based, token-bounded chunking
- Embedding providers with rate-limit retries
- pgvector chunk storage
"""
