"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Query embedding with a bounded shared cache
- Tenant-scoped similarity retrieval
- Token-budgeted prompt assembly with cited sources
- Heuristic answer confidence
- The query pipeline tying them together
"""
