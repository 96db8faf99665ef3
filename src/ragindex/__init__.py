"""
ragindex: content-aware chunking, embedding and vector search for RAG.

Key Components:
    - retrieval.chunker: content-aware, loop-safe document chunking
    - retrieval.embeddings: batched, retrying embedding endpoint client
    - retrieval.store: deduplicated bulk persistence and FAISS ranking
    - service: ingestion and retrieval-augmented answering per collection

Example:
    >>> from ragindex import IndexingService
    >>> service = IndexingService.from_settings(project_id=3)
    >>> service.add_document(text, source_title="notes.md")
    >>> answer = service.ask("What changed in the last release?")
    >>> print(answer.answer)
"""

__version__ = "0.1.0"

from ragindex.config import Settings, get_settings
from ragindex.service import Answer, IndexingService

__all__ = [
    "__version__",
    "Answer",
    "IndexingService",
    "Settings",
    "get_settings",
]
