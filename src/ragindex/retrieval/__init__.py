"""Chunking, embedding and vector storage."""

from ragindex.retrieval.chunker import Chunk, Chunker, ContentType, detect_content_type
from ragindex.retrieval.embeddings import EmbeddingClient, normalize_dimensions
from ragindex.retrieval.models import VectorRecord, create_engine_for, init_db
from ragindex.retrieval.store import VectorStore

__all__ = [
    "Chunk",
    "Chunker",
    "ContentType",
    "detect_content_type",
    "EmbeddingClient",
    "normalize_dimensions",
    "VectorRecord",
    "create_engine_for",
    "init_db",
    "VectorStore",
]
