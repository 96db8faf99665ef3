"""
SQLAlchemy model and engine setup for the vector store.

Embeddings are stored as JSON float arrays; nearest-neighbor ranking is
done in memory with FAISS by the store, so any SQLAlchemy backend works.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VectorRecord(Base):
    """
    One embedded piece of content.

    collection: partition key ("default", "Project<id>" or caller-chosen)
    content: the text that was embedded
    embedding: JSON-encoded float array of the configured dimensionality
    metadata_: free-form JSON (column name "metadata")
    """
    __tablename__ = "vector_embeddings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False)
    content_type = Column(String(50), nullable=False, default="text")
    source_url = Column(Text, nullable=True)
    source_title = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    embedding = Column(JSON, nullable=False)
    task_id = Column(Integer, nullable=True, index=True)
    project_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_vector_embeddings_collection_type", "collection", "content_type"),
    )

    def similarity(self, other_embedding) -> float:
        """Cosine similarity between this record's embedding and another vector."""
        a = np.asarray(self.embedding, dtype=np.float64)
        b = np.asarray(other_embedding, dtype=np.float64)
        denominator = np.linalg.norm(a) * np.linalg.norm(b)
        if denominator == 0:
            return 0.0
        return float(np.dot(a, b) / denominator)

    def __repr__(self) -> str:
        preview = (self.content or "")[:40].replace("\n", " ")
        return f"<VectorRecord id={self.id} collection={self.collection!r} content={preview!r}>"


def create_engine_for(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for a database URL.

    SQLite connections may be used from worker threads; an in-memory SQLite
    database is pinned to a single shared connection so every session sees
    the same tables.

    Args:
        url: SQLAlchemy database URL
        echo: Log SQL statements

    Returns:
        Engine bound to the URL
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo)

    database = parsed.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def init_db(engine: Engine) -> None:
    """Create all tables. Safe to call repeatedly."""
    Base.metadata.create_all(bind=engine)
    logger.debug(f"Initialized vector store schema on {engine.url}")


def session_factory(engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
