"""
Vector store over the vector_embeddings table.

Each store is scoped to one collection. Records are written once by
single insert or bulk commit and never updated; nearest-neighbor queries
load the collection's vectors and rank them with a FAISS flat index.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import faiss
import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ragindex.exceptions import PersistenceError
from ragindex.retrieval.embeddings import normalize_dimensions
from ragindex.retrieval.models import VectorRecord, session_factory

logger = logging.getLogger(__name__)

DISTANCE_METRICS = ("cosine", "euclidean", "inner_product")


def default_collection(project_id: Optional[int] = None) -> str:
    """Collection name used when the caller does not choose one."""
    return f"Project{project_id}" if project_id is not None else "default"


def _rank(
    records: list[VectorRecord],
    query: Sequence[float],
    k: int,
    distance: str,
) -> list[VectorRecord]:
    """
    Order records by distance to the query using an exact FAISS index.

    cosine ranks by inner product of L2-normalized vectors, inner_product by
    raw inner product (distance is its negation), euclidean by L2.
    """
    records = [record for record in records if record.embedding]
    if not records or k <= 0:
        return []

    matrix = np.ascontiguousarray(
        np.asarray([record.embedding for record in records], dtype=np.float32)
    )
    vector = np.ascontiguousarray(np.asarray(query, dtype=np.float32).reshape(1, -1))
    if matrix.ndim != 2 or vector.shape[1] != matrix.shape[1]:
        raise ValueError(
            f"Query has dimension {vector.shape[1]}, stored vectors have shape {matrix.shape}"
        )

    dimension = matrix.shape[1]
    if distance == "cosine":
        faiss.normalize_L2(matrix)
        faiss.normalize_L2(vector)
        index = faiss.IndexFlatIP(dimension)
    elif distance == "inner_product":
        index = faiss.IndexFlatIP(dimension)
    else:
        index = faiss.IndexFlatL2(dimension)

    index.add(matrix)
    _, indices = index.search(vector, min(k, len(records)))
    return [records[i] for i in indices[0] if i >= 0]


class VectorStore:
    """
    Persistence and nearest-neighbor search for one collection.

    Example:
        >>> store = VectorStore(engine, project_id=7)
        >>> store.collection
        'Project7'
        >>> fresh = store.filter_new(["a", "b"])
        >>> neighbors = store.nearest_neighbors(query_vector, k=3)
    """

    def __init__(
        self,
        engine: Engine,
        collection: Optional[str] = None,
        task_id: Optional[int] = None,
        project_id: Optional[int] = None,
        dedup_batch_size: int = 1000,
        embedding_model: str = "thenlper/gte-large",
        dimensions: int = 1024,
    ) -> None:
        self.engine = engine
        self.task_id = task_id
        self.project_id = project_id
        self.collection = collection or default_collection(project_id)
        self.dedup_batch_size = max(1, dedup_batch_size)
        self.embedding_model = embedding_model
        self.dimensions = dimensions
        self._sessions = session_factory(engine)

    # =========================================================================
    # Existence and de-duplication
    # =========================================================================

    def exists(self, content: str, content_type: Optional[str] = None) -> bool:
        """Whether this collection already holds a record with this content."""
        stmt = select(VectorRecord.id).where(
            VectorRecord.collection == self.collection,
            VectorRecord.content == content,
        )
        if content_type:
            stmt = stmt.where(VectorRecord.content_type == content_type)
        with self._sessions() as session:
            return session.execute(stmt.limit(1)).first() is not None

    def filter_new(self, chunks: Sequence[str]) -> list[str]:
        """
        Drop chunks already stored in this collection.

        Repeats within the input are dropped too, so one ingestion never
        writes the same content twice. Order of the survivors is kept.

        Args:
            chunks: Candidate chunk strings

        Returns:
            Chunks that are not yet stored, in input order
        """
        if not chunks:
            return []

        unique = list(dict.fromkeys(chunks))
        existing: set[str] = set()
        with self._sessions() as session:
            for start in range(0, len(unique), self.dedup_batch_size):
                batch = unique[start:start + self.dedup_batch_size]
                stmt = select(VectorRecord.content).where(
                    VectorRecord.collection == self.collection,
                    VectorRecord.content.in_(batch),
                )
                existing.update(session.scalars(stmt))

        fresh = [chunk for chunk in unique if chunk not in existing]
        logger.debug(f"Filtered {len(chunks)} chunks to {len(fresh)} new in {self.collection}")
        return fresh

    # =========================================================================
    # Writes
    # =========================================================================

    def store(
        self,
        content: str,
        embedding: Sequence[float],
        content_type: str = "text",
        source_url: Optional[str] = None,
        source_title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[VectorRecord]:
        """
        Insert a single record.

        Args:
            content: Text that was embedded
            embedding: Its vector, padded or truncated to the store dimensions
            content_type: Stored content type label
            source_url: Optional source URL
            source_title: Optional source title
            metadata: Caller metadata merged into the record metadata

        Returns:
            The stored record, or None when content is blank

        Raises:
            PersistenceError: If the insert fails
        """
        if content is None or not content.strip():
            return None

        record = VectorRecord(
            collection=self.collection,
            content=content,
            content_type=content_type,
            source_url=source_url,
            source_title=source_title,
            metadata_=self.build_metadata(content_type, source_url, source_title, metadata),
            embedding=normalize_dimensions(embedding, self.dimensions),
            task_id=self.task_id,
            project_id=self.project_id,
        )
        try:
            with self._sessions.begin() as session:
                session.add(record)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store embedding in {self.collection}: {e}")
            raise PersistenceError(f"Failed to store embedding: {e}") from e
        return record

    def commit_batch(
        self,
        chunks: Sequence[str],
        embeddings: Sequence[Optional[Sequence[float]]],
        base_metadata: dict[str, Any],
        total_chunks: int,
        start_index: int = 0,
    ) -> list[VectorRecord]:
        """
        Bulk-insert buffered chunks with their embeddings.

        Chunks whose embedding is None are skipped without shifting the
        chunk_index of the ones after them.

        Args:
            chunks: Buffered chunk strings
            embeddings: One embedding (or None) per chunk
            base_metadata: Document metadata from build_base_metadata()
            total_chunks: Chunk count of the whole document
            start_index: Document position of chunks[0]

        Returns:
            Inserted records, or [] when nothing was written or the insert failed
        """
        if not chunks or not embeddings:
            return []

        content_type = base_metadata.get("content_type") or "text"
        records = []
        for position, (chunk, embedding) in enumerate(zip(chunks, embeddings)):
            if embedding is None:
                continue
            metadata = dict(base_metadata)
            metadata["chunk_index"] = start_index + position
            metadata["chunk_count"] = total_chunks
            records.append(VectorRecord(
                collection=self.collection,
                content=chunk,
                content_type=content_type,
                source_url=base_metadata.get("source_url"),
                source_title=base_metadata.get("source_title"),
                metadata_=metadata,
                embedding=normalize_dimensions(embedding, self.dimensions),
                task_id=self.task_id,
                project_id=self.project_id,
            ))

        if not records:
            return []

        start = time.monotonic()
        try:
            with self._sessions.begin() as session:
                session.add_all(records)
        except SQLAlchemyError as e:
            logger.error(f"Database commit failed for {len(records)} records: {e}")
            return []

        logger.debug(
            f"Committed {len(records)} records to {self.collection} "
            f"in {time.monotonic() - start:.2f}s"
        )
        return records

    # =========================================================================
    # Queries
    # =========================================================================

    def _scoped(
        self,
        stmt,
        collection: Optional[str] = None,
        content_type: Optional[str] = None,
        task_id: Optional[int] = None,
        project_id: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ):
        stmt = stmt.where(VectorRecord.collection == (collection or self.collection))
        if content_type:
            stmt = stmt.where(VectorRecord.content_type == content_type)
        if task_id is not None:
            stmt = stmt.where(VectorRecord.task_id == task_id)
        if project_id is not None:
            stmt = stmt.where(VectorRecord.project_id == project_id)
        if exclude_id is not None:
            stmt = stmt.where(VectorRecord.id != exclude_id)
        return stmt

    def nearest_neighbors(
        self,
        embedding: Sequence[float],
        k: int = 5,
        distance: str = "cosine",
        content_type: Optional[str] = None,
        task_id: Optional[int] = None,
        project_id: Optional[int] = None,
        collection: Optional[str] = None,
        exclude_id: Optional[int] = None,
    ) -> list[VectorRecord]:
        """
        Records closest to a vector, ascending by distance.

        If loading or ranking fails, the error is logged and up to k
        arbitrary matching records are returned instead.

        Args:
            embedding: Query vector
            k: Maximum number of records
            distance: "cosine", "euclidean" or "inner_product"
            content_type: Only records of this content type
            task_id: Only records tagged with this task
            project_id: Only records tagged with this project
            collection: Search this collection instead of the store's own
            exclude_id: Leave out the record with this id

        Returns:
            Up to k records

        Raises:
            ValueError: If distance is not a known metric
        """
        if distance not in DISTANCE_METRICS:
            raise ValueError(f"Unknown distance {distance!r}, expected one of {DISTANCE_METRICS}")

        filters = dict(
            collection=collection,
            content_type=content_type,
            task_id=task_id,
            project_id=project_id,
            exclude_id=exclude_id,
        )
        start = time.monotonic()
        try:
            with self._sessions() as session:
                records = list(session.scalars(self._scoped(select(VectorRecord), **filters)))
            query = normalize_dimensions(embedding, self.dimensions)
            neighbors = _rank(records, query, k, distance)
        except Exception as e:
            logger.error(f"Error in nearest_neighbors: {e}")
            return self._any_records(k, filters)

        logger.debug(
            f"Ranked {len(records)} vectors by {distance} in {time.monotonic() - start:.3f}s"
        )
        return neighbors

    def _any_records(self, k: int, filters: dict[str, Any]) -> list[VectorRecord]:
        try:
            with self._sessions() as session:
                stmt = self._scoped(select(VectorRecord), **filters).limit(k)
                return list(session.scalars(stmt))
        except SQLAlchemyError as e:
            logger.error(f"Fallback query failed: {e}")
            return []

    def similar_to(
        self,
        record: VectorRecord,
        k: int = 5,
        distance: str = "cosine",
    ) -> list[VectorRecord]:
        """Neighbors of a stored record within its own collection, excluding itself."""
        return self.nearest_neighbors(
            record.embedding,
            k=k,
            distance=distance,
            collection=record.collection,
            exclude_id=record.id,
        )

    def search_content(
        self,
        query: str,
        limit: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> list[VectorRecord]:
        """
        Records whose content contains a substring, case-insensitively.

        Args:
            query: Literal text to look for; LIKE wildcards are escaped
            limit: Maximum number of records
            content_type: Only records of this content type

        Returns:
            Matching records in insertion order
        """
        if not query:
            return []
        stmt = self._scoped(select(VectorRecord), content_type=content_type)
        stmt = stmt.where(VectorRecord.content.icontains(query, autoescape=True)).order_by(VectorRecord.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def count(self) -> int:
        with self._sessions() as session:
            stmt = self._scoped(select(func.count(VectorRecord.id)))
            return session.scalar(stmt) or 0

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_collection(self, collection: Optional[str] = None) -> int:
        """
        Delete every record of a collection.

        Returns:
            Number of deleted records
        """
        target = collection or self.collection
        with self._sessions.begin() as session:
            result = session.execute(delete(VectorRecord).where(VectorRecord.collection == target))
        logger.info(f"Deleted {result.rowcount} records from collection {target}")
        return result.rowcount

    def truncate_all(self) -> int:
        """Delete every record in every collection."""
        with self._sessions.begin() as session:
            result = session.execute(delete(VectorRecord))
        logger.warning(f"Truncated vector store: {result.rowcount} records deleted")
        return result.rowcount

    # =========================================================================
    # Metadata
    # =========================================================================

    def build_metadata(
        self,
        content_type: str,
        source_url: Optional[str] = None,
        source_title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Record metadata for a single stored text."""
        full_metadata: dict[str, Any] = {
            "content_type": content_type,
            "source_url": source_url,
            "source_title": source_title,
            "embedding_model": self.embedding_model,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.task_id is not None:
            full_metadata["task_id"] = self.task_id
        if self.project_id is not None:
            full_metadata["project_id"] = self.project_id

        if metadata:
            full_metadata.update(metadata)

        return full_metadata

    def build_base_metadata(
        self,
        text: str,
        chunk_size: int,
        chunk_overlap: int,
        content_type: str,
        source_url: Optional[str] = None,
        source_title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Shared metadata for every chunk of one document."""
        full_metadata = self.build_metadata(content_type, source_url, source_title)
        full_metadata["chunk_size"] = chunk_size
        full_metadata["chunk_overlap"] = chunk_overlap
        full_metadata["document_size"] = len(text.encode("utf-8"))

        if metadata:
            full_metadata.update(metadata)

        return full_metadata
