"""
Indexing service: chunk, embed, persist and query documents.

Ties a Chunker, an EmbeddingClient and a VectorStore together for one
collection. Collaborators are passed in; from_settings() wires the
default ones.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from ragindex.config import Settings, get_settings
from ragindex.exceptions import ConfigurationError
from ragindex.llm.chat import ChatModel, create_chat_model
from ragindex.retrieval.chunker import Chunker, ContentType
from ragindex.retrieval.embeddings import EmbeddingClient, normalize_dimensions
from ragindex.retrieval.models import VectorRecord, create_engine_for, init_db
from ragindex.retrieval.store import VectorStore

logger = logging.getLogger(__name__)

ASK_PROMPT = "Answer the question based on the following documents:\n\n{context}\n\nQuestion: {question}"


@dataclass
class Answer:
    """A generated answer and the records it was grounded on."""

    answer: str
    sources: list[VectorRecord] = field(default_factory=list)


class IndexingService:
    """
    Document ingestion and retrieval for one collection.

    Example:
        >>> service = IndexingService.from_settings(get_settings(), project_id=3)
        >>> records = service.add_document(open("README.md").read(), source_title="README")
        >>> hits = service.similarity_search("how do I install it?", k=3)
    """

    def __init__(
        self,
        chunker: Chunker,
        embedder: EmbeddingClient,
        store: VectorStore,
        chat_model: Optional[ChatModel] = None,
        embedding_dimensions: int = 1024,
        api_batch_size: int = 8,
        db_commit_frequency: int = 10,
    ) -> None:
        """
        Initialize the service.

        Args:
            chunker: Splits documents into chunks
            embedder: Generates embeddings
            store: Vector store scoped to the target collection
            chat_model: Answers questions in ask() (optional)
            embedding_dimensions: Length every stored vector is forced to
            api_batch_size: Chunks per embedding call during add_document
            db_commit_frequency: Embedding calls buffered per bulk insert
        """
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.chat_model = chat_model
        self.embedding_dimensions = embedding_dimensions
        self.api_batch_size = max(1, api_batch_size)
        self.db_commit_frequency = max(1, db_commit_frequency)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        collection: Optional[str] = None,
        task_id: Optional[int] = None,
        project_id: Optional[int] = None,
        chat_model: Optional[ChatModel] = None,
    ) -> "IndexingService":
        """
        Build a service with default collaborators.

        Raises:
            ConfigurationError: If the embedding endpoint is not configured
        """
        settings = settings or get_settings()

        engine = create_engine_for(settings.database_url)
        init_db(engine)

        return cls(
            chunker=Chunker(
                parallel_threshold=settings.parallel_threshold,
                pool_timeout=settings.chunk_pool_timeout,
            ),
            embedder=EmbeddingClient(settings=settings),
            store=VectorStore(
                engine,
                collection=collection,
                task_id=task_id,
                project_id=project_id,
                dedup_batch_size=settings.dedup_batch_size,
                embedding_model=settings.embedding_model,
                dimensions=settings.embedding_dimensions,
            ),
            chat_model=chat_model or create_chat_model(settings),
            embedding_dimensions=settings.embedding_dimensions,
            api_batch_size=settings.api_batch_size,
            db_commit_frequency=settings.db_commit_frequency,
        )

    @property
    def collection(self) -> str:
        return self.store.collection

    # =========================================================================
    # Ingestion
    # =========================================================================

    def add_text(
        self,
        text: str,
        content_type: str = "text",
        source_url: Optional[str] = None,
        source_title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        force: bool = False,
    ) -> Optional[VectorRecord]:
        """
        Embed and store one text.

        Args:
            text: Text to store
            content_type: Stored content type label
            source_url: Optional source URL
            source_title: Optional source title
            metadata: Extra record metadata
            force: Store even if the collection already holds this text

        Returns:
            The new record, or None if the text is blank or already stored

        Raises:
            EmbeddingError: If the embedding cannot be generated
            PersistenceError: If the insert fails
        """
        if text is None or not text.strip():
            return None
        if not force and self.store.exists(text):
            logger.debug(f"Text already stored in {self.collection}, skipping")
            return None

        return self.store.store(
            content=text,
            embedding=self.generate_embedding(text),
            content_type=content_type,
            source_url=source_url,
            source_title=source_title,
            metadata=metadata,
        )

    def add_texts(
        self,
        texts: Sequence[str],
        content_type: str = "text",
        metadata: Optional[dict[str, Any]] = None,
        force: bool = False,
    ) -> list[VectorRecord]:
        """Store several texts, skipping repeats and already stored ones."""
        records = [
            self.add_text(text, content_type=content_type, metadata=metadata, force=force)
            for text in dict.fromkeys(texts)
        ]
        return [record for record in records if record is not None]

    def add_document(
        self,
        text: str,
        chunk_size: int = 512,
        chunk_overlap: int = 25,
        content_type: str = "document",
        source_url: Optional[str] = None,
        source_title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        force: bool = False,
    ) -> list[VectorRecord]:
        """
        Chunk a document and store every new chunk with its embedding.

        Chunks already stored in the collection are skipped unless force is
        set. A failed embedding call only loses its own chunks; the rest of
        the document is still stored.

        Args:
            text: Document text
            chunk_size: Target chunk size in characters
            chunk_overlap: Overlap between consecutive chunks
            content_type: Stored content type label; "code" and "text" also
                steer the chunker, anything else lets it detect the type
            source_url: Optional source URL
            source_title: Optional source title
            metadata: Extra metadata for every chunk record
            force: Skip the duplicate check

        Returns:
            The stored records, in chunk order
        """
        if text is None or not text.strip():
            return []
        logger.debug(f"Starting add_document ({len(text.encode('utf-8'))} bytes) into {self.collection}")

        start = time.monotonic()
        chunker_type = content_type if content_type in (ContentType.CODE.value, ContentType.TEXT.value) else None
        chunks = self.chunker.chunk(text, chunk_size, chunk_overlap, chunker_type)
        logger.debug(f"Chunking completed in {time.monotonic() - start:.2f}s - created {len(chunks)} chunks")
        if not chunks:
            return []

        if force:
            to_process = chunks
        else:
            to_process = self.store.filter_new(chunks)
            logger.debug(f"{len(chunks) - len(to_process)} chunks already stored, {len(to_process)} new")
        if not to_process:
            return []

        base_metadata = self.store.build_base_metadata(
            text,
            chunk_size,
            chunk_overlap,
            content_type,
            source_url=source_url,
            source_title=source_title,
            metadata=metadata,
        )
        return self._process_in_batches(to_process, base_metadata)

    def _process_in_batches(
        self,
        chunks: list[str],
        base_metadata: dict[str, Any],
    ) -> list[VectorRecord]:
        """Embed chunks per API batch and bulk-commit every few batches."""
        total = len(chunks)
        batch_total = (total + self.api_batch_size - 1) // self.api_batch_size
        results: list[VectorRecord] = []

        pending_chunks: list[str] = []
        pending_embeddings: list[Optional[list[float]]] = []
        pending_start = 0

        for batch_idx, offset in enumerate(range(0, total, self.api_batch_size)):
            batch_num = batch_idx + 1
            batch = chunks[offset:offset + self.api_batch_size]

            try:
                api_start = time.monotonic()
                embeddings = self.embedder.embed_batch(batch)
                logger.debug(
                    f"API batch {batch_num}/{batch_total} embedded in {time.monotonic() - api_start:.2f}s "
                    f"({sum(e is not None for e in embeddings)}/{len(batch)} ok)"
                )
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Error in API batch {batch_num}/{batch_total}: {e}")
                embeddings = [None] * len(batch)

            pending_chunks.extend(batch)
            pending_embeddings.extend(
                normalize_dimensions(e, self.embedding_dimensions) if e is not None else None
                for e in embeddings
            )

            if batch_num % self.db_commit_frequency == 0 or batch_num == batch_total:
                records = self.store.commit_batch(
                    pending_chunks,
                    pending_embeddings,
                    base_metadata,
                    total_chunks=total,
                    start_index=pending_start,
                )
                results.extend(records)
                logger.debug(f"Committed {len(records)} records ({len(results)} total)")
                pending_start += len(pending_chunks)
                pending_chunks = []
                pending_embeddings = []

        logger.info(f"Stored {len(results)}/{total} chunks in {self.collection}")
        return results

    # =========================================================================
    # Retrieval
    # =========================================================================

    def generate_embedding(self, text: str) -> list[float]:
        """Embed one text and force it to the configured dimensionality."""
        return normalize_dimensions(self.embedder.embed(text), self.embedding_dimensions)

    def similarity_search(
        self,
        query: str,
        k: int = 5,
        distance: str = "cosine",
    ) -> list[VectorRecord]:
        """
        Records most similar to a query text.

        Raises:
            EmbeddingError: If the query cannot be embedded
        """
        return self.similarity_search_by_vector(self.generate_embedding(query), k=k, distance=distance)

    def similarity_search_by_vector(
        self,
        embedding: Sequence[float],
        k: int = 5,
        distance: str = "cosine",
    ) -> list[VectorRecord]:
        return self.store.nearest_neighbors(embedding, k=k, distance=distance)

    def ask(self, question: str, k: int = 5) -> Answer:
        """
        Answer a question from the k most similar records.

        Raises:
            ConfigurationError: If no chat model is configured
            EmbeddingError: If the question cannot be embedded
        """
        if self.chat_model is None:
            raise ConfigurationError("No chat model configured; set CHAT_ENDPOINT_URL")

        sources = self.similarity_search(question, k=k)
        context = "\n\n".join(record.content for record in sources)
        prompt = ASK_PROMPT.format(context=context, question=question)

        start = time.monotonic()
        answer = self.chat_model.chat([{"role": "user", "content": prompt}])
        logger.debug(f"Answered from {len(sources)} sources in {time.monotonic() - start:.2f}s")
        return Answer(answer=answer, sources=sources)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def delete_collection(self) -> int:
        return self.store.delete_collection()

    def truncate_all(self) -> int:
        return self.store.truncate_all()
