"""
Integration tests for the ingestion and retrieval pipeline.

These tests run the real chunker, embedding client and vector store
together; only the embedding endpoint's HTTP traffic is mocked.
"""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from ragindex.retrieval.chunker import Chunker
from ragindex.retrieval.embeddings import EmbeddingClient
from ragindex.retrieval.retry import NO_RETRY
from ragindex.retrieval.store import VectorStore
from ragindex.service import IndexingService

ENDPOINT = "https://embeddings.test/pipeline/feature-extraction"
DIMENSIONS = 16


@pytest.fixture
def endpoint(httpx_mock: HTTPXMock, vector_for):
    """Embedding endpoint answering deterministic vectors per input text."""

    def respond(request: httpx.Request) -> httpx.Response:
        inputs = json.loads(request.content)["inputs"]
        if isinstance(inputs, str):
            return httpx.Response(200, json=[vector_for(inputs, DIMENSIONS)])
        return httpx.Response(200, json=[vector_for(text, DIMENSIONS) for text in inputs])

    httpx_mock.add_callback(respond, url=ENDPOINT, is_reusable=True)
    return httpx_mock


@pytest.fixture
def pipeline(mock_settings, engine, chat_model):
    embedder = EmbeddingClient(
        api_key="test-key",
        endpoint=ENDPOINT,
        max_workers=2,
        batch_policy=NO_RETRY,
        single_policy=NO_RETRY,
        settings=mock_settings,
    )
    return IndexingService(
        chunker=Chunker(),
        embedder=embedder,
        store=VectorStore(engine, collection="test", dimensions=DIMENSIONS),
        chat_model=chat_model,
        embedding_dimensions=DIMENSIONS,
        api_batch_size=4,
        db_commit_frequency=3,
    )


@pytest.mark.integration
class TestIngestionPipeline:
    """Document in, records out."""

    def test_document_roundtrip(self, endpoint, pipeline, varied_prose):
        records = pipeline.add_document(varied_prose, chunk_size=300, chunk_overlap=30, source_title="notes")

        assert len(records) > 5
        assert [r.metadata_["chunk_index"] for r in records] == list(range(len(records)))
        assert all(len(r.embedding) == DIMENSIONS for r in records)
        assert pipeline.embedder.health_status()["success_rate"] == 100.0

        target = records[len(records) // 2]
        hits = pipeline.similarity_search(target.content, k=3)
        assert hits[0].content == target.content

    def test_reingest_sends_no_batch_requests(self, endpoint, pipeline, varied_prose):
        pipeline.add_document(varied_prose, chunk_size=300, chunk_overlap=30)
        sent = len(endpoint.get_requests())

        assert pipeline.add_document(varied_prose, chunk_size=300, chunk_overlap=30) == []
        assert len(endpoint.get_requests()) == sent

    def test_ask_uses_retrieved_context(self, endpoint, pipeline, chat_model):
        pipeline.add_texts(["Photosynthesis converts light into chemical energy.", "Rust has no garbage collector."])

        answer = pipeline.ask("Rust has no garbage collector.", k=1)

        assert answer.sources[0].content == "Rust has no garbage collector."
        prompt = chat_model.chat.call_args.args[0][0]["content"]
        assert "Rust has no garbage collector." in prompt
        assert prompt.endswith("Question: Rust has no garbage collector.")


@pytest.mark.integration
class TestDegradedEndpoint:
    def test_failing_endpoint_stores_nothing_and_tracks_health(self, httpx_mock: HTTPXMock, pipeline, varied_prose):
        httpx_mock.add_response(url=ENDPOINT, status_code=500, text="down", is_reusable=True)

        records = pipeline.add_document(varied_prose, chunk_size=300, chunk_overlap=30)

        assert records == []
        assert pipeline.store.count() == 0
        health = pipeline.embedder.health_status()
        assert health["consecutive_failures"] > 0
        assert health["success_rate"] == 0.0
