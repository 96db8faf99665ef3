"""
Pytest configuration and shared fixtures.

Provides common fixtures for:
    - Configuration with test values
    - An in-memory vector store
    - A deterministic fake embedding client
    - Sample documents
"""

import zlib
from typing import Optional
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

TEST_ENDPOINT = "https://embeddings.test/pipeline/feature-extraction"
TEST_DIMENSIONS = 8


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def mock_settings():
    """Provide test settings without requiring .env file."""
    with patch.dict(
        "os.environ",
        {
            "HUGGINGFACE_API_TOKEN": "test-token",
            "EMBEDDING_ENDPOINT": TEST_ENDPOINT,
            "EMBEDDING_DIMENSIONS": str(TEST_DIMENSIONS),
            "CHUNK_SIZE": "200",
            "CHUNK_OVERLAP": "20",
            "DATABASE_URL": "sqlite://",
            "LOG_LEVEL": "DEBUG",
        },
    ):
        from ragindex.config import Settings, get_settings

        get_settings.cache_clear()
        yield Settings()
        get_settings.cache_clear()


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with the schema created."""
    from ragindex.retrieval.models import create_engine_for, init_db

    engine = create_engine_for("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    from ragindex.retrieval.store import VectorStore

    return VectorStore(engine, collection="test", embedding_model="test-model", dimensions=TEST_DIMENSIONS)


# =============================================================================
# Embedding Fixtures
# =============================================================================

def fake_vector(text: str, dimensions: int = TEST_DIMENSIONS) -> list[float]:
    """Deterministic unit vector derived from the text."""
    rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
    vector = rng.normal(size=dimensions)
    return (vector / np.linalg.norm(vector)).tolist()


class FakeEmbedder:
    """Stand-in for EmbeddingClient that never touches the network."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS, fail_calls: Optional[set[int]] = None):
        self.dimensions = dimensions
        self.fail_calls = fail_calls or set()
        self.batch_calls: list[list[str]] = []

    def embed(self, text: str) -> list[float]:
        return fake_vector(text, self.dimensions)

    def embed_batch(self, texts, batch_size=None):
        self.batch_calls.append(list(texts))
        if len(self.batch_calls) in self.fail_calls:
            raise RuntimeError("embedding backend unavailable")
        return [fake_vector(text, self.dimensions) for text in texts]

    def health_status(self):
        return {"consecutive_failures": 0}


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def embedder_factory():
    return FakeEmbedder


@pytest.fixture
def vector_for():
    return fake_vector


@pytest.fixture
def chat_model():
    model = MagicMock()
    model.chat.return_value = "The answer is 42."
    return model


@pytest.fixture
def service(store, fake_embedder, chat_model):
    """IndexingService wired to the in-memory store and fake collaborators."""
    from ragindex.retrieval.chunker import Chunker
    from ragindex.service import IndexingService

    return IndexingService(
        chunker=Chunker(),
        embedder=fake_embedder,
        store=store,
        chat_model=chat_model,
        embedding_dimensions=TEST_DIMENSIONS,
        api_batch_size=2,
        db_commit_frequency=2,
    )


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def no_sleep_policy(recorded_sleeps):
    """Retry policy that records delays instead of sleeping."""
    from ragindex.retrieval.retry import BackoffPolicy

    return BackoffPolicy(
        max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep=recorded_sleeps.append
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_prose():
    """About 2900 characters of sentences."""
    return "Sentence number one is here. " * 100


@pytest.fixture
def sample_code():
    """2000 characters of semicolon-terminated statements."""
    return "total = total + 10;\n" * 100


@pytest.fixture
def sample_python():
    return (
        "import os\n"
        "\n"
        "def add(a, b):\n"
        "    return a + b\n"
        "\n"
        "class Counter:\n"
        "    def __init__(self):\n"
        "        self.count = 0\n"
        "\n"
        "    def increment(self):\n"
        "        self.count += 1\n"
        "        return self.count\n"
    )


@pytest.fixture
def varied_prose():
    """About 5000 characters of distinct sentences, so no two chunks repeat."""
    return " ".join(
        f"Sentence number {i} talks about topic {i * 7 % 13} in some detail." for i in range(100)
    )
