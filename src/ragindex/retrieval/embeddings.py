"""
Embedding generation via a HuggingFace feature-extraction endpoint.

Sends {"inputs": ..., "normalize": true} and reads back float vectors.
Batches are dispatched on a small fixed thread pool so request latency
overlaps without flooding the upstream. Transient failures are retried
with backoff; a batch that still fails becomes None placeholders so the
output always lines up with the input.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx
import numpy as np

from ragindex.config import Settings, get_settings
from ragindex.exceptions import (
    ConfigurationError,
    EmbeddingAPIError,
    EmbeddingError,
    PayloadTooLargeError,
    RateLimitError,
    ResponseFormatError,
    TransientNetworkError,
)
from ragindex.retrieval.retry import BackoffPolicy

logger = logging.getLogger(__name__)

API_BATCH_SIZE = 32
MIN_HEALTH_BATCH_SIZE = 4
HEALTH_BATCH_STEP = 4
USER_AGENT = "ragindex/0.1"


def normalize_dimensions(embedding: Sequence[float], dimensions: int) -> list[float]:
    """
    Force a vector to exactly `dimensions` entries.

    Shorter vectors are zero-padded, longer ones truncated.
    """
    array = np.asarray(embedding, dtype=np.float64).ravel()
    if array.size < dimensions:
        array = np.pad(array, (0, dimensions - array.size))
    return array[:dimensions].tolist()


def _as_vector(value: Any) -> list[float]:
    """Validate one embedding from a response body."""
    try:
        array = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ResponseFormatError(f"Embedding is not numeric: {e}") from e
    if array.ndim != 1 or array.size == 0:
        raise ResponseFormatError(f"Expected a flat vector, got shape {array.shape}")
    return array.tolist()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return str(body)[:500]


class EmbeddingClient:
    """
    Client for one embedding endpoint.

    Example:
        >>> client = EmbeddingClient(api_key="hf_...")
        >>> vector = client.embed("What is a vector store?")
        >>> vectors = client.embed_batch(["first", "second"])
        >>> len(vectors)
        2
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        request_batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        max_batch_chars: Optional[int] = None,
        batch_policy: Optional[BackoffPolicy] = None,
        single_policy: Optional[BackoffPolicy] = None,
        pool_timeout: float = 900.0,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_key: Bearer token (default from settings)
            endpoint: Endpoint URL (default from settings)
            request_batch_size: Maximum texts per request
            max_workers: Concurrent in-flight requests
            max_batch_chars: Batches above this many characters are split
            batch_policy: Retry policy for batch requests
            single_policy: Retry policy for single-text requests
            pool_timeout: Seconds to wait for all batches of one embed_batch call
            settings: Settings to read defaults from

        Raises:
            ConfigurationError: If no API token or endpoint is configured
        """
        settings = settings or get_settings()

        self.api_key = api_key or settings.api_token_value
        self.endpoint = endpoint or settings.embedding_endpoint
        if not self.api_key:
            raise ConfigurationError("HUGGINGFACE_API_TOKEN environment variable not set")
        if not self.endpoint:
            raise ConfigurationError("EMBEDDING_ENDPOINT environment variable not set")

        self.request_batch_size = min(
            request_batch_size or settings.embedding_request_batch_size, API_BATCH_SIZE
        )
        self.max_workers = max_workers or settings.embedding_max_workers
        self.max_batch_chars = max_batch_chars or settings.max_batch_chars
        self.pool_timeout = pool_timeout
        self.batch_policy = batch_policy or BackoffPolicy(
            max_attempts=settings.embedding_max_retries,
            base_delay=settings.embedding_backoff_base,
            max_delay=settings.embedding_backoff_max,
            jitter=settings.embedding_backoff_jitter,
        )
        self.single_policy = single_policy or BackoffPolicy(
            max_attempts=settings.embedding_max_retries,
            base_delay=settings.embedding_single_backoff_base,
            max_delay=settings.embedding_backoff_max,
            jitter=settings.embedding_backoff_jitter,
        )
        self.timeout = httpx.Timeout(
            settings.embedding_read_timeout, connect=settings.embedding_connect_timeout
        )
        self.single_timeout = httpx.Timeout(
            settings.embedding_single_read_timeout, connect=settings.embedding_connect_timeout
        )

        self._health_lock = threading.Lock()
        self._health = self._fresh_health()

    # =========================================================================
    # Public API
    # =========================================================================

    def embed(self, text: str) -> list[float]:
        """
        Generate the embedding for one text.

        Args:
            text: Text to embed

        Returns:
            The embedding vector as returned by the endpoint

        Raises:
            TransientNetworkError: If retries are exhausted
            PayloadTooLargeError: If the text is too large for the endpoint
            ResponseFormatError: If the body is not an embedding
            EmbeddingAPIError: For any other non-200 answer
        """
        payload = {"inputs": str(text), "normalize": True}
        start = time.monotonic()
        result = self.single_policy.call(lambda: self._post(payload, self.single_timeout))
        logger.debug(f"Single embedding request completed in {time.monotonic() - start:.2f}s")

        if isinstance(result, dict) and "embedding" in result:
            result = result["embedding"]
        # The endpoint sometimes answers [[...]] for a single input
        if isinstance(result, list) and len(result) == 1 and isinstance(result[0], list):
            result = result[0]
        return _as_vector(result)

    def embed_batch(
        self,
        texts: Sequence[str],
        batch_size: Optional[int] = None,
    ) -> list[Optional[list[float]]]:
        """
        Generate embeddings for many texts.

        The result always has one entry per input; entries whose batch
        failed are None.

        Args:
            texts: Texts to embed
            batch_size: Requested texts per request (capped by the API limit
                and by the health-aware recommended size)

        Returns:
            Embeddings in input order, None where generation failed
        """
        if not texts:
            return []

        effective = max(1, min(
            batch_size or self.request_batch_size,
            self.recommended_batch_size(),
            self.request_batch_size,
        ))
        batches = [
            (start, list(texts[start:start + effective]))
            for start in range(0, len(texts), effective)
        ]
        logger.debug(
            f"Embedding {len(texts)} texts in {len(batches)} batches of <= {effective} "
            f"({self._health['consecutive_failures']} recent failures)"
        )

        results: list[Optional[list[float]]] = [None] * len(texts)
        lock = threading.Lock()
        closed = False

        def run(start: int, batch: list[str]) -> None:
            vectors = self._embed_request_batch(batch)
            with lock:
                if not closed:
                    results[start:start + len(batch)] = vectors

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(batches)),
            thread_name_prefix="embed",
        )
        try:
            futures = {
                executor.submit(run, start, batch): idx
                for idx, (start, batch) in enumerate(batches)
            }
            done, not_done = wait(futures, timeout=self.pool_timeout)
            with lock:
                closed = True
            if not_done:
                logger.warning(
                    f"{len(not_done)}/{len(batches)} batches unfinished after "
                    f"{self.pool_timeout}s, leaving them empty"
                )
            for future in done:
                error = future.exception()
                if error is not None:
                    logger.error(f"Batch {futures[future] + 1}/{len(batches)} failed: {error}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    def test_connection(self) -> dict[str, Any]:
        """Send a tiny request and report whether the endpoint works."""
        logger.debug(f"Testing API connection to {self.endpoint}")
        try:
            vector = self.embed("test connection")
        except EmbeddingError as e:
            logger.error(f"API connection test failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True, "embedding_size": len(vector)}

    # =========================================================================
    # Health tracking
    # =========================================================================

    def _fresh_health(self) -> dict[str, Any]:
        return {
            "consecutive_failures": 0,
            "last_failure_time": None,
            "total_requests": 0,
            "successful_requests": 0,
        }

    def health_status(self) -> dict[str, Any]:
        """Snapshot of request outcomes since construction or last reset."""
        with self._health_lock:
            health = dict(self._health)
        total = health["total_requests"]
        health["success_rate"] = (
            round(health["successful_requests"] / total * 100, 1) if total else 0.0
        )
        health["current_batch_size"] = self.recommended_batch_size()
        return health

    def reset_health_status(self) -> None:
        with self._health_lock:
            self._health = self._fresh_health()

    def recommended_batch_size(self) -> int:
        """Shrink the batch size by a step per consecutive failed batch."""
        failures = self._health["consecutive_failures"]
        if failures == 0:
            return self.request_batch_size
        floor = min(MIN_HEALTH_BATCH_SIZE, self.request_batch_size)
        reduced = max(self.request_batch_size - failures * HEALTH_BATCH_STEP, floor)
        logger.debug(f"Using reduced batch size of {reduced} due to {failures} consecutive failures")
        return reduced

    def _record_success(self) -> None:
        with self._health_lock:
            self._health["total_requests"] += 1
            self._health["successful_requests"] += 1
            self._health["consecutive_failures"] = 0

    def _record_failure(self) -> None:
        with self._health_lock:
            self._health["total_requests"] += 1
            self._health["consecutive_failures"] += 1
            self._health["last_failure_time"] = datetime.now(timezone.utc)

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _split(self, batch: list[str]) -> list[Optional[list[float]]]:
        mid = len(batch) // 2
        return self._embed_request_batch(batch[:mid]) + self._embed_request_batch(batch[mid:])

    def _embed_request_batch(self, batch: list[str]) -> list[Optional[list[float]]]:
        """Embed one request batch, degrading failures to None placeholders."""
        batch = [(str(text).strip() if text is not None else "") or " " for text in batch]

        total_chars = sum(len(text) for text in batch)
        if total_chars > self.max_batch_chars and len(batch) > 1:
            logger.warning(f"Large batch detected ({total_chars} chars), splitting {len(batch)} texts")
            return self._split(batch)

        try:
            vectors = self._request_batch(batch)
        except PayloadTooLargeError as e:
            self._record_failure()
            if len(batch) > 1:
                logger.warning(f"Payload too large for {len(batch)} texts, retrying as two smaller batches")
                return self._split(batch)
            logger.error(f"Single text rejected as too large ({total_chars} chars): {e}")
            return [None]
        except EmbeddingError as e:
            self._record_failure()
            logger.error(f"Failed to generate embeddings for batch of {len(batch)}: {e}")
            return [None] * len(batch)

        self._record_success()
        return vectors

    def _request_batch(self, batch: list[str]) -> list[list[float]]:
        payload = {"inputs": batch, "normalize": True}
        logger.debug(f"Sending embedding request for {len(batch)} texts")
        start = time.monotonic()
        result = self.batch_policy.call(lambda: self._post(payload, self.timeout))

        if not isinstance(result, list) or len(result) != len(batch):
            got = f"{len(result)} items" if isinstance(result, list) else type(result).__name__
            raise ResponseFormatError(f"Expected array of {len(batch)} embeddings, got {got}")

        vectors = [_as_vector(item) for item in result]
        logger.debug(f"Received {len(vectors)} embeddings in {time.monotonic() - start:.2f}s")
        return vectors

    def _post(self, payload: dict[str, Any], timeout: httpx.Timeout) -> Any:
        """
        Send one request and classify the outcome.

        Raises:
            TransientNetworkError: Timeout, connection failure or 5xx
            RateLimitError: 429
            PayloadTooLargeError: 413
            ResponseFormatError: 200 with a body that is not JSON
            EmbeddingAPIError: Any other non-200 status
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection failed: {e}") from e

        status = response.status_code
        if status == 200:
            try:
                return response.json()
            except ValueError as e:
                raise ResponseFormatError(f"Response is not JSON: {e}", status) from e

        message = _error_message(response)
        logger.error(f"API error: {status} - {message}")

        if status == 429:
            raise RateLimitError(f"Rate limit exceeded: {message}", status)
        if status == 413:
            raise PayloadTooLargeError(f"Payload too large: {message}", status)
        if status >= 500:
            raise TransientNetworkError(f"Server error ({status}): {message}", status)
        raise EmbeddingAPIError(f"API error: {status} - {message}", status)
