"""Unit tests for retrieval.retry module."""

import pytest

from ragindex.exceptions import EmbeddingAPIError, RateLimitError, TransientNetworkError
from ragindex.retrieval.retry import NO_RETRY, BackoffPolicy


def failing(errors):
    """Operation raising the given errors in turn, then returning 'ok'."""
    errors = list(errors)
    calls = []

    def operation():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return "ok"

    operation.calls = calls
    return operation


@pytest.mark.unit
class TestBackoffPolicy:
    def test_success_without_retry(self):
        sleeps = []
        policy = BackoffPolicy(sleep=sleeps.append)

        assert policy.call(lambda: 42) == 42
        assert sleeps == []

    def test_exponential_delays(self):
        """Delays double from the base: 15s then 30s."""
        sleeps = []
        policy = BackoffPolicy(max_attempts=3, base_delay=15.0, jitter=0.0, sleep=sleeps.append)
        operation = failing([TransientNetworkError("timeout"), TransientNetworkError("timeout")])

        assert policy.call(operation) == "ok"
        assert sleeps == [15.0, 30.0]
        assert len(operation.calls) == 3

    def test_delay_is_capped(self):
        sleeps = []
        policy = BackoffPolicy(max_attempts=4, base_delay=15.0, max_delay=20.0, jitter=0.0, sleep=sleeps.append)
        operation = failing([TransientNetworkError("x")] * 3)

        policy.call(operation)
        assert sleeps == [15.0, 20.0, 20.0]

    def test_jitter_bounds(self):
        sleeps = []
        policy = BackoffPolicy(max_attempts=3, base_delay=1.0, jitter=5.0, sleep=sleeps.append)

        policy.call(failing([RateLimitError("429"), RateLimitError("429")]))

        assert 1.0 <= sleeps[0] <= 6.0
        assert 2.0 <= sleeps[1] <= 7.0

    def test_exhaustion_reraises_last_error(self):
        policy = BackoffPolicy(max_attempts=3, base_delay=0.0, jitter=0.0, sleep=lambda _: None)
        operation = failing([TransientNetworkError(f"attempt {i}") for i in range(5)])

        with pytest.raises(TransientNetworkError, match="attempt 2"):
            policy.call(operation)
        assert len(operation.calls) == 3

    def test_non_retryable_error_raises_immediately(self):
        sleeps = []
        policy = BackoffPolicy(sleep=sleeps.append)
        operation = failing([EmbeddingAPIError("bad request", 400)])

        with pytest.raises(EmbeddingAPIError):
            policy.call(operation)
        assert sleeps == []
        assert len(operation.calls) == 1

    def test_predicate_overrides_types(self):
        policy = BackoffPolicy(
            base_delay=0.0,
            jitter=0.0,
            should_retry=lambda e: isinstance(e, KeyError),
            sleep=lambda _: None,
        )
        operation = failing([KeyError("x")])

        assert policy.call(operation) == "ok"

    def test_no_retry_policy(self):
        operation = failing([TransientNetworkError("down")])

        with pytest.raises(TransientNetworkError):
            NO_RETRY.call(operation)
        assert len(operation.calls) == 1
