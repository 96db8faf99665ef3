"""
Chat-completion client for OpenAI-compatible inference endpoints.

The indexing service only needs `chat(messages) -> str`; anything with
that method can answer questions. ChatEndpointClient is the bundled
implementation for local or serverless /v1/chat/completions endpoints.
"""

import logging
from typing import Optional, Protocol

import requests

from ragindex.config import Settings
from ragindex.retrieval.retry import BackoffPolicy

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (502, 503, 504)


class ChatModel(Protocol):
    """Anything that can complete a chat conversation."""

    def chat(self, messages: list[dict[str, str]]) -> str:
        """Return the assistant reply for a list of {"role", "content"} messages."""
        ...


def _is_retryable(error: BaseException) -> bool:
    """Cold starts surface as gateway errors, timeouts or refused connections."""
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code in RETRYABLE_STATUS
    return False


class ChatEndpointClient:
    """Chat client for an OpenAI-compatible endpoint."""

    def __init__(
        self,
        endpoint_url: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout: int = 120,
        policy: Optional[BackoffPolicy] = None,
    ):
        """
        Initialize the client.

        Args:
            endpoint_url: Full URL to the /v1/chat/completions endpoint
            temperature: Sampling temperature (0.0 to 2.0)
            max_tokens: Maximum tokens to generate
            timeout: Request timeout in seconds
            policy: Retry policy for gateway errors and connection failures
        """
        self.endpoint_url = endpoint_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.policy = policy or BackoffPolicy(
            max_attempts=3,
            base_delay=2.0,
            max_delay=60.0,
            jitter=0.0,
            should_retry=_is_retryable,
        )

    def chat(self, messages: list[dict[str, str]]) -> str:
        """
        Send a conversation and return the reply text.

        Args:
            messages: Chat messages in OpenAI format

        Returns:
            The generated response text

        Raises:
            requests.HTTPError: If the endpoint fails after all retries
            requests.RequestException: If the connection keeps failing
        """
        payload = {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        return self.policy.call(lambda: self._complete(payload))

    def _complete(self, payload: dict) -> str:
        response = requests.post(self.endpoint_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        result = response.json()
        return result["choices"][0]["message"]["content"]

    def health_check(self, timeout: int = 30) -> tuple[bool, str]:
        """
        Send a one-token request to check the endpoint responds.

        Returns:
            Tuple of (is_healthy, message)
        """
        test_payload = {
            "messages": [{"role": "user", "content": "test"}],
            "temperature": 0.0,
            "max_tokens": 1,
        }
        try:
            response = requests.post(self.endpoint_url, json=test_payload, timeout=timeout)
            response.raise_for_status()
            result = response.json()
        except requests.Timeout:
            return False, f"Endpoint timed out after {timeout}s"
        except requests.ConnectionError as e:
            return False, f"Connection failed: {e}"
        except requests.HTTPError as e:
            return False, f"HTTP {e.response.status_code}: {e.response.reason}"
        except ValueError:
            return False, "Endpoint returned a non-JSON body"

        if result.get("choices"):
            elapsed = response.elapsed.total_seconds()
            logger.info(f"Chat endpoint healthy ({elapsed:.2f}s)")
            return True, f"Endpoint healthy (responded in {elapsed:.2f}s)"
        return False, "Endpoint returned invalid response structure"


def create_chat_model(settings: Settings) -> Optional[ChatEndpointClient]:
    """
    Build the configured chat model.

    Returns:
        A ChatEndpointClient, or None when no chat endpoint is configured
    """
    if not settings.chat_endpoint_url:
        return None
    return ChatEndpointClient(
        endpoint_url=settings.chat_endpoint_url,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
