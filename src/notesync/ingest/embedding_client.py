"""Embedding provider client.

The processor and the search service depend only on the ``EmbeddingClient``
protocol; ``LiteLLMEmbeddingClient`` routes calls through LiteLLM with its
built-in retry (``num_retries``, exponential backoff) and a per-call timeout.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol, runtime_checkable

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


class EmbeddingProviderError(RuntimeError):
    """The embedding provider failed (after LiteLLM's own retries) or timed out."""

    def __init__(self, message: str, *, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


@runtime_checkable
class EmbeddingClient(Protocol):
    """Opaque ``text -> vector`` capability."""

    def embed(self, text: str) -> list[float]:
        ...


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


class LiteLLMEmbeddingClient:
    """Embed text with ``litellm.embedding()``.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Expected vector length; a provider answer of another
            length is rejected so it never reaches the vec table.
        timeout: Per-request timeout in seconds.
        num_retries: LiteLLM retries on transient errors before giving up.
    """

    def __init__(
        self,
        model: str = "openai/text-embedding-3-small",
        dimensions: int | None = None,
        timeout: float = 30.0,
        num_retries: int = 2,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.num_retries = num_retries

    def embed(self, text: str) -> list[float]:
        """Return the embedding vector for *text*.

        Raises:
            EmbeddingProviderError: On provider failure or timeout, or when the
                returned vector has an unexpected length.
        """
        try:
            response = litellm.embedding(
                model=self.model,
                input=[text],
                timeout=self.timeout,
                num_retries=self.num_retries,
            )
        except litellm.exceptions.Timeout as exc:
            raise EmbeddingProviderError(
                f"Embedding request to '{self.model}' timed out after {self.timeout}s",
                timeout=True,
            ) from exc
        except Exception as exc:
            raise EmbeddingProviderError(
                f"Embedding request to '{self.model}' failed: {exc}"
            ) from exc

        vector = list(response.data[0]["embedding"])
        if self.dimensions is not None and len(vector) != self.dimensions:
            raise EmbeddingProviderError(
                f"Model '{self.model}' returned {len(vector)} dimensions, "
                f"expected {self.dimensions}"
            )
        logger.debug("Embedded %d chars with %s", len(text), self.model)
        return vector
