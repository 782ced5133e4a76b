"""Abstract base class for text-embedding service providers.

Defines the contract for generating embedding vectors from text.
Implementations may wrap OpenAI ``text-embedding-3-small``, any
OpenAI-compatible endpoint, or the offline hash provider used in
development.  The embedding pipeline owns batching, retries and caching;
a provider makes exactly one upstream call per :meth:`embed`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider - text-embedding-3-small (requires API key)
#   HashEmbeddingProvider   - deterministic offline vectors
# Located in: src/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the embedding pipeline."""

    @abstractmethod
    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more text strings to embed.
        model:
            Model override; ``None`` uses :meth:`get_model_name`.

        Returns
        -------
        list[list[float]]
            Vectors corresponding positionally to *texts*.  The pipeline
            validates their shape, so providers return what the API sent.

        Raises
        ------
        src.utils.errors.RateLimitError
            HTTP 429; retryable.
        src.utils.errors.ProviderUnavailableError
            5xx, timeout or connection failure; retryable.
        src.utils.errors.ProviderAuthError
            401/403/400-class rejection; never retried.
        """

    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        """Embed one text (e.g. a search query)."""
        result = await self.embed([text], model=model)
        return result[0]

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Example values: ``1536`` (OpenAI ``text-embedding-3-small``).
        """

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the default model name used when ``embed`` gets no override."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier such as ``"openai_embedding"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured.

        Implementations check credentials without generating an embedding.
        """
