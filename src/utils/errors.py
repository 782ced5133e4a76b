"""Custom exception hierarchy for the knowledge pipeline.

All application exceptions inherit from :class:`KnowledgeError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "sqlite", "memory_cache") caused the
failure, plus a machine-readable ``code`` that is persisted on fragment and
document error records.

The hierarchy is organized by pipeline domain:

    KnowledgeError  (base -- catch-all for any pipeline error)
    +-- InputValidationError     (empty text/query, unsupported file type)
    +-- TextExtractionError      (extractor produced no usable text)
    +-- SegmentationError        (segmenter could not produce fragments)
    +-- DocumentNotFoundError    (unknown or soft-deleted document id)
    +-- EmbeddingError           (any embedding provider failure)
    |   +-- RateLimitError             (429, retryable)
    |   +-- ProviderUnavailableError   (5xx / timeout, retryable)
    |   +-- ProviderAuthError          (401/403/400, never retried)
    |   +-- EmbeddingValidationError   (wrong vector shape, never retried)
    +-- DimensionMismatchError   (vector math on unequal lengths)
    +-- StoreError               (document/fragment store failure)
    +-- CacheError               (cache store failure, always swallowed)
    +-- QueueFullError           (job queue at capacity)
    +-- ConfigurationError       (startup / invalid config)

The ``retryable`` flag lets the embedding pipeline decide between backing
off and surfacing the failure immediately without isinstance chains.
"""


class KnowledgeError(Exception):
    """Base exception for all knowledge pipeline errors.

    Every subclass carries a human-readable ``message``, an optional
    ``provider_name`` identifying which external service triggered the
    error, and an error ``code``.  The ``__str__`` method prefixes the
    provider name in brackets for structured log output, e.g.
    ``[openai_embedding] Rate limit exceeded``.
    """

    default_code = "KNOWLEDGE_ERROR"
    retryable = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        self._code = code or self.default_code
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    @property
    def code(self) -> str:
        return self._code

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Input / extraction errors
# ---------------------------------------------------------------------------

class InputValidationError(KnowledgeError):
    """Raised for caller mistakes: blank text or query, unsupported file type."""

    default_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str = "Invalid input",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class TextExtractionError(KnowledgeError):
    """Raised when the text extractor yields no usable text."""

    default_code = "EXTRACTION_ERROR"

    def __init__(
        self,
        message: str = "Text extraction produced no content",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class SegmentationError(KnowledgeError):
    """Raised when a document's text cannot be segmented at all."""

    default_code = "CHUNKING_ERROR"

    def __init__(
        self,
        message: str = "Text segmentation failed",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class DocumentNotFoundError(KnowledgeError):
    """Raised when a document id does not resolve to a live document."""

    default_code = "DOCUMENT_NOT_FOUND"

    def __init__(
        self,
        message: str = "Document not found",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


# ---------------------------------------------------------------------------
# Embedding provider errors
# ---------------------------------------------------------------------------

class EmbeddingError(KnowledgeError):
    """Raised when an embedding call fails for a reason not covered below."""

    default_code = "EMBEDDING_ERROR"

    def __init__(
        self,
        message: str = "Embedding generation failed",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class RateLimitError(EmbeddingError):
    """Raised when the provider answers with HTTP 429.

    The embedding pipeline backs off exponentially and retries the batch.
    """

    default_code = "RATE_LIMITED"
    retryable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class ProviderUnavailableError(EmbeddingError):
    """Raised on 5xx responses, timeouts and connection failures."""

    default_code = "PROVIDER_UNAVAILABLE"
    retryable = True

    def __init__(
        self,
        message: str = "External service is unavailable",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class ProviderAuthError(EmbeddingError):
    """Raised on 401/403-class responses.

    This is a configuration problem; retrying cannot help, so the pipeline
    surfaces it immediately.
    """

    default_code = "PROVIDER_AUTH_ERROR"

    def __init__(
        self,
        message: str = "Embedding provider rejected the credentials",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class EmbeddingValidationError(EmbeddingError):
    """Raised when a returned vector has the wrong shape or non-finite values."""

    default_code = "INVALID_EMBEDDING"

    def __init__(
        self,
        message: str = "Embedding vector failed validation",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class DimensionMismatchError(KnowledgeError):
    """Raised by vector math when operands have different lengths."""

    default_code = "DIMENSION_MISMATCH"

    def __init__(
        self,
        message: str = "Vectors must have the same dimension",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


# ---------------------------------------------------------------------------
# Storage / infrastructure errors
# ---------------------------------------------------------------------------

class StoreError(KnowledgeError):
    """Raised when the document/fragment store fails."""

    default_code = "STORE_ERROR"

    def __init__(
        self,
        message: str = "Knowledge store operation failed",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class CacheError(KnowledgeError):
    """Raised by cache providers; the cache service converts it to a miss."""

    default_code = "CACHE_ERROR"

    def __init__(
        self,
        message: str = "Cache operation failed",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class QueueFullError(KnowledgeError):
    """Raised when a job is enqueued on a queue that is at capacity."""

    default_code = "QUEUE_FULL"

    def __init__(
        self,
        message: str = "Processing queue is full",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)


class ConfigurationError(KnowledgeError):
    """Raised when configuration is invalid or missing at startup."""

    default_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, code=code)
