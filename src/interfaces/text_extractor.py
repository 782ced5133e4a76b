"""Abstract base class for document text extractors.

Turns a file on disk into UTF-8 text.  Format-specific readers (PDF, Word,
HTML) live behind this contract; the pipeline only ever sees the text.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class ITextExtractor(ABC):
    """Contract for file-to-text extraction."""

    @abstractmethod
    async def extract(self, path: str | Path) -> str:
        """Return the text content of *path*.

        Raises
        ------
        src.utils.errors.InputValidationError
            If the file type is not supported.
        src.utils.errors.TextExtractionError
            If the file could not be read or produced no text.
        """

    @abstractmethod
    def supports(self, path: str | Path) -> bool:
        """Return ``True`` if :meth:`extract` can handle *path*."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier such as ``"plain_text"``."""
