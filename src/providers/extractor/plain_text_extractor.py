"""Plain-text and Markdown extractor.

Reads UTF-8 text files from disk.  Binary formats (PDF, Word, HTML) need
their own ITextExtractor; handing one to this extractor is a caller error.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from src.interfaces.text_extractor import ITextExtractor
from src.utils.errors import InputValidationError, TextExtractionError

logger = structlog.get_logger(logger_name=__name__)

_SUPPORTED_SUFFIXES = frozenset({".txt", ".text", ".md", ".markdown"})

MIME_TYPES: dict[str, str] = {
    ".txt": "text/plain",
    ".text": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}


class PlainTextExtractor(ITextExtractor):
    """Extractor for ``.txt`` / ``.md`` files."""

    def supports(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in _SUPPORTED_SUFFIXES

    async def extract(self, path: str | Path) -> str:
        file_path = Path(path)
        if not self.supports(file_path):
            raise InputValidationError(
                f"Unsupported file type: {file_path.suffix or '(none)'}",
                provider_name=self.get_provider_name(),
                code="UNSUPPORTED_FILE_TYPE",
            )
        try:
            raw = await asyncio.to_thread(file_path.read_bytes)
        except OSError as exc:
            raise TextExtractionError(
                f"Could not read {file_path}: {exc}", provider_name=self.get_provider_name()
            ) from exc

        # utf-8-sig drops a leading BOM if the editor wrote one.
        text = raw.decode("utf-8-sig", errors="replace").replace("\r\n", "\n")
        if not text.strip():
            raise TextExtractionError(
                f"No text extracted from {file_path.name}",
                provider_name=self.get_provider_name(),
            )
        logger.debug("text_extracted", path=str(file_path), chars=len(text))
        return text

    def get_provider_name(self) -> str:
        return "plain_text"
