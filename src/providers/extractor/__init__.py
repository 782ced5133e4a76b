"""File-to-text extractors."""

from src.providers.extractor.plain_text_extractor import MIME_TYPES, PlainTextExtractor

__all__ = ["MIME_TYPES", "PlainTextExtractor"]
