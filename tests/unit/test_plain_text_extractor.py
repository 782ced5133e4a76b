"""Unit tests for PlainTextExtractor."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.providers.extractor.plain_text_extractor import MIME_TYPES, PlainTextExtractor
from src.utils.errors import InputValidationError, TextExtractionError


@pytest.fixture()
def extractor() -> PlainTextExtractor:
    return PlainTextExtractor()


class TestSupports:
    @pytest.mark.parametrize("name", ["notes.txt", "README.md", "guide.MARKDOWN", "raw.text"])
    def test_supported_suffixes(self, extractor: PlainTextExtractor, name: str) -> None:
        assert extractor.supports(name) is True
        assert Path(name).suffix.lower() in MIME_TYPES

    @pytest.mark.parametrize("name", ["scan.pdf", "photo.png", "Makefile", "page.html"])
    def test_unsupported_suffixes(self, extractor: PlainTextExtractor, name: str) -> None:
        assert extractor.supports(name) is False


class TestExtract:
    @pytest.mark.asyncio
    async def test_reads_utf8(self, extractor: PlainTextExtractor, tmp_path: Path) -> None:
        path = tmp_path / "café.md"
        path.write_text("# Menü\n\nCrème brûlée.", encoding="utf-8")

        assert await extractor.extract(path) == "# Menü\n\nCrème brûlée."

    @pytest.mark.asyncio
    async def test_strips_bom_and_crlf(self, extractor: PlainTextExtractor, tmp_path: Path) -> None:
        path = tmp_path / "windows.txt"
        path.write_bytes(b"\xef\xbb\xbfLine one\r\nLine two\r\n")

        assert await extractor.extract(str(path)) == "Line one\nLine two\n"

    @pytest.mark.asyncio
    async def test_unsupported_type_raises(self, extractor: PlainTextExtractor, tmp_path: Path) -> None:
        path = tmp_path / "scan.pdf"
        path.write_bytes(b"%PDF-1.7")

        with pytest.raises(InputValidationError) as exc_info:
            await extractor.extract(path)
        assert exc_info.value.code == "UNSUPPORTED_FILE_TYPE"

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, extractor: PlainTextExtractor, tmp_path: Path) -> None:
        with pytest.raises(TextExtractionError) as exc_info:
            await extractor.extract(tmp_path / "absent.txt")
        assert exc_info.value.code == "EXTRACTION_ERROR"

    @pytest.mark.asyncio
    async def test_whitespace_only_file_raises(
        self, extractor: PlainTextExtractor, tmp_path: Path
    ) -> None:
        path = tmp_path / "blank.txt"
        path.write_text(" \n\t\n", encoding="utf-8")

        with pytest.raises(TextExtractionError):
            await extractor.extract(path)

    def test_provider_name(self, extractor: PlainTextExtractor) -> None:
        assert extractor.get_provider_name() == "plain_text"
