"""Unit tests for the knowledge base CLI (src.cli.ingest)."""

from __future__ import annotations

import json
from argparse import Namespace
from pathlib import Path

import pytest

from src.cli.ingest import _build_parser, _segmentation_options, main
from src.config.pipeline_config import SegmentationOptions
from src.models.knowledge import SegmentationMethod


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    """Point the CLI at a temp database with offline embeddings."""
    db_path = tmp_path / "knowledge.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("KNOWLEDGE_DB_PATH", str(db_path))
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("EMBEDDING_DIMENSIONS", "64")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    # Keep structlog at its defaults so loggers do not cache a captured stdout.
    monkeypatch.setattr("src.main.setup_logging", lambda settings: None)
    return tmp_path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


# ======================================================================
# Argument parser
# ======================================================================


class TestBuildParser:
    """Tests for src.cli.ingest._build_parser."""

    def test_file_subcommand(self) -> None:
        args = _build_parser().parse_args([
            "file",
            "--file", "/docs/refunds.md",
            "--title", "Refund policy",
            "--tags", "faq", "billing",
            "--priority", "9",
        ])

        assert args.command == "file"
        assert args.file == "/docs/refunds.md"
        assert args.title == "Refund policy"
        assert args.tags == ["faq", "billing"]
        assert args.priority == 9

    def test_search_subcommand(self) -> None:
        args = _build_parser().parse_args([
            "search", "refund policy",
            "--limit", "3",
            "--threshold", "0.5",
            "--document", "doc-1",
            "--document", "doc-2",
            "--content-type", "code",
            "--no-cache",
        ])

        assert args.query == "refund policy"
        assert args.limit == 3
        assert args.threshold == 0.5
        assert args.document == ["doc-1", "doc-2"]
        assert args.content_type == "code"
        assert args.no_cache is True

    def test_search_defaults_come_from_config(self) -> None:
        args = _build_parser().parse_args(["search", "anything"])
        assert args.limit is None
        assert args.threshold is None

    def test_reprocess_flags(self) -> None:
        args = _build_parser().parse_args([
            "reprocess", "--document", "doc-1", "--no-rechunk", "--method", "fixed",
        ])

        assert args.rechunk is False
        assert args.reembed is True
        assert args.method == "fixed"

    def test_directory_subcommand(self) -> None:
        args = _build_parser().parse_args(["directory", "--path", "./docs", "--recursive"])
        assert args.path == "./docs"
        assert args.recursive is True

    def test_no_subcommand(self) -> None:
        assert _build_parser().parse_args([]).command is None

    def test_invalid_method_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["reprocess", "--method", "words"])


class TestSegmentationOptions:
    def test_no_overrides_returns_none(self) -> None:
        args = Namespace(method=None, chunk_size=None, overlap=None)
        assert _segmentation_options(args, SegmentationOptions()) is None

    def test_overrides_merge_into_base(self) -> None:
        args = Namespace(method="fixed", chunk_size=500, overlap=None)
        options = _segmentation_options(args, SegmentationOptions())

        assert options.method == SegmentationMethod.FIXED
        assert options.target_size == 500
        assert options.overlap == 200


# ======================================================================
# End-to-end commands
# ======================================================================


class TestCommands:
    def test_no_subcommand_prints_help(self, capsys) -> None:
        assert _run([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_text_then_search(self, cli_env: Path, capsys) -> None:
        text = "Refunds are issued within fourteen days of purchase."

        assert _run(["text", text, "--title", "Refunds"]) == 0
        assert "Title:       Refunds" in capsys.readouterr().out

        assert _run(["search", text]) == 0
        out = capsys.readouterr().out
        assert "#1  1.000" in out
        assert "Refunds are issued" in out

    def test_file_and_status(self, cli_env: Path, capsys) -> None:
        path = cli_env / "shipping.md"
        path.write_text("Orders ship within two business days.", encoding="utf-8")

        assert _run(["file", "--file", str(path)]) == 0
        assert "completed (1 fragments)" in capsys.readouterr().out

        assert _run(["status"]) == 0
        out = capsys.readouterr().out
        assert "hash_embedding / hash-embedding-v1 (64 dims)" in out
        assert "completed" in out

    def test_export_and_import(self, cli_env: Path, capsys) -> None:
        export_path = cli_env / "backup.json"
        _run(["text", "Keep a copy of this.", "--title", "Backup"])

        assert _run(["export", "--output", str(export_path)]) == 0
        data = json.loads(export_path.read_text(encoding="utf-8"))
        assert len(data["documents"]) == 1
        assert len(data["fragments"]) == 1

        capsys.readouterr()
        assert _run(["import", "--input", str(export_path)]) == 0
        assert "Imported: 0  Skipped: 1" in capsys.readouterr().out

    def test_knowledge_error_exits_non_zero(self, cli_env: Path, capsys) -> None:
        assert _run(["fragments", "--document", "missing"]) == 1
        assert "Error [DOCUMENT_NOT_FOUND]" in capsys.readouterr().err
