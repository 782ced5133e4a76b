# =============================================================================
# src/cli/ingest.py - Knowledge Base CLI
# =============================================================================
#
# Standalone CLI for loading documents into the knowledge base and querying
# it.  Documents are stored in a local SQLite file (KNOWLEDGE_DB_PATH),
# split into fragments, embedded, and searched by cosine similarity.
#
# Supported subcommands:
#
#   file       - Ingest one .txt / .md file
#   directory  - Bulk-ingest every supported file in a directory
#   text       - Ingest text given on the command line (or "-" for stdin)
#   search     - Semantic search over embedded fragments
#   status     - Status histograms for documents, fragments and embeddings
#   fragments  - Page through one document's fragments
#   reprocess  - Re-chunk and/or re-embed a document
#   cleanup    - Remove orphan fragments, revive stale failed documents
#   optimize   - Re-chunk under-segmented documents, re-embed weak vectors
#   export     - Write the knowledge base to a JSON file
#   import     - Load a JSON export
#   duplicates - Near-identical fragments for a fragment id
#
# Ingest commands process the document before returning (the queue is
# drained), so a following `search` sees the new fragments.
#
# Provider Selection:
#   - Embedding: OpenAI (if OPENAI_API_KEY) -> deterministic hash vectors
#   - Store: SQLite (always)
#   - Cache: in-process TTL cache (always)
#
# Usage examples:
#   python -m src.cli file --file notes/refunds.md --title "Refund policy"
#   python -m src.cli directory --path ./docs --recursive
#   python -m src.cli search "refund policy" --limit 3 --threshold 0.5
#   python -m src.cli reprocess --document <id> --no-rechunk
#   python -m src.cli export --output backup.json
# =============================================================================

"""Standalone CLI for the knowledge base.

Usage::

    python -m src.cli file --file notes/refunds.md --title "Refund policy"

    python -m src.cli search "refund policy" --limit 3

    python -m src.cli status

No extra dependencies beyond the core project requirements.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from src.config.pipeline_config import SegmentationOptions
from src.config.settings import Settings
from src.models.knowledge import (
    ContentType,
    Document,
    ProcessResult,
    SearchHit,
    SearchOptions,
    SegmentationMethod,
)
from src.utils.errors import KnowledgeError

# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _print_document(document: Document) -> None:
    print(f"  Document ID: {document.id}")
    print(f"  Title:       {document.title}")
    print(f"  Words:       {document.metadata.word_count}")
    print(f"  Priority:    {document.priority}")


def _print_result(result: ProcessResult) -> None:
    print(f"  Processing:  {result.processing_status.value}")
    print(f"  Chunking:    {result.chunking_status.value}")
    print(f"  Embedding:   {result.embedding_status.value}")
    print(f"  Fragments:   {result.fragments_created} created, {result.fragments_rejected} rejected")
    print(f"  Embedded:    {result.fragments_embedded} ok, {result.fragments_failed} failed")
    if result.error:
        print(f"  Error:       [{result.error.code}] {result.error.message}")


def _print_hits(hits: list[SearchHit]) -> None:
    if not hits:
        print("No matching fragments.")
        return
    for hit in hits:
        source = hit.document_filename or hit.document_title
        print(f"#{hit.rank}  {hit.similarity:.3f}  {source}  [{hit.start_index}:{hit.end_index}]")
        preview = " ".join(hit.content.split())
        print(f"    {preview[:200]}{'...' if len(preview) > 200 else ''}")
        print(f"    fragment={hit.fragment_id}")


def _segmentation_options(args: argparse.Namespace, base: SegmentationOptions) -> SegmentationOptions | None:
    """Per-command segmentation overrides, or ``None`` when none were given."""
    overrides: dict[str, Any] = {}
    if getattr(args, "method", None):
        overrides["method"] = SegmentationMethod(args.method)
    if getattr(args, "chunk_size", None):
        overrides["target_size"] = args.chunk_size
    if getattr(args, "overlap", None) is not None:
        overrides["overlap"] = args.overlap
    if not overrides:
        return None
    return SegmentationOptions(**{**base.model_dump(), **overrides})


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


async def _handle_file(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Ingest one file and process it."""
    service = components["service"]
    print(f"Ingesting file: {args.file}")
    document = await service.ingest_file(
        args.file,
        title=args.title,
        description=args.description or "",
        tags=args.tags,
        priority=args.priority,
    )
    await service.wait_until_idle()
    _print_document(document)
    document = await service.get_document(document.id)
    print(f"  Status:      {document.processing_status.value} ({document.fragment_count} fragments)")
    return 0


async def _handle_directory(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Ingest all supported files in a directory."""
    service = components["service"]
    print(f"Ingesting directory: {args.path}{' (recursive)' if args.recursive else ''}")
    documents = await service.ingest_directory(
        args.path, recursive=args.recursive, priority=args.priority
    )
    await service.wait_until_idle()

    print("\nDirectory ingestion complete:")
    print(f"  Documents:   {len(documents)}")
    for document in documents:
        current = await service.get_document(document.id)
        print(f"    {current.processing_status.value:<20} {current.filename}")
    return 0


async def _handle_text(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Ingest literal text (or stdin)."""
    service = components["service"]
    text = sys.stdin.read() if args.text == "-" else args.text
    document = await service.ingest(text, title=args.title, tags=args.tags, priority=args.priority)
    await service.wait_until_idle()
    _print_document(document)
    return 0


async def _handle_search(args: argparse.Namespace, components: dict[str, Any]) -> int:
    service = components["service"]
    options = SearchOptions(
        limit=args.limit,
        threshold=args.threshold,
        document_ids=args.document or None,
        content_type=ContentType(args.content_type) if args.content_type else None,
        use_cache=not args.no_cache,
    )
    hits = await service.search_relevant_fragments(args.query, options)
    _print_hits(hits)
    return 0


async def _handle_status(args: argparse.Namespace, components: dict[str, Any]) -> int:
    service = components["service"]
    status = await service.get_knowledge_status()
    health = await service.health_check()
    info = components["embeddings"].get_model_info()

    print("Knowledge Base Status")
    print("=" * 40)
    print(f"  Health:        {health.status}")
    for name, check in health.checks.items():
        print(f"    {name:<12} {check}")
    print(f"  Embedding:     {info['provider']} / {info['model']} ({info['dimensions']} dims)")
    for label, histogram in (
        ("Documents", status.documents),
        ("Fragments", status.fragments),
        ("Embeddings", status.embeddings),
    ):
        print(f"\n  {label}:")
        if not histogram:
            print("    (none)")
        for state, count in sorted(histogram.items()):
            print(f"    {state:<20} {count}")
    return 0


async def _handle_fragments(args: argparse.Namespace, components: dict[str, Any]) -> int:
    service = components["service"]
    page = await service.get_document_fragments(args.document, page=args.page, page_size=args.page_size)
    print(f"Fragments of {args.document} (page {page.page}, {page.total} total)")
    for fragment in page.fragments:
        print(
            f"  [{fragment.index}] {fragment.position.start_index}-{fragment.position.end_index} "
            f"{fragment.metadata.content_type.value:<8} {fragment.embedding_status.value:<10} "
            f"{fragment.metadata.word_count} words"
        )
    if page.has_more:
        print(f"  ... more on page {page.page + 1}")
    stats = await service.get_chunking_stats(args.document)
    print(f"  Avg size: {stats.avg_fragment_size} chars, {stats.avg_word_count} words")
    return 0


async def _handle_reprocess(args: argparse.Namespace, components: dict[str, Any]) -> int:
    service = components["service"]
    options = _segmentation_options(args, components["config"].segmentation)
    if args.document:
        result = await service.reprocess(
            args.document, rechunk=args.rechunk, reembed=args.reembed, options=options
        )
        print(f"Reprocessed {args.document}:")
        _print_result(result)
        return 0 if result.error is None else 1

    results = await service.process_knowledge_base(reprocess=args.all)
    print(f"Processed {len(results)} documents")
    for result in results:
        print(f"  {result.processing_status.value:<20} {result.document_id}")
    return 0


async def _handle_cleanup(args: argparse.Namespace, components: dict[str, Any]) -> int:
    result = await components["service"].cleanup()
    print(f"Orphaned fragments removed: {result.orphaned_fragments_removed}")
    print(f"Failed documents reset:     {result.failed_documents_reset}")
    return 0


async def _handle_optimize(args: argparse.Namespace, components: dict[str, Any]) -> int:
    result = await components["service"].optimize()
    print(f"Documents re-chunked:   {result.documents_rechunked}")
    print(f"Fragments re-embedded:  {result.fragments_reembedded}")
    return 0


async def _handle_export(args: argparse.Namespace, components: dict[str, Any]) -> int:
    export = await components["service"].export_knowledge_base(
        document_ids=args.document or None,
        include_embeddings=not args.no_embeddings,
    )
    Path(args.output).write_text(export.model_dump_json(indent=2), encoding="utf-8")
    print(f"Exported {len(export.documents)} documents, {len(export.fragments)} fragments to {args.output}")
    return 0


async def _handle_import(args: argparse.Namespace, components: dict[str, Any]) -> int:
    data = json.loads(Path(args.input).read_text(encoding="utf-8"))
    result = await components["service"].import_knowledge_base(data, overwrite=args.overwrite)
    print(f"Imported: {result.imported}  Skipped: {result.skipped}")
    for error in result.errors:
        print(f"  error: {error}", file=sys.stderr)
    return 0 if not result.errors else 1


async def _handle_duplicates(args: argparse.Namespace, components: dict[str, Any]) -> int:
    hits = await components["service"].find_duplicate_fragments(
        args.fragment, threshold=args.threshold, limit=args.limit
    )
    _print_hits(hits)
    return 0


_HANDLERS = {
    "file": _handle_file,
    "directory": _handle_directory,
    "text": _handle_text,
    "search": _handle_search,
    "status": _handle_status,
    "fragments": _handle_fragments,
    "reprocess": _handle_reprocess,
    "cleanup": _handle_cleanup,
    "optimize": _handle_optimize,
    "export": _handle_export,
    "import": _handle_import,
    "duplicates": _handle_duplicates,
}


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    """Build the pipeline, run one subcommand, shut down cleanly."""
    # Deferred so `--help` does not pay for building the pipeline.
    from src.main import build_components, shutdown

    components = build_components(app_settings)
    await components["store"].initialize()
    try:
        return await _HANDLERS[args.command](args, components)
    except KnowledgeError as exc:
        print(f"Error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        await shutdown(components)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _add_ingest_options(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--tags", nargs="*", default=None, help="Tags stored on the document")
    sub.add_argument("--priority", type=int, default=None, help="Processing priority 1-10")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the knowledge base CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m src.cli",
        description="Load, process and search the knowledge base.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Knowledge base commands")

    # -- file --
    file_parser = subparsers.add_parser("file", help="Ingest a .txt or .md file")
    file_parser.add_argument("--file", required=True, help="Path to the file")
    file_parser.add_argument("--title", default=None, help="Title (default: file name)")
    file_parser.add_argument("--description", default=None, help="Short description")
    _add_ingest_options(file_parser)

    # -- directory --
    dir_parser = subparsers.add_parser("directory", help="Ingest all files in a directory")
    dir_parser.add_argument("--path", required=True, help="Directory path")
    dir_parser.add_argument("--recursive", action="store_true", help="Descend into subdirectories")
    dir_parser.add_argument("--priority", type=int, default=None, help="Processing priority 1-10")

    # -- text --
    text_parser = subparsers.add_parser("text", help="Ingest literal text ('-' reads stdin)")
    text_parser.add_argument("text", help="Text to ingest, or '-'")
    text_parser.add_argument("--title", required=True, help="Document title")
    _add_ingest_options(text_parser)

    # -- search --
    search_parser = subparsers.add_parser("search", help="Semantic search")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--limit", type=int, default=None, help="Max results (1-50)")
    search_parser.add_argument("--threshold", type=float, default=None, help="Min similarity")
    search_parser.add_argument("--document", action="append", help="Restrict to a document id")
    search_parser.add_argument(
        "--content-type",
        dest="content_type",
        choices=[c.value for c in ContentType],
        default=None,
    )
    search_parser.add_argument("--no-cache", dest="no_cache", action="store_true")

    # -- status --
    subparsers.add_parser("status", help="Show knowledge base status")

    # -- fragments --
    frag_parser = subparsers.add_parser("fragments", help="List a document's fragments")
    frag_parser.add_argument("--document", required=True, help="Document id")
    frag_parser.add_argument("--page", type=int, default=1)
    frag_parser.add_argument("--page-size", dest="page_size", type=int, default=20)

    # -- reprocess --
    re_parser = subparsers.add_parser(
        "reprocess", help="Re-run one document, or every pending document"
    )
    re_parser.add_argument("--document", default=None, help="Document id (default: all pending)")
    re_parser.add_argument("--all", action="store_true", help="With no --document: every document")
    re_parser.add_argument("--no-rechunk", dest="rechunk", action="store_false")
    re_parser.add_argument("--no-reembed", dest="reembed", action="store_false")
    re_parser.add_argument("--method", choices=[m.value for m in SegmentationMethod], default=None)
    re_parser.add_argument("--chunk-size", dest="chunk_size", type=int, default=None)
    re_parser.add_argument("--overlap", type=int, default=None)

    # -- cleanup / optimize --
    subparsers.add_parser("cleanup", help="Remove orphan fragments, revive failed documents")
    subparsers.add_parser("optimize", help="Re-chunk sparse documents, re-embed weak vectors")

    # -- export --
    export_parser = subparsers.add_parser("export", help="Export to JSON")
    export_parser.add_argument("--output", required=True, help="Output file")
    export_parser.add_argument("--document", action="append", help="Only this document id")
    export_parser.add_argument("--no-embeddings", dest="no_embeddings", action="store_true")

    # -- import --
    import_parser = subparsers.add_parser("import", help="Import a JSON export")
    import_parser.add_argument("--input", required=True, help="Export file")
    import_parser.add_argument("--overwrite", action="store_true", help="Replace existing documents")

    # -- duplicates --
    dup_parser = subparsers.add_parser("duplicates", help="Near-duplicate fragments")
    dup_parser.add_argument("--fragment", required=True, help="Fragment id")
    dup_parser.add_argument("--threshold", type=float, default=None)
    dup_parser.add_argument("--limit", type=int, default=10)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.

    Parses the subcommand, loads Settings from environment variables /
    .env file, configures logging and dispatches to the handler.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()

    from src.main import setup_logging

    setup_logging(app_settings)
    exit_code = asyncio.run(_run(args, app_settings))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
