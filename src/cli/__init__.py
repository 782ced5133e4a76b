# =============================================================================
# src/cli/__init__.py - CLI Module Overview
# =============================================================================
#
# Command-line tools for the knowledge pipeline, run via `python -m src.cli`
# or the `knowledge-pipeline` console script.
#
# ingest.py holds every subcommand: loading documents (file, directory,
# text), querying (search, fragments, duplicates, status) and maintenance
# (reprocess, cleanup, optimize, export, import).
#
# Architecture Notes:
#   - argparse for argument parsing (not Click/Typer).
#   - The pipeline is built once per invocation by src.main.build_components
#     and shut down (queue drained, HTTP client closed) before exit.
# =============================================================================

"""CLI tools for the knowledge pipeline.

- ``python -m src.cli`` - ingest, search and maintain the knowledge base.
"""
