"""Document lifecycle orchestration for the knowledge base.

Orchestrates the pipeline: **ingest -> segment -> embed -> search**.

1. **Ingest** -- text (or a file through an ITextExtractor) becomes a
   pending Document; identical text is stored once.

2. **Segment** (services/segmentation) -- the Segmenter splits the text
   into overlapping fragments on paragraph/sentence boundaries.

3. **Embed** (services/embedding) -- the EmbeddingPipeline attaches a
   vector to each fragment with caching, retries and item isolation.

4. **Search** (services/retrieval) -- the RetrievalEngine ranks embedded
   fragments against a query.

The KnowledgeService class coordinates all four and owns maintenance
(cleanup, optimize, export/import).
"""

from src.services.ingestion.knowledge_service import KnowledgeService, content_hash

__all__ = ["KnowledgeService", "content_hash"]
