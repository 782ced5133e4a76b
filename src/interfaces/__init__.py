"""Public interface definitions for the pipeline's external collaborators.

Business logic reaches every external service through the abstract base
classes defined here.  Concrete adapters live in ``src/providers/`` and
are wired together in ``src/main.py``; unit tests inject fakes instead.

CONCRETE PROVIDER MAP:
    Interface                  →  Concrete implementations (in src/providers/)
    ─────────────────────────────────────────────────────────────────────
    IEmbeddingProvider         →  OpenAIEmbeddingProvider,
                                  HashEmbeddingProvider
    IKnowledgeStore            →  SQLiteKnowledgeStore
    ICacheProvider             →  MemoryCacheProvider
    ITextExtractor             →  PlainTextExtractor
"""

from src.interfaces.cache_provider import ICacheProvider
from src.interfaces.embedding_provider import IEmbeddingProvider
from src.interfaces.knowledge_store import IKnowledgeStore
from src.interfaces.text_extractor import ITextExtractor

__all__ = [
    "ICacheProvider",
    "IEmbeddingProvider",
    "IKnowledgeStore",
    "ITextExtractor",
]
