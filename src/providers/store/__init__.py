"""Document/fragment store providers.

SQLiteKnowledgeStore keeps documents and fragments in a single local
SQLite file via aiosqlite.  Other backends implement IKnowledgeStore.
"""

from src.providers.store.sqlite_knowledge_store import SQLiteKnowledgeStore

__all__ = ["SQLiteKnowledgeStore"]
