"""SQLite-backed document/fragment store.

Persists documents and fragments to a local SQLite database at
``data/knowledge.db``.  Uses ``aiosqlite`` for async I/O with one
connection per operation, so concurrent searches and the ingestion worker
never share a cursor.

Nested value objects (document metadata, fragment metadata, error records)
are stored as JSON columns; fields that are filtered or aggregated on
(statuses, content type, word count, usage counters) get real columns.
Embedding vectors are stored as JSON arrays and decoded on read.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from src.interfaces.knowledge_store import IKnowledgeStore
from src.models.knowledge import (
    ContentType,
    Document,
    DocumentMetadata,
    EmbeddingInfo,
    ErrorRecord,
    Fragment,
    FragmentMetadata,
    FragmentPosition,
    ProcessingStatus,
    UsageStats,
    utc_now,
)
from src.utils.errors import StoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/knowledge.db")

_CREATE_DOCUMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    id                TEXT PRIMARY KEY,
    title             TEXT    NOT NULL,
    filename          TEXT    NOT NULL DEFAULT '',
    description       TEXT    NOT NULL DEFAULT '',
    text              TEXT    NOT NULL,
    metadata_json     TEXT    NOT NULL DEFAULT '{}',
    tags_json         TEXT    NOT NULL DEFAULT '[]',
    content_hash      TEXT    NOT NULL DEFAULT '',
    word_count        INTEGER NOT NULL DEFAULT 0,
    processing_status TEXT    NOT NULL DEFAULT 'pending',
    chunking_status   TEXT    NOT NULL DEFAULT 'pending',
    embedding_status  TEXT    NOT NULL DEFAULT 'pending',
    fragment_count    INTEGER NOT NULL DEFAULT 0,
    priority          INTEGER NOT NULL DEFAULT 5,
    error_json        TEXT,
    error_at          TEXT,
    auto_retry_count  INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL,
    deleted_at        TEXT
);
"""

_CREATE_FRAGMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS fragments (
    id                   TEXT PRIMARY KEY,
    document_id          TEXT    NOT NULL,
    idx                  INTEGER NOT NULL,
    content              TEXT    NOT NULL,
    start_index          INTEGER NOT NULL,
    end_index            INTEGER NOT NULL,
    metadata_json        TEXT    NOT NULL DEFAULT '{}',
    content_type         TEXT    NOT NULL DEFAULT 'text',
    embedding_vector     TEXT,
    embedding_model      TEXT,
    embedding_confidence REAL,
    embedding_created_at TEXT,
    query_count          INTEGER NOT NULL DEFAULT 0,
    retrieval_count      INTEGER NOT NULL DEFAULT 0,
    avg_relevance_score  REAL    NOT NULL DEFAULT 0,
    top_result_frequency REAL    NOT NULL DEFAULT 0,
    last_retrieved_at    TEXT,
    last_queried_at      TEXT,
    processing_status    TEXT    NOT NULL DEFAULT 'pending',
    embedding_status     TEXT    NOT NULL DEFAULT 'pending',
    error_json           TEXT,
    previous_id          TEXT,
    next_id              TEXT,
    priority             INTEGER NOT NULL DEFAULT 5,
    created_at           TEXT    NOT NULL,
    updated_at           TEXT    NOT NULL,
    deleted_at           TEXT
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_documents_hash ON documents(content_hash);",
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(processing_status);",
    "CREATE INDEX IF NOT EXISTS idx_documents_priority ON documents(priority, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_fragments_document ON fragments(document_id, idx);",
    "CREATE INDEX IF NOT EXISTS idx_fragments_embedding ON fragments(embedding_status);",
]

_DOCUMENT_COLUMNS = (
    "id, title, filename, description, text, metadata_json, tags_json, content_hash, "
    "word_count, processing_status, chunking_status, embedding_status, fragment_count, "
    "priority, error_json, error_at, auto_retry_count, created_at, updated_at, deleted_at"
)

_FRAGMENT_COLUMNS = (
    "id, document_id, idx, content, start_index, end_index, metadata_json, content_type, "
    "embedding_vector, embedding_model, embedding_confidence, embedding_created_at, "
    "query_count, retrieval_count, avg_relevance_score, top_result_frequency, "
    "last_retrieved_at, last_queried_at, processing_status, embedding_status, error_json, "
    "previous_id, next_id, priority, created_at, updated_at, deleted_at"
)

_UPSERT_DOCUMENT_SQL = f"""\
INSERT OR REPLACE INTO documents ({_DOCUMENT_COLUMNS})
VALUES ({", ".join("?" * 20)});
"""

_UPSERT_FRAGMENT_SQL = f"""\
INSERT OR REPLACE INTO fragments ({_FRAGMENT_COLUMNS})
VALUES ({", ".join("?" * 27)});
"""

# SQLite evaluates every right-hand side against the pre-update row, so
# retrieval_count below is the old n and (n + 1) is the new count.
_INCREMENT_USAGE_SQL = """\
UPDATE fragments
SET avg_relevance_score  = (avg_relevance_score * retrieval_count + ?) / (retrieval_count + 1),
    top_result_frequency = (top_result_frequency * retrieval_count + ?) / (retrieval_count + 1),
    retrieval_count      = retrieval_count + 1,
    last_retrieved_at    = ?
WHERE id = ?;
"""

_UPDATE_EMBEDDING_SQL = """\
UPDATE fragments
SET embedding_vector     = ?,
    embedding_model      = ?,
    embedding_confidence = ?,
    embedding_created_at = ?,
    embedding_status     = ?,
    error_json           = ?,
    updated_at           = ?
WHERE id = ?;
"""

_RESET_STALE_FAILED_SQL = """\
UPDATE documents
SET processing_status = 'pending',
    chunking_status   = CASE WHEN chunking_status = 'failed' THEN 'pending' ELSE chunking_status END,
    embedding_status  = CASE WHEN embedding_status = 'failed' THEN 'pending' ELSE embedding_status END,
    auto_retry_count  = auto_retry_count + 1,
    error_json        = NULL,
    error_at          = NULL,
    updated_at        = ?
WHERE processing_status = 'failed'
  AND deleted_at IS NULL
  AND auto_retry_count < ?
  AND COALESCE(error_at, updated_at) < ?;
"""

_DELETE_ORPHANS_SQL = """\
DELETE FROM fragments
WHERE document_id NOT IN (SELECT id FROM documents WHERE deleted_at IS NULL);
"""

_STATUS_FIELDS = frozenset({"processing_status", "chunking_status", "embedding_status"})


def _ts(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump(model: Any) -> str | None:
    return model.model_dump_json() if model is not None else None


class SQLiteKnowledgeStore(IKnowledgeStore):
    """SQLite-backed document and fragment persistence."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the documents/fragments tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(_CREATE_DOCUMENTS_SQL)
            await db.execute(_CREATE_FRAGMENTS_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("knowledge_db_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _document_params(doc: Document) -> tuple:
        return (
            doc.id,
            doc.title,
            doc.filename,
            doc.description,
            doc.text,
            doc.metadata.model_dump_json(),
            json.dumps(doc.tags),
            doc.metadata.content_hash,
            doc.metadata.word_count,
            doc.processing_status.value,
            doc.chunking_status.value,
            doc.embedding_status.value,
            doc.fragment_count,
            doc.priority,
            _dump(doc.error),
            _ts(doc.error.timestamp) if doc.error else None,
            doc.auto_retry_count,
            _ts(doc.created_at),
            _ts(doc.updated_at),
            _ts(doc.deleted_at),
        )

    @staticmethod
    def _row_to_document(row: aiosqlite.Row) -> Document:
        return Document(
            id=row["id"],
            title=row["title"],
            filename=row["filename"],
            description=row["description"],
            text=row["text"],
            metadata=DocumentMetadata.model_validate_json(row["metadata_json"]),
            tags=json.loads(row["tags_json"]),
            processing_status=ProcessingStatus(row["processing_status"]),
            chunking_status=ProcessingStatus(row["chunking_status"]),
            embedding_status=ProcessingStatus(row["embedding_status"]),
            fragment_count=row["fragment_count"],
            priority=row["priority"],
            error=ErrorRecord.model_validate_json(row["error_json"]) if row["error_json"] else None,
            auto_retry_count=row["auto_retry_count"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            deleted_at=_dt(row["deleted_at"]),
        )

    @staticmethod
    def _fragment_params(frag: Fragment) -> tuple:
        emb = frag.embedding
        return (
            frag.id,
            frag.document_id,
            frag.index,
            frag.content,
            frag.position.start_index,
            frag.position.end_index,
            frag.metadata.model_dump_json(),
            frag.metadata.content_type.value,
            json.dumps(emb.vector) if emb else None,
            emb.model if emb else None,
            emb.confidence if emb else None,
            _ts(emb.created_at) if emb else None,
            frag.stats.query_count,
            frag.stats.retrieval_count,
            frag.stats.avg_relevance_score,
            frag.stats.top_result_frequency,
            _ts(frag.stats.last_retrieved_at),
            _ts(frag.stats.last_queried_at),
            frag.processing_status.value,
            frag.embedding_status.value,
            _dump(frag.error),
            frag.previous_id,
            frag.next_id,
            frag.priority,
            _ts(frag.created_at),
            _ts(frag.updated_at),
            _ts(frag.deleted_at),
        )

    @staticmethod
    def _row_to_fragment(row: aiosqlite.Row) -> Fragment:
        embedding = None
        if row["embedding_vector"]:
            embedding = EmbeddingInfo(
                vector=json.loads(row["embedding_vector"]),
                model=row["embedding_model"] or "",
                confidence=row["embedding_confidence"] if row["embedding_confidence"] is not None else 1.0,
                created_at=_dt(row["embedding_created_at"]) or utc_now(),
            )
        return Fragment(
            id=row["id"],
            document_id=row["document_id"],
            index=row["idx"],
            content=row["content"],
            position=FragmentPosition(start_index=row["start_index"], end_index=row["end_index"]),
            metadata=FragmentMetadata.model_validate_json(row["metadata_json"]),
            embedding=embedding,
            stats=UsageStats(
                query_count=row["query_count"],
                retrieval_count=row["retrieval_count"],
                avg_relevance_score=row["avg_relevance_score"],
                top_result_frequency=row["top_result_frequency"],
                last_retrieved_at=_dt(row["last_retrieved_at"]),
                last_queried_at=_dt(row["last_queried_at"]),
            ),
            processing_status=ProcessingStatus(row["processing_status"]),
            embedding_status=ProcessingStatus(row["embedding_status"]),
            error=ErrorRecord.model_validate_json(row["error_json"]) if row["error_json"] else None,
            previous_id=row["previous_id"],
            next_id=row["next_id"],
            priority=row["priority"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            deleted_at=_dt(row["deleted_at"]),
        )

    async def _fetch_all(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreError(f"Query failed: {exc}", provider_name=self.get_provider_name()) from exc

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreError(f"Write failed: {exc}", provider_name=self.get_provider_name()) from exc

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def save_document(self, document: Document) -> None:
        await self._execute(_UPSERT_DOCUMENT_SQL, self._document_params(document))

    async def get_document(self, document_id: str, include_deleted: bool = False) -> Document | None:
        sql = f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        rows = await self._fetch_all(sql, (document_id,))
        return self._row_to_document(rows[0]) if rows else None

    async def get_documents(self, document_ids: list[str]) -> dict[str, Document]:
        if not document_ids:
            return {}
        unique_ids = list(dict.fromkeys(document_ids))
        placeholders = ", ".join("?" * len(unique_ids))
        rows = await self._fetch_all(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id IN ({placeholders})",
            tuple(unique_ids),
        )
        return {row["id"]: self._row_to_document(row) for row in rows}

    async def find_document_by_hash(self, content_hash: str) -> Document | None:
        rows = await self._fetch_all(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
            "WHERE content_hash = ? AND deleted_at IS NULL ORDER BY created_at LIMIT 1",
            (content_hash,),
        )
        return self._row_to_document(rows[0]) if rows else None

    async def list_documents(
        self,
        processing_statuses: list[ProcessingStatus] | None = None,
        include_deleted: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        clauses: list[str] = []
        params: list[Any] = []
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if processing_statuses:
            clauses.append(f"processing_status IN ({', '.join('?' * len(processing_statuses))})")
            params.extend(s.value for s in processing_statuses)
        sql = f"SELECT {_DOCUMENT_COLUMNS} FROM documents"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY priority DESC, created_at ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = await self._fetch_all(sql, tuple(params))
        return [self._row_to_document(row) for row in rows]

    async def soft_delete_document(self, document_id: str) -> bool:
        now = _ts(utc_now())
        changed = await self._execute(
            "UPDATE documents SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
            (now, now, document_id),
        )
        return changed > 0

    async def count_documents_by_status(self, field: str = "processing_status") -> dict[str, int]:
        if field not in _STATUS_FIELDS:
            raise ValueError(f"Unknown status field: {field}")
        rows = await self._fetch_all(
            f"SELECT {field} AS status, COUNT(*) AS total FROM documents "
            f"WHERE deleted_at IS NULL GROUP BY {field}"
        )
        return {row["status"]: row["total"] for row in rows}

    async def reset_stale_failed_documents(self, failed_before: datetime, max_auto_retries: int) -> int:
        return await self._execute(
            _RESET_STALE_FAILED_SQL,
            (_ts(utc_now()), max_auto_retries, _ts(failed_before)),
        )

    async def find_under_segmented_documents(self, max_fragments: int, min_words: int) -> list[Document]:
        rows = await self._fetch_all(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
            "WHERE deleted_at IS NULL AND chunking_status = 'completed' "
            "AND fragment_count < ? AND word_count > ? "
            "ORDER BY priority DESC, created_at ASC",
            (max_fragments, min_words),
        )
        return [self._row_to_document(row) for row in rows]

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    async def add_fragments(self, fragments: list[Fragment]) -> None:
        if not fragments:
            return
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.executemany(
                    _UPSERT_FRAGMENT_SQL, [self._fragment_params(f) for f in fragments]
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(
                f"Fragment insert failed: {exc}", provider_name=self.get_provider_name()
            ) from exc
        logger.debug("fragments_stored", count=len(fragments), document_id=fragments[0].document_id)

    async def save_fragment(self, fragment: Fragment) -> None:
        await self._execute(_UPSERT_FRAGMENT_SQL, self._fragment_params(fragment))

    async def update_fragment_embedding(self, fragment: Fragment) -> None:
        emb = fragment.embedding
        await self._execute(
            _UPDATE_EMBEDDING_SQL,
            (
                json.dumps(emb.vector) if emb else None,
                emb.model if emb else None,
                emb.confidence if emb else None,
                _ts(emb.created_at) if emb else None,
                fragment.embedding_status.value,
                _dump(fragment.error),
                _ts(fragment.updated_at),
                fragment.id,
            ),
        )

    async def get_fragment(self, fragment_id: str) -> Fragment | None:
        rows = await self._fetch_all(
            f"SELECT {_FRAGMENT_COLUMNS} FROM fragments WHERE id = ? AND deleted_at IS NULL",
            (fragment_id,),
        )
        return self._row_to_fragment(rows[0]) if rows else None

    async def list_fragments(
        self,
        document_id: str,
        embedding_statuses: list[ProcessingStatus] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Fragment]:
        sql = f"SELECT {_FRAGMENT_COLUMNS} FROM fragments WHERE document_id = ? AND deleted_at IS NULL"
        params: list[Any] = [document_id]
        if embedding_statuses:
            sql += f" AND embedding_status IN ({', '.join('?' * len(embedding_statuses))})"
            params.extend(s.value for s in embedding_statuses)
        sql += " ORDER BY idx ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = await self._fetch_all(sql, tuple(params))
        return [self._row_to_fragment(row) for row in rows]

    async def count_fragments(
        self,
        document_id: str,
        processing_status: ProcessingStatus | None = None,
    ) -> int:
        sql = "SELECT COUNT(*) AS total FROM fragments WHERE document_id = ? AND deleted_at IS NULL"
        params: list[Any] = [document_id]
        if processing_status is not None:
            sql += " AND processing_status = ?"
            params.append(processing_status.value)
        rows = await self._fetch_all(sql, tuple(params))
        return rows[0]["total"]

    async def delete_fragments_for_document(self, document_id: str) -> int:
        deleted = await self._execute("DELETE FROM fragments WHERE document_id = ?", (document_id,))
        logger.debug("fragments_deleted", document_id=document_id, count=deleted)
        return deleted

    async def bulk_update_embedding_status(
        self,
        fragment_ids: list[str],
        status: ProcessingStatus,
    ) -> int:
        if not fragment_ids:
            return 0
        placeholders = ", ".join("?" * len(fragment_ids))
        return await self._execute(
            f"UPDATE fragments SET embedding_status = ?, updated_at = ? WHERE id IN ({placeholders})",
            (status.value, _ts(utc_now()), *fragment_ids),
        )

    async def list_embedded_fragments(
        self,
        document_ids: list[str] | None = None,
        content_type: ContentType | None = None,
    ) -> list[Fragment]:
        sql = (
            f"SELECT {_FRAGMENT_COLUMNS} FROM fragments "
            "WHERE embedding_status = 'completed' AND deleted_at IS NULL "
            "AND embedding_vector IS NOT NULL"
        )
        params: list[Any] = []
        if document_ids:
            sql += f" AND document_id IN ({', '.join('?' * len(document_ids))})"
            params.extend(document_ids)
        if content_type is not None:
            sql += " AND content_type = ?"
            params.append(content_type.value)
        sql += " ORDER BY document_id, idx"
        rows = await self._fetch_all(sql, tuple(params))
        return [self._row_to_fragment(row) for row in rows]

    async def list_low_confidence_fragments(self, confidence_floor: float) -> list[Fragment]:
        rows = await self._fetch_all(
            f"SELECT {_FRAGMENT_COLUMNS} FROM fragments "
            "WHERE embedding_status = 'completed' AND deleted_at IS NULL "
            "AND embedding_confidence < ? ORDER BY document_id, idx",
            (confidence_floor,),
        )
        return [self._row_to_fragment(row) for row in rows]

    async def increment_fragment_usage(self, fragment_id: str, score: float, top_result: bool) -> None:
        await self._execute(
            _INCREMENT_USAGE_SQL,
            (score, 1.0 if top_result else 0.0, _ts(utc_now()), fragment_id),
        )

    async def increment_fragment_queries(self, fragment_id: str) -> None:
        await self._execute(
            "UPDATE fragments SET query_count = query_count + 1, last_queried_at = ? WHERE id = ?",
            (_ts(utc_now()), fragment_id),
        )

    async def count_fragments_by_status(self, field: str = "embedding_status") -> dict[str, int]:
        if field not in ("processing_status", "embedding_status"):
            raise ValueError(f"Unknown status field: {field}")
        rows = await self._fetch_all(
            f"SELECT {field} AS status, COUNT(*) AS total FROM fragments "
            f"WHERE deleted_at IS NULL GROUP BY {field}"
        )
        return {row["status"]: row["total"] for row in rows}

    async def delete_orphan_fragments(self) -> int:
        removed = await self._execute(_DELETE_ORPHANS_SQL)
        if removed:
            logger.info("orphan_fragments_deleted", count=removed)
        return removed

    async def ping(self) -> bool:
        try:
            rows = await self._fetch_all("SELECT 1 AS ok")
        except StoreError:
            return False
        return bool(rows) and rows[0]["ok"] == 1

    def get_provider_name(self) -> str:
        return "sqlite_knowledge"
