"""PostgreSQL store: pgvector for embeddings, a generated tsvector for keywords."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
import psycopg
from pgvector.psycopg import register_vector
from psycopg import sql
from psycopg.rows import dict_row

from .errors import FileNotFound, LeaseLost, PersistenceFailure
from .lexical import LexicalQuery, parse_query
from .models import (
    DocumentChunk,
    KeywordHit,
    ProcessingStatus,
    SearchResult,
    SourceFile,
    VectorHit,
    new_id,
    utcnow,
)
from .store import ChunkStore, FileStore, UPDATABLE_FILE_FIELDS

logger = logging.getLogger(__name__)

FILE_COLUMNS = sql.SQL(
    "id, room_id, file_name, file_size, mime_type, processing_status, chunk_count, "
    "processed_chunks, error_message, file_data, locked_by, lease_expires_at, created_at, updated_at"
)


def _row_to_file(row: Dict[str, Any]) -> SourceFile:
    data = dict(row)
    if data.get("file_data") is not None:
        data["file_data"] = bytes(data["file_data"])
    return SourceFile(**data)


def _adapt(value: Any) -> Any:
    if isinstance(value, ProcessingStatus):
        return value.value
    return value


_PLAIN_TSQUERY = sql.SQL("plainto_tsquery('simple', %s)")
_PHRASE_TSQUERY = sql.SQL("phraseto_tsquery('simple', %s)")


def tsquery_sql(query: LexicalQuery) -> Optional[Tuple[sql.Composable, List[str]]]:
    """
    Compose a tsquery for the parsed query, leaving tokenization to Postgres.

    Each term goes through ``plainto_tsquery('simple', ...)`` so values such
    as ``3.14`` or ``e-mail`` become the same lexemes the stored tsvector holds.
    Terms and phrases are OR-ed; exclusions are AND-ed as a negation.

    Returns:
        (expression, params) with one ``%s`` per param, or None for an empty query
    """
    if query.is_empty:
        return None
    parts = [_PLAIN_TSQUERY] * len(query.terms) + [_PHRASE_TSQUERY] * len(query.phrases)
    params = list(query.terms) + [" ".join(phrase) for phrase in query.phrases]
    expression = sql.SQL("({})").format(sql.SQL(" || ").join(parts))
    if query.excluded:
        exclusions = sql.SQL(" || ").join([_PLAIN_TSQUERY] * len(query.excluded))
        expression = sql.SQL("({} && !!({}))").format(expression, exclusions)
        params.extend(query.excluded)
    return expression, params


class PostgresStore(FileStore, ChunkStore):
    """File and chunk persistence against the schema in ``migrations/``."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        """Cursor inside one transaction; commits on success, rolls back on error."""
        try:
            with psycopg.connect(self.db_url, row_factory=dict_row) as conn:
                register_vector(conn)
                with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as e:
            raise PersistenceFailure(f"Database error: {e}") from e

    # -- files ---------------------------------------------------------------

    def create_file(self, record: SourceFile) -> SourceFile:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("""
                    INSERT INTO source_file (
                        id, room_id, file_name, file_size, mime_type, processing_status,
                        chunk_count, processed_chunks, error_message, file_data
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {}
                """).format(FILE_COLUMNS),
                (
                    record.id,
                    record.room_id,
                    record.file_name,
                    record.file_size,
                    record.mime_type,
                    _adapt(record.processing_status),
                    record.chunk_count,
                    record.processed_chunks,
                    record.error_message,
                    record.file_data,
                ),
            )
            row = cur.fetchone()
        logger.info(f"Created file record {record.id} ({record.file_name}) in room {record.room_id}")
        return _row_to_file(row)

    def get_file(self, room_id: str, file_id: str) -> SourceFile:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM source_file WHERE id = %s AND room_id = %s").format(FILE_COLUMNS),
                (file_id, room_id),
            )
            row = cur.fetchone()
        if row is None:
            raise FileNotFound(room_id, file_id)
        return _row_to_file(row)

    def list_files(self, room_id: str) -> List[SourceFile]:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM source_file WHERE room_id = %s ORDER BY created_at DESC").format(
                    FILE_COLUMNS
                ),
                (room_id,),
            )
            rows = cur.fetchall()
        return [_row_to_file(row) for row in rows]

    def update_file(
        self,
        room_id: str,
        file_id: str,
        changes: Dict[str, Any],
        worker_id: Optional[str] = None,
    ) -> SourceFile:
        unknown = set(changes) - UPDATABLE_FILE_FIELDS
        if unknown:
            raise PersistenceFailure(f"Cannot update fields: {sorted(unknown)}")

        keys = sorted(changes)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in keys
        )
        params: List[Any] = [_adapt(changes[key]) for key in keys]
        condition = sql.SQL("id = %s AND room_id = %s")
        params.extend([file_id, room_id])
        if worker_id is not None:
            condition = sql.SQL("{} AND locked_by = %s AND lease_expires_at > now()").format(condition)
            params.append(worker_id)

        query = sql.SQL("UPDATE source_file SET {}, updated_at = now() WHERE {} RETURNING {}").format(
            assignments if keys else sql.SQL("id = id"), condition, FILE_COLUMNS
        )
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()

        if row is None:
            # Distinguish a missing file from a lost lease
            self.get_file(room_id, file_id)
            raise LeaseLost(f"Worker {worker_id} no longer holds the lease on {file_id}")
        return _row_to_file(row)

    def claim(self, room_id: str, file_id: str, worker_id: str, lease_seconds: int) -> Optional[SourceFile]:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("""
                    UPDATE source_file
                    SET locked_by = %(worker)s,
                        lease_expires_at = now() + %(lease)s * interval '1 second',
                        updated_at = now()
                    WHERE id = %(id)s AND room_id = %(room)s
                      AND (locked_by IS NULL
                           OR locked_by = %(worker)s
                           OR lease_expires_at IS NULL
                           OR lease_expires_at <= now())
                    RETURNING {}
                """).format(FILE_COLUMNS),
                {"worker": worker_id, "lease": lease_seconds, "id": file_id, "room": room_id},
            )
            row = cur.fetchone()
        if row is None:
            self.get_file(room_id, file_id)
            return None
        return _row_to_file(row)

    def release(self, room_id: str, file_id: str, worker_id: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE source_file SET locked_by = NULL, lease_expires_at = NULL
                WHERE id = %s AND room_id = %s AND locked_by = %s
                """,
                (file_id, room_id, worker_id),
            )

    def delete_file(self, room_id: str, file_id: str) -> None:
        with self._cursor() as cur:
            # document rows go with ON DELETE CASCADE
            cur.execute("DELETE FROM source_file WHERE id = %s AND room_id = %s", (file_id, room_id))
            deleted = cur.rowcount
        if deleted == 0:
            raise FileNotFound(room_id, file_id)
        logger.info(f"Deleted file {file_id} from room {room_id}")

    # -- chunks --------------------------------------------------------------

    def insert_chunks(self, room_id: str, file_id: str, file_name: str, contents: List[str]) -> List[DocumentChunk]:
        now = utcnow()
        chunks = [
            DocumentChunk(
                id=new_id(),
                room_id=room_id,
                file_id=file_id,
                file_name=file_name,
                chunk_index=i,
                content=content,
                created_at=now,
            )
            for i, content in enumerate(contents)
        ]
        if not chunks:
            return []
        with self._cursor() as cur:
            cur.executemany(
                """
                INSERT INTO document (id, room_id, file_id, file_name, chunk_index, content, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (c.id, c.room_id, c.file_id, c.file_name, c.chunk_index, c.content, c.created_at)
                    for c in chunks
                ],
            )
        logger.info(f"Saved {len(chunks)} chunks for file {file_id}")
        return chunks

    def delete_file_chunks(self, room_id: str, file_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM document WHERE room_id = %s AND file_id = %s", (room_id, file_id))
            return cur.rowcount

    def pending_chunks(self, room_id: str, file_id: str, limit: int) -> List[DocumentChunk]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, room_id, file_id, file_name, chunk_index, content, created_at
                FROM document
                WHERE room_id = %s AND file_id = %s AND embedding IS NULL
                ORDER BY chunk_index
                LIMIT %s
                """,
                (room_id, file_id, limit),
            )
            rows = cur.fetchall()
        return [DocumentChunk(**row) for row in rows]

    def set_embeddings(self, room_id: str, embeddings: Dict[str, List[float]]) -> None:
        with self._cursor() as cur:
            for chunk_id, vector in embeddings.items():
                cur.execute(
                    "UPDATE document SET embedding = %s WHERE id = %s AND room_id = %s",
                    (np.asarray(vector, dtype=np.float32), chunk_id, room_id),
                )
                if cur.rowcount != 1:
                    # Raising inside the transaction rolls back the whole batch
                    raise PersistenceFailure(f"Chunk {chunk_id} not found in room {room_id}")
        logger.info(f"Stored {len(embeddings)} embeddings in database")

    def count_chunks(self, room_id: str, file_id: Optional[str] = None) -> Dict[str, int]:
        query = """
            SELECT COUNT(*) AS total, COUNT(embedding) AS embedded
            FROM document WHERE room_id = %s
        """
        params: List[Any] = [room_id]
        if file_id is not None:
            query += " AND file_id = %s"
            params.append(file_id)
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        total, embedded = int(row["total"]), int(row["embedded"])
        return {"total": total, "embedded": embedded, "pending": total - embedded}

    def vector_candidates(self, room_id: str, query_embedding: List[float]) -> List[VectorHit]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, content, file_name,
                       (1 - (embedding <=> %s))::double precision AS similarity
                FROM document
                WHERE room_id = %s AND embedding IS NOT NULL
                """,
                (np.asarray(query_embedding, dtype=np.float32), room_id),
            )
            rows = cur.fetchall()
        return [
            VectorHit(
                chunk_id=str(row["id"]),
                content=row["content"],
                file_name=row["file_name"],
                similarity=float(row["similarity"] or 0.0),
            )
            for row in rows
        ]

    def keyword_candidates(self, room_id: str, query_text: str) -> List[KeywordHit]:
        composed = tsquery_sql(parse_query(query_text))
        if composed is None:
            return []
        expression, params = composed
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("""
                    SELECT d.id, d.content, d.file_name,
                           ts_rank(d.content_tsv, q)::double precision AS rank
                    FROM document d, {} q
                    WHERE d.room_id = %s
                      AND d.embedding IS NOT NULL
                      AND d.content_tsv @@ q
                """).format(expression),
                [*params, room_id],
            )
            rows = cur.fetchall()
        return [
            KeywordHit(
                chunk_id=str(row["id"]),
                content=row["content"],
                file_name=row["file_name"],
                rank=float(row["rank"]),
            )
            for row in rows
            if row["rank"] and row["rank"] > 0
        ]

    def hybrid_search(
        self,
        room_id: str,
        query_embedding: List[float],
        query_text: str,
        threshold: float,
        top_k: int,
        vector_weight: float,
        keyword_weight: float,
    ) -> Optional[List[SearchResult]]:
        """Fuse and rank inside the database with ``hybrid_search_documents``."""
        composed = tsquery_sql(parse_query(query_text))
        if composed is None:
            expression, params = sql.SQL("NULL::tsquery"), []
        else:
            expression, params = composed

        with self._cursor() as cur:
            cur.execute(
                sql.SQL("""
                    SELECT id, content, file_name, similarity, keyword_rank, combined_score
                    FROM hybrid_search_documents(%s, {}, %s, %s, %s, %s, %s)
                """).format(expression),
                [
                    np.asarray(query_embedding, dtype=np.float32),
                    *params,
                    threshold,
                    top_k,
                    room_id,
                    vector_weight,
                    keyword_weight,
                ],
            )
            rows = cur.fetchall()
        return [
            SearchResult(
                chunk_id=str(row["id"]),
                content=row["content"],
                file_name=row["file_name"],
                similarity=float(row["similarity"] or 0.0),
                keyword_rank=float(row["keyword_rank"] or 0.0),
                combined_score=float(row["combined_score"] or 0.0),
            )
            for row in rows
        ]
