# /recaplio/chunk_store.py
"""
Read side of the precomputed book chunk collection.

Chunks are written once by the ingestion job (outside this package) through
``register_chunks`` and only read by the query path. Per-book chunk lists and
their normalized embedding matrices are kept in a small LRU so repeated
questions about the same book skip SQLite entirely.
"""
import sqlite3
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

import numpy as np

from .config import CHUNK_DB_PATH, EMBEDDING_DIMENSIONS
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .models import Chunk
from .observability import get_logger

logger = get_logger(__name__)


class BookIndex:
    """Chunks of one book plus their row-normalized embedding matrix."""

    def __init__(self, book_id: int, chunks: list[Chunk], dimensions: int):
        self.book_id = int(book_id)
        self.chunks = chunks
        self.ordinals = np.array([c.ordinal for c in chunks], dtype=np.int64)
        if chunks:
            matrix = np.array([c.embedding for c in chunks], dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0.0] = 1.0
            self.matrix = matrix / norms
        else:
            self.matrix = np.zeros((0, dimensions), dtype=np.float32)

    def __len__(self) -> int:
        return len(self.chunks)


class ChunkStore:
    """SQLite-backed chunk collection keyed by (book_id, chunk_index)."""

    def __init__(self, db_path: Path | None = None, dimensions: int = EMBEDDING_DIMENSIONS, cache_books: int = 16):
        self.db_path = Path(db_path) if db_path else CHUNK_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.dimensions = int(dimensions)
        self._lock = threading.RLock()
        self._cache_maxsize = max(1, int(cache_books))
        self._cache: OrderedDict[int, BookIndex] = OrderedDict()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("chunk store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None
            self._cache.clear()

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_book_chunks_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS book_chunks (
                        book_id INTEGER NOT NULL,
                        chunk_index INTEGER NOT NULL,
                        chapter TEXT,
                        content TEXT NOT NULL,
                        embedding BLOB NOT NULL,
                        dimensions INTEGER NOT NULL,
                        PRIMARY KEY(book_id, chunk_index)
                    )
                    """,
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="chunk_store", migrations=migrations)

    def _encode_embedding(self, embedding: Iterable[float]) -> bytes:
        vector = np.asarray(list(embedding), dtype=np.float32)
        if vector.ndim != 1 or vector.shape[0] != self.dimensions:
            raise ValueError(
                f"embedding has dimension {vector.shape[-1] if vector.ndim else 0}, expected {self.dimensions}"
            )
        return vector.tobytes()

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        vector = np.frombuffer(row["embedding"], dtype=np.float32)
        return Chunk(
            book_id=int(row["book_id"]),
            ordinal=int(row["chunk_index"]),
            chapter=row["chapter"],
            text=str(row["content"]),
            embedding=tuple(float(v) for v in vector),
        )

    def register_chunks(self, book_id: int, records: Iterable[dict[str, Any]]) -> int:
        """
        Replaces the stored chunks of a book.

        Each record needs ``ordinal``, ``text`` and ``embedding``; ``chapter`` is
        optional. Ordinals must be unique and contiguous from 0.
        """
        book_id = int(book_id)
        rows = []
        for record in records:
            rows.append(
                (
                    book_id,
                    int(record["ordinal"]),
                    record.get("chapter"),
                    str(record["text"]),
                    self._encode_embedding(record["embedding"]),
                    self.dimensions,
                )
            )
        ordinals = sorted(row[1] for row in rows)
        if ordinals != list(range(len(ordinals))):
            raise ValueError(f"chunk ordinals for book {book_id} must be contiguous from 0")

        with self._connection() as conn:
            conn.execute("DELETE FROM book_chunks WHERE book_id = ?", (book_id,))
            conn.executemany(
                """
                INSERT INTO book_chunks (book_id, chunk_index, chapter, content, embedding, dimensions)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._cache.pop(book_id, None)
        logger.info("book_chunks_registered", book_id=book_id, chunks=len(rows))
        return len(rows)

    def get_book_index(self, book_id: int) -> BookIndex:
        book_id = int(book_id)
        with self._lock:
            cached = self._cache.get(book_id)
            if cached is not None:
                self._cache.move_to_end(book_id)
                return cached

        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT book_id, chunk_index, chapter, content, embedding
                FROM book_chunks
                WHERE book_id = ?
                ORDER BY chunk_index ASC
                """,
                (book_id,),
            ).fetchall()
        index = BookIndex(book_id, [self._row_to_chunk(row) for row in rows], self.dimensions)

        with self._lock:
            self._cache[book_id] = index
            while len(self._cache) > self._cache_maxsize:
                self._cache.popitem(last=False)
        return index

    def get_book_chunks(self, book_id: int) -> list[Chunk]:
        return list(self.get_book_index(book_id).chunks)

    def get_chunk(self, book_id: int, ordinal: int) -> Chunk | None:
        index = self.get_book_index(book_id)
        ordinal = int(ordinal)
        if 0 <= ordinal < len(index.chunks):
            return index.chunks[ordinal]
        return None

    def count_chunks(self, book_id: int) -> int:
        return len(self.get_book_index(book_id))
