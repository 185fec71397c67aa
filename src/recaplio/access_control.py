"""
Book access gate consulted before any retrieval.
Default implementation reads the user library table; the protocol lets a hosted
backend plug in later.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .config import LIBRARY_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations


class AccessPolicy(Protocol):
    def can_read(self, user_id: str, book_id: int) -> bool:
        ...


class UserLibraryAccess:
    """Grants access to books that appear in the reader's library."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else LIBRARY_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0
        )
        with self._connection() as conn:
            apply_sqlite_migrations(
                conn,
                component="user_library",
                migrations=[
                    SqliteMigration(
                        version=1,
                        name="create_user_books_table",
                        statements=(
                            """
                            CREATE TABLE IF NOT EXISTS user_books (
                                user_id TEXT NOT NULL,
                                book_id INTEGER NOT NULL,
                                added_at TEXT NOT NULL,
                                PRIMARY KEY(user_id, book_id)
                            )
                            """,
                        ),
                    )
                ],
            )

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("user library connection is closed")
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
            self._conn.close()
            self._conn = None

    def grant(self, user_id: str, book_id: int):
        with self._connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_books (user_id, book_id, added_at) VALUES (?, ?, ?)",
                (str(user_id), int(book_id), datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )

    def revoke(self, user_id: str, book_id: int):
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM user_books WHERE user_id = ? AND book_id = ?",
                (str(user_id), int(book_id)),
            )

    def can_read(self, user_id: str, book_id: int) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_books WHERE user_id = ? AND book_id = ?",
                (str(user_id), int(book_id)),
            ).fetchone()
        return row is not None
