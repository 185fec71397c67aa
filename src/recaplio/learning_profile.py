"""
Per-reader learning profile persisted in SQLite.

Feedback counts and topic affinity are only ever changed through single
``INSERT ... ON CONFLICT DO UPDATE SET x = x + ?`` statements, so concurrent
feedback for the same reader accumulates instead of overwriting.

The store also keeps a response log (message id -> book, question topics,
passage ordinals) so feedback on an answer can be credited to what was asked.
"""
from __future__ import annotations

import json
import math
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .config import PROFILE_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .errors import InvalidCategory
from .models import FeedbackCategory, LearningProfile
from .observability import get_logger

logger = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_category(category: FeedbackCategory | str) -> FeedbackCategory:
    try:
        return FeedbackCategory(category)
    except ValueError as exc:
        raise InvalidCategory(f"unrecognized feedback category: {category!r}") from exc


class LearningProfileStore:
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else PROFILE_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
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
                raise RuntimeError("learning profile store connection is closed")
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

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_profile_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS feedback_counts (
                        user_id TEXT NOT NULL,
                        category TEXT NOT NULL,
                        count REAL NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY(user_id, category)
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS topic_affinity (
                        user_id TEXT NOT NULL,
                        topic TEXT NOT NULL,
                        weight REAL NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY(user_id, topic)
                    )
                    """,
                ),
            ),
            SqliteMigration(
                version=2,
                name="create_response_and_event_log",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS response_log (
                        message_id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        book_id INTEGER NOT NULL,
                        topics_json TEXT NOT NULL DEFAULT '[]',
                        ordinals_json TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS feedback_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        message_id TEXT NOT NULL,
                        category TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_feedback_events_user ON feedback_events(user_id)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="learning_profile", migrations=migrations)

    def record_feedback(self, user_id: str, category: FeedbackCategory | str, value: float = 1.0):
        """Adds ``value`` to the reader's count for ``category``."""
        parsed = parse_category(category)
        amount = float(value)
        if not math.isfinite(amount) or amount <= 0:
            raise ValueError("feedback value must be a positive number")
        user_key = str(user_id)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO feedback_counts (user_id, category, count, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, category) DO UPDATE SET
                    count = count + excluded.count,
                    updated_at = excluded.updated_at
                """,
                (user_key, parsed.value, amount, _utcnow_iso()),
            )
        logger.info("feedback_count_incremented", user_id=user_key, category=parsed.value, value=amount)

    def adjust_topic_affinity(self, user_id: str, topics: Iterable[str], delta: float):
        rows = [(str(user_id), str(topic), float(delta), _utcnow_iso()) for topic in topics if str(topic).strip()]
        if not rows or not delta:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO topic_affinity (user_id, topic, weight, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, topic) DO UPDATE SET
                    weight = weight + excluded.weight,
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def get_profile(self, user_id: str) -> LearningProfile:
        user_key = str(user_id)
        with self._connection() as conn:
            count_rows = conn.execute(
                "SELECT category, count FROM feedback_counts WHERE user_id = ?",
                (user_key,),
            ).fetchall()
            topic_rows = conn.execute(
                "SELECT topic, weight FROM topic_affinity WHERE user_id = ?",
                (user_key,),
            ).fetchall()
        return LearningProfile(
            user_id=user_key,
            counts={row["category"]: float(row["count"]) for row in count_rows},
            topic_affinity={row["topic"]: float(row["weight"]) for row in topic_rows},
        )

    def log_response(
        self,
        message_id: str,
        *,
        user_id: str,
        book_id: int,
        topics: list[str],
        ordinals: list[int],
    ):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO response_log (message_id, user_id, book_id, topics_json, ordinals_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(message_id),
                    str(user_id),
                    int(book_id),
                    json.dumps(list(topics), ensure_ascii=True),
                    json.dumps([int(o) for o in ordinals]),
                    _utcnow_iso(),
                ),
            )

    def get_response(self, message_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT message_id, user_id, book_id, topics_json, ordinals_json, created_at
                FROM response_log
                WHERE message_id = ?
                """,
                (str(message_id),),
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["topics"] = json.loads(data.pop("topics_json") or "[]")
        data["ordinals"] = json.loads(data.pop("ordinals_json") or "[]")
        return data

    def record_feedback_event(self, user_id: str, message_id: str, category: FeedbackCategory | str):
        parsed = parse_category(category)
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO feedback_events (user_id, message_id, category, created_at) VALUES (?, ?, ?, ?)",
                (str(user_id), str(message_id), parsed.value, _utcnow_iso()),
            )

    def count_feedback_events(self, user_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM feedback_events WHERE user_id = ?",
                (str(user_id),),
            ).fetchone()
        return int(row["n"]) if row else 0

    def decay(self, factor: float) -> int:
        """Scales every count and affinity by ``factor``; returns rows touched."""
        factor = float(factor)
        if not 0.0 < factor <= 1.0:
            raise ValueError("decay factor must be in (0, 1]")
        with self._connection() as conn:
            counts = conn.execute(
                "UPDATE feedback_counts SET count = count * ?, updated_at = ?",
                (factor, _utcnow_iso()),
            ).rowcount
            topics = conn.execute(
                "UPDATE topic_affinity SET weight = weight * ?, updated_at = ?",
                (factor, _utcnow_iso()),
            ).rowcount
        logger.info("learning_profile_decayed", factor=factor, count_rows=counts, topic_rows=topics)
        return int(counts) + int(topics)
