"""
Versioned SQLite migrations shared by the chunk, library, and profile stores.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _ensure_migrations_table(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )


def applied_versions(conn: sqlite3.Connection, component: str) -> set[int]:
    _ensure_migrations_table(conn)
    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchall()
    return {int(row[0]) for row in rows}


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
) -> list[int]:
    """
    Applies pending migrations for one store in version order.
    Returns the versions applied by this call.
    """
    versions = [int(m.version) for m in migrations]
    if len(versions) != len(set(versions)):
        raise ValueError(f"duplicate migration versions for component '{component}'")

    done = applied_versions(conn, component)
    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in done:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)

        conn.execute(
            """
            INSERT INTO schema_migrations (component, version, name, applied_at)
            VALUES (?, ?, ?, ?)
            """,
            (component, version, migration.name, _utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info(
            "db_migration_applied",
            component=component,
            version=version,
            name=migration.name,
        )
    return newly_applied
