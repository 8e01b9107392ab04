"""Applies the packaged ``*.sql`` migrations to the agent database."""

import logging
import os
import sqlite3
from pathlib import Path

from kirapilot.db.connection import get_conn

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent

_BOOKKEEPING = (
    "CREATE TABLE IF NOT EXISTS schema_migrations("
    "name TEXT PRIMARY KEY, applied_at TEXT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS schema_migration_lock("
    "id INTEGER PRIMARY KEY CHECK(id=1), holder TEXT, acquired_at TEXT)",
    "INSERT OR IGNORE INTO schema_migration_lock(id, holder, acquired_at) VALUES(1, NULL, NULL)",
)


def migration_files() -> list[Path]:
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def _applied(conn: sqlite3.Connection) -> set[str]:
    return {row[0] for row in conn.execute("SELECT name FROM schema_migrations").fetchall()}


def _acquire_lock(conn: sqlite3.Connection) -> None:
    holder = f"{os.uname().nodename}:{os.getpid()}"
    row = conn.execute("SELECT holder FROM schema_migration_lock WHERE id=1").fetchone()
    current = str(row[0]) if row is not None and row[0] else ""
    if current and current != holder:
        raise RuntimeError(f"migration lock held by {current}")
    conn.execute(
        "UPDATE schema_migration_lock SET holder=?, acquired_at=datetime('now') WHERE id=1",
        (holder,),
    )


def _split_statements(script: str) -> list[str]:
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    return [part.strip() for part in "\n".join(lines).split(";") if part.strip()]


def pending_migrations(path: str | None = None) -> list[str]:
    """Names of packaged migrations not yet recorded in ``path``."""
    with get_conn(path) as conn:
        for statement in _BOOKKEEPING:
            conn.execute(statement)
        done = _applied(conn)
    return [file.name for file in migration_files() if file.name not in done]


def run_migrations(path: str | None = None) -> list[str]:
    """Apply pending migrations in name order inside one transaction; returns their names."""
    applied_now: list[str] = []
    with get_conn(path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for statement in _BOOKKEEPING:
                conn.execute(statement)
            _acquire_lock(conn)
            done = _applied(conn)
            for file in migration_files():
                if file.name in done:
                    continue
                # One statement at a time keeps the surrounding transaction open.
                for statement in _split_statements(file.read_text(encoding="utf-8")):
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations(name, applied_at) VALUES(?, datetime('now'))",
                    (file.name,),
                )
                applied_now.append(file.name)
            conn.execute(
                "UPDATE schema_migration_lock SET holder=NULL, acquired_at=NULL WHERE id=1"
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
    if applied_now:
        logger.info("applied migrations: %s", ", ".join(applied_now))
    return applied_now


if __name__ == "__main__":
    run_migrations()
