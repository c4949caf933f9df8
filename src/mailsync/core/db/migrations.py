from __future__ import annotations

import sqlite3
from pathlib import Path

MIGRATIONS_DIR = Path(__file__).parent / "schema"


def connect_db(db_path: Path, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Shared between worker threads; MailRepository serializes access.
    connection = sqlite3.connect(str(db_path), check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    connection.execute("PRAGMA journal_mode = WAL")
    connection.execute("PRAGMA foreign_keys = ON")
    return connection


def _applied(connection: sqlite3.Connection) -> set[str]:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            filename TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    connection.commit()
    return {row["filename"] for row in connection.execute("SELECT filename FROM schema_migrations")}


def pending_migrations(connection: sqlite3.Connection, migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    done = _applied(connection)
    return [path for path in sorted(migrations_dir.glob("*.sql")) if path.name not in done]


def apply_migrations(connection: sqlite3.Connection, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    executed: list[str] = []
    for migration_file in pending_migrations(connection, migrations_dir):
        with connection:
            connection.executescript(migration_file.read_text(encoding="utf-8"))
            connection.execute("INSERT INTO schema_migrations (filename) VALUES (?)", (migration_file.name,))
        executed.append(migration_file.name)
    return executed
