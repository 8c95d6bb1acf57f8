from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass

from .errors import MigrationError
from .schemas import EntrySchema, SCHEMAS

logger = logging.getLogger(__name__)

SYSTEM_MIGRATION_BASE = 1000

MigrationFn = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    fn: MigrationFn


def _entry_table_migration(schema: EntrySchema) -> MigrationFn:
    def apply(conn: sqlite3.Connection) -> None:
        conn.execute(schema.create_table_sql())
        for statement in schema.create_index_sql():
            conn.execute(statement)

    return apply


def _create_sync_metadata(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_metadata (
            source TEXT PRIMARY KEY,
            last_synced_at DATETIME,
            last_sync_files TEXT,
            entries_count INTEGER DEFAULT 0
        )
        """
    )


def _create_replication_failures(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS replication_failures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sql TEXT NOT NULL,
            args_json TEXT NOT NULL DEFAULT '[]',
            error TEXT,
            failed_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_replication_failures_failed_at "
        "ON replication_failures(failed_at)"
    )


def build_migrations() -> list[Migration]:
    """Entry tables numbered from 1 in registry order, then system tables from 1000."""

    migrations: list[Migration] = []
    version = 1
    for schema in SCHEMAS.values():
        if not schema.persisted:
            continue
        migrations.append(
            Migration(
                version=version,
                description=f"Create {schema.table} table for {schema.kind} plugins",
                fn=_entry_table_migration(schema),
            )
        )
        version += 1
    migrations.append(
        Migration(SYSTEM_MIGRATION_BASE, "Create sync_metadata table", _create_sync_metadata)
    )
    migrations.append(
        Migration(
            SYSTEM_MIGRATION_BASE + 1,
            "Create replication_failures table",
            _create_replication_failures,
        )
    )
    return migrations


class MigrationManager:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._ensure_version_table()

    def _ensure_version_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                description TEXT
            )
            """
        )
        if self.conn.in_transaction:
            self.conn.commit()

    def get_current_version(self) -> int:
        row = self.conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        if row is None or row[0] is None:
            return 0
        return int(row[0])

    def apply_migration(self, version: int, description: str, fn: MigrationFn) -> bool:
        if version <= self.get_current_version():
            return False
        logger.info("applying migration %s: %s", version, description)
        self.conn.execute("BEGIN")
        try:
            fn(self.conn)
            self.conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (version, description),
            )
        except Exception:
            self.conn.execute("ROLLBACK")
            logger.exception("migration %s failed", version)
            raise
        self.conn.execute("COMMIT")
        return True

    def run_migrations(self, migrations: list[Migration] | None = None) -> list[int]:
        """Apply every pending migration in order. Returns the versions applied."""

        applied: list[int] = []
        for migration in migrations if migrations is not None else build_migrations():
            try:
                if self.apply_migration(migration.version, migration.description, migration.fn):
                    applied.append(migration.version)
            except Exception as exc:
                raise MigrationError(migration.version, migration.description, exc) from exc
        if applied:
            logger.info("applied %d migrations, now at version %s", len(applied), applied[-1])
        return applied
