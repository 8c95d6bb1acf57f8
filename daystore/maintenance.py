"""Startup health checks and housekeeping for the local database.

The local database is a cache of plugin data and the replica, so an unhealthy
file is backed up and rebuilt rather than repaired.
"""

from __future__ import annotations

import datetime as dt
import logging
import shutil
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from . import db
from .migrations import MigrationManager

logger = logging.getLogger(__name__)

MAX_BACKUPS = 5
MAX_DATA_SIZE_MB = 500.0
SYNC_METADATA_RETENTION_DAYS = 90
LEGACY_TABLES = ("todoist_sync_mapping", "markdown_sync")
CORRUPTION_MARKERS = (
    "disk I/O error",
    "database disk image is malformed",
    "file is not a database",
)


@dataclass
class HealthReport:
    healthy: bool
    reason: str | None = None
    version: int = 0
    corrupted: bool = False


@dataclass
class EnsureResult:
    success: bool
    recreated: bool
    message: str
    applied: list[int] = field(default_factory=list)


@dataclass
class CleanupReport:
    backups_deleted: int = 0
    backups_freed_mb: float = 0.0
    vacuum_freed_mb: float = 0.0
    sync_metadata_pruned: int = 0


def _sidecar_files(db_path: Path) -> list[Path]:
    return [db_path.with_name(db_path.name + suffix) for suffix in ("-wal", "-shm")]


def _clean_orphaned_sidecars(db_path: Path) -> bool:
    cleaned = False
    for path in _sidecar_files(db_path):
        if path.exists():
            try:
                path.unlink()
                cleaned = True
            except OSError as exc:
                logger.debug("could not remove %s: %s", path, exc)
    return cleaned


def check_database_health(db_path: Path) -> HealthReport:
    db_path = Path(db_path)
    if not db_path.exists():
        if _clean_orphaned_sidecars(db_path):
            return HealthReport(False, "Database file does not exist (cleaned orphaned WAL/SHM files)")
        return HealthReport(False, "Database file does not exist")

    conn: sqlite3.Connection | None = None
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            return HealthReport(False, f"Database query failed: {exc}", corrupted=True)
        try:
            integrity = conn.execute("PRAGMA integrity_check").fetchone()
        except sqlite3.Error as exc:
            return HealthReport(False, f"Integrity check error: {exc}", corrupted=True)
        if not integrity or integrity[0] != "ok":
            detail = integrity[0] if integrity else "no result"
            return HealthReport(False, f"Integrity check failed: {detail}", corrupted=True)
        if not db.table_exists(conn, "schema_version"):
            return HealthReport(False, "Missing schema_version table")
        placeholders = ", ".join("?" for _ in LEGACY_TABLES)
        legacy = conn.execute(
            f"SELECT name FROM sqlite_master WHERE type = 'table' AND name IN ({placeholders})",
            LEGACY_TABLES,
        ).fetchall()
        if legacy:
            found = ", ".join(row[0] for row in legacy)
            return HealthReport(False, f"Legacy tables found: {found}")
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return HealthReport(True, version=int(row[0] or 0) if row else 0)
    except sqlite3.Error as exc:
        message = str(exc)
        return HealthReport(
            False,
            f"Database error: {message}",
            corrupted=any(marker in message for marker in CORRUPTION_MARKERS),
        )
    finally:
        if conn is not None:
            conn.close()


def backup_database(db_path: Path) -> Path | None:
    """Copy the database to ``<name>.backup-<timestamp>`` and ``<name>.backup``."""

    db_path = Path(db_path)
    if not db_path.exists():
        return None
    stamp = dt.datetime.now(dt.UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
    target = db_path.with_name(f"{db_path.name}.backup-{stamp}")
    try:
        shutil.copy2(db_path, target)
        shutil.copy2(db_path, db_path.with_name(f"{db_path.name}.backup"))
    except OSError as exc:
        logger.error("failed to back up database: %s", exc)
        return None
    return target


def _backup_files(db_path: Path) -> list[Path]:
    prefix = f"{db_path.name}.backup-"
    if not db_path.parent.is_dir():
        return []
    # Timestamps sort lexically, oldest first.
    return sorted(p for p in db_path.parent.iterdir() if p.is_file() and p.name.startswith(prefix))


def _size_mb(path: Path) -> float:
    try:
        return path.stat().st_size / 1024 / 1024
    except OSError:
        return 0.0


def clean_old_backups(
    db_path: Path, keep: int = MAX_BACKUPS, *, max_data_size_mb: float = MAX_DATA_SIZE_MB
) -> tuple[int, float]:
    """Delete timestamped backups beyond ``keep``, then more while the data dir is too big.

    Returns ``(deleted, freed_mb)``.
    """

    db_path = Path(db_path)
    backups = _backup_files(db_path)
    data_files = [p for p in db_path.parent.iterdir() if p.is_file()] if db_path.parent.is_dir() else []
    current_mb = sum(_size_mb(p) for p in data_files)
    deleted = 0
    freed = 0.0

    def _remove(path: Path) -> None:
        nonlocal deleted, freed, current_mb
        size = _size_mb(path)
        try:
            path.unlink()
        except OSError as exc:
            logger.debug("could not remove backup %s: %s", path, exc)
            return
        deleted += 1
        freed += size
        current_mb -= size

    if len(backups) > keep:
        for path in backups[: len(backups) - keep]:
            _remove(path)
    if current_mb > max_data_size_mb:
        for path in _backup_files(db_path):
            if current_mb <= max_data_size_mb:
                break
            _remove(path)
    return deleted, round(freed, 1)


def vacuum_database(db_path: Path) -> float | None:
    """VACUUM the database. Returns megabytes freed, or None on failure."""

    db_path = Path(db_path)
    if not db_path.exists():
        return None
    before = _size_mb(db_path)
    try:
        conn = sqlite3.connect(db_path, isolation_level=None)
        try:
            conn.execute("VACUUM")
        finally:
            conn.close()
    except sqlite3.Error as exc:
        logger.warning("vacuum failed: %s", exc)
        return None
    return max(0.0, round(before - _size_mb(db_path), 1))


def prune_sync_metadata(db_path: Path, retention_days: int = SYNC_METADATA_RETENTION_DAYS) -> int:
    db_path = Path(db_path)
    if not db_path.exists():
        return 0
    try:
        conn = db.connect(db_path)
        try:
            if not db.table_exists(conn, "sync_metadata"):
                return 0
            cursor = conn.execute(
                "DELETE FROM sync_metadata WHERE last_synced_at < datetime('now', ?)",
                (f"-{int(retention_days)} days",),
            )
            return max(cursor.rowcount, 0)
        finally:
            conn.close()
    except sqlite3.Error as exc:
        logger.warning("pruning sync metadata failed: %s", exc)
        return 0


def run_cleanup(db_path: Path) -> CleanupReport:
    report = CleanupReport()
    report.backups_deleted, report.backups_freed_mb = clean_old_backups(db_path)
    if report.backups_deleted:
        logger.info(
            "cleaned %d old backups, freed %.1f MB", report.backups_deleted, report.backups_freed_mb
        )
    report.vacuum_freed_mb = vacuum_database(db_path) or 0.0
    report.sync_metadata_pruned = prune_sync_metadata(db_path)
    if report.sync_metadata_pruned:
        logger.info("pruned %d old sync metadata rows", report.sync_metadata_pruned)
    return report


def _remove_database_files(db_path: Path) -> None:
    for path in [db_path, *_sidecar_files(db_path)]:
        if path.exists():
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("could not remove %s: %s", path, exc)


def _migrate(db_path: Path) -> list[int]:
    conn = db.connect(db_path)
    try:
        return MigrationManager(conn).run_migrations()
    finally:
        conn.close()


def ensure_healthy_database(db_path: Path, *, force_recreate: bool = False) -> EnsureResult:
    db_path = Path(db_path)
    health = check_database_health(db_path)
    if health.healthy and not force_recreate:
        try:
            applied = _migrate(db_path)
        except Exception as exc:
            logger.error("migration failed: %s", exc)
            return EnsureResult(False, False, f"Migration failed: {exc}")
        if applied:
            logger.info("database migrated from version %s to %s", health.version, applied[-1])
        return EnsureResult(True, False, "Database is healthy", applied=applied)

    reason = "Force recreate requested" if force_recreate else health.reason
    logger.warning("database needs recreation: %s", reason)
    if db_path.exists() and not health.corrupted:
        if backup_database(db_path) is None:
            logger.warning("could not create backup")
    elif health.corrupted:
        logger.warning("skipping backup of corrupted database")

    _remove_database_files(db_path)
    try:
        applied = _migrate(db_path)
    except Exception as exc:
        logger.error("failed to create database: %s", exc)
        return EnsureResult(False, False, f"Database creation failed: {exc}")
    run_cleanup(db_path)
    return EnsureResult(True, True, "Database recreated", applied=applied)
