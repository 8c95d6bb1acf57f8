"""Local SQLite store kept in step with an optional remote replica.

Reads and writes always hit the local database. Writes are queued and pushed
to the replica in the background after a short debounce; a daemon thread
periodically compares freshness markers and, when the replica is ahead,
upserts its rows locally. A pull never deletes local rows. One device is
assumed to be the active writer at a time, so there is no row-level conflict
resolution.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import db
from .config import DaystoreConfig, load_config
from .errors import RemoteError, RemoteStatementError, RemoteUnavailable
from .migrations import MigrationManager
from .remote import RemoteReplica, connect_remote
from .schemas import SCHEMAS, replicated_tables

logger = logging.getLogger(__name__)

REPLICATED_VERBS = {"INSERT", "UPDATE", "DELETE", "REPLACE"}
FRESHNESS_COLUMNS = ("updated_at", "created_at", "completed_at", "last_synced_at")
PULL_THREAD_JOIN_S = 5.0


@dataclass(frozen=True)
class PendingWrite:
    sql: str
    args: tuple[Any, ...] = ()


@dataclass
class PushResult:
    pushed: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pushed + self.skipped + self.failed


@dataclass
class SyncStatus:
    connected: bool
    mode: str
    message: str
    error: str | None = None
    url: str | None = None
    pending_pushes: int = 0
    failed_pushes: int = 0


def statement_verb(sql: str) -> str:
    stripped = sql.strip()
    if not stripped:
        return ""
    return stripped.split(None, 1)[0].upper()


def is_replicated_write(sql: str) -> bool:
    return statement_verb(sql) in REPLICATED_VERBS


class PushQueue:
    """Pending remote writes plus the debounce timer that flushes them."""

    def __init__(self, delay_s: float, on_due: Callable[[], Any]) -> None:
        self.delay_s = delay_s
        self._on_due = on_due
        self._pending: list[PendingWrite] = []
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, writes: Sequence[PendingWrite]) -> None:
        if not writes:
            return
        with self._lock:
            self._pending.extend(writes)
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.delay_s, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def drain(self) -> list[PendingWrite]:
        with self._lock:
            pending = self._pending
            self._pending = []
            return pending

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self._on_due()
        except Exception:
            logger.exception("background push failed")


class ReplicatedStore:
    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        remote: RemoteReplica | None = None,
        pull_interval_s: float = 60.0,
        push_delay_s: float = 2.0,
        remote_timeout_s: float = 3.0,
        auto_sync: bool = True,
        read_only: bool = False,
    ) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.read_only = read_only
        self.remote = None if read_only else remote
        self.remote_url: str | None = None
        self.pull_interval_s = pull_interval_s
        self.remote_timeout_s = remote_timeout_s
        self.auto_sync = auto_sync
        self.conn = db.connect(self.db_path, check_same_thread=False)
        self.last_pull_at: dt.datetime | None = None
        self.last_push_at: dt.datetime | None = None
        self.last_remote_error: str | None = None
        self._lock = threading.RLock()
        # Held from drain until the last statement is sent, so batches reach the replica in order.
        self._push_lock = threading.Lock()
        self._queue = PushQueue(push_delay_s, self.process_push_queue)
        self._tx_depth = 0
        self._tx_buffer: list[PendingWrite] = []
        self._remote_ok = False
        self._closed = False
        self._registry_key: Path | None = None
        self._stop = threading.Event()
        self._pull_thread: threading.Thread | None = None
        if self.remote is not None and auto_sync:
            self._pull_thread = threading.Thread(
                target=self._pull_loop, name="daystore-pull", daemon=True
            )
            self._pull_thread.start()

    def __enter__(self) -> ReplicatedStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def mode(self) -> str:
        return "local-only" if self.remote is None else "replica-configured"

    @property
    def closed(self) -> bool:
        return self._closed

    def pending_pushes(self) -> int:
        return len(self._queue)

    # local access

    def run(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        args = tuple(params)
        with self._lock:
            cursor = self.conn.execute(sql, args)
            if self.remote is not None and is_replicated_write(sql):
                write = PendingWrite(sql, args)
                if self._tx_depth:
                    self._tx_buffer.append(write)
                else:
                    self._queue.enqueue([write])
            return cursor

    def get(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row is not None else None

    def all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(sql, tuple(params)).fetchall()
        return db.rows_to_dicts(rows)

    def execute_script(self, sql: str) -> None:
        """Run local DDL. Never replicated and not allowed inside a transaction."""

        with self._lock:
            if self._tx_depth:
                raise RuntimeError("execute_script cannot run inside a transaction")
            self.conn.executescript(sql)

    @contextmanager
    def transaction(self) -> Iterator[ReplicatedStore]:
        """Group writes; queued remote writes are released only on commit.

        Nested use becomes a savepoint, so an inner failure rolls back only the
        inner block and the writes it buffered.
        """

        with self._lock:
            depth = self._tx_depth
            mark = len(self._tx_buffer)
            savepoint = f"daystore_sp_{depth}"
            self.conn.execute("BEGIN" if depth == 0 else f"SAVEPOINT {savepoint}")
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if depth == 0:
                    self.conn.execute("ROLLBACK")
                    self._tx_buffer = []
                else:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                    del self._tx_buffer[mark:]
                raise
            self._tx_depth -= 1
            if depth == 0:
                self.conn.execute("COMMIT")
                buffered, self._tx_buffer = self._tx_buffer, []
                self._queue.enqueue(buffered)
            else:
                self.conn.execute(f"RELEASE {savepoint}")

    def migrate(self) -> list[int]:
        with self._lock:
            return MigrationManager(self.conn).run_migrations()

    # freshness

    def _freshness_sql(self, table: str) -> str | None:
        if table == "sync_metadata":
            columns = ["last_synced_at"]
        else:
            schema = next((s for s in SCHEMAS.values() if s.table == table), None)
            if schema is None:
                return None
            names = schema.columns()
            columns = [c for c in FRESHNESS_COLUMNS if c in names]
        if not columns:
            return None
        return " UNION ALL ".join(f"SELECT MAX({c}) AS max_time FROM {table}" for c in columns)

    @staticmethod
    def _latest(values: Sequence[Any], current: dt.datetime | None) -> dt.datetime | None:
        for value in values:
            parsed = db.parse_timestamp(value)
            if parsed is not None and (current is None or parsed > current):
                current = parsed
        return current

    def local_last_modified(self) -> dt.datetime | None:
        latest: dt.datetime | None = None
        for table in replicated_tables():
            sql = self._freshness_sql(table)
            if sql is None:
                continue
            try:
                with self._lock:
                    rows = self.conn.execute(sql).fetchall()
            except sqlite3.Error:
                continue
            latest = self._latest([row[0] for row in rows], latest)
        return latest

    def remote_last_modified(self) -> dt.datetime | None:
        """Newest freshness marker on the replica.

        Raises ``RemoteUnavailable`` when the replica cannot be reached in time;
        tables the replica rejects (for example because they do not exist yet)
        are skipped.
        """

        if self.remote is None:
            return None
        latest: dt.datetime | None = None
        for table in replicated_tables():
            sql = self._freshness_sql(table)
            if sql is None:
                continue
            try:
                result = self.remote.execute(sql, timeout_s=self.remote_timeout_s)
            except RemoteStatementError as exc:
                logger.debug("freshness check skipped %s: %s", table, exc)
                continue
            except RemoteError as exc:
                self._mark_remote(exc)
                raise
            self._mark_remote(None)
            latest = self._latest([row[0] for row in result.rows], latest)
        return latest

    def check_and_pull(self) -> bool | None:
        """Pull when the replica is ahead. ``None`` means the check could not run."""

        if self.remote is None or self._closed:
            return False
        try:
            remote_ts = self.remote_last_modified()
        except RemoteError as exc:
            logger.debug("replica freshness check failed: %s", exc)
            return None
        except Exception:
            logger.exception("replica freshness check failed")
            return None
        try:
            local_ts = self.local_last_modified()
            self.last_pull_at = dt.datetime.now(dt.UTC)
            if remote_ts is None:
                return False
            if local_ts is None or remote_ts > local_ts:
                logger.info("replica has newer data (%s > %s), pulling", remote_ts, local_ts)
                self.pull_from_remote()
                return True
            return False
        except Exception:
            logger.exception("pull from replica failed")
            return None

    def pull_from_remote(self) -> int:
        """Upsert every replicated table from the replica. Local-only rows are kept."""

        if self.remote is None:
            return 0
        if len(self._queue):
            # Local writes not yet on the replica would otherwise be lost.
            self.force_push()
        total = 0
        synced_tables = 0
        for table in replicated_tables():
            try:
                result = self.remote.execute(f"SELECT * FROM {table}")
            except RemoteUnavailable as exc:
                self._mark_remote(exc)
                logger.warning("pull aborted, replica unreachable: %s", exc)
                break
            except RemoteError as exc:
                logger.debug("pull skipped %s: %s", table, exc)
                continue
            self._mark_remote(None)
            try:
                self._upsert_local_table(table, result.columns, result.rows)
            except sqlite3.Error as exc:
                logger.warning("pull skipped %s: %s", table, exc)
                continue
            total += len(result.rows)
            synced_tables += 1
        if total:
            logger.info("pulled %d rows from %d tables", total, synced_tables)
        return total

    def _upsert_local_table(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> None:
        if not rows or not columns:
            return
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                self.conn.executemany(
                    f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    [tuple(row) for row in rows],
                )
            except sqlite3.Error:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    # push

    def process_push_queue(self) -> PushResult:
        with self._push_lock:
            return self._push_pending()

    def _push_pending(self) -> PushResult:
        result = PushResult()
        writes = self._queue.drain()
        if self.remote is None or not writes:
            return result
        for write in writes:
            try:
                self.remote.execute(write.sql, write.args)
            except RemoteStatementError as exc:
                if exc.is_constraint_violation:
                    result.skipped += 1
                    continue
                result.failed += 1
                logger.warning("push rejected by replica: %s", str(exc)[:200])
                self._record_failure(write, str(exc))
                continue
            except RemoteError as exc:
                self._mark_remote(exc)
                result.failed += 1
                logger.warning("push failed: %s", str(exc)[:200])
                self._record_failure(write, str(exc))
                continue
            self._mark_remote(None)
            result.pushed += 1
        self.last_push_at = dt.datetime.now(dt.UTC)
        if result.pushed:
            logger.info("pushed %d changes to replica", result.pushed)
        return result

    def _record_failure(self, write: PendingWrite, error: str) -> None:
        try:
            with self._lock:
                self.conn.execute(
                    "INSERT INTO replication_failures (sql, args_json, error) VALUES (?, ?, ?)",
                    (write.sql, json.dumps(list(write.args), default=str), error),
                )
        except sqlite3.Error as exc:
            logger.error("could not record failed push (%s): %s", exc, write.sql[:120])

    def failed_push_count(self) -> int:
        try:
            row = self.get("SELECT COUNT(*) AS n FROM replication_failures")
        except sqlite3.Error:
            return 0
        return int(row["n"]) if row else 0

    def retry_failed_pushes(self) -> PushResult:
        with self._push_lock:
            return self._retry_failures()

    def _retry_failures(self) -> PushResult:
        result = PushResult()
        if self.remote is None:
            return result
        for row in self.all("SELECT id, sql, args_json FROM replication_failures ORDER BY id"):
            args = db.from_json(row["args_json"]) or []
            try:
                self.remote.execute(row["sql"], args)
            except RemoteStatementError as exc:
                if not exc.is_constraint_violation:
                    result.failed += 1
                    self._update_failure(row["id"], str(exc))
                    continue
                result.skipped += 1
            except RemoteError as exc:
                self._mark_remote(exc)
                result.failed += 1
                self._update_failure(row["id"], str(exc))
                continue
            else:
                self._mark_remote(None)
                result.pushed += 1
            with self._lock:
                self.conn.execute("DELETE FROM replication_failures WHERE id = ?", (row["id"],))
        return result

    def _update_failure(self, failure_id: int, error: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE replication_failures SET error = ?, failed_at = CURRENT_TIMESTAMP WHERE id = ?",
                (error, failure_id),
            )

    def force_push(self) -> PushResult:
        self._queue.cancel()
        return self.process_push_queue()

    def force_pull(self) -> bool | None:
        return self.check_and_pull()

    # status

    def _mark_remote(self, error: BaseException | None) -> None:
        self._remote_ok = error is None
        self.last_remote_error = None if error is None else str(error)

    def is_connected_to_remote(self) -> bool:
        return self.remote is not None and self._remote_ok

    def sync_status(self) -> SyncStatus:
        pending = self.pending_pushes()
        failed = self.failed_push_count()
        if self.remote is None:
            return SyncStatus(
                connected=False,
                mode="local-only",
                message="Running in local-only mode",
                pending_pushes=pending,
                failed_pushes=failed,
            )
        try:
            self.remote.execute("SELECT 1", timeout_s=self.remote_timeout_s)
        except RemoteError as exc:
            self._mark_remote(exc)
            return SyncStatus(
                connected=False,
                mode="local-only",
                message="Remote replica unreachable, running locally",
                error=str(exc),
                url=self.remote_url,
                pending_pushes=pending,
                failed_pushes=failed,
            )
        self._mark_remote(None)
        return SyncStatus(
            connected=True,
            mode="replica-sync",
            message="Connected to remote replica with automatic sync",
            url=self.remote_url,
            pending_pushes=pending,
            failed_pushes=failed,
        )

    # lifecycle

    def _pull_loop(self) -> None:
        self.check_and_pull()
        while not self._stop.wait(self.pull_interval_s):
            self.check_and_pull()

    def close(self) -> None:
        if self._closed:
            return
        self._queue.cancel()
        try:
            self.force_push()
        except Exception:
            logger.exception("final push on close failed")
        self._closed = True
        self._stop.set()
        thread = self._pull_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=PULL_THREAD_JOIN_S)
        if self.remote is not None:
            self.remote.close()
        with self._lock:
            self.conn.close()
        _unregister(self)


_STORES: dict[Path, ReplicatedStore] = {}
_STORES_LOCK = threading.Lock()


def _unregister(store: ReplicatedStore) -> None:
    key = store._registry_key
    if key is None:
        return
    with _STORES_LOCK:
        if _STORES.get(key) is store:
            del _STORES[key]
    store._registry_key = None


def open_store(
    path: Path | str | None = None,
    *,
    config: DaystoreConfig | None = None,
    force_new: bool = False,
    read_only: bool = False,
) -> ReplicatedStore:
    """Return the process-wide store for ``path``, creating it on first use.

    ``force_new`` builds an independent store that is not shared.
    """

    cfg = config or load_config()
    db_path = Path(path).expanduser() if path is not None else cfg.resolved_db_path
    if not db_path.is_absolute():
        db_path = cfg.resolve(db_path)
    key = db_path.resolve()
    if not force_new:
        with _STORES_LOCK:
            existing = _STORES.get(key)
            if existing is not None and not existing.closed:
                return existing
    remote = None
    if not read_only:
        remote = connect_remote(
            cfg.turso_database_url, cfg.turso_auth_token, timeout_s=cfg.remote_timeout_s
        )
    store = ReplicatedStore(
        key,
        remote=remote,
        pull_interval_s=cfg.pull_interval_s,
        push_delay_s=cfg.push_delay_s,
        remote_timeout_s=cfg.remote_timeout_s,
        auto_sync=cfg.auto_sync,
        read_only=read_only,
    )
    store.remote_url = cfg.turso_database_url
    if force_new:
        return store
    with _STORES_LOCK:
        existing = _STORES.get(key)
        if existing is not None and not existing.closed:
            racing = store
            store = existing
        else:
            racing = None
            store._registry_key = key
            _STORES[key] = store
    if racing is not None:
        racing.close()
    return store
