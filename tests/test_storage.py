from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from daystore import db
from daystore.config import DaystoreConfig
from daystore.errors import RemoteUnavailable
from daystore.migrations import MigrationManager
from daystore.remote import RemoteResult, SqliteFileReplica
from daystore.storage import ReplicatedStore, is_replicated_write, open_store

TASK_INSERT = "INSERT INTO tasks (id, source, title, status) VALUES (?, ?, ?, ?)"


def _make_remote(path: Path) -> SqliteFileReplica:
    conn = db.connect(path)
    MigrationManager(conn).run_migrations()
    conn.close()
    return SqliteFileReplica(path)


def _remote_count(replica: SqliteFileReplica, table: str = "tasks") -> int:
    return int(replica.execute(f"SELECT COUNT(*) FROM {table}").scalar())


def _wait_for(predicate: Callable[[], bool], timeout_s: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class DownReplica:
    def __init__(self) -> None:
        self.calls = 0

    def execute(
        self, sql: str, args: Sequence[Any] = (), *, timeout_s: float | None = None
    ) -> RemoteResult:
        self.calls += 1
        raise RemoteUnavailable("connection refused")

    def close(self) -> None:
        return None


@pytest.fixture
def replica(tmp_path: Path) -> Iterator[SqliteFileReplica]:
    remote = _make_remote(tmp_path / "remote.db")
    yield remote
    remote.close()


@pytest.fixture
def synced(tmp_path: Path, replica: SqliteFileReplica) -> Iterator[ReplicatedStore]:
    local = ReplicatedStore(
        tmp_path / "local.db", remote=replica, auto_sync=False, push_delay_s=60.0
    )
    local.migrate()
    yield local
    local.close()


def test_replicated_verbs() -> None:
    assert is_replicated_write("  insert into tasks values (1)")
    assert is_replicated_write("REPLACE INTO tasks VALUES (1)")
    assert is_replicated_write("DELETE FROM tasks")
    assert not is_replicated_write("SELECT * FROM tasks")
    assert not is_replicated_write("BEGIN")
    assert not is_replicated_write("CREATE TABLE x (id)")


def test_local_only_mode(store: ReplicatedStore) -> None:
    store.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
    assert store.pending_pushes() == 0
    assert store.get("SELECT title FROM tasks WHERE id = ?", ("t/a:1",)) == {"title": "one"}
    assert store.mode == "local-only"
    assert not store.is_connected_to_remote()
    status = store.sync_status()
    assert status.mode == "local-only"
    assert not status.connected
    assert store.check_and_pull() is False


def test_read_only_ignores_remote(tmp_path: Path, replica: SqliteFileReplica) -> None:
    local = ReplicatedStore(tmp_path / "ro.db", remote=replica, read_only=True)
    assert local.remote is None
    local.close()


def test_writes_are_queued_and_pushed(synced: ReplicatedStore, replica: SqliteFileReplica) -> None:
    synced.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
    synced.run("UPDATE tasks SET status = ? WHERE id = ?", ("done", "t/a:1"))
    synced.all("SELECT * FROM tasks")
    assert synced.pending_pushes() == 2
    assert _remote_count(replica) == 0

    result = synced.force_push()
    assert (result.pushed, result.skipped, result.failed) == (2, 0, 0)
    assert synced.pending_pushes() == 0
    assert replica.execute("SELECT status FROM tasks").scalar() == "done"
    assert synced.is_connected_to_remote()


def test_debounced_push_runs_in_background(tmp_path: Path, replica: SqliteFileReplica) -> None:
    local = ReplicatedStore(tmp_path / "local.db", remote=replica, auto_sync=False, push_delay_s=0.05)
    local.migrate()
    try:
        local.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
        assert _wait_for(lambda: _remote_count(replica) == 1)
    finally:
        local.close()


def test_transaction_releases_writes_on_commit(synced: ReplicatedStore) -> None:
    with synced.transaction():
        synced.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
        synced.run(TASK_INSERT, ("t/a:2", "t/a", "two", "open"))
        assert synced.pending_pushes() == 0
    assert synced.pending_pushes() == 2


def test_transaction_rollback_drops_writes(synced: ReplicatedStore) -> None:
    with pytest.raises(RuntimeError):
        with synced.transaction():
            synced.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
            raise RuntimeError("boom")
    assert synced.pending_pushes() == 0
    assert synced.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 0}


def test_nested_transaction_failure_keeps_outer(synced: ReplicatedStore) -> None:
    with synced.transaction():
        synced.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
        with pytest.raises(ValueError):
            with synced.transaction():
                synced.run(TASK_INSERT, ("t/a:2", "t/a", "two", "open"))
                raise ValueError("inner")
    assert synced.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 1}
    assert synced.pending_pushes() == 1


def test_unique_conflict_is_skipped(synced: ReplicatedStore, replica: SqliteFileReplica) -> None:
    replica.execute(TASK_INSERT, ["t/a:1", "t/a", "one", "open"])
    synced.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
    result = synced.force_push()
    assert (result.pushed, result.skipped, result.failed) == (0, 1, 0)
    assert synced.failed_push_count() == 0


def test_rejected_push_is_recorded_and_retried(
    synced: ReplicatedStore, replica: SqliteFileReplica
) -> None:
    replica.execute("DROP TABLE diary")
    synced.run(
        "INSERT INTO diary (id, source, date, text) VALUES (?, ?, ?, ?)",
        ("d/a:1", "d/a", "2025-01-01", "hello"),
    )
    result = synced.force_push()
    assert result.failed == 1
    assert synced.failed_push_count() == 1
    failure = synced.get("SELECT sql, args_json, error FROM replication_failures")
    assert failure is not None
    assert "no such table" in failure["error"]
    assert db.from_json(failure["args_json"]) == ["d/a:1", "d/a", "2025-01-01", "hello"]

    replica.execute(
        "CREATE TABLE diary (id TEXT PRIMARY KEY, source TEXT NOT NULL, date DATETIME NOT NULL, "
        "text TEXT NOT NULL, metadata TEXT, created_at DATETIME DEFAULT CURRENT_TIMESTAMP, "
        "updated_at DATETIME DEFAULT CURRENT_TIMESTAMP)"
    )
    retried = synced.retry_failed_pushes()
    assert retried.pushed == 1
    assert synced.failed_push_count() == 0
    assert _remote_count(replica, "diary") == 1


def test_pull_when_remote_is_newer(synced: ReplicatedStore, replica: SqliteFileReplica) -> None:
    synced.run(TASK_INSERT, ("t/a:local", "t/a", "local only", "open"))
    synced.force_push()
    replica.execute("DELETE FROM tasks")
    for n in range(3):
        replica.execute(
            "INSERT INTO tasks (id, source, title, status, updated_at) VALUES (?, ?, ?, ?, ?)",
            [f"t/a:{n}", "t/a", f"remote {n}", "open", "2030-01-01 00:00:00"],
        )

    assert synced.check_and_pull() is True
    assert synced.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 4}
    assert synced.get("SELECT title FROM tasks WHERE id = ?", ("t/a:local",)) == {
        "title": "local only"
    }
    assert synced.pending_pushes() == 0
    assert synced.local_last_modified() == synced.remote_last_modified()


def test_pull_keeps_rows_missing_from_remote(
    synced: ReplicatedStore, replica: SqliteFileReplica
) -> None:
    # Written straight to the local file so it never reaches the replica.
    synced.conn.execute(
        "INSERT INTO tasks (id, source, title, status, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("t/a:mine", "t/a", "mine", "open", "2001-01-01 00:00:00", "2001-01-01 00:00:00"),
    )
    replica.execute(
        "INSERT INTO tasks (id, source, title, status, updated_at) VALUES (?, ?, ?, ?, ?)",
        ["t/b:theirs", "t/b", "theirs", "open", "2030-01-01 00:00:00"],
    )

    assert synced.check_and_pull() is True
    ids = {row["id"] for row in synced.all("SELECT id FROM tasks")}
    assert ids == {"t/a:mine", "t/b:theirs"}
    assert _remote_count(replica) == 1


def test_pull_replaces_rows_with_remote_version(
    synced: ReplicatedStore, replica: SqliteFileReplica
) -> None:
    synced.run(TASK_INSERT, ("t/a:1", "t/a", "draft", "open"))
    synced.force_push()
    replica.execute(
        "UPDATE tasks SET title = ?, updated_at = ? WHERE id = ?",
        ["final", "2030-01-01 00:00:00", "t/a:1"],
    )
    assert synced.check_and_pull() is True
    assert synced.get("SELECT title FROM tasks WHERE id = ?", ("t/a:1",)) == {"title": "final"}


class SlowReplica(SqliteFileReplica):
    """Stalls inserts so a second push can start while the first is in flight."""

    def __init__(self, path: Path, delay_s: float) -> None:
        super().__init__(path)
        self.delay_s = delay_s
        self.insert_started = threading.Event()

    def execute(
        self, sql: str, args: Sequence[Any] = (), *, timeout_s: float | None = None
    ) -> RemoteResult:
        if sql.lstrip().upper().startswith("INSERT"):
            self.insert_started.set()
            time.sleep(self.delay_s)
        return super().execute(sql, args, timeout_s=timeout_s)


def test_pushes_reach_replica_in_write_order(tmp_path: Path) -> None:
    remote_path = tmp_path / "remote.db"
    _make_remote(remote_path).close()
    slow = SlowReplica(remote_path, delay_s=0.3)
    local = ReplicatedStore(
        tmp_path / "local.db", remote=slow, auto_sync=False, push_delay_s=0.01
    )
    local.migrate()
    try:
        local.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
        assert slow.insert_started.wait(3.0)
        local.run("DELETE FROM tasks WHERE id = ?", ("t/a:1",))
        local.force_push()

        assert local.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 0}
        assert _remote_count(slow) == 0
        assert local.pending_pushes() == 0
    finally:
        local.close()
        slow.close()


def test_no_pull_when_local_is_newer(synced: ReplicatedStore, replica: SqliteFileReplica) -> None:
    replica.execute(
        "INSERT INTO tasks (id, source, title, status, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        ["t/a:old", "t/a", "old", "open", "2000-01-01 00:00:00", "2000-01-01 00:00:00"],
    )
    synced.run(TASK_INSERT, ("t/a:new", "t/a", "new", "open"))
    assert synced.check_and_pull() is False
    assert synced.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 1}


def test_empty_local_pulls_remote_data(synced: ReplicatedStore, replica: SqliteFileReplica) -> None:
    replica.execute(TASK_INSERT, ["t/a:1", "t/a", "one", "open"])
    assert synced.check_and_pull() is True
    assert synced.get("SELECT title FROM tasks") == {"title": "one"}


def test_unreachable_remote_degrades_to_local(tmp_path: Path) -> None:
    down = DownReplica()
    local = ReplicatedStore(tmp_path / "local.db", remote=down, auto_sync=False, push_delay_s=60)
    local.migrate()
    try:
        assert local.check_and_pull() is None
        local.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
        assert local.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 1}
        assert not local.is_connected_to_remote()
        status = local.sync_status()
        assert not status.connected
        assert status.error == "connection refused"
        result = local.force_push()
        assert result.failed == 1
        assert local.failed_push_count() == 1
    finally:
        local.close()


def test_close_flushes_and_is_idempotent(tmp_path: Path, replica: SqliteFileReplica) -> None:
    local = ReplicatedStore(tmp_path / "local.db", remote=replica, auto_sync=False, push_delay_s=60)
    local.migrate()
    local.run(TASK_INSERT, ("t/a:1", "t/a", "one", "open"))
    local.close()
    local.close()
    assert local.closed
    assert _remote_count(replica) == 1


def test_background_pull_on_start(tmp_path: Path, replica: SqliteFileReplica) -> None:
    replica.execute(TASK_INSERT, ["t/a:1", "t/a", "one", "open"])
    path = tmp_path / "local.db"
    conn = db.connect(path)
    MigrationManager(conn).run_migrations()
    conn.close()
    local = ReplicatedStore(path, remote=replica, pull_interval_s=60, auto_sync=True)
    try:
        assert _wait_for(lambda: local.get("SELECT COUNT(*) AS n FROM tasks") == {"n": 1})
    finally:
        local.close()


def test_open_store_shares_instances(tmp_path: Path) -> None:
    cfg = DaystoreConfig(project_root=tmp_path)
    first = open_store(config=cfg)
    try:
        assert open_store(tmp_path / ".data" / "today.db", config=cfg) is first
        independent = open_store(config=cfg, force_new=True)
        assert independent is not first
        independent.close()
        assert open_store(config=cfg) is first
    finally:
        first.close()
    again = open_store(config=cfg)
    try:
        assert again is not first
    finally:
        again.close()


def test_open_store_with_file_replica(tmp_path: Path) -> None:
    _make_remote(tmp_path / "remote.db").close()
    cfg = DaystoreConfig(
        project_root=tmp_path,
        turso_database_url=f"file:{tmp_path / 'remote.db'}",
        auto_sync=False,
    )
    local = open_store(config=cfg, force_new=True)
    try:
        assert local.mode == "replica-configured"
        status = local.sync_status()
        assert status.connected
        assert status.url == cfg.turso_database_url
    finally:
        local.close()
