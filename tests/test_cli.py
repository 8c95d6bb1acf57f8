from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import PluginWorkspace, write_executable
from daystore import __version__, db
from daystore.cli import app
from daystore.migrations import MigrationManager
from daystore.remote import SqliteFileReplica

runner = CliRunner()


def _enable_todo(workspace: PluginWorkspace) -> None:
    workspace.add_plugin("todo", "tasks")
    workspace.write_config("[plugins.todo.main]\nenabled = true\n")
    workspace.set_output("todo", [{"id": "1", "title": "Buy milk", "status": "open"}])


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("migrate", "sync", "status", "push", "pull", "retry-pushes", "doctor"):
        assert command in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_migrate_is_idempotent(tmp_path: Path) -> None:
    first = runner.invoke(app, ["migrate"])
    assert first.exit_code == 0
    assert "Applied migrations: 1," in first.stdout
    assert (tmp_path / ".data" / "today.db").exists()

    second = runner.invoke(app, ["migrate"])
    assert second.exit_code == 0
    assert "up to date" in second.stdout


def test_sync_and_status(workspace: PluginWorkspace) -> None:
    _enable_todo(workspace)
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.stdout
    assert "todo/main" in result.stdout
    assert "Synced 1 entries" in result.stdout

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0
    assert "local-only" in status.stdout
    assert "todo/main: 1 entries" in status.stdout


def test_sync_by_type_reports_freshness(workspace: PluginWorkspace) -> None:
    _enable_todo(workspace)
    result = runner.invoke(app, ["sync", "--type", "tasks"])
    assert result.exit_code == 0
    assert "auto-syncs after 5m" in result.stdout

    nothing = runner.invoke(app, ["sync", "--type", "events"])
    assert nothing.exit_code == 0
    assert "No enabled events sources" in nothing.stdout


def test_sync_failure_sets_exit_code(workspace: PluginWorkspace) -> None:
    plugin_dir = workspace.add_plugin("todo", "tasks")
    write_executable(plugin_dir / "read.sh", "exit 2\n")
    workspace.write_config("[plugins.todo.main]\nenabled = true\n")
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 1
    assert "Error syncing todo/main" in result.stdout


def test_invalid_config_exits_cleanly(workspace: PluginWorkspace) -> None:
    workspace.write_config("[plugins.todo\n")
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 1
    assert "invalid config toml" in result.stdout


def test_plugins_listing(workspace: PluginWorkspace) -> None:
    empty = runner.invoke(app, ["plugins"])
    assert "No plugins found" in empty.stdout

    _enable_todo(workspace)
    workspace.add_plugin("cal", "events")
    result = runner.invoke(app, ["plugins"])
    assert result.exit_code == 0
    assert "todo/main" in result.stdout
    assert "not configured" in result.stdout


def test_push_without_remote() -> None:
    result = runner.invoke(app, ["push"])
    assert result.exit_code == 0
    assert "No remote replica configured" in result.stdout


def test_sync_pushes_to_file_replica(
    workspace: PluginWorkspace, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    remote_path = tmp_path / "remote.db"
    conn = db.connect(remote_path)
    MigrationManager(conn).run_migrations()
    conn.close()
    monkeypatch.setenv("TURSO_DATABASE_URL", f"file:{remote_path}")
    _enable_todo(workspace)

    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.stdout

    replica = SqliteFileReplica(remote_path)
    try:
        assert replica.execute("SELECT title FROM tasks").scalar() == "Buy milk"
        assert replica.execute("SELECT source FROM sync_metadata").scalar() == "todo/main"
    finally:
        replica.close()

    pull = runner.invoke(app, ["pull"])
    assert pull.exit_code == 0
    assert "up to date" in pull.stdout or "Pulled" in pull.stdout


def test_doctor_rebuilds_missing_database(tmp_path: Path) -> None:
    result = runner.invoke(app, ["doctor"])
    assert result.exit_code == 0
    assert "Database file does not exist" in result.stdout
    assert "Database recreated" in result.stdout

    again = runner.invoke(app, ["doctor"])
    assert again.exit_code == 0
    assert "Database healthy" in again.stdout


def test_push_replays_recorded_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    local_path = tmp_path / ".data" / "today.db"
    conn = db.connect(local_path)
    MigrationManager(conn).run_migrations()
    conn.execute(
        "INSERT INTO replication_failures (sql, args_json, error) VALUES (?, ?, ?)",
        (
            "INSERT INTO tasks (id, source, title, status) VALUES (?, ?, ?, ?)",
            db.to_json(["todo/main:1", "todo/main", "Buy milk", "open"]),
            "replica offline",
        ),
    )
    conn.close()
    remote_path = tmp_path / "remote.db"
    conn = db.connect(remote_path)
    MigrationManager(conn).run_migrations()
    conn.close()
    monkeypatch.setenv("TURSO_DATABASE_URL", f"file:{remote_path}")

    result = runner.invoke(app, ["push"])
    assert result.exit_code == 0, result.stdout
    assert "Push: pushed 0" in result.stdout
    assert "Retry: pushed 1" in result.stdout

    replica = SqliteFileReplica(remote_path)
    try:
        assert replica.execute("SELECT title FROM tasks").scalar() == "Buy milk"
    finally:
        replica.close()
    conn = db.connect(local_path)
    assert conn.execute("SELECT COUNT(*) FROM replication_failures").fetchone()[0] == 0
    conn.close()
