from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import typer
from rich import print

from . import __version__
from .commands.maintenance_cmds import doctor_cmd, migrate_cmd
from .commands.plugins_cmds import plugins_cmd
from .commands.sync_cmds import (
    pull_cmd,
    push_cmd,
    retry_pushes_cmd,
    status_cmd,
    sync_cmd,
)
from .config import DaystoreConfig, load_config
from .errors import ConfigError
from .plugins import PluginRegistry
from .storage import ReplicatedStore, open_store

app = typer.Typer(help="daystore: personal data sync and replication")


def _config() -> DaystoreConfig:
    try:
        return load_config()
    except ConfigError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from None


def _resolve_db_path(db_path: str | None) -> Path:
    cfg = _config()
    return cfg.resolve(Path(db_path)) if db_path else cfg.resolved_db_path


def _store(db_path: str | None, *, migrate: bool = True) -> ReplicatedStore:
    # Each invocation owns its store and closes it, which flushes pending pushes.
    # The periodic pull loop is left to long-running processes.
    cfg = replace(_config(), auto_sync=False)
    store = open_store(db_path, config=cfg, force_new=True)
    if migrate:
        store.migrate()
    return store


def _unmigrated_store(db_path: str | None) -> ReplicatedStore:
    return _store(db_path, migrate=False)


def _registry() -> PluginRegistry:
    return PluginRegistry.from_config(_config())


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else None
    if level_name is None:
        try:
            level_name = load_config().log_level
        except ConfigError:
            level_name = "WARNING"
    level = logging.getLevelName(str(level_name).upper())
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    _configure_logging(verbose)


@app.command("migrate")
def migrate(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Apply pending schema migrations."""

    migrate_cmd(store_from_path=_unmigrated_store, db_path=db_path)


@app.command("sync")
def sync(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    kind: str = typer.Option(None, "--type", help="Only sync plugins of this entry type"),
    source: str = typer.Option(None, help="Only sync sources whose id contains this text"),
) -> None:
    """Sync enabled plugin sources into the database."""

    sync_cmd(
        store_from_path=_store,
        registry_factory=_registry,
        db_path=db_path,
        kind=kind,
        source=source,
    )


@app.command("status")
def status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show replication state and per-source checkpoints."""

    status_cmd(store_from_path=_store, db_path=db_path)


@app.command("push")
def push(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Push queued writes, then replay writes the replica rejected earlier."""

    push_cmd(store_from_path=_store, db_path=db_path)


@app.command("pull")
def pull(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Pull from the remote replica if it has newer data."""

    pull_cmd(store_from_path=_store, db_path=db_path)


@app.command("retry-pushes")
def retry_pushes(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Replay writes the remote replica rejected earlier."""

    retry_pushes_cmd(store_from_path=_store, db_path=db_path)


@app.command("plugins")
def plugins() -> None:
    """List discovered plugins."""

    plugins_cmd(registry_factory=_registry)


@app.command("doctor")
def doctor(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    recreate: bool = typer.Option(False, help="Back up and rebuild the database"),
) -> None:
    """Check database health and repair it if needed."""

    doctor_cmd(resolve_db_path=_resolve_db_path, db_path=db_path, recreate=recreate)


@app.command("version")
def version() -> None:
    """Print daystore version."""

    print(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
