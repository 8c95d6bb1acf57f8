from __future__ import annotations

from pathlib import Path

import typer
from rich import print

from ..maintenance import check_database_health, ensure_healthy_database


def migrate_cmd(*, store_from_path, db_path: str | None) -> None:
    """Apply pending schema migrations."""

    store = store_from_path(db_path)
    try:
        applied = store.migrate()
    finally:
        store.close()
    if applied:
        print(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print("Database schema is up to date")


def doctor_cmd(*, resolve_db_path, db_path: str | None, recreate: bool) -> None:
    path: Path = resolve_db_path(db_path)
    health = check_database_health(path)
    if health.healthy:
        print(f"[green]Database healthy[/green] (schema version {health.version})")
    else:
        print(f"[yellow]Database unhealthy:[/yellow] {health.reason}")
    if health.healthy and not recreate:
        return
    result = ensure_healthy_database(path, force_recreate=recreate)
    if not result.success:
        print(f"[red]{result.message}[/red]")
        raise typer.Exit(code=1)
    print(result.message)
    if result.recreated:
        print("The database is a local cache; run 'daystore sync' to repopulate it.")
