from __future__ import annotations

import typer
from rich import print

from ..plugins import PluginRegistry
from ..storage import PushResult
from ..sync import SourceSyncReport, SyncContext, sync_all_plugins, sync_status_message, sync_type


def _print_reports(reports: list[SourceSyncReport]) -> int:
    failures = 0
    for report in reports:
        result = report.result
        if result.success:
            print(f"[green]✓[/green] {report.source_id}: {result.message}")
        else:
            failures += 1
            print(f"[red]✗[/red] {report.source_id}: {result.message}")
    return failures


def _print_push(label: str, result: PushResult) -> None:
    print(
        f"{label}: pushed {result.pushed}, skipped {result.skipped} (already present), "
        f"failed {result.failed}"
    )


def sync_cmd(
    *,
    store_from_path,
    registry_factory,
    db_path: str | None,
    kind: str | None,
    source: str | None,
) -> None:
    """Run plugin syncs, optionally limited to one entry type."""

    store = store_from_path(db_path)
    try:
        registry: PluginRegistry = registry_factory()
        ctx = SyncContext(store=store, registry=registry)
        if kind:
            reports = sync_type(ctx, kind, source)
            if not reports:
                print(f"[yellow]No enabled {kind} sources[/yellow]")
                return
        else:
            reports = sync_all_plugins(ctx)
            if not reports:
                print("[yellow]No enabled plugin sources[/yellow]")
                return
        failures = _print_reports(reports)
        if kind:
            print(sync_status_message(store, kind))
    finally:
        store.close()
    if failures:
        raise typer.Exit(code=1)


def status_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        status = store.sync_status()
        print("[bold]Replication[/bold]")
        print(f"- Database: {store.db_path}")
        print(f"- Mode: {status.mode}")
        print(f"- {status.message}")
        if status.error:
            print(f"- Error: {status.error}")
        print(f"- Pending pushes: {status.pending_pushes}")
        print(f"- Failed pushes: {status.failed_pushes}")
        rows = store.all(
            "SELECT source, last_synced_at, entries_count FROM sync_metadata ORDER BY source"
        )
    finally:
        store.close()
    print("\n[bold]Sources[/bold]")
    if not rows:
        print("- No sources synced yet")
        return
    for row in rows:
        print(f"- {row['source']}: {row['entries_count']} entries, last synced {row['last_synced_at']}")


def push_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        if store.remote is None:
            print("[yellow]No remote replica configured[/yellow]")
            return
        result = store.force_push()
        retried = store.retry_failed_pushes()
    finally:
        store.close()
    _print_push("Push", result)
    if retried.pushed or retried.skipped or retried.failed:
        _print_push("Retry", retried)
    if retried.failed:
        raise typer.Exit(code=1)


def pull_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        if store.remote is None:
            print("[yellow]No remote replica configured[/yellow]")
            return
        pulled = store.force_pull()
    finally:
        store.close()
    if pulled is None:
        print("[red]Remote replica unreachable[/red]")
        raise typer.Exit(code=1)
    print("Pulled newer data from replica" if pulled else "Local database is up to date")


def retry_pushes_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        if store.remote is None:
            print("[yellow]No remote replica configured[/yellow]")
            return
        result = store.retry_failed_pushes()
    finally:
        store.close()
    _print_push("Retry", result)
    if result.failed:
        raise typer.Exit(code=1)
