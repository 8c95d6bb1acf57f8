"""Plugin sync orchestration.

A sync runs a source's ``read`` command, validates what comes back against the
entry schema and replaces that source's rows in one transaction. Sources are
synced one after another; one failing source never stops the rest.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import db
from .errors import ConfigError, UnknownEntryType
from .plugins import PluginManifest, PluginRegistry, plugin_access
from .schemas import (
    EntryKind,
    EntrySchema,
    schema_for,
    stale_minutes_for,
    table_for,
    validate_entries,
)
from .storage import ReplicatedStore
from .tagging import FileBasedUpdater, Tagger, TaggingRequest, TagResult

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    store: ReplicatedStore
    registry: PluginRegistry
    tagger: Tagger | None = None
    tag_topics: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    success: bool
    count: int
    message: str
    incremental: bool = False
    tagged: int = 0


@dataclass
class SourceSyncReport:
    plugin: str
    source: str
    result: SyncResult

    @property
    def source_id(self) -> str:
        return f"{self.plugin}/{self.source}"


@dataclass
class ReadOutput:
    entries: list[Any]
    files_processed: list[str] | None = None
    incremental: bool = False


@dataclass
class WriteAndSyncResult:
    success: bool
    source_id: str | None = None
    write_result: Any = None
    sync_result: SyncResult | None = None
    error: str | None = None
    available_sources: list[str] = field(default_factory=list)


def parse_read_output(data: Any) -> ReadOutput | None:
    """Accept a bare entry list (full sync) or ``{entries, files_processed, incremental}``."""

    if isinstance(data, list):
        return ReadOutput(entries=data)
    if isinstance(data, dict) and isinstance(data.get("entries"), list):
        files = data.get("files_processed")
        return ReadOutput(
            entries=data["entries"],
            files_processed=[str(f) for f in files] if isinstance(files, list) else None,
            incremental=data.get("incremental") is True,
        )
    return None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_sync_metadata(store: ReplicatedStore, source_id: str) -> dict[str, Any] | None:
    try:
        return store.get("SELECT * FROM sync_metadata WHERE source = ?", (source_id,))
    except sqlite3.Error:
        return None


def write_sync_metadata(
    store: ReplicatedStore, source_id: str, files_processed: Sequence[str], entries_count: int
) -> None:
    store.run(
        """
        INSERT OR REPLACE INTO sync_metadata (source, last_synced_at, last_sync_files, entries_count)
        VALUES (?, datetime('now'), ?, ?)
        """,
        (source_id, db.to_json(list(files_processed)), entries_count),
    )


def touch_sync_metadata(store: ReplicatedStore, source_id: str) -> None:
    store.run(
        """
        INSERT INTO sync_metadata (source, last_synced_at, last_sync_files, entries_count)
        VALUES (?, datetime('now'), '[]', 0)
        ON CONFLICT(source) DO UPDATE SET last_synced_at = excluded.last_synced_at
        """,
        (source_id,),
    )


def commit_entries(
    store: ReplicatedStore,
    schema: EntrySchema,
    entries: Sequence[dict[str, Any]],
    source_id: str,
    files_processed: Sequence[str] | None,
    *,
    update_checkpoint: bool = True,
) -> int:
    """Replace a source's rows with ``entries``.

    With a non-empty ``files_processed`` only rows from those files are
    removed first; ``None`` (or a full-replace kind) removes every row of the
    source; an empty list removes nothing.
    """

    if not schema.persisted or schema.table is None:
        raise UnknownEntryType(str(schema.kind))
    table = schema.table
    columns = schema.insert_columns()
    insert_sql = (
        f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' for _ in columns)})"
    )
    with store.transaction():
        if schema.full_replace or files_processed is None:
            store.run(f"DELETE FROM {table} WHERE source = ?", (source_id,))
        else:
            for file_name in files_processed:
                pattern = f"{_escape_like(source_id)}:{_escape_like(file_name)}:%"
                store.run(
                    f"DELETE FROM {table} WHERE source = ? AND id LIKE ? ESCAPE '\\'",
                    (source_id, pattern),
                )
        for entry in entries:
            store.run(insert_sql, schema.to_row(entry, source_id))
        if update_checkpoint:
            write_sync_metadata(store, source_id, files_processed or [], len(entries))
    return len(entries)


def _run_tagging(
    plugin: PluginManifest,
    source_name: str,
    source_config: dict[str, Any],
    schema: EntrySchema,
    ctx: SyncContext,
) -> int:
    taggable_field = source_config.get("taggable_field")
    if not taggable_field:
        spec = plugin.settings.get("taggable_field")
        taggable_field = spec.default if spec is not None else None
    if (
        ctx.tagger is None
        or not source_config.get("auto_add_topics")
        or not taggable_field
        or plugin_access(plugin) != "read-write"
        or schema.table is None
    ):
        return 0
    source_id = f"{plugin.name}/{source_name}"
    try:
        updater = FileBasedUpdater(ctx.registry.project_root)
        tag_result: TagResult = ctx.tagger(
            TaggingRequest(
                store=ctx.store,
                plugin=plugin,
                source_id=source_id,
                source_config=source_config,
                table=schema.table,
                taggable_field=str(taggable_field),
                update_entry=updater.update,
                configured_topics=list(ctx.tag_topics),
            )
        )
        written = updater.flush()
        if tag_result.tagged <= 0:
            return 0
        touched = sorted(set(written) | set(tag_result.files_modified))
        env = {"LAST_SYNC_TIME": "", "SOURCE_ID": source_id}
        if touched:
            env["FILE_FILTER"] = ",".join(touched)
        resync = ctx.registry.run_plugin_command(plugin, "read", source_config, env)
        parsed = parse_read_output(resync.data) if resync.success else None
        if parsed is None:
            logger.warning("re-read after tagging failed for %s: %s", source_id, resync.error)
            return tag_result.tagged
        if not validate_entries(plugin.type, parsed.entries, source_id=source_id).valid:
            logger.warning("re-read after tagging returned invalid data for %s", source_id)
            return tag_result.tagged
        files = parsed.files_processed
        if files is None and touched:
            files = touched
        commit_entries(
            ctx.store, schema, parsed.entries, source_id, files, update_checkpoint=False
        )
        return tag_result.tagged
    except Exception as exc:
        logger.warning("auto-tagging failed for %s: %s", source_id, exc)
        return 0


def sync_plugin_source(
    plugin: PluginManifest,
    source_name: str,
    source_config: dict[str, Any],
    ctx: SyncContext,
    *,
    file_filter: str | None = None,
) -> SyncResult:
    store = ctx.store
    source_id = f"{plugin.name}/{source_name}"
    meta = get_sync_metadata(store, source_id)
    env = {
        "LAST_SYNC_TIME": str(meta["last_synced_at"] or "") if meta else "",
        "SOURCE_ID": source_id,
    }
    if file_filter:
        env["FILE_FILTER"] = file_filter

    result = ctx.registry.run_plugin_command(plugin, "read", source_config, env)
    if not result.success:
        return SyncResult(False, 0, f"Error syncing {source_id}: {result.error}")

    if plugin.type == EntryKind.UTILITY:
        data = result.data if isinstance(result.data, dict) else {}
        cleaned = int(data.get("cleaned") or 0)
        return SyncResult(
            True,
            cleaned,
            data.get("message") or f"Utility plugin completed ({cleaned} items processed)",
        )
    if plugin.type == EntryKind.CONTEXT:
        data = result.data if isinstance(result.data, dict) else {}
        files = data.get("files")
        count = int(data.get("count") or (len(files) if isinstance(files, list) else 0))
        return SyncResult(True, count, data.get("message") or f"{count} item(s) available")

    parsed = parse_read_output(result.data)
    if parsed is None:
        return SyncResult(False, 0, f"Plugin {plugin.name} sync did not return valid data")

    if parsed.incremental and not parsed.entries:
        touch_sync_metadata(store, source_id)
        return SyncResult(True, 0, "No changes since last sync", incremental=True)

    validation = validate_entries(plugin.type, parsed.entries, source_id=source_id)
    if not validation.valid:
        return SyncResult(
            False,
            0,
            f"Plugin {source_id} returned invalid data ({len(validation.errors)} errors)",
        )

    try:
        schema = schema_for(plugin.type)
    except UnknownEntryType:
        return SyncResult(False, 0, f"Unknown plugin type: {plugin.type}")
    if not schema.persisted:
        return SyncResult(False, 0, f"Plugin type {plugin.type} has no table")

    count = commit_entries(store, schema, parsed.entries, source_id, parsed.files_processed)
    tagged = _run_tagging(plugin, source_name, source_config, schema, ctx)

    suffix = " (incremental)" if parsed.incremental else ""
    if tagged:
        suffix += f", tagged {tagged}"
    return SyncResult(
        True,
        count,
        f"Synced {count} entries from {source_id}{suffix}",
        incremental=parsed.incremental,
        tagged=tagged,
    )


def _sync_one(
    plugin: PluginManifest,
    source_name: str,
    source_config: dict[str, Any],
    ctx: SyncContext,
    *,
    file_filter: str | None = None,
) -> SourceSyncReport:
    try:
        result = sync_plugin_source(
            plugin, source_name, source_config, ctx, file_filter=file_filter
        )
    except Exception as exc:
        logger.exception("sync failed for %s/%s", plugin.name, source_name)
        result = SyncResult(False, 0, f"Error syncing {plugin.name}/{source_name}: {exc}")
    return SourceSyncReport(plugin.name, source_name, result)


def sync_all_plugins(ctx: SyncContext) -> list[SourceSyncReport]:
    reports: list[SourceSyncReport] = []
    for name, plugin in ctx.registry.discover_plugins().items():
        try:
            sources = ctx.registry.get_plugin_sources(name)
        except ConfigError as exc:
            reports.append(SourceSyncReport(name, "*", SyncResult(False, 0, str(exc))))
            continue
        for source in sources:
            reports.append(_sync_one(plugin, source.source_name, source.config, ctx))
    return reports


def sync_type(
    ctx: SyncContext, kind: str, source_filter: str | None = None
) -> list[SourceSyncReport]:
    found = ctx.registry.get_sources_for_type(kind, source_filter)
    return [
        _sync_one(source.plugin, source.source_name, source.config, ctx)
        for source in found.sources
    ]


def latest_sync_time_for_type(store: ReplicatedStore, kind: str) -> dt.datetime | None:
    """Most recent checkpoint among sources that have rows of ``kind``."""

    table = table_for(kind)
    if not table:
        return None
    try:
        row = store.get(
            f"""
            SELECT sm.last_synced_at AS last_synced_at
            FROM sync_metadata sm
            WHERE EXISTS (SELECT 1 FROM {table} e WHERE e.source = sm.source)
            ORDER BY sm.last_synced_at DESC
            LIMIT 1
            """
        )
    except sqlite3.Error:
        return None
    if not row:
        return None
    return db.parse_timestamp(row["last_synced_at"])


def ensure_sync_for_type(
    ctx: SyncContext,
    kind: str,
    *,
    stale_minutes: int | None = None,
    force: bool = False,
) -> bool:
    """Sync ``kind`` before a read if its data is stale. Returns True if a sync ran."""

    threshold = stale_minutes if stale_minutes is not None else stale_minutes_for(kind)
    if not force:
        last_sync = latest_sync_time_for_type(ctx.store, kind)
        if threshold > 0 and last_sync is not None:
            age = dt.datetime.now(dt.UTC) - last_sync
            if age < dt.timedelta(minutes=threshold):
                return False
    try:
        sync_type(ctx, kind)
    except Exception as exc:
        logger.debug("background sync for %s failed: %s", kind, exc)
        return False
    return True


def format_time_ago(when: dt.datetime | None, now: dt.datetime | None = None) -> str:
    if when is None:
        return "never"
    seconds = int(((now or dt.datetime.now(dt.UTC)) - when).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def sync_status_message(store: ReplicatedStore, kind: str) -> str:
    stale = stale_minutes_for(kind)
    if stale == 0:
        return "Syncs on every read.\nRun 'daystore sync' to force a full refresh."
    ago = format_time_ago(latest_sync_time_for_type(store, kind))
    return f"Last synced: {ago} (auto-syncs after {stale}m).\nRun 'daystore sync' to refresh."


def _relative_file(path_value: str, project_root: Path) -> str:
    path = Path(path_value)
    if not path.is_absolute():
        return path_value
    return os.path.relpath(path, project_root)


def write_entry_and_sync(
    ctx: SyncContext,
    kind: str,
    entry: dict[str, Any],
    *,
    source_filter: str | None = None,
) -> WriteAndSyncResult:
    target = ctx.registry.get_writable_source(kind, source_filter)
    if not target.success or target.source is None:
        return WriteAndSyncResult(
            False, error=target.error, available_sources=target.available_sources
        )
    source = target.source
    written = ctx.registry.write_plugin_entry(source.plugin.name, source.source_name, entry)
    if not written.success:
        return WriteAndSyncResult(False, source_id=source.source_id, error=written.error)

    data = written.data if isinstance(written.data, dict) else {}
    sync_result = None
    if data.get("needs_sync") is not False:
        file_filter = None
        if data.get("file"):
            file_filter = _relative_file(str(data["file"]), ctx.registry.project_root)
        sync_result = sync_plugin_source(
            source.plugin, source.source_name, source.config, ctx, file_filter=file_filter
        )
    return WriteAndSyncResult(
        True, source_id=source.source_id, write_result=written.data, sync_result=sync_result
    )
