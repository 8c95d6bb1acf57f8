"""Entry-type registry.

Every plugin declares one entry kind. The kind decides which table its
entries land in, which columns they carry and how they are validated. The
same definitions drive the table-creation migrations, so the order of
``EntryKind`` is part of the on-disk format: new kinds go at the end.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import UnknownEntryType

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 5
TIMESTAMP_COLUMNS = ("created_at", "updated_at")
ID_FALLBACK_FIELDS = ("start_time", "date", "start_date")


class EntryKind(StrEnum):
    TIME_LOGS = "time-logs"
    DIARY = "diary"
    ISSUES = "issues"
    CONTEXT = "context"
    EVENTS = "events"
    TASKS = "tasks"
    HABITS = "habits"
    EMAIL = "email"
    PROJECTS = "projects"
    HEALTH = "health"
    FINANCE = "finance"
    CONTACTS = "contacts"
    UTILITY = "utility"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    sql_type: str
    value_type: str | None = None
    required: bool = False
    db_only: bool = False
    description: str = ""

    def accepts(self, value: Any) -> bool:
        if self.value_type is None:
            return True
        if self.value_type == "string":
            return isinstance(value, str)
        if self.value_type == "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.value_type == "boolean":
            return isinstance(value, bool)
        return True


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


@dataclass(frozen=True)
class EntrySchema:
    kind: EntryKind
    table: str | None
    fields: tuple[FieldSpec, ...] = ()
    indexes: tuple[str, ...] = ()
    stale_minutes: int = DEFAULT_STALE_MINUTES
    # Always delete every row of the source before inserting, even when the
    # plugin reports which files it processed.
    full_replace: bool = False

    @property
    def persisted(self) -> bool:
        return self.table is not None and bool(self.fields)

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def columns(self) -> list[str]:
        return [spec.name for spec in self.fields]

    def insert_columns(self) -> list[str]:
        return [spec.name for spec in self.fields if spec.name not in TIMESTAMP_COLUMNS]

    def plugin_fields(self) -> list[FieldSpec]:
        return [spec for spec in self.fields if not spec.db_only]

    @property
    def id_fallback_field(self) -> str | None:
        names = set(self.columns())
        for candidate in ID_FALLBACK_FIELDS:
            if candidate in names:
                return candidate
        return None

    def entry_id(self, entry: Mapping[str, Any], source_id: str) -> str:
        plugin_id = entry.get("id")
        if plugin_id not in (None, ""):
            return f"{source_id}:{plugin_id}"
        fallback = self.id_fallback_field
        if fallback and entry.get(fallback):
            if self.kind is EntryKind.EVENTS and entry.get("title"):
                return f"{source_id}:{entry[fallback]}:{entry['title']}"
            return f"{source_id}:{entry[fallback]}"
        canonical = json.dumps(dict(entry), sort_keys=True, ensure_ascii=False, default=str)
        digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()
        return f"{source_id}:{digest}"

    def to_row(self, entry: Mapping[str, Any], source_id: str) -> list[Any]:
        values: list[Any] = []
        for name in self.insert_columns():
            spec = self.field(name)
            assert spec is not None
            if name == "id":
                values.append(self.entry_id(entry, source_id))
                continue
            if name == "source":
                values.append(source_id)
                continue
            value = entry.get(name)
            if value is None:
                values.append("" if spec.required else None)
            elif spec.value_type == "boolean" or isinstance(value, bool):
                values.append(1 if value else 0)
            elif isinstance(value, (dict, list)):
                values.append(json.dumps(value, ensure_ascii=False))
            else:
                values.append(value)
        return values

    def create_table_sql(self) -> str:
        if self.table is None:
            raise UnknownEntryType(str(self.kind))
        columns = ",\n    ".join(f"{spec.name} {spec.sql_type}" for spec in self.fields)
        return f"CREATE TABLE IF NOT EXISTS {self.table} (\n    {columns}\n)"

    def create_index_sql(self) -> list[str]:
        if self.table is None:
            return []
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.table}_{column} ON {self.table}({column})"
            for column in self.indexes
        ]


def _id(required: bool) -> FieldSpec:
    return FieldSpec("id", "TEXT PRIMARY KEY", "string", required, description="Unique identifier")


def _source() -> FieldSpec:
    return FieldSpec(
        "source", "TEXT NOT NULL", db_only=True, description="plugin/source that produced the row"
    )


def _text(name: str, *, required: bool = False, sql_type: str | None = None) -> FieldSpec:
    return FieldSpec(name, sql_type or ("TEXT NOT NULL" if required else "TEXT"), "string", required)


def _number(name: str, sql_type: str, *, required: bool = False) -> FieldSpec:
    return FieldSpec(name, sql_type, "number", required)


def _timestamps() -> tuple[FieldSpec, FieldSpec]:
    return (
        FieldSpec("created_at", "DATETIME DEFAULT CURRENT_TIMESTAMP", db_only=True),
        FieldSpec("updated_at", "DATETIME DEFAULT CURRENT_TIMESTAMP", db_only=True),
    )


def _schema(
    kind: EntryKind,
    table: str,
    fields: Sequence[FieldSpec],
    indexes: Sequence[str],
    stale_minutes: int,
    *,
    full_replace: bool = False,
) -> EntrySchema:
    return EntrySchema(
        kind=kind,
        table=table,
        fields=(*fields, *_timestamps()),
        indexes=tuple(indexes),
        stale_minutes=stale_minutes,
        full_replace=full_replace,
    )


SCHEMAS: dict[EntryKind, EntrySchema] = {
    EntryKind.TIME_LOGS: _schema(
        EntryKind.TIME_LOGS,
        "time_logs",
        [
            _id(False),
            _source(),
            _text("start_time", required=True, sql_type="DATETIME NOT NULL"),
            _text("end_time", sql_type="DATETIME"),
            _number("duration_minutes", "INTEGER"),
            _text("description"),
        ],
        ["source", "start_time"],
        0,
    ),
    EntryKind.DIARY: _schema(
        EntryKind.DIARY,
        "diary",
        [
            _id(False),
            _source(),
            _text("date", required=True, sql_type="DATETIME NOT NULL"),
            _text("text", required=True),
            _text("metadata"),
        ],
        ["source", "date"],
        60,
    ),
    EntryKind.ISSUES: _schema(
        EntryKind.ISSUES,
        "issues",
        [
            _id(True),
            _source(),
            _text("title", required=True),
            _text("state", required=True),
            _text("opened_at", required=True, sql_type="DATETIME NOT NULL"),
            _text("url"),
            _text("body"),
            _text("metadata"),
        ],
        ["source", "state", "opened_at"],
        10,
    ),
    EntryKind.CONTEXT: EntrySchema(EntryKind.CONTEXT, None, stale_minutes=0),
    EntryKind.EVENTS: _schema(
        EntryKind.EVENTS,
        "events",
        [
            _id(True),
            _source(),
            _text("calendar_name"),
            _text("title", required=True),
            _text("start_date", required=True, sql_type="DATETIME NOT NULL"),
            _text("end_date", required=True, sql_type="DATETIME NOT NULL"),
            _text("start_timezone"),
            _text("end_timezone"),
            _text("location"),
            _text("description"),
            FieldSpec("all_day", "BOOLEAN DEFAULT 0", "boolean"),
        ],
        ["source", "start_date", "end_date"],
        5,
        full_replace=True,
    ),
    EntryKind.TASKS: _schema(
        EntryKind.TASKS,
        "tasks",
        [
            _id(True),
            _source(),
            _text("title", required=True),
            _text("status", required=True),
            _text("priority"),
            _text("due_date", sql_type="DATE"),
            _text("completed_at", sql_type="DATETIME"),
            _text("description"),
            _text("metadata"),
        ],
        ["source", "status", "due_date", "priority"],
        5,
    ),
    EntryKind.HABITS: _schema(
        EntryKind.HABITS,
        "habits",
        [
            _id(True),
            _source(),
            _text("habit_id", required=True),
            _text("title", required=True),
            _text("date", required=True, sql_type="DATE NOT NULL"),
            _text("status", required=True),
            _text("goal_type"),
            _number("value", "REAL"),
            _text("category"),
            _text("metadata"),
        ],
        ["source", "habit_id", "date", "status"],
        30,
    ),
    EntryKind.EMAIL: _schema(
        EntryKind.EMAIL,
        "email",
        [
            _id(False),
            _source(),
            _text("message_id"),
            _text("from_address", required=True),
            _text("from_name"),
            _text("to_addresses"),
            _text("cc_addresses"),
            _text("reply_to"),
            _text("subject"),
            _text("date", required=True, sql_type="DATETIME NOT NULL"),
            _text("folder"),
            _text("flags"),
            _number("size", "INTEGER"),
            _text("snippet"),
            _text("text_content"),
            _text("html_content"),
            _text("attachments"),
            _text("metadata"),
        ],
        ["source", "date", "folder", "from_address"],
        15,
    ),
    EntryKind.PROJECTS: _schema(
        EntryKind.PROJECTS,
        "projects",
        [
            _id(True),
            _source(),
            _text("title", required=True),
            _text("description"),
            _text("status", required=True),
            _text("priority"),
            _text("topic"),
            _text("start_date", sql_type="DATE"),
            _text("due_date", sql_type="DATE"),
            _text("completed_at", sql_type="DATETIME"),
            _number("progress", "INTEGER"),
            _text("review_frequency"),
            _text("last_reviewed", sql_type="DATE"),
            _text("url"),
            _text("parent_id"),
            _number("attention_score", "INTEGER"),
            _text("attention_reasons"),
            _text("last_activity", sql_type="DATE"),
            _text("metadata"),
        ],
        ["source", "status", "priority", "due_date", "topic"],
        30,
    ),
    EntryKind.HEALTH: _schema(
        EntryKind.HEALTH,
        "health_metrics",
        [
            _id(False),
            _source(),
            _text("date", required=True, sql_type="DATE NOT NULL"),
            _text("metric_name", required=True),
            _number("value", "REAL NOT NULL", required=True),
            _text("units"),
            _text("metadata"),
        ],
        ["source", "date", "metric_name"],
        60,
    ),
    EntryKind.FINANCE: _schema(
        EntryKind.FINANCE,
        "financial_transactions",
        [
            _id(False),
            _source(),
            _text("date", required=True, sql_type="DATE NOT NULL"),
            _text("account", required=True),
            _text("payee"),
            _text("category"),
            _text("category_group"),
            _number("amount", "REAL NOT NULL", required=True),
            _text("memo"),
            _text("cleared"),
            _text("flag"),
            _text("metadata"),
        ],
        ["source", "date", "account", "category"],
        60,
    ),
    EntryKind.CONTACTS: _schema(
        EntryKind.CONTACTS,
        "contacts",
        [
            _id(False),
            _source(),
            _text("first_name"),
            _text("last_name"),
            _text("full_name", required=True),
            _text("nickname"),
            _text("organization"),
            _text("job_title"),
            _text("primary_email"),
            _text("primary_phone"),
            _text("birthday"),
            _text("location_city"),
            _text("location_state"),
            _text("location_country"),
            _text("notes"),
            _text("metadata"),
        ],
        ["source", "full_name", "birthday"],
        240,
    ),
    EntryKind.UTILITY: EntrySchema(EntryKind.UTILITY, None, stale_minutes=0),
}


def entry_kinds() -> list[EntryKind]:
    return list(EntryKind)


def parse_kind(kind: str | EntryKind) -> EntryKind:
    try:
        return EntryKind(kind)
    except ValueError:
        raise UnknownEntryType(str(kind)) from None


def schema_for(kind: str | EntryKind) -> EntrySchema:
    return SCHEMAS[parse_kind(kind)]


def columns_for(kind: str | EntryKind) -> list[tuple[str, str]]:
    return [(spec.name, spec.sql_type) for spec in schema_for(kind).fields]


def table_for(kind: str | EntryKind) -> str | None:
    try:
        return schema_for(kind).table
    except UnknownEntryType:
        return None


def indexes_for(kind: str | EntryKind) -> list[str]:
    try:
        return list(schema_for(kind).indexes)
    except UnknownEntryType:
        return []


def stale_minutes_for(kind: str | EntryKind) -> int:
    try:
        return schema_for(kind).stale_minutes
    except UnknownEntryType:
        return DEFAULT_STALE_MINUTES


def persisted_schemas() -> list[EntrySchema]:
    return [schema for schema in SCHEMAS.values() if schema.persisted]


def replicated_tables() -> list[str]:
    """Tables mirrored to the remote replica: every entry table plus checkpoints."""

    tables = [schema.table for schema in persisted_schemas() if schema.table]
    tables.append("sync_metadata")
    return tables


def validate_entries(
    kind: str | EntryKind,
    entries: Iterable[Any],
    *,
    source_id: str = "unknown",
) -> ValidationResult:
    result = ValidationResult()
    try:
        schema = schema_for(kind)
    except UnknownEntryType:
        result.warnings.append(f"No schema defined for plugin type '{kind}'")
        return result

    plugin_fields = schema.plugin_fields()
    required = [spec for spec in plugin_fields if spec.required]
    optional = [spec for spec in plugin_fields if not spec.required]
    known = {spec.name for spec in plugin_fields}

    for index, entry in enumerate(entries, start=1):
        label = f"Entry {index}"
        if not isinstance(entry, Mapping):
            result.valid = False
            result.errors.append(f"{label}: expected an object, got {_type_name(entry)}")
            continue
        for spec in required:
            value = entry.get(spec.name)
            if value is None:
                result.valid = False
                result.errors.append(f"{label}: Missing required field '{spec.name}'")
            elif not spec.accepts(value):
                result.valid = False
                result.errors.append(
                    f"{label}: Field '{spec.name}' should be {spec.value_type}, got {_type_name(value)}"
                )
        for spec in optional:
            value = entry.get(spec.name)
            if value is not None and not spec.accepts(value):
                result.warnings.append(
                    f"{label}: Field '{spec.name}' should be {spec.value_type}, got {_type_name(value)}"
                )
        for name in entry:
            if name not in known:
                result.warnings.append(f"{label}: Unknown field '{name}'")

    _log_problems(source_id, result)
    return result


def _log_problems(source_id: str, result: ValidationResult) -> None:
    if result.errors:
        logger.error("plugin %s validation errors:", source_id)
        for error in result.errors[:5]:
            logger.error("  - %s", error)
        if len(result.errors) > 5:
            logger.error("  ... and %d more errors", len(result.errors) - 5)
    if result.warnings:
        logger.warning("plugin %s validation warnings:", source_id)
        for warning in result.warnings[:5]:
            logger.warning("  - %s", warning)
        if len(result.warnings) > 5:
            logger.warning("  ... and %d more warnings", len(result.warnings) - 5)
