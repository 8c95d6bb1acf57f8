"""Hooks for the topic-tagging pass that runs after a sync.

Deciding which topic fits an entry is left to an external suggester. This
module gathers the candidates, applies the suggestions through the plugin's
own storage (usually markdown files) and reports what changed so the caller
can re-read those files.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .plugins import PluginManifest
    from .storage import ReplicatedStore

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "#topic/"
TOPIC_PATTERN = re.compile(r"#topic/[a-z_]+")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

UpdateEntry = Callable[[str, str], bool]
Suggester = Callable[[list[dict[str, Any]], list[str], str], dict[str, str]]


@dataclass
class TaggingRequest:
    store: ReplicatedStore
    plugin: PluginManifest
    source_id: str
    source_config: dict[str, Any]
    table: str
    taggable_field: str
    update_entry: UpdateEntry
    configured_topics: list[str] = field(default_factory=list)


@dataclass
class TagResult:
    tagged: int = 0
    failed: int = 0
    skipped: int = 0
    files_modified: list[str] = field(default_factory=list)


class Tagger(Protocol):
    def __call__(self, request: TaggingRequest) -> TagResult: ...


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


def topic_tag(topic: str) -> str:
    return f"{TOPIC_PREFIX}{topic}"


def append_topic(value: str, topic: str) -> str:
    return f"{value} {topic_tag(topic)}"


def untagged_entries(
    store: ReplicatedStore, table: str, field_name: str, source_id: str
) -> list[dict[str, Any]]:
    column = _identifier(field_name)
    try:
        return store.all(
            f"""
            SELECT id, {column}
            FROM {_identifier(table)}
            WHERE source = ?
              AND {column} NOT LIKE '%#topic/%'
              AND {column} IS NOT NULL
              AND {column} != ''
            """,
            (source_id,),
        )
    except sqlite3.Error as exc:
        logger.warning("failed to query untagged entries: %s", exc)
        return []


def known_topics(
    store: ReplicatedStore,
    table: str,
    field_name: str,
    source_id: str,
    configured: list[str] | None = None,
) -> list[str]:
    """Configured topics plus every ``#topic/<name>`` already used by the source."""

    topics = set(configured or [])
    column = _identifier(field_name)
    try:
        rows = store.all(
            f"SELECT DISTINCT {column} AS value FROM {_identifier(table)} "
            f"WHERE source = ? AND {column} LIKE '%#topic/%'",
            (source_id,),
        )
    except sqlite3.Error as exc:
        logger.warning("failed to read topics from database: %s", exc)
        rows = []
    for row in rows:
        text = row.get("value")
        if not text:
            continue
        for match in TOPIC_PATTERN.findall(str(text)):
            topics.add(match[len(TOPIC_PREFIX) :])
    return sorted(topics)


class SuggestionTagger:
    """Tag untagged entries with topics picked by ``suggest``.

    ``suggest(entries, topics, field)`` maps entry ids to one of ``topics``;
    entries it leaves out are counted as skipped.
    """

    def __init__(self, suggest: Suggester) -> None:
        self.suggest = suggest

    def __call__(self, request: TaggingRequest) -> TagResult:
        result = TagResult()
        topics = known_topics(
            request.store,
            request.table,
            request.taggable_field,
            request.source_id,
            request.configured_topics,
        )
        if not topics:
            return result
        entries = untagged_entries(
            request.store, request.table, request.taggable_field, request.source_id
        )
        if not entries:
            return result
        suggestions = self.suggest(entries, topics, request.taggable_field)
        for entry in entries:
            topic = suggestions.get(entry["id"])
            if not topic:
                result.skipped += 1
                continue
            new_value = append_topic(str(entry[request.taggable_field]), topic)
            try:
                ok = request.update_entry(entry["id"], new_value)
            except (OSError, ValueError) as exc:
                logger.warning("failed to update entry %s: %s", entry["id"], exc)
                ok = False
            if ok:
                result.tagged += 1
            else:
                result.failed += 1
        return result


class FileBasedUpdater:
    """Rewrites entries whose ids look like ``<source>:<path>:<line>``.

    The path is relative to the project root and the line number is zero
    based. Only pipe-delimited lines are editable; their last column is
    replaced. Changes are held in memory until ``flush``.
    """

    def __init__(self, project_root: Path) -> None:
        self.project_root = Path(project_root)
        self._lines: dict[Path, list[str]] = {}
        self._modified: set[Path] = set()

    @property
    def modified_files(self) -> list[str]:
        files: list[str] = []
        for path in sorted(self._modified):
            try:
                files.append(str(path.relative_to(self.project_root)))
            except ValueError:
                files.append(str(path))
        return files

    def update(self, entry_id: str, new_value: str) -> bool:
        parts = entry_id.split(":")
        if len(parts) < 3:
            return False
        relative = ":".join(parts[1:-1])
        try:
            line_number = int(parts[-1])
        except ValueError:
            return False
        path = self.project_root / relative
        if not path.is_file():
            return False
        lines = self._lines.get(path)
        if lines is None:
            lines = path.read_text(encoding="utf-8").split("\n")
            self._lines[path] = lines
        if line_number < 0 or line_number >= len(lines):
            return False
        line = lines[line_number]
        if "|" not in line:
            return False
        columns = line.split("|")
        if len(columns) < 3:
            return False
        columns[-1] = new_value
        lines[line_number] = "|".join(columns)
        self._modified.add(path)
        return True

    def flush(self) -> list[str]:
        """Write changed files. Returns them relative to the project root."""

        written = self.modified_files
        for path in self._modified:
            lines = self._lines.get(path)
            if lines is not None:
                path.write_text("\n".join(lines), encoding="utf-8")
        self._lines.clear()
        self._modified.clear()
        return written
