from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import DEFAULT_PLUGIN_MAX_OUTPUT_BYTES, DaystoreConfig, read_config_file
from .schemas import table_for

logger = logging.getLogger(__name__)

MANIFEST_NAME = "plugin.toml"
SENSITIVE_KEY_PARTS = ("token", "secret", "password")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class SettingSpec:
    type: str = "string"
    default: Any = None
    encrypted: bool = False
    description: str = ""


@dataclass(frozen=True)
class PluginManifest:
    name: str
    type: str
    path: Path
    display_name: str = ""
    description: str = ""
    commands: dict[str, str] = field(default_factory=dict)
    settings: dict[str, SettingSpec] = field(default_factory=dict)
    ai_instructions: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def setting_defaults(self) -> dict[str, Any]:
        return {
            key: spec.default for key, spec in self.settings.items() if spec.default is not None
        }

    def command_path(self, command: str) -> Path | None:
        relative = self.commands.get(command)
        if not relative:
            return None
        return self.path / relative


@dataclass
class PluginSource:
    plugin: PluginManifest
    source_name: str
    config: dict[str, Any]
    enabled: bool = True

    @property
    def source_id(self) -> str:
        return f"{self.plugin.name}/{self.source_name}"


@dataclass
class SourceInfo:
    source_id: str
    plugin_name: str
    enabled: bool


@dataclass
class SourcesForType:
    sources: list[PluginSource] = field(default_factory=list)
    all_sources: list[SourceInfo] = field(default_factory=list)


@dataclass
class CommandResult:
    success: bool
    data: Any = None
    error: str | None = None


@dataclass
class WritableSourceResult:
    success: bool
    source: PluginSource | None = None
    error: str | None = None
    available_sources: list[str] = field(default_factory=list)


def _parse_settings(raw: object) -> dict[str, SettingSpec]:
    if not isinstance(raw, dict):
        return {}
    settings: dict[str, SettingSpec] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        settings[str(key)] = SettingSpec(
            type=str(value.get("type") or "string"),
            default=value.get("default"),
            encrypted=bool(value.get("encrypted", False)),
            description=str(value.get("description") or ""),
        )
    return settings


def load_manifest(path: Path) -> PluginManifest | None:
    """Parse one ``plugin.toml``. Returns None when it has no name."""

    data = tomllib.loads(path.read_text(encoding="utf-8"))
    name = data.get("name")
    if not isinstance(name, str) or not name:
        return None
    commands = data.get("commands")
    return PluginManifest(
        name=name,
        type=str(data.get("type") or ""),
        path=path.parent,
        display_name=str(data.get("displayName") or data.get("display_name") or ""),
        description=str(data.get("description") or ""),
        commands={str(k): str(v) for k, v in commands.items()} if isinstance(commands, dict) else {},
        settings=_parse_settings(data.get("settings")),
        ai_instructions=data.get("aiInstructions") or data.get("ai_instructions"),
    )


def plugin_access(plugin: PluginManifest) -> str:
    has_read = bool(plugin.commands.get("read"))
    has_write = bool(plugin.commands.get("write"))
    if has_read and has_write:
        return "read-write"
    if has_read:
        return "read-only"
    if has_write:
        return "write-only"
    return "none"


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


class PluginRegistry:
    def __init__(
        self,
        plugins_dir: Path,
        *,
        config_path: Path,
        project_root: Path,
        timeout_s: float | None = None,
        max_output_bytes: int = DEFAULT_PLUGIN_MAX_OUTPUT_BYTES,
    ) -> None:
        self.plugins_dir = Path(plugins_dir)
        self.config_path = Path(config_path)
        self.project_root = Path(project_root)
        self.timeout_s = timeout_s
        self.max_output_bytes = max_output_bytes
        self._plugins: dict[str, PluginManifest] | None = None

    @classmethod
    def from_config(cls, cfg: DaystoreConfig) -> PluginRegistry:
        return cls(
            cfg.resolved_plugins_dir,
            config_path=cfg.resolved_config_path,
            project_root=cfg.project_root,
            timeout_s=cfg.plugin_timeout_s,
            max_output_bytes=cfg.plugin_max_output_bytes,
        )

    def discover_plugins(self) -> dict[str, PluginManifest]:
        if self._plugins is not None:
            return self._plugins
        plugins: dict[str, PluginManifest] = {}
        if self.plugins_dir.is_dir():
            for plugin_dir in sorted(p for p in self.plugins_dir.iterdir() if p.is_dir()):
                manifest_path = plugin_dir / MANIFEST_NAME
                if not manifest_path.exists():
                    continue
                try:
                    manifest = load_manifest(manifest_path)
                except (OSError, tomllib.TOMLDecodeError) as exc:
                    logger.error("failed to load plugin %s: %s", plugin_dir.name, exc)
                    continue
                if manifest is not None:
                    plugins[manifest.name] = manifest
        self._plugins = plugins
        return plugins

    def reload(self) -> dict[str, PluginManifest]:
        self._plugins = None
        return self.discover_plugins()

    def get_plugin(self, name: str) -> PluginManifest | None:
        return self.discover_plugins().get(name)

    def _plugin_config(self, name: str) -> dict[str, Any]:
        config = read_config_file(self.config_path)
        plugins = config.get("plugins")
        if not isinstance(plugins, dict):
            return {}
        section = plugins.get(name)
        return section if isinstance(section, dict) else {}

    def get_plugin_sources(self, name: str) -> list[PluginSource]:
        """Enabled sources for a plugin, read fresh from the config file."""

        plugin = self.get_plugin(name)
        if plugin is None:
            return []
        defaults = plugin.setting_defaults()
        sources: list[PluginSource] = []
        for source_name, source_config in self._plugin_config(name).items():
            if not isinstance(source_config, dict):
                continue
            if source_config.get("enabled") is not True:
                continue
            sources.append(
                PluginSource(
                    plugin=plugin,
                    source_name=str(source_name),
                    config={**defaults, **source_config},
                )
            )
        return sources

    def get_enabled_plugins(self) -> list[tuple[PluginManifest, list[PluginSource]]]:
        enabled: list[tuple[PluginManifest, list[PluginSource]]] = []
        for name, plugin in self.discover_plugins().items():
            sources = self.get_plugin_sources(name)
            if sources:
                enabled.append((plugin, sources))
        return enabled

    def is_plugin_configured(self, name: str) -> bool:
        return bool(self.get_plugin_sources(name))

    def get_sources_for_type(self, kind: str, source_filter: str | None = None) -> SourcesForType:
        result = SourcesForType()
        for name, plugin in self.discover_plugins().items():
            if plugin.type != str(kind):
                continue
            sources = self.get_plugin_sources(name)
            if not sources:
                result.all_sources.append(SourceInfo(name, name, enabled=False))
                continue
            for source in sources:
                result.all_sources.append(SourceInfo(source.source_id, name, enabled=True))
                if not source_filter or source_filter in source.source_id:
                    result.sources.append(source)
        return result

    def plugin_access(self, plugin: PluginManifest) -> str:
        return plugin_access(plugin)

    def run_plugin_command(
        self,
        plugin: PluginManifest,
        command: str,
        source_config: dict[str, Any],
        extra_env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a plugin executable and parse its stdout as JSON.

        Failures come back as ``CommandResult(success=False)``.
        """

        command_path = plugin.command_path(command)
        if command_path is None:
            return CommandResult(False, error=f"Plugin {plugin.name} has no '{command}' command")
        if not command_path.exists():
            return CommandResult(False, error=f"Command not found: {command_path}")
        env = dict(os.environ)
        env.update(
            {
                "PROJECT_ROOT": str(self.project_root),
                "PLUGIN_CONFIG": json.dumps(source_config, ensure_ascii=False, default=str),
            }
        )
        if extra_env:
            env.update(extra_env)
        logger.debug("running %s %s for %s", plugin.name, command, command_path)
        try:
            result = subprocess.run(
                [str(command_path)],
                cwd=self.project_root,
                check=False,
                capture_output=True,
                env=env,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                False, error=f"{plugin.name} {command} timed out after {self.timeout_s}s"
            )
        except OSError as exc:
            return CommandResult(False, error=f"{plugin.name} {command} could not start: {exc}")
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        if stderr:
            logger.debug("%s %s stderr: %s", plugin.name, command, stderr[:2000])
        if result.returncode != 0:
            return CommandResult(
                False, error=stderr or f"{plugin.name} {command} exited with {result.returncode}"
            )
        if len(result.stdout) > self.max_output_bytes:
            return CommandResult(
                False,
                error=f"{plugin.name} {command} output exceeds {self.max_output_bytes} bytes",
            )
        try:
            data = json.loads(result.stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            return CommandResult(False, error=f"{plugin.name} {command} returned invalid JSON: {exc}")
        return CommandResult(True, data=data)

    def write_plugin_entry(
        self, plugin_name: str, source_name: str, entry: dict[str, Any]
    ) -> CommandResult:
        plugin = self.get_plugin(plugin_name)
        if plugin is None:
            return CommandResult(False, error=f"Plugin not found: {plugin_name}")
        if not plugin.commands.get("write"):
            return CommandResult(False, error=f"Plugin {plugin_name} does not support writing")
        source = next(
            (s for s in self.get_plugin_sources(plugin_name) if s.source_name == source_name),
            None,
        )
        if source is None:
            return CommandResult(False, error=f"Source not found: {plugin_name}/{source_name}")
        return self.run_plugin_command(
            plugin,
            "write",
            source.config,
            {"ENTRY_JSON": json.dumps(entry, ensure_ascii=False, default=str)},
        )

    def get_writable_source(
        self, kind: str, source_filter: str | None = None
    ) -> WritableSourceResult:
        found = self.get_sources_for_type(kind)
        writable = [s for s in found.sources if s.plugin.commands.get("write")]
        if not writable:
            return WritableSourceResult(
                False,
                error=f"No {kind} plugins with write support are enabled",
                available_sources=[info.source_id for info in found.all_sources],
            )
        if source_filter:
            matching = [s for s in writable if source_filter in s.source_id]
            if not matching:
                return WritableSourceResult(
                    False,
                    error=f'No writable source matching "{source_filter}"',
                    available_sources=[s.source_id for s in writable],
                )
            if len(matching) > 1:
                return WritableSourceResult(
                    False,
                    error=f'Multiple sources match "{source_filter}". Be more specific.',
                    available_sources=[s.source_id for s in matching],
                )
            return WritableSourceResult(True, source=matching[0])
        if len(writable) > 1:
            return WritableSourceResult(
                False,
                error=f"Multiple {kind} sources available. Use --source to specify which one.",
                available_sources=[s.source_id for s in writable],
            )
        return WritableSourceResult(True, source=writable[0])

    def plugin_data_for_ai(self) -> list[dict[str, Any]]:
        """Describe enabled sources for an assistant prompt, without credentials."""

        described: list[dict[str, Any]] = []
        for plugin, sources in self.get_enabled_plugins():
            for source in sources:
                merged = source.config
                instructions = plugin.ai_instructions
                if instructions:
                    instructions = _PLACEHOLDER.sub(
                        lambda m, cfg=merged: str(cfg[m.group(1)])
                        if m.group(1) in cfg
                        else m.group(0),
                        instructions,
                    )
                described.append(
                    {
                        "plugin_name": plugin.name,
                        "display_name": plugin.label,
                        "description": plugin.description,
                        "type": plugin.type,
                        "access": plugin_access(plugin),
                        "source": source.source_name,
                        "table_name": table_for(plugin.type),
                        "plugin_ai_instructions": instructions,
                        "user_ai_instructions": source.config.get("ai_instructions"),
                        "config": {
                            key: value
                            for key, value in source.config.items()
                            if key not in {"enabled", "ai_instructions"}
                            and not is_sensitive_key(key)
                        },
                    }
                )
        return described
