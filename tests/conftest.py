from __future__ import annotations

import json
import stat
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from daystore.config import CONFIG_ENV_OVERRIDES
from daystore.plugins import PluginRegistry
from daystore.storage import ReplicatedStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in [*CONFIG_ENV_OVERRIDES.values(), "DAYSTORE_CONFIG"]:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("DAYSTORE_ROOT", str(tmp_path))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[ReplicatedStore]:
    local = ReplicatedStore(tmp_path / ".data" / "today.db", auto_sync=False)
    local.migrate()
    yield local
    local.close()


def write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class PluginWorkspace:
    """Builds throwaway plugins whose read command prints ``outputs/<name>.json``."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.plugins_dir = root / "plugins"
        self.config_path = root / "config.toml"
        self.outputs = root / "outputs"
        self.outputs.mkdir(parents=True, exist_ok=True)

    def add_plugin(
        self,
        name: str,
        kind: str,
        *,
        writable: bool = False,
        write_output: dict[str, Any] | None = None,
        extra_toml: str = "",
    ) -> Path:
        plugin_dir = self.plugins_dir / name
        commands = 'read = "read.sh"\n'
        if writable:
            commands += 'write = "write.sh"\n'
        (plugin_dir).mkdir(parents=True, exist_ok=True)
        (plugin_dir / "plugin.toml").write_text(
            f'name = "{name}"\ntype = "{kind}"\ndisplayName = "{name.title()}"\n'
            f"{extra_toml}\n[commands]\n{commands}"
        )
        write_executable(
            plugin_dir / "read.sh",
            'printf \'%s\' "$LAST_SYNC_TIME" > "$PROJECT_ROOT/outputs/' + name + '.last_sync"\n'
            'printf \'%s\' "$FILE_FILTER" > "$PROJECT_ROOT/outputs/' + name + '.file_filter"\n'
            'printf \'%s\' "$SOURCE_ID" > "$PROJECT_ROOT/outputs/' + name + '.source_id"\n'
            'cat "$PROJECT_ROOT/outputs/' + name + '.json"\n',
        )
        if writable:
            (self.outputs / f"{name}.write.json").write_text(
                json.dumps(write_output or {"success": True})
            )
            write_executable(
                plugin_dir / "write.sh",
                'printf \'%s\' "$ENTRY_JSON" > "$PROJECT_ROOT/outputs/' + name + '.entry"\n'
                'cat "$PROJECT_ROOT/outputs/' + name + '.write.json"\n',
            )
        self.set_output(name, [])
        return plugin_dir

    def set_output(self, name: str, data: Any) -> None:
        (self.outputs / f"{name}.json").write_text(json.dumps(data))

    def recorded(self, name: str, what: str) -> str:
        path = self.outputs / f"{name}.{what}"
        return path.read_text() if path.exists() else ""

    def write_config(self, text: str) -> None:
        self.config_path.write_text(text)

    def registry(self, **kwargs: Any) -> PluginRegistry:
        return PluginRegistry(
            self.plugins_dir, config_path=self.config_path, project_root=self.root, **kwargs
        )


@pytest.fixture
def workspace(tmp_path: Path) -> PluginWorkspace:
    return PluginWorkspace(tmp_path)
