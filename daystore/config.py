from __future__ import annotations

import os
import tomllib
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

DEFAULT_DB_PATH = Path(".data/today.db")
DEFAULT_CONFIG_NAME = "config.toml"
DEFAULT_PLUGIN_MAX_OUTPUT_BYTES = 50 * 1024 * 1024

CONFIG_ENV_OVERRIDES = {
    "db_path": "DAYSTORE_DB",
    "plugins_dir": "DAYSTORE_PLUGINS_DIR",
    "turso_database_url": "TURSO_DATABASE_URL",
    "turso_auth_token": "TURSO_AUTH_TOKEN",
    "pull_interval_s": "DAYSTORE_PULL_INTERVAL_S",
    "push_delay_s": "DAYSTORE_PUSH_DELAY_S",
    "remote_timeout_s": "DAYSTORE_REMOTE_TIMEOUT_S",
    "auto_sync": "DAYSTORE_AUTO_SYNC",
    "plugin_timeout_s": "DAYSTORE_PLUGIN_TIMEOUT_S",
    "log_level": "DAYSTORE_LOG_LEVEL",
}


def get_project_root(root: Path | None = None) -> Path:
    candidate = root or Path(os.getenv("DAYSTORE_ROOT", os.getcwd()))
    return candidate.expanduser().resolve()


def get_config_path(path: Path | None = None, *, project_root: Path | None = None) -> Path:
    if path is not None:
        return path.expanduser()
    env_path = os.getenv("DAYSTORE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return get_project_root(project_root) / DEFAULT_CONFIG_NAME


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Parse the user's config.toml. A missing or blank file reads as empty."""

    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError("invalid config toml") from exc
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class DaystoreConfig:
    project_root: Path = field(default_factory=get_project_root)
    db_path: Path = DEFAULT_DB_PATH
    plugins_dir: Path = Path("plugins")
    config_path: Path = Path(DEFAULT_CONFIG_NAME)
    turso_database_url: str | None = None
    turso_auth_token: str | None = None
    pull_interval_s: float = 60.0
    push_delay_s: float = 2.0
    remote_timeout_s: float = 3.0
    auto_sync: bool = True
    plugin_timeout_s: float | None = None
    plugin_max_output_bytes: int = DEFAULT_PLUGIN_MAX_OUTPUT_BYTES
    log_level: str = "WARNING"
    # Topics offered to the tagger before any are discovered in the data.
    tag_topics: list[str] = field(default_factory=list)

    def resolve(self, value: Path) -> Path:
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.project_root / path

    @property
    def resolved_db_path(self) -> Path:
        return self.resolve(self.db_path)

    @property
    def resolved_plugins_dir(self) -> Path:
        return self.resolve(self.plugins_dir)

    @property
    def resolved_config_path(self) -> Path:
        return self.resolve(self.config_path)

    @property
    def remote_configured(self) -> bool:
        return bool(self.turso_database_url)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float | None, *, key: str) -> float | None:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid number for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_str_list(value: object, *, key: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    warnings.warn(f"Invalid list for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return None


def load_config(path: Path | None = None, *, project_root: Path | None = None) -> DaystoreConfig:
    root = get_project_root(project_root)
    cfg = DaystoreConfig(project_root=root)
    config_path = get_config_path(path, project_root=root)
    cfg.config_path = config_path
    data = read_config_file(config_path)
    section = data.get("daystore")
    if isinstance(section, dict):
        cfg = _apply_dict(cfg, section)
    tags = data.get("tags")
    if isinstance(tags, dict):
        topics = _coerce_str_list(tags.get("topics"), key="tags.topics")
        if topics is not None:
            cfg.tag_topics = topics
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: DaystoreConfig, data: dict[str, Any]) -> DaystoreConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or key in {"project_root", "config_path"}:
            continue
        if key in {"db_path", "plugins_dir"}:
            setattr(cfg, key, Path(str(value)))
            continue
        if key == "plugin_max_output_bytes":
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in {"pull_interval_s", "push_delay_s", "remote_timeout_s", "plugin_timeout_s"}:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key == "auto_sync":
            setattr(cfg, key, _coerce_bool(value, cfg.auto_sync, key=key))
            continue
        if key == "tag_topics":
            parsed = _coerce_str_list(value, key=key)
            if parsed is not None:
                cfg.tag_topics = parsed
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: DaystoreConfig) -> DaystoreConfig:
    db_path = os.getenv("DAYSTORE_DB")
    if db_path:
        cfg.db_path = Path(db_path)
    plugins_dir = os.getenv("DAYSTORE_PLUGINS_DIR")
    if plugins_dir:
        cfg.plugins_dir = Path(plugins_dir)
    cfg.turso_database_url = os.getenv("TURSO_DATABASE_URL", cfg.turso_database_url) or None
    cfg.turso_auth_token = os.getenv("TURSO_AUTH_TOKEN", cfg.turso_auth_token) or None
    cfg.pull_interval_s = _parse_float(
        os.getenv("DAYSTORE_PULL_INTERVAL_S"), cfg.pull_interval_s, key="pull_interval_s"
    ) or cfg.pull_interval_s
    cfg.push_delay_s = _parse_float(
        os.getenv("DAYSTORE_PUSH_DELAY_S"), cfg.push_delay_s, key="push_delay_s"
    ) or cfg.push_delay_s
    cfg.remote_timeout_s = _parse_float(
        os.getenv("DAYSTORE_REMOTE_TIMEOUT_S"), cfg.remote_timeout_s, key="remote_timeout_s"
    ) or cfg.remote_timeout_s
    cfg.auto_sync = _parse_bool(os.getenv("DAYSTORE_AUTO_SYNC"), cfg.auto_sync)
    cfg.plugin_timeout_s = _parse_float(
        os.getenv("DAYSTORE_PLUGIN_TIMEOUT_S"), cfg.plugin_timeout_s, key="plugin_timeout_s"
    )
    cfg.log_level = os.getenv("DAYSTORE_LOG_LEVEL", cfg.log_level)
    return cfg
