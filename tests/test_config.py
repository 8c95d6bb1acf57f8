from pathlib import Path

import pytest

from daystore.config import (
    get_config_path,
    get_env_overrides,
    get_project_root,
    load_config,
    read_config_file,
)
from daystore.errors import ConfigError


def test_read_config_file_rejects_invalid_toml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[daystore\n")
    with pytest.raises(ConfigError, match="invalid config toml"):
        read_config_file(config_path)


def test_read_config_file_treats_missing_and_blank_as_empty(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "missing.toml") == {}
    blank = tmp_path / "blank.toml"
    blank.write_text("\n  \n")
    assert read_config_file(blank) == {}


def test_config_path_defaults_to_project_root(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert get_project_root() == tmp_path.resolve()
    assert get_config_path() == tmp_path.resolve() / "config.toml"
    monkeypatch.setenv("DAYSTORE_CONFIG", str(tmp_path / "elsewhere.toml"))
    assert get_config_path() == tmp_path / "elsewhere.toml"


def test_load_config_defaults(tmp_path: Path) -> None:
    cfg = load_config()
    assert cfg.resolved_db_path == tmp_path.resolve() / ".data" / "today.db"
    assert cfg.resolved_plugins_dir == tmp_path.resolve() / "plugins"
    assert cfg.turso_database_url is None
    assert not cfg.remote_configured
    assert cfg.auto_sync is True
    assert cfg.pull_interval_s == 60.0


def test_load_config_reads_daystore_table(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
        [daystore]
        db_path = "/var/lib/daystore/today.db"
        plugins_dir = "my-plugins"
        turso_database_url = "libsql://me.turso.io"
        pull_interval_s = 30
        auto_sync = "off"
        plugin_timeout_s = 12

        [tags]
        topics = ["writing", "admin"]

        [plugins.todo.main]
        enabled = true
        """
    )

    cfg = load_config(config_path)

    assert cfg.resolved_db_path == Path("/var/lib/daystore/today.db")
    assert cfg.resolved_plugins_dir == tmp_path.resolve() / "my-plugins"
    assert cfg.remote_configured
    assert cfg.pull_interval_s == 30.0
    assert cfg.auto_sync is False
    assert cfg.plugin_timeout_s == 12.0
    assert cfg.tag_topics == ["writing", "admin"]
    assert cfg.resolved_config_path == config_path


def test_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[daystore]\nturso_database_url = "libsql://file.turso.io"\n')
    monkeypatch.setenv("TURSO_DATABASE_URL", "libsql://env.turso.io")
    monkeypatch.setenv("TURSO_AUTH_TOKEN", "token")
    monkeypatch.setenv("DAYSTORE_DB", "other.db")
    monkeypatch.setenv("DAYSTORE_AUTO_SYNC", "0")

    cfg = load_config(config_path)

    assert cfg.turso_database_url == "libsql://env.turso.io"
    assert cfg.turso_auth_token == "token"
    assert cfg.resolved_db_path == tmp_path.resolve() / "other.db"
    assert cfg.auto_sync is False


def test_empty_remote_url_env_means_local_only(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[daystore]\nturso_database_url = "libsql://file.turso.io"\n')
    monkeypatch.setenv("TURSO_DATABASE_URL", "")
    assert load_config(config_path).turso_database_url is None


def test_get_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DAYSTORE_PUSH_DELAY_S", "5")
    monkeypatch.setenv("DAYSTORE_LOG_LEVEL", "DEBUG")
    overrides = get_env_overrides()
    assert overrides["push_delay_s"] == "5"
    assert overrides["log_level"] == "DEBUG"


def test_invalid_env_number_warns_and_keeps_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DAYSTORE_PULL_INTERVAL_S", "soon")
    with pytest.warns(RuntimeWarning, match="pull_interval_s"):
        cfg = load_config()
    assert cfg.pull_interval_s == 60.0


def test_invalid_file_value_warns_and_keeps_default(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('[daystore]\npush_delay_s = "later"\n')
    with pytest.warns(RuntimeWarning, match="push_delay_s"):
        cfg = load_config(config_path)
    assert cfg.push_delay_s == 2.0


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("daystore = [")
    with pytest.raises(ConfigError):
        load_config(config_path)
