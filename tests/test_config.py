"""Tests for guildvault config loading, saving, env overlay and dot-notation access."""

from __future__ import annotations

import pytest

from guildvault.config import (
    Config,
    StoreConfig,
    expand_path,
    get_config_value,
    load_config,
    set_config_value,
)
from guildvault.store import create_store
from guildvault.store.sqlite_backend import SqliteStore


def test_load_default_config(tmp_path):
    """Non-existent config path returns Config() defaults."""
    config = load_config(tmp_path / "nonexistent.yaml")
    assert config == Config()


def test_defaults():
    config = Config()
    assert config.store.provider == "sqlite"
    assert config.serve.port == 8780
    assert config.auth.enabled is True
    assert config.auth.jwt_expiry_hours == 24
    assert config.limits.max_categories == 50
    assert config.limits.max_channels == 500
    assert config.limits.max_roles == 250
    assert config.limits.max_import_batch == 200


def test_expand_env_vars(tmp_path, monkeypatch):
    """${VAR} in config values is expanded from environment."""
    monkeypatch.setenv("TEST_DSN", "postgresql://u:p@db/platform")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("store:\n  provider: postgresql\n  dsn: ${TEST_DSN}\n")
    config = load_config(config_file)
    assert config.store.dsn == "postgresql://u:p@db/platform"


def test_unset_env_var_left_verbatim(tmp_path, monkeypatch):
    monkeypatch.delenv("GV_UNSET_SECRET", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text("auth:\n  jwt_secret: ${GV_UNSET_SECRET}\n")
    assert load_config(config_file).auth.jwt_secret == "${GV_UNSET_SECRET}"


def test_set_config_value_round_trip(tmp_path):
    config_file = tmp_path / "config.yaml"
    set_config_value("serve.port", "9999", config_file)
    loaded = set_config_value("auth.enabled", "false", config_file)

    assert loaded.serve.port == 9999
    assert loaded.auth.enabled is False
    assert load_config(config_file).serve.port == 9999


def test_set_config_value_keeps_placeholders(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("store:\n  dsn: ${GV_PG_DSN}\n")
    set_config_value("store.pool_max", "4", config_file)
    assert "${GV_PG_DSN}" in config_file.read_text()


@pytest.mark.parametrize("key", ["serve.nope", "nope.port", "serve"])
def test_set_config_value_unknown_key(tmp_path, key):
    with pytest.raises(ValueError, match="Unknown config key"):
        set_config_value(key, "1", tmp_path / "config.yaml")
    assert not (tmp_path / "config.yaml").exists()


def test_set_config_value_invalid_value_leaves_file(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("serve:\n  port: 8000\n")
    with pytest.raises(ValueError):
        set_config_value("serve.port", "eighty", config_file)
    assert load_config(config_file).serve.port == 8000


def test_get_config_value():
    config = Config()
    assert get_config_value(config, "serve.port") == 8780
    assert get_config_value(config, "limits.max_roles") == 250
    assert get_config_value(config, "serve.nope") is None
    assert get_config_value(config, "serve.port.deeper") is None


class TestEnvOverlay:
    def test_int_field(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GUILDVAULT_SERVE_PORT", "9100")
        assert load_config(tmp_path / "none.yaml").serve.port == 9100

    def test_bool_field(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GUILDVAULT_AUTH_ENABLED", "false")
        assert load_config(tmp_path / "none.yaml").auth.enabled is False

    def test_overlay_beats_yaml(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("store:\n  path: /from/yaml.db\n")
        monkeypatch.setenv("GUILDVAULT_STORE_PATH", "/from/env.db")
        assert load_config(config_file).store.path == "/from/env.db"

    def test_secret_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GUILDVAULT_AUTH_JWT_SECRET", "k" * 32)
        assert load_config(tmp_path / "none.yaml").auth.jwt_secret == "k" * 32

    def test_batch_limit(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GUILDVAULT_LIMITS_MAX_IMPORT_BATCH", "25")
        assert load_config(tmp_path / "none.yaml").limits.max_import_batch == 25


def test_expand_path(monkeypatch):
    monkeypatch.setenv("GV_DATA", "/srv/gv")
    assert str(expand_path("$GV_DATA/platform.db")) == "/srv/gv/platform.db"


def test_create_store_sqlite(tmp_path):
    store = create_store(StoreConfig(provider="sqlite", path=str(tmp_path / "p.db")))
    assert isinstance(store, SqliteStore)


def test_create_store_expands_path(tmp_path, monkeypatch):
    monkeypatch.setenv("GV_DATA", str(tmp_path / "data"))
    create_store(StoreConfig(provider="sqlite", path="$GV_DATA/platform.db"))
    assert (tmp_path / "data").is_dir()


def test_create_store_unknown_provider():
    with pytest.raises(ValueError, match="Unknown store provider"):
        create_store(StoreConfig(provider="mongodb"))
