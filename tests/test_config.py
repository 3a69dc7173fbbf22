"""Tests for configuration loading."""

import yaml

from app.config import AppConfig, load_config


def test_defaults_when_file_is_missing(tmp_path, monkeypatch):
    for name in ("DATABASE_URL", "ADMIN_API_TOKENS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    config = load_config(str(tmp_path / "missing.yaml"))

    assert config == AppConfig()
    assert config.database_url.startswith("sqlite+aiosqlite")
    assert config.email.max_attempts == 5


def test_yaml_then_environment(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "database_url": "postgresql+asyncpg://localhost/partnerships",
        "admin_tokens": {"from-file": "ana"},
        "email": {"enabled": False, "max_attempts": 3},
    }))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("ADMIN_API_TOKENS", "abc:joana, def:rui ,ghi")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    config = load_config(str(path))

    assert config.database_url == "postgresql+asyncpg://localhost/partnerships"
    assert config.admin_tokens == {"abc": "joana", "def": "rui", "ghi": "admin"}
    assert config.email.enabled is False
    assert config.email.max_attempts == 3
    assert config.log_level == "DEBUG"


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "partnerships.yaml"
    path.write_text("log_level: WARNING\n")
    monkeypatch.setenv("PARTNERSHIP_CONFIG", str(path))
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    assert load_config().log_level == "WARNING"
