"""Tests for EngineConfig loading."""

import json

import pytest

from appflow.config import EngineConfig, get_appflow_config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "configuration.json"
    monkeypatch.setenv("APPFLOW_CONFIG", str(path))
    for name in ("MAX_CONCURRENT_EXECUTIONS", "NODE_TIMEOUT_SECONDS", "NODE_MAX_RETRIES", "LOG_LEVEL"):
        monkeypatch.delenv(f"APPFLOW_{name}", raising=False)
    return path


def test_defaults_without_file(config_file):
    config = EngineConfig.load()

    assert config == EngineConfig()
    assert config.max_concurrent_executions == 10
    assert config.node_max_retries == 0
    assert get_appflow_config() == {}


def test_file_values_and_extra_keys(config_file):
    config_file.write_text(
        json.dumps({"engine": {"node_timeout_seconds": 30, "node_max_retries": 2, "region": "eu"}}),
        encoding="utf-8",
    )

    config = EngineConfig.load()

    assert config.node_timeout_seconds == 30.0
    assert isinstance(config.node_timeout_seconds, float)
    assert config.node_max_retries == 2
    assert config.extra == {"region": "eu"}


def test_environment_overrides_file(config_file, monkeypatch):
    config_file.write_text(json.dumps({"engine": {"max_concurrent_executions": 4}}), encoding="utf-8")
    monkeypatch.setenv("APPFLOW_MAX_CONCURRENT_EXECUTIONS", "16")
    monkeypatch.setenv("APPFLOW_LOG_LEVEL", "DEBUG")

    config = EngineConfig.load()

    assert config.max_concurrent_executions == 16
    assert config.log_level == "DEBUG"


def test_bad_values_fall_back_to_defaults(config_file, monkeypatch):
    monkeypatch.setenv("APPFLOW_NODE_MAX_RETRIES", "lots")

    assert EngineConfig.load().node_max_retries == 0


def test_unreadable_file_is_ignored(config_file):
    config_file.write_text("{oops", encoding="utf-8")

    assert get_appflow_config() == {}
    assert EngineConfig.load() == EngineConfig()
