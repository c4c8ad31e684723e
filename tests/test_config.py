"""EngineConfig environment loading and YAML overrides."""

from __future__ import annotations

import logging

import pytest

from basebrain.engine.config import EngineConfig, fire_event
from basebrain.engine.yaml_config import load_yaml_config


def test_defaults():
    config = EngineConfig()
    assert config.max_iterations == 15
    assert config.repeat_window == 5
    assert config.repeat_threshold == 3
    assert config.input_scan_lines == 10
    assert "api_key" not in repr(EngineConfig(api_key="secret"))


def test_from_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("BASEBRAIN_MODEL_URL", "http://model.local/chat")
    monkeypatch.setenv("BASEBRAIN_MAX_ITERATIONS", "7")
    monkeypatch.setenv("BASEBRAIN_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("BASEBRAIN_API_KEY", "secret")

    config = EngineConfig.from_env()

    assert config.model_url == "http://model.local/chat"
    assert config.max_iterations == 7
    assert config.db_path == str(tmp_path / "x.db")
    assert config.api_key == "secret"


def test_from_env_never_logs_api_key(monkeypatch, caplog):
    monkeypatch.setenv("BASEBRAIN_API_KEY", "top-secret")
    monkeypatch.setenv("BASEBRAIN_LOG_LEVEL", "DEBUG")
    with caplog.at_level(logging.DEBUG, logger="basebrain.engine.config"):
        EngineConfig.from_env()
    assert "top-secret" not in caplog.text
    assert "BASEBRAIN_LOG_LEVEL=DEBUG" in caplog.text


def test_yaml_overrides_base(tmp_path):
    path = tmp_path / "basebrain.yaml"
    path.write_text(
        "engine:\n"
        "  max_iterations: '20'\n"
        "  tool_output_limit: 500\n"
        "  log_level: DEBUG\n"
        "  no_such_key: 1\n"
    )
    base = EngineConfig(model_url="http://base/chat")

    config = load_yaml_config(path, base=base)

    assert config.max_iterations == 20
    assert config.tool_output_limit == 500
    assert config.log_level == "DEBUG"
    assert config.model_url == "http://base/chat"
    assert base.max_iterations == 15


def test_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml", base=EngineConfig())


@pytest.mark.parametrize(
    "text",
    ["engine: [unclosed\n", "- just\n- a list\n", "engine: 5\n", "engine:\n  max_iterations: true\n"],
)
def test_yaml_rejects_bad_documents(tmp_path, text):
    path = tmp_path / "bad.yaml"
    path.write_text(text)
    with pytest.raises(ValueError):
        load_yaml_config(path, base=EngineConfig())


def test_yaml_empty_file_keeps_base(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    base = EngineConfig(max_iterations=9)
    assert load_yaml_config(path, base=base) == base


@pytest.mark.asyncio
async def test_fire_event_swallows_callback_errors():
    calls = []

    async def flaky(event):
        calls.append(event["event"])
        raise RuntimeError("observer broke")

    await fire_event(flaky, {"event": "turn_started"})
    await fire_event(None, {"event": "ignored"})
    assert calls == ["turn_started"]
