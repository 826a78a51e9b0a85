from pathlib import Path

import pytest

from agentdeck.config import BackendConfig, Config, SessionConfig, deep_merge_dicts


def test_deep_merge_keeps_untouched_keys():
    base = {"sessions": {"restore_window_hours": 24, "turn_lock_timeout": 0}, "logging": {"level": "INFO"}}
    merged = deep_merge_dicts(base, {"sessions": {"turn_lock_timeout": 5}})
    assert merged["sessions"] == {"restore_window_hours": 24, "turn_lock_timeout": 5}
    assert merged["logging"] == {"level": "INFO"}


def test_package_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENTDECK_STORAGE", str(tmp_path))
    monkeypatch.delenv("AGENTDECK_BACKEND_COMMAND", raising=False)

    config = Config.load_config(Path(__file__).parent / "does-not-exist.yml")

    assert config.storage_path == tmp_path
    assert config.workspaces_path == tmp_path / "workspaces"
    assert config.sessions.restore_window_hours == 24
    assert config.sessions.turn_lock_timeout == 0
    assert config.checkpoints.agent_types == ["claude", "gemini"]
    assert config.backend.command[0] == "claude"
    assert "--output-format" in config.backend.command


def test_override_file(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENTDECK_STORAGE", str(tmp_path / "storage"))
    override = tmp_path / "override.yml"
    override.write_text(
        "sessions:\n"
        "  restore_window_hours: 12\n"
        "  turn_lock_timeout: null\n"
        "checkpoints:\n"
        "  agent_types: [claude]\n"
        "logging:\n"
        "  level: DEBUG\n",
        encoding="utf-8",
    )

    config = Config.load_config(override)

    assert config.sessions.restore_window_hours == 12
    assert config.sessions.turn_lock_timeout is None
    assert config.checkpoints.agent_types == ["claude"]
    assert config.checkpoints.min_title_length == 3
    assert config.log_level == "DEBUG"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("AGENTDECK_BACKEND_COMMAND", "my-agent --json")
    monkeypatch.setenv("AGENTDECK_CORS_ORIGINS", "http://a.test, http://b.test")
    monkeypatch.setenv("PORT", "9100")

    config = Config.from_dict({"server": {"port": 8000}})

    assert config.backend.command == ["my-agent", "--json"]
    assert config.server.cors_origins == ["http://a.test", "http://b.test"]
    assert config.server.port == 9100


def test_layered_project_config(monkeypatch, tmp_path):
    from agentdeck.config import load_config

    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("AGENTDECK_CONFIG_PATH", raising=False)
    project = tmp_path / "project" / ".agentdeck"
    project.mkdir(parents=True)
    (project / "config.yml").write_text("streaming:\n  max_marker_bytes: 1024\n", encoding="utf-8")

    data = load_config(cwd=tmp_path / "project")

    assert data["streaming"]["max_marker_bytes"] == 1024
    assert data["sessions"]["restore_window_hours"] == 24


def test_section_defaults():
    assert SessionConfig.from_dict({}).turn_lock_timeout == 0
    assert BackendConfig.from_dict({"command": "claude --print"}).command == ["claude", "--print"]


@pytest.mark.parametrize("level", ["debug", "WARNING"])
def test_setup_logger_accepts_level_names(tmp_path, level):
    import logging

    from agentdeck.utils.logs import setup_logger

    logger = setup_logger(tmp_path, "test.log", level, console=False)
    assert logger.level == getattr(logging, level.upper())
    assert (tmp_path / "test.log").exists()
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
