"""Tests for the typer CLI."""

from __future__ import annotations

import pytest
import yaml
from typer.testing import CliRunner

from toolloop.agent.loop import AgentExecutionLoop
from toolloop.cli import app as cli_app
from toolloop.config import CONFIG_FILENAME
from toolloop.errors import AuthenticationFailed

runner = CliRunner()


@pytest.fixture
def fake_loop(monkeypatch, scripted):
    """Replace the LiteLLM-backed loop with one driven by a scripted backend."""
    built: dict = {}

    def install(script):
        def build(config, cwd):
            built["config"] = config
            return AgentExecutionLoop(scripted(script), config=config)

        monkeypatch.setattr(cli_app, "_build_loop", build)
        return built

    return install


class TestInit:
    def test_writes_config(self, tmp_path):
        result = runner.invoke(
            cli_app.app, ["init", "--cwd", str(tmp_path), "--model", "gpt-4o", "--strategy", "hierarchical"]
        )
        assert result.exit_code == 0, result.output
        data = yaml.safe_load((tmp_path / CONFIG_FILENAME).read_text())
        assert data["model"] == "gpt-4o"
        assert data["compaction"]["strategy"] == "hierarchical"
        assert data["resilience"]["retry"]["max_retries"] == 3


class TestConfigCommand:
    def test_shows_file_values(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(yaml.dump({"model": "claude-haiku", "max_iterations": 3}))
        result = runner.invoke(cli_app.app, ["config", "--cwd", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "claude-haiku" in result.output
        assert "sliding_window" in result.output


def test_tools_lists_builtins():
    result = runner.invoke(cli_app.app, ["tools"])
    assert result.exit_code == 0, result.output
    assert "calculator" in result.output
    assert "current_time" in result.output


class TestRunCommand:
    def test_run_prints_answer(self, tmp_path, fake_loop, text):
        built = fake_loop([text("forty-two")])
        result = runner.invoke(cli_app.app, ["run", "question?", "--cwd", str(tmp_path), "-n", "3"])
        assert result.exit_code == 0, result.output
        assert "forty-two" in result.output
        assert built["config"].max_iterations == 3

    def test_run_streams(self, tmp_path, fake_loop, text):
        fake_loop([text("streamed answer")])
        result = runner.invoke(cli_app.app, ["run", "question?", "--cwd", str(tmp_path), "--stream"])
        assert result.exit_code == 0, result.output
        assert "streamed" in result.output

    def test_agent_error_exits_with_one(self, tmp_path, fake_loop):
        fake_loop([AuthenticationFailed("bad key")])
        result = runner.invoke(cli_app.app, ["run", "question?", "--cwd", str(tmp_path)])
        assert result.exit_code == 1
        assert "AuthenticationFailed" in result.output

    def test_invalid_config_exits_with_two(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(yaml.dump({"compaction": {"strategy": "lossy"}}))
        result = runner.invoke(cli_app.app, ["run", "question?", "--cwd", str(tmp_path)])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
