from unittest.mock import AsyncMock, MagicMock, patch

from rich.console import Console
from typer.testing import CliRunner

from shell_planner.cli import app
from shell_planner.config import ConfigError
from shell_planner.harness import Session
from shell_planner.llm import GenerationContext, LLMError

runner = CliRunner()


def _wired(report="Plan Execution Summary:\nok"):
    session = MagicMock()
    session.process_query = AsyncMock(return_value=report)
    session.save_output = MagicMock(side_effect=lambda text, path: path.write_text(text, encoding="utf-8"))
    executor = MagicMock()
    return session, executor


def test_run_saves_report(tmp_path):
    session, executor = _wired()
    out = tmp_path / "report.txt"
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))) as start:
        result = runner.invoke(app, ["--debug", "run", "scan 10.0.0.1", "-o", str(out)])

    assert result.exit_code == 0, result.output
    session.process_query.assert_awaited_once_with("scan 10.0.0.1")
    assert out.read_text(encoding="utf-8") == "Plan Execution Summary:\nok"
    executor.close.assert_called_once()
    assert start.await_args.args == (None, True)


def test_run_passes_config_path(tmp_path):
    session, executor = _wired()
    config = tmp_path / "config.toml"
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))) as start:
        result = runner.invoke(app, ["--config", str(config), "run", "whoami"])

    assert result.exit_code == 0, result.output
    assert start.await_args.args == (config, False)


def test_startup_failures_exit_with_status_1():
    for error in (ConfigError("Failed to read config file"), LLMError("Model validation failed")):
        with patch("shell_planner.cli._start_session", AsyncMock(side_effect=error)):
            result = runner.invoke(app, ["run", "scan"])
        assert result.exit_code == 1


def test_interactive_loops_until_exit():
    session, executor = _wired()
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))):
        with patch("shell_planner.cli.Prompt.ask", side_effect=["scan 10.0.0.0/24", "  ", "quit"]):
            result = runner.invoke(app, ["interactive"])

    assert result.exit_code == 0, result.output
    session.process_query.assert_awaited_once_with("scan 10.0.0.0/24")
    executor.close.assert_called_once()


def test_interactive_stops_on_eof():
    session, executor = _wired()
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))):
        with patch("shell_planner.cli.Prompt.ask", side_effect=EOFError):
            result = runner.invoke(app, ["interactive"])

    assert result.exit_code == 0, result.output
    session.process_query.assert_not_awaited()


def _live_session(response):
    client = MagicMock()
    client.generate = AsyncMock(return_value=(response, GenerationContext()))
    executor = MagicMock()
    return Session(client, executor, "Kali Linux"), executor


def test_run_shows_report_once():
    plan = '{"explanation": "Nothing to run.", "steps": [{"step": 1, "action_type": "info"}]}'
    session, executor = _live_session(plan)
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))):
        with patch("shell_planner.display.console", Console(width=400)):
            result = runner.invoke(app, ["run", "what next"])

    assert result.exit_code == 0, result.output
    assert result.output.count("Plan Execution Summary:") == 1


def test_interactive_shows_failure_report_with_raw_response():
    session, executor = _live_session("not json")
    with patch("shell_planner.cli._start_session", AsyncMock(return_value=(session, executor))):
        with patch("shell_planner.cli.Prompt.ask", side_effect=["scan 10.0.0.1", "exit"]):
            with patch("shell_planner.display.console", Console(width=400)):
                result = runner.invoke(app, ["interactive"])

    assert result.exit_code == 0, result.output
    assert "Raw response was:" in result.output
    assert "not json" in result.output
