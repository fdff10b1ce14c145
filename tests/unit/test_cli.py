"""Unit tests for the pycall command line interface."""

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from pycall_daemon.cli import cli
from pycall_daemon.errors import InvocationError, ServerUnreachable, StartupTimeout


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_dispatcher():
    with patch("pycall_daemon.cli.Dispatcher") as mock_dispatcher_cls:
        instance = MagicMock()
        instance.call.return_value = [1, "two"]
        mock_dispatcher_cls.return_value = instance
        yield instance


@pytest.fixture
def mock_registry():
    with patch("pycall_daemon.cli.ServerRegistry") as mock_registry_cls:
        instance = MagicMock()
        mock_registry_cls.return_value = instance
        yield instance


class TestCallCommand:
    """pycall call."""

    def test_prints_outputs_as_json(self, runner, mock_dispatcher, mock_registry, workspace):
        result = runner.invoke(
            cli,
            [
                "call",
                "divmod",
                "--args",
                "[7, 2]",
                "--kwargs",
                "{}",
                "--workspace",
                str(workspace),
            ],
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == [1, "two"]

        options, args, kwargs = mock_dispatcher.call.call_args[0]
        assert options.f == "divmod"
        assert options.workspace == workspace
        assert args == [7, 2]
        assert kwargs == {}

    def test_options_are_passed_through(self, runner, mock_dispatcher, mock_registry, workspace, tmp_path):
        setup = tmp_path / "setup.py"
        result = runner.invoke(
            cli,
            [
                "call",
                "f",
                "--workspace",
                str(workspace),
                "--setup",
                str(setup),
                "-m",
                "numpy",
                "-m",
                "json",
                "--threads",
                "4",
                "--port",
                "3100",
                "--isolated",
                "--no-server",
                "--restart",
                "--nofun",
                "--no-gc",
            ],
        )

        assert result.exit_code == 0, result.output
        options = mock_dispatcher.call.call_args[0][0]
        assert options.setup == setup
        assert options.modules == ["numpy", "json"]
        assert options.threads == 4
        assert options.port == 3100
        assert options.shared is False
        assert options.server is False
        assert options.restart is True
        assert options.nofun is True
        assert options.gc is False

    def test_shared_defaults_to_daemon_choice(self, runner, mock_dispatcher, mock_registry, workspace):
        runner.invoke(cli, ["call", "len", "--args", '["x"]', "--workspace", str(workspace)])

        assert mock_dispatcher.call.call_args[0][0].shared is None

    def test_infile_is_used_as_is(self, runner, mock_dispatcher, mock_registry, workspace, tmp_path):
        infile = tmp_path / "payload.json"
        infile.write_text('{"args": [], "kwargs": {}}')

        result = runner.invoke(
            cli, ["call", "len", "--infile", str(infile), "--workspace", str(workspace)]
        )

        assert result.exit_code == 0, result.output
        options, args, kwargs = mock_dispatcher.call.call_args[0]
        assert options.infile == infile
        assert args is None and kwargs is None

    def test_infile_conflicts_with_args(self, runner, mock_dispatcher, workspace, tmp_path):
        infile = tmp_path / "payload.json"
        infile.write_text("{}")

        result = runner.invoke(
            cli, ["call", "len", "--infile", str(infile), "--args", "[1]"]
        )

        assert result.exit_code == 2
        assert "cannot be combined" in result.output
        mock_dispatcher.call.assert_not_called()

    @pytest.mark.parametrize(
        "flag,value,message",
        [
            ("--args", "{bad", "not valid JSON"),
            ("--args", '{"a": 1}', "JSON array"),
            ("--kwargs", "[1]", "JSON object"),
            ("--threads", "zero", "positive integer"),
        ],
    )
    def test_invalid_parameters(self, runner, mock_dispatcher, flag, value, message):
        result = runner.invoke(cli, ["call", "len", flag, value])

        assert result.exit_code == 2
        assert message in result.output
        mock_dispatcher.call.assert_not_called()

    def test_invalid_port(self, runner, mock_dispatcher):
        result = runner.invoke(cli, ["call", "len", "--port", "99999"])

        assert result.exit_code == 2
        mock_dispatcher.call.assert_not_called()

    def test_failure_exits_with_phase(self, runner, mock_dispatcher, mock_registry, workspace):
        mock_dispatcher.call.side_effect = InvocationError(
            "division by zero", remote_type="ZeroDivisionError", remote_traceback="Traceback: here"
        )

        result = runner.invoke(cli, ["call", "f", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "invoke" in result.output
        assert "ZeroDivisionError: division by zero" in result.output
        assert "Traceback: here" not in result.output

    def test_debug_shows_remote_traceback(self, runner, mock_dispatcher, mock_registry, workspace):
        mock_dispatcher.call.side_effect = InvocationError(
            "boom", remote_type="ValueError", remote_traceback="Traceback: here"
        )

        result = runner.invoke(cli, ["call", "f", "--debug", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "Traceback: here" in result.output

    def test_invalid_workspace_config(self, runner, mock_dispatcher, workspace):
        (workspace / "config.json").write_text("not json")

        result = runner.invoke(cli, ["call", "f", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "Failed to load config" in result.output


class TestDaemonCommands:
    """pycall start/stop/status."""

    def test_start(self, runner, mock_registry, workspace):
        result = runner.invoke(
            cli,
            ["start", "--port", "3200", "--isolated", "--threads", "2", "--workspace", str(workspace)],
        )

        assert result.exit_code == 0, result.output
        assert "ready on port 3200" in result.output
        mock_registry.start.assert_called_once_with(
            3200, shared=False, restart=False, threads=2, workspace=workspace
        )

    def test_start_timeout(self, runner, mock_registry, workspace):
        mock_registry.start.side_effect = StartupTimeout("not ready after 60s")

        result = runner.invoke(cli, ["start", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "not ready after 60s" in result.output

    def test_stop(self, runner, mock_registry, workspace):
        result = runner.invoke(cli, ["stop", "--port", "3300", "--workspace", str(workspace)])

        assert result.exit_code == 0
        assert "stopped on port 3300" in result.output
        mock_registry.shutdown.assert_called_once_with(3300)

    def test_status(self, runner, mock_registry, workspace):
        mock_registry.status.return_value = {"pid": 123, "calls_served": 5}

        result = runner.invoke(cli, ["status", "--workspace", str(workspace)])

        assert result.exit_code == 0
        assert "calls_served" in result.output
        assert "5" in result.output

    def test_status_not_running(self, runner, mock_registry, workspace):
        mock_registry.status.side_effect = ServerUnreachable("refused")

        result = runner.invoke(cli, ["status", "--workspace", str(workspace)])

        assert result.exit_code == 1
        assert "not running" in result.output


class TestGroup:
    def test_help_without_command(self, runner):
        result = runner.invoke(cli, [])

        assert result.exit_code == 0
        assert "call" in result.output
        assert "stop" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.3.0" in result.output
