"""Unit tests for CLI commands.

The run_* entry points are patched out so only argument handling and exit
codes are exercised.
"""

from unittest import mock

import pytest
from click.testing import CliRunner

from cradle_rtc.cli import cli


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestServerCommand:
    def test_passes_host_and_port(self, runner):
        with mock.patch("cradle_rtc.cli.run_server") as run_server:
            result = runner.invoke(cli, ["server", "--host", "127.0.0.1", "--port", "9000"])

        assert result.exit_code == 0
        run_server.assert_called_once_with(host="127.0.0.1", port=9000)

    def test_defaults_come_from_config(self, runner):
        with mock.patch("cradle_rtc.cli.run_server") as run_server:
            result = runner.invoke(cli, ["server"])

        assert result.exit_code == 0
        run_server.assert_called_once_with(host=None, port=None)

    def test_rejects_bad_port(self, runner):
        with mock.patch("cradle_rtc.cli.run_server") as run_server:
            result = runner.invoke(cli, ["server", "--port", "70000"])

        assert result.exit_code == 1
        run_server.assert_not_called()


class TestMonitorCommand:
    def test_runs_monitor(self, runner):
        with mock.patch("cradle_rtc.cli.run_monitor", return_value=None) as run_monitor:
            result = runner.invoke(cli, ["monitor", "--server", "ws://pairing:8080"])

        assert result.exit_code == 0
        assert run_monitor.call_args.kwargs["server"] == "ws://pairing:8080"

    def test_prints_pairing_code(self, runner):
        def fake_run(server, on_code, on_state):
            on_code("482913")
            return None

        with mock.patch("cradle_rtc.cli.run_monitor", side_effect=fake_run):
            result = runner.invoke(cli, ["monitor"])

        assert "Pairing code: 482913" in result.output

    def test_signaling_loss_exits_nonzero(self, runner):
        with mock.patch("cradle_rtc.cli.run_monitor", return_value="signaling unavailable"):
            result = runner.invoke(cli, ["monitor"])

        assert result.exit_code == 1


class TestViewerCommand:
    def test_code_is_required(self, runner):
        result = runner.invoke(cli, ["viewer"])
        assert result.exit_code != 0
        assert "--code" in result.output

    @pytest.mark.parametrize("code", ["12345", "1234567", "abcdef", "48 2913"])
    def test_rejects_malformed_code(self, runner, code):
        with mock.patch("cradle_rtc.cli.run_viewer") as run_viewer:
            result = runner.invoke(cli, ["viewer", "--code", code])

        assert result.exit_code == 1
        run_viewer.assert_not_called()

    def test_runs_viewer(self, runner):
        with mock.patch("cradle_rtc.cli.run_viewer", return_value=None) as run_viewer:
            result = runner.invoke(
                cli, ["viewer", "--code", " 482913 ", "--record", "baby.wav"]
            )

        assert result.exit_code == 0
        assert run_viewer.call_args.args == ("482913",)
        assert run_viewer.call_args.kwargs["record"] == "baby.wav"

    def test_pairing_failure_exits_nonzero(self, runner):
        with mock.patch("cradle_rtc.cli.run_viewer", return_value="pairing failed"):
            result = runner.invoke(cli, ["viewer", "--code", "482913"])

        assert result.exit_code == 1

    def test_monitor_leaving_is_not_an_error(self, runner):
        with mock.patch("cradle_rtc.cli.run_viewer", return_value="monitor disconnected"):
            result = runner.invoke(cli, ["viewer", "--code", "482913"])

        assert result.exit_code == 0
        assert "monitor disconnected" in result.output
