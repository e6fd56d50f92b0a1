"""Unit tests for remote_exec module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from swarmlab.remote_exec import (
    ConnectivityError,
    RemoteExecError,
    RemoteExecutor,
    RemoteResult,
)


class TestRemoteResult:
    """Tests for RemoteResult dataclass."""

    def test_get_output_both(self):
        """Test getting combined output."""
        result = RemoteResult(
            host="10.0.0.2", success=True, stdout="stdout text", stderr="stderr text", exit_code=0
        )
        assert result.get_output() == "stdout text\nstderr text"

    def test_get_output_stderr_only(self):
        """Test getting stderr only."""
        result = RemoteResult(
            host="10.0.0.2", success=False, stdout="", stderr="error message", exit_code=1
        )
        assert result.get_output() == "error message"


class TestRemoteExecutor:
    """Tests for RemoteExecutor class."""

    def test_build_ssh_command(self):
        executor = RemoteExecutor(key_path=Path("/home/pi/.ssh/id_ed25519"))

        cmd = executor.build_ssh_command("10.0.0.2", "pi", "docker info", timeout=30)

        assert cmd[0] == "ssh"
        assert "BatchMode=yes" in cmd
        assert "ConnectTimeout=10" in cmd
        assert cmd[-4:] == ["-i", "/home/pi/.ssh/id_ed25519", "pi@10.0.0.2", "docker info"]

    def test_connect_timeout_bounded_by_command_timeout(self):
        cmd = RemoteExecutor().build_ssh_command("h", "u", "true", timeout=3)

        assert "ConnectTimeout=3" in cmd
        assert "-i" not in cmd

    @patch("swarmlab.remote_exec.subprocess.run")
    def test_execute_command_success(self, mock_run):
        """Test successful command execution."""
        mock_run.return_value = MagicMock(returncode=0, stdout="command output", stderr="")

        result = RemoteExecutor().execute_command("10.0.0.2", "pi", "ls -la", timeout=30)

        assert result.success is True
        assert result.stdout == "command output"
        assert result.exit_code == 0
        assert result.host == "10.0.0.2"
        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True
        assert "shell" not in kwargs

    @patch("swarmlab.remote_exec.subprocess.run")
    def test_execute_command_failure(self, mock_run):
        """Non-zero exits are results, not exceptions."""
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="command not found")

        result = RemoteExecutor().execute_command("10.0.0.2", "pi", "badcommand")

        assert result.success is False
        assert result.stderr == "command not found"
        assert result.exit_code == 1

    @patch("swarmlab.remote_exec.subprocess.run")
    def test_ssh_connection_failure(self, mock_run):
        mock_run.return_value = MagicMock(
            returncode=255, stdout="", stderr="ssh: connect to host 10.0.0.2 port 22: No route"
        )

        with pytest.raises(ConnectivityError, match="Cannot reach pi@10.0.0.2"):
            RemoteExecutor().execute_command("10.0.0.2", "pi", "true")

    @patch("swarmlab.remote_exec.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="ssh", timeout=5)

        with pytest.raises(ConnectivityError, match="timed out after 5s"):
            RemoteExecutor().execute_command("10.0.0.2", "pi", "sleep 60", timeout=5)

    @patch("swarmlab.remote_exec.subprocess.run")
    def test_ssh_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("ssh")

        with pytest.raises(RemoteExecError) as exc_info:
            RemoteExecutor().execute_command("10.0.0.2", "pi", "true")

        assert not isinstance(exc_info.value, ConnectivityError)
