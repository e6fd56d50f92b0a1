"""Remote command execution module.

This module handles executing commands on fleet machines via SSH.
Used for node-side steps the swarm manager cannot do itself
(`docker swarm join`, `docker swarm leave`, connectivity checks).

Security:
- No shell=True
- Timeout enforcement
- Join tokens are redacted from logs
"""

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from swarmlab.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_FAILURE = 255


class RemoteExecError(Exception):
    """Raised when remote command execution fails."""

    pass


class ConnectivityError(RemoteExecError):
    """Raised when a remote host is unreachable or the call times out."""

    pass


@dataclass
class RemoteResult:
    """Result from remote command execution."""

    host: str
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0

    def get_output(self) -> str:
        """Get combined output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class RemoteExecutor:
    """Execute commands on fleet machines via SSH.

    Non-zero exit codes come back in RemoteResult; only connection
    failures raise.
    """

    def __init__(self, key_path: Path | None = None, connect_timeout: int = 10):
        """Initialize remote executor.

        Args:
            key_path: SSH private key (default: ssh agent / ssh config)
            connect_timeout: Upper bound for the ssh connect phase in seconds
        """
        self.key_path = key_path
        self.connect_timeout = connect_timeout

    def build_ssh_command(self, host: str, user: str, command: str, timeout: int) -> list[str]:
        """Build the ssh argument vector for a command."""
        ssh_cmd = [
            "ssh",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            "BatchMode=yes",
            "-o",
            "LogLevel=ERROR",
            "-o",
            f"ConnectTimeout={min(timeout, self.connect_timeout)}",
        ]
        if self.key_path is not None:
            ssh_cmd.extend(["-i", str(self.key_path)])
        ssh_cmd.extend([f"{user}@{host}", command])
        return ssh_cmd

    def execute_command(
        self, host: str, user: str, command: str, timeout: int = 30
    ) -> RemoteResult:
        """Execute command on a single host.

        Args:
            host: Hostname or IP
            user: SSH user
            command: Command to execute
            timeout: Timeout in seconds

        Returns:
            RemoteResult object (non-zero exit codes are not raised)

        Raises:
            ConnectivityError: If the host is unreachable or the call times out
            RemoteExecError: If ssh cannot be started
        """
        start_time = time.time()
        ssh_cmd = self.build_ssh_command(host, user, command, timeout)

        logger.debug(f"Executing on {user}@{host}: {LogSanitizer.sanitize(command)}")

        try:
            result = subprocess.run(
                ssh_cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ConnectivityError(f"Command timed out after {timeout}s on {host}") from e
        except OSError as e:
            raise RemoteExecError(f"Failed to execute command on {host}: {e}") from e

        duration = time.time() - start_time

        if result.returncode == SSH_CONNECTION_FAILURE:
            raise ConnectivityError(
                f"Cannot reach {user}@{host}: {LogSanitizer.sanitize(result.stderr.strip())}"
            )

        return RemoteResult(
            host=host,
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration=duration,
        )


__all__ = ["ConnectivityError", "RemoteExecError", "RemoteExecutor", "RemoteResult"]
