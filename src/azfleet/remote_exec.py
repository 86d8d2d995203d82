"""Remote command execution module.

This module handles running shell scripts on fleet VMs over SSH with
password authentication (`sshpass` + OpenSSH).

The script is streamed to `bash -s` on stdin, so neither the script nor any
value embedded in it shows up in the remote process list. The admin password
is handed to sshpass through the SSHPASS environment variable instead of
argv.

Host-key verification is disabled by default: fleet VMs are ephemeral lab
hosts whose keys are never known in advance. Set `strict_host_key_checking`
to pin keys in ~/.ssh/known_hosts on first use instead.

Security:
- No shell=True
- Password never on argv
- Connect and command timeouts enforced

Remote output is captured as bytes and decoded as UTF-8 with replacement
characters, so arbitrary bytes in shell history cannot abort a run.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


def decode_output(data: bytes | None) -> str:
    """Decode remote output without failing on non-UTF-8 bytes.

    Line endings are left untouched: a lone CR inside a record is data.
    """
    return data.decode("utf-8", errors="replace") if data else ""


class RemoteExecError(Exception):
    """Raised when a remote script cannot be executed at all."""

    pass


@dataclass
class SSHConfig:
    """SSH connection configuration for password authentication."""

    host: str
    user: str
    password: str = field(repr=False)
    port: int = 22
    connect_timeout: int = 10
    strict_host_key_checking: bool = False


@dataclass
class RemoteResult:
    """Result from remote script execution."""

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


@runtime_checkable
class RemoteExecutor(Protocol):
    """Protocol for running a script on a remote host."""

    def run_script(self, ssh_config: SSHConfig, script: str) -> RemoteResult:
        """Run `script` on the host and return its output and exit status.

        Raises:
            RemoteExecError: If the script could not be run (timeout, missing tools)
        """
        ...


class SSHPasswordExecutor:
    """Run scripts on remote VMs via `sshpass -e ssh ... bash -s`."""

    def __init__(self, timeout: int = 120):
        """Initialize executor.

        Args:
            timeout: Overall timeout in seconds for one remote script
        """
        self.timeout = timeout

    @classmethod
    def build_ssh_command(cls, ssh_config: SSHConfig) -> list[str]:
        """Build the sshpass/ssh argument list for a config."""
        if ssh_config.strict_host_key_checking:
            host_key_opts = ["-o", "StrictHostKeyChecking=accept-new"]
        else:
            host_key_opts = [
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
            ]

        return [
            "sshpass",
            "-e",
            "ssh",
            *host_key_opts,
            "-o",
            f"ConnectTimeout={ssh_config.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
            "-o",
            "PubkeyAuthentication=no",
            "-o",
            "PreferredAuthentications=password,keyboard-interactive",
            "-p",
            str(ssh_config.port),
            f"{ssh_config.user}@{ssh_config.host}",
            "bash -s",
        ]

    def run_script(self, ssh_config: SSHConfig, script: str) -> RemoteResult:
        """Execute a script on a single VM.

        Args:
            ssh_config: SSH configuration
            script: Bash script, sent on stdin

        Returns:
            RemoteResult object

        Raises:
            RemoteExecError: If execution fails
        """
        ssh_cmd = self.build_ssh_command(ssh_config)
        env = {**os.environ, "SSHPASS": ssh_config.password}

        logger.debug(f"Running remote script on {ssh_config.user}@{ssh_config.host}")
        start_time = time.monotonic()

        try:
            result = subprocess.run(
                ssh_cmd,
                input=script.encode("utf-8"),
                capture_output=True,
                env=env,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteExecError(
                f"Command timed out after {self.timeout}s on {ssh_config.host}"
            ) from e
        except FileNotFoundError as e:
            raise RemoteExecError(f"Failed to execute command: {e}") from e

        return RemoteResult(
            host=ssh_config.host,
            success=result.returncode == 0,
            stdout=decode_output(result.stdout),
            stderr=decode_output(result.stderr),
            exit_code=result.returncode,
            duration=time.monotonic() - start_time,
        )


__all__ = [
    "RemoteExecError",
    "RemoteExecutor",
    "RemoteResult",
    "decode_output",
    "SSHConfig",
    "SSHPasswordExecutor",
]
