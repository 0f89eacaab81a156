"""Subprocess execution for build, test, git and provider CLI commands.

Commands run in their own process group so a timeout takes down the
whole tree (test hosts, watch processes, agent CLIs), not just the
shell that started it.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Optional

from src.core.exceptions import ShellTimeoutError, ToolError

logger = logging.getLogger("repairloop.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576
KILL_GRACE_SECONDS = 5


@dataclass
class ShellResult:
    command: str
    return_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """stdout and stderr joined, as a human would see them in a terminal."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


def run_command(
    command: str | list[str],
    cwd: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
) -> ShellResult:
    """Run `command` and capture its output.

    A string goes through the shell; a list is executed directly. `env`
    is layered over the current environment.

    Raises:
        ShellTimeoutError: The command outlived `timeout`; its process
            group was killed and any output so far is on the exception.
        ToolError: The command could not be started.
    """
    cmd_str = command if isinstance(command, str) else " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%ds)", cmd_str[:200], cwd, timeout)

    try:
        proc = subprocess.Popen(
            command,
            shell=isinstance(command, str),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        stdout, stderr = _kill_group(proc)
        logger.warning("Command timed out after %ds: %s", timeout, cmd_str[:200])
        raise ShellTimeoutError(cmd_str, timeout, _truncate_output(stdout), _truncate_output(stderr))

    stdout = _truncate_output(stdout or "")
    stderr = _truncate_output(stderr or "")
    logger.debug("Command finished: rc=%d stdout=%d chars stderr=%d chars", proc.returncode, len(stdout), len(stderr))
    return ShellResult(command=cmd_str, return_code=proc.returncode, stdout=stdout, stderr=stderr)


def _kill_group(proc: subprocess.Popen) -> tuple[str, str]:
    """SIGTERM the process group, then SIGKILL it if it lingers."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            break
        try:
            stdout, stderr = proc.communicate(timeout=KILL_GRACE_SECONDS)
            return stdout or "", stderr or ""
        except subprocess.TimeoutExpired:
            continue
    stdout, stderr = proc.communicate()
    return stdout or "", stderr or ""


def _truncate_output(text: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    return encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore") + "\n... [output truncated]"
