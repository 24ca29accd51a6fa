"""Subprocess execution for Overseer.

Runs external commands with a timeout and captures stdout/stderr into a
structured result. The git collaborator used by rollback is built on this.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from overseer.core.exceptions import ShellTimeoutError, ToolError

logger = logging.getLogger("overseer.tools.shell")

DEFAULT_TIMEOUT = 60  # seconds
MAX_OUTPUT_BYTES = 1_048_576


@dataclass
class ShellResult:
    """Structured result from a subprocess."""
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0

    @property
    def message(self) -> str:
        """Best available diagnostic text for a failed command."""
        return (self.stderr or self.stdout).strip()


def run_command(
    command: list[str],
    cwd: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
) -> ShellResult:
    """Execute a command (argument list, never a shell string).

    Raises:
        ShellTimeoutError: If the command exceeds timeout.
        ToolError: If the command can't be started.
    """
    if not command:
        raise ToolError("Empty command")
    cmd_str = " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%ds)", cmd_str, cwd, timeout)

    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("Command timed out after %ds: %s", timeout, cmd_str)
        raise ShellTimeoutError(f"Command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    stdout = _truncate_output(result.stdout)
    stderr = _truncate_output(result.stderr)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars",
        result.returncode, len(stdout), len(stderr),
    )
    return ShellResult(
        command=cmd_str,
        return_code=result.returncode,
        stdout=stdout,
        stderr=stderr,
    )


def _truncate_output(text: str) -> str:
    if len(text.encode("utf-8")) <= MAX_OUTPUT_BYTES:
        return text

    encoded = text.encode("utf-8")[:MAX_OUTPUT_BYTES]
    truncated = encoded.decode("utf-8", errors="ignore")
    return truncated + "\n... [output truncated]"
