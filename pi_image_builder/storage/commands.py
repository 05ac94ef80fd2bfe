"""External tool execution.

Every partitioning, LVM, filesystem, loop and mount tool is invoked through
this module with an argument list (never a shell string). Failures are raised
as CommandFailedError carrying the tool's combined output so the orchestrator
can report what the tool said.
"""

from __future__ import annotations

import subprocess
from typing import Optional, Sequence

from pi_image_builder.logging import get_logger

from .exceptions import CommandFailedError, CommandTimeoutError

log = get_logger(source="command", tags=["command"])


def _combined_output(stdout: Optional[str], stderr: Optional[str]) -> str:
    parts = [part.strip() for part in (stderr, stdout) if part and part.strip()]
    return "\n".join(parts)


def run_command(
    command: Sequence[str],
    *,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process without checking it.

    Raises:
        CommandTimeoutError: If the command exceeded ``timeout`` seconds
        CommandFailedError: If the executable could not be started
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        output = _combined_output(
            error.stdout if isinstance(error.stdout, str) else None,
            error.stderr if isinstance(error.stderr, str) else None,
        )
        log.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        raise CommandTimeoutError(command, timeout, output) from error
    except FileNotFoundError as error:
        raise CommandFailedError(command, None, f"{command[0]} not found") from error
    if result.stdout:
        log.bind(tags=["command", "output"]).trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        log.bind(tags=["command", "output"]).trace(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(
    command: Sequence[str],
    *,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Run a command and raise CommandFailedError if it fails.

    Returns:
        The command's stdout
    """
    command = [str(part) for part in command]
    result = run_command(command, input_text=input_text, timeout=timeout)
    if result.returncode != 0:
        output = _combined_output(result.stdout, result.stderr)
        log.error(f"Command failed ({' '.join(command)}): {output or 'no output'}")
        raise CommandFailedError(command, result.returncode, output)
    return result.stdout
