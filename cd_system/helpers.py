"""
Provides the utilities(functions) needed by the deployment daemon:
    - run_command
"""

import logging
import subprocess
from typing import NamedTuple

from cd_system.errors import TransportError

logger = logging.getLogger(__name__)

# Exit statuses the shell uses when it cannot run the program at all
SHELL_NOT_EXECUTABLE = 126
SHELL_NOT_FOUND = 127


class CommandResult(NamedTuple):
    stdout: str
    stderr: str
    ok: bool


def run_command(command: str, cwd: str) -> CommandResult:
    """
    Execute a shell command in cwd and capture its output

    :param command: command to execute
    :param cwd: working directory the command runs in
    :return: CommandResult with the decoded output and ok=False on non-zero exit
    :raises TransportError: if the command could not be started
    """
    logger.info(f"Executing: {command}")
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            shell=True,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise TransportError(f"Could not run '{command}' in '{cwd}': {e}") from e

    if process.returncode in (SHELL_NOT_FOUND, SHELL_NOT_EXECUTABLE):
        raise TransportError(f"Could not run '{command}': {process.stderr.strip()}")

    if process.stdout:
        logger.info(process.stdout.rstrip())
    if process.stderr:
        logger.warning(process.stderr.rstrip())
    return CommandResult(process.stdout, process.stderr, process.returncode == 0)
