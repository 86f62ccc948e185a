"""
Spawning commands through the platform shell.

POSIX commands run as ``sh -c "<command>"`` and Windows commands as
``cmd /C "<command>"``. Condition tests that have to be answered by a shell
run under ``bash -c`` (POSIX) or ``powershell -Command`` (Windows).
"""
import logging
import subprocess
import sys
from typing import List, Optional

from .errors import CommandExecutionError, ExpressionError
from .models import ProcessResult

logger = logging.getLogger(__name__)


def _is_windows(platform: Optional[str]) -> bool:
    return (platform or sys.platform).startswith("win")


def command_argv(command: str, shell: Optional[str] = None, platform: Optional[str] = None) -> List[str]:
    """
    argv for running a command string.

    ``shell`` overrides ``sh`` on POSIX only.
    """
    if _is_windows(platform):
        return ["cmd", "/C", command]
    return [shell or "sh", "-c", command]


def condition_argv(expression: str, shell: Optional[str] = None, platform: Optional[str] = None) -> List[str]:
    """argv that exits 0 when the expression holds and 1 otherwise."""
    if _is_windows(platform):
        return ["powershell", "-Command", f"if ({expression}) {{ exit 0 }} else {{ exit 1 }}"]
    return [shell or "bash", "-c", f"if {expression}; then exit 0; else exit 1; fi"]


class ShellRunner:
    """
    Runs commands and condition tests as child processes.

    Every call blocks until the child exits. There is no timeout.
    """

    def __init__(self, shell: Optional[str] = None, test_shell: Optional[str] = None):
        self.shell = shell
        self.test_shell = test_shell

    def run(self, command: str) -> ProcessResult:
        """
        Run a command and capture its output.

        Raises:
            CommandExecutionError: The process could not be spawned
        """
        argv = command_argv(command, self.shell)
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise CommandExecutionError(f"Failed to execute: {e}") from e

        return ProcessResult(
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def test(self, expression: str) -> bool:
        """
        Ask the shell whether an expression holds.

        Raises:
            ExpressionError: The shell could not be spawned
        """
        argv = condition_argv(expression, self.test_shell)
        try:
            completed = subprocess.run(argv, capture_output=True)
        except OSError as e:
            raise ExpressionError(f"Failed to evaluate expression '{expression}': {e}") from e
        logger.debug(f"Shell test '{expression}' exited with {completed.returncode}")
        return completed.returncode == 0
