"""
External command runner for host tools (modprobe, rmmod, systemctl, virsh).
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import List

from handoff_common.exceptions import ErrorKind

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of an external command."""
    command: List[str]
    returncode: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def kind(self):
        return None if self.success else ErrorKind.EXTERNAL_TOOL_FAILURE


def run_command(command: List[str], timeout: int = 60) -> CommandResult:
    """
    Run a command, capturing stdout and stderr together.

    A missing binary or a timeout is reported as a failed result
    (return code 127 / 124) instead of raising.
    """
    logger.debug(f"Running: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        return CommandResult(command, 127, str(e))
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        return CommandResult(command, 124, f"timed out after {timeout}s")

    output = (result.stdout or "").strip()
    if result.returncode != 0 and output:
        logger.debug(output)
    return CommandResult(command, result.returncode, output)
