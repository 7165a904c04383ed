"""
systemd service control.
"""

import logging

from .command import CommandResult, run_command

logger = logging.getLogger(__name__)


class ServiceControl:
    """Starts and stops systemd units."""

    def __init__(self, timeout: int = 120):
        self.timeout = timeout

    def stop(self, name: str) -> CommandResult:
        logger.info(f"Stopping {name}...")
        result = run_command(["systemctl", "stop", name], timeout=self.timeout)
        if result.success:
            logger.info(f"{name} stopped")
        else:
            logger.error(f"Failed to stop {name}: {result.output}")
        return result

    def start(self, name: str) -> CommandResult:
        logger.info(f"Starting {name}...")
        result = run_command(["systemctl", "start", name], timeout=self.timeout)
        if result.success:
            logger.info(f"{name} started")
        else:
            logger.error(f"Failed to start {name}: {result.output}")
        return result
