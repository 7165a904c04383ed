"""
Kernel module control via modprobe/rmmod.
"""

import logging
import re

from .command import CommandResult, run_command

logger = logging.getLogger(__name__)

NOT_LOADED = re.compile(r"is not currently loaded")


class KernelModuleControl:
    """Loads and unloads kernel modules."""

    def __init__(self, timeout: int = 60):
        self.timeout = timeout

    def load(self, name: str) -> CommandResult:
        """Load a module with modprobe."""
        logger.info(f"Loading {name} module...")
        result = run_command(["modprobe", name], timeout=self.timeout)
        if result.success:
            logger.info(f"Module {name} loaded")
        else:
            logger.error(f"Failed to load module {name}: {result.output}")
        return result

    def unload(self, name: str) -> CommandResult:
        """
        Unload a module with rmmod.

        A module that is not loaded counts as successfully unloaded.
        """
        logger.info(f"Unloading {name} module...")
        result = run_command(["rmmod", name], timeout=self.timeout)
        if not result.success and NOT_LOADED.search(result.output):
            logger.info(f"Module {name} was not loaded")
            return CommandResult(result.command, 0, result.output)
        if result.success:
            logger.info(f"Module {name} unloaded")
        else:
            logger.error(f"Failed to unload module {name}: {result.output}")
        return result
