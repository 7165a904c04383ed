#!/usr/bin/env python3
"""
vm-handoff PCI topology - VGA controller listing

Finds the GPUs currently installed in the host, so the handoff knows
whether the display stack has to be released at all.
"""

import logging
import subprocess
from typing import List

from handoff_common.exceptions import GPUListError

from .address import DeviceAddress

logger = logging.getLogger(__name__)


class VGAScanner:
    """Lists VGA controllers with lspci."""

    LSPCI_COMMAND = ["lspci", "-vnD"]
    VGA_MARKER = "[VGA controller]"

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    def list_vga_devices(self) -> List[DeviceAddress]:
        """
        Return the addresses of all VGA controllers.

        Raises:
            GPUListError: If lspci fails or cannot be run
        """
        try:
            result = subprocess.run(
                self.LSPCI_COMMAND,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GPUListError(str(e)) from e

        if result.returncode != 0:
            raise GPUListError((result.stderr or result.stdout).strip())

        return self.parse_lspci(result.stdout)

    @classmethod
    def parse_lspci(cls, output: str) -> List[DeviceAddress]:
        """
        Parse `lspci -vnD` output.

        The first line of each device block looks like:
        "0000:03:00.0 0300: 1002:73bf (rev c1) (prog-if 00 [VGA controller])"
        """
        gpus = []
        for line in output.splitlines():
            if cls.VGA_MARKER not in line:
                continue
            try:
                gpus.append(DeviceAddress.parse(line.split()[0]))
            except (IndexError, ValueError):
                logger.warning(f"Unexpected lspci line: {line.strip()}")
        return gpus
