"""
Driver Rebind Engine - moves PCI devices between their native driver and vfio-pci.

Uses the kernel's driver_override protocol:
1. write the wanted driver (or a newline to clear it) to driver_override
2. unbind the currently bound driver, if any
3. ask the bus to probe the device again via drivers_probe
4. read the driver symlink back to see what actually attached
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from handoff_common.exceptions import ErrorKind
from pci_topology.address import DeviceAddress
from pci_topology.sysfs import SysfsLayout

from .guarded_write import GuardedWriter, WriteResult

logger = logging.getLogger(__name__)

CLEAR_OVERRIDE = "\n"


class RebindOutcome(Enum):
    """How a bind or restore ended."""
    BOUND = "bound"
    ALREADY_BOUND = "already_bound"
    RESTORED = "restored"
    ALREADY_RESTORED = "already_restored"
    UNBOUND = "unbound"
    OVERRIDE_FAILED = "override_failed"
    MISMATCH = "mismatch"


@dataclass
class RebindResult:
    """Result of a rebind operation."""
    address: DeviceAddress
    success: bool
    outcome: RebindOutcome
    driver: str = ""
    kind: Optional[ErrorKind] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)


class DriverRebindEngine:
    """
    Binds devices to the passthrough driver and back.

    Each operation reads the current driver from sysfs first; nothing is
    cached across writes because the kernel is the only source of truth.
    """

    def __init__(
        self,
        writer: GuardedWriter,
        sysfs: Optional[SysfsLayout] = None,
        passthrough_driver: str = "vfio-pci",
    ):
        self.writer = writer
        self.sysfs = sysfs or SysfsLayout()
        self.passthrough_driver = passthrough_driver

    def current_driver(self, address: DeviceAddress) -> str:
        """Driver currently bound to the device ("" when unbound)."""
        return self.sysfs.current_driver(address)

    def bind_passthrough(self, address: DeviceAddress) -> RebindResult:
        """
        Bind a device to the passthrough driver.

        Returns:
            RebindResult; success is False on a failed write or when a
            different driver attached.
        """
        target = self.passthrough_driver
        current = self.current_driver(address)

        if current == target:
            logger.info(f"Device {address} is already using {target}!")
            return RebindResult(address, True, RebindOutcome.ALREADY_BOUND, driver=current)

        logger.info(f"Overriding device's {address} driver to {target}")
        failed = self._override(address, target)
        if failed is not None:
            message = f"{failed.path}: {failed.message}"
            logger.error(f"Failed to bind {address} to {target}: {message}")
            return RebindResult(
                address, False, RebindOutcome.OVERRIDE_FAILED,
                driver=self.current_driver(address),
                kind=failed.kind,
                message=message,
            )

        bound = self.current_driver(address)
        if bound != target:
            message = f"expected {target}, found {bound or 'no driver'}"
            logger.error(f"Failed to bind {address}: {message}")
            return RebindResult(
                address, False, RebindOutcome.MISMATCH,
                driver=bound,
                kind=ErrorKind.VERIFICATION_MISMATCH,
                message=message,
            )

        return RebindResult(address, True, RebindOutcome.BOUND, driver=bound)

    def restore_original(self, address: DeviceAddress) -> RebindResult:
        """
        Give a device back to whatever driver the kernel matches for it.

        Failures are reported in the result (and logged as warnings) but a
        caller restoring many devices should keep going.
        """
        current = self.current_driver(address)

        if current and current != self.passthrough_driver:
            logger.info(f"Device {address} is already using correct {current}!")
            return RebindResult(address, True, RebindOutcome.ALREADY_RESTORED, driver=current)

        logger.info(f"Restoring device's {address} driver")
        failed = self._override(address, CLEAR_OVERRIDE)
        if failed is not None:
            message = f"{failed.path}: {failed.message}"
            logger.warning(f"Failed to restore driver of {address}: {message}")
            return RebindResult(
                address, False, RebindOutcome.OVERRIDE_FAILED,
                driver=self.current_driver(address),
                kind=failed.kind,
                message=message,
                warnings=[f"{address}: driver restore failed ({message})"],
            )

        restored = self.current_driver(address)
        if restored == self.passthrough_driver:
            message = f"still bound to {restored}"
            logger.warning(f"Failed to unbind {address}: {message}")
            return RebindResult(
                address, False, RebindOutcome.MISMATCH,
                driver=restored,
                kind=ErrorKind.VERIFICATION_MISMATCH,
                message=message,
                warnings=[f"{address}: {message}"],
            )

        if not restored:
            # The native driver may legitimately fail to probe (missing firmware, module)
            message = "no driver attached after probe"
            logger.warning(f"Device {address}: {message}")
            return RebindResult(
                address, True, RebindOutcome.UNBOUND,
                message=message,
                warnings=[f"{address}: {message}"],
            )

        logger.info(f"Device {address} restored to {restored}")
        return RebindResult(address, True, RebindOutcome.RESTORED, driver=restored)

    def bind_all(self, addresses: Iterable[DeviceAddress]) -> List[RebindResult]:
        """Bind devices in order, stopping at the first failure."""
        results = []
        for address in addresses:
            result = self.bind_passthrough(address)
            results.append(result)
            if not result.success:
                break
        return results

    def restore_all(self, addresses: Iterable[DeviceAddress]) -> List[RebindResult]:
        """Restore every device, whatever happens to the others."""
        return [self.restore_original(address) for address in addresses]

    def _override(self, address: DeviceAddress, driver: str) -> Optional[WriteResult]:
        """
        Run the driver_override protocol.

        Returns:
            The first failed WriteResult, or None if every write succeeded.
        """
        device_id = str(address)

        result = self.writer.write(self.sysfs.driver_override(address), driver)
        if not result.success:
            return result

        if self.sysfs.driver_link(address).is_symlink():
            result = self.writer.write(self.sysfs.driver_unbind(address), device_id)
            if not result.success:
                return result

        result = self.writer.write(self.sysfs.drivers_probe, device_id)
        if not result.success:
            return result

        return None
