#!/usr/bin/env python3
"""
vm-handoff PCI topology - IOMMU group resolver

Expands the PCI devices a VM asks for into their full IOMMU groups.
IOMMU groups are critical for safe device passthrough - all devices
in a group must be passed through together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Union

from handoff_common.exceptions import DeviceNotFoundError, IOMMUUnsupportedError, HardwareError

from .address import DeviceAddress
from .pci_config import read_config
from .sysfs import SysfsLayout

logger = logging.getLogger(__name__)


@dataclass
class IOMMUGroup:
    """An IOMMU group and its endpoint members, sorted by address."""

    group_id: str
    devices: List[DeviceAddress] = field(default_factory=list)

    @property
    def device_count(self) -> int:
        """Number of endpoint devices in the group."""
        return len(self.devices)

    @property
    def sort_key(self):
        # Numeric ids sort numerically, anything else after them by name
        if self.group_id.isdigit():
            return (0, int(self.group_id), "")
        return (1, 0, self.group_id)

    def __str__(self) -> str:
        members = ", ".join(str(d) for d in self.devices) or "(no endpoints)"
        return f"IOMMU group {self.group_id}: {members}"


@dataclass
class TopologyResult:
    """Resolved passthrough work set."""

    groups: List[IOMMUGroup] = field(default_factory=list)

    @property
    def group_ids(self) -> List[str]:
        """Distinct group ids in resolution order."""
        return [g.group_id for g in self.groups]

    @property
    def devices(self) -> List[DeviceAddress]:
        """Flattened, group-ordered device list: the unit of work."""
        return [device for group in self.groups for device in group.devices]

    def __bool__(self) -> bool:
        return bool(self.groups)


class PCITopologyResolver:
    """Resolves requested PCI devices into IOMMU groups via sysfs."""

    def __init__(self, sysfs: SysfsLayout = None):
        self.sysfs = sysfs or SysfsLayout()

    def resolve(
        self,
        addresses: Iterable[Union[str, DeviceAddress]],
        continue_on_error: bool = False,
    ) -> TopologyResult:
        """
        Resolve devices into their IOMMU groups.

        Args:
            addresses: Requested PCI devices
            continue_on_error: Log and skip devices that fail to resolve

        Returns:
            TopologyResult with groups ordered by id and members by address.

        Raises:
            DeviceNotFoundError: Device missing from sysfs (strict mode)
            IOMMUUnsupportedError: Device has no IOMMU group (strict mode)
        """
        groups: Dict[str, IOMMUGroup] = {}

        for address in addresses:
            address = DeviceAddress.parse(address)
            try:
                group = self._resolve_one(address)
            except HardwareError as e:
                if not continue_on_error:
                    raise
                logger.warning(f"Skipping {address}: {e.message}")
                continue

            if group.group_id not in groups:
                groups[group.group_id] = group

        result = TopologyResult(groups=sorted(groups.values(), key=lambda g: g.sort_key))
        for group in result.groups:
            logger.info(str(group))
        return result

    def _resolve_one(self, address: DeviceAddress) -> IOMMUGroup:
        if not self.sysfs.device(address).is_dir():
            raise DeviceNotFoundError(str(address))

        group_id = self.sysfs.iommu_group_id(address)
        if group_id is None:
            raise IOMMUUnsupportedError(str(address))

        members = []
        for name in self.sysfs.iommu_group_members(address):
            try:
                member = DeviceAddress.parse(name)
            except ValueError:
                logger.debug(f"Ignoring non-PCI group member {name}")
                continue
            config = read_config(self.sysfs.config(member))
            if config.is_endpoint:
                members.append(member)
            else:
                logger.debug(f"Leaving out {member} (header type {config.header_type:#04x})")

        return IOMMUGroup(group_id=group_id, devices=sorted(members))
