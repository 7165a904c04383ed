"""
VM Control - the libvirt operations the orchestrator needs.

Reads the PCI hostdev list from the domain XML, reports the run state,
and starts or stops the domain.
"""

from __future__ import annotations

import logging
import subprocess
import xml.etree.ElementTree as ET
from enum import Enum
from typing import List, Optional

try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    LIBVIRT_AVAILABLE = False
    libvirt = None

from handoff_common.exceptions import ConfigUnavailableError, VMError, VMStartError
from pci_topology.address import DeviceAddress

from .connection import LibvirtConnection, open_connection

logger = logging.getLogger(__name__)

HOSTDEV_XPATH = "./devices/hostdev[@type='pci']/source/address"


class VMState(Enum):
    """Virtual machine states matching libvirt domain states."""
    NOSTATE = 0
    RUNNING = 1
    BLOCKED = 2
    PAUSED = 3
    SHUTDOWN = 4
    SHUTOFF = 5
    CRASHED = 6
    PMSUSPENDED = 7

    @property
    def is_active(self) -> bool:
        return self not in (VMState.SHUTOFF, VMState.NOSTATE)


def parse_hostdevs(xml: str) -> List[DeviceAddress]:
    """
    Extract PCI passthrough addresses from a domain XML description.

    Raises:
        ValueError: If the XML or an address in it is malformed
    """
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as e:
        raise ValueError(f"invalid domain XML: {e}") from e

    addresses = []
    for node in root.findall(HOSTDEV_XPATH):
        try:
            addresses.append(DeviceAddress.from_libvirt(
                node.get("domain", "0x0000"),
                node.get("bus"),
                node.get("slot"),
                node.get("function"),
            ))
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid hostdev address {node.attrib}: {e}") from e
    return addresses


class VMControl:
    """
    libvirt-backed VM control.

    Args:
        uri: Hypervisor URI
        connection: Existing connection manager (opened lazily otherwise)
    """

    def __init__(self, uri: str = "qemu:///system", connection: Optional[LibvirtConnection] = None):
        self.uri = uri
        self._conn = connection

    @property
    def connection(self) -> LibvirtConnection:
        if self._conn is None:
            self._conn = open_connection(self.uri)
        return self._conn

    def get_config(self, name: str) -> List[DeviceAddress]:
        """
        PCI devices assigned to the VM.

        Raises:
            ConfigUnavailableError: If the domain can't be queried or parsed
        """
        try:
            with self.connection.get_connection() as conn:
                xml = conn.lookupByName(name).XMLDesc(0)
        except VMError as e:
            raise ConfigUnavailableError(name, e.message, cause=e) from e
        except libvirt.libvirtError as e:
            raise ConfigUnavailableError(name, str(e), cause=e) from e

        try:
            devices = parse_hostdevs(xml)
        except ValueError as e:
            raise ConfigUnavailableError(name, str(e), cause=e) from e

        logger.debug(f"VM {name} has {len(devices)} PCI hostdev(s)")
        return devices

    def get_run_state(self, name: str) -> VMState:
        """
        Current domain state.

        Raises:
            VMError: If the state can't be queried
        """
        try:
            with self.connection.get_connection() as conn:
                state, _reason = conn.lookupByName(name).state()
        except VMError:
            raise
        except libvirt.libvirtError as e:
            raise VMError(
                f"Failed to get state of VM '{name}': {e}",
                code="VM_STATE_UNAVAILABLE",
                details={"vm_name": name},
                cause=e,
            ) from e

        try:
            return VMState(state)
        except ValueError:
            return VMState.NOSTATE

    def is_running(self, name: str) -> bool:
        """True while the domain is active; a failed query counts as stopped."""
        try:
            return self.get_run_state(name).is_active
        except VMError as e:
            logger.warning(f"{e.message}; assuming it is stopped")
            return False

    def start(self, name: str, attach_console: bool = False) -> None:
        """
        Start the domain, optionally attaching to its serial console.

        Raises:
            VMStartError: If libvirt refuses to start the domain
        """
        logger.info(f"Starting VM {name}...")
        try:
            with self.connection.get_connection() as conn:
                conn.lookupByName(name).create()
        except VMError as e:
            raise VMStartError(name, e.message) from e
        except libvirt.libvirtError as e:
            raise VMStartError(name, str(e)) from e

        logger.info(f"VM {name} started")
        if attach_console:
            self.attach_console(name)

    def attach_console(self, name: str) -> int:
        """Run an interactive `virsh console` session; returns when it detaches."""
        cmd = ["virsh", "-c", self.uri, "console", name]
        try:
            returncode = subprocess.run(cmd).returncode
        except OSError as e:
            logger.warning(f"Could not attach console of VM {name}: {e}")
            return 127
        if returncode != 0:
            logger.warning(f"virsh console for {name} exited with {returncode}")
        return returncode

    def shutdown(self, name: str) -> bool:
        """Ask the guest to shut down (ACPI)."""
        logger.info(f"Shutting down VM {name}...")
        try:
            with self.connection.get_connection() as conn:
                conn.lookupByName(name).shutdown()
            return True
        except VMError as e:
            logger.warning(f"Failed to shut down VM {name}: {e.message}")
            return False
        except libvirt.libvirtError as e:
            logger.warning(f"Failed to shut down VM {name}: {e}")
            return False

    def force_stop(self, name: str) -> bool:
        """Power the domain off immediately."""
        logger.info(f"Force stopping VM {name}...")
        try:
            with self.connection.get_connection() as conn:
                conn.lookupByName(name).destroy()
            return True
        except VMError as e:
            logger.warning(f"Failed to force stop VM {name}: {e.message}")
            return False
        except libvirt.libvirtError as e:
            logger.warning(f"Failed to force stop VM {name}: {e}")
            return False
