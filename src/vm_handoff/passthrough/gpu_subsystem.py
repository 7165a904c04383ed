"""
GPU Subsystem Controller - releases the host display stack before a GPU is
handed to vfio-pci and brings it back afterwards.

Release:   display manager -> VT console -> firmware framebuffer -> GPU modules
Reacquire: GPU modules -> native GPU driver -> firmware framebuffer -> VT console
           -> display manager
"""

from __future__ import annotations

import errno
import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from handoff_common.exceptions import (
    ConsoleUnbindError, DisplayServerError, GPUListError, ModuleUnloadError,
)
from handoff_common.polling import RetryPolicy, poll_until
from pci_topology.address import DeviceAddress
from pci_topology.gpu_scanner import VGAScanner

from ..config import HandoffConfig
from ..host.modules import KernelModuleControl
from ..host.services import ServiceControl
from .driver_rebind import DriverRebindEngine
from .guarded_write import GuardedWriter

logger = logging.getLogger(__name__)

FB_CONSOLE_NAME = "frame buffer device"


class GPUSubsystemController:
    """
    Coordinates the host-side consumers of a passed-through GPU.

    Both sequences are skipped entirely when none of the devices is a VGA
    controller, so a USB controller or NIC never touches the display.
    """

    def __init__(
        self,
        config: HandoffConfig,
        writer: GuardedWriter,
        rebind: DriverRebindEngine,
        modules: Optional[KernelModuleControl] = None,
        services: Optional[ServiceControl] = None,
        scanner: Optional[VGAScanner] = None,
        sleep: Callable[[float], object] = time.sleep,
    ):
        self.config = config
        self.sysfs = config.sysfs
        self.writer = writer
        self.rebind = rebind
        self.modules = modules or KernelModuleControl()
        self.services = services or ServiceControl()
        self.scanner = scanner or VGAScanner()
        self._sleep = sleep
        self._released_gpus: List[DeviceAddress] = []

    @property
    def framebuffer_path(self) -> Path:
        return self.sysfs.platform_driver(self.config.framebuffer_driver)

    def gpus_in(self, devices: Iterable[DeviceAddress]) -> List[DeviceAddress]:
        """
        Devices from the list that are currently installed VGA controllers.

        Raises:
            GPUListError: If lspci fails
        """
        vga = set(self.scanner.list_vga_devices())
        return [d for d in devices if d in vga]

    # =========================================================================
    # Release
    # =========================================================================

    def release(self, devices: Iterable[DeviceAddress]) -> bool:
        """
        Free the GPU from every host consumer.

        Returns:
            True if a release was performed, False if no GPU is involved.

        Raises:
            GPUListError, DisplayServerError, ConsoleUnbindError,
            WriteTimeoutError, ControlFileError, ModuleUnloadError
        """
        gpus = self.gpus_in(devices)
        if not gpus:
            logger.info("No GPU for VM! Won't unload GPU!")
            return False

        self._released_gpus = gpus
        logger.info(f"Releasing host GPU(s): {', '.join(str(g) for g in gpus)}")

        self.stop_display_server()
        self.unbind_console()
        self.unbind_framebuffer()
        self.unload_modules()
        return True

    def stop_display_server(self) -> None:
        result = self.services.stop(self.config.display_service)
        if not result.success:
            raise DisplayServerError(self.config.display_service, result.output)

    def unbind_console(self) -> None:
        """Unbind the framebuffer console once and verify it reads back 0."""
        console = self.find_fb_console()
        if console is None:
            return

        logger.info(f"Unbinding {console.name}...")
        bind_path = console / "bind"
        self.writer.write(bind_path, "0").raise_on_failure(self.writer.timeout)

        value = self._read(bind_path)
        if value != "0":
            raise ConsoleUnbindError(console.name, value)
        logger.info(f"{console.name} unbound")

    def unbind_framebuffer(self) -> None:
        """Detach the firmware framebuffer; absence means it is already detached."""
        fb_id = self.config.framebuffer_id
        if not (self.framebuffer_path / fb_id).is_symlink():
            logger.info(f"{fb_id} not present (probably already unbound)")
            return

        logger.info(f"Unbinding {fb_id}...")
        self.writer.write(self.framebuffer_path / "unbind", fb_id).raise_on_failure(
            self.writer.timeout
        )
        logger.info(f"{fb_id} unbound")

    def unload_modules(self) -> None:
        for name in self.config.gpu_modules_unload:
            result = self.modules.unload(name)
            if not result.success:
                raise ModuleUnloadError(name, result.output)

    # =========================================================================
    # Reacquire
    # =========================================================================

    def reacquire(self, devices: Iterable[DeviceAddress]) -> List[str]:
        """
        Give the GPU back to the host. Never raises.

        Returns:
            Warnings for every step that did not fully succeed.
        """
        devices = list(devices)
        warnings: List[str] = []

        try:
            gpus = self.gpus_in(devices)
        except GPUListError as e:
            # Fall back to what release saw so the display still comes back
            gpus = [d for d in self._released_gpus if d in devices]
            warnings.append(e.message)
            logger.warning(f"{e.message}; using GPUs seen at release: {gpus}")

        if not gpus:
            logger.info("No GPU for VM!")
            return warnings

        logger.info(f"Reacquiring host GPU(s): {', '.join(str(g) for g in gpus)}")

        warnings.extend(self.load_modules())

        # The framebuffer and console steps need the native driver in place
        for result in self.rebind.restore_all(gpus):
            warnings.extend(result.warnings)

        warnings.extend(self.bind_framebuffer())
        warnings.extend(self.bind_console())
        warnings.extend(self.start_display_server())

        self._released_gpus = []
        return warnings

    def load_modules(self) -> List[str]:
        warnings = []
        for name in self.config.gpu_modules_load:
            result = self.modules.load(name)
            if not result.success:
                warnings.append(f"Failed to load module {name}: {result.output}")
        return warnings

    def bind_framebuffer(self) -> List[str]:
        """Reattach the firmware framebuffer; EINVAL is reported, not fatal."""
        fb_id = self.config.framebuffer_id
        logger.info(f"Binding {fb_id}...")

        result = self.writer.write(self.framebuffer_path / "bind", fb_id)
        if result.success:
            logger.info(f"{fb_id} bound")
            return []

        if result.errno == errno.EINVAL:
            message = f"Failed to bind {fb_id}: kernel rejected it (EINVAL)"
        else:
            message = f"Failed to bind {fb_id}: {result.message}"
        logger.warning(message)
        return [message]

    def bind_console(self) -> List[str]:
        """
        Rebind the framebuffer console.

        The bind races with the GPU driver initialising, so it is retried:
        write 1, pause, check, up to console_bind_attempts times.
        """
        console = self.find_fb_console()
        if console is None:
            return ["No framebuffer VT console to bind"]

        logger.info(f"Binding {console.name}...")
        bind_path = console / "bind"
        policy = RetryPolicy(
            interval=self.config.console_bind_interval,
            max_attempts=self.config.console_bind_attempts,
        )

        bound = poll_until(
            lambda: self._read(bind_path) == "1",
            policy,
            attempt=lambda: self.writer.write(bind_path, "1"),
            sleep=self._sleep,
        )
        if bound:
            logger.info(f"{console.name} bound")
            return []

        message = f"Failed to bind VT console {console.name}"
        logger.warning(message)
        return [message]

    def start_display_server(self) -> List[str]:
        result = self.services.start(self.config.display_service)
        if result.success:
            return []
        return [f"Failed to start display server {self.config.display_service}: {result.output}"]

    # =========================================================================
    # Helpers
    # =========================================================================

    def find_fb_console(self) -> Optional[Path]:
        """The virtual console driven by a framebuffer, if any."""
        if self.sysfs.vtconsoles.is_dir():
            for console in sorted(self.sysfs.vtconsoles.iterdir()):
                if FB_CONSOLE_NAME in self._read(console / "name"):
                    return console
        logger.warning("Didn't find framebuffer VT console!")
        return None

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text().strip()
        except OSError:
            return ""
