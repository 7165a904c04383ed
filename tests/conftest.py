"""
Pytest configuration and shared fixtures for vm-handoff tests.

Provides a fake sysfs tree, a fake kernel that applies control-file writes
to it, and fakes for libvirt, kernel modules, services and lspci.
"""

import errno
import logging
import os
import shutil
import struct
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from handoff_common.exceptions import ConfigUnavailableError, ErrorKind, GPUListError, VMStartError
from pci_topology.address import DeviceAddress
from pci_topology.pci_config import HEADER_FORMAT
from pci_topology.sysfs import SysfsLayout
from vm_handoff.config import HandoffConfig
from vm_handoff.host.command import CommandResult
from vm_handoff.passthrough.guarded_write import WriteResult

GPU = "0000:01:00.0"
GPU_AUDIO = "0000:01:00.1"
BRIDGE = "0000:00:01.0"
NIC = "0000:05:00.0"

VGA_CLASS = 0x0300
AUDIO_CLASS = 0x0403
ETHERNET_CLASS = 0x0200
BRIDGE_CLASS = 0x0604


# ============ Fake sysfs ============

class FakeSysfs:
    """A directory tree shaped like the parts of /sys the handoff touches."""

    def __init__(self, root: Path):
        self.layout = SysfsLayout(root / "sys", root / "dev")
        self.layout.pci_devices.mkdir(parents=True)
        self.drivers_dir.mkdir()
        self.layout.drivers_probe.touch()
        self.layout.rescan.touch()
        self.groups_root = self.layout.root / "kernel" / "iommu_groups"
        self.groups_root.mkdir(parents=True)
        self.add_driver("vfio-pci")

    @property
    def drivers_dir(self) -> Path:
        return self.layout.pci_bus / "drivers"

    def add_driver(self, name: str) -> Path:
        driver = self.drivers_dir / name
        driver.mkdir(exist_ok=True)
        (driver / "unbind").touch()
        return driver

    def remove_driver(self, name: str) -> None:
        for device in self.layout.pci_devices.iterdir():
            if self.layout.current_driver(device.name) == name:
                self.unbind(device.name)
        shutil.rmtree(self.drivers_dir / name, ignore_errors=True)

    def add_device(
        self,
        address: str,
        group: Optional[str] = None,
        driver: Optional[str] = None,
        header_type: int = 0x00,
        class_code: int = VGA_CLASS,
        native: Optional[str] = None,
    ) -> DeviceAddress:
        address = DeviceAddress.parse(address)
        device = self.layout.device(address)
        device.mkdir()
        (device / "config").write_bytes(struct.pack(
            HEADER_FORMAT, 0x1002, 0x73BF, 0x0007, 0x0010, 0xC1, 0x00,
            class_code, 0x10, 0x00, header_type, 0x00,
        ))
        (device / "driver_override").write_text("(null)\n")

        native = native or driver
        if native:
            (device / "native_driver").write_text(native)

        if group is not None:
            group_dir = self.groups_root / str(group)
            (group_dir / "devices").mkdir(parents=True, exist_ok=True)
            (group_dir / "devices" / str(address)).symlink_to(device)
            (device / "iommu_group").symlink_to(group_dir)

        if driver:
            self.bind(address, driver)
        return address

    def bind(self, address, driver: str) -> None:
        target = self.add_driver(driver)
        link = self.layout.driver_link(address)
        if link.is_symlink():
            link.unlink()
        link.symlink_to(target)

    def unbind(self, address) -> None:
        link = self.layout.driver_link(address)
        if link.is_symlink():
            link.unlink()

    def driver_of(self, address) -> str:
        return self.layout.current_driver(address)

    def native_driver(self, address) -> str:
        path = self.layout.device(address) / "native_driver"
        return path.read_text() if path.exists() else ""

    def override_of(self, address) -> str:
        value = (self.layout.device(address) / "driver_override").read_text().strip()
        return "" if value == "(null)" else value

    def add_console(self, name: str = "vtcon1", description: str = "frame buffer device",
                    bound: bool = True) -> Path:
        console = self.layout.vtconsoles / name
        console.mkdir(parents=True)
        (console / "name").write_text(f"(M) {description}\n")
        (console / "bind").write_text("1\n" if bound else "0\n")
        return console

    def console_bound(self, name: str = "vtcon1") -> bool:
        return (self.layout.vtconsoles / name / "bind").read_text().strip() == "1"

    def add_framebuffer(self, fb_id: str = "efi-framebuffer.0", bound: bool = True) -> Path:
        driver = self.layout.platform_driver("efi-framebuffer")
        driver.mkdir(parents=True)
        (driver / "bind").touch()
        (driver / "unbind").touch()
        platform_device = self.layout.root / "devices" / "platform" / fb_id
        platform_device.mkdir(parents=True)
        if bound:
            (driver / fb_id).symlink_to(platform_device)
        return driver

    def framebuffer_bound(self, fb_id: str = "efi-framebuffer.0") -> bool:
        return (self.layout.platform_driver("efi-framebuffer") / fb_id).is_symlink()

    def add_vfio_node(self, group: str) -> None:
        node_dir = self.layout.dev_root / "vfio"
        node_dir.mkdir(parents=True, exist_ok=True)
        (node_dir / str(group)).touch()


# ============ Fake kernel ============

class FakeKernel:
    """
    Applies control-file writes the way the kernel would.

    `apply` has the signature of a GuardedWriter write function, so it can
    run inside a real forked writer as well as in FakeWriter.
    """

    def __init__(self, sysfs: FakeSysfs):
        self.sysfs = sysfs
        self.layout = sysfs.layout
        self.framebuffer_bind_errno: Optional[int] = None
        self.console_bind_failures = 0
        self.errors: Dict[str, int] = {}

    def apply(self, path: str, data: bytes) -> None:
        text = data.decode("ascii")
        path = Path(path)

        if str(path) in self.errors:
            code = self.errors[str(path)]
            raise OSError(code, os.strerror(code))

        if path == self.layout.drivers_probe:
            self._probe(text)
        elif path == self.layout.rescan:
            pass
        elif path.name == "driver_override":
            path.write_text("(null)\n" if text == "\n" else text + "\n")
        elif path.name == "unbind" and path.parent.name == "driver":
            self._unbind_pci(path, text)
        elif path.parent == self.layout.platform_driver("efi-framebuffer"):
            self._framebuffer(path.name, text)
        elif path.parent.parent == self.layout.vtconsoles:
            self._console(path, text)
        else:
            path.write_text(text)

    def _probe(self, address: str) -> None:
        if not self.layout.device(address).is_dir():
            raise OSError(errno.ENODEV, os.strerror(errno.ENODEV))
        if self.sysfs.driver_of(address):
            return
        wanted = self.sysfs.override_of(address) or self.sysfs.native_driver(address)
        if wanted and (self.sysfs.drivers_dir / wanted).is_dir():
            self.sysfs.bind(address, wanted)

    def _unbind_pci(self, path: Path, address: str) -> None:
        device = path.parent.parent
        if device.name != address:
            raise OSError(errno.ENODEV, os.strerror(errno.ENODEV))
        self.sysfs.unbind(address)

    def _framebuffer(self, action: str, fb_id: str) -> None:
        link = self.layout.platform_driver("efi-framebuffer") / fb_id
        if action == "unbind":
            if not link.is_symlink():
                raise OSError(errno.ENODEV, os.strerror(errno.ENODEV))
            link.unlink()
        elif action == "bind":
            if self.framebuffer_bind_errno is not None:
                code = self.framebuffer_bind_errno
                raise OSError(code, os.strerror(code))
            if not link.is_symlink():
                link.symlink_to(self.layout.root / "devices" / "platform" / fb_id)

    def _console(self, path: Path, value: str) -> None:
        if value == "1" and self.console_bind_failures > 0:
            # Framebuffer not ready yet; the write is accepted but ignored
            self.console_bind_failures -= 1
            return
        path.write_text(value + "\n")


class FakeWriter:
    """In-process stand-in for GuardedWriter that records every write."""

    def __init__(self, kernel: FakeKernel, timeout: float = 60.0):
        self.kernel = kernel
        self.timeout = timeout
        self.writes: List[tuple] = []
        self.hang_paths = set()
        self.on_write: Optional[Callable[[str, str], None]] = None

    def write(self, path, data, deadline=None) -> WriteResult:
        path = str(path)
        if isinstance(data, str):
            data = data.encode("ascii")
        self.writes.append((path, data.decode("ascii")))

        try:
            if path in self.hang_paths:
                return WriteResult(path, data, False, kind=ErrorKind.TIMEOUT, message="hung")
            try:
                self.kernel.apply(path, data)
            except OSError as e:
                return WriteResult(path, data, False, kind=ErrorKind.IO_ERROR,
                                   errno=e.errno, message=e.strerror)
            return WriteResult(path, data, True)
        finally:
            if self.on_write is not None:
                self.on_write(path, data.decode("ascii"))

    def paths_written(self) -> List[str]:
        return [path for path, _ in self.writes]


# ============ Host fakes ============

class FakeModules:
    """Kernel module control; loading a driver module auto-binds its devices."""

    def __init__(self, sysfs: FakeSysfs, loaded=("amdgpu", "drm_ttm_helper", "ttm")):
        self.sysfs = sysfs
        self.loaded = set(loaded)
        self.calls: List[tuple] = []
        self.fail_load = set()
        self.fail_unload = set()

    def load(self, name: str) -> CommandResult:
        self.calls.append(("load", name))
        if name in self.fail_load:
            return CommandResult(["modprobe", name], 1, f"modprobe: FATAL: Module {name} not found")
        self.loaded.add(name)
        if name == "amdgpu":
            self.sysfs.add_driver(name)
            for device in self.sysfs.layout.pci_devices.iterdir():
                if (self.sysfs.native_driver(device.name) == name
                        and not self.sysfs.driver_of(device.name)
                        and not self.sysfs.override_of(device.name)):
                    self.sysfs.bind(device.name, name)
        return CommandResult(["modprobe", name], 0)

    def unload(self, name: str) -> CommandResult:
        self.calls.append(("unload", name))
        if name in self.fail_unload:
            return CommandResult(["rmmod", name], 1, f"rmmod: ERROR: Module {name} is in use")
        self.loaded.discard(name)
        if name == "amdgpu":
            self.sysfs.remove_driver(name)
        return CommandResult(["rmmod", name], 0)


class FakeServices:
    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_stop = set()
        self.fail_start = set()

    def stop(self, name: str) -> CommandResult:
        self.calls.append(("stop", name))
        code = 1 if name in self.fail_stop else 0
        return CommandResult(["systemctl", "stop", name], code)

    def start(self, name: str) -> CommandResult:
        self.calls.append(("start", name))
        code = 1 if name in self.fail_start else 0
        return CommandResult(["systemctl", "start", name], code)


class FakeScanner:
    def __init__(self, gpus=(GPU,), error: Optional[str] = None):
        self.gpus = [DeviceAddress.parse(g) for g in gpus]
        self.error = error

    def list_vga_devices(self) -> List[DeviceAddress]:
        if self.error:
            raise GPUListError(self.error)
        return list(self.gpus)


class FakeVMControl:
    """
    VM control service.

    After start() the VM reports running for `run_polls` state checks,
    then stopped.
    """

    def __init__(self, devices=(GPU,), running: bool = False, run_polls: int = 1):
        self.devices = [DeviceAddress.parse(d) for d in devices]
        self.running = running
        self.run_polls = run_polls
        self.calls: List[tuple] = []
        self.config_error: Optional[str] = None
        self.start_error: Optional[str] = None
        self.ignore_shutdown = False
        self.on_start: Optional[Callable[[], None]] = None

    def get_config(self, name: str) -> List[DeviceAddress]:
        self.calls.append(("get_config", name))
        if self.config_error:
            raise ConfigUnavailableError(name, self.config_error)
        return list(self.devices)

    def is_running(self, name: str) -> bool:
        if self.running and self.run_polls is not None:
            if self.run_polls <= 0:
                self.running = False
            else:
                self.run_polls -= 1
        return self.running

    def start(self, name: str, attach_console: bool = False) -> None:
        self.calls.append(("start", name, attach_console))
        if self.start_error:
            raise VMStartError(name, self.start_error)
        self.running = True
        if self.on_start is not None:
            self.on_start()

    def shutdown(self, name: str) -> bool:
        self.calls.append(("shutdown", name))
        if not self.ignore_shutdown:
            self.running = False
        return True

    def force_stop(self, name: str) -> bool:
        self.calls.append(("force_stop", name))
        self.running = False
        return True


# ============ Fixtures ============

@pytest.fixture
def fake_sysfs(tmp_path: Path) -> FakeSysfs:
    """Empty fake sysfs tree."""
    return FakeSysfs(tmp_path)


@pytest.fixture
def gpu_host(fake_sysfs: FakeSysfs) -> FakeSysfs:
    """
    A host with an AMD GPU and its audio function in IOMMU group 1,
    a root port bridge in group 0 and a NIC in group 12.
    """
    fake_sysfs.add_device(BRIDGE, group="0", driver="pcieport",
                          header_type=0x01, class_code=BRIDGE_CLASS)
    fake_sysfs.add_device(GPU, group="1", driver="amdgpu", header_type=0x80)
    fake_sysfs.add_device(GPU_AUDIO, group="1", driver="snd_hda_intel", class_code=AUDIO_CLASS)
    fake_sysfs.add_device(NIC, group="12", driver="r8169", class_code=ETHERNET_CLASS)
    fake_sysfs.add_console("vtcon0", "dummy device")
    fake_sysfs.add_console("vtcon1", "frame buffer device")
    fake_sysfs.add_framebuffer()
    return fake_sysfs


@pytest.fixture
def kernel(gpu_host: FakeSysfs) -> FakeKernel:
    return FakeKernel(gpu_host)


@pytest.fixture
def fake_writer(kernel: FakeKernel) -> FakeWriter:
    return FakeWriter(kernel)


@pytest.fixture
def handoff_config(gpu_host: FakeSysfs) -> HandoffConfig:
    """Config pointing at the fake tree, with every wait shortened to zero."""
    return HandoffConfig(
        sysfs_root=str(gpu_host.layout.root),
        dev_root=str(gpu_host.layout.dev_root),
        console_bind_interval=0,
        vfio_ready_interval=0,
        vm_poll_interval=0,
        wait_for_vfio_nodes=False,
    )


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo setup_logging() calls made by CLI tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def cancel_event() -> threading.Event:
    return threading.Event()


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "requires_root: marks tests that need root privileges"
    )
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "hardware: tests that touch the real /sys"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests based on environment."""
    skip_hw = pytest.mark.skip(reason="Hardware tests disabled in CI")
    skip_root = pytest.mark.skip(reason="Requires root privileges")

    for item in items:
        if "hardware" in item.keywords and os.environ.get("CI"):
            item.add_marker(skip_hw)
        if "requires_root" in item.keywords and os.geteuid() != 0:
            item.add_marker(skip_root)
