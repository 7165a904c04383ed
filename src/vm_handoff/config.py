"""
Handoff Configuration - one explicit value passed to every component.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional, List, Dict, Any, Union

from handoff_common.exceptions import InvalidConfigError
from pci_topology.sysfs import SysfsLayout

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/vm-handoff/config.json")


@dataclass
class HandoffConfig:
    """
    Complete handoff configuration.

    Defaults match a single AMD GPU host running one libvirt VM. It can be
    loaded from JSON and overridden from the command line.
    """
    vm_name: str = "WindowsVM"
    libvirt_uri: str = "qemu:///system"
    display_service: str = "display-manager"

    vfio_driver: str = "vfio-pci"
    vfio_module: str = "vfio_pci"
    # Unloaded in this order, users before the modules they depend on.
    # Reacquire loads gpu_modules_load, not this list reversed.
    gpu_modules_unload: List[str] = field(
        default_factory=lambda: ["amdgpu", "drm_ttm_helper", "ttm"]
    )
    gpu_modules_load: List[str] = field(default_factory=lambda: ["amdgpu"])

    framebuffer_driver: str = "efi-framebuffer"
    framebuffer_id: str = "efi-framebuffer.0"

    # Seconds
    write_timeout: float = 60.0
    engage_timeout: float = 300.0
    supervisor_grace_timeout: float = 75.0
    console_bind_attempts: int = 10
    console_bind_interval: float = 1.0
    wait_for_vfio_nodes: bool = True
    vfio_ready_timeout: float = 30.0
    vfio_ready_interval: float = 0.5
    vm_poll_interval: float = 80.0
    vm_shutdown_timeout: float = 30.0

    sysfs_root: str = "/sys"
    dev_root: str = "/dev"

    @property
    def sysfs(self) -> SysfsLayout:
        return SysfsLayout(self.sysfs_root, self.dev_root)

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the config is usable."""
        errors = []

        if not self.vm_name:
            errors.append("VM name is required")
        if not self.vfio_driver:
            errors.append("Passthrough driver name is required")

        for name in ("write_timeout", "engage_timeout", "vfio_ready_timeout",
                     "vm_shutdown_timeout"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        for name in ("console_bind_interval", "vfio_ready_interval", "vm_poll_interval"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")

        if self.console_bind_attempts < 1:
            errors.append("console_bind_attempts must be at least 1")

        if self.supervisor_grace_timeout <= self.write_timeout:
            errors.append("supervisor_grace_timeout must be longer than write_timeout")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandoffConfig":
        """
        Create from dictionary.

        Raises:
            InvalidConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise InvalidConfigError(key, data[key], "unknown setting")

        config = cls(**data)
        errors = config.validate()
        if errors:
            raise InvalidConfigError("config", "", "; ".join(errors))
        return config

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None, **overrides) -> "HandoffConfig":
        """
        Load configuration from a JSON file.

        Args:
            path: Config file; the default path is used only if it exists
            overrides: Settings that take precedence over the file (None ignored)

        Raises:
            InvalidConfigError: If the file is unreadable or invalid
        """
        data: Dict[str, Any] = {}

        if path is None and DEFAULT_CONFIG_PATH.exists():
            path = DEFAULT_CONFIG_PATH

        if path is not None:
            path = Path(path)
            try:
                data = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                raise InvalidConfigError("config_file", path, str(e)) from e
            if not isinstance(data, dict):
                raise InvalidConfigError("config_file", path, "expected a JSON object")
            logger.debug(f"Loaded configuration from {path}")

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(data)
