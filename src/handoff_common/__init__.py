"""
vm-handoff Common Utilities

Error taxonomy, logging setup and polling helpers shared by the
pci_topology and vm_handoff packages.
"""

from .exceptions import (
    ErrorKind, ExitCode, HandoffError, VMError, LibvirtConnectionError, ConfigUnavailableError,
    VMStartError, HardwareError, DeviceNotFoundError, IOMMUUnsupportedError,
    GPUListError, PassthroughError, WriteTimeoutError, ControlFileError, DriverOverrideError,
    ModuleLoadError, ModuleUnloadError, DisplayServerError, ConsoleUnbindError, VFIONotReadyError,
    EngagementInterrupted, ConfigError, InvalidConfigError,
)
from .decorators import handle_errors, require_root, timed
from .logging_config import setup_logging, LogContext
from .polling import RetryPolicy, poll_until

__all__ = [
    # Exceptions
    "ErrorKind", "ExitCode", "HandoffError", "VMError", "LibvirtConnectionError", "ConfigUnavailableError",
    "VMStartError", "HardwareError", "DeviceNotFoundError", "IOMMUUnsupportedError",
    "GPUListError", "PassthroughError", "WriteTimeoutError", "ControlFileError", "DriverOverrideError",
    "ModuleLoadError", "ModuleUnloadError", "DisplayServerError", "ConsoleUnbindError", "VFIONotReadyError",
    "EngagementInterrupted", "ConfigError", "InvalidConfigError",
    # Decorators
    "handle_errors", "require_root", "timed",
    # Logging
    "setup_logging", "LogContext",
    # Polling
    "RetryPolicy", "poll_until",
]
