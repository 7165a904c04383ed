"""
vm-handoff Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, operator feedback, and scriptable exit codes.
"""

from enum import Enum, IntEnum
from typing import Optional, Dict, Any, List


class ErrorKind(Enum):
    """Closed set of failure kinds reported by low-level operations."""
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    TIMEOUT = "timeout"
    IO_ERROR = "io_error"
    EXTERNAL_TOOL_FAILURE = "external_tool_failure"
    VERIFICATION_MISMATCH = "verification_mismatch"


class ExitCode(IntEnum):
    """Process exit codes, one per failure class."""
    OK = 0
    CONFIG_UNAVAILABLE = 1
    DEVICE_NOT_FOUND = 2
    IOMMU_UNSUPPORTED = 3
    MODULE_LOAD_FAILED = 4
    MODULE_UNLOAD_FAILED = 5
    GPU_LIST_FAILED = 6
    DISPLAY_STOP_FAILED = 7
    CONSOLE_UNBIND_FAILED = 8
    DRIVER_BIND_FAILED = 9
    TIMEOUT = 10
    INTERRUPTED = 11
    VM_START_FAILED = 12
    INVALID_CONFIG = 13
    NOT_ROOT = 14
    CONTROL_WRITE_FAILED = 15
    FAILED = 16


class HandoffError(Exception):
    """
    Base exception for all vm-handoff errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
        kind: Failure kind from the error taxonomy
        exit_code: Process exit code for this failure class
    """

    exit_code: ExitCode = ExitCode.FAILED
    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable
        if kind is not None:
            self.kind = kind

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "kind": self.kind.value if self.kind else None,
            "exit_code": int(self.exit_code),
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# VM control errors
# =============================================================================

class VMError(HandoffError):
    """Base for VM control errors."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE


class LibvirtConnectionError(VMError):
    """Failed to connect to libvirt."""
    exit_code = ExitCode.CONFIG_UNAVAILABLE

    def __init__(self, uri: str, reason: str = "", cause: Optional[Exception] = None):
        message = f"Failed to connect to libvirt at {uri}"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            code="LIBVIRT_CONNECTION_FAILED",
            details={"uri": uri},
            cause=cause,
        )


class ConfigUnavailableError(VMError):
    """The VM definition could not be queried."""
    exit_code = ExitCode.CONFIG_UNAVAILABLE

    def __init__(self, vm_name: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Failed to get config of VM '{vm_name}': {reason}",
            code="VM_CONFIG_UNAVAILABLE",
            details={"vm_name": vm_name, "reason": reason},
            cause=cause,
            recoverable=False,
        )


class VMStartError(VMError):
    """Failed to start VM."""
    exit_code = ExitCode.VM_START_FAILED

    def __init__(self, vm_name: str, reason: str):
        super().__init__(
            f"Failed to start VM '{vm_name}': {reason}",
            code="VM_START_FAILED",
            details={"vm_name": vm_name, "reason": reason},
        )


# =============================================================================
# Topology errors
# =============================================================================

class HardwareError(HandoffError):
    """Base for hardware-related errors."""
    pass


class DeviceNotFoundError(HardwareError):
    """A configured PCI device is absent from sysfs."""
    kind = ErrorKind.NOT_FOUND
    exit_code = ExitCode.DEVICE_NOT_FOUND

    def __init__(self, pci_address: str):
        super().__init__(
            f"Didn't find PCI device {pci_address}",
            code="DEVICE_NOT_FOUND",
            details={"pci_address": pci_address},
            recoverable=False,
        )


class IOMMUUnsupportedError(HardwareError):
    """The device has no IOMMU group."""
    kind = ErrorKind.UNSUPPORTED
    exit_code = ExitCode.IOMMU_UNSUPPORTED

    def __init__(self, pci_address: str):
        super().__init__(
            f"PCI device {pci_address} has no IOMMU group, it seems IOMMU isn't enabled. "
            "Enable IOMMU in BIOS and add kernel parameters.",
            code="IOMMU_UNSUPPORTED",
            details={
                "pci_address": pci_address,
                "intel_param": "intel_iommu=on iommu=pt",
                "amd_param": "amd_iommu=on iommu=pt",
            },
            recoverable=False,
        )


class GPUListError(HardwareError):
    """Listing VGA controllers failed."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE
    exit_code = ExitCode.GPU_LIST_FAILED

    def __init__(self, reason: str):
        super().__init__(
            f"Failed to list PCI devices: {reason}",
            code="GPU_LIST_FAILED",
            details={"reason": reason},
        )


# =============================================================================
# Passthrough errors
# =============================================================================

class PassthroughError(HandoffError):
    """Base for errors raised while engaging passthrough."""
    pass


class WriteTimeoutError(PassthroughError):
    """A guarded control-file write exceeded its deadline."""
    kind = ErrorKind.TIMEOUT
    exit_code = ExitCode.TIMEOUT

    def __init__(self, path: str, data: str, timeout: float):
        super().__init__(
            f"Writing {data!r} into {path} took longer than {timeout}s, "
            "most likely a kernel bug (check dmesg)",
            code="WRITE_TIMEOUT",
            details={"path": path, "data": data, "timeout": timeout},
        )


class ControlFileError(PassthroughError):
    """A guarded control-file write failed with an I/O error."""
    kind = ErrorKind.IO_ERROR
    exit_code = ExitCode.CONTROL_WRITE_FAILED

    def __init__(self, path: str, data: str, reason: str):
        super().__init__(
            f"Failed to write {data!r} into {path}: {reason}",
            code="CONTROL_WRITE_FAILED",
            details={"path": path, "data": data, "reason": reason},
        )


class DriverOverrideError(PassthroughError):
    """Binding a device to the passthrough driver failed."""
    exit_code = ExitCode.DRIVER_BIND_FAILED

    def __init__(self, pci_address: str, reason: str, kind: Optional[ErrorKind] = None):
        super().__init__(
            f"Failed to bind {pci_address} to passthrough driver: {reason}",
            code="DRIVER_OVERRIDE_FAILED",
            details={"pci_address": pci_address, "reason": reason},
            kind=kind or ErrorKind.VERIFICATION_MISMATCH,
        )


class ModuleLoadError(PassthroughError):
    """modprobe failed."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE
    exit_code = ExitCode.MODULE_LOAD_FAILED

    def __init__(self, module: str, output: str = ""):
        super().__init__(
            f"Failed to load module {module}",
            code="MODULE_LOAD_FAILED",
            details={"module": module, "output": output},
        )


class ModuleUnloadError(PassthroughError):
    """rmmod failed for a reason other than the module being absent."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE
    exit_code = ExitCode.MODULE_UNLOAD_FAILED

    def __init__(self, module: str, output: str = ""):
        super().__init__(
            f"Failed to unload module {module}",
            code="MODULE_UNLOAD_FAILED",
            details={"module": module, "output": output},
        )


class DisplayServerError(PassthroughError):
    """The display manager service could not be stopped."""
    kind = ErrorKind.EXTERNAL_TOOL_FAILURE
    exit_code = ExitCode.DISPLAY_STOP_FAILED

    def __init__(self, service: str, output: str = ""):
        super().__init__(
            f"Failed to stop display server {service}",
            code="DISPLAY_STOP_FAILED",
            details={"service": service, "output": output},
        )


class ConsoleUnbindError(PassthroughError):
    """The framebuffer virtual console stayed bound."""
    kind = ErrorKind.VERIFICATION_MISMATCH
    exit_code = ExitCode.CONSOLE_UNBIND_FAILED

    def __init__(self, console: str, value: str):
        super().__init__(
            f"Failed to unbind VT console {console}",
            code="CONSOLE_UNBIND_FAILED",
            details={"console": console, "bind": value},
        )


class VFIONotReadyError(PassthroughError):
    """VFIO group device nodes did not appear in time."""
    kind = ErrorKind.TIMEOUT
    exit_code = ExitCode.TIMEOUT

    def __init__(self, missing: List[str], timeout: float):
        super().__init__(
            f"VFIO device nodes not ready after {timeout}s: {', '.join(missing)}",
            code="VFIO_NOT_READY",
            details={"missing": missing, "timeout": timeout},
        )


class EngagementInterrupted(PassthroughError):
    """The run was cancelled by the operator or the supervisor."""
    exit_code = ExitCode.INTERRUPTED

    def __init__(self, reason: str = "cancelled"):
        super().__init__(
            f"Engagement interrupted: {reason}",
            code="INTERRUPTED",
            details={"reason": reason},
        )


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(HandoffError):
    """Base for configuration errors."""
    exit_code = ExitCode.INVALID_CONFIG


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
            recoverable=False,
        )
