"""
Host tool wrappers - kernel modules, systemd services, external commands.
"""

from .command import CommandResult, run_command
from .modules import KernelModuleControl
from .services import ServiceControl

__all__ = ["CommandResult", "run_command", "KernelModuleControl", "ServiceControl"]
