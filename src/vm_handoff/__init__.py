"""
vm-handoff

Hands a host's PCI devices (typically the GPU) to a libvirt VM through
vfio-pci and restores them when the VM stops.
"""

from .config import HandoffConfig
from .core.orchestrator import VMLifecycleOrchestrator
from .core.state_machine import EngagementState
from .core.supervisor import Supervisor

__version__ = "0.3.0"

__all__ = [
    "HandoffConfig",
    "VMLifecycleOrchestrator",
    "EngagementState",
    "Supervisor",
]
