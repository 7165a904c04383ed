"""
Passthrough Module - guarded sysfs writes, driver rebinding and the host GPU stack.
"""

from .guarded_write import GuardedWriter, WriteResult
from .driver_rebind import DriverRebindEngine, RebindOutcome, RebindResult
from .gpu_subsystem import GPUSubsystemController

__all__ = [
    "GuardedWriter",
    "WriteResult",
    "DriverRebindEngine",
    "RebindOutcome",
    "RebindResult",
    "GPUSubsystemController",
]
