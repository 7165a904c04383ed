"""
PCI device addresses.

A DeviceAddress names one PCI function. Its canonical form is the sysfs
directory name, e.g. "0000:01:00.0".
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar, Union


@dataclass(frozen=True, order=True)
class DeviceAddress:
    """One PCI function: domain, bus, slot (device) and function."""

    domain: int
    bus: int
    slot: int
    function: int

    PATTERN: ClassVar[re.Pattern] = re.compile(
        r"^(?:(?P<domain>[0-9a-fA-F]{1,4}):)?"
        r"(?P<bus>[0-9a-fA-F]{1,2}):"
        r"(?P<slot>[0-9a-fA-F]{1,2})\."
        r"(?P<function>[0-7])$"
    )

    def __post_init__(self):
        if not 0 <= self.domain <= 0xFFFF:
            raise ValueError(f"PCI domain out of range: {self.domain:#x}")
        if not 0 <= self.bus <= 0xFF:
            raise ValueError(f"PCI bus out of range: {self.bus:#x}")
        if not 0 <= self.slot <= 0x1F:
            raise ValueError(f"PCI slot out of range: {self.slot:#x}")
        if not 0 <= self.function <= 0x7:
            raise ValueError(f"PCI function out of range: {self.function:#x}")

    def __str__(self) -> str:
        return f"{self.domain:04x}:{self.bus:02x}:{self.slot:02x}.{self.function:x}"

    @classmethod
    def parse(cls, text: Union[str, "DeviceAddress"]) -> "DeviceAddress":
        """
        Parse "DDDD:BB:SS.F" or the short "BB:SS.F" form (domain 0).

        Raises:
            ValueError: If the text is not a PCI address
        """
        if isinstance(text, DeviceAddress):
            return text
        match = cls.PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Not a PCI address: {text!r}")
        return cls(
            domain=int(match.group("domain") or "0", 16),
            bus=int(match.group("bus"), 16),
            slot=int(match.group("slot"), 16),
            function=int(match.group("function"), 16),
        )

    @classmethod
    def from_libvirt(cls, domain: str, bus: str, slot: str, function: str) -> "DeviceAddress":
        """Build from libvirt <address> attributes such as bus="0x01"."""
        return cls(
            domain=int(domain, 16),
            bus=int(bus, 16),
            slot=int(slot, 16),
            function=int(function, 16),
        )
